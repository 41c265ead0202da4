"""
Command-line interface for the stellarstack engine.

Usage:
    python -m stellarstack stack LIGHT.fits ... [options]
    python -m stellarstack detect FRAME.fits [options]
    stellarstack stack LIGHT.fits ... [options]
"""

from __future__ import annotations

import argparse
import logging
import time
from pathlib import Path

from .align import save_transforms
from .cli_output import (
    TqdmProgressSink,
    configure_terminal,
    print_banner,
    print_detection,
    print_error,
    print_job_plan,
    print_stack_summary,
    print_warning,
)
from .config import METHOD_NAMES, ExtractionConfig, StackConfig, parse_alignment_mode, parse_method
from .detection import extract_sources
from .errors import StackingError
from .io import CalibrationFrames, as_light_refs, read_frame, write_array
from .pipeline import CancellationToken, StackingPipeline
from .quality import evaluate_quality
from .report import write_all_reports
from .utils import format_duration, get_version, get_version_banner

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for CLI."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%H:%M:%S",
    )


def run_stack(args: argparse.Namespace) -> int:
    """Execute the ``stack`` command."""
    config = StackConfig(
        method=parse_method(args.method, args.sigma),
        alignment_mode=parse_alignment_mode(args.align),
        enable_quality=args.quality,
        workers=args.workers,
        extraction=ExtractionConfig.preset(args.profile),
    )
    config.validate()

    lights = as_light_refs(args.lights)
    calibration = CalibrationFrames(dark=args.dark, flat=args.flat, bias=args.bias)
    out_dir = Path(args.out)

    if not args.quiet:
        configure_terminal()
        print_banner(get_version())
        print_job_plan(config, len(lights), calibration)

    logger.info(get_version_banner())
    start = time.time()
    pipeline = StackingPipeline(config, loader=read_frame)
    token = CancellationToken()

    try:
        with TqdmProgressSink(disable=args.quiet) as sink:
            result = pipeline.run(lights, calibration=calibration, cancel_token=token, progress=sink)
    except KeyboardInterrupt:
        token.cancel()
        print_warning("Interrupted")
        return 130

    if result is None:
        print_warning("Stacking cancelled")
        return 130

    outputs = {
        "stack": write_array(result.pixels, out_dir / "stack.npy"),
        "coverage": write_array(result.coverage, out_dir / "coverage.npy"),
    }
    if args.save_transforms and result.alignment_results:
        transforms_path = out_dir / "transforms.json"
        save_transforms(
            result.alignment_results,
            transforms_path,
            reference_filename=result.reference_filename,
            metadata={"alignment_mode": result.alignment_mode},
        )
        outputs["transforms"] = transforms_path
    reports = write_all_reports(result, out_dir, config, outputs)

    if not args.quiet:
        print_stack_summary(result, {**outputs, **reports}, format_duration(time.time() - start))

    return 0


def run_detect(args: argparse.Namespace) -> int:
    """Execute the ``detect`` command."""
    overrides = {}
    if args.sigma_threshold is not None:
        overrides["sigma_threshold"] = args.sigma_threshold
    if args.max_stars is not None:
        overrides["max_stars"] = args.max_stars
    config = ExtractionConfig.preset(args.profile, **overrides)
    config.validate()

    frame = read_frame(args.frame)
    catalog = extract_sources(frame, config)
    metric = evaluate_quality(catalog)

    print_detection(frame, catalog, metric, args.top)
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI."""
    parser = argparse.ArgumentParser(
        prog="stellarstack",
        description="Calibrate, register and stack astronomical frames",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"stellarstack {get_version()}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Stack command
    stack_parser = subparsers.add_parser("stack", help="Stack light frames")
    stack_parser.add_argument("lights", nargs="+", help="Light frame FITS files (first = reference)")
    stack_parser.add_argument("--dark", nargs="+", default=[], help="Dark frame(s)")
    stack_parser.add_argument("--flat", nargs="+", default=[], help="Flat frame(s)")
    stack_parser.add_argument("--bias", nargs="+", default=[], help="Bias frame(s)")
    stack_parser.add_argument(
        "--method",
        choices=METHOD_NAMES,
        default="average",
        help="Pixel combination method (default: average)",
    )
    stack_parser.add_argument(
        "--sigma",
        type=float,
        default=2.5,
        help="Sigma for sigma/winsorized methods (default: 2.5)",
    )
    stack_parser.add_argument(
        "--align",
        choices=["none", "translation", "full"],
        default="translation",
        help="Registration model (default: translation)",
    )
    stack_parser.add_argument(
        "--profile",
        choices=sorted(ExtractionConfig.PRESETS),
        default="balanced",
        help="Star detection profile (default: balanced)",
    )
    stack_parser.add_argument("--quality", action="store_true", help="Compute per-frame quality scores")
    stack_parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Worker threads (default: CPU count - 1)",
    )
    stack_parser.add_argument(
        "--out",
        type=str,
        default="stack_output",
        help="Output directory (default: stack_output)",
    )
    stack_parser.add_argument(
        "--save-transforms",
        action="store_true",
        help="Save alignment transforms to transforms.json",
    )
    stack_parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    stack_parser.add_argument("-q", "--quiet", action="store_true", help="Suppress colored output")

    # Detect command
    detect_parser = subparsers.add_parser("detect", help="Detect stars in one frame")
    detect_parser.add_argument("frame", help="FITS file")
    detect_parser.add_argument("--sigma-threshold", type=float, default=None, help="Detection threshold (sigma)")
    detect_parser.add_argument("--max-stars", type=int, default=None, help="Maximum sources returned")
    detect_parser.add_argument(
        "--profile",
        choices=sorted(ExtractionConfig.PRESETS),
        default="balanced",
        help="Star detection profile (default: balanced)",
    )
    detect_parser.add_argument("--top", type=int, default=10, help="Sources to list (default: 10)")
    detect_parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose)

    try:
        if args.command == "stack":
            return run_stack(args)
        if args.command == "detect":
            return run_detect(args)
    except (StackingError, ValueError) as e:
        print_error(str(e))
        logger.debug("Command failed", exc_info=True)
        return 1

    parser.print_help()
    return 1
