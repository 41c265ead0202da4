"""
Report generation for stacking jobs.

Produces:
- report.json: Machine-readable summary, per-frame diagnostics and configuration
- report.md: Human-readable Markdown report
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any

import numpy as np

from .config import StackConfig, StackResult
from .quality import rank_frames
from .utils import get_platform_info, get_timestamp_iso, get_version

logger = logging.getLogger(__name__)


def _to_native(obj: Any) -> Any:
    """Convert numpy types to native Python types for JSON serialization."""
    if isinstance(obj, np.floating):
        return float(obj)
    elif isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, np.ndarray):
        return obj.tolist()
    elif isinstance(obj, dict):
        return {k: _to_native(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_to_native(v) for v in obj]
    return obj


def _serialize_config(config: StackConfig) -> dict[str, Any]:
    """Serialize StackConfig to JSON-compatible dict."""
    method = {"name": config.method.name, **asdict(config.method)}
    return {
        "method": method,
        "alignment_mode": config.alignment_mode.value,
        "enable_quality": config.effective_quality,
        "workers": config.workers,
        "chunk_rows": config.chunk_rows,
        "extraction": asdict(config.extraction),
        "registration": asdict(config.registration),
        "quality": asdict(config.quality),
    }


def _frame_rows(result: StackResult) -> list[dict[str, Any]]:
    """Per-frame diagnostics in input order."""
    alignments = result.alignment_results
    rows = []
    for i, name in enumerate(result.filenames):
        row: dict[str, Any] = {"index": i, "filename": name}
        if i < len(alignments):
            alignment = alignments[i]
            t = alignment.transform
            row.update({
                "transform": t.kind.value,
                "dx": t.dx,
                "dy": t.dy,
                "rotation_deg": t.rotation_deg,
                "matched_stars": t.matched_stars,
                "rms_error": t.rms_error,
                "fallback": t.fallback,
                "sources": alignment.target_sources,
            })
        if i < len(result.quality_metrics):
            row.update({f"quality_{k}": v for k, v in asdict(result.quality_metrics[i]).items()})
        rows.append(row)
    return rows


def write_report_json(
    result: StackResult,
    output_dir: Path,
    config: StackConfig | None = None,
    outputs: dict[str, Path] | None = None,
) -> Path:
    """
    Write summary report as JSON.

    Parameters
    ----------
    result : StackResult
        Stacking result.
    output_dir : Path
        Output directory.
    config : StackConfig, optional
        Configuration used for the job.
    outputs : dict[str, Path], optional
        Other files written for the job.

    Returns
    -------
    Path
        Path to written report file.
    """
    report = {
        "stellarstack_version": get_version(),
        "timestamp": get_timestamp_iso(),
        "platform": get_platform_info(),
        "summary": {
            "frame_count": result.frame_count,
            "width": result.width,
            "height": result.height,
            "method": result.method,
            "alignment_mode": result.alignment_mode,
            "reference_frame": result.reference_filename,
            "alignment_failures": len(result.failed_alignments),
            "duration_ms": result.duration_ms,
        },
        "frames": _frame_rows(result),
        "statistics": result.statistics,
        "config": _serialize_config(config) if config else {},
        "outputs": {k: str(v) for k, v in (outputs or {}).items()},
    }

    report_path = output_dir / "report.json"
    with open(report_path, "w") as f:
        json.dump(_to_native(report), f, indent=2)

    logger.info("Wrote report: %s", report_path)
    return report_path


def write_report_markdown(
    result: StackResult,
    output_dir: Path,
    config: StackConfig | None = None,
    outputs: dict[str, Path] | None = None,
) -> Path:
    """
    Write human-readable Markdown report.

    Parameters
    ----------
    result : StackResult
        Stacking result.
    output_dir : Path
        Output directory.
    config : StackConfig, optional
        Configuration used for the job.
    outputs : dict[str, Path], optional
        Other files written for the job.

    Returns
    -------
    Path
        Path to written report file.
    """
    lines = [
        "# Stacking Report",
        "",
        f"**Generated:** {get_timestamp_iso()}",
        f"**stellarstack version:** {get_version()}",
        f"**Platform:** {get_platform_info()}",
        "",
        "## Summary",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Frames stacked | {result.frame_count} |",
        f"| Size | {result.width}x{result.height} |",
        f"| Method | {result.method} |",
        f"| Alignment | {result.alignment_mode} |",
        f"| Alignment failures | {len(result.failed_alignments)} |",
        f"| Reference frame | `{result.reference_filename or 'N/A'}` |",
        f"| Duration | {result.duration_ms:.0f} ms |",
        "",
    ]

    if config:
        lines.extend([
            "## Configuration",
            "",
            "| Parameter | Value |",
            "|-----------|-------|",
            f"| method | {config.method} |",
            f"| detection sigma | {config.extraction.sigma_threshold} |",
            f"| max stars | {config.extraction.max_stars} |",
            f"| RANSAC iterations | {config.registration.ransac_iterations} |",
            f"| inlier threshold | {config.registration.inlier_threshold} px |",
            "",
        ])

    if result.statistics:
        lines.extend([
            "## Statistics",
            "",
            "| Metric | Value |",
            "|--------|-------|",
        ])
        for key, value in result.statistics.items():
            if isinstance(value, float):
                lines.append(f"| {key} | {value:.4f} |")
            else:
                lines.append(f"| {key} | {value} |")
        lines.append("")

    if result.alignment_results:
        lines.extend([
            "## Registration",
            "",
            "| Frame | Model | dx | dy | Matched | RMS (px) |",
            "|-------|-------|----|----|---------|----------|",
        ])
        for a in result.alignment_results:
            t = a.transform
            if t.is_reference:
                model = "reference"
            elif t.matched_stars == 0:
                model = "**failed**"
            else:
                model = t.kind.value + (f" ({t.fallback} fallback)" if t.fallback else "")
            lines.append(
                f"| `{a.filename}` | {model} | {t.dx:.2f} | {t.dy:.2f} | {t.matched_stars} | {t.rms_error:.3f} |"
            )
        lines.append("")

    if result.quality_metrics:
        lines.extend([
            "## Quality Scores",
            "",
            "| Rank | Frame | Score | FWHM (px) | Stars | SNR | Roundness | Background |",
            "|------|-------|-------|-----------|-------|-----|-----------|------------|",
        ])
        for rank, i in enumerate(rank_frames(result.quality_metrics), 1):
            m = result.quality_metrics[i]
            lines.append(
                f"| {rank} | `{result.filenames[i]}` | {m.score:.1f} | {m.median_fwhm:.2f} | {m.star_count} "
                f"| {m.snr:.1f} | {m.roundness:.2f} | {m.background_median:.1f} +/- {m.background_noise:.2f} |"
            )
        lines.append("")

    if outputs:
        lines.extend(["## Outputs", ""])
        for name, path in outputs.items():
            lines.append(f"- **{name}:** `{path}`")
        lines.append("")

    report_path = output_dir / "report.md"
    with open(report_path, "w") as f:
        f.write("\n".join(lines))

    logger.info("Wrote Markdown report: %s", report_path)
    return report_path


def write_all_reports(
    result: StackResult,
    output_dir: Path,
    config: StackConfig | None = None,
    outputs: dict[str, Path] | None = None,
) -> dict[str, Path]:
    """
    Write all report files.

    Returns
    -------
    dict[str, Path]
        Map of report type to path.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    return {
        "json": write_report_json(result, output_dir, config, outputs),
        "markdown": write_report_markdown(result, output_dir, config, outputs),
    }
