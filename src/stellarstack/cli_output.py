"""
Terminal rendering for the stellarstack command line.

Colored job plans, detection tables and stack summaries (colorama), and a
tqdm adapter for the pipeline's progress events.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Mapping

from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm

from .config import JobState, QualityMetric, StackConfig, StackResult
from .detection import SourceCatalog
from .frame import Frame
from .io import CalibrationFrames
from .pipeline import ProgressEvent

colorama_init(autoreset=True)


class Palette:
    """Color roles used by the command line."""

    TITLE = Fore.CYAN + Style.BRIGHT
    STAGE = Fore.BLUE + Style.BRIGHT
    OK = Fore.GREEN + Style.BRIGHT
    WARN = Fore.YELLOW
    FAIL = Fore.RED + Style.BRIGHT
    LABEL = Fore.MAGENTA
    VALUE = Fore.YELLOW + Style.BRIGHT
    PATH = Fore.CYAN
    BAR = Fore.GREEN
    RESET = Style.RESET_ALL


class Glyphs:
    """Status glyphs; ``plain()`` switches to ASCII."""

    OK = "✔"
    FAIL = "✘"
    ARROW = "→"
    STAR = "★"

    @classmethod
    def plain(cls) -> None:
        cls.OK, cls.FAIL, cls.ARROW, cls.STAR = "[OK]", "[X]", "->", "*"


STAGE_LABELS = {
    JobState.CALIBRATING: "Calibrating",
    JobState.EXTRACTING: "Detecting stars",
    JobState.REGISTERING: "Aligning",
    JobState.STACKING: "Stacking",
    JobState.SCORING: "Scoring",
}

BAR_FORMAT = "{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}]"


def configure_terminal() -> bool:
    """Fall back to ASCII glyphs on dumb or non-UTF-8 terminals. Returns True when unicode is kept."""
    unicode = os.environ.get("TERM") != "dumb" and "utf" in os.environ.get("LANG", "utf").lower()
    if not unicode:
        Glyphs.plain()
    return unicode


def print_banner(version: str) -> None:
    print(f"\n{Palette.TITLE}{Glyphs.STAR} stellarstack {version}  |  multi-frame stacking engine{Palette.RESET}")


def print_section(title: str, width: int = 60) -> None:
    rule = "=" * width
    print(f"\n{Palette.TITLE}{rule}\n  {title}\n{rule}{Palette.RESET}")


def print_metric(name: str, value: str | int | float, unit: str = "") -> None:
    suffix = f" {unit}" if unit else ""
    print(f"  {Palette.LABEL}{name}: {Palette.VALUE}{value}{Palette.RESET}{suffix}")


def print_success(text: str) -> None:
    print(f"{Palette.OK}{Glyphs.OK} {text}{Palette.RESET}")


def print_warning(text: str) -> None:
    print(f"{Palette.WARN}! {text}{Palette.RESET}")


def print_error(text: str) -> None:
    print(f"{Palette.FAIL}{Glyphs.FAIL} {text}{Palette.RESET}", file=sys.stderr)


def summary_box(lines: list[str], title: str) -> str:
    """Frame ``lines`` in an ASCII box under a centered title."""
    width = max([len(line) for line in lines] + [len(title)]) + 4
    edge = "+" + "=" * width + "+"
    out = [edge, f"| {title:^{width - 2}} |", "+" + "-" * width + "+"]
    out += [f"|  {line:<{width - 3}}|" for line in lines]
    out.append(edge)
    return "\n".join(out)


def print_job_plan(config: StackConfig, n_lights: int, calibration: CalibrationFrames) -> None:
    """Describe the job about to run."""
    print_section(f"Stacking {n_lights} frames")
    print_metric("Method", str(config.method))
    print_metric("Alignment", config.alignment_mode.value)
    print_metric("Quality scoring", "on" if config.effective_quality else "off")
    masters = [
        f"{role} x{len(paths)}"
        for role, paths in (("dark", calibration.dark), ("flat", calibration.flat), ("bias", calibration.bias))
        if paths
    ]
    print_metric("Calibration", ", ".join(masters) if masters else "none")


def print_detection(frame: Frame, catalog: SourceCatalog, metric: QualityMetric, top: int) -> None:
    """Catalog summary of one frame followed by its brightest sources."""
    print_section(f"{frame.label} ({frame.width}x{frame.height})")
    print_metric("Sources", len(catalog))
    print_metric("Median FWHM", f"{metric.median_fwhm:.2f}", "px")
    print_metric("Quality score", f"{metric.score:.1f}")
    brightest = catalog.brightest(top)
    if len(brightest) == 0:
        return
    print(f"\n  {Palette.LABEL}{'x':>8} {'y':>8} {'flux':>12} {'fwhm':>6} {'e':>5}{Palette.RESET}")
    for s in brightest:
        print(f"  {Palette.STAGE}{Glyphs.ARROW}{Palette.RESET} "
              f"{s.x:8.2f} {s.y:8.2f} {s.flux:12.1f} {s.fwhm:6.2f} {s.ellipticity:5.2f}")


def print_stack_summary(result: StackResult, paths: Mapping[str, Path], elapsed: str) -> None:
    """Failed registrations, the result box and the written files."""
    for name in result.failed_alignments:
        print_warning(f"Registration failed, stacked unregistered: {name}")
    lines = [
        f"Frames: {result.frame_count}",
        f"Size: {result.width}x{result.height}",
        f"Method: {result.method}",
        f"Alignment: {result.alignment_mode} ({len(result.failed_alignments)} failed)",
        f"Duration: {elapsed}",
    ]
    if result.quality_metrics:
        scores = [m.score for m in result.quality_metrics]
        lines.append(f"Quality: {min(scores):.1f} - {max(scores):.1f}")
    print(f"\n{Palette.OK}{summary_box(lines, 'Stack complete')}{Palette.RESET}")
    for name, path in paths.items():
        print(f"  {name}: {Palette.PATH}{path}{Palette.RESET}")
    print_success("Done")


class TqdmProgressSink:
    """
    Render pipeline progress events as one tqdm bar per stage.

    Example
    -------
    >>> with TqdmProgressSink() as sink:
    ...     pipeline.run(paths, progress=sink)
    """

    def __init__(self, disable: bool = False, ncols: int = 80):
        self.disable = disable
        self.ncols = ncols
        self._bar: tqdm | None = None
        self._stage: JobState | None = None

    def __call__(self, event: ProgressEvent) -> None:
        if event.stage is not self._stage:
            self.close()
            self._stage = event.stage
            label = STAGE_LABELS.get(event.stage, event.stage.value)
            self._bar = tqdm(
                total=event.total,
                desc=f"{Palette.BAR}{label}{Palette.RESET}",
                unit="frame",
                bar_format=BAR_FORMAT,
                ncols=self.ncols,
                colour="green",
                disable=self.disable,
            )
        self._bar.set_postfix_str(event.message[-40:], refresh=False)
        self._bar.update(event.current - self._bar.n)

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None
        self._stage = None

    def __enter__(self) -> TqdmProgressSink:
        return self

    def __exit__(self, *exc) -> None:
        self.close()
