"""
Stacking job orchestration.

Sequences calibration, source extraction, registration, pixel combination
and quality scoring for one job, reports progress and honours cooperative
cancellation.

State machine::

    idle -> calibrating -> extracting -> registering -> stacking -> scoring -> done

Stages that are not needed are skipped (no extraction when neither
alignment nor scoring is requested, no registration in mode ``none``, no
scoring when quality is off). ``cancelled`` and ``failed`` are reachable
from any non-terminal state.

Per-frame stages run on a bounded thread pool. Each frame is owned by one
worker at a time; progress events are delivered in frame order.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, Executor, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol, Sequence, TypeVar

import numpy as np

from .align import FrameAlignment, Transform, register_catalogs, resample_frame
from .calibration import CalibrationSet, calibrate_frame, load_calibration_set
from .config import (
    AlignmentMode,
    JobState,
    QualityMetric,
    StackConfig,
    StackResult,
    Weighted,
    parse_alignment_mode,
    parse_method,
)
from .detection import SourceCatalog, extract_sources
from .errors import (
    DimensionMismatchError,
    FrameLoadError,
    InsufficientFramesError,
    JobCancelled,
    StackingError,
)
from .frame import AlignedFrame, Frame
from .io import CalibrationFrames, FrameLoader, LightFrameRef, PreviewRenderer, read_frame, render_preview
from .quality import evaluate_quality, quality_to_weights, rank_frames
from .stack import compute_stack_statistics, stack_frames
from .utils import resolve_workers

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

MIN_FRAMES = 2

LightInput = LightFrameRef | str | Path | Frame

# Forward order of the non-terminal states
_STAGE_ORDER = (
    JobState.IDLE,
    JobState.CALIBRATING,
    JobState.EXTRACTING,
    JobState.REGISTERING,
    JobState.STACKING,
    JobState.SCORING,
    JobState.DONE,
)


class CancellationToken:
    """
    Cooperative cancellation handle.

    ``cancel()`` may be called from any thread; the pipeline checks the
    token between frames and between stages.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str = "") -> None:
        if self._event.is_set():
            raise JobCancelled(stage)


@dataclass(frozen=True)
class ProgressEvent:
    """One progress notification."""

    current: int
    total: int
    message: str
    stage: JobState


class ProgressSink(Protocol):
    """Receives progress events, always from one thread at a time."""

    def __call__(self, event: ProgressEvent) -> None: ...


class OrderedProgress:
    """
    Buffer out-of-order frame completions and emit them in index order.

    Events are dropped once the job's token is cancelled.
    """

    def __init__(
        self,
        sink: ProgressSink | None,
        total: int,
        stage: JobState,
        token: CancellationToken,
    ) -> None:
        self._sink = sink
        self._total = total
        self._stage = stage
        self._token = token
        self._lock = threading.Lock()
        self._pending: dict[int, str] = {}
        self._next = 0

    def complete(self, index: int, message: str) -> None:
        with self._lock:
            self._pending[index] = message
            while self._next in self._pending:
                text = self._pending.pop(self._next)
                self._next += 1
                if self._sink is None or self._token.cancelled:
                    continue
                self._sink(ProgressEvent(self._next, self._total, text, self._stage))


@dataclass
class StackJob:
    """
    One user-initiated stacking operation.

    Created per ``StackingPipeline.run`` call and dropped when it returns.
    """

    lights: list[LightInput]
    config: StackConfig
    calibration: CalibrationFrames | CalibrationSet | None = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    progress: ProgressSink | None = None
    state: JobState = JobState.IDLE

    def transition(self, new_state: JobState) -> None:
        """Move to ``new_state``; illegal moves raise ``RuntimeError``."""
        if self.state.is_terminal:
            raise RuntimeError(f"Job already {self.state.value}, cannot move to {new_state.value}")
        if new_state in (JobState.CANCELLED, JobState.FAILED):
            allowed = True
        else:
            allowed = (
                new_state in _STAGE_ORDER
                and _STAGE_ORDER.index(new_state) > _STAGE_ORDER.index(self.state)
            )
        if not allowed:
            raise RuntimeError(f"Illegal job transition {self.state.value} -> {new_state.value}")
        logger.debug("Job state %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    def emit(self, current: int, total: int, message: str) -> None:
        """Report a whole-stage event unless the job is cancelled."""
        if self.progress is not None and not self.cancel_token.cancelled:
            self.progress(ProgressEvent(current, total, message, self.state))


def _display_name(item: LightInput) -> str:
    if isinstance(item, Frame):
        return item.label
    if isinstance(item, LightFrameRef):
        return item.display_name
    return Path(item).name


class StackingPipeline:
    """
    Runs stacking jobs with one configuration.

    Parameters
    ----------
    config : StackConfig, optional
        Job configuration. Uses defaults if not provided.
    loader : FrameLoader, optional
        Decodes a path into a ``Frame``. Defaults to the FITS reader.
    preview_renderer : callable, optional
        Maps the linear result to an RGBA8 preview.
    """

    def __init__(
        self,
        config: StackConfig | None = None,
        loader: FrameLoader | None = None,
        preview_renderer: PreviewRenderer | None = None,
    ) -> None:
        self.config = config if config is not None else StackConfig()
        self.config.validate()
        self.loader = loader if loader is not None else read_frame
        self.preview_renderer = preview_renderer if preview_renderer is not None else render_preview

    def run(
        self,
        lights: Sequence[LightInput],
        calibration: CalibrationFrames | CalibrationSet | None = None,
        cancel_token: CancellationToken | None = None,
        progress: ProgressSink | None = None,
    ) -> StackResult | None:
        """
        Run one stacking job.

        Parameters
        ----------
        lights : sequence
            Light frames as ``LightFrameRef``, paths or decoded ``Frame``s,
            in input order. The first one is the registration reference.
        calibration : CalibrationFrames or CalibrationSet, optional
            Calibration file paths, or already-built master frames.
        cancel_token : CancellationToken, optional
            Cancellation handle; may be triggered from another thread.
        progress : ProgressSink, optional
            Progress callback.

        Returns
        -------
        StackResult or None
            None when the job was cancelled.

        Raises
        ------
        InsufficientFramesError
            With fewer than two lights, before any processing.
        StackingError
            Any fatal load, calibration or dimension error. The exception
            names the path or frame that triggered it.
        """
        job = StackJob(
            lights=list(lights),
            config=self.config,
            calibration=calibration,
            cancel_token=cancel_token if cancel_token is not None else CancellationToken(),
            progress=progress,
        )

        if len(job.lights) < MIN_FRAMES:
            job.transition(JobState.FAILED)
            raise InsufficientFramesError(len(job.lights), MIN_FRAMES)

        start = time.perf_counter()
        workers = resolve_workers(self.config.workers)
        try:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                result = self._execute(job, executor, workers)
        except JobCancelled as e:
            job.transition(JobState.CANCELLED)
            logger.info("Stacking job cancelled%s", f" during {e.stage}" if e.stage else "")
            return None
        except Exception:
            job.transition(JobState.FAILED)
            raise

        result.duration_ms = (time.perf_counter() - start) * 1000.0
        job.transition(JobState.DONE)
        logger.info(
            "Stacked %d frames (%s, alignment %s) in %.0f ms",
            result.frame_count, result.method, result.alignment_mode, result.duration_ms,
        )
        return result

    # --- Stages ---------------------------------------------------------------

    def _map_frames(
        self,
        job: StackJob,
        executor: Executor,
        items: Sequence[T],
        fn: Callable[[int, T], R],
        describe: Callable[[int], str],
    ) -> list[R]:
        """
        Run ``fn`` over frames in parallel, reporting each completion in order.

        The first failing frame cancels every frame not yet started; its
        exception (or that of an earlier frame) propagates.
        """
        stage = job.state
        tracker = OrderedProgress(job.progress, len(items), stage, job.cancel_token)

        def task(index: int) -> R:
            job.cancel_token.raise_if_cancelled(stage.value)
            value = fn(index, items[index])
            tracker.complete(index, describe(index))
            return value

        futures = [executor.submit(task, index) for index in range(len(items))]
        _, pending = wait(futures, return_when=FIRST_EXCEPTION)
        for future in pending:
            future.cancel()
        results = [future.result() for future in futures]
        job.cancel_token.raise_if_cancelled(stage.value)
        return results

    def _load_light(self, item: LightInput) -> Frame:
        if isinstance(item, Frame):
            return item
        ref = item if isinstance(item, LightFrameRef) else LightFrameRef(str(item), Path(item).name)
        try:
            frame = self.loader(ref.filepath)
        except StackingError:
            raise
        except (OSError, ValueError, TypeError) as e:
            raise FrameLoadError(ref.filepath, str(e)) from e
        if ref.filename and frame.filename != ref.filename:
            frame = replace(frame, filename=ref.filename)
        return frame

    def _calibrate(self, job: StackJob, executor: Executor) -> list[Frame]:
        job.transition(JobState.CALIBRATING)

        if isinstance(job.calibration, CalibrationSet):
            masters = job.calibration
        else:
            masters = load_calibration_set(job.calibration, self.loader)
        job.cancel_token.raise_if_cancelled(job.state.value)
        if not masters.is_empty:
            logger.info("Calibrating with master %s", ", ".join(role for role, _ in masters.roles()))

        names = [_display_name(item) for item in job.lights]

        def load_and_calibrate(index: int, item: LightInput) -> Frame:
            frame = self._load_light(item)
            return calibrate_frame(frame, masters)

        frames = self._map_frames(
            job, executor, job.lights, load_and_calibrate,
            lambda i: f"Calibrated {names[i]}",
        )

        reference_shape = frames[0].shape
        for frame in frames[1:]:
            if frame.shape != reference_shape:
                raise DimensionMismatchError(frame.label, expected=reference_shape, actual=frame.shape)
        return frames

    def _extract(
        self, job: StackJob, executor: Executor, frames: list[Frame]
    ) -> tuple[list[SourceCatalog], list[QualityMetric]]:
        job.transition(JobState.EXTRACTING)
        config = self.config
        score = config.effective_quality

        def extract(index: int, frame: Frame) -> tuple[SourceCatalog, QualityMetric | None]:
            catalog = extract_sources(frame, config.extraction)
            if len(catalog) == 0:
                logger.warning("No sources detected in %s", frame.label)
            metric = evaluate_quality(catalog, config.quality) if score else None
            return catalog, metric

        pairs = self._map_frames(
            job, executor, frames, extract,
            lambda i: f"Detected stars in {frames[i].label}",
        )
        catalogs = [c for c, _ in pairs]
        metrics = [m for _, m in pairs if m is not None]
        logger.info(
            "Extracted sources from %d frames (median %d per frame)",
            len(catalogs), int(np.median([len(c) for c in catalogs])),
        )
        return catalogs, metrics

    def _register(
        self,
        job: StackJob,
        executor: Executor,
        frames: list[Frame],
        catalogs: list[SourceCatalog],
    ) -> tuple[list[AlignedFrame], list[FrameAlignment]]:
        job.transition(JobState.REGISTERING)
        config = self.config
        mode = config.alignment_mode
        reference = catalogs[0]
        reference_shape = frames[0].shape

        def register(index: int, frame: Frame) -> tuple[AlignedFrame, FrameAlignment]:
            if index == 0:
                transform = Transform.reference()
            else:
                transform = register_catalogs(catalogs[index], reference, mode, config.registration)
                if transform.matched_stars == 0:
                    logger.warning(
                        "Registration failed for %s (%d vs %d sources), stacking unregistered",
                        frame.label, len(catalogs[index]), len(reference),
                    )
                else:
                    logger.debug("Registered %s: %r", frame.label, transform)
            aligned = resample_frame(frame, transform, reference_shape)
            if aligned.valid_fraction < 0.5:
                logger.warning("%s overlaps only %.0f%% of the reference", frame.label, 100 * aligned.valid_fraction)
            alignment = FrameAlignment(
                filename=frame.filename,
                transform=transform,
                ref_sources=len(reference),
                target_sources=len(catalogs[index]),
            )
            return aligned, alignment

        pairs = self._map_frames(
            job, executor, frames, register,
            lambda i: f"Aligned {frames[i].label}",
        )
        alignments = [a for _, a in pairs]
        n_failed = sum(1 for a in alignments if a.failed)
        logger.info(
            "Registration complete: %d registered, %d failed (reference %s)",
            len(alignments) - 1 - n_failed, n_failed, frames[0].label,
        )
        return [f for f, _ in pairs], alignments

    def _execute(self, job: StackJob, executor: Executor, workers: int) -> StackResult:
        config = self.config
        mode = config.alignment_mode
        n_frames = len(job.lights)

        frames = self._calibrate(job, executor)
        height, width = frames[0].shape
        filenames = [f.filename for f in frames]
        exposures = [f.exposure_s for f in frames]

        catalogs: list[SourceCatalog] = []
        metrics: list[QualityMetric] = []
        if mode is not AlignmentMode.NONE or config.effective_quality:
            catalogs, metrics = self._extract(job, executor, frames)

        alignments: list[FrameAlignment] = []
        if mode is AlignmentMode.NONE:
            aligned = [AlignedFrame.from_frame(f) for f in frames]
        else:
            aligned, alignments = self._register(job, executor, frames, catalogs)
        reference_filename = frames[0].filename if mode is not AlignmentMode.NONE else ""
        del frames, catalogs

        job.cancel_token.raise_if_cancelled(job.state.value)
        job.transition(JobState.STACKING)
        weights = quality_to_weights(metrics) if isinstance(config.method, Weighted) else None
        pixels, coverage = stack_frames(
            aligned, config.method, weights=weights, chunk_rows=config.chunk_rows, workers=workers,
        )
        del aligned
        job.cancel_token.raise_if_cancelled(job.state.value)
        job.emit(n_frames, n_frames, f"Stacked {n_frames} frames ({config.method.name})")

        if config.effective_quality:
            job.transition(JobState.SCORING)
            order = rank_frames(metrics)
            logger.info(
                "Quality scores: best %s (%.1f), worst %s (%.1f)",
                filenames[order[0]], metrics[order[0]].score,
                filenames[order[-1]], metrics[order[-1]].score,
            )
            job.cancel_token.raise_if_cancelled(job.state.value)
            job.emit(n_frames, n_frames, f"Scored {n_frames} frames")

        stats = compute_stack_statistics(pixels, coverage, n_frames, exposures)

        return StackResult(
            pixels=pixels,
            rgba_preview=self.preview_renderer(pixels),
            width=width,
            height=height,
            method=config.method.name,
            frame_count=n_frames,
            duration_ms=0.0,
            alignment_mode=mode.value,
            alignment_results=alignments,
            quality_metrics=metrics,
            coverage=coverage,
            filenames=filenames,
            reference_filename=reference_filename,
            statistics=stats.as_dict(),
        )


def stack_files(
    lights: Sequence[LightInput],
    method: str = "average",
    sigma: float = 2.5,
    alignment_mode: str | AlignmentMode = AlignmentMode.TRANSLATION,
    enable_quality: bool = False,
    calibration: CalibrationFrames | CalibrationSet | None = None,
    settings: Mapping[str, Any] | None = None,
    workers: int | None = None,
    loader: FrameLoader | None = None,
    progress: ProgressSink | None = None,
    cancel_token: CancellationToken | None = None,
) -> StackResult | None:
    """
    Stack light frames with external (string) option names.

    Parameters
    ----------
    lights : sequence
        Light frames (paths, ``LightFrameRef``s or ``Frame``s).
    method : str, default "average"
        One of average, median, sigma, min, max, winsorized, weighted.
    sigma : float, default 2.5
        Clipping multiplier for sigma and winsorized.
    alignment_mode : str or AlignmentMode, default "translation"
        none, translation or full.
    enable_quality : bool, default False
        Compute quality metrics (forced on by the weighted method).
    calibration : CalibrationFrames or CalibrationSet, optional
        Calibration frames.
    settings : mapping, optional
        Flat tunables, see ``StackConfig.from_settings``.
    workers : int, optional
        Worker threads. None = CPU count - 1.
    loader : FrameLoader, optional
        Frame decoder. Defaults to the FITS reader.
    progress : ProgressSink, optional
        Progress callback.
    cancel_token : CancellationToken, optional
        Cancellation handle.

    Returns
    -------
    StackResult or None
        None when cancelled.
    """
    config = StackConfig.from_settings(
        settings or {},
        method=parse_method(method, sigma),
        alignment_mode=parse_alignment_mode(alignment_mode),
        enable_quality=enable_quality,
    )
    config.workers = workers
    pipeline = StackingPipeline(config, loader=loader)
    return pipeline.run(lights, calibration=calibration, cancel_token=cancel_token, progress=progress)
