"""
Pixel combination of aligned frames.

Implements average, median, min, max, sigma-clipped mean, winsorized mean
and quality-weighted mean over the valid samples of each pixel.

Designed for memory efficiency: the stack is processed in row tiles so
that only O(n_frames x chunk_rows x width) samples are resident at once.
Tiles are independent and are distributed over a thread pool; each tile
writes only its own output rows.
"""

from __future__ import annotations

import logging
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from astropy.stats import sigma_clip

from .config import (
    Average,
    Maximum,
    Median,
    Minimum,
    SigmaClip,
    StackMethod,
    Weighted,
    Winsorized,
)
from .errors import DimensionMismatchError
from .frame import AlignedFrame
from .quality import estimate_noise_mad

logger = logging.getLogger(__name__)

FrameLike = AlignedFrame | np.ndarray


@dataclass
class StackStatistics:
    """Statistics from a stacking operation."""

    n_frames: int
    total_exposure_s: float
    mean_rejected_fraction: float  # Average fraction of samples not contributing per pixel
    snr_proxy: float  # Simple SNR estimate
    empty_pixels: int = 0  # Pixels without any valid sample

    def as_dict(self) -> dict[str, float]:
        return {
            "n_frames": self.n_frames,
            "total_exposure_s": self.total_exposure_s,
            "mean_rejected_fraction": self.mean_rejected_fraction,
            "snr_proxy": self.snr_proxy,
            "empty_pixels": self.empty_pixels,
        }


def _as_aligned(frame: FrameLike) -> AlignedFrame:
    if isinstance(frame, AlignedFrame):
        return frame
    data = np.asarray(frame, dtype=np.float32)
    return AlignedFrame(data=data, valid=np.ones(data.shape, dtype=bool))


def _sigma_clip(cube: np.ma.MaskedArray, sigma: float) -> np.ma.MaskedArray:
    """Clip |v - mean| > sigma * std iteratively until nothing changes."""
    return sigma_clip(
        cube,
        sigma=sigma,
        maxiters=None,
        cenfunc="mean",
        stdfunc="std",
        axis=0,
        masked=True,
        copy=True,
    )


def _reduce_tile(
    data: np.ndarray,
    valid: np.ndarray,
    method: StackMethod,
    weights: np.ndarray | None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Combine one tile.

    Parameters
    ----------
    data : np.ndarray
        float64 samples, shape (n_frames, rows, width).
    valid : np.ndarray
        Validity of each sample, same shape.
    method : StackMethod
        Reducer.
    weights : np.ndarray or None
        Per-frame weights (weighted method only).

    Returns
    -------
    tuple[np.ndarray, np.ndarray]
        (combined float64 with 0 where no sample is valid, contributing count)
    """
    cube = np.ma.MaskedArray(data, mask=~valid)
    n_valid = valid.sum(axis=0)
    contributing = n_valid

    if isinstance(method, Average):
        result = cube.mean(axis=0)
    elif isinstance(method, Median):
        result = np.ma.median(cube, axis=0)
    elif isinstance(method, Minimum):
        result = cube.min(axis=0)
    elif isinstance(method, Maximum):
        result = cube.max(axis=0)
    elif isinstance(method, SigmaClip):
        clipped = _sigma_clip(cube, method.sigma)
        result = clipped.mean(axis=0)
        contributing = (~np.ma.getmaskarray(clipped)).sum(axis=0)
    elif isinstance(method, Winsorized):
        clipped = _sigma_clip(cube, method.sigma)
        lo = clipped.min(axis=0).filled(-np.inf)
        hi = clipped.max(axis=0).filled(np.inf)
        clamped = np.ma.MaskedArray(np.clip(data, lo, hi), mask=~valid)
        result = clamped.mean(axis=0)
    elif isinstance(method, Weighted):
        w = weights[:, None, None] * valid
        w_sum = w.sum(axis=0)
        weighted = np.divide(
            (w * np.where(valid, data, 0.0)).sum(axis=0),
            w_sum,
            out=np.zeros(w_sum.shape, dtype=np.float64),
            where=w_sum > 0,
        )
        # Every contributing weight zero: plain mean of the valid samples
        plain = cube.mean(axis=0).filled(0.0)
        result = np.where(w_sum > 0, weighted, plain)
        contributing = np.where(w_sum > 0, (w > 0).sum(axis=0), n_valid)
    else:
        raise ValueError(f"Unsupported stacking method: {method!r}")

    result = np.ma.filled(result, np.nan).astype(np.float64)

    # Everything rejected at a covered pixel: fall back to the plain mean
    lost = np.isnan(result) & (n_valid > 0)
    if np.any(lost):
        result[lost] = cube.mean(axis=0).filled(0.0)[lost]
        contributing = np.where(lost, n_valid, contributing)

    result[n_valid == 0] = 0.0
    return result, np.asarray(contributing)


def stack_frames(
    frames: Sequence[FrameLike],
    method: StackMethod | None = None,
    weights: Sequence[float] | np.ndarray | None = None,
    chunk_rows: int = 64,
    workers: int = 1,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Combine aligned frames pixel by pixel.

    Parameters
    ----------
    frames : sequence of AlignedFrame or np.ndarray
        Frames sharing one pixel grid. Plain arrays are fully valid.
    method : StackMethod, optional
        Reducer. Defaults to ``Average()``.
    weights : sequence of float, optional
        Per-frame weights, required by ``Weighted``.
    chunk_rows : int, default 64
        Rows per tile.
    workers : int, default 1
        Threads used for tiles.

    Returns
    -------
    tuple[np.ndarray, np.ndarray]
        (stacked_image, coverage)
        stacked_image: float32 combined image, 0 where no frame has data.
        coverage: int16 number of samples contributing to each pixel.

    Raises
    ------
    ValueError
        On an empty frame list, or weights missing or mismatched.
    DimensionMismatchError
        If frames disagree in shape.

    Notes
    -----
    Each pixel is combined over its valid samples only; non-finite samples
    count as no data. Accumulation is done in float64, so a single frame
    stacks to itself under every method.
    """
    if method is None:
        method = Average()
    if len(frames) == 0:
        raise ValueError("Empty frame list")

    aligned = [_as_aligned(f) for f in frames]
    n_frames = len(aligned)
    height, width = aligned[0].shape
    for i, frame in enumerate(aligned[1:], start=1):
        if frame.shape != (height, width):
            raise DimensionMismatchError(
                frame.filename or f"frame {i}", expected=(height, width), actual=frame.shape
            )

    w = None
    if isinstance(method, Weighted):
        if weights is None:
            raise ValueError("Weighted stacking requires per-frame weights")
        w = np.asarray(weights, dtype=np.float64)
        if w.shape != (n_frames,):
            raise ValueError(f"Expected {n_frames} weights, got {w.size}")
        w = np.where(np.isfinite(w) & (w > 0), w, 0.0)

    chunk_rows = max(1, int(chunk_rows))
    logger.info(
        "Stacking %d frames (%dx%d) with method=%s, chunk_rows=%d, workers=%d",
        n_frames, width, height, method.name, chunk_rows, workers,
    )

    stacked = np.zeros((height, width), dtype=np.float32)
    coverage = np.zeros((height, width), dtype=np.int16)

    def process(row_start: int) -> None:
        row_end = min(row_start + chunk_rows, height)
        data = np.empty((n_frames, row_end - row_start, width), dtype=np.float64)
        valid = np.empty(data.shape, dtype=bool)
        for i, frame in enumerate(aligned):
            data[i] = frame.data[row_start:row_end]
            valid[i] = frame.valid[row_start:row_end]
        valid &= np.isfinite(data)
        data[~valid] = 0.0

        result, contributing = _reduce_tile(data, valid, method, w)

        stacked[row_start:row_end] = result.astype(np.float32)
        coverage[row_start:row_end] = contributing.astype(np.int16)

    starts = range(0, height, chunk_rows)
    # The filter list is process-global: only this thread touches it, tile
    # workers run inside the block
    with warnings.catch_warnings():
        # Fully masked columns are expected at frame edges
        warnings.simplefilter("ignore", category=RuntimeWarning)
        warnings.simplefilter("ignore", category=UserWarning)
        if workers <= 1 or len(starts) == 1:
            for row_start in starts:
                process(row_start)
        else:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                # list() re-raises the first tile error
                list(executor.map(process, starts))

    logger.info(
        "Stack complete. Mean contributing frames: %.1f, min: %d, max: %d",
        float(np.mean(coverage)),
        int(np.min(coverage)),
        int(np.max(coverage)),
    )

    return stacked, coverage


def sigma_clip_mean(
    frames: Sequence[FrameLike],
    sigma: float = 2.5,
    chunk_rows: int = 64,
    workers: int = 1,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Compute sigma-clipped mean of an image stack.

    Parameters
    ----------
    frames : sequence of AlignedFrame or np.ndarray
        Frames sharing one pixel grid.
    sigma : float, default 2.5
        Number of standard deviations for clipping threshold.
    chunk_rows : int, default 64
        Rows per tile.
    workers : int, default 1
        Threads used for tiles.

    Returns
    -------
    tuple[np.ndarray, np.ndarray]
        (stacked_image, coverage) as returned by ``stack_frames``.

    Notes
    -----
    Sigma clipping iteratively rejects outliers (cosmic rays, satellites,
    hot pixels) that deviate more than `sigma` standard deviations from
    the mean at each pixel position, until no further sample is rejected.
    """
    return stack_frames(frames, SigmaClip(sigma), chunk_rows=chunk_rows, workers=workers)


def weighted_mean(
    frames: Sequence[FrameLike],
    weights: Sequence[float],
) -> np.ndarray:
    """
    Compute weighted mean of image stack.

    Parameters
    ----------
    frames : sequence of AlignedFrame or np.ndarray
        Frames sharing one pixel grid.
    weights : sequence of float
        Weight for each frame (e.g., from quality scores).

    Returns
    -------
    np.ndarray
        Weighted mean image.
    """
    if len(frames) != len(weights):
        raise ValueError("Number of frames must match number of weights")
    stacked, _ = stack_frames(frames, Weighted(), weights=weights)
    return stacked


def median_stack(frames: Sequence[FrameLike]) -> np.ndarray:
    """
    Simple median stack (no sigma clipping).

    Notes
    -----
    Median is more robust to outliers than mean but less
    optimal for noise reduction.
    """
    stacked, _ = stack_frames(frames, Median())
    return stacked


def compute_stack_statistics(
    stacked: np.ndarray,
    coverage: np.ndarray,
    n_frames: int,
    exposure_s: float | Sequence[float] = 0.0,
) -> StackStatistics:
    """
    Compute statistics for the stacked result.

    Parameters
    ----------
    stacked : np.ndarray
        Stacked image.
    coverage : np.ndarray
        Number of frames contributing per pixel.
    n_frames : int
        Total number of input frames.
    exposure_s : float or sequence of float
        Exposure time per frame in seconds, or one value per frame.

    Returns
    -------
    StackStatistics
        Statistics dataclass.
    """
    if np.ndim(exposure_s) == 0:
        total_exposure = n_frames * float(exposure_s)
    else:
        total_exposure = float(np.sum(exposure_s))

    avg_contributing = float(np.mean(coverage)) if coverage.size else 0.0
    rejected_fraction = 1.0 - (avg_contributing / n_frames) if n_frames else 0.0

    # Simple SNR proxy: median signal over MAD noise of covered pixels
    covered = stacked[coverage > 0]
    if covered.size:
        signal = float(np.median(covered))
        noise = estimate_noise_mad(covered)
        snr_proxy = signal / noise if noise > 0 else 0.0
    else:
        snr_proxy = 0.0

    return StackStatistics(
        n_frames=n_frames,
        total_exposure_s=total_exposure,
        mean_rejected_fraction=rejected_fraction,
        snr_proxy=snr_proxy,
        empty_pixels=int(np.count_nonzero(coverage == 0)),
    )
