"""
Calibration frame handling: master frame creation and light correction.

    calibrated = (light - dark) / normalize(flat - bias)

Subtraction is skipped when no dark/bias is given and the division is
skipped when no flat is given. Inputs are never mutated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Literal, Sequence

import numpy as np

from .errors import CalibrationLoadError, DimensionMismatchError, FrameLoadError
from .frame import Frame
from .io import CalibrationFrames

logger = logging.getLogger(__name__)

# Normalized flat values at or below this are treated as 1.0
FLAT_EPSILON = 0.01


@dataclass(frozen=True)
class CalibrationSet:
    """Master calibration frames of one job; immutable once built."""

    dark: Frame | None = None
    flat: Frame | None = None
    bias: Frame | None = None

    @property
    def is_empty(self) -> bool:
        return self.dark is None and self.flat is None and self.bias is None

    def roles(self) -> list[tuple[str, Frame]]:
        """Present (role, frame) pairs."""
        return [
            (role, frame)
            for role, frame in (("dark", self.dark), ("flat", self.flat), ("bias", self.bias))
            if frame is not None
        ]

    def check_dimensions(self, shape: tuple[int, int], source: str = "light frame") -> None:
        """
        Raise ``DimensionMismatchError`` if any master disagrees with ``shape``.

        Parameters
        ----------
        shape : tuple[int, int]
            Expected (height, width).
        source : str
            Name of the light frame, used in the error message.
        """
        for role, frame in self.roles():
            if frame.shape != tuple(shape):
                raise DimensionMismatchError(
                    f"{role} frame {frame.label} (for {source})",
                    expected=tuple(shape),
                    actual=frame.shape,
                )


def combine_frames(
    frames: Sequence[Frame],
    method: Literal["median", "mean"] = "median",
    filename: str = "",
) -> Frame:
    """
    Combine raw calibration exposures into one master frame.

    Parameters
    ----------
    frames : sequence of Frame
        Raw exposures of one calibration role.
    method : {"median", "mean"}, default "median"
        Per-pixel reducer. Median is robust to single-frame defects.
    filename : str, optional
        Name of the resulting master frame.

    Returns
    -------
    Frame
        New frame; a single input is copied as-is.
    """
    if len(frames) == 0:
        raise ValueError("Empty frame list")

    first = frames[0]
    for frame in frames[1:]:
        if frame.shape != first.shape:
            raise DimensionMismatchError(frame.label, expected=first.shape, actual=frame.shape)

    name = filename or f"master({first.label})"
    if len(frames) == 1:
        return first.with_data(first.data.copy())

    cube = np.stack([f.data for f in frames], axis=0)
    if method == "median":
        data = np.median(cube, axis=0)
    elif method == "mean":
        data = np.mean(cube, axis=0, dtype=np.float64)
    else:
        raise ValueError(f"Unknown combine method {method!r}")

    logger.info("Combined %d frames into %s (%s)", len(frames), name, method)

    exposures = [f.exposure_s for f in frames]
    return Frame(
        data=data.astype(np.float32),
        filename=name,
        exposure_s=float(np.median(exposures)),
        filter_name=first.filter_name,
        header={"NCOMBINE": len(frames), "COMBINE": method},
    )


def build_master_dark(frames: Sequence[Frame]) -> Frame:
    """Median-combine dark exposures."""
    return combine_frames(frames, "median", filename="master_dark")


def build_master_bias(frames: Sequence[Frame]) -> Frame:
    """Median-combine bias exposures."""
    return combine_frames(frames, "median", filename="master_bias")


def build_master_flat(
    frames: Sequence[Frame],
    method: Literal["median", "mean"] = "median",
) -> Frame:
    """
    Combine flat exposures.

    Normalization is deferred to ``calibrate_frame`` so that a bias can be
    removed from the master flat first.
    """
    return combine_frames(frames, method, filename="master_flat")


def normalize_flat(flat: np.ndarray) -> np.ndarray:
    """
    Normalize a flat field to unit mean.

    The mean is taken over positive, finite pixels; a flat without any
    usable pixel is left unscaled.
    """
    flat = np.asarray(flat, dtype=np.float64)
    usable = np.isfinite(flat) & (flat > 0)
    mean = float(flat[usable].mean()) if np.any(usable) else 1.0
    return (flat / mean).astype(np.float32)


def calibrate_frame(light: Frame, calibration: CalibrationSet | None) -> Frame:
    """
    Apply master calibration frames to one light frame.

    Parameters
    ----------
    light : Frame
        Raw light frame.
    calibration : CalibrationSet or None
        Master frames; None or empty returns a copy of the light.

    Returns
    -------
    Frame
        New calibrated frame of identical dimensions.

    Raises
    ------
    DimensionMismatchError
        If a master frame's shape differs from the light frame's.

    Notes
    -----
    A master dark already contains the bias pedestal, so the bias is only
    subtracted from the light when no dark is supplied. The bias is always
    removed from the flat before normalization.
    """
    if calibration is None or calibration.is_empty:
        return light.with_data(light.data.copy())

    calibration.check_dimensions(light.shape, source=light.label)

    result = light.data.astype(np.float64)

    if calibration.dark is not None:
        result = result - calibration.dark.data
    elif calibration.bias is not None:
        result = result - calibration.bias.data

    if calibration.flat is not None:
        flat = calibration.flat.data.astype(np.float64)
        if calibration.bias is not None:
            flat = flat - calibration.bias.data
        norm = normalize_flat(flat)
        safe = np.where(np.isfinite(norm) & (norm > FLAT_EPSILON), norm, 1.0)
        result = result / safe

    return light.with_data(result.astype(np.float32))


def _load_role(
    role: str,
    paths: list[str],
    loader: Callable[[str], Frame],
    combine: Callable[[Sequence[Frame]], Frame],
) -> Frame | None:
    if not paths:
        return None
    frames = []
    for path in paths:
        try:
            frames.append(loader(path))
        except (FrameLoadError, OSError, ValueError) as e:
            raise CalibrationLoadError(path, role, str(e)) from e
    try:
        master = combine(frames)
    except DimensionMismatchError:
        raise
    except ValueError as e:
        raise CalibrationLoadError(paths[0], role, str(e)) from e
    logger.info("Master %s ready from %d frame(s)", role, len(frames))
    return master


def load_calibration_set(
    frames: CalibrationFrames | None,
    loader: Callable[[str], Frame],
) -> CalibrationSet:
    """
    Load and combine calibration files into a ``CalibrationSet``.

    Parameters
    ----------
    frames : CalibrationFrames or None
        Paths per role.
    loader : callable
        Frame loader (path -> Frame).

    Returns
    -------
    CalibrationSet
        Master frames (empty set when no paths are given).

    Raises
    ------
    CalibrationLoadError
        If any calibration file cannot be decoded.
    DimensionMismatchError
        If exposures of one role disagree in shape.
    """
    if frames is None or frames.is_empty:
        return CalibrationSet()

    return CalibrationSet(
        dark=_load_role("dark", frames.dark, loader, build_master_dark),
        flat=_load_role("flat", frames.flat, loader, build_master_flat),
        bias=_load_role("bias", frames.bias, loader, build_master_bias),
    )
