"""
Frame containers shared by every pipeline stage.

A ``Frame`` owns one single-channel float32 pixel buffer plus scalar
metadata. Stages never mutate a frame they were handed: derived buffers
are wrapped in a new frame via ``Frame.with_data``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

import numpy as np


@dataclass
class Frame:
    """Single-channel image with acquisition metadata."""

    data: np.ndarray
    """Pixel samples, shape (height, width), float32."""

    filename: str = ""
    """Display name (usually the file's base name)."""

    path: str = ""
    """Source path, empty for synthetic frames."""

    exposure_s: float = 0.0
    """Exposure time in seconds (0 when unknown)."""

    filter_name: str = ""
    """Optical filter name (empty when unknown)."""

    header: dict[str, Any] = field(default_factory=dict)
    """Extra scalar metadata copied from the source file."""

    def __post_init__(self) -> None:
        data = np.asarray(self.data)
        if data.ndim != 2:
            raise ValueError(f"Frame data must be 2D, got shape {data.shape}")
        if data.dtype != np.float32:
            data = data.astype(np.float32)
        self.data = data

    @property
    def height(self) -> int:
        return int(self.data.shape[0])

    @property
    def width(self) -> int:
        return int(self.data.shape[1])

    @property
    def shape(self) -> tuple[int, int]:
        return (self.height, self.width)

    @property
    def label(self) -> str:
        """Best human-readable identifier for messages."""
        return self.filename or self.path or "<in-memory frame>"

    def with_data(self, data: np.ndarray) -> Frame:
        """Return a new frame with the same metadata and new pixels."""
        return replace(self, data=data, header=dict(self.header))


@dataclass
class AlignedFrame:
    """
    Frame resampled onto the reference pixel grid.

    ``valid`` marks pixels that received data; pixels whose source position
    fell outside the original frame are "no data" and are excluded from
    every reducer.
    """

    data: np.ndarray
    valid: np.ndarray
    filename: str = ""

    def __post_init__(self) -> None:
        self.data = np.asarray(self.data, dtype=np.float32)
        self.valid = np.asarray(self.valid, dtype=bool)
        if self.data.shape != self.valid.shape:
            raise ValueError(
                f"Validity map shape {self.valid.shape} does not match data shape {self.data.shape}"
            )

    @property
    def shape(self) -> tuple[int, int]:
        return self.data.shape

    @property
    def valid_fraction(self) -> float:
        return float(np.count_nonzero(self.valid) / self.valid.size) if self.valid.size else 0.0

    @classmethod
    def from_frame(cls, frame: Frame) -> AlignedFrame:
        """Wrap an unresampled frame, every pixel valid."""
        return cls(
            data=frame.data.copy(),
            valid=np.ones(frame.shape, dtype=bool),
            filename=frame.filename,
        )
