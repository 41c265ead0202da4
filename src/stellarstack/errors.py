"""
Exception hierarchy for the stacking engine.

Fatal job errors carry a message plus a ``details`` dict naming the frame
or path that triggered them, so callers can display a useful message.
"""

from __future__ import annotations

from typing import Any


class StackingError(Exception):
    """Base exception for all stacking engine errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class InsufficientFramesError(StackingError, ValueError):
    """Raised when a job has fewer than two usable light frames."""

    def __init__(self, count: int, required: int = 2) -> None:
        super().__init__(
            f"At least {required} frames are required for stacking, got {count}",
            {"count": count, "required": required},
        )
        self.count = count


class DimensionMismatchError(StackingError, ValueError):
    """Raised when a light or calibration frame disagrees with the reference shape."""

    def __init__(
        self,
        source: str,
        expected: tuple[int, ...],
        actual: tuple[int, ...],
    ) -> None:
        super().__init__(
            f"Dimension mismatch: {source} is {actual[-1]}x{actual[0]}, "
            f"expected {expected[-1]}x{expected[0]}",
            {"source": source, "expected": tuple(expected), "actual": tuple(actual)},
        )
        self.source = source
        self.expected = tuple(expected)
        self.actual = tuple(actual)


class FrameLoadError(StackingError):
    """Raised when a frame file cannot be decoded."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Failed to read image data from {path}: {reason}", {"path": path})
        self.path = path


class CalibrationLoadError(StackingError):
    """Raised when a calibration file cannot be decoded or applied."""

    def __init__(self, path: str, role: str, reason: str) -> None:
        super().__init__(
            f"Failed to load {role} calibration frame {path}: {reason}",
            {"path": path, "role": role},
        )
        self.path = path
        self.role = role


class JobCancelled(StackingError):
    """Cooperative cancellation signal; never escapes the orchestrator."""

    def __init__(self, stage: str = "") -> None:
        super().__init__("Stacking job cancelled", {"stage": stage} if stage else None)
        self.stage = stage
