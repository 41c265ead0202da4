"""
Small shared helpers: version info, worker counts, preview levels and
duration formatting.
"""

from __future__ import annotations

import os
import platform
import sys
from datetime import datetime, timezone

import numpy as np

__version__ = "0.4.0"
__version_info__ = {
    "major": 0,
    "minor": 4,
    "patch": 0,
    "status": "beta",
    "date": "2026-10-17",
}

# Leave one core to the caller
DEFAULT_WORKERS = max(1, (os.cpu_count() or 5) - 1)


def get_version() -> str:
    return __version__


def get_version_banner() -> str:
    """One-line banner logged at job start."""
    return f"stellarstack v{__version__} | Multi-frame stacking engine"


def get_platform_info() -> str:
    py = ".".join(str(part) for part in sys.version_info[:3])
    return f"{platform.system()} {platform.release()} / Python {py}"


def get_timestamp_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def resolve_workers(workers: int | None) -> int:
    """Resolve a worker count, ``None`` meaning CPU count minus one."""
    if workers is None:
        return DEFAULT_WORKERS
    return max(1, int(workers))


def display_levels(
    data: np.ndarray,
    percentiles: tuple[float, float] = (1.0, 99.5),
) -> tuple[float, float] | None:
    """
    Black and white points of a linear image.

    Parameters
    ----------
    data : np.ndarray
        Linear image; non-finite pixels are ignored.
    percentiles : tuple[float, float], default (1.0, 99.5)
        Percentiles mapped to black and white.

    Returns
    -------
    tuple[float, float] or None
        ``(black, white)``, or None for an empty or flat image.
    """
    finite = data[np.isfinite(data)]
    if finite.size == 0:
        return None
    black, white = np.percentile(finite, percentiles)
    if white - black < 1e-10:
        return None
    return float(black), float(white)


def grey_rgba8(data: np.ndarray, levels: tuple[float, float] | None) -> np.ndarray:
    """Map ``data`` through ``levels`` to an opaque grey (H, W, 4) uint8 image."""
    rgba = np.zeros(data.shape + (4,), dtype=np.uint8)
    rgba[..., 3] = 255
    if levels is None:
        return rgba
    black, white = levels
    scaled = np.nan_to_num((data - black) / (white - black), nan=0.0, posinf=1.0, neginf=0.0)
    rgba[..., :3] = (np.clip(scaled, 0.0, 1.0) * 255).astype(np.uint8)[..., None]
    return rgba


def format_duration(seconds: float) -> str:
    """Human-readable duration: ``45.2s``, ``3m 05s`` or ``2h 15m 30s``."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(round(seconds)), 60)
    if minutes < 60:
        return f"{minutes}m {secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m {secs:02d}s"
