"""
I/O boundary of the stacking engine.

Decoding and export belong to external collaborators; this module only
defines the interface the pipeline consumes:
- ``FrameLoader``: path -> ``Frame``
- Job submission records (``LightFrameRef``, ``CalibrationFrames``)
- Default FITS loader (astropy) and grey RGBA preview renderer
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Protocol, Sequence, Union

import numpy as np
from astropy.io import fits

from .errors import FrameLoadError
from .frame import Frame
from .utils import display_levels, grey_rgba8

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# Header keywords carrying exposure time, in lookup order
EXPOSURE_KEYWORDS = ("EXPTIME", "EXPOSURE", "EXP_TIME")
FILTER_KEYWORDS = ("FILTER", "FILTER1")


class FrameLoader(Protocol):
    """Decode one file into a single-channel ``Frame``."""

    def __call__(self, path: str) -> Frame: ...


PreviewRenderer = Callable[[np.ndarray], np.ndarray]


@dataclass(frozen=True)
class LightFrameRef:
    """A light frame submitted for stacking."""

    filepath: str
    filename: str = ""

    @property
    def display_name(self) -> str:
        return self.filename or Path(self.filepath).name


@dataclass
class CalibrationFrames:
    """
    Calibration file paths for one job.

    Each role accepts a single path or a list of paths; lists are combined
    into a master frame before use.
    """

    dark: list[str] = field(default_factory=list)
    flat: list[str] = field(default_factory=list)
    bias: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.dark = _as_path_list(self.dark)
        self.flat = _as_path_list(self.flat)
        self.bias = _as_path_list(self.bias)

    @property
    def is_empty(self) -> bool:
        return not (self.dark or self.flat or self.bias)


def _as_path_list(value: PathLike | Sequence[PathLike] | None) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (str, Path)):
        return [str(value)]
    return [str(v) for v in value]


def as_light_refs(lights: Sequence[LightFrameRef | PathLike]) -> list[LightFrameRef]:
    """Normalize paths and refs to ``LightFrameRef`` records."""
    refs = []
    for item in lights:
        if isinstance(item, LightFrameRef):
            refs.append(item)
        else:
            refs.append(LightFrameRef(filepath=str(item), filename=Path(item).name))
    return refs


def _header_value(header: fits.Header, keys: Sequence[str], default=None):
    for key in keys:
        if key in header:
            return header[key]
    return default


def read_frame(path: PathLike) -> Frame:
    """
    Read a FITS file into a single-channel ``Frame``.

    Parameters
    ----------
    path : str or Path
        Path to the FITS file.

    Returns
    -------
    Frame
        Frame with float32 data and header-derived metadata.

    Notes
    -----
    The first HDU holding 2D or 3D image data is used. Colour cubes are
    reduced to luminance by a plain channel mean; astropy applies
    BZERO/BSCALE on read.
    """
    path = Path(path)
    try:
        with fits.open(path, memmap=False) as hdul:
            hdu = next(
                (h for h in hdul if h.data is not None and np.ndim(h.data) in (2, 3)),
                None,
            )
            if hdu is None:
                raise ValueError("no 2D image data found")
            data = np.asarray(hdu.data, dtype=np.float32)
            header = hdu.header
            exposure = _header_value(header, EXPOSURE_KEYWORDS, 0.0)
            filter_name = _header_value(header, FILTER_KEYWORDS, "")
            extra = {
                k: header[k]
                for k in ("DATE-OBS", "OBJECT", "INSTRUME", "GAIN", "CCD-TEMP")
                if k in header
            }
    except FileNotFoundError:
        raise FrameLoadError(str(path), "file not found") from None
    except (OSError, ValueError, TypeError) as e:
        raise FrameLoadError(str(path), str(e)) from e

    if data.ndim == 3:
        # (C, H, W) as stored by most writers, or (H, W, C)
        axis = 0 if data.shape[0] <= 4 else -1
        data = data.mean(axis=axis).astype(np.float32)

    logger.debug("Read %s: %dx%d, exptime=%s", path.name, data.shape[1], data.shape[0], exposure)

    return Frame(
        data=data,
        filename=path.name,
        path=str(path),
        exposure_s=float(exposure or 0.0),
        filter_name=str(filter_name or ""),
        header=extra,
    )


def render_preview(
    pixels: np.ndarray,
    percentiles: tuple[float, float] = (1.0, 99.5),
) -> np.ndarray:
    """
    Default preview collaborator: linear percentile stretch to grey RGBA8.

    Parameters
    ----------
    pixels : np.ndarray
        Linear combined image.
    percentiles : tuple[float, float], default (1.0, 99.5)
        Black and white points.

    Returns
    -------
    np.ndarray
        uint8 array of shape (height, width, 4).
    """
    return grey_rgba8(pixels, display_levels(pixels, percentiles))


def write_array(data: np.ndarray, path: PathLike) -> Path:
    """Save a linear buffer as ``.npy`` (no display encoding)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    np.save(path, data)
    logger.info("Wrote %s", path)
    return path
