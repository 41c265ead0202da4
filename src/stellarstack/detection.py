"""
Source (star) extraction for single frames.

Pipeline:
1. Mesh background and noise estimation, bilinearly interpolated
2. Optional matched filter (Gaussian) on the background-subtracted image
3. Thresholding at ``sigma_threshold`` times the local noise
4. Connected-component labeling and multi-threshold deblending
5. Moment-based measurement (centroid, FWHM, ellipticity) and filtering

Extraction is a pure function of frame + configuration and never fails:
an empty catalog is a valid result.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Iterable, Iterator, overload

import numpy as np
from astropy.stats import mad_std, sigma_clipped_stats
from scipy import ndimage

from .config import ExtractionConfig
from .frame import Frame

logger = logging.getLogger(__name__)

EPS = 1e-8

# Gaussian sigma -> FWHM
FWHM_FACTOR = 2.0 * math.sqrt(2.0 * math.log(2.0))


@dataclass(frozen=True)
class Source:
    """One detected star."""

    x: float
    """Flux-weighted centroid column (pixels)."""

    y: float
    """Flux-weighted centroid row (pixels)."""

    flux: float
    """Background-subtracted flux summed over the source pixels."""

    peak: float
    """Brightest background-subtracted pixel."""

    area: int
    """Number of pixels in the source footprint."""

    fwhm: float
    """Second-moment FWHM estimate (pixels)."""

    ellipticity: float
    """1 - minor/major axis ratio (0 = round)."""

    theta: float = 0.0
    """Major axis position angle (radians)."""

    snr: float = 0.0
    """Aperture signal-to-noise estimate."""

    deblended: bool = False
    """True when the source was split out of a blended component."""


def _catalog_order(source: Source) -> tuple[float, float, float]:
    # Descending flux, exact ties broken by ascending y then x
    return (-source.flux, source.y, source.x)


class SourceCatalog(Sequence):
    """
    Immutable, deterministically ordered collection of sources of one frame.

    Sources are ordered by descending flux; exact flux ties are broken by
    ascending centroid y, then x. The catalog also records the background
    level and global noise of the frame it was extracted from (0 when
    unknown).
    """

    __slots__ = ("_sources", "background_median", "background_noise")

    def __init__(
        self,
        sources: Iterable[Source] = (),
        background_median: float = 0.0,
        background_noise: float = 0.0,
    ) -> None:
        self._sources: tuple[Source, ...] = tuple(sorted(sources, key=_catalog_order))
        self.background_median = float(background_median)
        self.background_noise = float(background_noise)

    def _derive(self, sources: Iterable[Source]) -> SourceCatalog:
        return SourceCatalog(sources, self.background_median, self.background_noise)

    @overload
    def __getitem__(self, index: int) -> Source: ...

    @overload
    def __getitem__(self, index: slice) -> SourceCatalog: ...

    def __getitem__(self, index):
        if isinstance(index, slice):
            return self._derive(self._sources[index])
        return self._sources[index]

    def __len__(self) -> int:
        return len(self._sources)

    def __iter__(self) -> Iterator[Source]:
        return iter(self._sources)

    def __repr__(self) -> str:
        return f"SourceCatalog(n={len(self._sources)})"

    def brightest(self, k: int) -> SourceCatalog:
        """Return the ``k`` highest-flux sources."""
        return self._derive(self._sources[: max(0, k)])

    def positions(self) -> np.ndarray:
        """Centroids as an (N, 2) float64 array of (x, y)."""
        if not self._sources:
            return np.empty((0, 2), dtype=np.float64)
        return np.array([(s.x, s.y) for s in self._sources], dtype=np.float64)

    def fluxes(self) -> np.ndarray:
        return np.array([s.flux for s in self._sources], dtype=np.float64)

    def fwhms(self) -> np.ndarray:
        return np.array([s.fwhm for s in self._sources], dtype=np.float64)

    def ellipticities(self) -> np.ndarray:
        return np.array([s.ellipticity for s in self._sources], dtype=np.float64)

    def peaks(self) -> np.ndarray:
        return np.array([s.peak for s in self._sources], dtype=np.float64)

    def snrs(self) -> np.ndarray:
        return np.array([s.snr for s in self._sources], dtype=np.float64)


@dataclass
class BackgroundMap:
    """Full-resolution background model of one frame."""

    background: np.ndarray
    """Interpolated background level (float32)."""

    noise_map: np.ndarray
    """Interpolated background noise sigma (float32)."""

    noise: float
    """Global noise: median of the per-cell sigmas."""

    @property
    def level(self) -> float:
        """Median background level over the frame."""
        return float(np.median(self.background))


def _cell_stats(values: np.ndarray, sigma_clip_iters: int) -> tuple[float, float]:
    """Robust (median, sigma) of one mesh cell."""
    if values.size == 0:
        return float("nan"), 0.0
    if sigma_clip_iters <= 0 or values.size < 8:
        return float(np.median(values)), float(mad_std(values))
    _, median, std = sigma_clipped_stats(
        values,
        sigma=3.0,
        maxiters=sigma_clip_iters,
        cenfunc="median",
        stdfunc="mad_std",
    )
    return float(median), float(std)


def _interp_axis(n_pixels: int, n_cells: int, mesh_size: int) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Cell indices and weights for bilinear interpolation between cell centres."""
    pos = (np.arange(n_pixels) + 0.5) / mesh_size - 0.5
    i0 = np.clip(np.floor(pos).astype(int), 0, n_cells - 1)
    i1 = np.minimum(i0 + 1, n_cells - 1)
    t = np.clip(pos - i0, 0.0, 1.0)
    t[i0 == i1] = 0.0
    return i0, i1, t


def _interpolate_mesh(mesh: np.ndarray, shape: tuple[int, int], mesh_size: int) -> np.ndarray:
    ny, nx = mesh.shape
    y0, y1, ty = _interp_axis(shape[0], ny, mesh_size)
    x0, x1, tx = _interp_axis(shape[1], nx, mesh_size)
    ty = ty[:, None]
    tx = tx[None, :]
    v00 = mesh[np.ix_(y0, x0)]
    v01 = mesh[np.ix_(y0, x1)]
    v10 = mesh[np.ix_(y1, x0)]
    v11 = mesh[np.ix_(y1, x1)]
    out = (
        v00 * (1 - ty) * (1 - tx)
        + v01 * (1 - ty) * tx
        + v10 * ty * (1 - tx)
        + v11 * ty * tx
    )
    return out.astype(np.float32)


def estimate_background(
    data: np.ndarray,
    mesh_size: int = 64,
    sigma_clip_iters: int = 2,
) -> BackgroundMap:
    """
    Estimate background level and noise on a coarse mesh.

    Parameters
    ----------
    data : np.ndarray
        2D image.
    mesh_size : int, default 64
        Cell size in pixels. Edge cells may be smaller.
    sigma_clip_iters : int, default 2
        Sigma-clipping passes for the per-cell statistics.

    Returns
    -------
    BackgroundMap
        Full-resolution background and noise maps plus the global noise.

    Notes
    -----
    Each cell contributes a sigma-clipped median and a MAD-based sigma;
    both grids are bilinearly interpolated between cell centres. Cells
    without valid pixels borrow the global median. When the frame is
    perfectly flat (zero noise everywhere) the noise falls back to 1.0 so
    that thresholds stay finite.
    """
    data = np.asarray(data, dtype=np.float32)
    height, width = data.shape
    ny = max(1, math.ceil(height / mesh_size))
    nx = max(1, math.ceil(width / mesh_size))

    medians = np.full((ny, nx), np.nan, dtype=np.float64)
    sigmas = np.zeros((ny, nx), dtype=np.float64)

    for j in range(ny):
        for i in range(nx):
            cell = data[j * mesh_size:(j + 1) * mesh_size, i * mesh_size:(i + 1) * mesh_size]
            values = cell[np.isfinite(cell)]
            medians[j, i], sigmas[j, i] = _cell_stats(values, sigma_clip_iters)

    finite_medians = medians[np.isfinite(medians)]
    fill = float(np.median(finite_medians)) if finite_medians.size else 0.0
    medians[~np.isfinite(medians)] = fill

    positive = sigmas[np.isfinite(sigmas) & (sigmas > 0)]
    noise = float(np.median(positive)) if positive.size else 1.0
    if not np.isfinite(noise) or noise <= 0:
        noise = 1.0
    sigmas[~(np.isfinite(sigmas) & (sigmas > 0))] = noise

    background = _interpolate_mesh(medians, data.shape, mesh_size)
    noise_map = _interpolate_mesh(sigmas, data.shape, mesh_size)

    logger.debug(
        "Background mesh %dx%d: median level %.2f, noise %.3f",
        nx, ny, fill, noise,
    )

    return BackgroundMap(background=background, noise_map=noise_map, noise=noise)


def _structure(connectivity: int) -> np.ndarray:
    return ndimage.generate_binary_structure(2, 1 if connectivity == 4 else 2)


def deblend_component(
    mask: np.ndarray,
    values: np.ndarray,
    threshold: float,
    levels: int,
    min_contrast: float,
    connectivity: int = 8,
) -> list[tuple[np.ndarray, bool]]:
    """
    Split a blended component with a multi-threshold search.

    Parameters
    ----------
    mask : np.ndarray
        Boolean footprint of the component (cutout).
    values : np.ndarray
        Detection image over the same cutout.
    threshold : float
        Detection threshold of the component (> 0).
    levels : int
        Number of thresholds scanned between ``threshold`` and the peak;
        also the maximum number of sub-components.
    min_contrast : float
        Minimum flux fraction of the parent a branch needs to count.
    connectivity : int, default 8
        Labeling connectivity.

    Returns
    -------
    list[tuple[np.ndarray, bool]]
        (footprint, deblended) pairs; the unsplit component when no
        threshold separates two significant branches.

    Notes
    -----
    Thresholds are spaced exponentially. At the first level where two or
    more branches each hold at least ``min_contrast`` of the parent flux,
    every pixel of the parent is assigned to the nearest branch peak.
    Branches that fail the contrast test are merged back by that
    assignment.
    """
    unsplit = [(mask, False)]
    if levels <= 1 or threshold <= 0:
        return unsplit

    positive = np.where(mask, np.maximum(values, 0.0), 0.0)
    total_flux = float(positive.sum())
    peak = float(positive.max()) if positive.size else 0.0
    if total_flux <= 0 or peak <= threshold:
        return unsplit

    structure = _structure(connectivity)
    steps = np.arange(1, levels) / levels
    thresholds = threshold * (peak / threshold) ** steps

    for level in thresholds:
        labeled, n_branches = ndimage.label(mask & (values > level), structure=structure)
        if n_branches < 2:
            continue
        index = np.arange(1, n_branches + 1)
        branch_flux = ndimage.sum(positive, labeled, index)
        significant = index[branch_flux >= min_contrast * total_flux]
        if significant.size < 2:
            continue

        # Keep the brightest branches, at most `levels`
        order = np.argsort(-branch_flux[significant - 1], kind="stable")
        significant = significant[order][:levels]
        peaks = ndimage.maximum_position(positive, labeled, significant)
        seeds = np.array(peaks, dtype=np.float64)

        rows, cols = np.nonzero(mask)
        d2 = (rows[:, None] - seeds[None, :, 0]) ** 2 + (cols[:, None] - seeds[None, :, 1]) ** 2
        owner = np.argmin(d2, axis=1)

        parts = []
        for k in range(len(seeds)):
            part = np.zeros_like(mask)
            sel = owner == k
            part[rows[sel], cols[sel]] = True
            if positive[part].sum() >= min_contrast * total_flux:
                parts.append((part, True))
        if len(parts) > 1:
            return parts
        return unsplit

    return unsplit


def measure_source(
    mask: np.ndarray,
    residual: np.ndarray,
    origin: tuple[int, int],
    noise: float,
    deblended: bool = False,
) -> Source | None:
    """
    Measure centroid, flux and shape of one footprint.

    Parameters
    ----------
    mask : np.ndarray
        Boolean footprint (cutout).
    residual : np.ndarray
        Background-subtracted image over the same cutout.
    origin : tuple[int, int]
        (row, col) of the cutout's top-left pixel in the frame.
    noise : float
        Background noise sigma used for the SNR estimate.
    deblended : bool
        Flag recorded on the source.

    Returns
    -------
    Source or None
        None when the footprint carries no positive flux.
    """
    rows, cols = np.nonzero(mask)
    if rows.size == 0:
        return None
    v = np.maximum(residual[rows, cols].astype(np.float64), 0.0)
    flux = float(v.sum())
    if flux <= 0:
        return None

    y = rows + origin[0]
    x = cols + origin[1]
    cx = float((x * v).sum() / flux)
    cy = float((y * v).sum() / flux)

    dx = x - cx
    dy = y - cy
    sxx = float((dx * dx * v).sum() / flux)
    syy = float((dy * dy * v).sum() / flux)
    sxy = float((dx * dy * v).sum() / flux)

    half_trace = 0.5 * (sxx + syy)
    root = math.sqrt(max(0.0, half_trace * half_trace - (sxx * syy - sxy * sxy)))
    lambda1 = max(EPS, half_trace + root)
    lambda2 = max(EPS, half_trace - root)

    fwhm = FWHM_FACTOR * math.sqrt(0.5 * (lambda1 + lambda2))
    ellipticity = 1.0 - min(1.0, math.sqrt(lambda2 / lambda1))
    theta = 0.5 * math.atan2(2.0 * sxy, sxx - syy)
    area = int(rows.size)
    snr = flux / (math.sqrt(area) * max(EPS, noise))

    return Source(
        x=cx,
        y=cy,
        flux=flux,
        peak=float(v.max()),
        area=area,
        fwhm=fwhm,
        ellipticity=ellipticity,
        theta=theta,
        snr=snr,
        deblended=deblended,
    )


def _accept(source: Source, config: ExtractionConfig, width: int, height: int) -> bool:
    if source.area < config.min_area or source.area > config.max_area:
        return False
    if source.fwhm < config.min_fwhm or source.fwhm > config.max_fwhm:
        return False
    if source.ellipticity > config.max_ellipticity:
        return False
    if config.peak_max is not None and source.peak > config.peak_max:
        return False
    if source.snr < config.snr_min:
        return False
    margin = config.border_margin
    if (
        source.x < margin
        or source.x >= width - margin
        or source.y < margin
        or source.y >= height - margin
    ):
        return False
    return True


def extract_sources(
    frame: Frame | np.ndarray,
    config: ExtractionConfig | None = None,
) -> SourceCatalog:
    """
    Detect star-like sources in one frame.

    Parameters
    ----------
    frame : Frame or np.ndarray
        Single-channel image.
    config : ExtractionConfig, optional
        Extraction parameters. Uses defaults if not provided.

    Returns
    -------
    SourceCatalog
        At most ``config.max_stars`` sources, brightest first.
    """
    if config is None:
        config = ExtractionConfig()

    data = frame.data if isinstance(frame, Frame) else np.asarray(frame, dtype=np.float32)
    height, width = data.shape
    margin = config.border_margin
    if height <= 2 * margin or width <= 2 * margin:
        return SourceCatalog()

    bg = estimate_background(data, config.mesh_size, config.sigma_clip_iters)
    residual = np.nan_to_num(data - bg.background, nan=0.0, posinf=0.0, neginf=0.0)

    if config.apply_matched_filter and config.filter_fwhm > 0:
        detect = ndimage.gaussian_filter(residual, sigma=config.filter_fwhm / FWHM_FACTOR, mode="nearest")
    else:
        detect = residual

    threshold_map = config.sigma_threshold * np.maximum(bg.noise_map, EPS)
    candidates = detect > threshold_map
    # Pixels inside the border band never seed or join a component
    if margin > 0:
        candidates[:margin, :] = False
        candidates[-margin:, :] = False
        candidates[:, :margin] = False
        candidates[:, -margin:] = False

    labeled, n_components = ndimage.label(candidates, structure=_structure(config.connectivity))
    if n_components == 0:
        logger.debug("No candidate components above %.1f sigma", config.sigma_threshold)
        return SourceCatalog(background_median=bg.level, background_noise=bg.noise)

    sources: list[Source] = []
    n_deblended = 0
    for label, region in enumerate(ndimage.find_objects(labeled), start=1):
        if region is None:
            continue
        mask = labeled[region] == label
        if np.count_nonzero(mask) < config.min_area:
            continue

        component_threshold = float(threshold_map[region][mask].min())
        parts = deblend_component(
            mask,
            detect[region],
            component_threshold,
            config.deblend_levels,
            config.deblend_min_contrast,
            config.connectivity,
        )
        origin = (region[0].start, region[1].start)
        for part, deblended in parts:
            source = measure_source(part, residual[region], origin, bg.noise, deblended)
            if source is not None and _accept(source, config, width, height):
                sources.append(source)
                n_deblended += int(deblended)

    catalog = SourceCatalog(sources, bg.level, bg.noise).brightest(config.max_stars)

    logger.debug(
        "Extracted %d sources (%d components, %d deblended, capped at %d)",
        len(catalog), n_components, n_deblended, config.max_stars,
    )

    return catalog
