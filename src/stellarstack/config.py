"""
Configuration dataclasses and result records for the stacking engine.

One instance of each configuration class is built per job and passed
explicitly through the pipeline; nothing here is global state.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Literal, Mapping, Union

import numpy as np

if TYPE_CHECKING:
    from .align import FrameAlignment


class AlignmentMode(Enum):
    """Geometric model used to register frames against the reference."""

    NONE = "none"  # No registration, frames stacked as loaded
    TRANSLATION = "translation"  # Shift only
    FULL = "full"  # Affine (rotation, scale, shear, shift)


class JobState(Enum):
    """Lifecycle states of a stacking job."""

    IDLE = "idle"
    CALIBRATING = "calibrating"
    EXTRACTING = "extracting"
    REGISTERING = "registering"
    STACKING = "stacking"
    SCORING = "scoring"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.DONE, JobState.CANCELLED, JobState.FAILED)


# --- Stacking methods -------------------------------------------------------
# Each method carries only the parameters it uses.


@dataclass(frozen=True)
class Average:
    name: ClassVar[str] = "average"


@dataclass(frozen=True)
class Median:
    name: ClassVar[str] = "median"


@dataclass(frozen=True)
class Minimum:
    name: ClassVar[str] = "min"


@dataclass(frozen=True)
class Maximum:
    name: ClassVar[str] = "max"


@dataclass(frozen=True)
class Weighted:
    """Quality-weighted mean; requires per-frame quality scores."""

    name: ClassVar[str] = "weighted"


@dataclass(frozen=True)
class SigmaClip:
    """Iterative sigma-clipped mean."""

    sigma: float = 2.5
    name: ClassVar[str] = "sigma"

    def __post_init__(self) -> None:
        if self.sigma <= 0:
            raise ValueError(f"sigma must be positive, got {self.sigma}")


@dataclass(frozen=True)
class Winsorized:
    """Sigma-identified outliers clamped to the retained range, then averaged."""

    sigma: float = 2.5
    name: ClassVar[str] = "winsorized"

    def __post_init__(self) -> None:
        if self.sigma <= 0:
            raise ValueError(f"sigma must be positive, got {self.sigma}")


StackMethod = Union[Average, Median, Minimum, Maximum, Weighted, SigmaClip, Winsorized]

METHOD_NAMES = ("average", "median", "sigma", "min", "max", "winsorized", "weighted")


def parse_method(name: str, sigma: float = 2.5) -> StackMethod:
    """
    Build a stacking method from its external name.

    Parameters
    ----------
    name : str
        One of ``average``, ``median``, ``sigma``, ``min``, ``max``,
        ``winsorized``, ``weighted``.
    sigma : float, default 2.5
        Clipping multiplier, used by ``sigma`` and ``winsorized`` only.

    Returns
    -------
    StackMethod
        Method instance.
    """
    key = name.strip().lower()
    if key == "average":
        return Average()
    if key == "median":
        return Median()
    if key == "min":
        return Minimum()
    if key == "max":
        return Maximum()
    if key == "weighted":
        return Weighted()
    if key == "sigma":
        return SigmaClip(sigma)
    if key == "winsorized":
        return Winsorized(sigma)
    raise ValueError(f"Unknown stacking method {name!r}, expected one of {', '.join(METHOD_NAMES)}")


def parse_alignment_mode(mode: str | AlignmentMode) -> AlignmentMode:
    """Accept an ``AlignmentMode`` or its string value."""
    if isinstance(mode, AlignmentMode):
        return mode
    try:
        return AlignmentMode(mode.strip().lower())
    except ValueError:
        raise ValueError(
            f"Unknown alignment mode {mode!r}, expected one of none, translation, full"
        ) from None


# --- Stage configuration ----------------------------------------------------


@dataclass
class ExtractionConfig:
    """
    Source extraction parameters.

    Defaults follow the "balanced" detection profile.
    """

    sigma_threshold: float = 5.0
    """Detection threshold in units of local background noise."""

    max_stars: int = 220
    """Maximum number of sources returned (brightest kept)."""

    min_area: int = 3
    """Minimum connected component area in pixels."""

    max_area: int = 600
    """Maximum connected component area in pixels."""

    border_margin: int = 10
    """Sources with a centroid closer than this to any edge are discarded."""

    mesh_size: int = 64
    """Cell size of the background grid in pixels."""

    sigma_clip_iters: int = 2
    """Sigma-clipping passes for per-cell background statistics."""

    apply_matched_filter: bool = True
    """Smooth the background-subtracted image with a Gaussian before thresholding."""

    filter_fwhm: float = 2.2
    """FWHM of the matched filter in pixels (0 disables filtering)."""

    deblend_levels: int = 16
    """Maximum number of sub-peaks a blended component can be split into."""

    deblend_min_contrast: float = 0.08
    """Minimum flux fraction of the parent a sub-peak needs to be kept."""

    connectivity: Literal[4, 8] = 8
    """Pixel connectivity used for component labeling."""

    min_fwhm: float = 0.6
    """Morphology filter: sources narrower than this are hot pixels."""

    max_fwhm: float = 11.0
    """Morphology filter: sources broader than this are discarded."""

    max_ellipticity: float = 0.65
    """Morphology filter: sources more elongated than this are discarded."""

    snr_min: float = 2.0
    """Minimum aperture signal-to-noise ratio."""

    peak_max: float | None = None
    """Discard sources whose background-subtracted peak exceeds this (saturation)."""

    PRESETS: ClassVar[dict[str, dict[str, Any]]] = {
        "fast": {
            "sigma_threshold": 6.0, "max_stars": 160, "min_area": 4, "max_area": 550,
            "border_margin": 12, "mesh_size": 96, "sigma_clip_iters": 1,
            "apply_matched_filter": False, "filter_fwhm": 2.4, "deblend_levels": 8,
            "deblend_min_contrast": 0.12, "min_fwhm": 0.7, "max_fwhm": 12.0,
            "max_ellipticity": 0.7, "snr_min": 2.5,
        },
        "balanced": {},
        "accurate": {
            "sigma_threshold": 4.5, "max_stars": 320, "max_area": 800,
            "border_margin": 8, "mesh_size": 48, "sigma_clip_iters": 3,
            "filter_fwhm": 2.0, "deblend_levels": 32, "deblend_min_contrast": 0.05,
            "min_fwhm": 0.5, "max_fwhm": 10.0, "max_ellipticity": 0.55, "snr_min": 1.8,
        },
    }

    @classmethod
    def preset(cls, name: str, **overrides: Any) -> ExtractionConfig:
        """Build a configuration from a named detection profile."""
        if name not in cls.PRESETS:
            raise ValueError(f"Unknown detection profile {name!r}, expected one of {sorted(cls.PRESETS)}")
        values = {**cls.PRESETS[name], **overrides}
        return cls(**values)

    def validate(self) -> None:
        """Validate configuration parameters."""
        if self.sigma_threshold <= 0:
            raise ValueError(f"sigma_threshold must be positive, got {self.sigma_threshold}")
        if self.max_stars < 1:
            raise ValueError(f"max_stars must be >= 1, got {self.max_stars}")
        if self.min_area < 1:
            raise ValueError(f"min_area must be >= 1, got {self.min_area}")
        if self.max_area < self.min_area:
            raise ValueError(
                f"max_area must be >= min_area, got {self.max_area} < {self.min_area}"
            )
        if self.border_margin < 0:
            raise ValueError(f"border_margin must be >= 0, got {self.border_margin}")
        if self.mesh_size < 4:
            raise ValueError(f"mesh_size must be >= 4, got {self.mesh_size}")
        if self.sigma_clip_iters < 0:
            raise ValueError(f"sigma_clip_iters must be >= 0, got {self.sigma_clip_iters}")
        if self.filter_fwhm < 0:
            raise ValueError(f"filter_fwhm must be >= 0, got {self.filter_fwhm}")
        if self.deblend_levels < 1:
            raise ValueError(f"deblend_levels must be >= 1, got {self.deblend_levels}")
        if not 0.0 <= self.deblend_min_contrast <= 1.0:
            raise ValueError(
                f"deblend_min_contrast must be in [0, 1], got {self.deblend_min_contrast}"
            )
        if self.connectivity not in (4, 8):
            raise ValueError(f"connectivity must be 4 or 8, got {self.connectivity}")
        if self.max_fwhm <= self.min_fwhm:
            raise ValueError(f"max_fwhm must exceed min_fwhm, got {self.max_fwhm}")
        if not 0.0 <= self.max_ellipticity <= 1.0:
            raise ValueError(f"max_ellipticity must be in [0, 1], got {self.max_ellipticity}")


@dataclass
class RegistrationConfig:
    """Star matching and RANSAC parameters."""

    ransac_iterations: int = 500
    """Maximum number of RANSAC trials."""

    inlier_threshold: float = 3.0
    """Residual (pixels) below which a correspondence counts as an inlier."""

    max_match_stars: int = 40
    """Brightest sources of each catalog used to form candidate correspondences."""

    triangle_tolerance: float = 0.01
    """Maximum side-ratio distance for two triangles to match (full mode)."""

    max_shift: float | None = None
    """Reject translation hypotheses larger than this (pixels). None = unbounded."""

    min_inlier_fraction: float = 0.25
    """Share of the smaller catalog a model must match to be accepted."""

    fallback_to_translation: bool = True
    """In full mode, fall back to a translation model when no affine model is found."""

    seed: int = 0
    """Random seed for RANSAC sampling (registration is reproducible)."""

    def validate(self) -> None:
        """Validate configuration parameters."""
        if self.ransac_iterations < 1:
            raise ValueError(f"ransac_iterations must be >= 1, got {self.ransac_iterations}")
        if self.inlier_threshold <= 0:
            raise ValueError(f"inlier_threshold must be positive, got {self.inlier_threshold}")
        if self.max_match_stars < 3:
            raise ValueError(f"max_match_stars must be >= 3, got {self.max_match_stars}")
        if self.triangle_tolerance <= 0:
            raise ValueError(f"triangle_tolerance must be positive, got {self.triangle_tolerance}")
        if self.max_shift is not None and self.max_shift <= 0:
            raise ValueError(f"max_shift must be positive, got {self.max_shift}")
        if not 0.0 <= self.min_inlier_fraction <= 1.0:
            raise ValueError(f"min_inlier_fraction must be in [0, 1], got {self.min_inlier_fraction}")


@dataclass
class QualityConfig:
    """Frame quality scoring parameters."""

    max_fwhm: float = 11.0
    """Sources broader than this are excluded from the FWHM statistic."""

    max_ellipticity: float = 0.65
    """Sources more elongated than this are excluded from the FWHM statistic."""

    fwhm_best: float = 1.5
    """FWHM (pixels) that earns the full sharpness term."""

    fwhm_worst: float = 7.5
    """FWHM (pixels) at which the sharpness term reaches zero."""

    star_count_scale: float = 50.0
    """Star count at which the star term reaches 1 - 1/e."""

    fwhm_weight: float = 0.45
    """Relative weight of the sharpness term."""

    star_weight: float = 0.3
    """Relative weight of the star count term."""

    snr_weight: float = 0.15
    """Relative weight of the signal-to-noise term (20 log10 SNR, full at 100)."""

    roundness_weight: float = 0.1
    """Relative weight of the roundness term (1 - median ellipticity)."""

    def validate(self) -> None:
        """Validate configuration parameters."""
        if self.max_fwhm <= 0:
            raise ValueError(f"max_fwhm must be positive, got {self.max_fwhm}")
        if not 0.0 <= self.max_ellipticity <= 1.0:
            raise ValueError(f"max_ellipticity must be in [0, 1], got {self.max_ellipticity}")
        if self.fwhm_worst <= self.fwhm_best:
            raise ValueError(
                f"fwhm_worst must exceed fwhm_best, got {self.fwhm_worst} <= {self.fwhm_best}"
            )
        if self.star_count_scale <= 0:
            raise ValueError(f"star_count_scale must be positive, got {self.star_count_scale}")
        weights = (self.fwhm_weight, self.star_weight, self.snr_weight, self.roundness_weight)
        if min(weights) < 0:
            raise ValueError("quality weights must be >= 0")
        if sum(weights) <= 0:
            raise ValueError("at least one quality weight must be positive")


# External settings names mapped to (section, field)
SETTINGS_ALIASES: dict[str, tuple[str, str]] = {
    "stackingDetectSigmaThreshold": ("extraction", "sigma_threshold"),
    "stackingDetectMaxStars": ("extraction", "max_stars"),
    "stackingDetectMinArea": ("extraction", "min_area"),
    "stackingDetectMaxArea": ("extraction", "max_area"),
    "stackingDetectBorderMargin": ("extraction", "border_margin"),
    "stackingBackgroundMeshSize": ("extraction", "mesh_size"),
    "stackingDetectSigmaClipIters": ("extraction", "sigma_clip_iters"),
    "stackingDetectApplyMatchedFilter": ("extraction", "apply_matched_filter"),
    "stackingFilterFwhm": ("extraction", "filter_fwhm"),
    "stackingDeblendNLevels": ("extraction", "deblend_levels"),
    "stackingDeblendMinContrast": ("extraction", "deblend_min_contrast"),
    "stackingDetectConnectivity": ("extraction", "connectivity"),
    "stackingDetectMinFwhm": ("extraction", "min_fwhm"),
    "stackingMaxFwhm": ("both", "max_fwhm"),
    "stackingMaxEllipticity": ("both", "max_ellipticity"),
    "stackingDetectSnrMin": ("extraction", "snr_min"),
    "stackingDetectPeakMax": ("extraction", "peak_max"),
    "stackingRansacMaxIterations": ("registration", "ransac_iterations"),
    "stackingAlignmentInlierThreshold": ("registration", "inlier_threshold"),
}


@dataclass
class StackConfig:
    """
    Configuration for one stacking job.

    All parameters are explicitly documented and have sensible defaults.
    """

    method: StackMethod = field(default_factory=Average)
    """Pixel combination method."""

    alignment_mode: AlignmentMode = AlignmentMode.TRANSLATION
    """Registration model; NONE stacks frames as loaded."""

    enable_quality: bool = False
    """Compute per-frame quality metrics (forced on for the weighted method)."""

    workers: int | None = None
    """Worker threads for per-frame stages and stacking tiles. None = CPU count - 1."""

    chunk_rows: int = 64
    """Rows per stacking tile."""

    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    registration: RegistrationConfig = field(default_factory=RegistrationConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)

    @property
    def effective_quality(self) -> bool:
        """Whether quality metrics are computed for this job."""
        return self.enable_quality or isinstance(self.method, Weighted)

    def validate(self) -> None:
        """Validate configuration parameters."""
        if not isinstance(self.alignment_mode, AlignmentMode):
            raise ValueError(f"alignment_mode must be an AlignmentMode, got {self.alignment_mode!r}")
        if self.chunk_rows < 1:
            raise ValueError(f"chunk_rows must be >= 1, got {self.chunk_rows}")
        if self.workers is not None and self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")
        self.extraction.validate()
        self.registration.validate()
        self.quality.validate()

    @classmethod
    def from_settings(
        cls,
        settings: Mapping[str, Any],
        method: StackMethod | None = None,
        alignment_mode: AlignmentMode | str = AlignmentMode.TRANSLATION,
        enable_quality: bool = False,
    ) -> StackConfig:
        """
        Build a job configuration from a flat settings mapping.

        Keys are either the application's settings names (see
        ``SETTINGS_ALIASES``) or plain field names of ``ExtractionConfig``,
        ``RegistrationConfig`` and ``QualityConfig``. A field name present in
        several sections is applied to all of them. Unknown keys raise
        ``ValueError``.
        """
        sections: dict[str, dict[str, Any]] = {"extraction": {}, "registration": {}, "quality": {}}
        section_fields = {
            "extraction": {f.name for f in fields(ExtractionConfig)},
            "registration": {f.name for f in fields(RegistrationConfig)},
            "quality": {f.name for f in fields(QualityConfig)},
        }

        profile = settings.get("stackingDetectionProfile")
        for key, value in settings.items():
            if key == "stackingDetectionProfile":
                continue
            if key in SETTINGS_ALIASES:
                section, name = SETTINGS_ALIASES[key]
                targets = ["extraction", "quality"] if section == "both" else [section]
                for target in targets:
                    sections[target][name] = value
                continue
            targets = [s for s, names in section_fields.items() if key in names]
            if not targets:
                raise ValueError(f"Unknown stacking setting {key!r}")
            for target in targets:
                sections[target][key] = value

        if profile:
            extraction = ExtractionConfig.preset(profile, **sections["extraction"])
        else:
            extraction = ExtractionConfig(**sections["extraction"])

        config = cls(
            method=method if method is not None else Average(),
            alignment_mode=parse_alignment_mode(alignment_mode),
            enable_quality=enable_quality,
            extraction=extraction,
            registration=RegistrationConfig(**sections["registration"]),
            quality=QualityConfig(**sections["quality"]),
        )
        config.validate()
        return config

    def with_method(self, method: StackMethod) -> StackConfig:
        """Return a copy using another stacking method."""
        return replace(self, method=method)


# --- Results ----------------------------------------------------------------


@dataclass(frozen=True)
class QualityMetric:
    """Quality summary derived from one frame's source catalog."""

    score: float
    """Composite score in [0, 100] (higher = sharper and richer)."""

    median_fwhm: float
    """Median FWHM (pixels) of sources passing the sanity filter (0 when none)."""

    star_count: int
    """Number of sources in the catalog."""

    qualifying_count: int = 0
    """Number of sources passing the sanity filter."""

    median_ellipticity: float = 0.0
    """Median ellipticity of sources passing the sanity filter."""

    snr: float = 0.0
    """Median peak over background noise of qualifying sources."""

    roundness: float = 0.0
    """1 - median ellipticity of qualifying sources (1 = perfectly round)."""

    background_median: float = 0.0
    """Median background level of the frame (ADU)."""

    background_noise: float = 0.0
    """Global background noise sigma of the frame (ADU)."""


@dataclass
class StackResult:
    """
    Result of a completed stacking job.

    Owned by the caller after return; the pipeline keeps no reference.
    """

    pixels: np.ndarray
    """Linear combined image, float32, shape (height, width)."""

    rgba_preview: np.ndarray
    """Display preview, uint8, shape (height, width, 4)."""

    width: int
    height: int

    method: str
    """Name of the stacking method used."""

    frame_count: int
    """Number of light frames combined."""

    duration_ms: float
    """Wall-clock duration of the job."""

    alignment_mode: str = "none"

    alignment_results: list[FrameAlignment] = field(default_factory=list)
    """Per-frame registration diagnostics (empty when alignment mode is none)."""

    quality_metrics: list[QualityMetric] = field(default_factory=list)
    """Per-frame quality metrics (empty when quality scoring is off)."""

    coverage: np.ndarray | None = None
    """Number of frames contributing to each output pixel."""

    filenames: list[str] = field(default_factory=list)
    """Light frame names in input order."""

    reference_filename: str = ""
    """Frame used as registration reference (empty when not aligning)."""

    statistics: dict[str, float] = field(default_factory=dict)
    """Computed statistics (e.g. 'snr_proxy', 'total_exposure_s')."""

    @property
    def failed_alignments(self) -> list[str]:
        """Filenames of frames stacked unregistered after a registration failure."""
        return [a.filename for a in self.alignment_results if a.transform.matched_stars == 0]
