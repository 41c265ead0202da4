"""
stellarstack - Multi-frame stacking engine for astronomical images.

Calibrates light frames with dark, flat and bias masters, detects stars,
registers every frame onto the first one and combines the aligned stack
with a choice of rejection methods.

Example
-------
>>> from stellarstack import stack_files
>>> result = stack_files(["l1.fits", "l2.fits", "l3.fits"], method="sigma", sigma=2.5)
>>> result.pixels.shape

Example (explicit configuration)
--------------------------------
>>> from stellarstack import StackConfig, StackingPipeline, SigmaClip, AlignmentMode
>>> config = StackConfig(method=SigmaClip(sigma=3.0), alignment_mode=AlignmentMode.FULL)
>>> result = StackingPipeline(config).run(paths)
"""

from .config import (
    AlignmentMode,
    Average,
    ExtractionConfig,
    JobState,
    Maximum,
    Median,
    Minimum,
    QualityConfig,
    QualityMetric,
    RegistrationConfig,
    SigmaClip,
    StackConfig,
    StackMethod,
    StackResult,
    Weighted,
    Winsorized,
    parse_alignment_mode,
    parse_method,
)
from .utils import __version__, __version_info__, get_version_banner

# Errors
from .errors import (
    CalibrationLoadError,
    DimensionMismatchError,
    FrameLoadError,
    InsufficientFramesError,
    JobCancelled,
    StackingError,
)

# Frames and I/O
from .frame import AlignedFrame, Frame
from .io import CalibrationFrames, LightFrameRef, read_frame, render_preview, write_array

# Calibration
from .calibration import (
    CalibrationSet,
    build_master_bias,
    build_master_dark,
    build_master_flat,
    calibrate_frame,
    load_calibration_set,
)

# Star detection
from .detection import (
    BackgroundMap,
    Source,
    SourceCatalog,
    estimate_background,
    extract_sources,
)

# Registration
from .align import (
    FrameAlignment,
    Transform,
    TransformKind,
    estimate_affine,
    estimate_translation,
    load_transforms,
    register_catalogs,
    resample_frame,
    save_transforms,
)

# Stacking
from .stack import compute_stack_statistics, stack_frames

# Quality assessment
from .quality import evaluate_quality, quality_to_weights, rank_frames

# Pipeline
from .pipeline import (
    CancellationToken,
    ProgressEvent,
    StackingPipeline,
    stack_files,
)

__all__ = [
    # Version
    "__version__",
    "__version_info__",
    "get_version_banner",
    # Configuration
    "AlignmentMode",
    "Average",
    "ExtractionConfig",
    "JobState",
    "Maximum",
    "Median",
    "Minimum",
    "QualityConfig",
    "QualityMetric",
    "RegistrationConfig",
    "SigmaClip",
    "StackConfig",
    "StackMethod",
    "StackResult",
    "Weighted",
    "Winsorized",
    "parse_alignment_mode",
    "parse_method",
    # Errors
    "CalibrationLoadError",
    "DimensionMismatchError",
    "FrameLoadError",
    "InsufficientFramesError",
    "JobCancelled",
    "StackingError",
    # Frames and I/O
    "AlignedFrame",
    "Frame",
    "CalibrationFrames",
    "LightFrameRef",
    "read_frame",
    "render_preview",
    "write_array",
    # Calibration
    "CalibrationSet",
    "build_master_bias",
    "build_master_dark",
    "build_master_flat",
    "calibrate_frame",
    "load_calibration_set",
    # Detection
    "BackgroundMap",
    "Source",
    "SourceCatalog",
    "estimate_background",
    "extract_sources",
    # Registration
    "FrameAlignment",
    "Transform",
    "TransformKind",
    "estimate_affine",
    "estimate_translation",
    "load_transforms",
    "register_catalogs",
    "resample_frame",
    "save_transforms",
    # Stacking
    "compute_stack_statistics",
    "stack_frames",
    # Quality
    "evaluate_quality",
    "quality_to_weights",
    "rank_frames",
    # Pipeline
    "CancellationToken",
    "ProgressEvent",
    "StackingPipeline",
    "stack_files",
]
