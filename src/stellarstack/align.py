"""
Frame registration against a reference frame.

Star catalogs of a frame and of the reference are matched, a geometric
model is fitted with RANSAC and the frame is resampled onto the reference
pixel grid with an explicit validity map.

Conventions
-----------
A ``Transform`` matrix is 2x3 and maps reference pixel coordinates (x, y)
to frame pixel coordinates. It is therefore directly the inverse map
expected by ``skimage.transform.warp``: the output pixel (x, y) of the
resampled frame is read from ``matrix @ (x, y, 1)`` in the source frame.
For a translation, (dx, dy) is the position of a reference star in the
frame minus its position in the reference.

Registration failures are not exceptions: they produce ``Transform.failed()``
(identity, ``matched_stars == 0``) and a warning, and the frame is stacked
unregistered.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from itertools import combinations
from pathlib import Path

import numpy as np
from scipy.spatial import cKDTree
from skimage.transform import AffineTransform, warp

from .config import AlignmentMode, RegistrationConfig
from .detection import SourceCatalog
from .frame import AlignedFrame, Frame

logger = logging.getLogger(__name__)

# Inlier floors for an accepted model. A shift needs up to three pairs (fewer
# only when a catalog is that small); an affine model needs one inlier beyond
# its 3-pair sample. Both also need RegistrationConfig.min_inlier_fraction of
# the smaller catalog.
MIN_TRANSLATION_MATCHES = 3
MIN_AFFINE_MATCHES = 4

# Neighbours per star used to build asterism triangles
TRIANGLE_NEIGHBOURS = 5

# Tolerance (pixels) of the validity test at the frame edge
EDGE_EPS = 1e-6

TRANSFORMS_FORMAT_VERSION = "1.0"


class TransformKind(Enum):
    IDENTITY = "identity"
    TRANSLATION = "translation"
    AFFINE = "affine"


def _identity_matrix() -> np.ndarray:
    return np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]], dtype=np.float64)


@dataclass(frozen=True, eq=False)
class Transform:
    """
    Geometric model from reference pixel space to frame pixel space.

    ``matched_stars`` is -1 for the reference frame (no fit performed), 0
    when registration failed, and the inlier count otherwise.
    ``rms_error`` is only meaningful when ``matched_stars > 0``.
    """

    kind: TransformKind
    matrix: np.ndarray = field(default_factory=_identity_matrix)
    matched_stars: int = 0
    rms_error: float = 0.0
    fallback: str = ""
    """Name of the model actually used when the requested one was not found."""

    def __post_init__(self) -> None:
        matrix = np.asarray(self.matrix, dtype=np.float64)
        if matrix.shape == (3, 3):
            matrix = matrix[:2]
        if matrix.shape != (2, 3):
            raise ValueError(f"Transform matrix must be 2x3, got {matrix.shape}")
        object.__setattr__(self, "matrix", matrix)

    @classmethod
    def identity(cls, matched_stars: int = 0) -> Transform:
        return cls(TransformKind.IDENTITY, matched_stars=matched_stars)

    @classmethod
    def reference(cls) -> Transform:
        """Entry of the reference frame: identity, no fit performed."""
        return cls(TransformKind.IDENTITY, matched_stars=-1)

    @classmethod
    def failed(cls) -> Transform:
        """Registration failure: identity with zero matches."""
        return cls(TransformKind.IDENTITY, matched_stars=0)

    @classmethod
    def translation(
        cls, dx: float, dy: float, matched_stars: int = 0, rms_error: float = 0.0, fallback: str = ""
    ) -> Transform:
        matrix = np.array([[1.0, 0.0, dx], [0.0, 1.0, dy]], dtype=np.float64)
        return cls(TransformKind.TRANSLATION, matrix, matched_stars, rms_error, fallback)

    @classmethod
    def affine(cls, matrix: np.ndarray, matched_stars: int = 0, rms_error: float = 0.0) -> Transform:
        return cls(TransformKind.AFFINE, matrix, matched_stars, rms_error)

    @property
    def dx(self) -> float:
        return float(self.matrix[0, 2])

    @property
    def dy(self) -> float:
        return float(self.matrix[1, 2])

    @property
    def rotation_deg(self) -> float:
        return float(np.degrees(np.arctan2(self.matrix[1, 0], self.matrix[0, 0])))

    @property
    def scale(self) -> float:
        return float(np.sqrt(abs(np.linalg.det(self.matrix[:, :2]))))

    @property
    def is_reference(self) -> bool:
        return self.matched_stars == -1

    @property
    def succeeded(self) -> bool:
        """True when a model was fitted (reference and failures excluded)."""
        return self.matched_stars > 0

    @property
    def is_identity(self) -> bool:
        return self.kind is TransformKind.IDENTITY

    def matrix3x3(self) -> np.ndarray:
        return np.vstack([self.matrix, [0.0, 0.0, 1.0]])

    def apply(self, points: np.ndarray) -> np.ndarray:
        """Map (N, 2) reference (x, y) points into frame coordinates."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        return points @ self.matrix[:, :2].T + self.matrix[:, 2]

    def __repr__(self) -> str:
        if self.kind is TransformKind.TRANSLATION:
            body = f"dx={self.dx:.3f}, dy={self.dy:.3f}"
        elif self.kind is TransformKind.AFFINE:
            body = f"matrix={self.matrix.round(5).tolist()}"
        else:
            body = "identity"
        return (
            f"Transform({self.kind.value}, {body}, matched_stars={self.matched_stars}, "
            f"rms_error={self.rms_error:.4f})"
        )


@dataclass
class FrameAlignment:
    """Per-frame registration diagnostic."""

    filename: str
    transform: Transform
    ref_sources: int = 0
    """Sources detected in the reference frame."""
    target_sources: int = 0
    """Sources detected in this frame."""

    @property
    def failed(self) -> bool:
        return self.transform.matched_stars == 0


# --- Correspondence matching ------------------------------------------------


def match_points(
    mapped: np.ndarray,
    tree: cKDTree,
    n_targets: int,
    threshold: float,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    One-to-one nearest-neighbour matching within ``threshold``.

    Parameters
    ----------
    mapped : np.ndarray
        (N, 2) reference points already mapped into frame coordinates.
    tree : cKDTree
        Tree built on the (M, 2) frame points.
    n_targets : int
        M, used to recognise missing neighbours.
    threshold : float
        Residual (pixels) below which a pair is accepted.

    Returns
    -------
    tuple[np.ndarray, np.ndarray, np.ndarray]
        (reference indices, frame indices, residuals). Conflicts on a frame
        point are resolved in favour of the closest reference point.
    """
    if len(mapped) == 0 or n_targets == 0:
        empty = np.empty(0, dtype=np.intp)
        return empty, empty, np.empty(0, dtype=np.float64)

    dist, idx = tree.query(mapped, k=1, distance_upper_bound=threshold)
    ok = (idx < n_targets) & (dist < threshold)
    ref_idx = np.nonzero(ok)[0]
    tgt_idx = idx[ok]
    dist = dist[ok]

    order = np.argsort(dist, kind="stable")
    _, first = np.unique(tgt_idx[order], return_index=True)
    keep = np.sort(order[first])
    return ref_idx[keep], tgt_idx[keep], dist[keep]


class _Scorer:
    """Inlier evaluation of candidate models against two full catalogs."""

    def __init__(self, ref_points: np.ndarray, tgt_points: np.ndarray, threshold: float):
        self.ref = ref_points
        self.tgt = tgt_points
        self.tree = cKDTree(tgt_points)
        self.threshold = threshold

    def evaluate(self, matrix: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        mapped = self.ref @ matrix[:, :2].T + matrix[:, 2]
        return match_points(mapped, self.tree, len(self.tgt), self.threshold)


def _better(count: int, rss: float, best_count: int, best_rss: float) -> bool:
    return count > best_count or (count == best_count and rss < best_rss)


def _rms(residuals: np.ndarray) -> float:
    return float(np.sqrt(np.mean(residuals ** 2))) if residuals.size else 0.0


def required_matches(n_reference: int, n_target: int, floor: int, fraction: float) -> int:
    """
    Inliers a model needs between catalogs of ``n_reference`` and ``n_target`` sources.

    The larger of ``floor`` (capped at the smaller catalog size) and
    ``fraction`` of the smaller catalog, and never less than one.
    """
    smaller = min(n_reference, n_target)
    return max(1, min(floor, smaller), int(np.ceil(fraction * smaller)))


# --- Translation ------------------------------------------------------------


def estimate_translation(
    target: SourceCatalog,
    reference: SourceCatalog,
    config: RegistrationConfig | None = None,
) -> Transform:
    """
    Estimate a pure shift between two catalogs.

    Parameters
    ----------
    target : SourceCatalog
        Sources of the frame being registered.
    reference : SourceCatalog
        Sources of the reference frame.
    config : RegistrationConfig, optional
        RANSAC parameters. Uses defaults if not provided.

    Returns
    -------
    Transform
        Translation, or ``Transform.failed()`` when fewer inliers than
        ``required_matches`` support the best shift.

    Notes
    -----
    Candidate shifts are all pairwise offsets between the brightest
    ``max_match_stars`` sources of each catalog. Each candidate is voted on
    by the number of other candidates within ``inlier_threshold``, and
    RANSAC trials visit candidates in decreasing vote order, so the search
    is deterministic and independent of catalog order. The best shift is
    refit as the mean offset of its inliers.
    """
    if config is None:
        config = RegistrationConfig()

    if len(target) == 0 or len(reference) == 0:
        return Transform.failed()
    required = required_matches(
        len(reference), len(target), MIN_TRANSLATION_MATCHES, config.min_inlier_fraction
    )

    ref_top = reference.brightest(config.max_match_stars).positions()
    tgt_top = target.brightest(config.max_match_stars).positions()
    offsets = (tgt_top[None, :, :] - ref_top[:, None, :]).reshape(-1, 2)

    if config.max_shift is not None:
        offsets = offsets[np.hypot(offsets[:, 0], offsets[:, 1]) <= config.max_shift]
    if len(offsets) == 0:
        return Transform.failed()

    votes = cKDTree(offsets).query_ball_point(offsets, r=config.inlier_threshold, return_length=True)
    order = np.argsort(-np.asarray(votes), kind="stable")[: config.ransac_iterations]

    scorer = _Scorer(reference.positions(), target.positions(), config.inlier_threshold)
    max_possible = min(len(reference), len(target))

    best = None
    best_count, best_rss = 0, np.inf
    for i in order:
        matrix = np.array([[1.0, 0.0, offsets[i, 0]], [0.0, 1.0, offsets[i, 1]]])
        ref_idx, tgt_idx, res = scorer.evaluate(matrix)
        rss = float(np.sum(res ** 2))
        if _better(len(ref_idx), rss, best_count, best_rss):
            best = (ref_idx, tgt_idx)
            best_count, best_rss = len(ref_idx), rss
            if best_count == max_possible and best_rss == 0.0:
                break

    if best is None or best_count < required:
        return Transform.failed()

    # Least-squares refit: the mean offset of the inliers
    ref_idx, tgt_idx = best
    shift = np.mean(scorer.tgt[tgt_idx] - scorer.ref[ref_idx], axis=0)
    matrix = np.array([[1.0, 0.0, shift[0]], [0.0, 1.0, shift[1]]])
    ref_idx2, _, res = scorer.evaluate(matrix)
    if len(ref_idx2) < best_count:
        # Refit drifted off the consensus; keep the sampled inliers
        res = np.linalg.norm(scorer.tgt[tgt_idx] - (scorer.ref[ref_idx] + shift), axis=1)
        count = best_count
    else:
        count = len(ref_idx2)

    return Transform.translation(shift[0], shift[1], matched_stars=count, rms_error=_rms(res))


# --- Affine -----------------------------------------------------------------


def _triangle_invariants(points: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Build asterism triangles and their similarity invariants.

    Returns
    -------
    tuple[np.ndarray, np.ndarray]
        (T, 3) vertex indices ordered by opposite side length (shortest
        first) and (T, 2) invariants (s0/s2, s1/s2).
    """
    n = len(points)
    if n < 3:
        return np.empty((0, 3), dtype=np.intp), np.empty((0, 2))

    k = min(TRIANGLE_NEIGHBOURS, n)
    _, neighbours = cKDTree(points).query(points, k=k)
    triangles = set()
    for row in np.atleast_2d(neighbours):
        for tri in combinations(sorted(row.tolist()), 3):
            triangles.add(tri)

    vertices = []
    invariants = []
    for tri in sorted(triangles):
        p = points[list(tri)]
        # Side i is opposite vertex i
        sides = np.array([
            np.linalg.norm(p[1] - p[2]),
            np.linalg.norm(p[0] - p[2]),
            np.linalg.norm(p[0] - p[1]),
        ])
        order = np.argsort(sides, kind="stable")
        s0, s1, s2 = sides[order]
        if s2 <= 0 or s0 + s1 - s2 <= 1e-6 * s2:
            continue
        vertices.append([tri[j] for j in order])
        invariants.append((s0 / s2, s1 / s2))

    if not vertices:
        return np.empty((0, 3), dtype=np.intp), np.empty((0, 2))
    return np.array(vertices, dtype=np.intp), np.array(invariants, dtype=np.float64)


def _fit_affine(src: np.ndarray, dst: np.ndarray) -> np.ndarray | None:
    """2x3 affine mapping src points onto dst points, least squares beyond three pairs."""
    model = AffineTransform()
    ok = model.estimate(src, dst)
    if not ok or not np.all(np.isfinite(model.params)):
        return None
    # Degenerate samples collapse the linear part
    if abs(np.linalg.det(model.params[:2, :2])) < 1e-6:
        return None
    return model.params[:2].copy()


def estimate_affine(
    target: SourceCatalog,
    reference: SourceCatalog,
    config: RegistrationConfig | None = None,
) -> Transform:
    """
    Estimate a full affine model (rotation, scale, shear, shift).

    Parameters
    ----------
    target : SourceCatalog
        Sources of the frame being registered.
    reference : SourceCatalog
        Sources of the reference frame.
    config : RegistrationConfig, optional
        RANSAC parameters. Uses defaults if not provided.

    Returns
    -------
    Transform
        Affine transform, or ``Transform.failed()`` when fewer than
        ``MIN_AFFINE_MATCHES`` inliers, or fewer than ``min_inlier_fraction``
        of the smaller catalog, support the best model.

    Notes
    -----
    Triangles are formed among each bright star's nearest neighbours and
    described by their side ratios, which do not change under rotation,
    scale or shift. Triangles of both catalogs whose invariants lie within
    ``triangle_tolerance`` are candidate correspondences (three point pairs
    each). Each RANSAC trial fits the exact affine model of one candidate,
    which is scored by one-to-one matching of the full catalogs. The winner
    is refit by least squares over its inliers.
    """
    if config is None:
        config = RegistrationConfig()

    if len(target) < 3 or len(reference) < 3:
        return Transform.failed()

    ref_top = reference.brightest(config.max_match_stars).positions()
    tgt_top = target.brightest(config.max_match_stars).positions()
    ref_tri, ref_inv = _triangle_invariants(ref_top)
    tgt_tri, tgt_inv = _triangle_invariants(tgt_top)
    if len(ref_tri) == 0 or len(tgt_tri) == 0:
        return Transform.failed()

    hits = cKDTree(tgt_inv).query_ball_point(ref_inv, r=config.triangle_tolerance)
    pairs = [(i, j) for i, row in enumerate(hits) for j in sorted(row)]
    if not pairs:
        return Transform.failed()

    if len(pairs) <= config.ransac_iterations:
        trials = range(len(pairs))
    else:
        rng = np.random.default_rng(config.seed)
        trials = np.sort(rng.choice(len(pairs), size=config.ransac_iterations, replace=False))

    scorer = _Scorer(reference.positions(), target.positions(), config.inlier_threshold)

    best = None
    best_count, best_rss = 0, np.inf
    for t in trials:
        i, j = pairs[t]
        matrix = _fit_affine(ref_top[ref_tri[i]], tgt_top[tgt_tri[j]])
        if matrix is None:
            continue
        ref_idx, tgt_idx, res = scorer.evaluate(matrix)
        rss = float(np.sum(res ** 2))
        if _better(len(ref_idx), rss, best_count, best_rss):
            best = (matrix, ref_idx, tgt_idx, res)
            best_count, best_rss = len(ref_idx), rss

    # Three pairs always fit exactly; the affine floor is never relaxed
    required = max(
        MIN_AFFINE_MATCHES,
        required_matches(len(reference), len(target), MIN_AFFINE_MATCHES, config.min_inlier_fraction),
    )
    if best is None or best_count < required:
        return Transform.failed()

    matrix, ref_idx, tgt_idx, res = best
    refit = _fit_affine(scorer.ref[ref_idx], scorer.tgt[tgt_idx])
    if refit is not None:
        ref_idx2, _, res2 = scorer.evaluate(refit)
        if len(ref_idx2) >= best_count:
            matrix, best_count, res = refit, len(ref_idx2), res2

    return Transform.affine(matrix, matched_stars=best_count, rms_error=_rms(res))


def register_catalogs(
    target: SourceCatalog,
    reference: SourceCatalog,
    mode: AlignmentMode,
    config: RegistrationConfig | None = None,
) -> Transform:
    """
    Register a frame's catalog against the reference catalog.

    Parameters
    ----------
    target : SourceCatalog
        Sources of the frame being registered.
    reference : SourceCatalog
        Sources of the reference frame.
    mode : AlignmentMode
        NONE returns the reference sentinel, TRANSLATION fits a shift,
        FULL fits an affine model.
    config : RegistrationConfig, optional
        RANSAC parameters. Uses defaults if not provided.

    Returns
    -------
    Transform
        Fitted model, ``Transform.reference()`` for mode NONE, or
        ``Transform.failed()`` when too few correspondences support a model.
    """
    if config is None:
        config = RegistrationConfig()

    if mode is AlignmentMode.NONE:
        return Transform.reference()

    if mode is AlignmentMode.TRANSLATION:
        return estimate_translation(target, reference, config)

    transform = estimate_affine(target, reference, config)
    if transform.matched_stars == 0 and config.fallback_to_translation:
        shift = estimate_translation(target, reference, config)
        if shift.succeeded:
            logger.debug("No affine model found, using translation fallback")
            return Transform.translation(
                shift.dx, shift.dy, shift.matched_stars, shift.rms_error, fallback="translation"
            )
    return transform


# --- Resampling -------------------------------------------------------------


def validity_map(transform: Transform, source_shape: tuple[int, int], output_shape: tuple[int, int]) -> np.ndarray:
    """Output pixels whose source position lies inside the source frame."""
    h_out, w_out = output_shape
    h_src, w_src = source_shape
    x = np.arange(w_out, dtype=np.float64)[None, :]
    y = np.arange(h_out, dtype=np.float64)[:, None]
    m = transform.matrix
    sx = m[0, 0] * x + m[0, 1] * y + m[0, 2]
    sy = m[1, 0] * x + m[1, 1] * y + m[1, 2]
    return (
        (sx >= -EDGE_EPS) & (sx <= w_src - 1 + EDGE_EPS)
        & (sy >= -EDGE_EPS) & (sy <= h_src - 1 + EDGE_EPS)
    )


def resample_frame(
    frame: Frame | np.ndarray,
    transform: Transform,
    output_shape: tuple[int, int] | None = None,
) -> AlignedFrame:
    """
    Resample a frame onto the reference pixel grid.

    Parameters
    ----------
    frame : Frame or np.ndarray
        Frame to resample.
    transform : Transform
        Reference-to-frame model.
    output_shape : tuple[int, int], optional
        Reference grid shape. Defaults to the frame's shape.

    Returns
    -------
    AlignedFrame
        Bilinearly resampled data and its validity map. Identity transforms
        copy the data with every pixel valid.
    """
    if isinstance(frame, Frame):
        data, filename = frame.data, frame.filename
    else:
        data, filename = np.asarray(frame, dtype=np.float32), ""

    if output_shape is None:
        output_shape = data.shape
    output_shape = tuple(output_shape)

    if transform.is_identity and output_shape == data.shape:
        return AlignedFrame(data=data.copy(), valid=np.ones(output_shape, dtype=bool), filename=filename)

    valid = validity_map(transform, data.shape, output_shape)
    warped = warp(
        data,
        AffineTransform(matrix=transform.matrix3x3()),
        output_shape=output_shape,
        order=1,  # Bilinear
        mode="constant",
        cval=0.0,
        preserve_range=True,
    ).astype(np.float32)
    warped[~valid] = 0.0

    return AlignedFrame(data=warped, valid=valid, filename=filename)


# --- Persistence ------------------------------------------------------------


def transform_to_dict(alignment: FrameAlignment) -> dict:
    """
    Convert a FrameAlignment to a JSON-serializable dict.

    Parameters
    ----------
    alignment : FrameAlignment
        Alignment diagnostic to convert.

    Returns
    -------
    dict
        JSON-serializable dictionary.
    """
    t = alignment.transform
    return {
        "filename": alignment.filename,
        "kind": t.kind.value,
        "matrix": t.matrix.tolist(),
        "matched_stars": t.matched_stars,
        "rms_error": t.rms_error,
        "fallback": t.fallback,
        "ref_sources": alignment.ref_sources,
        "target_sources": alignment.target_sources,
    }


def dict_to_transform(d: dict) -> FrameAlignment:
    """
    Convert a dict back to a FrameAlignment.

    Parameters
    ----------
    d : dict
        Dictionary from JSON.

    Returns
    -------
    FrameAlignment
        Reconstructed alignment diagnostic.
    """
    transform = Transform(
        kind=TransformKind(d["kind"]),
        matrix=np.array(d.get("matrix") or _identity_matrix(), dtype=np.float64),
        matched_stars=int(d.get("matched_stars", 0)),
        rms_error=float(d.get("rms_error", 0.0)),
        fallback=d.get("fallback", ""),
    )
    return FrameAlignment(
        filename=d.get("filename", ""),
        transform=transform,
        ref_sources=int(d.get("ref_sources", 0)),
        target_sources=int(d.get("target_sources", 0)),
    )


def save_transforms(
    alignments: list[FrameAlignment],
    output_path: str | Path,
    reference_filename: str = "",
    metadata: dict | None = None,
) -> None:
    """
    Save alignment diagnostics to a JSON file.

    Parameters
    ----------
    alignments : list[FrameAlignment]
        Per-frame alignments, in input order.
    output_path : str or Path
        Output JSON file path.
    reference_filename : str, optional
        Name of the reference frame (for metadata).
    metadata : dict, optional
        Additional metadata to include.

    Notes
    -----
    The JSON file contains:
    - version: format version
    - reference_filename: reference frame name
    - n_transforms: number of transforms
    - n_registered: number of fitted (non-reference, non-failed) transforms
    - metadata: optional extra info
    - transforms: list of transform dicts
    """
    output_path = Path(output_path)

    n_registered = sum(1 for a in alignments if a.transform.succeeded)

    data = {
        "version": TRANSFORMS_FORMAT_VERSION,
        "reference_filename": reference_filename,
        "n_transforms": len(alignments),
        "n_registered": n_registered,
        "metadata": metadata or {},
        "transforms": [transform_to_dict(a) for a in alignments],
    }

    with open(output_path, "w") as f:
        json.dump(data, f, indent=2)

    logger.info(
        "Saved %d transforms (%d registered) to %s",
        len(alignments),
        n_registered,
        output_path,
    )


def load_transforms(
    input_path: str | Path,
) -> tuple[list[FrameAlignment], str, dict]:
    """
    Load alignment diagnostics from a JSON file.

    Parameters
    ----------
    input_path : str or Path
        Path to JSON file.

    Returns
    -------
    tuple
        (alignments, reference_filename, metadata)
    """
    input_path = Path(input_path)

    with open(input_path) as f:
        data = json.load(f)

    alignments = [dict_to_transform(d) for d in data["transforms"]]
    reference_filename = data.get("reference_filename", "")
    metadata = data.get("metadata", {})

    logger.info("Loaded %d transforms from %s", len(alignments), input_path)

    return alignments, reference_filename, metadata
