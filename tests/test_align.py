"""
Tests for the align module.

Tests cover:
- Transform construction and properties
- Translation and affine estimation from catalogs
- Full-mode fallback to translation
- Resampling onto the reference grid with validity maps
- Transform persistence
"""

import numpy as np
import pytest
from scipy.spatial import cKDTree

from conftest import make_catalog
from stellarstack.align import (
    FrameAlignment,
    Transform,
    TransformKind,
    estimate_affine,
    estimate_translation,
    load_transforms,
    match_points,
    register_catalogs,
    required_matches,
    resample_frame,
    save_transforms,
)
from stellarstack.config import AlignmentMode, RegistrationConfig
from stellarstack.detection import SourceCatalog
from stellarstack.frame import Frame


@pytest.fixture
def reference_points():
    rng = np.random.default_rng(7)
    return rng.uniform(20, 180, size=(30, 2))


def similarity(points, angle_deg, scale, shift, center=(100.0, 100.0)):
    """Rotate and scale about ``center``, then shift."""
    theta = np.radians(angle_deg)
    rot = scale * np.array([[np.cos(theta), -np.sin(theta)], [np.sin(theta), np.cos(theta)]])
    c = np.asarray(center)
    return (points - c) @ rot.T + c + np.asarray(shift)


class TestTransform:
    """Tests for the Transform record."""

    def test_translation_properties(self):
        t = Transform.translation(3.0, -2.0, matched_stars=12, rms_error=0.1)
        assert t.kind is TransformKind.TRANSLATION
        assert (t.dx, t.dy) == (3.0, -2.0)
        assert t.rotation_deg == pytest.approx(0.0)
        assert t.scale == pytest.approx(1.0)
        assert t.succeeded

    def test_apply_maps_reference_to_frame(self):
        t = Transform.translation(3.0, -2.0)
        assert t.apply([[10.0, 10.0]]).tolist() == [[13.0, 8.0]]

    def test_sentinels(self):
        ref = Transform.reference()
        failed = Transform.failed()
        assert ref.is_reference and ref.matched_stars == -1
        assert failed.matched_stars == 0 and not failed.succeeded
        assert failed.is_identity
        assert np.array_equal(failed.matrix, np.eye(3)[:2])

    def test_affine_rotation(self):
        theta = np.radians(10.0)
        matrix = [[np.cos(theta), -np.sin(theta), 0.0], [np.sin(theta), np.cos(theta), 0.0]]
        t = Transform.affine(matrix)
        assert t.rotation_deg == pytest.approx(10.0)
        assert t.matrix3x3().shape == (3, 3)

    def test_accepts_3x3(self):
        t = Transform(TransformKind.AFFINE, np.eye(3))
        assert t.matrix.shape == (2, 3)

    def test_bad_shape_raises(self):
        with pytest.raises(ValueError, match="2x3"):
            Transform(TransformKind.AFFINE, np.eye(2))


class TestMatchPoints:
    def test_one_to_one(self):
        """Two reference points near one frame point: the closest wins."""
        targets = np.array([[0.0, 0.0], [10.0, 10.0]])
        mapped = np.array([[0.5, 0.0], [0.2, 0.0], [10.0, 10.5]])
        ref_idx, tgt_idx, res = match_points(mapped, cKDTree(targets), len(targets), threshold=1.0)
        assert ref_idx.tolist() == [1, 2]
        assert tgt_idx.tolist() == [0, 1]
        assert res.tolist() == pytest.approx([0.2, 0.5])

    def test_threshold_is_strict(self):
        targets = np.array([[0.0, 0.0]])
        ref_idx, _, _ = match_points(np.array([[1.0, 0.0]]), cKDTree(targets), 1, threshold=1.0)
        assert len(ref_idx) == 0


class TestRequiredMatches:
    """Tests for the relative inlier threshold."""

    def test_tiny_catalogs(self):
        assert required_matches(1, 1, 3, 0.25) == 1
        assert required_matches(2, 10, 3, 0.25) == 2
        assert required_matches(0, 10, 3, 0.25) == 1

    def test_floor_and_fraction(self):
        assert required_matches(5, 8, 3, 0.25) == 3
        assert required_matches(40, 100, 3, 0.25) == 10
        assert required_matches(40, 100, 3, 0.0) == 3


class TestEstimateTranslation:
    """Tests for shift estimation."""

    def test_recovers_shift(self, reference_points):
        reference = make_catalog(reference_points)
        target = make_catalog(reference_points + [4.25, -7.5])
        t = estimate_translation(target, reference)
        assert t.dx == pytest.approx(4.25, abs=1e-6)
        assert t.dy == pytest.approx(-7.5, abs=1e-6)
        assert t.matched_stars == len(reference_points)
        assert t.rms_error == pytest.approx(0.0, abs=1e-6)

    def test_robust_to_missing_and_spurious(self, reference_points):
        rng = np.random.default_rng(3)
        moved = reference_points[:24] + [-5.0, 2.0] + rng.normal(0, 0.1, (24, 2))
        spurious = rng.uniform(0, 200, size=(8, 2))
        target = make_catalog(np.vstack([moved, spurious]))
        t = estimate_translation(target, make_catalog(reference_points))
        assert t.dx == pytest.approx(-5.0, abs=0.25)
        assert t.dy == pytest.approx(2.0, abs=0.25)
        assert t.matched_stars >= 20

    def test_single_star(self):
        t = estimate_translation(make_catalog([[52.0, 51.0]]), make_catalog([[50.0, 50.0]]))
        assert (t.dx, t.dy) == pytest.approx((2.0, 1.0))
        assert t.matched_stars == 1

    def test_empty_catalog_fails(self, reference_points):
        t = estimate_translation(SourceCatalog(), make_catalog(reference_points))
        assert t.matched_stars == 0
        assert t.is_identity

    def test_max_shift(self):
        """Shifts larger than the bound are never hypothesised."""
        config = RegistrationConfig(max_shift=10.0)
        t = estimate_translation(make_catalog([[90.0, 50.0]]), make_catalog([[50.0, 50.0]]), config)
        assert t.matched_stars == 0
        t = estimate_translation(make_catalog([[55.0, 50.0]]), make_catalog([[50.0, 50.0]]), config)
        assert t.dx == pytest.approx(5.0)

    def test_deterministic(self, reference_points):
        reference = make_catalog(reference_points)
        target = make_catalog(reference_points + [1.5, 2.5])
        a = estimate_translation(target, reference)
        b = estimate_translation(target, reference)
        assert np.array_equal(a.matrix, b.matrix)
        assert a.matched_stars == b.matched_stars

    def test_unrelated_catalogs_fail(self):
        rng = np.random.default_rng(21)
        reference = make_catalog(rng.uniform(0, 1000, size=(40, 2)))
        target = make_catalog(rng.uniform(0, 1000, size=(40, 2)))
        t = estimate_translation(target, reference)
        assert t.matched_stars == 0
        assert t.is_identity

    def test_few_coincident_pairs_rejected(self):
        """Two pairs sharing an offset among thirty stars are not a registration."""
        rng = np.random.default_rng(5)
        ref_points = rng.uniform(0, 1000, size=(30, 2))
        tgt_points = np.vstack([ref_points[:2] + [7.0, -4.0], rng.uniform(0, 1000, size=(28, 2))])
        t = estimate_translation(make_catalog(tgt_points), make_catalog(ref_points))
        assert t.matched_stars == 0

    def test_min_inlier_fraction_configurable(self, reference_points):
        """Half of the stars matched passes 0.25 but not 0.75."""
        rng = np.random.default_rng(9)
        tgt_points = np.vstack([reference_points[:15] + [3.0, 3.0], rng.uniform(300, 500, size=(15, 2))])
        target, reference = make_catalog(tgt_points), make_catalog(reference_points)
        assert estimate_translation(target, reference).matched_stars == 15
        strict = RegistrationConfig(min_inlier_fraction=0.75)
        assert estimate_translation(target, reference, strict).matched_stars == 0


class TestEstimateAffine:
    """Tests for affine estimation."""

    def test_recovers_rotation_and_scale(self, reference_points):
        moved = similarity(reference_points, angle_deg=3.0, scale=1.01, shift=(2.0, -1.0))
        t = estimate_affine(make_catalog(moved), make_catalog(reference_points))
        assert t.kind is TransformKind.AFFINE
        assert t.matched_stars == len(reference_points)
        assert t.rotation_deg == pytest.approx(3.0, abs=0.01)
        assert t.scale == pytest.approx(1.01, abs=1e-4)
        assert np.allclose(t.apply(reference_points), moved, atol=1e-6)

    def test_too_few_stars_fail(self):
        t = estimate_affine(make_catalog([[10, 10], [50, 20]]), make_catalog([[10, 10], [50, 20]]))
        assert t.matched_stars == 0

    def test_seeded_sampling_is_reproducible(self, reference_points):
        moved = similarity(reference_points, angle_deg=-2.0, scale=1.0, shift=(5.0, 5.0))
        config = RegistrationConfig(ransac_iterations=20, seed=11)
        a = estimate_affine(make_catalog(moved), make_catalog(reference_points), config)
        b = estimate_affine(make_catalog(moved), make_catalog(reference_points), config)
        assert np.array_equal(a.matrix, b.matrix)


class TestRegisterCatalogs:
    """Tests for mode dispatch."""

    def test_none_mode(self, reference_points):
        catalog = make_catalog(reference_points)
        assert register_catalogs(catalog, catalog, AlignmentMode.NONE).is_reference

    def test_translation_mode(self, reference_points):
        t = register_catalogs(
            make_catalog(reference_points + [1.0, 1.0]),
            make_catalog(reference_points),
            AlignmentMode.TRANSLATION,
        )
        assert t.kind is TransformKind.TRANSLATION

    def test_full_mode_falls_back_to_translation(self):
        """Two stars cannot fix an affine model but do fix a shift."""
        ref = make_catalog([[40.0, 40.0], [120.0, 90.0]])
        tgt = make_catalog([[43.0, 38.0], [123.0, 88.0]])
        t = register_catalogs(tgt, ref, AlignmentMode.FULL)
        assert t.kind is TransformKind.TRANSLATION
        assert t.fallback == "translation"
        assert (t.dx, t.dy) == pytest.approx((3.0, -2.0))

    def test_full_mode_without_fallback(self):
        ref = make_catalog([[40.0, 40.0], [120.0, 90.0]])
        tgt = make_catalog([[43.0, 38.0], [123.0, 88.0]])
        config = RegistrationConfig(fallback_to_translation=False)
        t = register_catalogs(tgt, ref, AlignmentMode.FULL, config)
        assert t.matched_stars == 0

    def test_full_mode_self_registration(self, reference_points):
        catalog = make_catalog(reference_points)
        t = register_catalogs(catalog, catalog, AlignmentMode.FULL)
        assert t.kind is TransformKind.AFFINE
        assert t.matched_stars == len(catalog)
        assert t.rms_error == pytest.approx(0.0, abs=1e-6)
        assert np.allclose(t.matrix, [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]], atol=1e-9)


class TestResampleFrame:
    """Tests for resampling onto the reference grid."""

    def test_identity_copies(self):
        data = np.arange(100, dtype=np.float32).reshape(10, 10)
        aligned = resample_frame(Frame(data=data, filename="a.fits"), Transform.reference())
        assert np.array_equal(aligned.data, data)
        assert aligned.data is not data
        assert aligned.valid.all()
        assert aligned.filename == "a.fits"

    def test_integer_shift(self):
        """Output (x, y) reads the frame at (x + dx, y + dy)."""
        data = np.arange(400, dtype=np.float32).reshape(20, 20)
        aligned = resample_frame(data, Transform.translation(2.0, 1.0))
        assert np.allclose(aligned.data[:19, :18], data[1:, 2:])
        assert aligned.valid[:19, :18].all()
        assert not aligned.valid[:, 18:].any()
        assert not aligned.valid[19:, :].any()
        assert np.all(aligned.data[~aligned.valid] == 0)
        assert aligned.valid_fraction == pytest.approx(18 * 19 / 400)

    def test_rotation_invalid_corners(self):
        theta = np.radians(20.0)
        c = 25.0
        rot = np.array([[np.cos(theta), -np.sin(theta)], [np.sin(theta), np.cos(theta)]])
        offset = np.array([c, c]) - rot @ [c, c]
        matrix = np.hstack([rot, offset[:, None]])
        aligned = resample_frame(np.ones((51, 51), dtype=np.float32), Transform.affine(matrix))
        assert aligned.valid[25, 25]
        assert not aligned.valid[0, 0]
        assert np.allclose(aligned.data[aligned.valid], 1.0, atol=1e-5)

    def test_output_shape(self):
        aligned = resample_frame(np.ones((10, 12), dtype=np.float32), Transform.identity(), (8, 8))
        assert aligned.shape == (8, 8)
        assert aligned.valid.all()


class TestTransformPersistence:
    """Tests for transforms.json."""

    def test_save_and_load(self, tmp_path):
        alignments = [
            FrameAlignment("ref.fits", Transform.reference(), 30, 30),
            FrameAlignment("b.fits", Transform.translation(1.5, -0.5, 25, 0.05), 30, 28),
            FrameAlignment("c.fits", Transform.failed(), 30, 2),
        ]
        path = tmp_path / "transforms.json"
        save_transforms(alignments, path, reference_filename="ref.fits", metadata={"alignment_mode": "translation"})

        loaded, reference, metadata = load_transforms(path)
        assert reference == "ref.fits"
        assert metadata == {"alignment_mode": "translation"}
        assert [a.filename for a in loaded] == ["ref.fits", "b.fits", "c.fits"]
        assert loaded[0].transform.is_reference
        assert loaded[1].transform.dx == 1.5
        assert loaded[1].transform.matched_stars == 25
        assert loaded[2].failed
        assert loaded[2].target_sources == 2
