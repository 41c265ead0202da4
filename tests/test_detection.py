"""
Tests for the detection module.

Tests cover:
- Background and noise estimation
- Source extraction on synthetic star fields
- Morphology and border filtering
- Deblending of close pairs
- Catalog ordering
"""

import numpy as np
import pytest

from conftest import render_star_field
from stellarstack.config import ExtractionConfig
from stellarstack.detection import (
    Source,
    SourceCatalog,
    deblend_component,
    estimate_background,
    extract_sources,
)
from stellarstack.frame import Frame


class TestEstimateBackground:
    """Tests for mesh background estimation."""

    def test_flat_image_noise_fallback(self):
        """A perfectly flat frame has noise 1.0."""
        bg = estimate_background(np.full((128, 128), 250.0, dtype=np.float32), mesh_size=32)
        assert np.allclose(bg.background, 250.0)
        assert bg.noise == 1.0
        assert np.allclose(bg.noise_map, 1.0)

    def test_gaussian_noise_level(self):
        rng = np.random.default_rng(1)
        data = (1000 + rng.normal(0, 10, (256, 256))).astype(np.float32)
        bg = estimate_background(data, mesh_size=64)
        assert bg.noise == pytest.approx(10.0, rel=0.15)
        assert np.allclose(bg.background, 1000.0, atol=2.0)

    def test_follows_gradient(self):
        """Background tracks a smooth ramp between cell centres."""
        ramp = np.tile(np.linspace(100, 200, 256, dtype=np.float32), (256, 1))
        bg = estimate_background(ramp, mesh_size=32)
        inner = slice(32, -32)
        assert np.allclose(bg.background[:, inner], ramp[:, inner], atol=1.0)
        assert bg.background.shape == ramp.shape

    def test_stars_do_not_bias_level(self, star_field):
        bg = estimate_background(star_field(), mesh_size=50)
        assert np.median(bg.background) == pytest.approx(100.0, abs=0.5)


class TestExtractSources:
    """Tests for star extraction."""

    def test_single_star_centroid(self):
        data = render_star_field((100, 100), [(50.3, 40.7, 1000.0)])
        catalog = extract_sources(Frame(data=data))
        assert len(catalog) == 1
        star = catalog[0]
        assert star.x == pytest.approx(50.3, abs=0.1)
        assert star.y == pytest.approx(40.7, abs=0.1)
        # Gaussian sigma 1.8 -> FWHM ~4.2
        assert 3.0 < star.fwhm < 5.0
        assert star.ellipticity < 0.1
        assert star.flux > 0
        assert star.snr > 2.0

    def test_accepts_plain_array(self):
        data = render_star_field((100, 100), [(50.0, 50.0, 1000.0)])
        assert len(extract_sources(data)) == 1

    def test_flat_frame_is_empty(self):
        catalog = extract_sources(np.full((100, 100), 100.0, dtype=np.float32))
        assert len(catalog) == 0
        assert catalog.positions().shape == (0, 2)

    def test_frame_smaller_than_border_is_empty(self):
        catalog = extract_sources(np.zeros((15, 15), dtype=np.float32))
        assert len(catalog) == 0

    def test_star_field_recovered(self, star_field, star_list):
        """Every synthetic star is detected near its true position."""
        catalog = extract_sources(Frame(data=star_field(noise=5.0)))
        assert len(catalog) == len(star_list)
        found = catalog.positions()
        for x, y, _ in star_list:
            d = np.hypot(found[:, 0] - x, found[:, 1] - y)
            assert d.min() < 0.2

    def test_ordered_by_flux(self, star_field):
        catalog = extract_sources(star_field())
        fluxes = catalog.fluxes()
        assert np.all(np.diff(fluxes) <= 0)

    def test_max_stars_keeps_brightest(self, star_field, star_list):
        config = ExtractionConfig(max_stars=3)
        catalog = extract_sources(star_field(), config)
        assert len(catalog) == 3
        brightest = star_list[:3]
        for source, (x, y, _) in zip(catalog, brightest):
            assert source.x == pytest.approx(x, abs=0.2)
            assert source.y == pytest.approx(y, abs=0.2)

    def test_hot_pixel_rejected(self):
        """A single-pixel spike fails the minimum FWHM filter."""
        data = render_star_field((100, 100), [(30.0, 30.0, 1000.0)])
        data[70, 70] = 5000.0
        catalog = extract_sources(data)
        assert len(catalog) == 1
        assert catalog[0].x == pytest.approx(30.0, abs=0.1)

    def test_border_sources_discarded(self):
        data = render_star_field((100, 100), [(3.0, 50.0, 1000.0), (50.0, 50.0, 1000.0)])
        catalog = extract_sources(data)
        assert len(catalog) == 1
        assert catalog[0].x == pytest.approx(50.0, abs=0.1)

    def test_saturation_limit(self):
        data = render_star_field((100, 100), [(30.0, 30.0, 800.0), (70.0, 70.0, 60000.0)])
        catalog = extract_sources(data, ExtractionConfig(peak_max=10000.0))
        assert len(catalog) == 1
        assert catalog[0].x == pytest.approx(30.0, abs=0.1)

    def test_without_matched_filter(self):
        data = render_star_field((100, 100), [(50.0, 50.0, 1000.0)])
        catalog = extract_sources(data, ExtractionConfig(apply_matched_filter=False))
        assert len(catalog) == 1

    def test_deterministic(self, star_field):
        data = star_field(noise=5.0)
        a = extract_sources(data)
        b = extract_sources(data.copy())
        assert a.positions().tolist() == b.positions().tolist()

    def test_pure_noise_is_empty(self):
        """Gaussian noise without stars yields no sources."""
        rng = np.random.default_rng(7)
        data = (100.0 + rng.normal(0.0, 5.0, (256, 256))).astype(np.float32)
        catalog = extract_sources(Frame(data=data))
        assert len(catalog) == 0
        assert catalog.background_median == pytest.approx(100.0, abs=1.0)
        assert catalog.background_noise == pytest.approx(5.0, rel=0.2)

    def test_background_recorded_on_catalog(self, star_field):
        catalog = extract_sources(star_field(noise=5.0))
        assert catalog.background_median == pytest.approx(100.0, abs=1.0)
        assert catalog.background_noise == pytest.approx(5.0, rel=0.2)


class TestDeblending:
    """Tests for splitting close pairs."""

    def test_close_pair_split(self):
        data = render_star_field((100, 100), [(46.5, 50.0, 1000.0), (53.5, 50.0, 1000.0)], sigma=1.5)
        catalog = extract_sources(data)
        assert len(catalog) == 2
        assert all(s.deblended for s in catalog)
        xs = sorted(s.x for s in catalog)
        assert xs[0] == pytest.approx(46.5, abs=0.5)
        assert xs[1] == pytest.approx(53.5, abs=0.5)

    def test_single_level_keeps_blend(self):
        data = render_star_field((100, 100), [(46.5, 50.0, 1000.0), (53.5, 50.0, 1000.0)], sigma=1.5)
        config = ExtractionConfig(deblend_levels=1, max_ellipticity=0.9)
        catalog = extract_sources(data, config)
        assert len(catalog) == 1
        assert catalog[0].deblended is False
        assert catalog[0].x == pytest.approx(50.0, abs=0.2)

    def test_faint_branch_not_split(self):
        """Branches below the contrast fraction stay with the parent."""
        yy, xx = np.mgrid[0:30, 0:30]
        values = 1000 * np.exp(-((xx - 12) ** 2 + (yy - 15) ** 2) / 8.0)
        values += 20 * np.exp(-((xx - 19) ** 2 + (yy - 15) ** 2) / 8.0)
        mask = values > 5
        parts = deblend_component(mask, values, 5.0, levels=16, min_contrast=0.08)
        assert len(parts) == 1
        assert parts[0][1] is False


class TestSourceCatalog:
    """Tests for catalog ordering and accessors."""

    def _source(self, x, y, flux):
        return Source(x=x, y=y, flux=flux, peak=1.0, area=9, fwhm=2.0, ellipticity=0.0)

    def test_sorted_by_flux_then_position(self):
        catalog = SourceCatalog([
            self._source(5.0, 5.0, 10.0),
            self._source(9.0, 1.0, 50.0),
            self._source(1.0, 1.0, 50.0),
            self._source(0.0, 3.0, 50.0),
        ])
        assert [(s.x, s.y) for s in catalog] == [(1.0, 1.0), (9.0, 1.0), (0.0, 3.0), (5.0, 5.0)]

    def test_slicing_returns_catalog(self):
        catalog = SourceCatalog([self._source(i, i, 10.0 - i) for i in range(5)])
        head = catalog[:2]
        assert isinstance(head, SourceCatalog)
        assert len(head) == 2
        assert len(catalog.brightest(10)) == 5
        assert len(catalog.brightest(0)) == 0

    def test_array_accessors(self):
        catalog = SourceCatalog([self._source(1.0, 2.0, 3.0)])
        assert catalog.positions().tolist() == [[1.0, 2.0]]
        assert catalog.fluxes().tolist() == [3.0]
        assert catalog.fwhms().tolist() == [2.0]
        assert catalog.ellipticities().tolist() == [0.0]

    def test_background_survives_slicing(self):
        catalog = SourceCatalog(
            [self._source(i, i, 10.0 - i) for i in range(5)],
            background_median=42.0,
            background_noise=1.5,
        )
        for derived in (catalog[:2], catalog.brightest(3)):
            assert derived.background_median == 42.0
            assert derived.background_noise == 1.5
        assert SourceCatalog().background_noise == 0.0

    def test_peak_and_snr_accessors(self):
        catalog = SourceCatalog([
            Source(x=1.0, y=1.0, flux=5.0, peak=2.5, area=9, fwhm=2.0, ellipticity=0.0, snr=12.0),
        ])
        assert catalog.peaks().tolist() == [2.5]
        assert catalog.snrs().tolist() == [12.0]
