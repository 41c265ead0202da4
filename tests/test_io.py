"""
Tests for the io module.

Tests cover:
- FITS reading and header metadata
- Colour cube reduction
- Load errors
- Array output and preview rendering
"""

import numpy as np
import pytest

from stellarstack.errors import FrameLoadError
from stellarstack.io import (
    CalibrationFrames,
    LightFrameRef,
    as_light_refs,
    read_frame,
    render_preview,
    write_array,
)


class TestReadFrame:
    """Tests for FITS reading."""

    def test_reads_2d(self, write_fits):
        data = np.arange(200, dtype=np.float32).reshape(10, 20)
        path = write_fits("light.fits", data, exptime=30.0, FILTER="Ha", OBJECT="M31")
        frame = read_frame(path)
        assert frame.shape == (10, 20)
        assert frame.data.dtype == np.float32
        assert np.array_equal(frame.data, data)
        assert frame.filename == "light.fits"
        assert frame.exposure_s == 30.0
        assert frame.filter_name == "Ha"
        assert frame.header["OBJECT"] == "M31"

    def test_missing_exposure(self, write_fits):
        frame = read_frame(write_fits("a.fits", np.zeros((4, 4))))
        assert frame.exposure_s == 0.0
        assert frame.filter_name == ""

    def test_colour_cube_reduced(self, write_fits):
        cube = np.stack([np.full((6, 8), v, dtype=np.float32) for v in (10, 20, 30)])
        frame = read_frame(write_fits("rgb.fits", cube))
        assert frame.shape == (6, 8)
        assert np.allclose(frame.data, 20.0)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FrameLoadError, match="file not found"):
            read_frame(tmp_path / "nope.fits")

    def test_not_fits(self, tmp_path):
        path = tmp_path / "bad.fits"
        path.write_text("not a fits file")
        with pytest.raises(FrameLoadError) as excinfo:
            read_frame(path)
        assert excinfo.value.path == str(path)


class TestRefs:
    def test_as_light_refs(self, tmp_path):
        ref = LightFrameRef(filepath="/data/x.fits", filename="first")
        refs = as_light_refs([ref, tmp_path / "b.fits", "c.fits"])
        assert refs[0] is ref
        assert [r.display_name for r in refs] == ["first", "b.fits", "c.fits"]

    def test_calibration_frames_normalized(self):
        frames = CalibrationFrames(dark="d.fits", flat=["f1.fits", "f2.fits"])
        assert frames.dark == ["d.fits"]
        assert frames.flat == ["f1.fits", "f2.fits"]
        assert frames.bias == []
        assert not frames.is_empty
        assert CalibrationFrames().is_empty


class TestOutputs:
    def test_write_array(self, tmp_path):
        data = np.ones((3, 3), dtype=np.float32)
        path = write_array(data, tmp_path / "out" / "stack.npy")
        assert path.exists()
        assert np.array_equal(np.load(path), data)

    def test_render_preview(self):
        pixels = np.linspace(0, 1000, 100, dtype=np.float32).reshape(10, 10)
        rgba = render_preview(pixels)
        assert rgba.shape == (10, 10, 4)
        assert rgba.dtype == np.uint8
        assert np.all(rgba[..., 3] == 255)
        assert np.array_equal(rgba[..., 0], rgba[..., 1])

    def test_render_preview_flat_image_is_black(self):
        rgba = render_preview(np.full((4, 4), 7.0, dtype=np.float32))
        assert np.all(rgba[..., :3] == 0)
        assert np.all(rgba[..., 3] == 255)
