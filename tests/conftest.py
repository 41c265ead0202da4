"""
Pytest configuration and fixtures.
"""

import numpy as np
import pytest
from astropy.io import fits

from stellarstack.detection import Source, SourceCatalog
from stellarstack.frame import Frame


def render_star_field(shape, stars, sigma=1.8, background=100.0, noise=0.0, seed=0):
    """
    Render Gaussian stars on a flat background.

    ``stars`` is a sequence of (x, y, amplitude).
    """
    height, width = shape
    yy, xx = np.mgrid[0:height, 0:width]
    image = np.full(shape, background, dtype=np.float64)
    for x0, y0, amplitude in stars:
        image += amplitude * np.exp(-((xx - x0) ** 2 + (yy - y0) ** 2) / (2 * sigma ** 2))
    if noise > 0:
        image += np.random.default_rng(seed).normal(0, noise, shape)
    return image.astype(np.float32)


def random_star_list(n_stars=20, shape=(200, 200), border=20, min_separation=18, seed=42):
    """Well-separated stars with distinct amplitudes, brightest first."""
    rng = np.random.default_rng(seed)
    height, width = shape
    positions = []
    while len(positions) < n_stars:
        x = rng.uniform(border, width - border)
        y = rng.uniform(border, height - border)
        if all(np.hypot(x - px, y - py) >= min_separation for px, py in positions):
            positions.append((x, y))
    amplitudes = np.linspace(5000, 800, n_stars)
    return [(x, y, float(a)) for (x, y), a in zip(positions, amplitudes)]


def make_catalog(points, fluxes=None):
    """SourceCatalog of round point sources at (x, y) positions."""
    points = np.asarray(points, dtype=np.float64)
    if fluxes is None:
        fluxes = np.linspace(1000.0, 100.0, len(points))
    return SourceCatalog(
        Source(x=float(x), y=float(y), flux=float(f), peak=float(f) / 10, area=20, fwhm=3.0, ellipticity=0.05)
        for (x, y), f in zip(points, fluxes)
    )


@pytest.fixture
def star_list():
    """Default list of 20 stars on a 200x200 grid."""
    return random_star_list()


@pytest.fixture
def star_field(star_list):
    """Factory rendering the default star list, optionally shifted."""
    def _create(shift=(0.0, 0.0), shape=(200, 200), noise=0.0, seed=0, sigma=1.8, background=100.0):
        dx, dy = shift
        stars = [(x + dx, y + dy, a) for x, y, a in star_list]
        return render_star_field(shape, stars, sigma=sigma, background=background, noise=noise, seed=seed)

    return _create


@pytest.fixture
def shifted_frames(star_field):
    """Five light frames with known integer shifts (first = reference)."""
    shifts = [(0, 0), (2, 1), (-1, 3), (3, -2), (1, 1)]
    frames = [
        Frame(data=star_field(shift), filename=f"light_{i:02d}.fits", exposure_s=10.0)
        for i, shift in enumerate(shifts)
    ]
    return frames, shifts


@pytest.fixture
def constant_frame():
    """Factory for flat frames."""
    def _create(value, shape=(32, 32), filename=""):
        return Frame(data=np.full(shape, value, dtype=np.float32), filename=filename)

    return _create


@pytest.fixture
def write_fits(tmp_path):
    """Factory writing a 2D or 3D array to a FITS file under tmp_path."""
    def _write(name, data, exptime=None, **header):
        hdu = fits.PrimaryHDU(np.asarray(data, dtype=np.float32))
        if exptime is not None:
            hdu.header["EXPTIME"] = exptime
        for key, value in header.items():
            hdu.header[key] = value
        path = tmp_path / name
        hdu.writeto(path, overwrite=True)
        return path

    return _write
