"""Synthetic star fields shared by the test suite."""

import numpy as np
import pytest
from astropy.io import fits

from astrolab.io import Frame

SHAPE = (512, 512)
BACKGROUND = 100.0


def random_stars(n=40, shape=SHAPE, margin=24, seed=1):
    rng = np.random.default_rng(seed)
    h, w = shape
    xs = rng.integers(margin, w - margin, size=n).astype(float)
    ys = rng.integers(margin, h - margin, size=n).astype(float)
    amps = rng.uniform(200.0, 1000.0, size=n)
    return np.column_stack([xs, ys, amps])


def render_star_field(stars, shape=SHAPE, sigma_px=2.0, background=BACKGROUND, noise=0.0, seed=0):
    """Gaussian stars on a flat background, plus optional white noise."""
    h, w = shape
    yy, xx = np.mgrid[0:h, 0:w]
    image = np.full(shape, background, dtype=np.float64)
    for x, y, amp in stars:
        image += amp * np.exp(-((xx - x) ** 2 + (yy - y) ** 2) / (2.0 * sigma_px**2))
    if noise > 0:
        rng = np.random.default_rng(seed)
        image += rng.normal(0.0, noise, size=shape)
    return image.astype(np.float32)


def shifted(stars, dx, dy):
    out = stars.copy()
    out[:, 0] += dx
    out[:, 1] += dy
    return out


def make_frame(data, **cards):
    header = fits.Header()
    for key, value in cards.items():
        header[key.replace("_", "-")] = value
    return Frame(data=data, header=header, source=cards.get("OBJECT", ""))


@pytest.fixture(scope="session")
def stars():
    return random_stars()


@pytest.fixture(scope="session")
def reference_frame(stars):
    return make_frame(render_star_field(stars, noise=0.5, seed=10), OBJECT="reference", DATE_OBS="2024-03-25T07:10:03")


@pytest.fixture(scope="session")
def translated_frame(stars):
    data = render_star_field(shifted(stars, 5, -3), noise=0.5, seed=11)
    return make_frame(data, OBJECT="moving", DATE_OBS="2024-03-25T07:11:03")


@pytest.fixture
def noise_frame():
    rng = np.random.default_rng(42)
    return rng.normal(BACKGROUND, 5.0, size=(48, 64)).astype(np.float32)
