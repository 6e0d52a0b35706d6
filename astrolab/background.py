"""Mesh-based estimation of the spatially varying sky background and its RMS."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterator, Optional

import numpy as np
from astropy.stats import sigma_clip
from photutils.background import (
    Background2D,
    BkgZoomInterpolator,
    MADStdBackgroundRMS,
    MeanBackground,
    MedianBackground,
    SExtractorBackground,
    StdBackgroundRMS,
)

from .errors import DegenerateBackgroundError, ShapeMismatchError
from .io import Frame, as_frame, frame_data

logger = logging.getLogger(__name__)

FILL_POLICIES = ("clamp", "nan")

# The frame is clipped once up front, so the per-cell estimators run unclipped.
BACKGROUND_ESTIMATORS = {
    "sextractor": SExtractorBackground,
    "median": MedianBackground,
    "mean": MeanBackground,
}

RMS_ESTIMATORS = {
    "std": StdBackgroundRMS,
    "mad": MADStdBackgroundRMS,
}


@dataclass
class BackgroundModel:
    """Full-resolution background and RMS maps for one frame."""

    background: np.ndarray
    rms: np.ndarray
    box_size: int

    def __iter__(self) -> Iterator[np.ndarray]:
        yield self.background
        yield self.rms


def default_box_size(shape: tuple[int, int]) -> int:
    """Largest square mesh that tiles the frame exactly."""
    return math.gcd(int(shape[0]), int(shape[1]))


def clip_frame(data: np.ndarray, sigma: float = 1.0, maxiters: int = 1, fill: str = "clamp") -> np.ndarray:
    """Sigma-clip bright outliers while preserving the frame shape."""
    if fill not in FILL_POLICIES:
        raise ValueError(f"fill must be one of {FILL_POLICIES}, got '{fill}'")

    clipped, lower, upper = sigma_clip(
        data,
        sigma=sigma,
        maxiters=maxiters,
        masked=True,
        return_bounds=True,
    )
    if fill == "clamp":
        return np.clip(data, lower, upper).astype(np.float32, copy=False)
    return np.ma.filled(clipped.astype(np.float32), np.nan)


def _zoom_order(mesh_shape: tuple[int, int]) -> int:
    # Spline order is limited by the number of mesh cells along the shorter axis.
    return max(0, min(3, min(mesh_shape) - 1))


def estimate_background(
    frame: Frame | np.ndarray,
    box_size: Optional[int] = None,
    *,
    clip_sigma: float = 1.0,
    clip_maxiters: int = 1,
    fill: str = "clamp",
    estimator: str = "sextractor",
    rms_estimator: str = "std",
) -> BackgroundModel:
    """Estimate a smooth background map and its RMS at full frame resolution.

    The frame is sigma-clipped, then ``photutils.background.Background2D``
    reduces each ``box_size`` x ``box_size`` cell to a background and an RMS
    value and zooms both meshes back to the frame shape. No median filter is
    applied to the meshes.
    """
    data = frame_data(frame)
    h, w = data.shape
    if box_size is None:
        box_size = default_box_size((h, w))
    box_size = int(box_size)
    if box_size <= 0 or h % box_size or w % box_size:
        raise ShapeMismatchError(
            f"box_size={box_size} does not tile a {h}x{w} frame; use a common divisor such as {default_box_size((h, w))}."
        )
    try:
        bkg_estimator = BACKGROUND_ESTIMATORS[estimator](sigma_clip=None)
        bkgrms_estimator = RMS_ESTIMATORS[rms_estimator](sigma_clip=None)
    except KeyError as exc:
        raise ValueError(f"Unknown background estimator: {exc.args[0]}") from None

    clipped = clip_frame(data, sigma=clip_sigma, maxiters=clip_maxiters, fill=fill)
    mesh_shape = (h // box_size, w // box_size)
    try:
        bkg = Background2D(
            clipped,
            (box_size, box_size),
            mask=~np.isfinite(clipped),
            exclude_percentile=100.0,
            filter_size=(1, 1),
            sigma_clip=None,
            bkg_estimator=bkg_estimator,
            bkgrms_estimator=bkgrms_estimator,
            interpolator=BkgZoomInterpolator(order=_zoom_order(mesh_shape)),
        )
        rms_mesh = np.asarray(bkg.background_rms_mesh)
    except ValueError as exc:
        raise DegenerateBackgroundError(f"No usable mesh cells at box_size={box_size}: {exc}") from exc

    degenerate = ~np.isfinite(rms_mesh) | (rms_mesh <= 0)
    if np.any(degenerate):
        iy, ix = np.argwhere(degenerate)[0]
        raise DegenerateBackgroundError(
            f"{int(degenerate.sum())} mesh cell(s) have zero or undefined variance "
            f"(first at cell row {iy}, column {ix}, box_size={box_size})."
        )

    background = np.asarray(bkg.background, dtype=np.float32)
    rms = np.clip(np.asarray(bkg.background_rms, dtype=np.float32), 0.0, None)
    logger.debug(
        "Background mesh %dx%d cells of %d px, median level %.4g, median rms %.4g",
        mesh_shape[1],
        mesh_shape[0],
        box_size,
        float(np.median(bkg.background_mesh)),
        float(np.median(rms_mesh)),
    )
    return BackgroundModel(background=background, rms=rms, box_size=box_size)


def subtract_background(frame: Frame | np.ndarray, model: BackgroundModel) -> Frame:
    """Return a new frame with the background map subtracted."""
    base = as_frame(frame)
    data = frame_data(base)
    if model.background.shape != data.shape:
        raise ShapeMismatchError(
            f"Background shape {model.background.shape} does not match frame shape {data.shape}."
        )
    return base.with_data(data - model.background, footprint=base.footprint, history="astrolab: background subtracted")
