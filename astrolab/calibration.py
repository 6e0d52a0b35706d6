"""Dark-frame calibration for science frames."""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
from astropy.stats import sigma_clip

from .errors import ShapeMismatchError
from .io import Frame, frame_data

logger = logging.getLogger(__name__)

COMBINERS = {
    "median": np.nanmedian,
    "mean": np.nanmean,
    "average": np.nanmean,
}


@dataclass
class MasterDark:
    """Combined dark level and the exposure it corresponds to."""

    data: np.ndarray
    exposure_s: Optional[float]
    n_frames: int


def _cube(frames: Sequence[Frame | np.ndarray]) -> np.ndarray:
    if not frames:
        raise ValueError("No frames provided for combination.")
    layers = [frame_data(f) for f in frames]
    shapes = sorted({layer.shape for layer in layers})
    if len(shapes) > 1:
        raise ShapeMismatchError(f"Cannot combine frames of different shapes: {shapes}")
    return np.stack(layers, axis=0)


def combine_frames(
    frames: Sequence[Frame | np.ndarray],
    method: str = "median",
    sigma_clip_enabled: bool = False,
    sigma: float = 3.0,
    maxiters: int = 5,
) -> np.ndarray:
    """Pixel-wise combination of equally sized frames.

    With ``sigma_clip_enabled`` samples deviating along the frame axis (cosmic
    rays, a frame taken with the shutter open) are rejected first. Pixels left
    without any sample take the median level of the master.
    """
    try:
        reduce = COMBINERS[method.lower().strip()]
    except KeyError:
        raise ValueError(f"Unknown combination method: {method}") from None

    cube = _cube(frames)
    if sigma_clip_enabled:
        cube = sigma_clip(cube, sigma=sigma, maxiters=maxiters, axis=0, masked=True).filled(np.nan)

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        master = np.asarray(reduce(cube, axis=0), dtype=np.float32)

    empty = ~np.isfinite(master)
    if empty.any():
        master[empty] = float(np.median(master[~empty])) if (~empty).any() else 0.0
        logger.warning("%d master pixel(s) had no usable samples", int(empty.sum()))
    return master


def make_master_dark(
    dark_frames: Sequence[Frame | np.ndarray],
    exposures_s: Optional[Sequence[Optional[float]]] = None,
    method: str = "median",
    sigma_clip_enabled: bool = True,
    sigma: float = 3.0,
) -> MasterDark:
    """Combine dark frames; exposures default to the frames' EXPTIME cards."""
    if exposures_s is None:
        exposures_s = [f.exposure if isinstance(f, Frame) else None for f in dark_frames]
    known = [float(e) for e in exposures_s if e]

    master = MasterDark(
        data=combine_frames(dark_frames, method=method, sigma_clip_enabled=sigma_clip_enabled, sigma=sigma),
        exposure_s=float(np.median(known)) if known else None,
        n_frames=len(dark_frames),
    )
    logger.info("Built master dark from %d frame(s), exposure=%s s", master.n_frames, master.exposure_s)
    return master


def scale_dark_to_exposure(master_dark: MasterDark, target_exposure_s: Optional[float]) -> np.ndarray:
    """Dark level scaled linearly to ``target_exposure_s``; unscaled when an exposure is unknown."""
    reference = master_dark.exposure_s
    if not target_exposure_s or not reference or target_exposure_s < 0 or reference < 0:
        return master_dark.data
    return (master_dark.data * (float(target_exposure_s) / float(reference))).astype(np.float32)


def subtract_dark(frame: Frame, master_dark: MasterDark | Frame | np.ndarray, scale_exposure: bool = False) -> Frame:
    """Return a new frame with the master dark subtracted."""
    if isinstance(master_dark, MasterDark):
        dark = scale_dark_to_exposure(master_dark, frame.exposure) if scale_exposure else master_dark.data
    else:
        dark = frame_data(master_dark)

    data = frame_data(frame)
    if dark.shape != data.shape:
        raise ShapeMismatchError(
            f"Master dark shape {dark.shape} does not match frame shape {data.shape}."
        )
    return frame.with_data((data - dark).astype(np.float32, copy=False), history="astrolab: dark subtracted")


def calibrate_frames(
    frames: Sequence[Frame],
    master_dark: MasterDark | Frame | np.ndarray,
    scale_exposure: bool = False,
) -> list[Frame]:
    """Dark-subtract every frame of a series."""
    calibrated = [subtract_dark(f, master_dark, scale_exposure=scale_exposure) for f in frames]
    logger.info("Dark-subtracted %d frame(s)", len(calibrated))
    return calibrated
