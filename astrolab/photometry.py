"""Target selection, aperture placement and light curve extraction."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import numpy as np
import pandas as pd
from astropy.time import Time
from photutils.aperture import CircularAnnulus, CircularAperture, aperture_photometry

from .background import estimate_background, subtract_background
from .config import BackgroundSettings, DetectionSettings
from .detection import SourceList, SourceRecord, extract_sources
from .io import Frame, as_frame, frame_data, parse_date_obs

logger = logging.getLogger(__name__)

SourcePredicate = Callable[[SourceRecord], bool]


@dataclass(frozen=True)
class Aperture:
    """Circular aperture centered on a source (pixel column ``x``, row ``y``)."""

    x: float
    y: float
    r: float

    @classmethod
    def from_source(cls, source: SourceRecord, radius: float) -> "Aperture":
        return cls(x=source.x, y=source.y, r=float(radius))

    def to_photutils(self) -> CircularAperture:
        return CircularAperture((self.x, self.y), r=self.r)


def x_band(x_min: float, x_max: float) -> SourcePredicate:
    """Keep sources whose column lies in ``[x_min, x_max]``."""
    return lambda source: x_min <= source.x <= x_max


def y_band(y_min: float, y_max: float) -> SourcePredicate:
    """Keep sources whose row lies in ``[y_min, y_max]``."""
    return lambda source: y_min <= source.y <= y_max


def select_sources(sources: SourceList, predicate: Optional[SourcePredicate] = None) -> SourceList:
    """Filter by ``predicate`` and keep every candidate tied for the maximum value."""
    candidates = [s for s in sources if predicate is None or predicate(s)]
    if not candidates:
        return []
    max_val = max(s.value for s in candidates)
    return [s for s in candidates if s.value == max_val]


def make_apertures(sources: SourceList, radius: float) -> list[Aperture]:
    """One fixed-radius aperture per source."""
    if radius <= 0:
        raise ValueError(f"Aperture radius must be positive, got {radius}")
    return [Aperture.from_source(s, radius) for s in sources]


def locate_target(
    frame: Frame | np.ndarray,
    predicate: Optional[SourcePredicate],
    radius: float,
    error_map: Optional[Frame | np.ndarray | float] = None,
    background: Optional[BackgroundSettings] = None,
    detection: Optional[DetectionSettings] = None,
) -> list[Aperture]:
    """Background-subtract one frame, extract its sources and place target apertures."""
    background = background or BackgroundSettings()
    detection = detection or DetectionSettings()

    model = estimate_background(
        frame,
        background.box_size,
        clip_sigma=background.clip_sigma,
        clip_maxiters=background.clip_maxiters,
        fill=background.fill,
        estimator=background.estimator,
        rms_estimator=background.rms_estimator,
    )
    subtracted = subtract_background(frame, model)
    sources = extract_sources(subtracted, error_map, nsigma=detection.nsigma, box_size=detection.box_size)
    selected = select_sources(sources, predicate)
    logger.debug("%d source(s) extracted, %d selected", len(sources), len(selected))
    return make_apertures(selected, radius)


def _time_columns(date_obs: Optional[str]) -> tuple[Optional[str], Optional[float]]:
    dt = parse_date_obs(date_obs)
    if dt is None:
        return None, None
    return dt.isoformat(), float(Time(dt).jd)


def _aperture_flux(data: np.ndarray, aperture: Aperture, annulus: Optional[tuple[float, float]]) -> float:
    aper = aperture.to_photutils()
    if annulus is None:
        phot = aperture_photometry(data, aper)
        return float(phot["aperture_sum"][0])

    ann = CircularAnnulus((aperture.x, aperture.y), r_in=float(annulus[0]), r_out=float(annulus[1]))
    phot = aperture_photometry(data, [aper, ann])
    bkg_mean = float(phot["aperture_sum_1"][0]) / ann.area
    return float(phot["aperture_sum_0"][0]) - bkg_mean * aper.area


def aperture_light_curve(
    frames: Sequence[Frame | np.ndarray],
    apertures: Sequence[Aperture],
    annulus: Optional[tuple[float, float]] = None,
) -> pd.DataFrame:
    """Measure flux in fixed apertures on every frame.

    Returns one row per frame with ``frame_index``, ``date_obs``, ``time_iso``,
    ``jd`` and a ``flux_<i>`` column per aperture. With ``annulus=(r_in, r_out)``
    the local annulus mean is subtracted from each aperture sum.
    """
    if not frames:
        raise ValueError("No frames provided for photometry.")
    if not apertures:
        raise ValueError("No apertures provided for photometry.")

    rows = []
    for idx, item in enumerate(frames):
        frame = as_frame(item)
        data = frame_data(frame)
        time_iso, jd = _time_columns(frame.date_obs)
        row = {"frame_index": idx, "date_obs": frame.date_obs, "time_iso": time_iso, "jd": jd}
        for k, aperture in enumerate(apertures):
            row[f"flux_{k}"] = _aperture_flux(data, aperture, annulus)
        rows.append(row)

    logger.info("Measured %d aperture(s) on %d frame(s)", len(apertures), len(rows))
    return pd.DataFrame(rows)


def tracked_light_curve(
    frames: Sequence[Frame | np.ndarray],
    predicate: Optional[SourcePredicate],
    radius: float,
    error_map: Optional[Frame | np.ndarray | float] = None,
    background: Optional[BackgroundSettings] = None,
    detection: Optional[DetectionSettings] = None,
    annulus: Optional[tuple[float, float]] = None,
) -> pd.DataFrame:
    """Locate the target independently on each frame and measure its flux.

    Frames where no source satisfies ``predicate`` get NaN flux and position.
    """
    rows = []
    for idx, item in enumerate(frames):
        frame = as_frame(item)
        apertures = locate_target(frame, predicate, radius, error_map, background, detection)
        time_iso, jd = _time_columns(frame.date_obs)
        row = {"frame_index": idx, "date_obs": frame.date_obs, "time_iso": time_iso, "jd": jd}
        if apertures:
            target = apertures[0]
            row.update(x=target.x, y=target.y, flux_0=_aperture_flux(frame_data(frame), target, annulus))
        else:
            logger.warning("No target candidate found in frame %d", idx)
            row.update(x=np.nan, y=np.nan, flux_0=np.nan)
        rows.append(row)
    return pd.DataFrame(rows)


def differential_flux(df: pd.DataFrame, target: str = "flux_0", comparison: str = "flux_1") -> pd.DataFrame:
    """Add target/comparison ``ratio`` and ``relative_mag`` columns."""
    out = df.copy()
    comp = out[comparison].where(out[comparison] > 0)
    out["ratio"] = out[target] / comp

    valid = out["ratio"].replace([np.inf, -np.inf], np.nan)
    valid = valid[valid > 0]
    if valid.empty:
        out["relative_mag"] = np.nan
        return out

    reference_ratio = float(np.median(valid))
    safe_ratio = np.where(out["ratio"] > 0, out["ratio"], np.nan)
    out["relative_mag"] = -2.5 * np.log10(safe_ratio / reference_ratio)
    return out
