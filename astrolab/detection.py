"""Peak-mesh point source extraction."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Optional

import numpy as np
import pandas as pd
from astropy.stats import sigma_clipped_stats
from scipy import ndimage

from .errors import ShapeMismatchError
from .io import Frame, frame_data

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceRecord:
    """A detected source: pixel column ``x``, row ``y`` and peak value."""

    x: float
    y: float
    value: float


SourceList = list[SourceRecord]


def default_error_map(data: np.ndarray) -> float:
    """Sigma-clipped standard deviation of the frame, used as a flat error level."""
    finite = data[np.isfinite(data)]
    if finite.size == 0:
        return 0.0
    _, _, std = sigma_clipped_stats(finite, sigma=3.0)
    return float(std)


def _resolve_error_map(error_map, data: np.ndarray) -> np.ndarray:
    if error_map is None:
        return np.full(data.shape, default_error_map(data), dtype=np.float32)
    if np.isscalar(error_map):
        return np.full(data.shape, float(error_map), dtype=np.float32)
    err = frame_data(error_map)
    if err.shape != data.shape:
        raise ShapeMismatchError(f"Error map shape {err.shape} does not match frame shape {data.shape}.")
    return err


def extract_sources(
    frame: Frame | np.ndarray,
    error_map: Optional[Frame | np.ndarray | float] = None,
    nsigma: float = 3.0,
    box_size: int = 3,
) -> SourceList:
    """Find local peaks above ``error_map * nsigma``, strongest first.

    Every pixel at least ``box_size // 2`` away from the border is the center
    of a ``box_size`` x ``box_size`` box; it is a source when it is the
    maximum of that box and exceeds its threshold. Maxima are judged
    within that interior region only, so a pixel beside a brighter border
    pixel can still be a source. Equal values keep row-major scan order.
    """
    box_size = int(box_size)
    if box_size < 1 or box_size % 2 == 0:
        raise ValueError(f"box_size must be a positive odd integer, got {box_size}")

    data = frame_data(frame)
    err = _resolve_error_map(error_map, data)

    half = box_size // 2
    h, w = data.shape
    if h <= 2 * half or w <= 2 * half:
        return []

    inner = data[half : h - half, half : w - half]
    inner_err = err[half : h - half, half : w - half]

    search = np.where(np.isfinite(inner), inner, -np.inf)
    local_max = ndimage.maximum_filter(search, size=box_size, mode="constant", cval=-np.inf)
    with np.errstate(invalid="ignore", over="ignore"):
        threshold = inner_err.astype(np.float64) * float(nsigma)
        peaks = np.isfinite(inner) & (search == local_max) & (inner > threshold)

    rows, cols = np.nonzero(peaks)
    values = inner[rows, cols].astype(np.float64)
    order = np.argsort(-values, kind="stable")

    sources = [
        SourceRecord(x=float(cols[i] + half), y=float(rows[i] + half), value=float(values[i]))
        for i in order
    ]
    logger.debug("Extracted %d source(s) at nsigma=%.3g", len(sources), nsigma)
    return sources


def sources_to_table(sources: SourceList) -> pd.DataFrame:
    """Convert a source list into a DataFrame with a strength rank column."""
    df = pd.DataFrame([asdict(s) for s in sources], columns=["x", "y", "value"])
    df.insert(0, "rank", np.arange(1, len(df) + 1))
    return df
