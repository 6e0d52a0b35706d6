"""FITS input/output and frame metadata handling for astrolab."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

import numpy as np
from astropy.io import fits

from .errors import LoadError

logger = logging.getLogger(__name__)

FOOTPRINT_EXTNAME = "FOOTPRINT"
FITS_PATTERNS = ("*.fits", "*.fit", "*.fts", "*.fits.gz", "*.fit.gz", "*.fts.gz")


@dataclass
class Frame:
    """A 2-D intensity image plus its FITS header.

    ``footprint`` is only set on registered frames: True marks pixels that
    received no data from the source frame.
    """

    data: np.ndarray
    header: fits.Header = field(default_factory=fits.Header)
    source: str = ""
    footprint: Optional[np.ndarray] = None

    @property
    def shape(self) -> tuple[int, int]:
        return int(self.data.shape[0]), int(self.data.shape[1])

    @property
    def date_obs(self) -> Optional[str]:
        value = _first_header_value(self.header, ["DATE-OBS", "DATEOBS", "DATE_OBS"])
        return str(value) if value is not None else None

    @property
    def exposure(self) -> Optional[float]:
        return _to_float(_first_header_value(self.header, ["EXPTIME", "EXPOSURE"]))

    @property
    def valid_mask(self) -> np.ndarray:
        """Boolean mask of pixels carrying real data."""
        if self.footprint is None:
            return np.ones(self.shape, dtype=bool)
        return ~self.footprint

    def with_data(
        self,
        data: np.ndarray,
        footprint: Optional[np.ndarray] = None,
        history: Optional[str] = None,
    ) -> "Frame":
        """Return a new frame with ``data`` and a copy of this frame's header."""
        header = self.header.copy()
        if history:
            header["HISTORY"] = history
        return Frame(data=data, header=header, source=self.source, footprint=footprint)


def _first_header_value(header: fits.Header, keys: list[str]) -> Optional[Any]:
    for key in keys:
        if key in header and header[key] not in (None, ""):
            return header[key]
    return None


def _to_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def to_luminance(image: np.ndarray) -> np.ndarray:
    """Convert mono/RGB image to a mono luminance representation."""
    arr = np.asarray(image, dtype=np.float32)
    if arr.ndim == 2:
        return arr
    if arr.shape[-1] < 3:
        return np.mean(arr, axis=-1)
    return (0.2126 * arr[..., 0] + 0.7152 * arr[..., 1] + 0.0722 * arr[..., 2]).astype(np.float32)


def _normalize_image_array(data: np.ndarray) -> np.ndarray:
    """Squeeze FITS data to a native-endian float32 HxW image."""
    arr = np.squeeze(np.asarray(data))
    if arr.ndim == 3:
        if arr.shape[0] in (3, 4) and arr.shape[-1] not in (3, 4):
            arr = np.moveaxis(arr, 0, -1)
        elif arr.shape[-1] not in (3, 4):
            raise LoadError(f"Unsupported 3D FITS layout: {arr.shape}")
        arr = to_luminance(arr[..., :3])
    if arr.ndim != 2:
        raise LoadError(f"Unsupported FITS dimensionality: {arr.shape}")
    return np.ascontiguousarray(arr, dtype=np.float32)


def as_frame(obj: Frame | np.ndarray, source: str = "") -> Frame:
    """Wrap a bare array as a header-less Frame; Frames pass through untouched."""
    if isinstance(obj, Frame):
        return obj
    arr = np.asarray(obj)
    if arr.ndim != 2:
        raise ValueError(f"Expected a 2-D image, got shape {arr.shape}")
    return Frame(data=arr, source=source)


def frame_data(obj: Frame | np.ndarray) -> np.ndarray:
    """Return the pixel array of a Frame or array as native-endian float32."""
    data = obj.data if isinstance(obj, Frame) else obj
    arr = np.asarray(data)
    if arr.ndim != 2:
        raise ValueError(f"Expected a 2-D image, got shape {arr.shape}")
    return np.ascontiguousarray(arr, dtype=np.float32)


def parse_date_obs(value: Optional[str]) -> Optional[datetime]:
    """Parse DATE-OBS style values to datetime where possible."""
    if not value:
        return None
    token = str(value).strip()
    if token.endswith("Z"):
        token = token[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(token)
    except ValueError:
        pass
    for fmt in ("%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S", "%Y/%m/%d %H:%M:%S"):
        try:
            return datetime.strptime(token, fmt)
        except ValueError:
            continue
    return None


def _extract_primary_hdu(hdul: fits.HDUList) -> tuple[np.ndarray, fits.Header]:
    for hdu in hdul:
        if hdu.data is not None and hdu.name != FOOTPRINT_EXTNAME:
            return np.asarray(hdu.data), hdu.header
    raise LoadError("No image data found in FITS file.")


def _extract_footprint(hdul: fits.HDUList, shape: tuple[int, ...]) -> Optional[np.ndarray]:
    if FOOTPRINT_EXTNAME not in hdul:
        return None
    mask = np.asarray(hdul[FOOTPRINT_EXTNAME].data).astype(bool)
    if mask.shape != shape:
        raise LoadError(f"Footprint shape {mask.shape} does not match image shape {shape}.")
    return mask


def load_frame(path: str | Path) -> Frame:
    """Load a FITS/FITS.GZ frame from disk."""
    path_obj = Path(path)
    try:
        with fits.open(path_obj, memmap=False) as hdul:
            data, header = _extract_primary_hdu(hdul)
            image = _normalize_image_array(data)
            footprint = _extract_footprint(hdul, image.shape)
            header = header.copy()
    except LoadError as exc:
        raise LoadError(f"{path_obj}: {exc}") from exc
    except (OSError, ValueError, TypeError) as exc:
        raise LoadError(f"Failed to read {path_obj}: {exc}") from exc

    logger.debug("Loaded %s (%dx%d)", path_obj.name, image.shape[1], image.shape[0])
    return Frame(data=image, header=header, source=str(path_obj), footprint=footprint)


def load_frames(paths: Iterable[str | Path]) -> list[Frame]:
    """Load several frames, preserving the given order."""
    frames = [load_frame(p) for p in paths]
    logger.info("Loaded %d frame(s)", len(frames))
    return frames


def scan_folder_for_fits(folder: str | Path) -> list[Path]:
    """Recursively discover FITS files in a folder, sorted by path."""
    root = Path(folder).expanduser()
    if not root.exists() or not root.is_dir():
        raise LoadError(f"Folder does not exist: {root}")

    files: list[Path] = []
    for pattern in FITS_PATTERNS:
        files.extend(root.rglob(pattern))
    return sorted({f.resolve() for f in files})


def save_frame(path: str | Path, frame: Frame, overwrite: bool = True) -> Path:
    """Write a frame (and its footprint, if any) to a FITS file."""
    out = Path(path)
    hdus = [fits.PrimaryHDU(data=np.asarray(frame.data, dtype=np.float32), header=frame.header.copy())]
    if frame.footprint is not None:
        hdus.append(fits.ImageHDU(data=frame.footprint.astype(np.uint8), name=FOOTPRINT_EXTNAME))
    fits.HDUList(hdus).writeto(out, overwrite=overwrite)
    logger.debug("Wrote %s", out)
    return out


def save_json(path: str | Path, payload: dict[str, Any]) -> None:
    """Write JSON with stable formatting."""
    out = Path(path)
    out.write_text(json.dumps(payload, indent=2, sort_keys=True, default=str), encoding="utf-8")
