"""Star-based registration of one frame onto a reference frame."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import astroalign as aa
import numpy as np
from skimage.transform import SimilarityTransform, warp

from .errors import InsufficientFeaturesError, ResidualToleranceError
from .io import Frame, as_frame, frame_data

logger = logging.getLogger(__name__)


@dataclass
class Registration:
    """Fitted transform mapping moving-frame pixels onto the reference grid."""

    transform: SimilarityTransform
    source_points: np.ndarray
    target_points: np.ndarray
    rms_error_px: float

    @property
    def matched_stars(self) -> int:
        return int(len(self.source_points))

    @property
    def matrix(self) -> np.ndarray:
        return np.asarray(self.transform.params)

    @property
    def translation(self) -> tuple[float, float]:
        tx, ty = self.transform.translation
        return float(tx), float(ty)

    @property
    def rotation_deg(self) -> float:
        return float(np.degrees(self.transform.rotation))

    @property
    def scale(self) -> float:
        return float(self.transform.scale)


def _warp_with_transform(
    image: np.ndarray,
    transform,
    output_shape: tuple[int, int],
    order: int = 3,
    fill_value: float = 0.0,
) -> tuple[np.ndarray, np.ndarray]:
    """Resample ``image`` onto the reference grid; also return the no-data footprint."""
    warped = warp(
        image,
        inverse_map=transform.inverse,
        output_shape=output_shape,
        order=order,
        mode="constant",
        cval=fill_value,
        preserve_range=True,
    )
    footprint = warp(
        np.zeros(image.shape, dtype=np.float32),
        inverse_map=transform.inverse,
        output_shape=output_shape,
        order=0,
        mode="constant",
        cval=1.0,
        preserve_range=True,
    )
    no_data = footprint > 0.4
    warped[no_data] = fill_value
    return warped.astype(np.float32, copy=False), no_data


def find_registration(
    moving: Frame | np.ndarray,
    reference: Frame | np.ndarray,
    detection_sigma: float = 3.0,
    max_control_points: int = 50,
    min_area: int = 5,
    min_matches: int = 3,
    max_rms_px: Optional[float] = 2.0,
) -> Registration:
    """Match asterisms between the two frames and fit a similarity transform."""
    src = frame_data(moving)
    ref = frame_data(reference)
    try:
        transform, (source_pos, target_pos) = aa.find_transform(
            source=src,
            target=ref,
            max_control_points=max_control_points,
            detection_sigma=detection_sigma,
            min_area=min_area,
        )
    except aa.MaxIterError as exc:
        raise InsufficientFeaturesError(f"No consistent asterism match found: {exc}") from exc
    except ValueError as exc:
        # astroalign reports too few detected sources as ValueError.
        raise InsufficientFeaturesError(f"Too few usable sources: {exc}") from exc

    source_pos = np.asarray(source_pos, dtype=np.float64)
    target_pos = np.asarray(target_pos, dtype=np.float64)
    if len(source_pos) < min_matches:
        raise InsufficientFeaturesError(
            f"Only {len(source_pos)} correspondence(s) found, need at least {min_matches}."
        )

    distances = np.linalg.norm(transform(source_pos) - target_pos, axis=1)
    rms = float(np.sqrt(np.mean(distances**2)))
    if max_rms_px is not None and rms > max_rms_px:
        raise ResidualToleranceError(
            f"Transform residual {rms:.3f} px exceeds tolerance {max_rms_px:.3f} px.",
            rms_px=rms,
        )

    return Registration(
        transform=transform,
        source_points=source_pos,
        target_points=target_pos,
        rms_error_px=rms,
    )


def register_pair(
    moving: Frame | np.ndarray,
    reference: Frame | np.ndarray,
    detection_sigma: float = 3.0,
    max_control_points: int = 50,
    min_area: int = 5,
    min_matches: int = 3,
    max_rms_px: Optional[float] = 2.0,
    order: int = 3,
    fill_value: float = 0.0,
) -> tuple[Frame, Registration]:
    """Register ``moving`` onto ``reference`` and return the resampled frame."""
    moving_frame = as_frame(moving)
    ref_shape = as_frame(reference).shape

    registration = find_registration(
        moving_frame,
        reference,
        detection_sigma=detection_sigma,
        max_control_points=max_control_points,
        min_area=min_area,
        min_matches=min_matches,
        max_rms_px=max_rms_px,
    )
    warped, footprint = _warp_with_transform(
        frame_data(moving_frame),
        registration.transform,
        output_shape=ref_shape,
        order=order,
        fill_value=fill_value,
    )
    tx, ty = registration.translation
    logger.debug(
        "Registered %s: %d matches, rms=%.3f px, shift=(%.2f, %.2f), rotation=%.3f deg",
        moving_frame.source or "<array>",
        registration.matched_stars,
        registration.rms_error_px,
        tx,
        ty,
        registration.rotation_deg,
    )
    registered = moving_frame.with_data(
        warped,
        footprint=footprint,
        history="astrolab: registered onto reference frame",
    )
    return registered, registration


def align(
    moving: Frame | np.ndarray,
    reference: Frame | np.ndarray,
    detection_sigma: float = 3.0,
    **options,
) -> Frame:
    """Align ``moving`` onto the pixel grid of ``reference``.

    The result has the reference's shape, a copy of the moving frame's header
    and a footprint marking pixels without source data.
    """
    registered, _ = register_pair(moving, reference, detection_sigma=detection_sigma, **options)
    return registered
