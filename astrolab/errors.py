"""Exception types raised by the astrolab reduction pipeline."""

from __future__ import annotations

from typing import Optional


class AstroLabError(Exception):
    """Base class for all astrolab errors."""


class LoadError(AstroLabError):
    """A FITS file could not be read or holds no usable image."""


class ShapeMismatchError(AstroLabError, ValueError):
    """Array dimensions are incompatible (mesh tiling, error map, masters)."""


class DegenerateBackgroundError(AstroLabError, ValueError):
    """A background mesh cell has zero or undefined variance."""


class AlignmentError(AstroLabError):
    """Registration of one frame onto the reference failed."""

    def __init__(self, message: str, index: Optional[int] = None):
        super().__init__(message)
        self.index = index

    def __str__(self) -> str:
        message = super().__str__()
        if self.index is None:
            return message
        return f"frame {self.index}: {message}"


class InsufficientFeaturesError(AlignmentError):
    """Too few sources or asterism correspondences to fit a transform."""


class ResidualToleranceError(AlignmentError):
    """The fitted transform leaves control-point residuals above tolerance."""

    def __init__(self, message: str, rms_px: float, index: Optional[int] = None):
        super().__init__(message, index=index)
        self.rms_px = rms_px


class AlignmentTimeoutError(AlignmentError):
    """Registration of a frame did not finish within the allotted time."""
