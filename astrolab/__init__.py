"""astrolab package for FITS frame alignment, background estimation, source extraction and photometry."""

__version__ = "0.1.0"

__all__ = [
    "io",
    "calibration",
    "background",
    "detection",
    "register",
    "pipeline",
    "photometry",
    "config",
    "errors",
]
