"""User-configurable settings for background, detection, registration and photometry."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional


@dataclass
class BackgroundSettings:
    """Mesh background estimation settings."""

    # None selects gcd(height, width) so the mesh tiles the frame exactly.
    box_size: Optional[int] = None
    clip_sigma: float = 1.0
    clip_maxiters: int = 1
    fill: str = "clamp"
    estimator: str = "sextractor"
    rms_estimator: str = "std"


@dataclass
class DetectionSettings:
    """Peak-mesh source extraction settings."""

    nsigma: float = 3.0
    box_size: int = 3


@dataclass
class RegistrationSettings:
    """Asterism-matching registration settings."""

    detection_sigma: float = 3.0
    max_control_points: int = 50
    min_area: int = 5
    min_matches: int = 3
    max_rms_px: float = 2.0
    order: int = 3
    fill_value: float = 0.0


@dataclass
class PipelineSettings:
    """Cross-frame alignment policy."""

    on_error: str = "raise"
    workers: int = 1
    timeout_s: Optional[float] = None


@dataclass
class PhotometrySettings:
    """Target selection and aperture settings."""

    aperture_radius: float = 24.0
    annulus_inner: Optional[float] = None
    annulus_outer: Optional[float] = None
    x_min: Optional[float] = None
    x_max: Optional[float] = None
    y_min: Optional[float] = None
    y_max: Optional[float] = None


@dataclass
class Settings:
    """All settings groups, as loaded from a JSON settings file."""

    background: BackgroundSettings = field(default_factory=BackgroundSettings)
    detection: DetectionSettings = field(default_factory=DetectionSettings)
    registration: RegistrationSettings = field(default_factory=RegistrationSettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    photometry: PhotometrySettings = field(default_factory=PhotometrySettings)


ON_ERROR_POLICIES = ("raise", "keep", "drop")


def _build_section(cls, name: str, values: Any):
    if not isinstance(values, dict):
        raise ValueError(f"Settings section '{name}' must be an object.")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ValueError(f"Unknown key(s) in settings section '{name}': {', '.join(unknown)}")
    return cls(**values)


def settings_from_dict(payload: dict[str, Any]) -> Settings:
    """Build Settings from a nested mapping, rejecting unknown sections and keys."""
    sections = {f.name: f for f in fields(Settings)}
    unknown = sorted(set(payload) - set(sections))
    if unknown:
        raise ValueError(f"Unknown settings section(s): {', '.join(unknown)}")

    settings = Settings()
    for name, values in payload.items():
        section_cls = type(getattr(settings, name))
        setattr(settings, name, _build_section(section_cls, name, values))

    if settings.pipeline.on_error not in ON_ERROR_POLICIES:
        raise ValueError(
            f"pipeline.on_error must be one of {ON_ERROR_POLICIES}, got '{settings.pipeline.on_error}'"
        )
    if settings.pipeline.workers < 1:
        raise ValueError("pipeline.workers must be at least 1.")
    return settings


def load_settings(path: str | Path) -> Settings:
    """Read settings from a JSON file."""
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Settings file must contain a JSON object.")
    return settings_from_dict(payload)


def settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Return a JSON-ready dictionary of all settings."""
    return asdict(settings)
