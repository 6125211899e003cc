"""
Monitor Settings -- Tunable Windows and Thresholds for WayGuard.

Every timing and distance constant the escalation engine depends on is a
field of ``MonitorSettings``.  Values are validated on construction so a
bad YAML file fails at load time rather than mid-trip.

**Defaults:**

* deviation threshold 1000 m, cooldown 60 s
* response window 30 s
* recording 15 s, debounce buffer 1 s (debounce window 16 s)
* network timeout 10 s for every external call

Service credentials for the HTTP adapters live in ``ServiceEndpoints`` and
are loaded from the same YAML file under a separate key.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator


DEFAULT_TRIGGER_PHRASES = ["help", "save me", "danger", "emergency"]
OSM_MAP_LINK = "https://www.openstreetmap.org/?mlat={latitude}&mlon={longitude}"


# ---------------------------------------------------------------------------
# Monitor settings
# ---------------------------------------------------------------------------

class MonitorSettings(BaseModel):
    """Thresholds, windows and message options for a monitoring session."""

    traveler_name: str = Field(
        default="traveler",
        min_length=1,
        description="Display name used in alert messages.",
    )
    deviation_threshold_meters: float = Field(
        default=1000.0,
        gt=0,
        description=(
            "Distance from the destination beyond which a position sample "
            "counts as a deviation.  Observed deployments used 500-1000 m."
        ),
    )
    cooldown_seconds: float = Field(
        default=60.0,
        ge=0,
        description=(
            "Minimum time between two raised deviations.  Applies regardless "
            "of distance and regardless of how the previous escalation ended."
        ),
    )
    response_window_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Time the traveler has to answer the prompt before auto-alert.",
    )
    recording_duration_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Fixed length of the evidence clip captured on a voice trigger.",
    )
    debounce_buffer_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Added to the recording duration to form the debounce window.",
    )
    trigger_phrases: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TRIGGER_PHRASES),
        description="Phrases that, when heard in speech, start an evidence recording.",
    )
    network_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Upper bound for every awaited external call.",
    )
    map_link_template: str = Field(
        default=OSM_MAP_LINK,
        description="Map URL with ``{latitude}`` and ``{longitude}`` placeholders.",
    )
    default_country_code: Optional[str] = Field(
        default=None,
        description=(
            "Prefix such as '+91' applied to contact numbers that do not "
            "already start with '+'.  Unset means numbers are sent as stored."
        ),
    )
    recording_content_type: str = Field(default="audio/m4a")
    history_limit: int = Field(
        default=50,
        ge=1,
        description=(
            "Finished escalation sessions and voice cycles kept in memory. "
            "The incident log remains the full record."
        ),
    )

    @field_validator("trigger_phrases")
    @classmethod
    def normalize_phrases(cls, v: list[str]) -> list[str]:
        phrases = [p.strip().lower() for p in v]
        if not phrases or any(not p for p in phrases):
            raise ValueError("trigger_phrases must be a non-empty list of non-blank phrases")
        return phrases

    @field_validator("map_link_template")
    @classmethod
    def template_has_placeholders(cls, v: str) -> str:
        if "{latitude}" not in v or "{longitude}" not in v:
            raise ValueError(
                "map_link_template must contain both '{latitude}' and '{longitude}'"
            )
        return v

    @field_validator("default_country_code")
    @classmethod
    def country_code_format(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if not v.startswith("+") or not v[1:].isdigit():
            raise ValueError(f"default_country_code must look like '+91', got '{v}'")
        return v

    @property
    def debounce_window_seconds(self) -> float:
        return self.recording_duration_seconds + self.debounce_buffer_seconds


DEFAULT_SETTINGS = MonitorSettings()
"""Built-in settings matching the observed production behavior."""


# ---------------------------------------------------------------------------
# Service endpoints
# ---------------------------------------------------------------------------

class ServiceEndpoints(BaseModel):
    """Connection details for the HTTP adapters in ``wayguard.services``."""

    supabase_url: str = Field(..., min_length=1)
    supabase_key: str = Field(..., min_length=1)
    recordings_bucket: str = Field(default="recordings", min_length=1)
    contacts_table: str = Field(default="emergency_contacts", min_length=1)
    mapbox_token: Optional[str] = Field(default=None)

    @field_validator("supabase_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


# ---------------------------------------------------------------------------
# YAML loaders
# ---------------------------------------------------------------------------

def _read_yaml(path: str | Path) -> dict:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError("Settings file must contain a mapping at the top level.")
    return raw


def load_settings_from_yaml(path: str | Path) -> MonitorSettings:
    """Load ``MonitorSettings`` from the ``monitor`` key of a YAML file.

    Example YAML structure::

        monitor:
          traveler_name: "Asha"
          deviation_threshold_meters: 750
          default_country_code: "+91"

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the ``monitor`` key is missing or not a mapping.
        pydantic.ValidationError: If any value fails validation.
    """
    raw = _read_yaml(path)
    section = raw.get("monitor")
    if not isinstance(section, dict):
        raise ValueError("YAML file must contain a top-level 'monitor' mapping.")
    return MonitorSettings(**section)


def load_endpoints_from_yaml(path: str | Path) -> Optional[ServiceEndpoints]:
    """Load ``ServiceEndpoints`` from the optional ``services`` key.

    Returns None when the key is absent.
    """
    raw = _read_yaml(path)
    section = raw.get("services")
    if section is None:
        return None
    if not isinstance(section, dict):
        raise ValueError("'services' must be a mapping.")
    return ServiceEndpoints(**section)
