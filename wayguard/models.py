"""
Core data models for the WayGuard safety escalation engine.

Positions, destinations and deviation events are immutable once captured.
Sessions are mutable and owned by exactly one state machine each: the
``EscalationController`` owns the single ``EscalationSession`` slot and the
``VoiceTriggerPipeline`` owns the single ``VoiceTriggerSession``.
"""

from __future__ import annotations

import asyncio
import enum
import uuid
from collections.abc import Iterator
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class EscalationState(str, enum.Enum):
    """Lifecycle states for a deviation escalation session.

    ``PENDING_RESPONSE`` is the only non-terminal state.  ``SAFE``,
    ``AUTO_ALERT`` and ``MANUAL_ALERT`` are terminal: once reached, the
    session is released and the controller is idle again.
    """

    PENDING_RESPONSE = "PENDING_RESPONSE"
    SAFE = "SAFE"
    AUTO_ALERT = "AUTO_ALERT"
    MANUAL_ALERT = "MANUAL_ALERT"

    @property
    def is_terminal(self) -> bool:
        return self is not EscalationState.PENDING_RESPONSE


class VoiceTriggerState(str, enum.Enum):
    """States of the voice-trigger capture pipeline."""

    IDLE = "IDLE"
    RECORDING = "RECORDING"
    UPLOADING = "UPLOADING"
    DISPATCHED = "DISPATCHED"
    FAILED = "FAILED"


class ResponseAction(str, enum.Enum):
    """Action identifiers emitted by the interactive notification gateway."""

    SEND_ALERT = "send-alert"
    CONFIRM_SAFE = "confirm-safe"


class DispatchOutcome(str, enum.Enum):
    """Result of a single ``AlertDispatcher.dispatch`` call.

    ``NO_CONTACTS`` is reported distinctly from ``FAILED``: the former means
    nothing was attempted, the latter that the delivery channel raised.
    """

    SENT = "SENT"
    UNAVAILABLE = "UNAVAILABLE"
    NO_CONTACTS = "NO_CONTACTS"
    FAILED = "FAILED"


# ---------------------------------------------------------------------------
# Positions and destinations
# ---------------------------------------------------------------------------

class Coordinate(BaseModel):
    """A single position fix.  Immutable once captured."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = Field(
        default=None,
        ge=0,
        description="Reported horizontal accuracy in meters, if the feed provides it.",
    )


class Destination(BaseModel):
    """The place the traveler set out for.  Set once per trip."""

    model_config = ConfigDict(frozen=True)

    coordinate: Coordinate
    label: str = Field(default="", description="Address or place name shown in alerts.")


class RouteTrail:
    """Ordered, append-only sequence of position samples.

    Used for display.  The escalation logic reads at most ``latest``.
    """

    def __init__(self) -> None:
        self._points: list[Coordinate] = []

    def append(self, coordinate: Coordinate) -> None:
        self._points.append(coordinate)

    @property
    def latest(self) -> Optional[Coordinate]:
        return self._points[-1] if self._points else None

    def as_pairs(self) -> list[tuple[float, float]]:
        """Return ``(latitude, longitude)`` pairs in insertion order."""
        return [(p.latitude, p.longitude) for p in self._points]

    def __iter__(self) -> Iterator[Coordinate]:
        return iter(list(self._points))

    def __len__(self) -> int:
        return len(self._points)


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------

class EmergencyContact(BaseModel):
    """A person to alert.  Loaded once per app session, never edited here."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = Field(default="")
    phone_number: str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Deviation escalation
# ---------------------------------------------------------------------------

class DeviationEvent(BaseModel):
    """Raised by the deviation detector; consumed immediately by the controller."""

    model_config = ConfigDict(frozen=True)

    coordinate: Coordinate
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    distance_meters: float = Field(..., ge=0)


class EscalationSession(BaseModel):
    """A single deviation escalation, from prompt to terminal state.

    The response-window timer lives on the session itself so that
    cancelling the session always cancels the right timer.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    triggering_event: DeviationEvent
    destination_label: str = Field(default="")
    state: EscalationState = Field(default=EscalationState.PENDING_RESPONSE)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    deadline: datetime
    prompt_handle: Optional[str] = Field(default=None)
    dispatch_outcome: Optional[DispatchOutcome] = Field(default=None)

    _timer: Optional[asyncio.Task] = PrivateAttr(default=None)
    _prompt_task: Optional[asyncio.Task] = PrivateAttr(default=None)


class VoiceTriggerSession(BaseModel):
    """The single voice-trigger capture slot."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    state: VoiceTriggerState = Field(default=VoiceTriggerState.IDLE)
    started_at: Optional[datetime] = Field(default=None)
    evidence_url: Optional[str] = Field(default=None)
    dispatch_outcome: Optional[DispatchOutcome] = Field(default=None)
