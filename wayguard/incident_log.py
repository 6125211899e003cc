"""
Append-Only Incident Log (Hash-Chained).

Every decision the engine makes -- deviations raised, prompts opened,
responses received, alerts dispatched, voice triggers accepted or ignored,
recordings and uploads that failed -- is appended here as a structured
entry.  Entries are linked by SHA-256 hashes so an after-the-fact edit is
detectable by ``verify_chain()``.

The log is the record a contact or investigator reviews after an alert.
``export_for_review()`` strips phone numbers from metadata before the
bundle leaves the device.
"""

from __future__ import annotations

import enum
import hashlib
import json
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


class IncidentEventType(str, enum.Enum):
    """Every recordable engine event."""

    # Deviation path
    DEVIATION_DETECTED = "DEVIATION_DETECTED"
    ESCALATION_OPENED = "ESCALATION_OPENED"
    ESCALATION_IGNORED = "ESCALATION_IGNORED"
    PROMPT_FAILED = "PROMPT_FAILED"
    USER_CONFIRMED_SAFE = "USER_CONFIRMED_SAFE"
    MANUAL_ALERT = "MANUAL_ALERT"
    AUTO_ALERT = "AUTO_ALERT"
    ALERT_DISPATCHED = "ALERT_DISPATCHED"

    # Voice path
    VOICE_TRIGGER_ACCEPTED = "VOICE_TRIGGER_ACCEPTED"
    VOICE_TRIGGER_IGNORED = "VOICE_TRIGGER_IGNORED"
    RECORDING_FAILED = "RECORDING_FAILED"
    UPLOAD_FAILED = "UPLOAD_FAILED"
    VOICE_ALERT_DISPATCHED = "VOICE_ALERT_DISPATCHED"

    # Engine lifecycle
    ENGINE_STOPPED = "ENGINE_STOPPED"


class IncidentEntry(BaseModel):
    """A single log entry, linked to its predecessor by hash."""

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    event_type: IncidentEventType
    session_id: str = Field(
        default="",
        description="Escalation session or voice cycle id; empty for engine events.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)
    previous_hash: str = Field(default="")

    def canonical_bytes(self) -> bytes:
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "session_id": self.session_id,
            "metadata": self.metadata,
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


# A number standing on its own in free text.  Digit runs glued to words,
# paths, timestamps or file extensions are not phone numbers.
_PHONE_PATTERN = re.compile(r"(?<![\w/.:+-])\+?\d[\d\s().-]{6,}\d(?![\w/:-]|\.\w)")
_PHONE_KEYS = {"phone", "phone_number", "phone_numbers", "numbers"}
# Values with a fixed machine format, exported verbatim.
_VERBATIM_KEYS = {"deadline", "evidence_url", "started_at", "timestamp"}


def redact_phone_numbers(metadata: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``metadata`` with phone numbers replaced by ``[REDACTED]``."""
    redacted: dict[str, Any] = {}
    for key, value in metadata.items():
        if key.lower() in _PHONE_KEYS:
            redacted[key] = "[REDACTED]"
        elif key.lower() in _VERBATIM_KEYS:
            redacted[key] = value
        elif isinstance(value, str):
            redacted[key] = _PHONE_PATTERN.sub("[REDACTED-PHONE]", value)
        elif isinstance(value, dict):
            redacted[key] = redact_phone_numbers(value)
        else:
            redacted[key] = value
    return redacted


class IncidentLog:
    """Append-only, hash-chained record of engine events.

    There is no update or delete.  ``query`` returns copies so callers can
    never mutate stored entries through the results.
    """

    def __init__(self) -> None:
        self._entries: list[IncidentEntry] = []
        self._hashes: list[str] = []

    def record(
        self,
        event_type: IncidentEventType,
        session_id: str = "",
        **metadata: Any,
    ) -> IncidentEntry:
        """Build and append an entry in one call."""
        return self.append(IncidentEntry(
            event_type=event_type,
            session_id=session_id,
            metadata=metadata,
        ))

    def append(self, entry: IncidentEntry) -> IncidentEntry:
        entry.previous_hash = self._hashes[-1] if self._hashes else ""
        self._entries.append(entry)
        self._hashes.append(entry.compute_hash())
        return entry

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the log and validate every hash link.

        Returns:
            ``(valid, broken_at)`` where ``broken_at`` is the index of the
            first broken link, or None.
        """
        for i, entry in enumerate(self._entries):
            expected_prev = self._entries[i - 1].compute_hash() if i else ""
            if entry.previous_hash != expected_prev:
                return (False, i)
            if self._hashes[i] != entry.compute_hash():
                return (False, i)
        return (True, None)

    def query(
        self,
        event_type: Optional[IncidentEventType] = None,
        session_id: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> list[IncidentEntry]:
        results = []
        for entry in self._entries:
            if event_type is not None and entry.event_type != event_type:
                continue
            if session_id is not None and entry.session_id != session_id:
                continue
            if time_start is not None and entry.timestamp < time_start:
                continue
            if time_end is not None and entry.timestamp > time_end:
                continue
            results.append(entry.model_copy(deep=True))
        return results

    def export_for_review(self, session_id: Optional[str] = None) -> dict[str, Any]:
        """Produce a JSON-serializable bundle with phone numbers redacted.

        With ``session_id`` only that escalation session or voice cycle is
        exported.  The chain status always covers the whole log, since a
        single session cannot be verified in isolation.
        """
        entries = []
        for entry in self._entries:
            if session_id is not None and entry.session_id != session_id:
                continue
            entry_dict = entry.model_dump(mode="json")
            entry_dict["metadata"] = redact_phone_numbers(entry.metadata)
            entries.append(entry_dict)

        chain_valid, broken_at = self.verify_chain()
        return {
            "export_metadata": {
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "session_id": session_id,
                "entry_count": len(entries),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "entries": entries,
        }

    def __len__(self) -> int:
        return len(self._entries)
