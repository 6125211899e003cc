"""
Tests for wayguard.incident_log -- the hash-chained incident record.

Covers: chain building, tamper detection, query filtering, copy-on-read,
phone number redaction, and the review export format.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from wayguard.incident_log import (
    IncidentEntry,
    IncidentEventType,
    IncidentLog,
    redact_phone_numbers,
)


def _make_entry(
    event_type: IncidentEventType = IncidentEventType.DEVIATION_DETECTED,
    session_id: str = "",
    metadata: dict | None = None,
) -> IncidentEntry:
    return IncidentEntry(event_type=event_type, session_id=session_id, metadata=metadata or {})


# ---------------------------------------------------------------------------
# 1. Chain building and verification
# ---------------------------------------------------------------------------

class TestChain:
    def test_first_entry_has_empty_previous_hash(self):
        log = IncidentLog()
        entry = log.append(_make_entry())
        assert entry.previous_hash == ""
        assert len(log) == 1

    def test_entries_linked_by_hash(self):
        log = IncidentLog()
        e1 = log.record(IncidentEventType.ESCALATION_OPENED, session_id="s1")
        e2 = log.record(IncidentEventType.AUTO_ALERT, session_id="s1")
        assert e2.previous_hash == e1.compute_hash()
        assert log.verify_chain() == (True, None)

    def test_empty_log_is_valid(self):
        assert IncidentLog().verify_chain() == (True, None)

    def test_tampered_metadata_detected(self):
        log = IncidentLog()
        for i in range(3):
            log.record(IncidentEventType.DEVIATION_DETECTED, distance_meters=1000 + i)

        log._entries[1].metadata = {"distance_meters": 0}

        valid, broken_at = log.verify_chain()
        assert valid is False
        assert broken_at in (1, 2)


# ---------------------------------------------------------------------------
# 2. Query filtering
# ---------------------------------------------------------------------------

class TestQuery:
    def test_filter_by_event_type_and_session(self):
        log = IncidentLog()
        log.record(IncidentEventType.ESCALATION_OPENED, session_id="s1")
        log.record(IncidentEventType.ESCALATION_OPENED, session_id="s2")
        log.record(IncidentEventType.USER_CONFIRMED_SAFE, session_id="s1")

        assert len(log.query(event_type=IncidentEventType.ESCALATION_OPENED)) == 2
        assert len(log.query(session_id="s1")) == 2
        assert len(log.query(event_type=IncidentEventType.ESCALATION_OPENED, session_id="s2")) == 1

    def test_filter_by_time_range(self):
        log = IncidentLog()
        now = datetime.now(timezone.utc)
        for hours_ago in (2, 1, 0):
            entry = _make_entry()
            entry.timestamp = now - timedelta(hours=hours_ago)
            log.append(entry)

        results = log.query(
            time_start=now - timedelta(hours=1, minutes=30),
            time_end=now - timedelta(minutes=30),
        )
        assert len(results) == 1

    def test_results_are_copies(self):
        log = IncidentLog()
        log.record(IncidentEventType.UPLOAD_FAILED, error="timeout")

        result = log.query()[0]
        result.metadata["error"] = "changed"

        assert log.query()[0].metadata["error"] == "timeout"
        assert log.verify_chain() == (True, None)


# ---------------------------------------------------------------------------
# 3. Redaction and export
# ---------------------------------------------------------------------------

class TestRedaction:
    def test_phone_keys_replaced(self):
        redacted = redact_phone_numbers({"numbers": ["+919800000001"], "outcome": "SENT"})
        assert redacted == {"numbers": "[REDACTED]", "outcome": "SENT"}

    def test_numbers_inside_text_replaced(self):
        redacted = redact_phone_numbers({"error": "carrier rejected +91 98000 00001"})
        assert "98000" not in redacted["error"]
        assert "[REDACTED-PHONE]" in redacted["error"]

    def test_nested_dicts_redacted(self):
        redacted = redact_phone_numbers({"contact": {"phone_number": "+15550001234", "name": "Ravi"}})
        assert redacted["contact"] == {"phone_number": "[REDACTED]", "name": "Ravi"}

    def test_coordinates_untouched(self):
        metadata = {"latitude": 19.076, "longitude": 72.8777, "distance_meters": 1200.5}
        assert redact_phone_numbers(metadata) == metadata

    def test_timestamps_and_urls_in_text_untouched(self):
        error = (
            "upload of https://storage.example.com/recordings/recording-1760879700123.m4a "
            "failed at 2026-10-19T13:15:00.123456+00:00"
        )
        assert redact_phone_numbers({"error": error}) == {"error": error}

    def test_machine_formatted_keys_kept_verbatim(self):
        metadata = {
            "deadline": "2026-10-19T13:15:00.123456+00:00",
            "evidence_url": "https://storage.example.com/recordings/recording-1760879700123.m4a",
        }
        assert redact_phone_numbers(metadata) == metadata


class TestExport:
    def test_export_structure(self):
        log = IncidentLog()
        log.record(IncidentEventType.ALERT_DISPATCHED, session_id="s1", numbers=["+919800000001"])
        log.record(IncidentEventType.ENGINE_STOPPED)

        export = log.export_for_review()
        assert export["export_metadata"]["entry_count"] == 2
        assert export["export_metadata"]["chain_integrity"] == "VALID"
        first = export["entries"][0]
        assert first["event_type"] == "ALERT_DISPATCHED"
        assert first["metadata"]["numbers"] == "[REDACTED]"

    def test_export_reports_broken_chain(self):
        log = IncidentLog()
        log.record(IncidentEventType.DEVIATION_DETECTED)
        log.record(IncidentEventType.ESCALATION_OPENED)
        log._entries[0].session_id = "forged"

        integrity = log.export_for_review()["export_metadata"]["chain_integrity"]
        assert integrity.startswith("BROKEN_AT_INDEX_")

    def test_export_does_not_mutate_log(self):
        log = IncidentLog()
        log.record(IncidentEventType.ALERT_DISPATCHED, phone="+919800000001")
        log.export_for_review()
        assert log.query()[0].metadata["phone"] == "+919800000001"

    def test_export_keeps_deadline_and_evidence_url(self):
        deadline = "2026-10-19T13:15:00.123456+00:00"
        url = "https://storage.example.com/recordings/recording-1760879700123.m4a"
        log = IncidentLog()
        log.record(IncidentEventType.ESCALATION_OPENED, session_id="s1", deadline=deadline)
        log.record(
            IncidentEventType.VOICE_ALERT_DISPATCHED,
            session_id="v1",
            evidence_url=url,
            error="carrier rejected +91 98000 00001",
        )

        entries = log.export_for_review()["entries"]
        assert entries[0]["metadata"]["deadline"] == deadline
        assert entries[1]["metadata"]["evidence_url"] == url
        assert "98000" not in entries[1]["metadata"]["error"]

    def test_export_single_session(self):
        log = IncidentLog()
        log.record(IncidentEventType.ESCALATION_OPENED, session_id="s1")
        log.record(IncidentEventType.VOICE_TRIGGER_ACCEPTED, session_id="v1")
        log.record(IncidentEventType.AUTO_ALERT, session_id="s1")
        log.record(IncidentEventType.ENGINE_STOPPED)

        export = log.export_for_review("s1")
        assert export["export_metadata"]["session_id"] == "s1"
        assert export["export_metadata"]["entry_count"] == 2
        assert export["export_metadata"]["chain_integrity"] == "VALID"
        assert [e["event_type"] for e in export["entries"]] == ["ESCALATION_OPENED", "AUTO_ALERT"]
