"""
Voice Trigger Pipeline -- Distress Phrase to Recorded Evidence Alert.

**State machine:**

    IDLE -> RECORDING -> UPLOADING -> DISPATCHED -> IDLE
    RECORDING or UPLOADING -> FAILED -> IDLE

A recognized utterance containing one of the configured trigger phrases
starts a fixed-length recording.  Further detections during the debounce
window (recording length plus a small buffer, measured from the last
accepted trigger) are ignored, never queued, and never cut the running
recording short.  Only ``close()`` stops a recording early.

When the clip is complete it is uploaded to blob storage and the public
link is sent to every contact together with the latest known position.
If the upload fails the cycle ends in FAILED and no alert is sent.

This pipeline shares nothing with the escalation controller: both may
alert the same contacts for the same situation.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from collections.abc import AsyncIterator, Callable, Sequence
from datetime import datetime, timezone
from typing import Optional

from wayguard.config import DEFAULT_SETTINGS, MonitorSettings
from wayguard.dispatcher import (
    VOICE_REASON,
    AlertDispatcher,
    compose_alert_message,
    describe_outcome,
    post_notice,
)
from wayguard.exceptions import PermissionDeniedError, RecordingFailureError
from wayguard.incident_log import IncidentEventType, IncidentLog
from wayguard.interfaces import (
    AudioRecorder,
    BlobStorage,
    NotificationGateway,
    RecordingHandle,
)
from wayguard.models import (
    Coordinate,
    EmergencyContact,
    VoiceTriggerSession,
    VoiceTriggerState,
)

_logger = logging.getLogger(__name__)


def matches_trigger(utterance: str, phrases: Sequence[str]) -> bool:
    """True if the lower-cased utterance contains any trigger phrase."""
    text = utterance.lower()
    return any(phrase in text for phrase in phrases)


class VoiceTriggerPipeline:
    """Owns the single voice-trigger slot and the recorder it drives."""

    def __init__(
        self,
        recorder: AudioRecorder,
        storage: BlobStorage,
        dispatcher: AlertDispatcher,
        contacts: Sequence[EmergencyContact],
        gateway: Optional[NotificationGateway] = None,
        settings: MonitorSettings = DEFAULT_SETTINGS,
        incident_log: Optional[IncidentLog] = None,
        location_provider: Optional[Callable[[], Optional[Coordinate]]] = None,
        destination_label_provider: Optional[Callable[[], str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._recorder = recorder
        self._storage = storage
        self._dispatcher = dispatcher
        self._contacts = contacts
        self._gateway = gateway
        self._settings = settings
        self._incident_log = incident_log if incident_log is not None else IncidentLog()
        self._location_provider = location_provider
        self._destination_label_provider = destination_label_provider
        self._clock = clock

        self.session = VoiceTriggerSession()
        self.history: deque[VoiceTriggerSession] = deque(maxlen=settings.history_limit)
        self._last_started_at: Optional[float] = None
        self._cycle: Optional[asyncio.Task] = None
        self._handle: Optional[RecordingHandle] = None

    @property
    def state(self) -> VoiceTriggerState:
        return self.session.state

    @property
    def holds_recorder(self) -> bool:
        return self._handle is not None

    @property
    def cycle_task(self) -> Optional[asyncio.Task]:
        return self._cycle

    async def on_utterance(self, utterance: str) -> bool:
        """Feed one recognized utterance.  Returns True if a recording started."""
        if not utterance or not matches_trigger(utterance, self._settings.trigger_phrases):
            return False
        _logger.info("Trigger phrase heard")
        return self.trigger()

    def trigger(self) -> bool:
        """Start a recording cycle unless one is running or debounced."""
        now = self._clock()
        debounce = self._settings.debounce_window_seconds
        if self.session.state is not VoiceTriggerState.IDLE or (
            self._last_started_at is not None and now - self._last_started_at < debounce
        ):
            _logger.info("Voice trigger ignored (state %s)", self.session.state.value)
            self._incident_log.record(
                IncidentEventType.VOICE_TRIGGER_IGNORED, state=self.session.state.value
            )
            return False

        self._last_started_at = now
        session = VoiceTriggerSession(
            state=VoiceTriggerState.RECORDING,
            started_at=datetime.now(timezone.utc),
        )
        self.session = session
        self._incident_log.record(
            IncidentEventType.VOICE_TRIGGER_ACCEPTED,
            session_id=session.id,
            duration_seconds=self._settings.recording_duration_seconds,
        )
        self._cycle = asyncio.create_task(self._run_cycle(session), name="wayguard-voice-cycle")
        return True

    async def listen(self, utterances: AsyncIterator[str]) -> None:
        """Consume a recognizer stream until it ends.

        A failure handling one utterance is logged and the loop continues.
        """
        async for utterance in utterances:
            try:
                await self.on_utterance(utterance)
            except Exception:
                _logger.exception("Error handling utterance; still listening")

    async def close(self) -> None:
        """Stop any running cycle and release the recorder."""
        cycle = self._cycle
        self._cycle = None
        if cycle is not None and not cycle.done():
            cycle.cancel()
            try:
                await cycle
            except asyncio.CancelledError:
                pass

    # -- cycle --

    async def _run_cycle(self, session: VoiceTriggerSession) -> None:
        timeout = self._settings.network_timeout_seconds
        try:
            try:
                audio = await self._record()
            except (PermissionDeniedError, RecordingFailureError) as exc:
                _logger.error("Recording aborted: %s", exc)
                self._incident_log.record(
                    IncidentEventType.RECORDING_FAILED, session_id=session.id, error=str(exc)
                )
                self._finish(session, VoiceTriggerState.FAILED)
                await post_notice(self._gateway, "Recording Failed", str(exc), timeout)
                return

            session.state = VoiceTriggerState.UPLOADING
            try:
                url = await asyncio.wait_for(
                    self._storage.upload(audio, self._settings.recording_content_type),
                    timeout,
                )
            except Exception as exc:
                _logger.error("Recording upload failed: %s", str(exc) or type(exc).__name__)
                self._incident_log.record(
                    IncidentEventType.UPLOAD_FAILED,
                    session_id=session.id,
                    error=str(exc) or type(exc).__name__,
                )
                self._finish(session, VoiceTriggerState.FAILED)
                await post_notice(
                    self._gateway,
                    "Recording Upload Failed",
                    "Failed to upload emergency recording.",
                    timeout,
                )
                return

            session.evidence_url = url
            message = compose_alert_message(
                self._settings.traveler_name,
                self._destination_label_provider() if self._destination_label_provider else "",
                self._location_provider() if self._location_provider else None,
                evidence_url=url,
                reason=VOICE_REASON,
                map_link_template=self._settings.map_link_template,
            )
            outcome = await self._dispatcher.dispatch(self._contacts, message)
            session.dispatch_outcome = outcome
            self._finish(session, VoiceTriggerState.DISPATCHED)
            self._incident_log.record(
                IncidentEventType.VOICE_ALERT_DISPATCHED,
                session_id=session.id,
                outcome=outcome.value,
                evidence_url=url,
            )
            await post_notice(self._gateway, *describe_outcome(outcome), timeout)
        finally:
            if self.session is session and session.state not in (
                VoiceTriggerState.DISPATCHED,
                VoiceTriggerState.FAILED,
            ):
                _logger.info("Voice cycle torn down in state %s", session.state.value)
                self._finish(session, VoiceTriggerState.FAILED)

    async def _record(self) -> bytes:
        async with self._recording() as handle:
            await asyncio.sleep(self._settings.recording_duration_seconds)
            try:
                audio = await handle.stop()
            except RecordingFailureError:
                raise
            except Exception as exc:
                raise RecordingFailureError(f"Recorder failed to stop: {exc}") from exc
        if not audio:
            raise RecordingFailureError("Recorder returned an empty clip")
        return audio

    @contextlib.asynccontextmanager
    async def _recording(self) -> AsyncIterator[RecordingHandle]:
        """Hold the recorder for the duration of the block; always release it."""
        try:
            handle = await self._recorder.start()
        except (PermissionDeniedError, RecordingFailureError):
            raise
        except Exception as exc:
            raise RecordingFailureError(f"Recorder failed to start: {exc}") from exc

        self._handle = handle
        _logger.info("Recording started for %.0f s", self._settings.recording_duration_seconds)
        try:
            yield handle
        finally:
            self._handle = None
            try:
                await handle.release()
            except Exception:
                _logger.exception("Failed to release recorder")

    def _finish(self, session: VoiceTriggerSession, state: VoiceTriggerState) -> None:
        session.state = state
        self.history.append(session)
        if self.session is session:
            self.session = VoiceTriggerSession()
        _logger.info("Voice cycle ended as %s", state.value)
