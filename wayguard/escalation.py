"""
Deviation Escalation Controller.

This module implements the response-window state machine that sits between
the deviation detector and the alert dispatcher.

**State machine:**

    IDLE -> PENDING_RESPONSE -> SAFE          -> IDLE
                             -> MANUAL_ALERT  -> IDLE
                             -> AUTO_ALERT    -> IDLE

All three terminal states release the session immediately, so the
controller is idle again the moment a terminal state is reached.

**Inputs** are a closed set of events handled one at a time by
``handle()``:

* ``DeviationDetected`` -- opens a session, starts the response timer and
  shows the prompt from a background task, so a slow gateway never holds
  up the caller.  Ignored while another session is pending (single-flight).
* ``UserResponded`` -- ``confirm-safe`` closes the session without any
  alert; ``send-alert`` dispatches immediately.
* ``ResponseTimedOut`` -- posted by the session's own timer; dispatches
  using the coordinate captured when the deviation was raised.

Every state change is applied before any awaited call, so a second event
arriving while a dispatch is in flight always sees the updated slot.  A
failed dispatch is recorded and reported, never retried.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from wayguard.config import DEFAULT_SETTINGS, MonitorSettings
from wayguard.dispatcher import (
    AlertDispatcher,
    compose_alert_message,
    describe_outcome,
    post_notice,
)
from wayguard.exceptions import InvalidTransitionError
from wayguard.incident_log import IncidentEventType, IncidentLog
from wayguard.interfaces import NotificationGateway
from wayguard.models import (
    Coordinate,
    DeviationEvent,
    EmergencyContact,
    EscalationSession,
    EscalationState,
    ResponseAction,
)

_logger = logging.getLogger(__name__)

PROMPT_TITLE = "Route Deviation Detected"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

class DeviationDetected(BaseModel):
    model_config = ConfigDict(frozen=True)

    event: DeviationEvent
    destination_label: str = ""


class UserResponded(BaseModel):
    """A prompt action chosen by the traveler.

    ``session_id`` may be omitted when the gateway cannot carry it; the
    response then applies to whichever session is pending.  ``coordinate``
    is the traveler's position at the moment of responding, if known.
    """

    model_config = ConfigDict(frozen=True)

    action: ResponseAction
    session_id: Optional[str] = None
    coordinate: Optional[Coordinate] = None


class ResponseTimedOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str = Field(..., min_length=1)


EscalationInput = Union[DeviationDetected, UserResponded, ResponseTimedOut]


# ---------------------------------------------------------------------------
# Valid state transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[EscalationState, set[EscalationState]] = {
    EscalationState.PENDING_RESPONSE: {
        EscalationState.SAFE,
        EscalationState.MANUAL_ALERT,
        EscalationState.AUTO_ALERT,
    },
    EscalationState.SAFE: set(),
    EscalationState.MANUAL_ALERT: set(),
    EscalationState.AUTO_ALERT: set(),
}


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class EscalationController:
    """Owns the single escalation slot and its response-window timer.

    Args:
        dispatcher: Sends the alert text to contacts.
        gateway: Shows the interactive prompt and outcome notices.
        contacts: Contact snapshot, read at dispatch time.
        settings: Window lengths, traveler name, map link format.
        incident_log: Where transitions are recorded.  A private log is
            created when omitted.
        location_provider: Returns the latest known position; used for a
            manual alert when the response itself carries no coordinate.
    """

    def __init__(
        self,
        dispatcher: AlertDispatcher,
        gateway: NotificationGateway,
        contacts: Sequence[EmergencyContact],
        settings: MonitorSettings = DEFAULT_SETTINGS,
        incident_log: Optional[IncidentLog] = None,
        location_provider: Optional[Callable[[], Optional[Coordinate]]] = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._gateway = gateway
        self._contacts = contacts
        self._settings = settings
        self._incident_log = incident_log if incident_log is not None else IncidentLog()
        self._location_provider = location_provider
        self._session: Optional[EscalationSession] = None
        self._alert_task: Optional[asyncio.Task] = None
        self.completed: deque[EscalationSession] = deque(maxlen=settings.history_limit)

    @property
    def active_session(self) -> Optional[EscalationSession]:
        return self._session

    @property
    def alert_task(self) -> Optional[asyncio.Task]:
        """The timer task while it is dispatching an auto-alert, else None."""
        return self._alert_task

    @property
    def is_idle(self) -> bool:
        return self._session is None

    async def handle(self, event: EscalationInput) -> Optional[EscalationSession]:
        """Process one input event to completion.

        Returns the session the event acted on, or None when it was ignored.
        """
        if isinstance(event, DeviationDetected):
            return await self._on_deviation(event)
        if isinstance(event, UserResponded):
            return await self._on_response(event)
        if isinstance(event, ResponseTimedOut):
            return await self._on_timeout(event)
        raise TypeError(f"Unsupported escalation event: {type(event).__name__}")

    async def shutdown(self) -> None:
        """Cancel the response timer and drop any pending session.

        An auto-alert already committed by the timer is allowed to finish;
        every call it makes is bounded by the network timeout.
        """
        session = self._session
        self._session = None
        if session is not None:
            for task in (session._timer, session._prompt_task):
                await _cancel_and_wait(task)
            session._timer = None
            session._prompt_task = None
            _logger.info("Escalation session %s abandoned on shutdown", session.id)

        alert = self._alert_task
        if alert is not None and not alert.done() and alert is not asyncio.current_task():
            _logger.info("Waiting for in-flight auto-alert before shutdown")
            try:
                await alert
            except asyncio.CancelledError:
                pass
            except Exception:
                _logger.exception("In-flight auto-alert failed during shutdown")

    # -- transitions --

    async def _on_deviation(self, event: DeviationDetected) -> Optional[EscalationSession]:
        if self._session is not None:
            _logger.warning(
                "Deviation ignored: session %s still awaiting response", self._session.id
            )
            self._incident_log.record(
                IncidentEventType.ESCALATION_IGNORED,
                session_id=self._session.id,
                distance_meters=event.event.distance_meters,
            )
            return None

        window = self._settings.response_window_seconds
        now = datetime.now(timezone.utc)
        session = EscalationSession(
            triggering_event=event.event,
            destination_label=event.destination_label,
            created_at=now,
            deadline=now + timedelta(seconds=window),
        )
        self._session = session
        session._timer = asyncio.create_task(
            self._response_timer(session.id, window),
            name=f"wayguard-response-{session.id}",
        )
        self._incident_log.record(
            IncidentEventType.ESCALATION_OPENED,
            session_id=session.id,
            latitude=event.event.coordinate.latitude,
            longitude=event.event.coordinate.longitude,
            distance_meters=event.event.distance_meters,
            deadline=session.deadline.isoformat(),
        )
        _logger.info(
            "Escalation %s opened; %.0f s to respond", session.id, window
        )

        # The timer already runs, so a lost prompt still ends in an auto-alert.
        session._prompt_task = asyncio.create_task(
            self._show_prompt(session, window),
            name=f"wayguard-prompt-{session.id}",
        )
        return session

    async def _show_prompt(self, session: EscalationSession, window: float) -> None:
        try:
            session.prompt_handle = await asyncio.wait_for(
                self._gateway.schedule_prompt(
                    PROMPT_TITLE,
                    f"Are you safe? Please respond within {window:.0f} seconds.",
                    [a.value for a in ResponseAction],
                ),
                self._settings.network_timeout_seconds,
            )
        except Exception as exc:
            _logger.error("Could not show deviation prompt for %s: %s", session.id, exc)
            self._incident_log.record(
                IncidentEventType.PROMPT_FAILED,
                session_id=session.id,
                error=str(exc) or type(exc).__name__,
            )

    async def _on_response(self, event: UserResponded) -> Optional[EscalationSession]:
        session = self._session
        if session is None or (event.session_id and event.session_id != session.id):
            _logger.warning("Response %s ignored: no matching pending session", event.action.value)
            return None

        self._cancel_timer(session)

        if event.action is ResponseAction.CONFIRM_SAFE:
            self._finish(session, EscalationState.SAFE)
            self._incident_log.record(IncidentEventType.USER_CONFIRMED_SAFE, session_id=session.id)
            await post_notice(
                self._gateway,
                "Status Updated",
                "Glad you are safe! Route monitoring continues.",
                self._settings.network_timeout_seconds,
            )
            return session

        coordinate = event.coordinate
        if coordinate is None and self._location_provider is not None:
            coordinate = self._location_provider()
        if coordinate is None:
            coordinate = session.triggering_event.coordinate
        return await self._finish_with_alert(session, EscalationState.MANUAL_ALERT, coordinate)

    async def _on_timeout(self, event: ResponseTimedOut) -> Optional[EscalationSession]:
        session = self._session
        if session is None or session.id != event.session_id:
            _logger.debug("Stale timeout for %s ignored", event.session_id)
            return None

        # Invoked from the timer task itself.
        session._timer = None
        self._alert_task = asyncio.current_task()
        try:
            return await self._finish_with_alert(
                session, EscalationState.AUTO_ALERT, session.triggering_event.coordinate
            )
        finally:
            if self._alert_task is asyncio.current_task():
                self._alert_task = None

    # -- helpers --

    async def _response_timer(self, session_id: str, window: float) -> None:
        await asyncio.sleep(window)
        _logger.info("No response for escalation %s within %.0f s", session_id, window)
        await self.handle(ResponseTimedOut(session_id=session_id))

    def _cancel_timer(self, session: EscalationSession) -> None:
        timer = session._timer
        session._timer = None
        if timer is not None and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()

    def _finish(self, session: EscalationSession, target: EscalationState) -> None:
        allowed = _VALID_TRANSITIONS.get(session.state, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition from {session.state.value} to {target.value}. "
                f"Allowed transitions: {[s.value for s in allowed]}"
            )
        session.state = target
        prompt = session._prompt_task
        session._prompt_task = None
        if prompt is not None and not prompt.done() and prompt is not asyncio.current_task():
            prompt.cancel()
        if self._session is session:
            self._session = None
        self.completed.append(session)
        _logger.info("Escalation %s closed as %s", session.id, target.value)

    async def _finish_with_alert(
        self,
        session: EscalationSession,
        target: EscalationState,
        coordinate: Coordinate,
    ) -> EscalationSession:
        self._finish(session, target)
        event_type = (
            IncidentEventType.AUTO_ALERT
            if target is EscalationState.AUTO_ALERT
            else IncidentEventType.MANUAL_ALERT
        )
        self._incident_log.record(
            event_type,
            session_id=session.id,
            latitude=coordinate.latitude,
            longitude=coordinate.longitude,
        )

        message = compose_alert_message(
            self._settings.traveler_name,
            session.destination_label,
            coordinate,
            map_link_template=self._settings.map_link_template,
        )
        outcome = await self._dispatcher.dispatch(self._contacts, message)
        session.dispatch_outcome = outcome
        self._incident_log.record(
            IncidentEventType.ALERT_DISPATCHED,
            session_id=session.id,
            outcome=outcome.value,
            contact_count=len(self._contacts),
        )

        title, body = describe_outcome(outcome, automatic=target is EscalationState.AUTO_ALERT)
        await post_notice(self._gateway, title, body, self._settings.network_timeout_seconds)
        return session


async def _cancel_and_wait(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
