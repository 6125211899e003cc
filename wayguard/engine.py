"""
Trip Monitor -- the long-lived owner of both escalation paths.

``TripMonitor`` wires the deviation detector, escalation controller, voice
pipeline and dispatcher together and routes the five external stimuli to
them:

* position fixes          -> ``on_position``
* response-window expiry  -> handled inside the escalation controller
* prompt responses        -> ``respond``
* recognized speech       -> ``on_utterance``
* explicit presses        -> ``start_voice_alert`` / ``simulate_deviation``

The position-watch and speech loops keep running after any handled
failure downstream.  Only a ``PermissionDeniedError`` raised by the source
itself ends a loop, and only that loop.

Use as an async context manager, or call ``close()``, so that both timers
are cancelled and the recorder is released on every exit path.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable, Sequence
from typing import Optional, Union

from wayguard.config import DEFAULT_SETTINGS, MonitorSettings
from wayguard.deviation import DeviationDetector
from wayguard.dispatcher import AlertDispatcher, post_notice
from wayguard.escalation import DeviationDetected, EscalationController, UserResponded
from wayguard.exceptions import GeocodingError, NetworkFailureError, PermissionDeniedError
from wayguard.incident_log import IncidentEventType, IncidentLog
from wayguard.interfaces import (
    AudioRecorder,
    BlobStorage,
    ContactStore,
    DeliveryChannel,
    Geocoder,
    NotificationGateway,
    PositionFeed,
    SpeechRecognizer,
)
from wayguard.models import (
    Coordinate,
    Destination,
    EmergencyContact,
    EscalationSession,
    ResponseAction,
    RouteTrail,
)
from wayguard.voice import VoiceTriggerPipeline

_logger = logging.getLogger(__name__)

METERS_PER_DEGREE_LATITUDE = 111320.0


class TripMonitor:
    """One traveler, one trip at a time, two independent alert paths."""

    def __init__(
        self,
        channel: DeliveryChannel,
        gateway: NotificationGateway,
        recorder: AudioRecorder,
        storage: BlobStorage,
        settings: MonitorSettings = DEFAULT_SETTINGS,
        contacts: Optional[Sequence[EmergencyContact]] = None,
        incident_log: Optional[IncidentLog] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.incident_log = incident_log if incident_log is not None else IncidentLog()
        self.trail = RouteTrail()
        self.destination: Optional[Destination] = None
        self._gateway = gateway
        # Shared by reference with both state machines.
        self._contacts: list[EmergencyContact] = list(contacts or [])

        self.dispatcher = AlertDispatcher(channel, settings)
        self.detector = DeviationDetector(settings, clock)
        self.escalation = EscalationController(
            self.dispatcher,
            gateway,
            self._contacts,
            settings=settings,
            incident_log=self.incident_log,
            location_provider=self.latest_position,
        )
        self.voice = VoiceTriggerPipeline(
            recorder,
            storage,
            self.dispatcher,
            self._contacts,
            gateway=gateway,
            settings=settings,
            incident_log=self.incident_log,
            location_provider=self.latest_position,
            destination_label_provider=self._destination_label,
            clock=clock,
        )
        self._loops: list[asyncio.Task] = []

    async def __aenter__(self) -> "TripMonitor":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -- state accessors --

    @property
    def contacts(self) -> tuple[EmergencyContact, ...]:
        return tuple(self._contacts)

    def latest_position(self) -> Optional[Coordinate]:
        return self.trail.latest

    def _destination_label(self) -> str:
        return self.destination.label if self.destination is not None else ""

    # -- setup --

    async def load_contacts(self, store: ContactStore) -> list[EmergencyContact]:
        """Fetch the contact snapshot once for this app session.

        Raises:
            NetworkFailureError: If the store fails or does not answer in time.
        """
        timeout = self.settings.network_timeout_seconds
        try:
            fetched = await asyncio.wait_for(store.fetch_contacts(), timeout)
        except asyncio.TimeoutError as exc:
            raise NetworkFailureError(
                f"Contact store did not answer within {timeout:.0f} s", endpoint="contacts"
            ) from exc

        self._contacts[:] = fetched
        if not fetched:
            _logger.warning("No emergency contacts configured")
            await post_notice(
                self._gateway,
                "No Contacts",
                "No emergency contacts found. Please add contacts for safety alerts.",
                timeout,
            )
        else:
            _logger.info("Loaded %d emergency contacts", len(fetched))
        return list(fetched)

    def set_destination(self, destination: Destination) -> None:
        self.destination = destination
        _logger.info("Route monitoring active for %s", destination.label or "destination")

    async def clear_destination(self) -> None:
        """End the trip: stop monitoring and abandon any pending prompt."""
        self.destination = None
        await self.escalation.shutdown()

    async def plan_trip(self, address: str, geocoder: Geocoder) -> Destination:
        """Resolve ``address`` and make it the trip destination.

        Raises:
            ValueError: If ``address`` is blank.
            GeocodingError: If the address cannot be resolved or the lookup
                does not answer in time.
        """
        address = address.strip()
        if not address:
            raise ValueError("Please enter a destination")

        timeout = self.settings.network_timeout_seconds
        try:
            coordinate = await asyncio.wait_for(geocoder.geocode(address), timeout)
        except asyncio.TimeoutError as exc:
            raise GeocodingError(
                f"Geocoding '{address}' timed out after {timeout:.0f} s", endpoint="geocoding"
            ) from exc
        if coordinate is None:
            raise GeocodingError(f"Could not find the location '{address}'", endpoint="geocoding")

        destination = Destination(coordinate=coordinate, label=address)
        self.set_destination(destination)
        return destination

    # -- stimuli --

    async def on_position(self, coordinate: Coordinate) -> Optional[EscalationSession]:
        """Record a fix and escalate if it is a fresh deviation."""
        self.trail.append(coordinate)
        event = self.detector.evaluate(coordinate, self.destination)
        if event is None:
            return None

        self.incident_log.record(
            IncidentEventType.DEVIATION_DETECTED,
            latitude=coordinate.latitude,
            longitude=coordinate.longitude,
            distance_meters=event.distance_meters,
        )
        return await self.escalation.handle(
            DeviationDetected(event=event, destination_label=self._destination_label())
        )

    async def respond(
        self,
        action: Union[ResponseAction, str],
        session_id: Optional[str] = None,
    ) -> Optional[EscalationSession]:
        """Forward a prompt response such as ``"confirm-safe"``."""
        return await self.escalation.handle(UserResponded(
            action=ResponseAction(action),
            session_id=session_id,
            coordinate=self.latest_position(),
        ))

    async def on_utterance(self, utterance: str) -> bool:
        return await self.voice.on_utterance(utterance)

    def start_voice_alert(self) -> bool:
        """Explicit button press: start an evidence recording now."""
        return self.voice.trigger()

    async def simulate_deviation(self, meters: float = 600.0) -> Optional[EscalationSession]:
        """Drill helper: feed a fix ``meters`` north of the latest position."""
        latest = self.latest_position()
        if latest is None:
            return None
        shifted = Coordinate(
            latitude=min(90.0, latest.latitude + meters / METERS_PER_DEGREE_LATITUDE),
            longitude=latest.longitude,
            accuracy=latest.accuracy,
        )
        return await self.on_position(shifted)

    # -- long-running loops --

    async def watch_positions(self, positions: AsyncIterator[Coordinate]) -> None:
        try:
            async for coordinate in positions:
                try:
                    await self.on_position(coordinate)
                except Exception:
                    _logger.exception("Error handling position update; still watching")
        except PermissionDeniedError as exc:
            _logger.error("Position tracking stopped: %s", exc)
            await post_notice(
                self._gateway,
                "Location Permission Required",
                "Permission to access location was denied. Route monitoring is off.",
                self.settings.network_timeout_seconds,
            )

    async def listen(self, utterances: AsyncIterator[str]) -> None:
        try:
            await self.voice.listen(utterances)
        except PermissionDeniedError as exc:
            _logger.error("Voice recognition stopped: %s", exc)
            await post_notice(
                self._gateway,
                "Microphone Permission Required",
                "Voice alerts are off until microphone access is granted.",
                self.settings.network_timeout_seconds,
            )

    def start(
        self,
        positions: Optional[AsyncIterator[Coordinate]] = None,
        utterances: Optional[AsyncIterator[str]] = None,
    ) -> None:
        """Run the position and speech loops as background tasks."""
        if positions is not None:
            self._loops.append(
                asyncio.create_task(self.watch_positions(positions), name="wayguard-positions")
            )
        if utterances is not None:
            self._loops.append(
                asyncio.create_task(self.listen(utterances), name="wayguard-speech")
            )

    def attach(
        self,
        feed: Optional[PositionFeed] = None,
        recognizer: Optional[SpeechRecognizer] = None,
    ) -> None:
        """Subscribe to a position feed and a speech recognizer."""
        self.start(
            positions=feed.positions() if feed is not None else None,
            utterances=recognizer.utterances() if recognizer is not None else None,
        )

    def incident_report(self, session_id: Optional[str] = None) -> dict:
        """Redacted incident export, for one escalation session or voice cycle
        when ``session_id`` is given, otherwise for the whole trip."""
        return self.incident_log.export_for_review(session_id)

    async def close(self) -> None:
        """Cancel both loops and both timers, and release the recorder."""
        loops, self._loops = self._loops, []
        for task in loops:
            task.cancel()
        for task in loops:
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.escalation.shutdown()
        await self.voice.close()
        self.incident_log.record(IncidentEventType.ENGINE_STOPPED)
        _logger.info("Trip monitor stopped")
