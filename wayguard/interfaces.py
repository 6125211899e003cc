"""Structural interfaces for the collaborators the engine talks to.

Nothing in the core imports a concrete device or network library; it only
sees these protocols, so tests pass simple fakes and deployments pass the
adapters in ``wayguard.services`` or their own platform bindings.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import Optional, Protocol

from wayguard.models import Coordinate, EmergencyContact


class DeliveryChannel(Protocol):
    """SMS-like batched message delivery."""

    async def is_available(self) -> bool:
        ...

    async def send(self, numbers: Sequence[str], message: str) -> str:
        """Send one message to all numbers.  Raises on transport failure."""
        ...


class NotificationGateway(Protocol):
    """Interactive prompts and one-shot status notices shown to the traveler.

    Responses to a prompt are delivered back to the engine through
    ``TripMonitor.respond`` with a ``ResponseAction`` identifier.
    """

    async def schedule_prompt(self, title: str, body: str, actions: Sequence[str]) -> str:
        """Show a prompt offering ``actions``; return an opaque handle."""
        ...

    async def notify(self, title: str, body: str) -> None:
        ...


class BlobStorage(Protocol):
    async def upload(self, data: bytes, content_type: str) -> str:
        """Store ``data`` and return a publicly shareable URL."""
        ...


class RecordingHandle(Protocol):
    async def stop(self) -> bytes:
        """Finish the recording and return the captured audio."""
        ...

    async def release(self) -> None:
        """Free the device recorder.  Safe to call more than once."""
        ...


class AudioRecorder(Protocol):
    async def start(self) -> RecordingHandle:
        """Begin capturing audio.

        Raises ``PermissionDeniedError`` when the microphone is refused and
        ``RecordingFailureError`` when the recorder cannot start.
        """
        ...


class SpeechRecognizer(Protocol):
    def utterances(self) -> AsyncIterator[str]:
        """Yield recognized utterances until the recognizer is stopped."""
        ...


class PositionFeed(Protocol):
    def positions(self) -> AsyncIterator[Coordinate]:
        """Yield position fixes until the subscription is removed."""
        ...


class ContactStore(Protocol):
    async def fetch_contacts(self) -> list[EmergencyContact]:
        ...


class Geocoder(Protocol):
    async def geocode(self, address: str) -> Optional[Coordinate]:
        ...
