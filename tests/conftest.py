"""Shared fakes for the external collaborators."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Optional

import pytest

from wayguard.config import MonitorSettings
from wayguard.models import Coordinate, Destination, EmergencyContact


class FakeChannel:
    def __init__(
        self,
        available: bool = True,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ) -> None:
        self.available = available
        self.error = error
        self.delay = delay
        self.availability_checks = 0
        self.sent: list[tuple[list[str], str]] = []

    async def is_available(self) -> bool:
        self.availability_checks += 1
        return self.available

    async def send(self, numbers: Sequence[str], message: str) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.sent.append((list(numbers), message))
        return "sent"


class FakeGateway:
    def __init__(
        self,
        prompt_error: Optional[Exception] = None,
        prompt_delay: float = 0.0,
    ) -> None:
        self.prompt_error = prompt_error
        self.prompt_delay = prompt_delay
        self.prompts: list[tuple[str, str, list[str]]] = []
        self.notices: list[tuple[str, str]] = []

    async def schedule_prompt(self, title: str, body: str, actions: Sequence[str]) -> str:
        if self.prompt_delay:
            await asyncio.sleep(self.prompt_delay)
        if self.prompt_error is not None:
            raise self.prompt_error
        self.prompts.append((title, body, list(actions)))
        return f"prompt-{len(self.prompts)}"

    async def notify(self, title: str, body: str) -> None:
        self.notices.append((title, body))


class FakeHandle:
    def __init__(self, audio: bytes, stop_error: Optional[Exception] = None) -> None:
        self.audio = audio
        self.stop_error = stop_error
        self.stopped = False
        self.released = False

    async def stop(self) -> bytes:
        if self.stop_error is not None:
            raise self.stop_error
        self.stopped = True
        return self.audio

    async def release(self) -> None:
        self.released = True


class FakeRecorder:
    def __init__(
        self,
        audio: bytes = b"\x00\x01audio",
        start_error: Optional[Exception] = None,
        stop_error: Optional[Exception] = None,
    ) -> None:
        self.audio = audio
        self.start_error = start_error
        self.stop_error = stop_error
        self.handles: list[FakeHandle] = []

    async def start(self) -> FakeHandle:
        if self.start_error is not None:
            raise self.start_error
        handle = FakeHandle(self.audio, self.stop_error)
        self.handles.append(handle)
        return handle


class FakeStorage:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.uploads: list[tuple[bytes, str]] = []

    async def upload(self, data: bytes, content_type: str) -> str:
        if self.error is not None:
            raise self.error
        self.uploads.append((data, content_type))
        return f"https://storage.example.com/recordings/recording-{len(self.uploads)}.m4a"


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def iterate(items):
    for item in items:
        yield item


MUMBAI = Coordinate(latitude=19.0760, longitude=72.8777)


def offset_north(origin: Coordinate, meters: float) -> Coordinate:
    # One degree of latitude on the mean-radius sphere.
    return Coordinate(latitude=origin.latitude + meters / 111194.93, longitude=origin.longitude)


@pytest.fixture
def settings() -> MonitorSettings:
    return MonitorSettings(
        traveler_name="Asha",
        response_window_seconds=0.05,
        recording_duration_seconds=0.01,
        network_timeout_seconds=0.5,
    )


@pytest.fixture
def contacts() -> list[EmergencyContact]:
    return [
        EmergencyContact(id="c1", name="Ravi", phone_number="+919800000001"),
        EmergencyContact(id="c2", name="Meera", phone_number="+919800000002"),
    ]


@pytest.fixture
def destination() -> Destination:
    return Destination(coordinate=MUMBAI, label="Gateway of India")


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def recorder() -> FakeRecorder:
    return FakeRecorder()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()

