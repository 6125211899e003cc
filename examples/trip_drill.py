"""
Trip Drill: Route Deviation and Voice Alert Walkthrough
=======================================================

This script runs the WayGuard engine end to end against in-memory stand-ins
for the phone: nothing is sent, recorded, or uploaded for real.

Steps demonstrated:
  1. Load monitor settings from YAML
  2. Load emergency contacts
  3. Start a trip and feed position fixes
  4. Confirm safety on the first deviation prompt
  5. Let the second prompt expire into an automatic alert
  6. Speak a trigger phrase and dispatch the evidence link
  7. Export the incident log for review

Usage:
    python examples/trip_drill.py
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from wayguard.config import load_settings_from_yaml
from wayguard.engine import TripMonitor
from wayguard.models import Coordinate, Destination, EmergencyContact


class PrintChannel:
    async def is_available(self) -> bool:
        return True

    async def send(self, numbers, message) -> str:
        print(f"  [sms -> {', '.join(numbers)}]\n    {message.replace(chr(10), chr(10) + '    ')}")
        return "sent"


class PrintGateway:
    async def schedule_prompt(self, title, body, actions) -> str:
        print(f"  [prompt] {title}: {body} {list(actions)}")
        return "drill-prompt"

    async def notify(self, title, body) -> None:
        print(f"  [notice] {title}: {body}")


class SilentHandle:
    async def stop(self) -> bytes:
        return b"\x00" * 64

    async def release(self) -> None:
        print("  [recorder] released")


class SilentRecorder:
    async def start(self) -> SilentHandle:
        print("  [recorder] started")
        return SilentHandle()


class MemoryStorage:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}

    async def upload(self, data: bytes, content_type: str) -> str:
        name = f"recording-{len(self.objects) + 1}.m4a"
        self.objects[name] = data
        return f"https://storage.example.com/recordings/{name}"


class StaticContacts:
    async def fetch_contacts(self):
        return [
            EmergencyContact(name="Ravi (drill)", phone_number="9800000001"),
            EmergencyContact(name="Meera (drill)", phone_number="+919800000002"),
        ]


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


async def run() -> None:
    _banner("WayGuard Trip Drill")
    print("DISCLAIMER: This is a drill. No message leaves this process.\n")

    # ------------------------------------------------------------------
    # Step 1: Settings
    # ------------------------------------------------------------------
    _banner("Step 1: Load Settings")

    settings = load_settings_from_yaml(Path(__file__).parent / "wayguard.yaml")
    # Shrink the windows so the drill finishes in seconds.
    settings = settings.model_copy(update={
        "response_window_seconds": 1.0,
        "recording_duration_seconds": 0.5,
        "cooldown_seconds": 0.0,
    })
    print(f"Traveler: {settings.traveler_name}")
    print(f"Threshold: {settings.deviation_threshold_meters:.0f} m")
    print(f"Response window: {settings.response_window_seconds:.1f} s")

    async with TripMonitor(
        PrintChannel(), PrintGateway(), SilentRecorder(), MemoryStorage(), settings=settings
    ) as monitor:
        # --------------------------------------------------------------
        # Step 2: Contacts
        # --------------------------------------------------------------
        _banner("Step 2: Load Contacts")
        contacts = await monitor.load_contacts(StaticContacts())
        for contact in contacts:
            print(f"  {contact.name}: {contact.phone_number}")

        # --------------------------------------------------------------
        # Step 3: Trip and positions
        # --------------------------------------------------------------
        _banner("Step 3: Start Trip")
        destination = Destination(
            coordinate=Coordinate(latitude=18.9220, longitude=72.8347),
            label="Gateway of India",
        )
        monitor.set_destination(destination)
        await monitor.on_position(Coordinate(latitude=18.9260, longitude=72.8330))
        print(f"Trail length: {len(monitor.trail)}")

        # --------------------------------------------------------------
        # Step 4: Deviation, confirmed safe
        # --------------------------------------------------------------
        _banner("Step 4: Deviation -> Confirm Safe")
        session = await monitor.simulate_deviation(meters=1500)
        print(f"Session {session.id}: {session.state.value}")
        await asyncio.sleep(0.1)  # traveler reads the prompt
        session = await monitor.respond("confirm-safe")
        print(f"Session {session.id}: {session.state.value}")

        # --------------------------------------------------------------
        # Step 5: Deviation, no response
        # --------------------------------------------------------------
        _banner("Step 5: Deviation -> Automatic Alert")
        session = await monitor.simulate_deviation(meters=500)
        print(f"Waiting {settings.response_window_seconds:.1f} s for a response...")
        await asyncio.sleep(settings.response_window_seconds + 0.2)
        print(f"Session {session.id}: {session.state.value} ({session.dispatch_outcome.value})")

        # --------------------------------------------------------------
        # Step 6: Voice trigger
        # --------------------------------------------------------------
        _banner("Step 6: Voice Trigger")
        await monitor.on_utterance("Someone please help me")
        await monitor.voice.cycle_task
        finished = monitor.voice.history[-1]
        print(f"Voice cycle: {finished.state.value}, evidence: {finished.evidence_url}")
        cycle = monitor.incident_report(finished.id)
        print(f"Voice cycle {finished.id[:8]} logged {len(cycle['entries'])} entries")

    # ------------------------------------------------------------------
    # Step 7: Incident log
    # ------------------------------------------------------------------
    _banner("Step 7: Incident Log Export")
    export = monitor.incident_report()
    print(json.dumps(export["export_metadata"], indent=2))
    for entry in export["entries"]:
        print(f"  {entry['event_type']:<24} {entry['session_id'][:8]}")

    _banner("Drill Complete")


def main() -> None:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    asyncio.run(run())


if __name__ == "__main__":
    main()
