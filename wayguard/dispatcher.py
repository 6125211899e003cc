"""
Alert Dispatcher -- Single-Attempt Delivery to Emergency Contacts.

Composes the emergency message and hands it to the delivery channel in one
batched send.  There is no retry: the outcome is returned to the calling
state machine, which reports it and moves on.

Outcomes:

* ``NO_CONTACTS`` -- contact list empty, channel never touched.
* ``UNAVAILABLE`` -- channel reports it cannot send on this device.
* ``FAILED``      -- the availability check or the send raised or timed out.
* ``SENT``        -- the channel accepted the message.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Optional

from wayguard.config import DEFAULT_SETTINGS, MonitorSettings
from wayguard.interfaces import DeliveryChannel, NotificationGateway
from wayguard.models import Coordinate, DispatchOutcome, EmergencyContact

_logger = logging.getLogger(__name__)

UNKNOWN_DESTINATION = "unknown location"
DEVIATION_REASON = "Route deviation detected"
VOICE_REASON = "Voice alert triggered"


def compose_alert_message(
    traveler_name: str,
    destination_label: str,
    coordinate: Optional[Coordinate],
    evidence_url: Optional[str] = None,
    reason: str = DEVIATION_REASON,
    map_link_template: str = DEFAULT_SETTINGS.map_link_template,
) -> str:
    """Build the emergency text.

    The structure is fixed: reason, traveler, destination, map link, and an
    optional trailing recording link.
    """
    label = destination_label.strip() or UNKNOWN_DESTINATION
    if coordinate is not None:
        location = map_link_template.format(
            latitude=coordinate.latitude, longitude=coordinate.longitude
        )
    else:
        location = "unavailable"

    message = (
        f"EMERGENCY: {reason} for {traveler_name} near {label}. "
        f"Current location: {location}"
    )
    if evidence_url:
        message += f"\nEmergency recording: {evidence_url}"
    return message


def normalize_number(number: str, country_code: Optional[str]) -> str:
    number = number.strip()
    if country_code and not number.startswith("+"):
        return country_code + number
    return number


class AlertDispatcher:
    """Sends one batched message per call through a ``DeliveryChannel``."""

    def __init__(
        self,
        channel: DeliveryChannel,
        settings: MonitorSettings = DEFAULT_SETTINGS,
    ) -> None:
        self._channel = channel
        self._settings = settings

    async def dispatch(
        self, contacts: Sequence[EmergencyContact], message: str
    ) -> DispatchOutcome:
        if not contacts:
            _logger.warning("No emergency contacts; alert not sent")
            return DispatchOutcome.NO_CONTACTS

        timeout = self._settings.network_timeout_seconds
        numbers = [
            normalize_number(c.phone_number, self._settings.default_country_code)
            for c in contacts
        ]

        try:
            available = await asyncio.wait_for(self._channel.is_available(), timeout)
            if not available:
                _logger.warning("Delivery channel unavailable on this device")
                return DispatchOutcome.UNAVAILABLE

            result = await asyncio.wait_for(self._channel.send(numbers, message), timeout)
        except asyncio.TimeoutError:
            _logger.error("Delivery channel timed out after %.1f s", timeout)
            return DispatchOutcome.FAILED
        except Exception:
            _logger.exception("Delivery channel failed to send alert")
            return DispatchOutcome.FAILED

        _logger.info("Alert sent to %d contacts (channel result: %s)", len(numbers), result)
        return DispatchOutcome.SENT


def describe_outcome(outcome: DispatchOutcome, automatic: bool = False) -> tuple[str, str]:
    """Title and body of the status notice shown after a dispatch."""
    if outcome is DispatchOutcome.SENT:
        if automatic:
            return (
                "Automatic Alert Sent",
                "No response received in time. Emergency contacts have been notified.",
            )
        return ("Alert Sent", "Emergency alert has been sent to your contacts.")
    if outcome is DispatchOutcome.NO_CONTACTS:
        return ("Alert Failed", "No emergency contacts available to send alerts to.")
    return (
        "Alert Failed",
        "Failed to send emergency alert. Please check SMS permissions "
        "or contact emergency services directly.",
    )


async def post_notice(
    gateway: Optional[NotificationGateway], title: str, body: str, timeout: float
) -> None:
    """Show a one-shot notice.  Failures are logged and dropped."""
    if gateway is None:
        return
    try:
        await asyncio.wait_for(gateway.notify(title, body), timeout)
    except Exception:
        _logger.exception("Could not show notice %r", title)
