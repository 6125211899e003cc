"""
Deviation Detector -- Distance-to-Destination Checks with Cooldown.

Each position sample is compared against the trip destination using the
haversine great-circle distance on a spherical earth.  A sample further
than the configured threshold raises a ``DeviationEvent`` unless a previous
deviation was raised within the cooldown window.

The reported accuracy of a fix is not subtracted from the distance.  A
sample with a 300 m accuracy radius 1100 m from the destination still
counts as 1100 m.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from typing import Optional

from wayguard.config import DEFAULT_SETTINGS, MonitorSettings
from wayguard.models import Coordinate, Destination, DeviationEvent

_logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6371008.8


def haversine_meters(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance between two coordinates in meters."""
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    d_lat = lat2 - lat1
    d_lon = math.radians(b.longitude - a.longitude)

    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(h)))


def evaluate_deviation(
    current: Coordinate,
    destination: Optional[Destination],
    last_notified_at: Optional[float],
    now: float,
    settings: MonitorSettings = DEFAULT_SETTINGS,
) -> Optional[DeviationEvent]:
    """Decide whether ``current`` is a deviation worth raising.

    Pure function: the caller owns the cooldown timestamp and must store
    ``now`` as the new ``last_notified_at`` whenever an event is returned.

    Args:
        current: The latest position sample.
        destination: The trip destination, or None when no trip is active.
        last_notified_at: Clock reading of the last raised deviation, or
            None if none has been raised yet.
        now: Current clock reading, same clock as ``last_notified_at``.
        settings: Threshold and cooldown configuration.

    Returns:
        A ``DeviationEvent`` or None.
    """
    if destination is None:
        return None

    if last_notified_at is not None and now - last_notified_at < settings.cooldown_seconds:
        return None

    distance = haversine_meters(current, destination.coordinate)
    if distance > settings.deviation_threshold_meters:
        return DeviationEvent(coordinate=current, distance_meters=distance)
    return None


class DeviationDetector:
    """Holds the process-lifetime cooldown timestamp around ``evaluate_deviation``."""

    def __init__(
        self,
        settings: MonitorSettings = DEFAULT_SETTINGS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._clock = clock
        self.last_notified_at: Optional[float] = None

    def evaluate(
        self, current: Coordinate, destination: Optional[Destination]
    ) -> Optional[DeviationEvent]:
        now = self._clock()
        event = evaluate_deviation(
            current, destination, self.last_notified_at, now, self._settings
        )
        if event is not None:
            self.last_notified_at = now
            _logger.info(
                "Deviation of %.0f m from destination (threshold %.0f m)",
                event.distance_meters,
                self._settings.deviation_threshold_meters,
            )
        return event
