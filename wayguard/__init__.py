"""
WayGuard Trip Safety Escalation Engine
======================================

An asyncio engine that watches a traveler's position against a chosen
destination and escalates to a fixed list of emergency contacts when the
traveler strays too far without confirming safety, or when a distress
phrase is heard in speech and an audio clip is captured as evidence.

DISCLAIMER: Alerts are delivered on a single best-effort attempt through
the configured delivery channel.  This software is not an emergency
service and does not guarantee that any contact is reached.
"""

__version__ = "0.1.0"
