"""
Flight-data-recorder replay engine.

Headless: one shared, time-paced playback session per flight/date, driven
from a single asyncio loop. Transports (websocket, REST) wrap the engine.
"""

from replay.session import ReplayEngine, ReplaySession, clamp_rate
from replay.store import StoreUnavailable, TelemetryStore
from replay.types import MEASUREMENT_FIELDS, FlightKey, Sample

__all__ = [
    "ReplayEngine",
    "ReplaySession",
    "clamp_rate",
    "StoreUnavailable",
    "TelemetryStore",
    "MEASUREMENT_FIELDS",
    "FlightKey",
    "Sample",
]
