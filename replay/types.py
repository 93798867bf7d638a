from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

# Recorder channels carried by every sample. All optional: None means "unknown".
MEASUREMENT_FIELDS = (
    "pressure_altitude",
    "pitch_angle",
    "roll_angle",
    "mag_heading",
    "computed_airspeed",
    "vertical_speed",
    "latitude",
    "longitude",
    "flap_position",
    "gear_selection_up",
    "ap1_engaged",
    "ap2_engaged",
    "air_ground",
)

MIN_FLIGHT_DATE = 19000101


def _iso_z_ms(ts_ms: int) -> str:
    dt = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")


def epoch_ms(date: int, utc_time: str) -> int:
    """
    Combine a yyyymmdd date and an "hh:mm:ss" time of day into UTC epoch milliseconds.
    Raises ValueError when either part is malformed.
    """
    yyyy, rem = divmod(int(date), 10000)
    mm, dd = divmod(rem, 100)
    parts = str(utc_time).strip().split(":")
    if len(parts) != 3:
        raise ValueError(f"bad utc_time {utc_time!r}")
    h, m, s = (int(p) for p in parts)
    dt = datetime(yyyy, mm, dd, h, m, s, tzinfo=timezone.utc)
    return int(dt.timestamp()) * 1000


@dataclass(frozen=True)
class FlightKey:
    flight_number: str
    date: int  # yyyymmdd

    @property
    def room(self) -> str:
        return f"{self.flight_number}:{self.date}"

    def __str__(self) -> str:
        return self.room

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "FlightKey":
        """
        Build a key from a transport payload. Accepts `flight_number` or `flightNumber`.
        """
        if not isinstance(payload, Mapping):
            raise ValueError("flight key must be an object")
        raw_flight = payload.get("flight_number")
        if raw_flight is None:
            raw_flight = payload.get("flightNumber")
        flight_number = str(raw_flight if raw_flight is not None else "").strip()
        if not flight_number:
            raise ValueError("flight_number is required")
        raw_date = payload.get("date")
        if isinstance(raw_date, bool):
            raise ValueError("date must be an integer yyyymmdd")
        try:
            date = int(str(raw_date).strip())
        except (TypeError, ValueError):
            raise ValueError("date must be an integer yyyymmdd") from None
        if date < MIN_FLIGHT_DATE:
            raise ValueError(f"date must be >= {MIN_FLIGHT_DATE}")
        return cls(flight_number=flight_number, date=date)


@dataclass(frozen=True)
class Sample:
    """
    One recorder row, placed on the timeline.
    `ts` is UTC epoch milliseconds derived from `date` + `utc_time`.
    """

    id: int
    ts: int
    flight_number: str
    date: int
    utc_time: str
    fdr_time: Optional[int] = None
    pressure_altitude: Optional[int] = None
    pitch_angle: Optional[int] = None
    roll_angle: Optional[int] = None
    mag_heading: Optional[int] = None
    computed_airspeed: Optional[int] = None
    vertical_speed: Optional[int] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    flap_position: Optional[int] = None
    gear_selection_up: Optional[int] = None
    ap1_engaged: Optional[int] = None
    ap2_engaged: Optional[int] = None
    air_ground: Optional[int] = None

    @property
    def has_position(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_payload(self) -> Dict[str, Any]:
        out = {f.name: getattr(self, f.name) for f in fields(self)}
        out["ts_iso"] = _iso_z_ms(self.ts)
        return out
