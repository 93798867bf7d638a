#!/usr/bin/env python
"""
Smoke test for the FDR replay engine.

This does NOT start any server. It:
- Picks a flight/date that exists in `fdr_records` (or takes one from argv)
- Opens a replay session at a high rate and plays a handful of ticks
- Exercises seek by time and by record count
- Prints snapshots along the way
"""

from __future__ import annotations

import argparse
import asyncio
from typing import Any, Dict, List

import settings
from database import init_database
from replay.session import ReplayEngine
from replay.store import TelemetryStore
from replay.types import FlightKey


async def run(key: FlightKey, *, ticks: int, rate: float) -> int:
    engine = ReplayEngine(TelemetryStore())
    joined = await engine.join(key)
    snap = joined["snapshot"]
    print(f"Joined {snap['key']}: total={snap['total']} path_points={joined['total']}")
    if not snap["total"]:
        print("Flight has no samples.")
        return 2

    got: List[Dict[str, Any]] = []
    done = asyncio.Event()

    def on_tick(tick: Dict[str, Any]) -> None:
        got.append(tick)
        s = tick["sample"]
        print(f"  tick {tick['cursor']}/{tick['total']} {s['ts_iso']} alt={s['pressure_altitude']} cas={s['computed_airspeed']}")
        if len(got) >= ticks:
            done.set()

    await engine.set_rate(key, rate)
    await engine.resume(key, on_tick)
    session = engine.get(key)
    while not done.is_set() and session is not None and session.playing:
        await asyncio.sleep(0.05)
    await engine.pause(key)
    print(f"Paused after {len(got)} ticks: {await engine.snapshot(key)}")

    snap = await engine.seek_seconds(key, 30)
    print(f"seek +30s -> cursor {snap['cursor']}")
    snap = await engine.seek_points(key, -5)
    print(f"seek -5 points -> cursor {snap['cursor']}")

    cursors = [t["cursor"] for t in got]
    if any(b <= a for a, b in zip(cursors, cursors[1:])):
        print("WARNING: deliveries were not in increasing cursor order")
        return 1
    engine.close()
    return 0


def main() -> int:
    settings.configure_logging()
    init_database()

    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--flight-number")
    parser.add_argument("--date", type=int)
    parser.add_argument("--ticks", type=int, default=10)
    parser.add_argument("--rate", type=float, default=20.0)
    args = parser.parse_args()

    if args.flight_number and args.date:
        key = FlightKey(flight_number=args.flight_number, date=args.date)
    else:
        flights = TelemetryStore().list_flights()
        if not flights:
            print("No rows found in fdr_records. Import a flight first.")
            return 2
        first = flights[0]
        key = FlightKey(flight_number=first["flight_number"], date=first["date"])

    return asyncio.run(run(key, ticks=max(1, args.ticks), rate=args.rate))


if __name__ == "__main__":
    raise SystemExit(main())
