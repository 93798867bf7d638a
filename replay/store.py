from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from database import get_db_connection
from replay.types import MEASUREMENT_FIELDS, Sample, epoch_ms

logger = logging.getLogger(__name__)

_COLUMNS = ("id", "flight_number", "date", "utc_time", "fdr_time") + MEASUREMENT_FIELDS
_SELECT = ", ".join(_COLUMNS)


class StoreUnavailable(RuntimeError):
    """The telemetry database could not be read."""


def _opt_int(v: Any) -> Optional[int]:
    return None if v is None else int(v)


def _opt_float(v: Any) -> Optional[float]:
    return None if v is None else float(v)


def _row_to_sample(row: Sequence[Any]) -> Optional[Sample]:
    rec = dict(zip(_COLUMNS, row))
    try:
        ts = epoch_ms(rec["date"], rec["utc_time"])
    except (TypeError, ValueError):
        logger.warning(
            "skipping fdr record %s: unparseable date/time %r %r",
            rec["id"], rec["date"], rec["utc_time"],
        )
        return None
    values: Dict[str, Any] = {}
    for name in MEASUREMENT_FIELDS:
        conv = _opt_float if name in ("latitude", "longitude") else _opt_int
        values[name] = conv(rec[name])
    return Sample(
        id=int(rec["id"]),
        ts=ts,
        flight_number=str(rec["flight_number"]),
        date=int(rec["date"]),
        utc_time=str(rec["utc_time"]),
        fdr_time=_opt_int(rec["fdr_time"]),
        **values,
    )


@dataclass
class TelemetryStore:
    """
    Read-only access to recorded flights in `fdr_records`.

    Samples come back ordered by parsed timestamp, then recorder time, then row id,
    which keeps `ts` non-decreasing within one flight/date.
    """

    db_path: Optional[str] = None

    def _query(self, sql: str, params: Sequence[Any]) -> List[tuple]:
        try:
            conn = get_db_connection(self.db_path)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"cannot open telemetry database: {e}") from e
        try:
            cur = conn.cursor()
            cur.execute(sql, tuple(params))
            return cur.fetchall()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"telemetry query failed: {e}") from e
        finally:
            conn.close()

    def load_flight(self, flight_number: str, date: int) -> List[Sample]:
        rows = self._query(
            f"""
            SELECT {_SELECT}
            FROM fdr_records
            WHERE flight_number = ? AND date = ?
            ORDER BY utc_time ASC, fdr_time ASC, id ASC
            """,
            (flight_number, int(date)),
        )
        if not rows:
            # Imported sheets are inconsistent about case and padding of flight numbers.
            rows = self._query(
                f"""
                SELECT {_SELECT}
                FROM fdr_records
                WHERE UPPER(TRIM(flight_number)) = UPPER(TRIM(?)) AND date = ?
                ORDER BY utc_time ASC, fdr_time ASC, id ASC
                """,
                (flight_number, int(date)),
            )
        samples: List[Sample] = []
        for row in rows:
            s = _row_to_sample(row)
            if s is not None:
                samples.append(s)
        # utc_time is text; unpadded "9:59:59" sorts after "10:00:00" in SQL.
        # Re-sort on the parsed timestamp (NULL fdr_time first, as SQLite does).
        samples.sort(key=lambda s: (s.ts, s.fdr_time is not None, s.fdr_time or 0, s.id))
        return samples

    def list_flights(self) -> List[Dict[str, Any]]:
        rows = self._query(
            """
            SELECT flight_number, date, COUNT(*)
            FROM fdr_records
            GROUP BY flight_number, date
            ORDER BY date DESC, flight_number ASC
            """,
            (),
        )
        return [
            {"flight_number": str(fn), "date": int(d), "samples": int(n)}
            for (fn, d, n) in rows
        ]
