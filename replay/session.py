from __future__ import annotations

import asyncio
import bisect
import inspect
import logging
import math
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

import settings
from replay.store import TelemetryStore
from replay.types import FlightKey, Sample

logger = logging.getLogger(__name__)

TickCallback = Callable[[Dict[str, Any]], Any]


def clamp_rate(rate: Any, min_rate: float) -> float:
    """Non-numeric, non-finite and too-small rates all collapse to `min_rate`."""
    try:
        r = float(rate)
    except (TypeError, ValueError):
        return min_rate
    if not math.isfinite(r):
        return min_rate
    return max(min_rate, r)


class ReplaySession:
    """
    Shared playback state for one flight/date.

    The session is driven entirely from one event loop: timers are armed with
    `loop.call_later` and at most one advance is pending at any time.
    Delay before delivering sample i (cursor at i) is the recorded gap to sample
    i+1 divided by `rate`, floored at `min_delay_ms`; the last sample goes out
    immediately and playback stops there.
    """

    def __init__(
        self,
        *,
        key: FlightKey,
        samples: Sequence[Sample],
        loop: Any,
        min_delay_ms: Optional[int] = None,
        min_rate: Optional[float] = None,
    ):
        self.key = key
        self.samples: List[Sample] = list(samples)
        self.cursor = 0
        self.playing = False
        self.rate = 1.0
        self.min_delay_ms = int(settings.MIN_DELAY_MS if min_delay_ms is None else min_delay_ms)
        self.min_rate = float(settings.MIN_RATE if min_rate is None else min_rate)

        self._loop = loop
        self._timer = None
        self._on_tick: Optional[TickCallback] = None
        self._deliveries: Set[Any] = set()
        # Epoch-ms list for bisect; samples are already time-sorted by the store.
        self._t_ms: List[int] = [s.ts for s in self.samples]
        self.last_touched = loop.time()

    @property
    def total(self) -> int:
        return len(self.samples)

    @property
    def current_sample(self) -> Optional[Sample]:
        if 0 <= self.cursor < len(self.samples):
            return self.samples[self.cursor]
        return None

    @property
    def has_pending_advance(self) -> bool:
        return self._timer is not None

    def touch(self) -> None:
        self.last_touched = self._loop.time()

    def snapshot(self) -> Dict[str, Any]:
        cur = self.current_sample
        return {
            "key": str(self.key),
            "cursor": int(self.cursor),
            "total": self.total,
            "playing": self.playing,
            "rate": self.rate,
            "current_sample": cur.to_payload() if cur is not None else None,
        }

    def path(self) -> List[Dict[str, Any]]:
        return [s.to_payload() for s in self.samples if s.has_position]

    # -----------------------
    # Pacing
    # -----------------------

    def next_delay_ms(self) -> int:
        i = self.cursor
        if i + 1 >= len(self._t_ms) or i < 0:
            return 0
        gap = self._t_ms[i + 1] - self._t_ms[i]
        # Half-up rounding; built-in round() would send 62.5 to 62.
        return max(self.min_delay_ms, int(math.floor(gap / self.rate + 0.5)))

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule_next(self) -> None:
        if not self.playing:
            return
        self._cancel_timer()
        delay = self.next_delay_ms()
        self._timer = self._loop.call_later(delay / 1000.0, self._advance)

    def _rearm(self) -> None:
        if self.playing:
            self._cancel_timer()
            self._schedule_next()

    def _advance(self) -> None:
        self._timer = None
        if not self.playing or not self.samples:
            return
        idx = self.cursor
        self._deliver(idx, self.samples[idx])
        self.cursor = idx + 1
        if self.cursor >= len(self.samples):
            # End of data: park on the last sample, no loop-around.
            self.cursor = len(self.samples) - 1
            self.playing = False
            logger.info("end of data %s (%d samples)", self.key, len(self.samples))
            return
        self._schedule_next()

    def _deliver(self, idx: int, sample: Sample) -> None:
        cb = self._on_tick
        if cb is None:
            return
        tick = {
            "key": str(self.key),
            "cursor": idx,
            "total": len(self.samples),
            "sample": sample.to_payload(),
        }
        try:
            result = cb(tick)
            if inspect.isawaitable(result):
                fut = asyncio.ensure_future(result, loop=self._loop)
                self._deliveries.add(fut)
                fut.add_done_callback(self._delivery_done)
        except Exception:
            logger.exception("tick delivery failed for %s at %d", self.key, idx)

    def _delivery_done(self, fut: Any) -> None:
        self._deliveries.discard(fut)
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            logger.warning("tick delivery failed for %s: %r", self.key, exc)

    # -----------------------
    # Controls
    # -----------------------

    def resume(self, on_tick: Optional[TickCallback] = None) -> bool:
        self.touch()
        if self.playing or not self.samples:
            return False
        if on_tick is not None:
            self._on_tick = on_tick
        self.playing = True
        self._schedule_next()
        logger.info("resume %s at %d/%d rate=%s", self.key, self.cursor, self.total, self.rate)
        return True

    def pause(self) -> None:
        self.touch()
        self._cancel_timer()
        if self.playing:
            logger.info("pause %s at %d/%d", self.key, self.cursor, self.total)
        self.playing = False

    def set_rate(self, rate: Any) -> float:
        self.touch()
        self.rate = clamp_rate(rate, self.min_rate)
        # New rate applies from the next delivery on.
        self._rearm()
        logger.info("rate %s -> %s", self.key, self.rate)
        return self.rate

    def seek_seconds(self, seconds: float) -> None:
        self.touch()
        if not self.samples:
            return
        try:
            delta = float(seconds)
        except (TypeError, ValueError):
            return
        if not math.isfinite(delta):
            return
        base = self.cursor if 0 <= self.cursor < len(self._t_ms) else 0
        target = self._t_ms[base] + delta * 1000.0
        j = bisect.bisect_right(self._t_ms, target) - 1
        self.cursor = max(0, j)
        self._rearm()
        logger.info("seek %s %+gs -> %d", self.key, delta, self.cursor)

    def seek_points(self, points: int) -> None:
        self.touch()
        if not self.samples:
            return
        self.cursor = max(0, min(len(self.samples) - 1, self.cursor + int(points)))
        self._rearm()
        logger.info("seek %s %+d points -> %d", self.key, int(points), self.cursor)

    def close(self) -> None:
        self._cancel_timer()
        self.playing = False
        self._on_tick = None


class ReplayEngine:
    """
    Registry of replay sessions, one per flight/date, created on first reference.

    Samples for a key are loaded exactly once per session lifetime; concurrent
    first references share the in-flight load. A failed load registers nothing.
    """

    def __init__(
        self,
        store: Optional[TelemetryStore] = None,
        *,
        loop: Any = None,
        min_delay_ms: Optional[int] = None,
        min_rate: Optional[float] = None,
    ):
        self.store = store if store is not None else TelemetryStore()
        self._loop = loop
        self._min_delay_ms = min_delay_ms
        self._min_rate = min_rate
        self._sessions: Dict[FlightKey, ReplaySession] = {}
        self._loading: Dict[FlightKey, "asyncio.Future[ReplaySession]"] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, key: FlightKey) -> Optional[ReplaySession]:
        return self._sessions.get(key)

    async def _load(self, key: FlightKey) -> ReplaySession:
        samples = await asyncio.to_thread(self.store.load_flight, key.flight_number, key.date)
        session = ReplaySession(
            key=key,
            samples=samples,
            loop=self._loop if self._loop is not None else asyncio.get_running_loop(),
            min_delay_ms=self._min_delay_ms,
            min_rate=self._min_rate,
        )
        self._sessions[key] = session
        logger.info("session %s loaded (%d samples)", key, len(samples))
        return session

    def _load_done(self, key: FlightKey, fut: "asyncio.Future[ReplaySession]") -> None:
        self._loading.pop(key, None)
        # Every waiter may have been cancelled; read the failure so it is not reported as unretrieved.
        if not fut.cancelled() and fut.exception() is not None:
            logger.warning("session %s load failed: %r", key, fut.exception())

    async def ensure_session(self, key: FlightKey) -> ReplaySession:
        existing = self._sessions.get(key)
        if existing is not None:
            existing.touch()
            return existing
        pending = self._loading.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._load(key))
            self._loading[key] = pending
            pending.add_done_callback(lambda f, k=key: self._load_done(k, f))
        return await asyncio.shield(pending)

    async def snapshot(self, key: FlightKey) -> Dict[str, Any]:
        return (await self.ensure_session(key)).snapshot()

    async def get_path(self, key: FlightKey) -> List[Dict[str, Any]]:
        return (await self.ensure_session(key)).path()

    async def join(self, key: FlightKey) -> Dict[str, Any]:
        s = await self.ensure_session(key)
        path = s.path()
        return {"path": path, "total": len(path), "snapshot": s.snapshot()}

    async def resume(self, key: FlightKey, on_tick: Optional[TickCallback] = None) -> None:
        (await self.ensure_session(key)).resume(on_tick)

    async def pause(self, key: FlightKey) -> None:
        (await self.ensure_session(key)).pause()

    async def set_rate(self, key: FlightKey, rate: Any) -> Dict[str, float]:
        s = await self.ensure_session(key)
        return {"rate": s.set_rate(rate)}

    async def seek_seconds(self, key: FlightKey, seconds: float) -> Dict[str, Any]:
        s = await self.ensure_session(key)
        s.seek_seconds(seconds)
        return s.snapshot()

    async def seek_points(self, key: FlightKey, points: int) -> Dict[str, Any]:
        s = await self.ensure_session(key)
        s.seek_points(points)
        return s.snapshot()

    def evict_idle(self, max_idle_sec: float, now: Optional[float] = None) -> int:
        """
        Drop sessions that are paused and untouched for more than `max_idle_sec`.
        Returns the number of evicted sessions.
        """
        evicted = 0
        for key, s in list(self._sessions.items()):
            t_now = s._loop.time() if now is None else now
            if s.playing or (t_now - s.last_touched) <= max_idle_sec:
                continue
            s.close()
            del self._sessions[key]
            evicted += 1
            logger.info("evicted idle session %s", key)
        return evicted

    def close(self) -> None:
        for s in self._sessions.values():
            s.close()
        self._sessions.clear()
