import asyncio
import gc
import threading
import unittest

from replay.session import ReplayEngine
from replay.store import StoreUnavailable
from replay.types import FlightKey, Sample

KEY = FlightKey(flight_number="122", date=20250324)
OTHER = FlightKey(flight_number="7", date=20250101)


def _samples(ts_list, with_position=True):
    return [
        Sample(
            id=i + 1,
            ts=t,
            flight_number="122",
            date=20250324,
            utc_time="10:00:00",
            latitude=(41.0 + i * 0.01) if with_position and i % 2 == 0 else None,
            longitude=29.0 if with_position and i % 2 == 0 else None,
        )
        for i, t in enumerate(ts_list)
    ]


class CountingStore:
    def __init__(self, flights=None, fail_times=0):
        self.flights = flights or {}
        self.calls = 0
        self.fail_times = fail_times

    def load_flight(self, flight_number, date):
        self.calls += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise StoreUnavailable("database is locked")
        return list(self.flights.get((flight_number, date), []))


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def time(self):
        return self.now

    def call_later(self, delay, cb):
        raise AssertionError("no timers expected")


class RegistryTests(unittest.IsolatedAsyncioTestCase):
    async def test_single_load_per_key(self):
        store = CountingStore({("122", 20250324): _samples([0, 1000])})
        engine = ReplayEngine(store)
        a = await engine.ensure_session(KEY)
        b = await engine.ensure_session(KEY)
        self.assertIs(a, b)
        self.assertEqual(store.calls, 1)
        await engine.snapshot(KEY)
        await engine.seek_points(KEY, 1)
        self.assertEqual(store.calls, 1)
        engine.close()

    async def test_concurrent_first_references_share_one_load(self):
        store = CountingStore({("122", 20250324): _samples([0, 1000])})
        engine = ReplayEngine(store)
        a, b, c = await asyncio.gather(
            engine.ensure_session(KEY),
            engine.ensure_session(KEY),
            engine.snapshot(KEY),
        )
        self.assertIs(a, b)
        self.assertEqual(c["total"], 2)
        self.assertEqual(store.calls, 1)
        self.assertEqual(len(engine), 1)
        engine.close()

    async def test_store_failure_registers_nothing_and_retries(self):
        store = CountingStore({("122", 20250324): _samples([0, 1000])}, fail_times=1)
        engine = ReplayEngine(store)
        with self.assertRaises(StoreUnavailable):
            await engine.ensure_session(KEY)
        self.assertEqual(len(engine), 0)
        self.assertIsNone(engine.get(KEY))
        s = await engine.ensure_session(KEY)
        self.assertEqual(s.total, 2)
        self.assertEqual(store.calls, 2)
        engine.close()

    async def test_empty_flight_is_a_session(self):
        engine = ReplayEngine(CountingStore())
        snap = await engine.snapshot(OTHER)
        self.assertEqual(snap["total"], 0)
        self.assertIsNone(snap["current_sample"])
        await engine.resume(OTHER, lambda t: None)
        self.assertFalse((await engine.snapshot(OTHER))["playing"])
        snap = await engine.seek_seconds(OTHER, 10)
        self.assertEqual(snap["cursor"], 0)
        snap = await engine.seek_points(OTHER, -4)
        self.assertEqual(snap["cursor"], 0)
        self.assertEqual(await engine.set_rate(OTHER, 3), {"rate": 3.0})
        engine.close()

    async def test_join_sends_positioned_path_and_snapshot(self):
        engine = ReplayEngine(CountingStore({("122", 20250324): _samples([0, 1000, 2000, 3000])}))
        joined = await engine.join(KEY)
        self.assertEqual(joined["total"], 2)
        self.assertEqual([p["id"] for p in joined["path"]], [1, 3])
        self.assertEqual(joined["snapshot"]["total"], 4)
        self.assertEqual(await engine.get_path(KEY), joined["path"])
        engine.close()

    async def test_set_rate_returns_clamped_rate(self):
        engine = ReplayEngine(CountingStore({("122", 20250324): _samples([0, 1000])}))
        self.assertEqual(await engine.set_rate(KEY, -1), {"rate": 0.1})
        self.assertEqual(await engine.set_rate(KEY, 2.5), {"rate": 2.5})
        engine.close()


class GatedStore(CountingStore):
    """First load blocks until released, then fails."""

    def __init__(self, flights):
        super().__init__(flights, fail_times=1)
        self.gate = threading.Event()

    def load_flight(self, flight_number, date):
        if self.fail_times > 0:
            self.gate.wait(5)
        return super().load_flight(flight_number, date)


class OrphanedLoadTests(unittest.IsolatedAsyncioTestCase):
    async def test_failed_load_with_no_waiters_is_consumed(self):
        loop = asyncio.get_running_loop()
        reported = []
        loop.set_exception_handler(lambda _loop, ctx: reported.append(ctx))

        store = GatedStore({("122", 20250324): _samples([0, 1000])})
        engine = ReplayEngine(store)
        waiter = asyncio.ensure_future(engine.ensure_session(KEY))
        await asyncio.sleep(0.01)
        waiter.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await waiter

        with self.assertLogs("replay.session", level="WARNING"):
            store.gate.set()
            for _ in range(200):
                if store.calls == 1 and KEY not in engine._loading:
                    break
                await asyncio.sleep(0.01)
        self.assertNotIn(KEY, engine._loading)
        self.assertEqual(len(engine), 0)

        gc.collect()
        await asyncio.sleep(0)
        self.assertEqual([c for c in reported if "never retrieved" in str(c.get("message", ""))], [])

        s = await engine.ensure_session(KEY)
        self.assertEqual(s.total, 2)
        self.assertEqual(store.calls, 2)
        engine.close()


class PlaybackTests(unittest.IsolatedAsyncioTestCase):
    async def test_async_tick_callback_on_real_loop(self):
        engine = ReplayEngine(CountingStore({("122", 20250324): _samples([0, 0, 0, 0])}), min_delay_ms=1)
        ticks = []
        done = asyncio.Event()

        async def on_tick(tick):
            ticks.append(tick["cursor"])
            if len(ticks) == 4:
                done.set()

        await engine.resume(KEY, on_tick)
        await asyncio.wait_for(done.wait(), timeout=5)
        self.assertEqual(ticks, [0, 1, 2, 3])
        snap = await engine.snapshot(KEY)
        self.assertFalse(snap["playing"])
        self.assertEqual(snap["cursor"], 3)
        engine.close()

    async def test_failing_async_delivery_is_logged_and_playback_continues(self):
        engine = ReplayEngine(CountingStore({("122", 20250324): _samples([0, 0, 0])}), min_delay_ms=1)
        attempts = []

        async def on_tick(tick):
            attempts.append(tick["cursor"])
            raise ConnectionResetError("socket closed")

        with self.assertLogs("replay.session", level="WARNING"):
            await engine.resume(KEY, on_tick)
            for _ in range(200):
                if len(attempts) == 3 and not engine.get(KEY).playing:
                    break
                await asyncio.sleep(0.005)
            await asyncio.sleep(0.01)
        self.assertEqual(attempts, [0, 1, 2])
        engine.close()

    async def test_pause_stops_real_timer(self):
        engine = ReplayEngine(CountingStore({("122", 20250324): _samples([0, 60_000, 120_000])}))
        ticks = []
        await engine.resume(KEY, ticks.append)
        await engine.pause(KEY)
        await asyncio.sleep(0.05)
        self.assertEqual(ticks, [])
        self.assertFalse(engine.get(KEY).has_pending_advance)
        engine.close()


class EvictionTests(unittest.IsolatedAsyncioTestCase):
    async def test_idle_paused_sessions_are_evicted(self):
        clock = FakeClock()
        store = CountingStore({("122", 20250324): _samples([0, 1000])})
        engine = ReplayEngine(store, loop=clock)
        await engine.ensure_session(KEY)
        await engine.ensure_session(OTHER)
        clock.now = 30.0
        await engine.snapshot(OTHER)
        clock.now = 70.0
        self.assertEqual(engine.evict_idle(60), 1)
        self.assertIsNone(engine.get(KEY))
        self.assertIsNotNone(engine.get(OTHER))
        # Next reference reloads.
        await engine.ensure_session(KEY)
        self.assertEqual(store.calls, 3)

    async def test_playing_sessions_are_kept(self):
        engine = ReplayEngine(CountingStore({("122", 20250324): _samples([0, 600_000])}))
        await engine.resume(KEY, lambda t: None)
        self.assertEqual(engine.evict_idle(0, now=10**9), 0)
        self.assertIsNotNone(engine.get(KEY))
        engine.close()
        self.assertEqual(len(engine), 0)


if __name__ == "__main__":
    unittest.main()
