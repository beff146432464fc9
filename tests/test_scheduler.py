import asyncio
import os
import tempfile
import unittest
from datetime import date, datetime, timedelta, timezone

from apscheduler.jobstores.base import JobLookupError

from dashsnap.db import ConnectionPool
from dashsnap.errors import AggregationFailure, ScheduleExhausted
from dashsnap.pipeline.scheduler import (
    AWAITING_RETRY,
    CHECK_JOB_ID,
    EXHAUSTED_TODAY,
    FIRING,
    IDLE,
    Schedule,
    SnapshotScheduler,
)
from dashsnap.pipeline.store import SnapshotStore
from dashsnap.providers.common import SOURCE_NAMES

EVENING = Schedule("evening", 18, 0, max_retries=6, retry_interval_ms=600000)
NIGHT = Schedule("night", 23, 30, max_retries=2, retry_interval_ms=600000)


class FakeScheduler:
    """Records jobs instead of running them; run_job fires one on demand.

    Like AsyncIOExecutor, shutdown cancels job coroutines still running.
    """

    def __init__(self):
        self.jobs = {}
        self.added = []
        self.running = False
        self.job_tasks = set()

    def add_job(self, func, trigger, args=None, id=None, replace_existing=False, **kwargs):
        job = {"func": func, "trigger": trigger, "args": list(args or []), "id": id}
        self.jobs[id] = job
        self.added.append(job)
        return job

    def remove_job(self, job_id):
        if job_id not in self.jobs:
            raise JobLookupError(job_id)
        del self.jobs[job_id]

    def start(self):
        self.running = True

    def shutdown(self, wait=True):
        self.running = False
        for task in list(self.job_tasks):
            task.cancel()

    def start_job(self, job_id):
        job = self.jobs.pop(job_id)
        task = asyncio.get_running_loop().create_task(job["func"](*job["args"]))
        self.job_tasks.add(task)
        task.add_done_callback(self.job_tasks.discard)
        return task

    async def run_job(self, job_id):
        await self.start_job(job_id)


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self):
        return self.now


class FlakyAggregator:
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = 0

    async def capture(self, now):
        self.calls += 1
        await asyncio.sleep(0)
        if self.calls <= self.failures:
            raise AggregationFailure(f"attempt {self.calls} failed")
        raw = {source: [{"call": self.calls}] for source in SOURCE_NAMES}
        processed = {
            "snapshotInfo": {"timestamp": now.isoformat(), "periode": f"{now.year}{now.month:02d}", "date": now.date().isoformat()},
            "summaryStats": {"totalProducts": 1, "totalWipBatches": 1, "totalOFItems": 1},
            "failedSources": [],
        }
        return raw, processed


class GatedAggregator(FlakyAggregator):
    """Blocks on gate from the given call onward."""

    def __init__(self, failures: int = 0, gate_from_call: int = 1):
        super().__init__(failures)
        self.gate_from_call = gate_from_call
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def capture(self, now):
        if self.calls + 1 >= self.gate_from_call:
            self.entered.set()
            await self.gate.wait()
        return await super().capture(now)


def _at(hour, minute, day=15):
    return datetime(2026, 1, day, hour, minute, tzinfo=timezone.utc)


class SchedulerTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.pool = ConnectionPool(os.path.join(self._tmp.name, "snapshots.db"), size=3)
        self.store = SnapshotStore(self.pool)
        self.store.migrate()
        self.fake = FakeScheduler()
        self.clock = Clock(_at(18, 0))

    def tearDown(self):
        self.pool.close()
        self._tmp.cleanup()

    def _engine(self, aggregator, notifier=None):
        return SnapshotScheduler(
            aggregator,
            self.store,
            [NIGHT, EVENING],
            local_tz="UTC",
            scheduler=self.fake,
            clock=self.clock,
            notifier=notifier,
        )

    async def _run_retry(self, engine, job_id):
        await self.fake.run_job(job_id)
        await engine.drain()


class RetryTests(SchedulerTestCase):
    async def test_three_failures_then_success(self):
        aggregator = FlakyAggregator(failures=3)
        engine = self._engine(aggregator)
        engine.start()
        await engine.check()
        await engine.drain()
        self.assertEqual(engine.state("evening").status, AWAITING_RETRY)
        self.assertEqual(engine.state("evening").retry_count, 1)

        for minutes in (10, 20, 30):
            self.clock.now = _at(18, 0) + timedelta(minutes=minutes)
            await self._run_retry(engine, "snapshot_retry_evening")

        retries = [job for job in self.fake.added if job["id"] == "snapshot_retry_evening"]
        self.assertEqual(
            [job["trigger"].run_date for job in retries],
            [_at(18, 10), _at(18, 20), _at(18, 30)],
        )
        state = engine.state("evening")
        self.assertEqual(state.status, IDLE)
        self.assertEqual(state.last_successful_run_date, date(2026, 1, 15))
        self.assertEqual(state.retry_count, 0)
        self.assertIsNone(state.pending_retry)
        self.assertNotIn("snapshot_retry_evening", self.fake.jobs)
        self.assertEqual(aggregator.calls, 4)

        snap = self.store.get_by_date(date(2026, 1, 15))
        self.assertEqual(snap.created_by, "SYSTEM_EVENING")
        self.assertFalse(snap.is_manual)
        self.assertEqual(snap.raw_data["ofData"], [{"call": 4}])

    async def test_exhausted_schedule_waits_for_next_day(self):
        notified = []

        async def _notify(err):
            notified.append(err)

        aggregator = FlakyAggregator(failures=100)
        engine = self._engine(aggregator, notifier=_notify)
        engine.start()
        self.clock.now = _at(23, 30)
        await engine.check()
        await engine.drain()
        self.clock.now = _at(23, 40)
        await self._run_retry(engine, "snapshot_retry_night")

        state = engine.state("night")
        self.assertEqual(state.status, EXHAUSTED_TODAY)
        self.assertEqual(state.retry_count, 0)
        self.assertEqual(len(notified), 1)
        self.assertIsInstance(notified[0], ScheduleExhausted)
        self.assertEqual(notified[0].attempts, 2)
        self.assertEqual(notified[0].run_date, date(2026, 1, 15))

        self.clock.now = _at(23, 45)
        await engine.check()
        await engine.drain()
        self.assertEqual(aggregator.calls, 2)

        self.clock.now = _at(23, 31, day=16)
        await engine.check()
        await engine.drain()
        self.assertEqual(aggregator.calls, 3)

    async def test_notifier_failure_is_not_fatal(self):
        async def _notify(err):
            raise RuntimeError("telegram down")

        engine = self._engine(FlakyAggregator(failures=100), notifier=_notify)
        engine.start()
        self.clock.now = _at(23, 30)
        await engine.check()
        await engine.drain()
        self.clock.now = _at(23, 40)
        await self._run_retry(engine, "snapshot_retry_night")
        self.assertEqual(engine.state("night").status, EXHAUSTED_TODAY)


class WindowTests(SchedulerTestCase):
    async def test_fires_only_inside_window(self):
        aggregator = FlakyAggregator()
        engine = self._engine(aggregator)

        self.clock.now = _at(17, 59)
        await engine.check()
        await engine.drain()
        self.assertEqual(aggregator.calls, 0)

        self.clock.now = _at(18, 5)
        await engine.check()
        await engine.drain()
        self.assertEqual(aggregator.calls, 1)
        self.assertEqual(engine.state("evening").last_successful_run_date, date(2026, 1, 15))
        self.assertIsNone(engine.state("night").last_successful_run_date)

        # already ran today
        self.clock.now = _at(19, 0)
        await engine.check()
        await engine.drain()
        self.assertEqual(aggregator.calls, 1)

        # night window closes the evening one and overwrites the day's row
        self.clock.now = _at(23, 30)
        await engine.check()
        await engine.drain()
        self.assertEqual(aggregator.calls, 2)
        snap = self.store.get_by_date(date(2026, 1, 15))
        self.assertEqual(snap.created_by, "SYSTEM_NIGHT")
        self.assertEqual(snap.revision, 2)

    async def test_durable_check_skips_after_restart(self):
        day = date(2026, 1, 15)
        self.store.save("202601", day, {}, {}, "SYSTEM_EVENING", False, False, None)
        aggregator = FlakyAggregator()
        engine = self._engine(aggregator)
        self.clock.now = _at(18, 30)
        await engine.check()
        await engine.drain()
        self.assertEqual(aggregator.calls, 0)
        self.assertEqual(engine.state("evening").last_successful_run_date, day)

    async def test_month_end_flag_follows_calendar(self):
        engine = self._engine(FlakyAggregator())
        self.clock.now = datetime(2026, 1, 31, 18, 0, tzinfo=timezone.utc)
        await engine.check()
        await engine.drain()
        snap = self.store.get_by_date(date(2026, 1, 31))
        self.assertTrue(snap.is_month_end)
        self.assertTrue(snap.processed_data["snapshotInfo"]["isMonthEnd"])


class TriggerTests(SchedulerTestCase):
    async def test_trigger_now_twice_keeps_one_row(self):
        aggregator = FlakyAggregator()
        engine = self._engine(aggregator)
        self.clock.now = _at(9, 0)
        results = await asyncio.gather(engine.trigger_now("evening"), engine.trigger_now("evening"))

        self.assertEqual(aggregator.calls, 2)
        self.assertEqual(sorted(r.result for r in results), ["created", "updated"])
        self.assertEqual(results[0].id, results[1].id)
        available = self.store.list_available()
        self.assertEqual(len(available["autoSaves"]), 1)
        self.assertEqual(len(self.store.list_by_periode("202601")), 1)

    async def test_trigger_now_cancels_pending_retry(self):
        aggregator = FlakyAggregator(failures=1)
        engine = self._engine(aggregator)
        engine.start()
        self.clock.now = _at(18, 0)
        self.assertIsNone(await engine.trigger_now("evening"))
        self.assertEqual(engine.state("evening").status, AWAITING_RETRY)

        result = await engine.trigger_now("evening")
        self.assertEqual(result.result, "created")
        self.assertNotIn("snapshot_retry_evening", self.fake.jobs)
        self.assertEqual(engine.state("evening").retry_count, 0)

    async def test_unknown_schedule(self):
        engine = self._engine(FlakyAggregator())
        with self.assertRaises(KeyError):
            await engine.trigger_now("weekly")

    async def test_failure_while_stopped_arms_no_retry(self):
        engine = self._engine(FlakyAggregator(failures=1))
        self.assertIsNone(await engine.trigger_now("evening"))
        self.assertEqual(self.fake.added, [])
        self.assertEqual(engine.state("evening").status, IDLE)


class LifecycleTests(SchedulerTestCase):
    async def test_start_is_idempotent(self):
        engine = self._engine(FlakyAggregator())
        engine.start()
        engine.start()
        self.assertTrue(engine.running)
        self.assertEqual([job["id"] for job in self.fake.added], [CHECK_JOB_ID])

    async def test_stop_cancels_check_and_retries(self):
        engine = self._engine(FlakyAggregator(failures=1))
        engine.start()
        await engine.check()
        await engine.drain()
        self.assertIn("snapshot_retry_evening", self.fake.jobs)

        engine.stop()
        engine.stop()
        self.assertEqual(self.fake.jobs, {})
        self.assertFalse(engine.running)
        self.assertEqual(engine.state("evening").status, IDLE)

    async def test_stop_leaves_in_flight_run_alone(self):
        gate = asyncio.Event()

        class SlowAggregator(FlakyAggregator):
            async def capture(self, now):
                await gate.wait()
                return await super().capture(now)

        engine = self._engine(SlowAggregator())
        engine.start()
        await engine.check()
        engine.stop()
        gate.set()
        self.assertTrue(await engine.drain(timeout=5))
        self.assertIsNotNone(self.store.get_by_date(date(2026, 1, 15)))

    async def test_stop_leaves_in_flight_retry_alone(self):
        aggregator = GatedAggregator(failures=1, gate_from_call=2)
        engine = self._engine(aggregator)
        engine.start()
        self.assertIsNone(await engine.trigger_now("evening"))
        self.assertEqual(engine.state("evening").status, AWAITING_RETRY)

        self.clock.now = _at(18, 10)
        await self.fake.start_job("snapshot_retry_evening")
        await aggregator.entered.wait()
        engine.stop()
        self.assertEqual(engine.state("evening").status, FIRING)
        self.assertFalse(await engine.drain(timeout=0.05))

        aggregator.gate.set()
        self.assertTrue(await engine.drain(timeout=5))
        self.assertEqual(aggregator.calls, 2)
        self.assertEqual(engine.state("evening").status, IDLE)
        snap = self.store.get_by_date(date(2026, 1, 15))
        self.assertEqual(snap.raw_data["ofData"], [{"call": 2}])

        engine.start()
        self.clock.now = _at(18, 20)
        await engine.check()
        await engine.drain()
        self.assertEqual(aggregator.calls, 2)

    async def test_cancelled_run_returns_to_idle(self):
        aggregator = GatedAggregator(gate_from_call=1)
        engine = self._engine(aggregator)
        task = asyncio.create_task(engine.trigger_now("evening"))
        await aggregator.entered.wait()
        self.assertEqual(engine.state("evening").status, FIRING)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(engine.state("evening").status, IDLE)
        self.assertIsNone(self.store.get_by_date(date(2026, 1, 15)))

    async def test_status_reports_schedules_in_fire_order(self):
        engine = self._engine(FlakyAggregator())
        status = engine.status()
        self.assertEqual([s["name"] for s in status["schedules"]], ["evening", "night"])
        self.assertEqual(status["schedules"][0]["time"], "18:00")
        self.assertEqual(status["current_periode"], "202601")
        self.assertFalse(status["is_running"])

    def test_rejects_overlapping_schedules(self):
        with self.assertRaises(ValueError):
            SnapshotScheduler(FlakyAggregator(), self.store, [EVENING, Schedule("dup", 18, 0, 1, 1000)], scheduler=self.fake)


if __name__ == "__main__":
    unittest.main()
