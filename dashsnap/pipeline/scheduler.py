from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

import structlog
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..errors import ScheduleExhausted, StoreFailure
from ..utils import is_last_day_of_month, periode_for
from .capture import capture_and_save

log = structlog.get_logger()

CHECK_JOB_ID = "snapshot_check"

IDLE = "idle"
FIRING = "firing"
AWAITING_RETRY = "awaiting_retry"
EXHAUSTED_TODAY = "exhausted_today"


@dataclass(frozen=True)
class Schedule:
    name: str
    fire_hour: int
    fire_minute: int
    max_retries: int
    retry_interval_ms: int
    created_by: str | None = None

    @property
    def tag(self) -> str:
        return self.created_by or f"SYSTEM_{self.name.upper()}"

    @property
    def fire_minutes(self) -> int:
        return self.fire_hour * 60 + self.fire_minute

    @property
    def fire_time(self) -> str:
        return f"{self.fire_hour:02d}:{self.fire_minute:02d}"

    @classmethod
    def from_config(cls, cfg) -> "Schedule":
        return cls(
            name=cfg.name,
            fire_hour=cfg.hour,
            fire_minute=cfg.minute,
            max_retries=cfg.max_retries,
            retry_interval_ms=cfg.retry_interval_ms,
            created_by=cfg.created_by,
        )


@dataclass
class ScheduleRunState:
    status: str = IDLE
    last_successful_run_date: date | None = None
    retry_count: int = 0
    pending_retry: str | None = None
    next_retry_at: datetime | None = None
    exhausted_on: date | None = None
    last_error: str | None = None
    last_result: dict | None = None


class SnapshotScheduler:
    """
    Daily snapshot trigger engine.

    A single interval job (snapshot_check) evaluates every schedule; failed
    runs are retried through one-shot date jobs. State lives in memory only,
    with the store consulted before firing so a restart does not save twice.
    """
    def __init__(
        self,
        aggregator,
        store,
        schedules: list[Schedule],
        *,
        local_tz: str = "Asia/Jakarta",
        check_interval_seconds: int = 60,
        scheduler: AsyncIOScheduler | None = None,
        clock=None,
        notifier=None,
    ):
        if not schedules:
            raise ValueError("at least one schedule required")
        ordered = sorted(schedules, key=lambda s: s.fire_minutes)
        names = [s.name for s in ordered]
        if len(set(names)) != len(names):
            raise ValueError("schedule names must be unique")
        if len({s.fire_minutes for s in ordered}) != len(ordered):
            raise ValueError("schedules must have distinct fire times")
        self.aggregator = aggregator
        self.store = store
        self.schedules = ordered
        self.tz = ZoneInfo(local_tz)
        self.check_interval_seconds = check_interval_seconds
        self.notifier = notifier
        self._scheduler = scheduler or AsyncIOScheduler(timezone=self.tz)
        self._owns_scheduler = scheduler is None
        self._clock = clock or (lambda: datetime.now(self.tz))
        self._by_name = {s.name: s for s in ordered}
        self._states = {s.name: ScheduleRunState() for s in ordered}
        self._tasks: set[asyncio.Task] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def state(self, name: str) -> ScheduleRunState:
        return self._states[name]

    def _now(self) -> datetime:
        return self._clock()

    def _in_window(self, schedule: Schedule, now: datetime) -> bool:
        current = now.hour * 60 + now.minute
        if current < schedule.fire_minutes:
            return False
        idx = self.schedules.index(schedule)
        if idx + 1 < len(self.schedules):
            return current < self.schedules[idx + 1].fire_minutes
        return True

    def _remove_job(self, job_id: str):
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            pass

    def _cancel_retry(self, name: str):
        state = self._states[name]
        if state.pending_retry:
            self._remove_job(state.pending_retry)
        state.pending_retry = None
        state.next_retry_at = None

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def start(self):
        if self._running:
            log.info("snapshot_scheduler_already_running")
            return
        now = self._now()
        self._scheduler.add_job(
            self.check,
            IntervalTrigger(seconds=self.check_interval_seconds, timezone=self.tz),
            id=CHECK_JOB_ID,
            replace_existing=True,
            next_run_time=now,
            max_instances=1,
            coalesce=True,
        )
        if not self._scheduler.running:
            self._scheduler.start()
        self._running = True
        log.info(
            "snapshot_scheduler_started",
            schedules=[f"{s.name}@{s.fire_time}/{s.max_retries}" for s in self.schedules],
            current_date=now.date().isoformat(),
            current_periode=periode_for(now.date()),
            is_last_day_of_month=is_last_day_of_month(now.date()),
        )

    def stop(self):
        if not self._running:
            log.info("snapshot_scheduler_not_running")
            return
        self._remove_job(CHECK_JOB_ID)
        for name, state in self._states.items():
            self._cancel_retry(name)
            if state.status == AWAITING_RETRY:
                state.status = IDLE
            state.retry_count = 0
        if self._owns_scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._running = False
        log.info("snapshot_scheduler_stopped", in_flight=len(self._tasks))

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for capture runs already dispatched. False if some are still running."""
        if not self._tasks:
            return True
        _, pending = await asyncio.wait(list(self._tasks), timeout=timeout)
        return not pending

    async def _already_saved(self, schedule: Schedule, today: date) -> bool:
        try:
            return await asyncio.to_thread(self.store.has_automatic, today, schedule.tag)
        except StoreFailure as e:
            log.warning("schedule_durable_check_failed", schedule=schedule.name, err=str(e))
            return False

    async def check(self):
        now = self._now()
        today = now.date()
        for schedule in self.schedules:
            state = self._states[schedule.name]
            if not self._in_window(schedule, now):
                continue
            if state.status in (FIRING, AWAITING_RETRY):
                continue
            if state.last_successful_run_date == today or state.exhausted_on == today:
                continue
            if await self._already_saved(schedule, today):
                state.last_successful_run_date = today
                log.info("schedule_already_saved", schedule=schedule.name, snapshot_date=today.isoformat())
                continue
            log.info("schedule_trigger_due", schedule=schedule.name, fire_time=schedule.fire_time)
            state.status = FIRING
            self._spawn(self._fire(schedule))

    async def _retry(self, name: str):
        state = self._states[name]
        state.pending_retry = None
        state.next_retry_at = None
        state.status = FIRING
        # engine-owned task; scheduler shutdown cancels running job coroutines
        self._spawn(self._fire(self._by_name[name]))

    async def _fire(self, schedule: Schedule):
        state = self._states[schedule.name]
        now = self._now()
        today = now.date()
        if state.last_successful_run_date == today:
            log.info("schedule_already_ran", schedule=schedule.name, snapshot_date=today.isoformat())
            state.status = IDLE
            return None

        state.status = FIRING
        periode = periode_for(today)
        log.info(
            "schedule_fire_started",
            schedule=schedule.name,
            snapshot_date=today.isoformat(),
            periode=periode,
            retry_count=state.retry_count,
            max_retries=schedule.max_retries,
            is_month_end=is_last_day_of_month(today),
        )
        try:
            result, periode, day = await capture_and_save(
                self.aggregator,
                self.store,
                now,
                created_by=schedule.tag,
                is_manual=False,
                notes=f"Automatic {schedule.name} snapshot for {periode}",
            )
        except Exception as e:
            log.error("schedule_fire_failed", schedule=schedule.name, err=str(e), attempt=state.retry_count + 1)
            await self._handle_failure(schedule, state, e, today)
            return None
        except asyncio.CancelledError:
            state.status = IDLE
            log.warning("schedule_fire_cancelled", schedule=schedule.name)
            raise

        self._cancel_retry(schedule.name)
        state.status = IDLE
        state.last_successful_run_date = today
        state.retry_count = 0
        state.exhausted_on = None
        state.last_error = None
        state.last_result = {"id": result.id, "result": result.result, "periode": periode, "date": day}
        log.info("schedule_fire_succeeded", schedule=schedule.name, snapshot_id=result.id, result=result.result)
        return result

    async def _handle_failure(self, schedule: Schedule, state: ScheduleRunState, exc: Exception, today: date):
        state.retry_count += 1
        state.last_error = str(exc)
        if state.retry_count < schedule.max_retries:
            if not self._running:
                state.status = IDLE
                log.warning("schedule_retry_skipped", schedule=schedule.name, reason="scheduler_stopped")
                return
            run_at = self._now() + timedelta(milliseconds=schedule.retry_interval_ms)
            job_id = f"snapshot_retry_{schedule.name}"
            self._scheduler.add_job(
                self._retry,
                DateTrigger(run_date=run_at),
                args=[schedule.name],
                id=job_id,
                replace_existing=True,
            )
            state.status = AWAITING_RETRY
            state.pending_retry = job_id
            state.next_retry_at = run_at
            log.warning(
                "schedule_retry_scheduled",
                schedule=schedule.name,
                run_at=run_at.isoformat(),
                attempt=state.retry_count + 1,
                max_retries=schedule.max_retries,
            )
            return

        attempts = state.retry_count
        state.status = EXHAUSTED_TODAY
        state.exhausted_on = today
        state.retry_count = 0
        state.pending_retry = None
        state.next_retry_at = None
        err = ScheduleExhausted(schedule.name, today, attempts, state.last_error)
        log.error(
            "schedule_exhausted",
            schedule=schedule.name,
            snapshot_date=today.isoformat(),
            attempts=attempts,
            err=state.last_error,
        )
        if self.notifier is not None:
            try:
                await self.notifier(err)
            except Exception as ne:
                log.warning("schedule_exhausted_notify_failed", schedule=schedule.name, err=str(ne))

    async def trigger_now(self, name: str):
        schedule = self._by_name[name]
        state = self._states[name]
        self._cancel_retry(name)
        state.last_successful_run_date = None
        state.retry_count = 0
        state.exhausted_on = None
        log.info("schedule_manual_trigger", schedule=name)
        return await self._fire(schedule)

    def status(self) -> dict:
        now = self._now()
        today = now.date()
        return {
            "is_running": self._running,
            "schedules": [
                {
                    "name": s.name,
                    "time": s.fire_time,
                    "max_retries": s.max_retries,
                    "retry_interval_ms": s.retry_interval_ms,
                    "created_by": s.tag,
                    "state": self._states[s.name].status,
                    "last_successful_run": (
                        self._states[s.name].last_successful_run_date.isoformat()
                        if self._states[s.name].last_successful_run_date
                        else None
                    ),
                    "retry_count": self._states[s.name].retry_count,
                    "next_retry_at": (
                        self._states[s.name].next_retry_at.isoformat()
                        if self._states[s.name].next_retry_at
                        else None
                    ),
                    "has_run_today": self._states[s.name].last_successful_run_date == today,
                    "last_error": self._states[s.name].last_error,
                    "last_result": self._states[s.name].last_result,
                }
                for s in self.schedules
            ],
            "current_date": today.isoformat(),
            "current_periode": periode_for(today),
            "is_last_day_of_month": is_last_day_of_month(today),
        }
