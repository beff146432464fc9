"""Snapshot service exceptions."""

from __future__ import annotations

from datetime import date


class SnapshotError(Exception):
    """Base snapshot service exception."""

    pass


class SourceFetchError(SnapshotError):
    """One source feed failed. Recovered by the aggregator, never propagated."""

    def __init__(self, source: str, message: str, status_code: int | None = None):
        super().__init__(f"{source}: {message}")
        self.source = source
        self.status_code = status_code


class AggregationFailure(SnapshotError):
    """The source fan-out itself could not be issued or completed."""

    pass


class StoreFailure(SnapshotError):
    """Persistence unreachable or a constraint was violated."""

    pass


class ScheduleExhausted(SnapshotError):
    """All retries for a schedule were consumed for the day."""

    def __init__(self, schedule: str, run_date: date, attempts: int, last_error: str | None = None):
        super().__init__(
            f"schedule {schedule} exhausted {attempts} attempts for {run_date.isoformat()}: {last_error}"
        )
        self.schedule = schedule
        self.run_date = run_date
        self.attempts = attempts
        self.last_error = last_error
