from __future__ import annotations

import asyncio
from datetime import datetime

from ..utils import is_last_day_of_month, periode_for
from .aggregator import SnapshotAggregator
from .store import SaveResult, SnapshotStore


async def capture_and_save(
    aggregator: SnapshotAggregator,
    store: SnapshotStore,
    now: datetime,
    created_by: str,
    is_manual: bool = False,
    notes: str | None = None,
) -> tuple[SaveResult, str, str]:
    """Capture every source at `now` and persist it. Returns (result, periode, date)."""
    raw_data, processed = await aggregator.capture(now)
    today = now.date()
    periode = periode_for(today)
    month_end = is_last_day_of_month(today)
    processed["snapshotInfo"]["isMonthEnd"] = month_end
    result = await asyncio.to_thread(
        store.save,
        periode,
        today,
        raw_data,
        processed,
        created_by,
        month_end,
        is_manual,
        notes,
    )
    return result, periode, today.isoformat()
