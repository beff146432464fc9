from __future__ import annotations

import asyncio
import time
from datetime import datetime

import structlog

from ..errors import AggregationFailure
from ..providers.common import SOURCE_NAMES
from ..utils import periode_for

log = structlog.get_logger()


def build_processed_data(raw_data: dict, now: datetime, failed_sources: list[str]) -> dict:
    return {
        "snapshotInfo": {
            "timestamp": now.isoformat(),
            "periode": periode_for(now.date()),
            "date": now.date().isoformat(),
        },
        "summaryStats": {
            "totalProducts": len(raw_data.get("forecastData") or []),
            "totalWipBatches": len(raw_data.get("wipData") or []),
            "totalOFItems": len(raw_data.get("ofData") or []),
        },
        "failedSources": sorted(failed_sources),
    }


class SnapshotAggregator:
    """
    Fans out to every source feed and merges the results.

    A feed that raises contributes an empty array; only a failure of the
    fan-out itself raises AggregationFailure.
    """
    def __init__(self, fetchers: dict):
        self.fetchers = dict(fetchers)

    async def _fetch_one(self, source: str):
        fetch = self.fetchers.get(source)
        if fetch is None:
            log.warning("source_fetch_missing", source=source)
            return source, [], "no fetcher configured"
        started = time.monotonic()
        try:
            rows = await fetch()
        except Exception as e:
            log.warning("source_fetch_failed", source=source, err=str(e))
            return source, [], str(e)
        if rows is None:
            rows = []
        elif isinstance(rows, tuple):
            rows = list(rows)
        elif not isinstance(rows, list):
            err = f"expected a list of rows, got {type(rows).__name__}"
            log.warning("source_fetch_failed", source=source, err=err)
            return source, [], err
        log.debug(
            "source_fetch_done",
            source=source,
            rows=len(rows),
            elapsed_sec=round(time.monotonic() - started, 2),
        )
        return source, rows, None

    async def capture(self, now: datetime) -> tuple[dict, dict]:
        started = time.monotonic()
        try:
            results = await asyncio.gather(*(self._fetch_one(source) for source in SOURCE_NAMES))
        except Exception as e:
            raise AggregationFailure(f"source fan-out failed: {e}") from e

        raw_data = {}
        failed = []
        for source, rows, err in results:
            raw_data[source] = rows
            if err is not None:
                failed.append(source)
        processed = build_processed_data(raw_data, now, failed)
        log.info(
            "snapshot_captured",
            periode=processed["snapshotInfo"]["periode"],
            snapshot_date=processed["snapshotInfo"]["date"],
            failed_sources=processed["failedSources"],
            elapsed_sec=round(time.monotonic() - started, 2),
            **processed["summaryStats"],
        )
        return raw_data, processed
