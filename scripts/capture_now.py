#!/usr/bin/env python3
"""
Capture every source once and save it, outside the scheduler.

Usage:
    python scripts/capture_now.py                          # automatic save (upserts today's row)
    python scripts/capture_now.py --manual --notes "audit" # manual save (new row)
"""
from pathlib import Path
import argparse
import asyncio
import os
import sys
from datetime import datetime
from zoneinfo import ZoneInfo

# Ensure repo root is on sys.path and is the working directory.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
os.chdir(ROOT)

from dashsnap.config import settings
from dashsnap.db import ConnectionPool
from dashsnap.logging import setup_logging
from dashsnap.pipeline.aggregator import SnapshotAggregator
from dashsnap.pipeline.capture import capture_and_save
from dashsnap.pipeline.store import SnapshotStore
from dashsnap.providers.source_gateway import SourceGateway


async def _run(manual: bool, notes: str | None, created_by: str):
    pool = ConnectionPool(settings.db_path, settings.db_pool_size, settings.db_busy_timeout_seconds)
    gateway = SourceGateway(settings.source_base_url, settings.source_timeout_seconds)
    try:
        store = SnapshotStore(pool)
        store.migrate()
        aggregator = SnapshotAggregator(gateway.fetchers())
        now = datetime.now(ZoneInfo(settings.local_tz))
        return await capture_and_save(aggregator, store, now, created_by=created_by, is_manual=manual, notes=notes)
    finally:
        await gateway.aclose()
        pool.close()


def main():
    p = argparse.ArgumentParser(description="Capture and save a dashboard snapshot now.")
    p.add_argument("--manual", action="store_true", help="Save as a manual snapshot (always a new row)")
    p.add_argument("--notes", default=None, help="Free-text annotation")
    p.add_argument("--created-by", default=None, help="Provenance tag (default MANUAL or SYSTEM_CLI)")
    args = p.parse_args()
    setup_logging()
    created_by = args.created_by or ("MANUAL" if args.manual else "SYSTEM_CLI")
    result, periode, day = asyncio.run(_run(args.manual, args.notes, created_by))
    print(f"Snapshot {result.result}: id={result.id} periode={periode} date={day}")


if __name__ == "__main__":
    main()
