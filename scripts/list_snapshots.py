#!/usr/bin/env python3
"""
Print stored snapshots.

Usage:
    python scripts/list_snapshots.py           # period summaries
    python scripts/list_snapshots.py 202601    # history for one period
"""
from pathlib import Path
import argparse
import os
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
os.chdir(ROOT)

from dashsnap.config import settings
from dashsnap.db import ConnectionPool
from dashsnap.pipeline.retrieval import SnapshotRetrieval
from dashsnap.pipeline.store import SnapshotStore


def main():
    p = argparse.ArgumentParser(description="List stored dashboard snapshots.")
    p.add_argument("periode", nargs="?", help="YYYYMM period to show history for")
    args = p.parse_args()

    pool = ConnectionPool(settings.db_path, 1)
    try:
        store = SnapshotStore(pool)
        store.migrate()
        retrieval = SnapshotRetrieval(store)
        if args.periode:
            for snap in retrieval.history(args.periode):
                stats = (snap.processed_data or {}).get("summaryStats", {})
                kind = "manual" if snap.is_manual else "auto"
                flag = " month-end" if snap.is_month_end else ""
                print(f"  #{snap.id} {snap.snapshot_date} {kind}{flag} by {snap.created_by} rev={snap.revision} {stats}")
            return
        available = retrieval.available()
        for row in available["periods"]:
            print(
                f"  {row['periode']}: {row['snapshot_count']} snapshots "
                f"({row['auto_count']} auto, {row['manual_count']} manual) "
                f"{row['first_date']}..{row['last_date']}"
            )
        print(f"\nAuto-save dates: {len(available['autoSaves'])} | manual saves: {len(available['manualSaves'])}")
    finally:
        pool.close()


if __name__ == "__main__":
    main()
