from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, asdict
from datetime import date

import structlog

from ..db import ConnectionPool, migrate
from ..errors import StoreFailure
from ..utils import now_utc_iso, sha256_json

log = structlog.get_logger()

_META_COLS = "id, periode, snapshot_date, created_by, is_month_end, is_manual, notes, revision, created_at, updated_at"
_FULL_COLS = f"{_META_COLS}, raw_data, processed_data"


@dataclass
class Snapshot:
    id: int
    periode: str
    snapshot_date: str
    created_by: str
    is_month_end: bool
    is_manual: bool
    notes: str | None
    revision: int
    created_at: str
    updated_at: str
    raw_data: dict | None = None
    processed_data: dict | None = None

    def to_dict(self, include_raw: bool = True) -> dict:
        out = asdict(self)
        if not include_raw:
            out.pop("raw_data", None)
        return out


@dataclass
class SaveResult:
    id: int
    result: str  # 'created'|'updated'

    def to_dict(self) -> dict:
        return asdict(self)


def _row_to_snapshot(row: sqlite3.Row, with_payload: bool) -> Snapshot:
    snap = Snapshot(
        id=row["id"],
        periode=row["periode"],
        snapshot_date=row["snapshot_date"],
        created_by=row["created_by"],
        is_month_end=bool(row["is_month_end"]),
        is_manual=bool(row["is_manual"]),
        notes=row["notes"],
        revision=row["revision"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
    keys = row.keys()
    if with_payload and "raw_data" in keys:
        snap.raw_data = json.loads(row["raw_data"])
    if "processed_data" in keys:
        snap.processed_data = json.loads(row["processed_data"])
    return snap


def _date_str(value: date | str) -> str:
    return value.isoformat() if isinstance(value, date) else str(value)


class SnapshotStore:
    """
    Versioned dashboard snapshots in SQLite.

    Automatic saves upsert by snapshot_date through the partial unique index
    ux_snapshots_auto_date; manual saves always append. No retries happen here:
    every sqlite3.Error surfaces as StoreFailure.
    """
    def __init__(self, pool: ConnectionPool):
        self.pool = pool

    def _run(self, op: str, fn):
        try:
            with self.pool.connection() as conn:
                conn.row_factory = sqlite3.Row
                return fn(conn)
        except sqlite3.Error as e:
            log.error("store_failed", op=op, err=str(e))
            raise StoreFailure(f"{op} failed: {e}") from e

    def migrate(self):
        self._run("migrate", migrate)

    def ping(self) -> bool:
        return self._run("ping", lambda conn: conn.execute("SELECT 1").fetchone()[0] == 1)

    def save(
        self,
        periode: str,
        snapshot_date: date | str,
        raw_data: dict,
        processed_data: dict,
        created_by: str,
        is_month_end: bool = False,
        is_manual: bool = False,
        notes: str | None = None,
    ) -> SaveResult:
        day = _date_str(snapshot_date)
        now = now_utc_iso()
        params = (
            periode,
            day,
            json.dumps(raw_data, default=str),
            json.dumps(processed_data, default=str),
            sha256_json(raw_data),
            created_by,
            1 if is_month_end else 0,
            notes,
            now,
            now,
        )

        def _save(conn: sqlite3.Connection):
            if is_manual:
                rows = conn.execute(
                    """
                    INSERT INTO dashboard_snapshots(
                      periode, snapshot_date, raw_data, processed_data, payload_sha256,
                      created_by, is_month_end, is_manual, notes, revision, created_at, updated_at
                    )
                    VALUES(?,?,?,?,?,?,?,1,?,1,?,?)
                    RETURNING id, revision
                    """,
                    params,
                ).fetchall()
            else:
                # Single statement: concurrent automatic saves for one date cannot both insert.
                rows = conn.execute(
                    """
                    INSERT INTO dashboard_snapshots(
                      periode, snapshot_date, raw_data, processed_data, payload_sha256,
                      created_by, is_month_end, is_manual, notes, revision, created_at, updated_at
                    )
                    VALUES(?,?,?,?,?,?,?,0,?,1,?,?)
                    ON CONFLICT(snapshot_date) WHERE is_manual = 0 DO UPDATE SET
                      raw_data=excluded.raw_data,
                      processed_data=excluded.processed_data,
                      payload_sha256=excluded.payload_sha256,
                      created_by=excluded.created_by,
                      is_month_end=excluded.is_month_end,
                      notes=excluded.notes,
                      revision=dashboard_snapshots.revision + 1,
                      updated_at=excluded.updated_at
                    RETURNING id, revision
                    """,
                    params,
                ).fetchall()
            snapshot_id, revision = rows[0][0], rows[0][1]
            return SaveResult(id=snapshot_id, result="created" if revision == 1 else "updated")

        result = self._run("save", _save)
        log.info(
            "snapshot_saved",
            snapshot_id=result.id,
            result=result.result,
            periode=periode,
            snapshot_date=day,
            is_manual=is_manual,
            created_by=created_by,
        )
        return result

    def get_by_id(self, snapshot_id: int) -> Snapshot | None:
        def _get(conn):
            row = conn.execute(
                f"SELECT {_FULL_COLS} FROM dashboard_snapshots WHERE id=?",
                (int(snapshot_id),),
            ).fetchone()
            return _row_to_snapshot(row, True) if row else None
        return self._run("get_by_id", _get)

    def get_by_date(self, snapshot_date: date | str) -> Snapshot | None:
        def _get(conn):
            row = conn.execute(
                f"""
                SELECT {_FULL_COLS} FROM dashboard_snapshots
                WHERE snapshot_date=?
                ORDER BY is_manual ASC, id DESC
                LIMIT 1
                """,
                (_date_str(snapshot_date),),
            ).fetchone()
            return _row_to_snapshot(row, True) if row else None
        return self._run("get_by_date", _get)

    def get_by_periode(self, periode: str) -> Snapshot | None:
        def _get(conn):
            row = conn.execute(
                f"""
                SELECT {_FULL_COLS} FROM dashboard_snapshots
                WHERE periode=?
                ORDER BY snapshot_date DESC, id DESC
                LIMIT 1
                """,
                (periode,),
            ).fetchone()
            return _row_to_snapshot(row, True) if row else None
        return self._run("get_by_periode", _get)

    def has_automatic(self, snapshot_date: date | str, created_by: str | None = None) -> bool:
        def _has(conn):
            if created_by is None:
                row = conn.execute(
                    "SELECT 1 FROM dashboard_snapshots WHERE snapshot_date=? AND is_manual=0",
                    (_date_str(snapshot_date),),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT 1 FROM dashboard_snapshots WHERE snapshot_date=? AND is_manual=0 AND created_by=?",
                    (_date_str(snapshot_date), created_by),
                ).fetchone()
            return row is not None
        return self._run("has_automatic", _has)

    def list_available(self) -> dict:
        def _list(conn):
            period_rows = conn.execute(
                """
                SELECT periode,
                       COUNT(*) AS snapshot_count,
                       SUM(CASE WHEN is_manual=0 THEN 1 ELSE 0 END) AS auto_count,
                       SUM(CASE WHEN is_manual=1 THEN 1 ELSE 0 END) AS manual_count,
                       MIN(snapshot_date) AS first_date,
                       MAX(snapshot_date) AS last_date,
                       MAX(is_month_end) AS has_month_end,
                       MAX(created_at) AS last_created_at
                FROM dashboard_snapshots
                GROUP BY periode
                ORDER BY periode DESC
                """
            ).fetchall()
            auto_rows = conn.execute(
                """
                SELECT id, periode, snapshot_date, created_by, is_month_end, created_at, updated_at
                FROM dashboard_snapshots
                WHERE is_manual=0
                ORDER BY snapshot_date DESC
                """
            ).fetchall()
            manual_rows = conn.execute(
                """
                SELECT id, periode, snapshot_date, created_by, is_month_end, notes, created_at
                FROM dashboard_snapshots
                WHERE is_manual=1
                ORDER BY created_at DESC, id DESC
                """
            ).fetchall()
            return {
                "periods": [
                    {
                        "periode": r["periode"],
                        "snapshot_count": r["snapshot_count"],
                        "auto_count": r["auto_count"],
                        "manual_count": r["manual_count"],
                        "first_date": r["first_date"],
                        "last_date": r["last_date"],
                        "has_month_end": bool(r["has_month_end"]),
                        "last_created_at": r["last_created_at"],
                    }
                    for r in period_rows
                ],
                "autoSaves": [
                    {
                        "id": r["id"],
                        "periode": r["periode"],
                        "snapshot_date": r["snapshot_date"],
                        "created_by": r["created_by"],
                        "is_month_end": bool(r["is_month_end"]),
                        "created_at": r["created_at"],
                        "updated_at": r["updated_at"],
                    }
                    for r in auto_rows
                ],
                "manualSaves": [
                    {
                        "id": r["id"],
                        "periode": r["periode"],
                        "snapshot_date": r["snapshot_date"],
                        "created_by": r["created_by"],
                        "is_month_end": bool(r["is_month_end"]),
                        "notes": r["notes"],
                        "created_at": r["created_at"],
                    }
                    for r in manual_rows
                ],
            }
        return self._run("list_available", _list)

    def list_by_periode(self, periode: str) -> list[Snapshot]:
        def _list(conn):
            rows = conn.execute(
                f"""
                SELECT {_META_COLS}, processed_data FROM dashboard_snapshots
                WHERE periode=?
                ORDER BY snapshot_date DESC, id DESC
                """,
                (periode,),
            ).fetchall()
            return [_row_to_snapshot(r, False) for r in rows]
        return self._run("list_by_periode", _list)

    def delete(self, snapshot_id: int | None = None, snapshot_date: date | str | None = None) -> int:
        if snapshot_id is None and snapshot_date is None:
            raise ValueError("snapshot_id or snapshot_date required")

        def _delete(conn):
            if snapshot_id is not None:
                cur = conn.execute("DELETE FROM dashboard_snapshots WHERE id=?", (int(snapshot_id),))
            else:
                # manual rows on the same date are only removable by id
                cur = conn.execute(
                    "DELETE FROM dashboard_snapshots WHERE snapshot_date=? AND is_manual=0",
                    (_date_str(snapshot_date),),
                )
            return cur.rowcount

        deleted = self._run("delete", _delete)
        log.info(
            "snapshot_deleted",
            snapshot_id=snapshot_id,
            snapshot_date=_date_str(snapshot_date) if snapshot_date is not None else None,
            deleted=deleted,
        )
        return deleted
