from __future__ import annotations

from ..utils import parse_date, validate_periode
from .store import Snapshot, SnapshotStore


def _parse_id(value) -> int:
    try:
        snapshot_id = int(value)
    except (TypeError, ValueError):
        raise ValueError("id must be an integer")
    if snapshot_id < 1:
        raise ValueError("id must be positive")
    return snapshot_id


class SnapshotRetrieval:
    """
    Read side over SnapshotStore.

    Absence comes back as None / an empty list; StoreFailure is left to
    propagate so callers can tell "nothing there" from "store unreachable".
    """
    def __init__(self, store: SnapshotStore):
        self.store = store

    def get(self, periode: str | None = None, snapshot_date: str | None = None, snapshot_id=None) -> Snapshot | None:
        if snapshot_id not in (None, ""):
            return self.store.get_by_id(_parse_id(snapshot_id))
        if snapshot_date:
            return self.store.get_by_date(parse_date(snapshot_date))
        if periode:
            return self.store.get_by_periode(validate_periode(periode))
        raise ValueError("Either periode, date, or id parameter is required")

    def available(self) -> dict:
        return self.store.list_available()

    def history(self, periode: str) -> list[Snapshot]:
        return self.store.list_by_periode(validate_periode(periode))

    def remove(self, snapshot_id=None, snapshot_date: str | None = None) -> int:
        if snapshot_id not in (None, "", "undefined"):
            return self.store.delete(snapshot_id=_parse_id(snapshot_id))
        if snapshot_date:
            return self.store.delete(snapshot_date=parse_date(snapshot_date))
        raise ValueError("Either id or date parameter is required")
