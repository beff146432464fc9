from typing import Optional
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
import structlog
from .schemas import CreateSnapshotRequest, CreateSnapshotResponse, DeleteSnapshotResponse
from ..errors import SnapshotError, StoreFailure
from ..pipeline.capture import capture_and_save
from ..utils import is_last_day_of_month, periode_for

log = structlog.get_logger()

router = APIRouter(prefix="/api/snapshots", tags=["Snapshots"])
health_router = APIRouter()

def _failure(error: str, exc: Exception, status_code: int = 500):
    log.error("snapshot_request_failed", error=error, err=str(exc))
    return JSONResponse(status_code=status_code, content={"success": False, "error": error, "message": str(exc)})

def _bad_request(exc: Exception):
    return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})

@health_router.get(
    '/health',
    summary="Health check",
    description="Returns DB connectivity and scheduler state.",
    tags=["Health"],
)
def health(request: Request):
    try:
        request.app.state.store.ping()
    except StoreFailure as e:
        raise HTTPException(503, f'db_error: {e}')
    engine = request.app.state.engine
    return {'ok': True, 'db': 'ok', 'scheduler_running': engine.running}

@router.post(
    '',
    response_model=CreateSnapshotResponse,
    summary="Save a dashboard snapshot",
    description=(
        "Captures every source now and saves it. "
        "Manual saves always create a new row; automatic saves overwrite the date's row."
    ),
)
async def create_snapshot(request: Request, req: Optional[CreateSnapshotRequest] = None):
    req = req or CreateSnapshotRequest()
    state = request.app.state
    now = state.clock()
    created_by = req.created_by or "MANUAL"
    if req.is_month_end and not is_last_day_of_month(now.date()):
        log.warning("month_end_flag_ignored", snapshot_date=now.date().isoformat())
    try:
        result, periode, day = await capture_and_save(
            state.aggregator,
            state.store,
            now,
            created_by=created_by,
            is_manual=req.is_manual,
            notes=req.notes,
        )
    except SnapshotError as e:
        return _failure('Failed to save snapshot', e)
    return {
        "success": True,
        "message": 'Snapshot updated successfully' if result.result == 'updated' else 'Snapshot created successfully',
        "result": result.to_dict(),
        "periode": periode,
        "date": day,
        "isManual": req.is_manual,
    }

@router.get(
    '/available',
    summary="List available snapshots",
    description="Period summaries, every automatic-save date, and every manual save.",
)
def snapshots_available(request: Request):
    try:
        available = request.app.state.retrieval.available()
    except StoreFailure as e:
        return _failure('Failed to get available snapshots', e)
    return {
        "success": True,
        "currentPeriode": periode_for(request.app.state.clock().date()),
        "periods": available["periods"],
        "autoSaves": available["autoSaves"],
        "manualSaves": available["manualSaves"],
    }

@router.get(
    '/history/{periode}',
    summary="Snapshot history for a period",
    description="Snapshot metadata for one YYYYMM period, newest date first.",
)
def snapshot_history(periode: str, request: Request):
    try:
        snapshots = request.app.state.retrieval.history(periode)
    except ValueError as e:
        return _bad_request(e)
    except StoreFailure as e:
        return _failure('Failed to get snapshot history', e)
    return {
        "success": True,
        "periode": periode,
        "snapshots": [s.to_dict(include_raw=False) for s in snapshots],
    }

@router.get(
    '/scheduler/status',
    summary="Scheduler status",
    tags=["Scheduler"],
)
def scheduler_status(request: Request):
    return {"success": True, **request.app.state.engine.status()}

@router.post(
    '/scheduler/trigger/{name}',
    summary="Trigger a schedule now",
    description="Resets the schedule's daily state and captures immediately, ignoring its time window.",
    tags=["Scheduler"],
)
async def scheduler_trigger(name: str, request: Request):
    engine = request.app.state.engine
    try:
        result = await engine.trigger_now(name)
    except KeyError:
        raise HTTPException(404, f'unknown schedule: {name}')
    state = engine.state(name)
    if result is None:
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Snapshot capture failed", "message": state.last_error, "schedule": name},
        )
    return {"success": True, "schedule": name, "result": result.to_dict()}

def _get_snapshot(request: Request, periode: str | None, date: str | None, id: str | None):
    try:
        snapshot = request.app.state.retrieval.get(periode=periode, snapshot_date=date, snapshot_id=id)
    except ValueError as e:
        return _bad_request(e)
    except StoreFailure as e:
        return _failure('Failed to get snapshot', e)
    if snapshot is None:
        return JSONResponse(
            status_code=404,
            content={"success": False, "error": "Snapshot not found", "periode": periode, "date": date, "id": id},
        )
    return {"success": True, "snapshot": snapshot.to_dict()}

@router.get(
    '',
    summary="Get snapshot by date or id",
    description="id takes priority over date.",
)
def snapshot_lookup(request: Request, date: str | None = None, id: str | None = None):
    return _get_snapshot(request, None, date, id)

@router.get(
    '/{periode}',
    summary="Get snapshot by period",
    description="Latest snapshot in the period unless date or id narrows it (id > date > periode).",
)
def snapshot_by_periode(periode: str, request: Request, date: str | None = None, id: str | None = None):
    return _get_snapshot(request, periode, date, id)

def _delete_snapshot(request: Request, snapshot_id: str | None, date: str | None):
    try:
        deleted = request.app.state.retrieval.remove(snapshot_id=snapshot_id, snapshot_date=date)
    except ValueError as e:
        return _bad_request(e)
    except StoreFailure as e:
        return _failure('Failed to delete snapshot', e)
    if deleted == 0:
        return JSONResponse(status_code=404, content={"success": False, "error": "Snapshot not found", "deletedRows": 0})
    return {"success": True, "message": "Snapshot deleted successfully", "deletedRows": deleted}

@router.delete(
    '',
    response_model=DeleteSnapshotResponse,
    summary="Delete the automatic snapshot for a date",
)
def delete_by_date(request: Request, date: str | None = None):
    return _delete_snapshot(request, None, date)

@router.delete(
    '/{snapshot_id}',
    response_model=DeleteSnapshotResponse,
    summary="Delete a snapshot by id",
)
def delete_by_id(snapshot_id: str, request: Request, date: str | None = None):
    return _delete_snapshot(request, snapshot_id, date)
