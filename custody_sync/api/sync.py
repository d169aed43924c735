from fastapi import APIRouter, Depends, Request, status

from ..core.deps import (
    get_connectivity_watcher,
    get_offline_queue,
    get_status_monitor,
    get_sync_engine,
)
from ..core.errors import OfflineQueueError, SyncEngineError, problem_response, sanitize_error
from ..schemas.sync import (
    ConnectivityResponse,
    ConnectivityUpdate,
    DeadLetterEntry,
    SyncResult,
    SyncStatusResponse,
)
from ..services.connectivity import ConnectivityWatcher
from ..services.offline_queue import OfflineQueue
from ..services.status_monitor import StatusMonitor
from ..services.sync_engine import SyncEngine

router = APIRouter()


@router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status(
    monitor: StatusMonitor = Depends(get_status_monitor),
    engine: SyncEngine = Depends(get_sync_engine),
    watcher: ConnectivityWatcher = Depends(get_connectivity_watcher),
) -> SyncStatusResponse:
    """
    Pending count, stuck count, last activity and last completed sync

    `can_sync_now` is true when online and something is pending.
    """
    current = await monitor.refresh()
    return SyncStatusResponse(
        **current.model_dump(),
        online=watcher.is_online,
        syncing=engine.is_syncing,
        can_sync_now=watcher.is_online and current.pending_count > 0,
    )


@router.post("/run", response_model=SyncResult)
async def run_sync(
    request: Request,
    queue: OfflineQueue = Depends(get_offline_queue),
    engine: SyncEngine = Depends(get_sync_engine),
    watcher: ConnectivityWatcher = Depends(get_connectivity_watcher),
):
    """
    Manual "sync now"

    Refused with 409 while offline, when nothing is pending, or while another
    cycle is running.
    """
    if not watcher.is_online:
        return problem_response(
            request=request,
            status=status.HTTP_409_CONFLICT,
            code="OFFLINE",
            title="Offline",
            detail="Cannot sync while offline",
        )

    try:
        current = await queue.get_status()
    except OfflineQueueError as e:
        return problem_response(
            request=request,
            status=status.HTTP_503_SERVICE_UNAVAILABLE,
            code="QUEUE_UNAVAILABLE",
            title="Offline Queue Unavailable",
            detail=sanitize_error(e),
        )

    if current.pending_count == 0:
        return problem_response(
            request=request,
            status=status.HTTP_409_CONFLICT,
            code="NOTHING_TO_SYNC",
            title="Nothing To Sync",
            detail="There are no pending offline items",
        )

    try:
        result = await engine.sync_offline_data()
    except SyncEngineError as e:
        return problem_response(
            request=request,
            status=status.HTTP_503_SERVICE_UNAVAILABLE,
            code="SYNC_FAILED",
            title="Sync Failed",
            detail=sanitize_error(e),
        )

    if result.skipped:
        return problem_response(
            request=request,
            status=status.HTTP_409_CONFLICT,
            code="SYNC_IN_PROGRESS",
            title="Sync In Progress",
            detail="A sync cycle is already running",
        )
    return result


@router.post("/connectivity", response_model=ConnectivityResponse)
async def update_connectivity(
    update: ConnectivityUpdate,
    watcher: ConnectivityWatcher = Depends(get_connectivity_watcher),
) -> ConnectivityResponse:
    """Host platform reports an online/offline change"""
    result = await watcher.set_online(update.online)
    return ConnectivityResponse(online=watcher.is_online, sync=result)


@router.get("/dead-letters", response_model=list[DeadLetterEntry])
async def list_dead_letters(
    queue: OfflineQueue = Depends(get_offline_queue),
) -> list[DeadLetterEntry]:
    """Records parked after exhausting their sync attempts"""
    return await queue.list_dead_letters()


@router.post("/dead-letters/{record_id}/requeue")
async def requeue_dead_letter(
    record_id: str,
    request: Request,
    queue: OfflineQueue = Depends(get_offline_queue),
):
    kind = await queue.requeue_dead_letter(record_id)
    if kind is None:
        return problem_response(
            request=request,
            status=status.HTTP_404_NOT_FOUND,
            code="DEAD_LETTER_NOT_FOUND",
            title="Dead Letter Not Found",
            detail=f"No dead-lettered record {record_id}",
        )
    return {"id": record_id, "kind": kind.value, "requeued": True}
