import logging
from typing import Annotated, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, Request, UploadFile, status
from pydantic import ValidationError

from ..core.deps import get_connectivity_watcher, get_offline_queue, get_sync_engine
from ..core.errors import (
    DraftRejectedError,
    QueueQuotaExceededError,
    OfflineQueueError,
    SyncEngineError,
    problem_response,
    sanitize_error,
)
from ..schemas.drafts import (
    CustodyLogDraft,
    DraftQueuedResponse,
    EvidenceBagDraft,
    PendingRecordSummary,
    PhotoDraft,
    RecordKind,
)
from ..services.connectivity import ConnectivityWatcher
from ..services.offline_queue import (
    OfflineQueue,
    save_offline_custody_log,
    save_offline_evidence_bag,
    save_offline_photo,
)
from ..services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

router = APIRouter()


async def sync_in_background(engine: SyncEngine) -> None:
    """Drain the queue after a draft was saved while online"""
    try:
        await engine.sync_offline_data()
    except SyncEngineError as e:
        logger.error(f"Background sync failed: {e}")


def _queue_error_response(request: Request, error: Exception):
    if isinstance(error, QueueQuotaExceededError):
        return problem_response(
            request=request,
            status=status.HTTP_507_INSUFFICIENT_STORAGE,
            code="QUOTA_EXCEEDED",
            title="Offline Storage Full",
            detail="Offline storage is full. Sync or discard pending items before saving more.",
        )
    if isinstance(error, DraftRejectedError):
        return problem_response(
            request=request,
            status=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="DRAFT_REJECTED",
            title="Draft Rejected",
            detail=str(error),
        )
    return problem_response(
        request=request,
        status=status.HTTP_503_SERVICE_UNAVAILABLE,
        code="QUEUE_UNAVAILABLE",
        title="Offline Queue Unavailable",
        detail=sanitize_error(error),
    )


async def _queued(
    record_id: str,
    kind: RecordKind,
    queue: OfflineQueue,
    engine: SyncEngine,
    watcher: ConnectivityWatcher,
    background_tasks: BackgroundTasks,
) -> DraftQueuedResponse:
    current = await queue.get_status()
    if watcher.is_online:
        background_tasks.add_task(sync_in_background, engine)
    return DraftQueuedResponse(id=record_id, kind=kind, pending_count=current.pending_count)


@router.post("/evidence-bags", response_model=DraftQueuedResponse, status_code=status.HTTP_201_CREATED)
async def queue_evidence_bag(
    draft: EvidenceBagDraft,
    request: Request,
    background_tasks: BackgroundTasks,
    queue: OfflineQueue = Depends(get_offline_queue),
    engine: SyncEngine = Depends(get_sync_engine),
    watcher: ConnectivityWatcher = Depends(get_connectivity_watcher),
):
    """
    Save an evidence bag locally

    The returned id (`offline-bag-...`) can be used as the bag reference of
    custody entries and photos queued before the bag reaches the server.
    """
    try:
        record_id = await save_offline_evidence_bag(queue, draft)
        return await _queued(record_id, RecordKind.EVIDENCE_BAG, queue, engine, watcher, background_tasks)
    except OfflineQueueError as e:
        return _queue_error_response(request, e)


@router.post("/custody-logs", response_model=DraftQueuedResponse, status_code=status.HTTP_201_CREATED)
async def queue_custody_log(
    draft: CustodyLogDraft,
    request: Request,
    background_tasks: BackgroundTasks,
    queue: OfflineQueue = Depends(get_offline_queue),
    engine: SyncEngine = Depends(get_sync_engine),
    watcher: ConnectivityWatcher = Depends(get_connectivity_watcher),
):
    """Save a chain-of-custody entry locally"""
    try:
        record_id = await save_offline_custody_log(queue, draft)
        return await _queued(record_id, RecordKind.CUSTODY_LOG, queue, engine, watcher, background_tasks)
    except OfflineQueueError as e:
        return _queue_error_response(request, e)


@router.post("/photos", response_model=DraftQueuedResponse, status_code=status.HTTP_201_CREATED)
async def queue_photo(
    request: Request,
    background_tasks: BackgroundTasks,
    file: Annotated[UploadFile, File(description="Photo or video")],
    bag_id: Annotated[str, Form()],
    notes: Annotated[Optional[str], Form()] = None,
    queue: OfflineQueue = Depends(get_offline_queue),
    engine: SyncEngine = Depends(get_sync_engine),
    watcher: ConnectivityWatcher = Depends(get_connectivity_watcher),
):
    """
    Save a photo locally

    **Checks:**
    - Media type sniffed from the bytes (declared type is informational)
    - Size cap per photo, and the queue-wide storage quota
    """
    try:
        draft = PhotoDraft(bag_id=bag_id, notes=notes, file_name=file.filename)
    except ValidationError as e:
        return problem_response(
            request=request,
            status=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="DRAFT_REJECTED",
            title="Draft Rejected",
            detail=e.errors(include_url=False, include_context=False),
        )

    content = await file.read()
    try:
        record_id = await save_offline_photo(queue, draft, content, file.content_type)
        return await _queued(record_id, RecordKind.PHOTO, queue, engine, watcher, background_tasks)
    except (OfflineQueueError, DraftRejectedError) as e:
        return _queue_error_response(request, e)


@router.get("/{kind}", response_model=list[PendingRecordSummary])
async def list_drafts(
    kind: RecordKind,
    queue: OfflineQueue = Depends(get_offline_queue),
) -> list[PendingRecordSummary]:
    """Unsynced records of one kind, oldest first"""
    records = await queue.list_unsynced(kind)
    return [PendingRecordSummary(**record.model_dump(exclude={"content", "synced"})) for record in records]


@router.delete("/{kind}/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_draft(
    kind: RecordKind,
    record_id: str,
    request: Request,
    queue: OfflineQueue = Depends(get_offline_queue),
):
    """Discard a queued record before it is synced"""
    if not await queue.remove(kind, record_id):
        return problem_response(
            request=request,
            status=status.HTTP_404_NOT_FOUND,
            code="DRAFT_NOT_FOUND",
            title="Draft Not Found",
            detail=f"No queued {kind.value} {record_id}",
        )
    return None
