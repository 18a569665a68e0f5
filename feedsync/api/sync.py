"""Sync API endpoints."""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import BaseModel
from sqlalchemy.orm import Session

from feedsync.api.errors import to_http_exception
from feedsync.database.database import get_db
from feedsync.exceptions import FeedSyncError
from feedsync.models.enums import TriggeredBy
from feedsync.services.history_service import HistoryService
from feedsync.services.sync_service import SyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])

_sync_service: Optional[SyncService] = None


class SyncRequest(BaseModel):
    """Sync request."""

    sync_type: str
    triggered_by: str = TriggeredBy.MANUAL.value


class SyncRequestResponse(BaseModel):
    """Sync request response."""

    ids: List[int]
    reused_ids: List[int] = []
    message: str


class SyncRunResponse(BaseModel):
    """Sync run response."""

    id: int
    sync_type: str
    status: str
    triggered_by: str
    is_cancelled: bool
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    records_processed: int
    records_created: int
    records_updated: int
    records_unchanged: int
    records_failed: int
    error_message: Optional[str] = None
    created_at: Optional[str] = None


class FieldChangeResponse(BaseModel):
    field_name: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None


class EntityChangeResponse(BaseModel):
    """Changes recorded for one entity during a run."""

    entity_type: str
    entity_id: int
    external_id: Optional[str] = None
    change_type: str
    field_changes: List[FieldChangeResponse]


class ClearHistoryResponse(BaseModel):
    deleted_runs: int
    deleted_changes: int


def get_sync_service() -> SyncService:
    """Get the process-wide sync service.

    Runs live as tasks on this instance, so it must be shared between requests.
    """
    global _sync_service
    if _sync_service is None:
        _sync_service = SyncService()
    return _sync_service


def get_history_service() -> HistoryService:
    return HistoryService()


@router.post("", response_model=SyncRequestResponse, status_code=202)
async def request_sync(
    request: SyncRequest,
    sync_service: SyncService = Depends(get_sync_service)
):
    """Request a sync for one type or ALL.

    Returns immediately; runs continue in the background. A type that is
    already pending or running returns its existing run id.
    """
    try:
        result = await sync_service.request(request.sync_type, request.triggered_by)
        return SyncRequestResponse(ids=result.ids, reused_ids=result.reused_ids, message=result.message)
    except FeedSyncError as e:
        raise to_http_exception(e)


@router.get("/status")
async def get_sync_status(
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service)
) -> Dict[str, Any]:
    """Get the last completed run per type and all active runs."""
    return sync_service.get_status(db)


@router.get("/history", response_model=List[SyncRunResponse])
async def get_sync_history(
    sync_type: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service)
):
    """Get sync runs newest first, optionally filtered by type and status."""
    try:
        runs = sync_service.get_history(db, sync_type=sync_type, status=status, limit=limit, offset=offset)
        return [SyncRunResponse(**run) for run in runs]
    except FeedSyncError as e:
        raise to_http_exception(e)


@router.delete("/history", response_model=ClearHistoryResponse)
async def clear_sync_history(
    db: Session = Depends(get_db),
    history_service: HistoryService = Depends(get_history_service)
):
    """Delete every run and change. Refused while a sync is active."""
    try:
        return ClearHistoryResponse(**history_service.clear_history(db))
    except FeedSyncError as e:
        raise to_http_exception(e)


@router.websocket("/events")
async def sync_events(
    websocket: WebSocket,
    sync_service: SyncService = Depends(get_sync_service)
):
    """Stream sync lifecycle events as JSON messages."""
    await websocket.accept()
    queue = sync_service.notifier.subscribe()
    try:
        while True:
            event = await queue.get()
            await websocket.send_json(event.to_dict())
    except WebSocketDisconnect:
        logger.info("Sync event subscriber disconnected")
    finally:
        sync_service.notifier.unsubscribe(queue)


@router.get("/{sync_id}", response_model=SyncRunResponse)
async def get_sync_run(
    sync_id: int,
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service)
):
    """Get one sync run."""
    try:
        return SyncRunResponse(**sync_service.get_run(sync_id, db))
    except FeedSyncError as e:
        raise to_http_exception(e)


@router.get("/{sync_id}/changes", response_model=List[EntityChangeResponse])
async def get_sync_changes(
    sync_id: int,
    db: Session = Depends(get_db),
    history_service: HistoryService = Depends(get_history_service)
):
    """Get a run's changes grouped by entity."""
    try:
        return [EntityChangeResponse(**change) for change in history_service.get_changes(db, sync_id)]
    except FeedSyncError as e:
        raise to_http_exception(e)


@router.post("/{sync_id}/cancel")
async def cancel_sync(
    sync_id: int,
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service)
) -> Dict[str, Any]:
    """Cancel a pending or running sync."""
    try:
        return sync_service.cancel(sync_id, db)
    except FeedSyncError as e:
        raise to_http_exception(e)
