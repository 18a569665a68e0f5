"""Feed management API endpoints."""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from feedsync.api.errors import to_http_exception
from feedsync.api.projects import get_diagnostics_service
from feedsync.database.database import get_db
from feedsync.exceptions import FeedSyncError
from feedsync.services.diagnostics_service import DiagnosticsService
from feedsync.services.feed_service import FeedService, feed_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/feeds", tags=["feeds"])


class FeedResponse(BaseModel):
    """Feed response."""

    id: int
    name: str
    feed_type: str
    feed_url: str
    detail_feed_id: Optional[int] = None
    is_active: bool
    last_sync: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    class Config:
        from_attributes = True


class ImportRequest(BaseModel):
    """Import from ATOMSVC content."""

    content: str
    feed_type: Optional[str] = None
    feed_url: Optional[str] = None


class ImportFileRequest(BaseModel):
    """Import from an ATOMSVC file path."""

    file_path: str
    feed_type: Optional[str] = None


class ImportResponse(BaseModel):
    """Import result."""

    imported: List[FeedResponse]
    skipped: List[Dict[str, Any]] = []
    failed: List[Dict[str, Any]] = []


class FeedUpdate(BaseModel):
    """Feed update request."""

    name: Optional[str] = None
    feed_type: Optional[str] = None
    is_active: Optional[bool] = None


class DetailLinkRequest(BaseModel):
    """Detail link request."""

    detail_feed_id: int


class FeedTestResponse(BaseModel):
    """Feed test response."""

    success: bool
    record_count: int = 0
    sample_fields: List[str] = []
    error: Optional[str] = None
    classified_type: Optional[str] = None


class TemplateExportRequest(BaseModel):
    """Template export request."""

    directory: Optional[str] = None


class ProjectDetailTestRequest(BaseModel):
    """Project detail test request."""

    external_id: Optional[str] = None


def get_feed_service() -> FeedService:
    """Get feed service instance."""
    return FeedService()


def _feed_response(feed) -> FeedResponse:
    return FeedResponse(**feed_to_dict(feed))


def _import_response(result: Dict[str, Any]) -> ImportResponse:
    return ImportResponse(
        imported=[_feed_response(feed) for feed in result["imported"]],
        skipped=result["skipped"],
        failed=result["failed"],
    )


@router.get("", response_model=List[FeedResponse])
async def list_feeds(
    db: Session = Depends(get_db),
    service: FeedService = Depends(get_feed_service)
):
    """List all feeds ordered by type and name."""
    return [_feed_response(feed) for feed in service.list_feeds(db)]


@router.post("/import", response_model=ImportResponse, status_code=201)
async def import_feeds(
    request: ImportRequest,
    db: Session = Depends(get_db),
    service: FeedService = Depends(get_feed_service)
):
    """Import feeds from ATOMSVC content.

    Feeds whose URL already exists are updated in place. Nothing is written
    when the document cannot be parsed.
    """
    try:
        result = service.import_feeds(
            db,
            request.content,
            feed_type_override=request.feed_type,
            feed_url=request.feed_url,
        )
        return _import_response(result)
    except FeedSyncError as e:
        raise to_http_exception(e)


@router.post("/import-file", response_model=ImportResponse, status_code=201)
async def import_feed_file(
    request: ImportFileRequest,
    db: Session = Depends(get_db),
    service: FeedService = Depends(get_feed_service)
):
    """Import feeds from an ATOMSVC file readable by the server."""
    try:
        return _import_response(service.import_feed_file(db, request.file_path, request.feed_type))
    except FeedSyncError as e:
        raise to_http_exception(e)
    except (IOError, OSError, UnicodeDecodeError) as e:
        raise HTTPException(status_code=400, detail=f"Failed to read file: {str(e)}")


@router.get("/detail-feeds", response_model=List[FeedResponse])
async def list_detail_feeds(
    db: Session = Depends(get_db),
    service: FeedService = Depends(get_feed_service)
):
    """List PROJECT_DETAIL feeds available for linking."""
    return [_feed_response(feed) for feed in service.list_detail_feeds(db)]


@router.get("/templates")
async def list_templates(service: FeedService = Depends(get_feed_service)):
    """List feed templates in the template directory."""
    return service.list_templates()


@router.post("/templates/export")
async def export_templates(
    request: TemplateExportRequest,
    db: Session = Depends(get_db),
    service: FeedService = Depends(get_feed_service)
):
    """Export every feed configuration as YAML templates."""
    try:
        return service.export_templates(db, request.directory)
    except (IOError, OSError) as e:
        raise HTTPException(status_code=500, detail=f"Failed to export templates: {str(e)}")


@router.post("/templates/{filename}/import", response_model=ImportResponse, status_code=201)
async def import_template(
    filename: str,
    db: Session = Depends(get_db),
    service: FeedService = Depends(get_feed_service)
):
    """Import the feeds described by one template."""
    try:
        return _import_response(service.import_template(db, filename))
    except FeedSyncError as e:
        raise to_http_exception(e)


@router.get("/diagnostics")
async def get_detail_sync_diagnostics(
    db: Session = Depends(get_db),
    service: DiagnosticsService = Depends(get_diagnostics_service)
):
    """Describe how PROJECTS feeds are linked to detail feeds."""
    return service.get_detail_sync_config_diagnostics(db)


@router.post("/project-detail/test")
async def test_project_detail(
    request: ProjectDetailTestRequest,
    db: Session = Depends(get_db),
    service: FeedService = Depends(get_feed_service)
):
    """Fetch one project's detail through the linked detail feed."""
    try:
        return await service.fetch_project_detail(db, request.external_id)
    except FeedSyncError as e:
        raise to_http_exception(e)


@router.get("/{feed_id}", response_model=FeedResponse)
async def get_feed(
    feed_id: int,
    db: Session = Depends(get_db),
    service: FeedService = Depends(get_feed_service)
):
    """Get a feed by ID."""
    try:
        return _feed_response(service.get_feed(db, feed_id))
    except FeedSyncError as e:
        raise to_http_exception(e)


@router.patch("/{feed_id}", response_model=FeedResponse)
async def update_feed(
    feed_id: int,
    update: FeedUpdate,
    db: Session = Depends(get_db),
    service: FeedService = Depends(get_feed_service)
):
    """Rename, retype or (de)activate a feed."""
    try:
        feed = service.update_feed(
            db,
            feed_id,
            name=update.name,
            feed_type=update.feed_type,
            is_active=update.is_active,
        )
        return _feed_response(feed)
    except FeedSyncError as e:
        raise to_http_exception(e)


@router.delete("/{feed_id}", status_code=204)
async def delete_feed(
    feed_id: int,
    db: Session = Depends(get_db),
    service: FeedService = Depends(get_feed_service)
):
    """Delete a feed. Summary feeds linked to it are unlinked."""
    try:
        service.delete_feed(db, feed_id)
        return Response(status_code=204)
    except FeedSyncError as e:
        raise to_http_exception(e)


@router.post("/{feed_id}/test", response_model=FeedTestResponse)
async def test_feed(
    feed_id: int,
    db: Session = Depends(get_db),
    service: FeedService = Depends(get_feed_service)
):
    """Fetch and parse a feed without storing anything."""
    try:
        return FeedTestResponse(**await service.test_feed(db, feed_id))
    except FeedSyncError as e:
        raise to_http_exception(e)


@router.get("/{feed_id}/detail-link", response_model=Optional[FeedResponse])
async def get_detail_feed(
    feed_id: int,
    db: Session = Depends(get_db),
    service: FeedService = Depends(get_feed_service)
):
    """Get the detail feed linked to a summary feed, if any."""
    try:
        detail = service.get_detail_feed(db, feed_id)
        return _feed_response(detail) if detail is not None else None
    except FeedSyncError as e:
        raise to_http_exception(e)


@router.post("/{feed_id}/detail-link", response_model=FeedResponse)
async def link_detail_feed(
    feed_id: int,
    request: DetailLinkRequest,
    db: Session = Depends(get_db),
    service: FeedService = Depends(get_feed_service)
):
    """Link a PROJECT_DETAIL feed to a PROJECTS feed."""
    try:
        return _feed_response(service.link_detail_feed(db, feed_id, request.detail_feed_id))
    except FeedSyncError as e:
        raise to_http_exception(e)


@router.delete("/{feed_id}/detail-link", response_model=FeedResponse)
async def unlink_detail_feed(
    feed_id: int,
    db: Session = Depends(get_db),
    service: FeedService = Depends(get_feed_service)
):
    """Remove a summary feed's detail link."""
    try:
        return _feed_response(service.unlink_detail_feed(db, feed_id))
    except FeedSyncError as e:
        raise to_http_exception(e)
