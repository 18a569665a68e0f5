"""Main FastAPI application entry point."""

import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from feedsync.api.feeds import router as feeds_router
from feedsync.api.projects import router as projects_router
from feedsync.api.sync import get_sync_service, router as sync_router
from feedsync.config import settings
from feedsync.database.database import get_db, init_db
from feedsync.models import AtomFeed, Opportunity, Project, ServiceTicket, SyncRun
from feedsync.services.sync_service import SyncService

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Feed Sync",
    description="SSRS ATOM feed ingestion and reconciliation service",
    version="0.1.0",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(feeds_router)
app.include_router(sync_router)
app.include_router(projects_router)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    active_syncs: int = 0
    message: Optional[str] = None


class StatsResponse(BaseModel):
    """System statistics response."""

    feeds_count: int
    active_feeds_count: int
    projects_count: int
    opportunities_count: int
    service_tickets_count: int
    sync_runs_count: int
    last_sync_status: Optional[str] = None


@app.on_event("startup")
async def startup_event():
    """Initialize database and fail runs left over from a previous process."""
    init_db()
    get_sync_service().recover_orphaned_runs()


@app.on_event("shutdown")
async def shutdown_event():
    """Cancel running syncs so their rows are finalized."""
    await get_sync_service().shutdown()


@app.get("/")
async def root():
    return {"message": "Feed Sync API", "version": "0.1.0"}


@app.get("/api/health", response_model=HealthResponse)
async def health_check(
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service)
):
    """Health check endpoint.

    Checks database connectivity and reports how many syncs are active.
    """
    try:
        db.execute(text("SELECT 1"))
        active = len(sync_service.get_status(db)["active_syncs"])
        return HealthResponse(status="healthy", database="connected", active_syncs=active)
    except SQLAlchemyError as e:
        logger.error(f"Health check failed: {e}")
        return HealthResponse(status="unhealthy", database="disconnected", message=str(e))


@app.get("/api/stats", response_model=StatsResponse)
async def get_stats(db: Session = Depends(get_db)):
    """Get counts of feeds, synced entities and sync runs."""
    try:
        last_sync = db.query(SyncRun).order_by(SyncRun.created_at.desc(), SyncRun.id.desc()).first()

        return StatsResponse(
            feeds_count=db.query(AtomFeed).count(),
            active_feeds_count=db.query(AtomFeed).filter(AtomFeed.is_active.is_(True)).count(),
            projects_count=db.query(Project).count(),
            opportunities_count=db.query(Opportunity).count(),
            service_tickets_count=db.query(ServiceTicket).count(),
            sync_runs_count=db.query(SyncRun).count(),
            last_sync_status=last_sync.status if last_sync else None,
        )
    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Failed to get stats: {str(e)}")
