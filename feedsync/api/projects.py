"""Project detail discovery API endpoints."""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from feedsync.database.database import get_db
from feedsync.services.diagnostics_service import DiagnosticsService

router = APIRouter(prefix="/api/projects", tags=["projects"])


def get_diagnostics_service() -> DiagnosticsService:
    return DiagnosticsService()


@router.get("/detail-fields", response_model=List[str])
async def get_available_detail_fields(
    db: Session = Depends(get_db),
    service: DiagnosticsService = Depends(get_diagnostics_service)
):
    """List every detail field name discovered by adaptive sync."""
    return service.get_available_detail_fields(db)


@router.get("/diagnostics")
async def get_project_detail_diagnostics(
    db: Session = Depends(get_db),
    service: DiagnosticsService = Depends(get_diagnostics_service)
) -> Dict[str, Any]:
    """Summarize how many projects carry detail data, with samples."""
    return service.get_project_detail_diagnostics(db)
