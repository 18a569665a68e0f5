"""Service for reading and clearing sync change history."""

import logging
from typing import Any, Dict, List

from sqlalchemy.orm import Session, selectinload

from feedsync.exceptions import InvalidStateError, NotFoundError
from feedsync.models import SyncChange, SyncFieldChange, SyncRun
from feedsync.models.enums import ACTIVE_SYNC_STATUSES
from feedsync.services.validation import validate_id

logger = logging.getLogger(__name__)


class HistoryService:
    """Read and clear the audit trail written by sync runs."""

    def get_changes(self, db: Session, sync_run_id: int) -> List[Dict[str, Any]]:
        """Get a run's changes grouped by entity.

        Args:
            db: Database session.
            sync_run_id: Sync run ID.

        Returns:
            One entry per changed entity, ordered by entity type then entity
            id, each with its field changes in recorded order.

        Raises:
            ValidationError: If the id is invalid.
            NotFoundError: If the run does not exist.
        """
        validate_id(sync_run_id, "sync id")
        if db.get(SyncRun, sync_run_id) is None:
            raise NotFoundError(f"Sync {sync_run_id} not found")

        changes = (
            db.query(SyncChange)
            .options(selectinload(SyncChange.field_changes))
            .filter(SyncChange.sync_run_id == sync_run_id)
            .order_by(SyncChange.entity_type, SyncChange.entity_id, SyncChange.id)
            .all()
        )

        grouped: Dict[tuple, Dict[str, Any]] = {}
        for change in changes:
            key = (change.entity_type, change.entity_id)
            if key not in grouped:
                grouped[key] = {
                    "entity_type": change.entity_type,
                    "entity_id": change.entity_id,
                    "external_id": change.external_id,
                    "change_type": change.change_type,
                    "field_changes": [],
                }
            grouped[key]["field_changes"].extend(
                {
                    "field_name": fc.field_name,
                    "old_value": fc.old_value,
                    "new_value": fc.new_value,
                }
                for fc in change.field_changes
            )

        return list(grouped.values())

    def clear_history(self, db: Session) -> Dict[str, int]:
        """Delete every sync run and its changes in one transaction.

        Returns:
            Dict with ``deleted_runs`` and ``deleted_changes``.

        Raises:
            InvalidStateError: If any run is pending or running.
        """
        active = db.query(SyncRun).filter(SyncRun.status.in_(ACTIVE_SYNC_STATUSES)).count()
        if active:
            raise InvalidStateError(f"Cannot clear history while {active} sync(s) are pending or running")

        try:
            db.query(SyncFieldChange).delete(synchronize_session=False)
            deleted_changes = db.query(SyncChange).delete(synchronize_session=False)
            deleted_runs = db.query(SyncRun).delete(synchronize_session=False)
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.expire_all()
        logger.info(f"Cleared sync history: {deleted_runs} runs, {deleted_changes} changes")
        return {"deleted_runs": deleted_runs, "deleted_changes": deleted_changes}
