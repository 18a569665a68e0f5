"""Reconcile canonical records against the local entity tables."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from feedsync.models import DetailField, Opportunity, Project, ServiceTicket, SyncChange, SyncFieldChange
from feedsync.models.enums import ChangeType, EntityType
from feedsync.services.entity_mapper import CanonicalRecord

logger = logging.getLogger(__name__)

DECIMAL_TOLERANCE = 0.005

# Compared in this order; field changes are reported in the same order
SYNCABLE_FIELDS = {
    EntityType.PROJECT: (
        "client_name", "project_name", "project_manager", "budget", "spent",
        "hours_estimate", "hours_actual", "hours_remaining", "status", "is_active", "notes",
    ),
    EntityType.OPPORTUNITY: (
        "opportunity_name", "company_name", "sales_rep", "stage",
        "expected_revenue", "close_date", "probability", "notes",
    ),
    EntityType.SERVICE_TICKET: (
        "summary", "status", "priority", "assigned_to", "company_name", "board_name", "due_date",
        "hours_estimate", "hours_actual", "hours_remaining", "budget", "notes",
    ),
}

DECIMAL_FIELDS = {
    EntityType.PROJECT: {"budget", "spent", "hours_estimate", "hours_actual", "hours_remaining"},
    EntityType.OPPORTUNITY: {"expected_revenue"},
    EntityType.SERVICE_TICKET: {"hours_estimate", "hours_actual", "hours_remaining", "budget"},
}

EXACT_FIELDS = {
    EntityType.PROJECT: {"is_active"},
    EntityType.OPPORTUNITY: {"probability"},
    EntityType.SERVICE_TICKET: set(),
}

ENTITY_MODELS = {
    EntityType.PROJECT: Project,
    EntityType.OPPORTUNITY: Opportunity,
    EntityType.SERVICE_TICKET: ServiceTicket,
}

UNCHANGED = "UNCHANGED"


@dataclass
class FieldDiff:
    field_name: str
    old_value: Optional[str]
    new_value: Optional[str]


@dataclass
class ReconcileResult:
    """Outcome of reconciling one record."""

    outcome: str
    entity_id: int
    field_changes: List[FieldDiff] = field(default_factory=list)

    @property
    def created(self) -> bool:
        return self.outcome == ChangeType.CREATED.value

    @property
    def updated(self) -> bool:
        return self.outcome == ChangeType.UPDATED.value


def format_value(value: Any) -> Optional[str]:
    """Render a field value as the text stored in change history."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _is_populated(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip() != ""
    return True


def values_equal(old: Any, new: Any, kind: str = "string") -> bool:
    """Compare two field values using normalized equality.

    Args:
        old: Stored value.
        new: Incoming value.
        kind: ``"decimal"`` (equal within DECIMAL_TOLERANCE, None counts as 0),
            ``"exact"`` (ints and bools) or ``"string"`` (trimmed, None equals "").
    """
    if kind == "decimal":
        try:
            old_num = float(old) if old not in (None, "") else 0.0
            new_num = float(new) if new not in (None, "") else 0.0
        except (TypeError, ValueError):
            return format_value(old) == format_value(new)
        return abs(old_num - new_num) <= DECIMAL_TOLERANCE

    if kind == "exact":
        if old is None or new is None:
            return old is None and new is None
        if isinstance(old, bool) or isinstance(new, bool):
            return bool(old) == bool(new)
        try:
            return int(old) == int(new)
        except (TypeError, ValueError):
            return old == new

    old_str = "" if old is None else str(old).strip()
    new_str = "" if new is None else str(new).strip()
    return old_str == new_str


def field_kind(entity_type: EntityType, field_name: str) -> str:
    if field_name in DECIMAL_FIELDS[entity_type]:
        return "decimal"
    if field_name in EXACT_FIELDS[entity_type]:
        return "exact"
    return "string"


class EntityReconciler:
    """Upserts canonical records and records field-level changes.

    The reconciler never commits. The caller commits the entity write,
    the change rows and its own run counters together.
    """

    def __init__(self, db: Session):
        self.db = db

    def find_entity(self, entity_type: EntityType, external_id: str):
        model = ENTITY_MODELS[entity_type]
        return self.db.query(model).filter(model.external_id == external_id).first()

    def reconcile(self, record: CanonicalRecord, sync_run_id: int) -> ReconcileResult:
        """Diff one record against its stored entity and upsert it.

        Args:
            record: Mapped record from the feed.
            sync_run_id: Run the change rows belong to.

        Returns:
            ReconcileResult with the outcome and the field changes written.
        """
        entity_type = record.entity_type
        fields = SYNCABLE_FIELDS[entity_type]
        raw_json = json.dumps(record.raw_data)

        entity = self.find_entity(entity_type, record.external_id)

        if entity is None:
            model = ENTITY_MODELS[entity_type]
            entity = model(external_id=record.external_id, raw_data=raw_json)
            self._apply(entity, record)
            self.db.add(entity)
            self.db.flush()

            diffs = [
                FieldDiff(name, None, format_value(record.fields.get(name)))
                for name in fields
                if _is_populated(record.fields.get(name))
            ]
            self._record_change(sync_run_id, entity_type, entity.id, record.external_id, ChangeType.CREATED, diffs)
            logger.debug(f"Created {entity_type.value} {record.external_id}")
            return ReconcileResult(ChangeType.CREATED.value, entity.id, diffs)

        diffs = []
        for name in fields:
            old = getattr(entity, name)
            new = record.fields.get(name)
            if not values_equal(old, new, field_kind(entity_type, name)):
                diffs.append(FieldDiff(name, format_value(old), format_value(new)))

        entity.raw_data = raw_json

        if not diffs:
            self.db.flush()
            return ReconcileResult(UNCHANGED, entity.id)

        self._apply(entity, record)
        self.db.flush()
        self._record_change(sync_run_id, entity_type, entity.id, record.external_id, ChangeType.UPDATED, diffs)
        logger.debug(f"Updated {entity_type.value} {record.external_id}: {[d.field_name for d in diffs]}")
        return ReconcileResult(ChangeType.UPDATED.value, entity.id, diffs)

    def merge_detail(self, project: Project, detail_fields: Dict[str, Any], sync_run_id: Optional[int] = None) -> List[str]:
        """Merge a project's detail payload into ``detail_data``.

        Keys that name summary fields are left alone. Detail data is
        informational and never produces change history.

        Returns:
            Field names seen for the first time, now added to the discovery set.
        """
        summary_keys = set(SYNCABLE_FIELDS[EntityType.PROJECT])
        if project.raw_data:
            try:
                summary_keys.update(json.loads(project.raw_data).keys())
            except ValueError:
                logger.warning(f"Project {project.external_id} has unreadable raw_data")

        existing: Dict[str, Any] = {}
        if project.detail_data:
            try:
                existing = json.loads(project.detail_data)
            except ValueError:
                logger.warning(f"Project {project.external_id} has unreadable detail_data, replacing it")

        merged_keys = []
        for key, value in detail_fields.items():
            if key in summary_keys:
                continue
            existing[key] = value
            merged_keys.append(key)

        project.detail_data = json.dumps(existing)

        known = {
            name for (name,) in self.db.query(DetailField.field_name).filter(DetailField.field_name.in_(merged_keys))
        } if merged_keys else set()
        new_fields = [key for key in merged_keys if key not in known]
        for key in new_fields:
            self.db.add(DetailField(field_name=key, first_seen_run_id=sync_run_id))

        self.db.flush()
        if new_fields:
            logger.info(f"Discovered {len(new_fields)} new detail fields from project {project.external_id}")
        return new_fields

    def _apply(self, entity, record: CanonicalRecord) -> None:
        for name, value in record.fields.items():
            if hasattr(entity, name):
                setattr(entity, name, value)

    def _record_change(
        self,
        sync_run_id: int,
        entity_type: EntityType,
        entity_id: int,
        external_id: str,
        change_type: ChangeType,
        diffs: List[FieldDiff],
    ) -> SyncChange:
        change = SyncChange(
            sync_run_id=sync_run_id,
            entity_type=entity_type.value,
            entity_id=entity_id,
            external_id=external_id,
            change_type=change_type.value,
        )
        change.field_changes = [
            SyncFieldChange(position=position, field_name=d.field_name, old_value=d.old_value, new_value=d.new_value)
            for position, d in enumerate(diffs)
        ]
        self.db.add(change)
        return change
