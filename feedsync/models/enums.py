"""Enumerations shared by models, services and API schemas."""

from enum import Enum


class FeedType(str, Enum):
    """Kind of report a feed publishes."""

    PROJECTS = "PROJECTS"
    OPPORTUNITIES = "OPPORTUNITIES"
    SERVICE_TICKETS = "SERVICE_TICKETS"
    PROJECT_DETAIL = "PROJECT_DETAIL"


class SyncType(str, Enum):
    """Entity collection a sync run refreshes."""

    PROJECTS = "PROJECTS"
    OPPORTUNITIES = "OPPORTUNITIES"
    SERVICE_TICKETS = "SERVICE_TICKETS"


class SyncStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TriggeredBy(str, Enum):
    MANUAL = "MANUAL"
    SCHEDULED = "SCHEDULED"
    VERSION_BUMP = "VERSION_BUMP"


class EntityType(str, Enum):
    PROJECT = "PROJECT"
    OPPORTUNITY = "OPPORTUNITY"
    SERVICE_TICKET = "SERVICE_TICKET"


class ChangeType(str, Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"


ACTIVE_SYNC_STATUSES = (SyncStatus.PENDING.value, SyncStatus.RUNNING.value)
TERMINAL_SYNC_STATUSES = (SyncStatus.COMPLETED.value, SyncStatus.FAILED.value)

# "ALL" is accepted at the request boundary and fans out into every sync type
ALL_SYNC_TYPES = "ALL"

ENTITY_TYPE_FOR_SYNC = {
    SyncType.PROJECTS: EntityType.PROJECT,
    SyncType.OPPORTUNITIES: EntityType.OPPORTUNITY,
    SyncType.SERVICE_TICKETS: EntityType.SERVICE_TICKET,
}
