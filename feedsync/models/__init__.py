"""Database models package."""

from feedsync.models.atom_feed import AtomFeed
from feedsync.models.project import Project
from feedsync.models.opportunity import Opportunity
from feedsync.models.service_ticket import ServiceTicket
from feedsync.models.sync_run import SyncRun
from feedsync.models.sync_change import SyncChange, SyncFieldChange
from feedsync.models.detail_field import DetailField

__all__ = [
    "AtomFeed",
    "Project",
    "Opportunity",
    "ServiceTicket",
    "SyncRun",
    "SyncChange",
    "SyncFieldChange",
    "DetailField",
]
