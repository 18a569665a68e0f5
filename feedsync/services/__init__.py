"""Services package."""

from feedsync.services.atom_client import AtomFeedClient
from feedsync.services.diagnostics_service import DiagnosticsService
from feedsync.services.feed_service import FeedService
from feedsync.services.history_service import HistoryService
from feedsync.services.notifications import SyncNotifier
from feedsync.services.reconciler import EntityReconciler
from feedsync.services.sync_service import SyncService

__all__ = [
    "AtomFeedClient",
    "DiagnosticsService",
    "FeedService",
    "HistoryService",
    "SyncNotifier",
    "EntityReconciler",
    "SyncService",
]
