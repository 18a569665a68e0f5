"""Exceptions raised by the feed sync core."""

from typing import Optional


class FeedSyncError(Exception):
    """Base exception for feed sync errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ParseError(FeedSyncError):
    """Raised when an ATOMSVC or ATOM document cannot be parsed."""


class NetworkError(FeedSyncError):
    """Raised when fetching feed content fails or times out."""

    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, details={"url": url, "status_code": status_code})
        self.url = url
        self.status_code = status_code


class ValidationError(FeedSyncError, ValueError):
    """Raised when interface input is invalid. Nothing has been written."""


class NotFoundError(FeedSyncError, LookupError):
    """Raised when a referenced feed or sync run does not exist."""


class InvalidStateError(FeedSyncError):
    """Raised when an operation is not legal in the current state."""


class SyncCancelled(FeedSyncError):
    """Raised inside a runner when cancellation was requested."""

    def __init__(self, run_id: int):
        super().__init__(f"Sync {run_id} cancelled", details={"run_id": run_id})
        self.run_id = run_id


class SyncAborted(FeedSyncError):
    """Raised inside a runner when too many consecutive records failed."""
