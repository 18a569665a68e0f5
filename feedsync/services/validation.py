"""Input validation helpers for the service boundary.

Every helper raises ValidationError before any state is touched, so callers
can validate all arguments up front and then mutate.
"""

from typing import Any, Optional, Type, TypeVar

from feedsync.exceptions import ValidationError
from feedsync.models.enums import FeedType, SyncStatus, SyncType, TriggeredBy, ALL_SYNC_TYPES

E = TypeVar("E")


def validate_id(value: Any, field_name: str = "id") -> int:
    """Validate that a value is a positive integer database ID."""
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f"Invalid {field_name}: must be a positive integer")
    return value


def validate_non_empty_string(value: Any, field_name: str = "value") -> str:
    """Validate that a value is a string with visible content."""
    if not isinstance(value, str):
        raise ValidationError(f"Invalid {field_name}: must be a string")
    if not value.strip():
        raise ValidationError(f"Invalid {field_name}: must not be empty")
    return value.strip()


def _validate_enum(value: Any, enum_cls: Type[E], label: str) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        valid = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {label}: must be one of {valid}")


def validate_feed_type(value: Any) -> FeedType:
    return _validate_enum(value, FeedType, "feed type")


def validate_sync_type(value: Any) -> SyncType:
    return _validate_enum(value, SyncType, "sync type")


def validate_sync_status(value: Any) -> SyncStatus:
    return _validate_enum(value, SyncStatus, "sync status")


def validate_triggered_by(value: Any) -> TriggeredBy:
    return _validate_enum(value, TriggeredBy, "trigger")


def validate_sync_request_type(value: Any) -> list:
    """Validate a sync request type and expand ``ALL``.

    Returns:
        List of SyncType members to run.
    """
    if value == ALL_SYNC_TYPES:
        return list(SyncType)
    return [_validate_enum(value, SyncType, "sync type")]


def validate_pagination(limit: Optional[int], offset: Optional[int], max_limit: int = 500) -> tuple:
    """Validate history pagination parameters."""
    limit = 50 if limit is None else limit
    offset = 0 if offset is None else offset
    if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= max_limit:
        raise ValidationError(f"Invalid limit: must be between 1 and {max_limit}")
    if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
        raise ValidationError("Invalid offset: must be zero or greater")
    return limit, offset
