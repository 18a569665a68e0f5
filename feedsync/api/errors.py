"""Mapping from service exceptions to HTTP errors."""

from fastapi import HTTPException

from feedsync.exceptions import (
    FeedSyncError,
    InvalidStateError,
    NetworkError,
    NotFoundError,
    ParseError,
    ValidationError,
)

STATUS_CODES = [
    (ParseError, 400),
    (ValidationError, 422),
    (NotFoundError, 404),
    (InvalidStateError, 409),
    (NetworkError, 502),
]


def to_http_exception(error: FeedSyncError) -> HTTPException:
    """Translate a service error into the matching HTTPException."""
    for error_cls, status_code in STATUS_CODES:
        if isinstance(error, error_cls):
            return HTTPException(status_code=status_code, detail=error.message)
    return HTTPException(status_code=500, detail=error.message)
