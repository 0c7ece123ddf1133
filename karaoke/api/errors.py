"""Map queue rejections onto HTTP errors."""
from __future__ import annotations

from fastapi import HTTPException, status

from karaoke.core.errors import (
    InvalidEventDataError,
    NotFoundError,
    PersistenceError,
    QueueError,
    SessionClosedError,
    TransitionRejectedError,
)

_STATUS_BY_ERROR: tuple[tuple[type[QueueError], int], ...] = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (TransitionRejectedError, status.HTTP_409_CONFLICT),
    (SessionClosedError, status.HTTP_409_CONFLICT),
    (InvalidEventDataError, status.HTTP_422_UNPROCESSABLE_CONTENT),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def to_http_exception(exc: QueueError) -> HTTPException:
    """HTTPException carrying the error's detail dict."""
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=exc.to_detail())
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.to_detail())
