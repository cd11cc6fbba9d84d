"""Common route helpers."""

from __future__ import annotations

from fastapi import HTTPException, status

from iterwork.errors import (
    InvalidTransitionError,
    IterationError,
    IterationExistsError,
    IterationLockedError,
    IterationNotFoundError,
    UncommittedChangesError,
    WorktreeExistsError,
)

_CONFLICTS = (
    IterationExistsError,
    InvalidTransitionError,
    IterationLockedError,
    UncommittedChangesError,
    WorktreeExistsError,
)


def http_error(exc: IterationError) -> HTTPException:
    """Map a lifecycle error to 404, 409, 422 or 502."""
    if isinstance(exc, IterationNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, _CONFLICTS):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, ValueError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    else:
        code = status.HTTP_502_BAD_GATEWAY
    return HTTPException(status_code=code, detail={"message": str(exc), "remedy": exc.remedy})
