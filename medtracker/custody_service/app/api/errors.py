"""Translation of custody errors into HTTP responses."""

from __future__ import annotations

from fastapi import HTTPException, status

from ..errors import (
    ConcurrencyConflict,
    CustodyError,
    PersistenceFailure,
    PreconditionFailed,
    Reason,
    ValidationFailed,
    WitnessRejected,
)

_REASON_STATUS = {
    Reason.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    Reason.INSUFFICIENT_ROLE: status.HTTP_403_FORBIDDEN,
    Reason.NOT_A_MEMBER: status.HTTP_403_FORBIDDEN,
    Reason.INVALID_CREDENTIALS: status.HTTP_401_UNAUTHORIZED,
}


def status_for(exc: CustodyError) -> int:
    if isinstance(exc, ValidationFailed):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, PreconditionFailed):
        return _REASON_STATUS.get(exc.reason, status.HTTP_409_CONFLICT)
    if isinstance(exc, ConcurrencyConflict):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, PersistenceFailure):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def as_http_exception(exc: CustodyError) -> HTTPException:
    detail: dict[str, object] = {"code": exc.code, "message": exc.message}
    if isinstance(exc, PreconditionFailed):
        detail["reason"] = exc.reason.value
    if isinstance(exc, WitnessRejected):
        detail["failure"] = exc.failure.value
    if isinstance(exc, ValidationFailed) and exc.field:
        detail["field"] = exc.field
    return HTTPException(status_code=status_for(exc), detail=detail)
