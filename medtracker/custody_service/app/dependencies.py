"""Dependency helpers for the custody service."""

from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request, status

from .api.errors import as_http_exception
from .domain import ActorContext
from .errors import CustodyError
from .services import CustodyService


def get_custody_service(request: Request) -> CustodyService:
    service = getattr(request.app.state, "custody_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Custody service is not ready",
        )
    return service


async def get_actor(
    user_id: int = Header(alias="X-User-Id"),
    service_id: int = Header(alias="X-Service-Id"),
    service: CustodyService = Depends(get_custody_service),
) -> ActorContext:
    """Resolve the calling user to an actor through their service membership."""

    try:
        return await service.resolve_actor(user_id, service_id)
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
