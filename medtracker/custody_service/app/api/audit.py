"""HTTP route for querying the audit ledger."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query

from ..dependencies import get_actor, get_custody_service
from ..domain import ActorContext
from ..errors import CustodyError
from ..schemas import AuditEventResponse
from ..services import CustodyService
from .errors import as_http_exception
from .serializers import serialize_audit_event

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("", response_model=list[AuditEventResponse])
async def query_audit(
    event_type: str | None = Query(default=None, alias="eventType"),
    entity_type: str | None = Query(default=None, alias="entityType"),
    entity_id: int | None = Query(default=None, alias="entityId"),
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> list[AuditEventResponse]:
    try:
        events = await service.audit_query(
            actor,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            since=since,
            until=until,
            limit=limit,
        )
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return [AuditEventResponse.model_validate(serialize_audit_event(event)) for event in events]
