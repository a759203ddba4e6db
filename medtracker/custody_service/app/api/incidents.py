"""HTTP routes for field incidents."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from ..cases import IncidentItemInput
from ..dependencies import get_actor, get_custody_service
from ..domain import ActorContext
from ..errors import CustodyError
from ..schemas import IncidentCreate, IncidentItemPayload, IncidentItemResponse, IncidentResponse
from ..services import CustodyService
from .errors import as_http_exception
from .serializers import serialize_incident

router = APIRouter(prefix="/incidents", tags=["incidents"])


def _entry(payload: IncidentItemPayload) -> IncidentItemInput:
    return IncidentItemInput(
        item_id=payload.item_id,
        code=payload.code,
        quantity_used=payload.quantity_used,
        notes=payload.notes,
    )


@router.post("", response_model=IncidentResponse, status_code=status.HTTP_201_CREATED)
async def create_incident(
    payload: IncidentCreate,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> IncidentResponse:
    try:
        incident = await service.create_incident(
            actor,
            title=payload.title,
            description=payload.description,
            incident_date=payload.incident_date,
            items=[_entry(entry) for entry in payload.items],
        )
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return IncidentResponse.model_validate(serialize_incident(incident))


@router.get("", response_model=list[IncidentResponse])
async def list_incidents(
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> list[IncidentResponse]:
    try:
        incidents = await service.list_incidents(actor)
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return [IncidentResponse.model_validate(serialize_incident(incident)) for incident in incidents]


@router.get("/{incident_id}", response_model=IncidentResponse)
async def get_incident(
    incident_id: int,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> IncidentResponse:
    try:
        incident = await service.get_incident(actor, incident_id)
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return IncidentResponse.model_validate(serialize_incident(incident))


@router.post("/{incident_id}/items", response_model=IncidentItemResponse, status_code=status.HTTP_201_CREATED)
async def add_incident_item(
    incident_id: int,
    payload: IncidentItemPayload,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> IncidentItemResponse:
    try:
        entry = await service.add_incident_item(actor, incident_id, _entry(payload))
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return IncidentItemResponse.model_validate(
        {"id": entry.id, "itemId": entry.item_id, "quantityUsed": entry.quantity_used, "notes": entry.notes}
    )


@router.post("/{incident_id}/close", response_model=IncidentResponse)
async def close_incident(
    incident_id: int,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> IncidentResponse:
    try:
        incident = await service.close_incident(actor, incident_id)
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return IncidentResponse.model_validate(serialize_incident(incident))
