"""HTTP routes for discrepancy cases."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from ..dependencies import get_actor, get_custody_service
from ..domain import ActorContext
from ..errors import CustodyError
from ..schemas import DiscrepancyCreate, DiscrepancyResponse, InvestigationRequest, ResolutionRequest
from ..services import CustodyService
from .errors import as_http_exception
from .serializers import serialize_case

router = APIRouter(prefix="/discrepancies", tags=["discrepancies"])


@router.post("", response_model=DiscrepancyResponse, status_code=status.HTTP_201_CREATED)
async def open_discrepancy(
    payload: DiscrepancyCreate,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> DiscrepancyResponse:
    try:
        case = await service.open_discrepancy(
            actor, description=payload.description, item_id=payload.item_id, code=payload.code
        )
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return DiscrepancyResponse.model_validate(serialize_case(case))


@router.get("", response_model=list[DiscrepancyResponse])
async def list_discrepancies(
    status_filter: str | None = Query(default=None, alias="status"),
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> list[DiscrepancyResponse]:
    try:
        cases = await service.list_cases(actor, status=status_filter)
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return [DiscrepancyResponse.model_validate(serialize_case(case)) for case in cases]


@router.post("/{case_id}/investigate", response_model=DiscrepancyResponse)
async def investigate(
    case_id: int,
    payload: InvestigationRequest,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> DiscrepancyResponse:
    try:
        case = await service.investigate_discrepancy(actor, case_id, notes=payload.notes)
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return DiscrepancyResponse.model_validate(serialize_case(case))


@router.post("/{case_id}/resolve", response_model=DiscrepancyResponse)
async def resolve(
    case_id: int,
    payload: ResolutionRequest,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> DiscrepancyResponse:
    try:
        case = await service.resolve_discrepancy(actor, case_id, resolution=payload.resolution)
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return DiscrepancyResponse.model_validate(serialize_case(case))
