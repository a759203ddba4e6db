"""HTTP routes for the location tree, reconciliation and compliance checks."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from ..clock import ensure_utc
from ..dependencies import get_actor, get_custody_service
from ..domain import ActorContext, ComplianceStatus
from ..errors import CustodyError
from ..locations import LocationNode
from ..schemas import (
    CheckRequest,
    CheckSessionResponse,
    ExpectedContentResponse,
    ExpectedContentUpdate,
    LocationCreate,
    LocationResponse,
    LocationTreeNode,
    LocationUpdate,
    ReconciliationLineResponse,
)
from ..services import CustodyService
from .errors import as_http_exception
from .serializers import serialize_location

router = APIRouter(prefix="/locations", tags=["locations"])


def _serialize_node(node: LocationNode, compliance: dict[int, ComplianceStatus]) -> dict[str, object]:
    return {
        **serialize_location(node.location),
        "complianceStatus": compliance.get(node.id, ComplianceStatus.OK).value,
        "children": [_serialize_node(child, compliance) for child in node.children],
    }


@router.get("/tree", response_model=list[LocationTreeNode])
async def location_tree(
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> list[LocationTreeNode]:
    try:
        roots = await service.location_tree(actor)
        compliance = await service.location_compliance(actor)
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return [LocationTreeNode.model_validate(_serialize_node(root, compliance)) for root in roots]


@router.post("", response_model=LocationResponse, status_code=status.HTTP_201_CREATED)
async def create_location(
    payload: LocationCreate,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> LocationResponse:
    try:
        location = await service.create_location(actor, **payload.model_dump())
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return LocationResponse.model_validate(serialize_location(location))


@router.patch("/{location_id}", response_model=LocationResponse)
async def update_location(
    location_id: int,
    payload: LocationUpdate,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> LocationResponse:
    try:
        location = await service.update_location(actor, location_id, **payload.model_dump(exclude_unset=True))
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return LocationResponse.model_validate(serialize_location(location))


@router.put("/{location_id}/expected/{catalog_id}", response_model=ExpectedContentResponse)
async def set_expected_content(
    location_id: int,
    catalog_id: int,
    payload: ExpectedContentUpdate,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> ExpectedContentResponse:
    try:
        entry = await service.set_expected_content(actor, location_id, catalog_id, payload.expected_quantity)
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return ExpectedContentResponse.model_validate(
        {
            "id": entry.id,
            "locationId": entry.location_id,
            "catalogId": entry.catalog_id,
            "expectedQuantity": entry.expected_quantity,
        }
    )


@router.get("/{location_id}/reconciliation", response_model=list[ReconciliationLineResponse])
async def reconcile_location(
    location_id: int,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> list[ReconciliationLineResponse]:
    try:
        lines = await service.reconcile_location(actor, location_id)
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return [
        ReconciliationLineResponse.model_validate(
            {
                "catalogId": line.catalog_id,
                "catalogName": line.catalog_name,
                "expectedQuantity": line.expected_quantity,
                "actualQuantity": line.actual_quantity,
                "status": line.status.value,
            }
        )
        for line in lines
    ]


@router.post("/{location_id}/checks", response_model=CheckSessionResponse, status_code=status.HTTP_201_CREATED)
async def check_location(
    location_id: int,
    payload: CheckRequest,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> CheckSessionResponse:
    """Run a whole check session: seal confirmation or per-item verification."""

    workflow = service.check_session(actor)
    try:
        await workflow.start(location_id)
        if workflow.sealed:
            workflow.confirm_seal(intact=bool(payload.seal_intact), seal_id=payload.seal_id, notes=payload.notes)
        else:
            for code in payload.verified_codes:
                workflow.verify_item(code)
        workflow.review()
        outcome = await workflow.commit()
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    session = outcome.session
    return CheckSessionResponse.model_validate(
        {
            "id": session.id,
            "locationId": session.location_id,
            "sealVerified": session.seal_verified,
            "startedAt": ensure_utc(session.started_at),
            "completedAt": ensure_utc(session.completed_at),
            "stampedItemIds": outcome.stamped_item_ids,
            "lines": [
                {"itemId": line.item_id, "verified": line.verified, "notes": line.notes} for line in session.lines
            ],
        }
    )
