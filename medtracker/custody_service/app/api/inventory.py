"""HTTP routes for items and the single-item custody workflows."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..clock import ensure_utc
from ..dependencies import get_actor, get_custody_service
from ..domain import ActorContext
from ..errors import CustodyError
from ..schemas import (
    AdministerRequest,
    AdministrationResponse,
    CatalogCreate,
    CatalogResponse,
    CorrectionRequest,
    ExpiredExchangeRequest,
    ExpiringItemResponse,
    ItemComplianceResponse,
    ItemDeactivate,
    ItemResponse,
    ItemUpdate,
    TransferRequest,
    TransferResponse,
    WasteRequest,
    WasteResponse,
)
from ..services import CustodyService
from .errors import as_http_exception
from .serializers import serialize_item

router = APIRouter(prefix="/items", tags=["items"])


def _serialize_waste(outcome) -> dict[str, object]:
    return {
        "item": serialize_item(outcome.item),
        "mode": outcome.mode.value,
        "previousStatus": outcome.previous_status.value,
        "wasteRecordId": outcome.waste.id if outcome.waste is not None else None,
        "witnessSignatureId": outcome.signature.id,
    }


@router.get("", response_model=list[ItemResponse])
async def list_items(
    location_id: int | None = Query(default=None, alias="locationId"),
    status_filter: str | None = Query(default=None, alias="status"),
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> list[ItemResponse]:
    try:
        items = await service.list_items(actor, location_id=location_id, status=status_filter)
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return [ItemResponse.model_validate(serialize_item(item)) for item in items]


@router.get("/expiring", response_model=list[ExpiringItemResponse])
async def list_expiring(
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> list[ExpiringItemResponse]:
    try:
        candidates = await service.expiring_items(actor)
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return [
        ExpiringItemResponse.model_validate(
            {
                "item": serialize_item(candidate.item),
                "lotNumber": candidate.lot.lot_number,
                "expirationDate": ensure_utc(candidate.lot.expiration_date),
                "daysUntilExpiry": round(candidate.days_until_expiry, 2),
            }
        )
        for candidate in candidates
    ]


@router.get("/by-code/{code}", response_model=ItemResponse)
async def find_by_code(
    code: str,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> ItemResponse:
    item = await service.find_item_by_code(actor, code)
    if item is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Item not found")
    return ItemResponse.model_validate(serialize_item(item))


@router.post("/catalog", response_model=CatalogResponse, status_code=status.HTTP_201_CREATED)
async def create_catalog(
    payload: CatalogCreate,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> CatalogResponse:
    try:
        catalog = await service.create_catalog(actor, **payload.model_dump())
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return CatalogResponse.model_validate(
        {
            "id": catalog.id,
            "name": catalog.name,
            "category": catalog.category,
            "isControlled": catalog.is_controlled,
            "unit": catalog.unit,
            "defaultParLevel": catalog.default_par_level,
        }
    )


@router.post("/administer", response_model=AdministrationResponse, status_code=status.HTTP_201_CREATED)
async def administer(
    payload: AdministerRequest,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> AdministrationResponse:
    try:
        outcome = await service.administer_item(actor, **payload.model_dump())
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return AdministrationResponse.model_validate(
        {
            "item": serialize_item(outcome.item),
            "administrationId": outcome.administration.id,
            "doseWasted": outcome.administration.dose_wasted,
            "wasteRecordId": outcome.waste.id if outcome.waste is not None else None,
            "witnessSignatureId": outcome.signature.id if outcome.signature is not None else None,
        }
    )


@router.post("/waste", response_model=WasteResponse, status_code=status.HTTP_201_CREATED)
async def waste(
    payload: WasteRequest,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> WasteResponse:
    try:
        outcome = await service.waste_item(actor, **payload.model_dump())
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return WasteResponse.model_validate(_serialize_waste(outcome))


@router.post("/correction", response_model=WasteResponse)
async def correction(
    payload: CorrectionRequest,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> WasteResponse:
    try:
        outcome = await service.correct_item(actor, **payload.model_dump())
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return WasteResponse.model_validate(_serialize_waste(outcome))


@router.post("/transfer", response_model=TransferResponse, status_code=status.HTTP_201_CREATED)
async def transfer(
    payload: TransferRequest,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> TransferResponse:
    try:
        record = await service.transfer_item(actor, **payload.model_dump())
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return TransferResponse.model_validate(
        {
            "id": record.id,
            "itemId": record.item_id,
            "fromLocationId": record.from_location_id,
            "toLocationId": record.to_location_id,
            "transferredBy": record.transferred_by,
            "transferredAt": ensure_utc(record.transferred_at),
            "notes": record.notes,
        }
    )


@router.post("/expired-exchange", response_model=ItemResponse)
async def expired_exchange(
    payload: ExpiredExchangeRequest,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> ItemResponse:
    try:
        item = await service.exchange_expired(actor, **payload.model_dump())
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return ItemResponse.model_validate(serialize_item(item))


@router.get("/{item_id}/compliance", response_model=ItemComplianceResponse)
async def item_compliance(
    item_id: int,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> ItemComplianceResponse:
    try:
        result = await service.item_compliance(actor, item_id)
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return ItemComplianceResponse.model_validate(
        {
            "item": serialize_item(result.item),
            "checkStatus": result.check.value,
            "expirationStatus": result.expiration.value if result.expiration is not None else None,
        }
    )


@router.patch("/{item_id}", response_model=ItemResponse)
async def update_item(
    item_id: int,
    payload: ItemUpdate,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> ItemResponse:
    try:
        item = await service.update_item(actor, item_id, **payload.model_dump())
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return ItemResponse.model_validate(serialize_item(item))


@router.post("/{item_id}/deactivate", response_model=ItemResponse)
async def deactivate_item(
    item_id: int,
    payload: ItemDeactivate,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> ItemResponse:
    try:
        item = await service.deactivate_item(actor, item_id, reason=payload.reason)
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return ItemResponse.model_validate(serialize_item(item))
