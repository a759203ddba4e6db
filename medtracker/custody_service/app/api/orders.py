"""HTTP routes for purchase orders and their receipt."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from ..dependencies import get_actor, get_custody_service
from ..domain import ActorContext
from ..errors import CustodyError
from ..orders import LineReceipt, OrderLineInput
from ..schemas import OrderCreate, OrderReceiptRequest, OrderReceiptResponse, OrderResponse
from ..services import CustodyService
from .errors import as_http_exception
from .serializers import serialize_order

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: OrderCreate,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> OrderResponse:
    try:
        order = await service.create_order(
            actor,
            vendor_id=payload.vendor_id,
            lines=[OrderLineInput(line.catalog_id, line.quantity_ordered) for line in payload.lines],
            notes=payload.notes,
            submit=payload.submit,
        )
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return OrderResponse.model_validate(serialize_order(order))


@router.get("", response_model=list[OrderResponse])
async def list_orders(
    status_filter: str | None = Query(default=None, alias="status"),
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> list[OrderResponse]:
    try:
        orders = await service.list_orders(actor, status=status_filter)
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return [OrderResponse.model_validate(serialize_order(order)) for order in orders]


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> OrderResponse:
    try:
        order = await service.get_order(actor, order_id)
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return OrderResponse.model_validate(serialize_order(order))


@router.post("/{order_id}/submit", response_model=OrderResponse)
async def submit_order(
    order_id: int,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> OrderResponse:
    try:
        order = await service.submit_order(actor, order_id)
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return OrderResponse.model_validate(serialize_order(order))


@router.post("/{order_id}/receipt", response_model=OrderReceiptResponse)
async def receive_order(
    order_id: int,
    payload: OrderReceiptRequest,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> OrderReceiptResponse:
    receipts = [
        LineReceipt(
            line_id=line.line_id,
            quantity_received=line.quantity_received,
            location_id=line.location_id,
            lot_number=line.lot_number,
            serial_number=line.serial_number,
            expiration_date=line.expiration_date,
        )
        for line in payload.lines
    ]
    try:
        outcome = await service.receive_order(actor, order_id, receipts)
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return OrderReceiptResponse.model_validate(
        {
            "order": serialize_order(outcome.order),
            "itemCodes": [item.code for item in outcome.items],
            "lotIds": [lot.id for lot in outcome.lots],
        }
    )
