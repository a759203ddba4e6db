"""HTTP routes for whole-store export, import and reset."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Response, status

from ..dependencies import get_actor, get_custody_service
from ..domain import ActorContext
from ..errors import CustodyError
from ..schemas import ExportDocument, ImportResponse
from ..services import CustodyService
from .errors import as_http_exception

router = APIRouter(prefix="/data", tags=["data"])


@router.get("/export")
async def export_data(
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> dict[str, Any]:
    try:
        return await service.export_data(actor)
    except CustodyError as exc:
        raise as_http_exception(exc) from exc


@router.post("/import", response_model=ImportResponse)
async def import_data(
    payload: ExportDocument,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> ImportResponse:
    try:
        counts = await service.import_data(actor, payload.model_dump(by_alias=True))
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return ImportResponse(counts=counts)


@router.post("/reset", status_code=status.HTTP_204_NO_CONTENT)
async def reset_data(
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> Response:
    try:
        await service.reset_data(actor)
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
