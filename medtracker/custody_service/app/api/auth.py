"""Login, logout and service switching."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from ..dependencies import get_actor, get_custody_service
from ..domain import ActorContext
from ..errors import CustodyError
from ..schemas import LoginRequest, LoginResponse, SwitchServiceRequest
from ..services import CustodyService
from .errors import as_http_exception

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=LoginResponse)
async def login(payload: LoginRequest, service: CustodyService = Depends(get_custody_service)) -> LoginResponse:
    try:
        result = await service.login(payload.email, payload.password)
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return LoginResponse.model_validate(
        {
            "userId": result.user.id,
            "email": result.user.email,
            "memberships": [
                {"serviceId": membership.service_id, "role": membership.role} for membership in result.memberships
            ],
            "serviceId": result.actor.service_id if result.actor else None,
            "role": result.actor.role.label if result.actor else None,
        }
    )


@router.post("/switch-service", response_model=LoginResponse)
async def switch_service(
    payload: SwitchServiceRequest,
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> LoginResponse:
    try:
        switched = await service.switch_service(actor.user_id, payload.service_id)
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    async with service.reading() as repository:
        user = await repository.get_user(switched.user_id)
        memberships = await repository.list_memberships(switched.user_id)
    return LoginResponse.model_validate(
        {
            "userId": switched.user_id,
            "email": user.email if user else "",
            "memberships": [{"serviceId": m.service_id, "role": m.role} for m in memberships],
            "serviceId": switched.service_id,
            "role": switched.role.label,
        }
    )


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    actor: ActorContext = Depends(get_actor),
    service: CustodyService = Depends(get_custody_service),
) -> Response:
    try:
        await service.logout(actor)
    except CustodyError as exc:
        raise as_http_exception(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
