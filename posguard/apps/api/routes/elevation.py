from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field

from posguard.apps.api.deps import RequestContext, ServiceContainer, get_request_context, get_services
from posguard.apps.api.response import ErrorEnvelope, SuccessEnvelope, success_response


router = APIRouter(
    prefix="/auth/elevation",
    tags=["elevation"],
    responses={403: {"model": ErrorEnvelope}},
)


class ElevationRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=256)
    permission: str = Field(min_length=1, max_length=128)
    store_id: str | None = None
    session_id: str | None = None


class ElevationTokenResponse(BaseModel):
    token: str
    jti: str
    issued_at: str
    expires_at: str
    expires_in: int


class ElevationScope(BaseModel):
    permission: str = Field(min_length=1, max_length=128)
    store_id: str | None = None


class ElevationClaimsResponse(BaseModel):
    claims: dict[str, Any]


class ElevationConsumedResponse(BaseModel):
    jti: str
    consumed: bool


@router.post(
    "",
    response_model=SuccessEnvelope[ElevationTokenResponse],
    responses={429: {"model": ErrorEnvelope}},
)
async def request_elevation(
    request: Request,
    body: ElevationRequest,
    services: ServiceContainer = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    generated = await services.elevated_access.request_elevation(
        email=body.email,
        password=body.password,
        permission=body.permission,
        store_id=body.store_id,
        session_id=body.session_id,
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
        request_id=ctx.request_id,
    )
    payload = ElevationTokenResponse(
        token=generated.token,
        jti=generated.jti,
        issued_at=generated.issued_at.isoformat(),
        expires_at=generated.expires_at.isoformat(),
        expires_in=generated.expires_in,
    )
    return success_response(request=request, data=payload)


@router.post("/verify", response_model=SuccessEnvelope[ElevationClaimsResponse])
async def verify_elevation(
    request: Request,
    body: ElevationScope,
    x_elevation_token: str = Header(alias="X-Elevation-Token"),
    services: ServiceContainer = Depends(get_services),
) -> dict:
    # Validation alone never spends the token.
    payload = await services.elevated_access.verify_elevation(
        token=x_elevation_token,
        permission=body.permission,
        store_id=body.store_id,
    )
    return success_response(request=request, data=ElevationClaimsResponse(claims=payload.to_claims()))


@router.post("/consume", response_model=SuccessEnvelope[ElevationConsumedResponse])
async def consume_elevation(
    request: Request,
    body: ElevationScope,
    x_elevation_token: str = Header(alias="X-Elevation-Token"),
    services: ServiceContainer = Depends(get_services),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    payload = await services.elevated_access.verify_elevation(
        token=x_elevation_token,
        permission=body.permission,
        store_id=body.store_id,
    )
    await services.elevated_access.consume_elevation(
        payload=payload,
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
        request_id=ctx.request_id,
    )
    return success_response(request=request, data=ElevationConsumedResponse(jti=payload.jti, consumed=True))
