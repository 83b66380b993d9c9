from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from posguard.apps.api.deps import ServiceContainer, get_services
from posguard.apps.api.response import SuccessEnvelope, success_response


router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    permission_cache_hit_rate: float


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, services: ServiceContainer = Depends(get_services)) -> dict:
    metrics = services.permission_cache.get_metrics()
    payload = HealthResponse(status="ok", permission_cache_hit_rate=metrics.hit_rate)
    return success_response(request=request, data=payload)
