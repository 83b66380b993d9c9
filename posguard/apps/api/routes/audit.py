from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from posguard.apps.api.deps import ServiceContainer, get_services, require_admin_key
from posguard.apps.api.response import SuccessEnvelope, success_response
from posguard.services.auth.elevated_access_audit import AuditQueryParams


router = APIRouter(
    prefix="/audit/elevated-access",
    tags=["audit"],
    dependencies=[Depends(require_admin_key)],
)


class AuditRecordsPage(BaseModel):
    items: list[dict[str, Any]]
    next_offset: int | None


class SecuritySummaryResponse(BaseModel):
    user_id: str
    days: int
    total_requests: int
    successful_elevations: int
    denied_attempts: int
    rate_limit_events: int
    token_usages: int
    unique_ips: int


@router.get("", response_model=SuccessEnvelope[AuditRecordsPage])
async def list_elevated_access_records(
    request: Request,
    user_id: str | None = None,
    user_email: str | None = None,
    store_id: str | None = None,
    event_type: str | None = None,
    result: str | None = None,
    ip_address: str | None = None,
    from_date: datetime | None = Query(default=None, alias="from"),
    to_date: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=500),
    services: ServiceContainer = Depends(get_services),
) -> dict:
    # Fetch one extra row to know whether another page exists.
    records = await services.audit.query_audit_records(
        AuditQueryParams(
            user_id=user_id,
            user_email=user_email,
            store_id=store_id,
            event_type=event_type,
            result=result,
            ip_address=ip_address,
            from_date=from_date,
            to_date=to_date,
            offset=offset,
            limit=limit + 1,
        )
    )
    next_offset = None
    if len(records) > limit:
        records = records[:limit]
        next_offset = offset + limit
    page = AuditRecordsPage(items=[record.to_dict() for record in records], next_offset=next_offset)
    return success_response(request=request, data=page)


@router.get("/users/{user_id}/summary", response_model=SuccessEnvelope[SecuritySummaryResponse])
async def get_user_security_summary(
    request: Request,
    user_id: str,
    days: int = Query(default=30, ge=1, le=365),
    services: ServiceContainer = Depends(get_services),
) -> dict:
    summary = await services.audit.get_user_security_summary(user_id, days=days)
    payload = SecuritySummaryResponse(user_id=user_id, days=days, **asdict(summary))
    return success_response(request=request, data=payload)
