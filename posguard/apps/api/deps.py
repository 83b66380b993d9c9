from __future__ import annotations

from dataclasses import dataclass
import hmac

from fastapi import Header, HTTPException, Request, status
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from posguard.apps.api.response import get_request_id
from posguard.core.config import Settings
from posguard.services.auth.elevated_access_audit import ElevatedAccessAuditService
from posguard.services.auth.elevation_tokens import ElevationTokenService
from posguard.services.elevated_access import ElevatedAccessService
from posguard.services.permission_cache import PermissionCacheService


@dataclass
class ServiceContainer:
    # Built once per process and passed to handlers through app.state.
    settings: Settings
    engine: AsyncEngine | None
    session_factory: async_sessionmaker[AsyncSession]
    redis: Redis
    audit: ElevatedAccessAuditService
    tokens: ElevationTokenService
    permission_cache: PermissionCacheService
    elevated_access: ElevatedAccessService

    @classmethod
    def build(
        cls,
        *,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        redis: Redis,
        engine: AsyncEngine | None = None,
        audit: ElevatedAccessAuditService | None = None,
        tokens: ElevationTokenService | None = None,
    ) -> ServiceContainer:
        resolved_audit = audit or ElevatedAccessAuditService(session_factory)
        resolved_tokens = tokens or ElevationTokenService(settings=settings, audit_service=resolved_audit)
        permission_cache = PermissionCacheService(
            session_factory,
            redis,
            key_prefix=settings.permission_cache_prefix,
            ttl_seconds=settings.permission_cache_ttl_s,
        )
        elevated_access = ElevatedAccessService(
            session_factory=session_factory,
            audit=resolved_audit,
            tokens=resolved_tokens,
            permission_cache=permission_cache,
            rate_limit_window_ms=settings.elevation_rate_limit_window_ms,
            rate_limit_max_attempts=settings.elevation_rate_limit_max_attempts,
        )
        return cls(
            settings=settings,
            engine=engine,
            session_factory=session_factory,
            redis=redis,
            audit=resolved_audit,
            tokens=resolved_tokens,
            permission_cache=permission_cache,
            elevated_access=elevated_access,
        )


@dataclass(frozen=True)
class RequestContext:
    request_id: str
    ip_address: str
    user_agent: str | None


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_request_context(request: Request) -> RequestContext:
    # Prefer the first forwarded hop so rate limits key on the real client.
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else "unknown"
    return RequestContext(
        request_id=get_request_id(request),
        ip_address=ip_address or "unknown",
        user_agent=request.headers.get("user-agent"),
    )


def require_admin_key(
    request: Request,
    x_admin_key: str | None = Header(default=None, alias="X-Admin-Key"),
) -> None:
    # Audit reads are disabled entirely when no admin key is configured.
    expected = get_services(request).settings.admin_api_key
    if not expected or not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "AUTH_FORBIDDEN", "message": "Admin key required"},
        )
