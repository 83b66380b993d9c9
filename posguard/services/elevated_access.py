from __future__ import annotations

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from posguard.core.errors import (
    ElevationDeniedError,
    ElevationRateLimitedError,
    ElevationReplayError,
    ElevationTokenError,
)
from posguard.domain.models import RESULT_FAILED_CREDENTIALS, RESULT_FAILED_PERMISSION, User
from posguard.persistence.repos import users as users_repo
from posguard.services.auth.elevated_access_audit import (
    DEFAULT_RATE_LIMIT_ATTEMPTS,
    DEFAULT_RATE_LIMIT_WINDOW_MS,
    ElevatedAccessAuditService,
    RateLimitStatus,
)
from posguard.services.auth.elevation_tokens import (
    ElevationTokenPayload,
    ElevationTokenService,
    GeneratedToken,
)
from posguard.services.auth.passwords import verify_password
from posguard.services.permission_cache import PermissionCacheService


logger = logging.getLogger(__name__)


class ElevatedAccessService:
    """Step-up flow: rate limit, verify credentials, issue, audit, redeem."""

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        audit: ElevatedAccessAuditService,
        tokens: ElevationTokenService,
        permission_cache: PermissionCacheService,
        rate_limit_window_ms: int = DEFAULT_RATE_LIMIT_WINDOW_MS,
        rate_limit_max_attempts: int = DEFAULT_RATE_LIMIT_ATTEMPTS,
    ) -> None:
        self._session_factory = session_factory
        self._audit = audit
        self._tokens = tokens
        self._permission_cache = permission_cache
        self._rate_limit_window_ms = rate_limit_window_ms
        self._rate_limit_max_attempts = rate_limit_max_attempts

    async def _rate_limit_status(self, *, email: str, ip_address: str) -> RateLimitStatus | None:
        # Either identifier tripping the limit blocks the request.
        for identifier, identifier_type in ((ip_address, "ip"), (email, "email")):
            status = await self._audit.check_rate_limit(
                identifier,
                identifier_type,  # type: ignore[arg-type]
                window_ms=self._rate_limit_window_ms,
                max_attempts=self._rate_limit_max_attempts,
            )
            if status.is_limited:
                return status
        return None

    async def _load_user(self, email: str) -> User | None:
        # Lookup failures propagate; an outage must not be recorded as a credential failure.
        async with self._session_factory() as session:
            return await users_repo.get_user_by_email(session, email=email)

    async def _has_permission(self, user: User, *, permission: str, store_id: str | None) -> bool:
        if user.is_system_admin:
            return True
        if permission not in (user.permissions or []):
            return False
        if store_id is None:
            return True
        if store_id in (user.store_ids or []):
            return True
        return await self._permission_cache.verify_store_company_access(user.company_ids or [], store_id)

    async def request_elevation(
        self,
        *,
        email: str,
        password: str,
        permission: str,
        ip_address: str,
        store_id: str | None = None,
        session_id: str | None = None,
        user_agent: str | None = None,
        request_id: str | None = None,
    ) -> GeneratedToken:
        # One canonical form keys the audit trail, both rate limits and the user lookup.
        email = email.strip().lower()
        context = {
            "user_email": email,
            "requested_permission": permission,
            "ip_address": ip_address,
            "store_id": store_id,
            "user_agent": user_agent,
            "request_id": request_id,
        }
        await self._audit.log_elevation_requested(**context)

        limited = await self._rate_limit_status(email=email, ip_address=ip_address)
        if limited is not None:
            await self._audit.log_rate_limited(
                **context,
                attempt_count=limited.attempt_count,
                rate_limit_window=limited.window_start,
            )
            logger.warning("elevation_rate_limited ip=%s request_id=%s", ip_address, request_id)
            raise ElevationRateLimitedError(
                "Too many elevation attempts",
                window_start=limited.window_start,
                window_ms=self._rate_limit_window_ms,
            )

        user = await self._load_user(email)
        # bcrypt is CPU-bound; keep it off the event loop.
        password_ok = await asyncio.to_thread(verify_password, password, user.password_hash if user else None)
        if user is None or not user.is_active or not password_ok:
            inactive = user is not None and password_ok and not user.is_active
            await self._audit.log_elevation_denied(
                **context,
                user_id=user.id if user else None,
                result=RESULT_FAILED_CREDENTIALS,
                error_code="USER_INACTIVE" if inactive else "INVALID_CREDENTIALS",
                error_message="User inactive" if inactive else "Invalid credentials",
            )
            raise ElevationDeniedError("Access denied", code="AUTH_FORBIDDEN")

        if not await self._has_permission(user, permission=permission, store_id=store_id):
            await self._audit.log_elevation_denied(
                **context,
                user_id=user.id,
                result=RESULT_FAILED_PERMISSION,
                error_code="PERMISSION_DENIED",
                error_message=f"User lacks {permission}",
            )
            raise ElevationDeniedError("Access denied", code="AUTH_FORBIDDEN")

        generated = self._tokens.generate_token(
            user_id=user.id,
            email=user.email,
            permission=permission,
            store_id=store_id,
            session_id=session_id,
            roles=list(user.roles or []),
            permissions=list(user.permissions or []),
            is_system_admin=bool(user.is_system_admin),
            company_ids=list(user.company_ids or []),
            store_ids=list(user.store_ids or []),
        )
        await self._audit.log_elevation_granted(
            user_id=user.id,
            user_email=user.email,
            session_id=session_id,
            requested_permission=permission,
            store_id=store_id,
            token_jti=generated.jti,
            token_issued_at=generated.issued_at,
            token_expires_at=generated.expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
            request_id=request_id,
        )
        logger.info("elevation_granted user_id=%s permission=%s jti=%s", user.id, permission, generated.jti)
        return generated

    async def verify_elevation(
        self,
        *,
        token: str,
        permission: str,
        store_id: str | None = None,
    ) -> ElevationTokenPayload:
        validation = self._tokens.validate_token(token, permission, store_id)
        if validation.valid and validation.payload is not None:
            return validation.payload
        if validation.error_code == "EXPIRED":
            jti = self._tokens.extract_jti(token)
            if jti:
                await self._audit.log_token_expired(jti)
        logger.info("elevation_token_rejected code=%s", validation.error_code)
        raise ElevationTokenError(validation.error or "Invalid elevation token", code=validation.error_code or "INVALID")

    async def consume_elevation(
        self,
        *,
        payload: ElevationTokenPayload,
        ip_address: str,
        user_agent: str | None = None,
        request_id: str | None = None,
    ) -> None:
        spent = await self._tokens.mark_token_as_used(payload.jti, ip_address, user_agent, request_id)
        if not spent:
            raise ElevationReplayError("Elevation token has already been used", code="TOKEN_REPLAY")
