from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable, Literal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from posguard.domain.models import (
    EVENT_DENIED,
    EVENT_EXPIRED,
    EVENT_GRANTED,
    EVENT_RATE_LIMITED,
    EVENT_REQUESTED,
    EVENT_USED,
    GRANT_SEQUENCE,
    RESULT_FAILED_CREDENTIALS,
    RESULT_FAILED_PERMISSION,
    RESULT_FAILED_RATE_LIMIT,
    RESULT_FAILED_TOKEN_EXPIRED,
    RESULT_FAILED_TOKEN_USED,
    RESULT_SUCCESS,
    UNKNOWN_USER_ID,
    ElevatedAccessAudit,
    ElevatedAccessResult,
)
from posguard.persistence.repos import elevated_access as audit_repo
from posguard.persistence.results import run_storage


logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT_ATTEMPTS = 5
DEFAULT_RATE_LIMIT_WINDOW_MS = 15 * 60 * 1000

# Failures that count toward the per-IP/per-email rate limit.
_RATE_LIMIT_EVENT_TYPES = (EVENT_DENIED, EVENT_RATE_LIMITED)
_RATE_LIMIT_RESULTS = (RESULT_FAILED_CREDENTIALS, RESULT_FAILED_PERMISSION, RESULT_FAILED_RATE_LIMIT)
_DENIAL_RESULTS = frozenset(
    {
        RESULT_FAILED_CREDENTIALS,
        RESULT_FAILED_PERMISSION,
        RESULT_FAILED_RATE_LIMIT,
        RESULT_FAILED_TOKEN_USED,
        RESULT_FAILED_TOKEN_EXPIRED,
    }
)

# Retries when a concurrent writer takes the next sequence number for the same token.
_SEQUENCE_RETRIES = 3


@dataclass(frozen=True)
class RateLimitStatus:
    is_limited: bool
    attempt_count: int
    window_start: datetime
    remaining_attempts: int


@dataclass(frozen=True)
class AuditQueryParams:
    user_id: str | None = None
    user_email: str | None = None
    store_id: str | None = None
    event_type: str | None = None
    result: str | None = None
    ip_address: str | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None
    limit: int = 100
    offset: int = 0


@dataclass(frozen=True)
class UserSecuritySummary:
    total_requests: int = 0
    successful_elevations: int = 0
    denied_attempts: int = 0
    rate_limit_events: int = 0
    token_usages: int = 0
    unique_ips: int = 0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ElevatedAccessAuditService:
    """Append-only audit trail for the step-up authentication lifecycle.

    The audit log is also the replay ledger and the source for rate limiting,
    so write failures are logged and swallowed while reads fall back to
    explicit defaults: rate limiting fails open, token usage checks fail closed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        # Allow injecting time for deterministic window and expiry tests.
        self._time_provider = time_provider or _utc_now

    def _now(self) -> datetime:
        return self._time_provider()

    async def _insert(self, fields: dict[str, Any]) -> ElevatedAccessAudit:
        async with self._session_factory() as session:
            record = await audit_repo.insert_record(session, created_at=self._now(), **fields)
            await session.commit()
            return record

    async def create_audit_record(self, **fields: Any) -> ElevatedAccessAudit | None:
        # Raw insert; prefer the semantic log_* methods.
        outcome = await run_storage("create_audit_record", lambda: self._insert(fields))
        if not outcome.ok:
            logger.warning(
                "elevation_audit_write_failed event_type=%s request_id=%s",
                fields.get("event_type"),
                fields.get("request_id"),
            )
        return outcome.unwrap_or(None)

    async def log_elevation_requested(
        self,
        *,
        user_email: str,
        requested_permission: str,
        ip_address: str,
        store_id: str | None = None,
        user_agent: str | None = None,
        request_id: str | None = None,
    ) -> None:
        # The requester is not resolved yet, so the record carries the unknown-user placeholder.
        await self.create_audit_record(
            user_id=UNKNOWN_USER_ID,
            user_email=user_email,
            event_type=EVENT_REQUESTED,
            result=RESULT_SUCCESS,
            requested_permission=requested_permission,
            store_id=store_id,
            ip_address=ip_address,
            user_agent=user_agent,
            request_id=request_id,
        )

    async def log_elevation_granted(
        self,
        *,
        user_id: str,
        user_email: str,
        requested_permission: str,
        token_jti: str,
        token_issued_at: datetime,
        token_expires_at: datetime,
        ip_address: str,
        session_id: str | None = None,
        store_id: str | None = None,
        user_agent: str | None = None,
        request_id: str | None = None,
    ) -> None:
        await self.create_audit_record(
            user_id=user_id,
            user_email=user_email,
            session_id=session_id,
            event_type=EVENT_GRANTED,
            result=RESULT_SUCCESS,
            requested_permission=requested_permission,
            store_id=store_id,
            token_jti=token_jti,
            token_sequence=GRANT_SEQUENCE,
            token_issued_at=token_issued_at,
            token_expires_at=token_expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
            request_id=request_id,
        )

    async def log_elevation_denied(
        self,
        *,
        user_email: str,
        requested_permission: str,
        ip_address: str,
        result: ElevatedAccessResult,
        user_id: str | None = None,
        store_id: str | None = None,
        user_agent: str | None = None,
        request_id: str | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
        attempt_count: int | None = None,
        rate_limit_window: datetime | None = None,
    ) -> None:
        if result not in _DENIAL_RESULTS:
            # A denial recorded as a success would hide the failure from rate limiting.
            logger.error("elevation_denial_result_invalid result=%s request_id=%s", result, request_id)
            return
        await self.create_audit_record(
            user_id=user_id or UNKNOWN_USER_ID,
            user_email=user_email,
            event_type=EVENT_DENIED,
            result=result,
            requested_permission=requested_permission,
            store_id=store_id,
            ip_address=ip_address,
            user_agent=user_agent,
            request_id=request_id,
            error_code=error_code,
            error_message=error_message,
            attempt_count=attempt_count,
            rate_limit_window=rate_limit_window,
        )

    async def log_rate_limited(
        self,
        *,
        user_email: str,
        requested_permission: str,
        ip_address: str,
        user_id: str | None = None,
        store_id: str | None = None,
        user_agent: str | None = None,
        request_id: str | None = None,
        attempt_count: int | None = None,
        rate_limit_window: datetime | None = None,
    ) -> None:
        # Kept apart from credential denials so throttling and attack analytics stay separable.
        await self.create_audit_record(
            user_id=user_id or UNKNOWN_USER_ID,
            user_email=user_email,
            event_type=EVENT_RATE_LIMITED,
            result=RESULT_FAILED_RATE_LIMIT,
            requested_permission=requested_permission,
            store_id=store_id,
            ip_address=ip_address,
            user_agent=user_agent,
            request_id=request_id,
            attempt_count=attempt_count,
            rate_limit_window=rate_limit_window,
        )

    async def log_token_used(
        self,
        *,
        token_jti: str,
        ip_address: str,
        user_agent: str | None = None,
        request_id: str | None = None,
    ) -> bool:
        """Spend a token: True for the first redemption, False otherwise.

        Unknown tokens log nothing. A lost claim appends an ELEVATION_USED /
        FAILED_TOKEN_USED replay record instead of touching the grant.
        """
        outcome = await run_storage(
            "log_token_used",
            lambda: self._redeem(
                token_jti=token_jti,
                ip_address=ip_address,
                user_agent=user_agent,
                request_id=request_id,
            ),
        )
        return outcome.unwrap_or(False)

    async def _redeem(
        self,
        *,
        token_jti: str,
        ip_address: str,
        user_agent: str | None,
        request_id: str | None,
    ) -> bool:
        last_error: IntegrityError | None = None
        for _attempt in range(_SEQUENCE_RETRIES):
            now = self._now()
            async with self._session_factory() as session:
                grant = await audit_repo.get_grant(session, token_jti=token_jti)
                if grant is None:
                    logger.warning("elevation_token_not_found jti=%s", token_jti)
                    return False
                claimed = await audit_repo.claim_grant(session, token_jti=token_jti, used_at=now)
                fields: dict[str, Any] = {
                    "user_id": grant.user_id,
                    "user_email": grant.user_email,
                    "session_id": grant.session_id,
                    "event_type": EVENT_USED,
                    "requested_permission": grant.requested_permission,
                    "store_id": grant.store_id,
                    "ip_address": ip_address,
                    "user_agent": user_agent,
                    "request_id": request_id,
                    "created_at": now,
                }
                if claimed:
                    fields.update(result=RESULT_SUCCESS, token_used_at=now)
                else:
                    fields.update(
                        result=RESULT_FAILED_TOKEN_USED,
                        error_code="TOKEN_REPLAY",
                        error_message="Token has already been used",
                    )
                try:
                    await audit_repo.append_token_event(session, token_jti=token_jti, **fields)
                    await session.commit()
                except IntegrityError as exc:
                    # Rolling back also releases our claim, so the retry starts clean.
                    await session.rollback()
                    last_error = exc
                    continue
            if not claimed:
                logger.warning("elevation_token_replay jti=%s ip=%s", token_jti, ip_address)
            return claimed
        # Every attempt lost the sequence race; surface the last conflict to run_storage.
        if last_error is None:
            raise RuntimeError(f"elevation token redemption made no attempts jti={token_jti}")
        raise last_error

    async def log_token_expired(self, token_jti: str) -> None:
        # Expiry is moot once redeemed; a second sweep over the same token writes nothing.
        await run_storage("log_token_expired", lambda: self._record_expiry(token_jti))

    async def _record_expiry(self, token_jti: str) -> bool:
        async with self._session_factory() as session:
            grant = await audit_repo.get_grant(session, token_jti=token_jti)
            if grant is None or grant.token_used_at is not None:
                return False
            if await audit_repo.has_token_event(session, token_jti=token_jti, event_type=EVENT_EXPIRED):
                return False
            try:
                await audit_repo.append_token_event(
                    session,
                    token_jti=token_jti,
                    user_id=grant.user_id,
                    user_email=grant.user_email,
                    session_id=grant.session_id,
                    event_type=EVENT_EXPIRED,
                    result=RESULT_FAILED_TOKEN_EXPIRED,
                    requested_permission=grant.requested_permission,
                    store_id=grant.store_id,
                    ip_address=grant.ip_address,
                    created_at=self._now(),
                )
                await session.commit()
            except IntegrityError:
                # A concurrent writer appended first; the expiry is recorded or moot.
                await session.rollback()
                return False
            return True

    async def check_rate_limit(
        self,
        identifier: str,
        identifier_type: Literal["ip", "email"],
        window_ms: int = DEFAULT_RATE_LIMIT_WINDOW_MS,
        max_attempts: int = DEFAULT_RATE_LIMIT_ATTEMPTS,
    ) -> RateLimitStatus:
        now = self._now()
        window_start = now - timedelta(milliseconds=window_ms)
        if identifier_type not in ("ip", "email"):
            # Same fail-open answer as a storage outage.
            logger.error("elevation_rate_limit_identifier_invalid identifier_type=%s", identifier_type)
            return RateLimitStatus(
                is_limited=False,
                attempt_count=0,
                window_start=now,
                remaining_attempts=max_attempts,
            )

        async def _count() -> int:
            async with self._session_factory() as session:
                return await audit_repo.count_failed_attempts(
                    session,
                    event_types=_RATE_LIMIT_EVENT_TYPES,
                    results=_RATE_LIMIT_RESULTS,
                    since=window_start,
                    until=now,
                    ip_address=identifier if identifier_type == "ip" else None,
                    user_email=identifier if identifier_type == "email" else None,
                )

        outcome = await run_storage("check_rate_limit", _count)
        if not outcome.ok:
            # Fail open: rate limiting sits behind credential checks.
            return RateLimitStatus(
                is_limited=False,
                attempt_count=0,
                window_start=now,
                remaining_attempts=max_attempts,
            )
        attempts = int(outcome.value or 0)
        return RateLimitStatus(
            is_limited=attempts >= max_attempts,
            attempt_count=attempts,
            window_start=window_start,
            remaining_attempts=max(0, max_attempts - attempts),
        )

    async def is_token_used(self, token_jti: str) -> bool:
        async def _lookup() -> bool:
            async with self._session_factory() as session:
                grant = await audit_repo.get_grant(session, token_jti=token_jti)
                # Tokens without a grant record are treated as spent.
                return grant is None or grant.token_used_at is not None

        # Fail closed: an audit outage must not bypass single-use enforcement.
        outcome = await run_storage("is_token_used", _lookup)
        return outcome.unwrap_or(True)

    async def query_audit_records(self, params: AuditQueryParams | None = None) -> list[ElevatedAccessAudit]:
        resolved = params or AuditQueryParams()

        async def _query() -> list[ElevatedAccessAudit]:
            async with self._session_factory() as session:
                return await audit_repo.list_records(
                    session,
                    user_id=resolved.user_id,
                    user_email=resolved.user_email,
                    store_id=resolved.store_id,
                    event_type=resolved.event_type,
                    result=resolved.result,
                    ip_address=resolved.ip_address,
                    from_date=resolved.from_date,
                    to_date=resolved.to_date,
                    offset=resolved.offset or 0,
                    limit=resolved.limit or 100,
                )

        outcome = await run_storage("query_audit_records", _query)
        return outcome.unwrap_or([])

    async def get_user_security_summary(self, user_id: str, days: int = 30) -> UserSecuritySummary:
        since = self._now() - timedelta(days=days)

        async def _summarize() -> UserSecuritySummary:
            async with self._session_factory() as session:

                async def _count(event_type: str | None = None, result: str | None = None) -> int:
                    return await audit_repo.count_user_events(
                        session, user_id=user_id, since=since, event_type=event_type, result=result
                    )

                # One session cannot run statements concurrently, so counts run in sequence.
                return UserSecuritySummary(
                    total_requests=await _count(),
                    successful_elevations=await _count(EVENT_GRANTED),
                    denied_attempts=await _count(EVENT_DENIED),
                    rate_limit_events=await _count(EVENT_RATE_LIMITED),
                    token_usages=await _count(EVENT_USED, RESULT_SUCCESS),
                    unique_ips=await audit_repo.count_user_distinct_ips(
                        session, user_id=user_id, since=since
                    ),
                )

        outcome = await run_storage("get_user_security_summary", _summarize)
        return outcome.unwrap_or(UserSecuritySummary())

    async def list_expired_unused_grants(self, limit: int = 500) -> list[str]:
        now = self._now()

        async def _list() -> list[str]:
            async with self._session_factory() as session:
                return await audit_repo.list_expired_unused_grant_jtis(session, now=now, limit=limit)

        outcome = await run_storage("list_expired_unused_grants", _list)
        return outcome.unwrap_or([])
