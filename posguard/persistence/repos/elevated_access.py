from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from posguard.domain.models import (
    EVENT_EXPIRED,
    EVENT_GRANTED,
    GRANT_SEQUENCE,
    ElevatedAccessAudit,
)


async def insert_record(session: AsyncSession, **fields: Any) -> ElevatedAccessAudit:
    # Flush so the store-assigned id is available before commit.
    record = ElevatedAccessAudit(**fields)
    session.add(record)
    await session.flush()
    return record


async def get_grant(session: AsyncSession, *, token_jti: str) -> ElevatedAccessAudit | None:
    result = await session.execute(
        select(ElevatedAccessAudit).where(
            ElevatedAccessAudit.token_jti == token_jti,
            ElevatedAccessAudit.token_sequence == GRANT_SEQUENCE,
        )
    )
    return result.scalar_one_or_none()


async def claim_grant(session: AsyncSession, *, token_jti: str, used_at: datetime) -> bool:
    # Single conditional update; exactly one caller can move token_used_at off null.
    result = await session.execute(
        update(ElevatedAccessAudit)
        .where(
            ElevatedAccessAudit.token_jti == token_jti,
            ElevatedAccessAudit.token_sequence == GRANT_SEQUENCE,
            ElevatedAccessAudit.token_used_at.is_(None),
        )
        .values(token_used_at=used_at)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


async def next_sequence(session: AsyncSession, *, token_jti: str) -> int:
    result = await session.execute(
        select(func.max(ElevatedAccessAudit.token_sequence)).where(
            ElevatedAccessAudit.token_jti == token_jti
        )
    )
    current = result.scalar()
    return GRANT_SEQUENCE + 1 if current is None else int(current) + 1


async def append_token_event(
    session: AsyncSession,
    *,
    token_jti: str,
    **fields: Any,
) -> ElevatedAccessAudit:
    # Concurrent appends may race for the same sequence; the unique constraint rejects the loser.
    sequence = await next_sequence(session, token_jti=token_jti)
    return await insert_record(session, token_jti=token_jti, token_sequence=sequence, **fields)


async def has_token_event(session: AsyncSession, *, token_jti: str, event_type: str) -> bool:
    result = await session.execute(
        select(ElevatedAccessAudit.id)
        .where(
            ElevatedAccessAudit.token_jti == token_jti,
            ElevatedAccessAudit.event_type == event_type,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def count_failed_attempts(
    session: AsyncSession,
    *,
    event_types: Iterable[str],
    results: Iterable[str],
    since: datetime,
    until: datetime,
    ip_address: str | None = None,
    user_email: str | None = None,
) -> int:
    stmt = select(func.count()).select_from(ElevatedAccessAudit).where(
        ElevatedAccessAudit.event_type.in_(list(event_types)),
        ElevatedAccessAudit.result.in_(list(results)),
        ElevatedAccessAudit.created_at >= since,
        ElevatedAccessAudit.created_at <= until,
    )
    if ip_address is not None:
        stmt = stmt.where(ElevatedAccessAudit.ip_address == ip_address)
    if user_email is not None:
        stmt = stmt.where(ElevatedAccessAudit.user_email == user_email)
    result = await session.execute(stmt)
    return int(result.scalar() or 0)


async def list_records(
    session: AsyncSession,
    *,
    user_id: str | None = None,
    user_email: str | None = None,
    store_id: str | None = None,
    event_type: str | None = None,
    result: str | None = None,
    ip_address: str | None = None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    offset: int = 0,
    limit: int = 100,
) -> list[ElevatedAccessAudit]:
    stmt = select(ElevatedAccessAudit)
    if user_id:
        stmt = stmt.where(ElevatedAccessAudit.user_id == user_id)
    if user_email:
        stmt = stmt.where(ElevatedAccessAudit.user_email == user_email)
    if store_id:
        stmt = stmt.where(ElevatedAccessAudit.store_id == store_id)
    if event_type:
        stmt = stmt.where(ElevatedAccessAudit.event_type == event_type)
    if result:
        stmt = stmt.where(ElevatedAccessAudit.result == result)
    if ip_address:
        stmt = stmt.where(ElevatedAccessAudit.ip_address == ip_address)
    if from_date:
        stmt = stmt.where(ElevatedAccessAudit.created_at >= from_date)
    if to_date:
        stmt = stmt.where(ElevatedAccessAudit.created_at <= to_date)

    stmt = stmt.order_by(ElevatedAccessAudit.created_at.desc(), ElevatedAccessAudit.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    rows = await session.execute(stmt)
    return list(rows.scalars().all())


async def count_user_events(
    session: AsyncSession,
    *,
    user_id: str,
    since: datetime,
    event_type: str | None = None,
    result: str | None = None,
) -> int:
    stmt = select(func.count()).select_from(ElevatedAccessAudit).where(
        ElevatedAccessAudit.user_id == user_id,
        ElevatedAccessAudit.created_at >= since,
    )
    if event_type:
        stmt = stmt.where(ElevatedAccessAudit.event_type == event_type)
    if result:
        stmt = stmt.where(ElevatedAccessAudit.result == result)
    rows = await session.execute(stmt)
    return int(rows.scalar() or 0)


async def count_user_distinct_ips(session: AsyncSession, *, user_id: str, since: datetime) -> int:
    stmt = (
        select(ElevatedAccessAudit.ip_address)
        .where(
            ElevatedAccessAudit.user_id == user_id,
            ElevatedAccessAudit.created_at >= since,
        )
        .group_by(ElevatedAccessAudit.ip_address)
    )
    rows = await session.execute(stmt)
    return len(rows.all())


async def list_expired_unused_grant_jtis(
    session: AsyncSession,
    *,
    now: datetime,
    limit: int = 500,
) -> list[str]:
    # Grants past expiry that were never redeemed and have no expiry record yet.
    expiry = aliased(ElevatedAccessAudit)
    stmt = (
        select(ElevatedAccessAudit.token_jti)
        .where(
            ElevatedAccessAudit.event_type == EVENT_GRANTED,
            ElevatedAccessAudit.token_sequence == GRANT_SEQUENCE,
            ElevatedAccessAudit.token_used_at.is_(None),
            ElevatedAccessAudit.token_expires_at < now,
            ~exists().where(
                expiry.token_jti == ElevatedAccessAudit.token_jti,
                expiry.event_type == EVENT_EXPIRED,
            ),
        )
        .order_by(ElevatedAccessAudit.token_expires_at.asc())
        .limit(limit)
    )
    rows = await session.execute(stmt)
    return [jti for jti in rows.scalars().all() if jti]
