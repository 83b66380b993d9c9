from __future__ import annotations

from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from posguard.domain.models import Store


async def get_store_company(session: AsyncSession, *, store_id: str) -> tuple[str, str] | None:
    # Select only the ownership pair; the permission cache needs nothing else.
    result = await session.execute(
        select(Store.store_id, Store.company_id).where(Store.store_id == store_id)
    )
    row = result.first()
    if row is None:
        return None
    return row.store_id, row.company_id


async def list_store_companies(session: AsyncSession, *, store_ids: Iterable[str]) -> list[tuple[str, str]]:
    ids = list(dict.fromkeys(store_ids))
    if not ids:
        return []
    result = await session.execute(
        select(Store.store_id, Store.company_id).where(Store.store_id.in_(ids))
    )
    return [(row.store_id, row.company_id) for row in result.all()]


async def list_store_ids(session: AsyncSession, *, limit: int | None = None) -> list[str]:
    stmt = select(Store.store_id).order_by(Store.store_id)
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
