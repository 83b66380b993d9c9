from __future__ import annotations

from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from posguard.domain.models import Store, User
from posguard.services.auth.passwords import hash_password


async def create_test_user(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    email: str,
    password: str = "correct horse",
    permissions: list[str] | None = None,
    roles: list[str] | None = None,
    company_ids: list[str] | None = None,
    store_ids: list[str] | None = None,
    is_active: bool = True,
    is_system_admin: bool = False,
) -> User:
    # Low bcrypt cost keeps the suite fast; production uses the default.
    user = User(
        id=str(uuid4()),
        email=email,
        password_hash=hash_password(password, rounds=4),
        is_active=is_active,
        is_system_admin=is_system_admin,
        roles=roles or ["STORE_MANAGER"],
        permissions=permissions or [],
        company_ids=company_ids or [],
        store_ids=store_ids or [],
    )
    async with session_factory() as session:
        session.add(user)
        await session.commit()
    return user


async def create_test_store(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    store_id: str,
    company_id: str,
    name: str | None = None,
) -> Store:
    store = Store(store_id=store_id, company_id=company_id, name=name or f"Store {store_id}")
    async with session_factory() as session:
        session.add(store)
        await session.commit()
    return store
