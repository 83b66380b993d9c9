from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from posguard.domain.models import User


async def get_user_by_email(session: AsyncSession, *, email: str) -> User | None:
    # Emails are matched case-insensitively to mirror login behaviour.
    result = await session.execute(
        select(User).where(func.lower(User.email) == email.strip().lower())
    )
    return result.scalar_one_or_none()
