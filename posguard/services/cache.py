from __future__ import annotations

from redis.asyncio import Redis

from posguard.core.config import get_settings


def create_redis(url: str | None = None) -> Redis:
    # Connection pools are lazy; nothing touches the network until the first command.
    resolved = url or get_settings().redis_url
    return Redis.from_url(resolved, encoding="utf-8", decode_responses=True)
