from __future__ import annotations

import argparse
import asyncio

from posguard.core.config import get_settings
from posguard.core.logging import configure_logging
from posguard.persistence.db import create_engine, create_session_factory
from posguard.persistence.repos import stores as stores_repo
from posguard.services.cache import create_redis
from posguard.services.permission_cache import PermissionCacheService


async def warm(store_ids: list[str], *, batch_size: int) -> int:
    settings = get_settings()
    engine = create_engine(settings=settings)
    redis = create_redis(settings.redis_url)
    session_factory = create_session_factory(engine)
    cache = PermissionCacheService(
        session_factory,
        redis,
        key_prefix=settings.permission_cache_prefix,
        ttl_seconds=settings.permission_cache_ttl_s,
    )
    try:
        if not store_ids:
            async with session_factory() as session:
                store_ids = await stores_repo.list_store_ids(session)
        warmed = 0
        for start in range(0, len(store_ids), batch_size):
            warmed += await cache.warm_store_company_cache(store_ids[start : start + batch_size])
        return warmed
    finally:
        await redis.aclose()
        await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Preload store -> company mappings into Redis")
    parser.add_argument("store_ids", nargs="*", help="Store ids to warm; defaults to every store")
    parser.add_argument("--batch-size", type=int, default=1000)
    args = parser.parse_args()
    configure_logging()
    warmed = asyncio.run(warm(list(args.store_ids), batch_size=args.batch_size))
    print(f"warmed_store_mappings={warmed}")


if __name__ == "__main__":
    main()
