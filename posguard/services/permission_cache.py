from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from typing import Iterable

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from posguard.persistence.repos import stores as stores_repo
from posguard.persistence.results import run_storage


logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 900


@dataclass(frozen=True)
class CacheMetrics:
    hits: int
    misses: int
    errors: int
    hit_rate: float


class PermissionCacheService:
    """Read-through cache of store -> company ownership.

    Entries are advisory. A miss, a stale entry or a Redis outage falls back
    to the stores table, and negative lookups are never cached.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: Redis,
        *,
        key_prefix: str = "posguard:perm",
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        self._session_factory = session_factory
        self._redis = redis
        self._key_prefix = key_prefix
        self._ttl_seconds = ttl_seconds
        # Process-local counters; not shared across instances.
        self._hits = 0
        self._misses = 0
        self._errors = 0

    def _key(self, store_id: str) -> str:
        return f"{self._key_prefix}:store_company:{store_id}"

    def _entry(self, store_id: str, company_id: str) -> str:
        return json.dumps(
            {
                "store_id": store_id,
                "company_id": company_id,
                "cached_at": datetime.now(timezone.utc).isoformat(),
            }
        )

    async def _read_cached(self, store_id: str) -> str | None:
        cached = await run_storage("permission_cache_get", lambda: self._redis.get(self._key(store_id)))
        if not cached.ok:
            self._errors += 1
            return None
        if cached.value is None:
            return None
        try:
            company_id = json.loads(cached.value).get("company_id")
        except (TypeError, ValueError, AttributeError):
            logger.warning("permission_cache_entry_corrupt store_id=%s", store_id)
            return None
        return str(company_id) if company_id else None

    async def get_store_company_id(self, store_id: str) -> str | None:
        company_id = await self._read_cached(store_id)
        if company_id is not None:
            self._hits += 1
            return company_id
        self._misses += 1

        async def _lookup() -> tuple[str, str] | None:
            async with self._session_factory() as session:
                return await stores_repo.get_store_company(session, store_id=store_id)

        found = await run_storage("permission_cache_store_lookup", _lookup)
        if not found.ok or found.value is None:
            return None
        _store_id, resolved_company_id = found.value

        written = await run_storage(
            "permission_cache_set",
            lambda: self._redis.setex(
                self._key(store_id), self._ttl_seconds, self._entry(store_id, resolved_company_id)
            ),
        )
        if not written.ok:
            self._errors += 1
        return resolved_company_id

    async def verify_store_company_access(self, company_ids: Iterable[str], store_id: str) -> bool:
        allowed = {company_id for company_id in company_ids if company_id}
        if not allowed:
            return False
        company_id = await self.get_store_company_id(store_id)
        return company_id is not None and company_id in allowed

    async def invalidate_store_company_cache(self, store_id: str) -> None:
        deleted = await run_storage("permission_cache_delete", lambda: self._redis.delete(self._key(store_id)))
        if not deleted.ok:
            self._errors += 1

    async def warm_store_company_cache(self, store_ids: Iterable[str]) -> int:
        ids = list(store_ids)
        if not ids:
            return 0

        async def _fetch() -> list[tuple[str, str]]:
            async with self._session_factory() as session:
                return await stores_repo.list_store_companies(session, store_ids=ids)

        fetched = await run_storage("permission_cache_warm_fetch", _fetch)
        mappings = fetched.unwrap_or([])
        if not mappings:
            return 0

        async def _write() -> None:
            pipe = self._redis.pipeline(transaction=False)
            for store_id, company_id in mappings:
                pipe.setex(self._key(store_id), self._ttl_seconds, self._entry(store_id, company_id))
            await pipe.execute()

        written = await run_storage("permission_cache_warm_write", _write)
        if not written.ok:
            self._errors += 1
            return 0
        logger.info("permission_cache_warmed stores=%s", len(mappings))
        return len(mappings)

    def get_metrics(self) -> CacheMetrics:
        total = self._hits + self._misses
        hit_rate = round((self._hits / total) * 100, 2) if total else 0.0
        return CacheMetrics(hits=self._hits, misses=self._misses, errors=self._errors, hit_rate=hit_rate)

    def reset_metrics(self) -> None:
        self._hits = 0
        self._misses = 0
        self._errors = 0
