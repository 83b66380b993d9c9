from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Awaitable, Callable, Generic, TypeVar

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Infrastructure failures converted into results; anything else is a programming error.
STORAGE_ERRORS: tuple[type[BaseException], ...] = (SQLAlchemyError, RedisError, OSError)


@dataclass(frozen=True)
class StorageResult(Generic[T]):
    # Carry either a value or the infrastructure error that prevented it.
    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap_or(self, default: T) -> T:
        if self.error is not None:
            return default
        return self.value  # type: ignore[return-value]


async def run_storage(operation: str, func: Callable[[], Awaitable[T]]) -> StorageResult[T]:
    # Execute a storage/cache call and convert transport failures into a result.
    try:
        value = await func()
    except STORAGE_ERRORS as exc:
        logger.warning("storage_operation_failed operation=%s", operation, exc_info=exc)
        return StorageResult(error=exc)
    return StorageResult(value=value)
