"""Per-project advisory lease held in Redis."""
from __future__ import annotations

from typing import Optional

import structlog
from redis.asyncio import Redis
from redis.asyncio.lock import Lock
from redis.exceptions import LockNotOwnedError, RedisError

from ..errors import PlatformFailure, ProjectBusyError

logger = structlog.get_logger()


class ProjectLock:
    """Async context manager around a TTL-bounded Redis lock.

    The TTL bounds how long a crashed flow can block its project. A flow that
    outlives the TTL loses the lease; release then only logs.
    """

    def __init__(self, redis: Redis, name: str, ttl: float, wait: float):
        self.redis = redis
        self.name = name
        self.ttl = ttl
        self.wait = wait
        self._lock: Optional[Lock] = None

    async def __aenter__(self) -> "ProjectLock":
        self._lock = self.redis.lock(self.name, timeout=self.ttl, blocking_timeout=self.wait)
        try:
            acquired = await self._lock.acquire()
        except RedisError as e:
            raise PlatformFailure(f"Failed to acquire {self.name}: {e}") from e
        if not acquired:
            raise ProjectBusyError(
                f"Another operation holds {self.name}; retry shortly", lock=self.name
            )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._lock is None:
            return
        try:
            await self._lock.release()
        except LockNotOwnedError:
            logger.warning("Project lease expired before release", lock=self.name)
        finally:
            self._lock = None
