"""Per-product, non-blocking advisory locks.

``ProductLock.acquire(product_id)`` returns a guard when the lock was taken
and ``None`` when another worker holds it. ``hold()`` wraps this in an async
context manager that releases the guard on every exit path.

Backends:
- ``PostgresAdvisoryLock``: ``pg_try_advisory_lock`` on a dedicated connection
- ``RedisProductLock``: ``SET NX EX`` with an ownership token
- ``LocalProductLock``: in-process, for single-process deployments and tests
"""

import json
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Set
from uuid import uuid4

import redis.asyncio as redis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from pricewatch.config import Settings, settings
from pricewatch.db.models import utcnow

logger = logging.getLogger(__name__)

LOCK_KEY_TEMPLATE = "check:product:{product_id}:lock"

# Delete only if the stored token matches: 0 = gone, 1 = deleted, 2 = mismatch
RELEASE_SCRIPT = """
local lock_value = redis.call('GET', KEYS[1])
if not lock_value then
    return 0
end

local success, data = pcall(cjson.decode, lock_value)
if not success then
    return 2
end

if data.token == ARGV[1] then
    redis.call('DEL', KEYS[1])
    return 1
end
return 2
"""


class LockGuard(ABC):
    """Proof of ownership of one product lock."""

    def __init__(self, product_id: int):
        self.product_id = product_id
        self.released = False

    async def release(self) -> None:
        if self.released:
            return
        self.released = True
        await self._release()

    @abstractmethod
    async def _release(self) -> None:
        ...


class ProductLock(ABC):
    """Non-blocking mutual exclusion keyed by product id."""

    @abstractmethod
    async def acquire(self, product_id: int) -> Optional[LockGuard]:
        """Try to take the lock without waiting."""

    @asynccontextmanager
    async def hold(self, product_id: int) -> AsyncIterator[Optional[LockGuard]]:
        """Yield a guard (or None if unavailable); release it on exit."""
        guard = await self.acquire(product_id)
        try:
            yield guard
        finally:
            if guard is not None:
                try:
                    await guard.release()
                except Exception as e:
                    logger.error(f"Failed to release lock for product {product_id}: {e}")

    async def close(self) -> None:
        pass


# ============================================================================
# Postgres
# ============================================================================

class _PostgresGuard(LockGuard):
    def __init__(self, product_id: int, namespace: int, conn: AsyncConnection):
        super().__init__(product_id)
        self.namespace = namespace
        self.conn = conn

    async def _release(self) -> None:
        try:
            await self.conn.execute(
                text("SELECT pg_advisory_unlock(:namespace, :key)"),
                {"namespace": self.namespace, "key": self.product_id},
            )
        except Exception:
            # Session locks die with the connection; never return it to the pool
            await self.conn.invalidate()
            raise
        finally:
            await self.conn.close()


class PostgresAdvisoryLock(ProductLock):
    """Session-scoped ``pg_try_advisory_lock(namespace, product_id)``."""

    def __init__(self, engine: AsyncEngine, namespace: Optional[int] = None):
        self.engine = engine
        self.namespace = namespace if namespace is not None else settings.lock_namespace

    async def acquire(self, product_id: int) -> Optional[LockGuard]:
        conn = await self.engine.connect()
        try:
            conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
            acquired = (
                await conn.execute(
                    text("SELECT pg_try_advisory_lock(:namespace, :key)"),
                    {"namespace": self.namespace, "key": product_id},
                )
            ).scalar()
        except Exception:
            await conn.close()
            raise

        if not acquired:
            await conn.close()
            return None
        return _PostgresGuard(product_id, self.namespace, conn)


# ============================================================================
# Redis
# ============================================================================

class _RedisGuard(LockGuard):
    def __init__(self, product_id: int, token: str, lock: "RedisProductLock"):
        super().__init__(product_id)
        self.token = token
        self.lock = lock

    async def _release(self) -> None:
        await self.lock.safe_unlock(self.product_id, self.token)


class RedisProductLock(ProductLock):
    """
    Redis lock with TTL and token-based ownership.

    The TTL bounds how long a crashed worker can starve a product.
    """

    def __init__(self, redis_url: Optional[str] = None, ttl_seconds: Optional[int] = None):
        self.redis_url = redis_url or settings.redis_url
        self.ttl_seconds = ttl_seconds or settings.lock_ttl_seconds
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, encoding="utf-8", decode_responses=True)
        return self._redis

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def acquire(self, product_id: int) -> Optional[LockGuard]:
        client = await self._get_redis()
        token = uuid4().hex
        value = json.dumps(
            {"product_id": product_id, "token": token, "acquired_at": utcnow().isoformat()}
        )
        acquired = await client.set(
            LOCK_KEY_TEMPLATE.format(product_id=product_id),
            value,
            nx=True,
            ex=self.ttl_seconds,
        )
        if not acquired:
            return None
        return _RedisGuard(product_id, token, self)

    async def safe_unlock(self, product_id: int, token: str) -> bool:
        """Delete the lock only if ``token`` still owns it."""
        client = await self._get_redis()
        result = await client.eval(
            RELEASE_SCRIPT, 1, LOCK_KEY_TEMPLATE.format(product_id=product_id), token
        )
        if result == 2:
            logger.warning(f"Lock for product {product_id} is owned by another token; left in place")
            return False
        return True


# ============================================================================
# In-process
# ============================================================================

class _LocalGuard(LockGuard):
    def __init__(self, product_id: int, lock: "LocalProductLock"):
        super().__init__(product_id)
        self.lock = lock

    async def _release(self) -> None:
        self.lock._held.discard(self.product_id)


class LocalProductLock(ProductLock):
    """Lock table held in memory; only excludes workers sharing this object."""

    def __init__(self):
        self._held: Set[int] = set()

    async def acquire(self, product_id: int) -> Optional[LockGuard]:
        if product_id in self._held:
            return None
        self._held.add(product_id)
        return _LocalGuard(product_id, self)

    def is_held(self, product_id: int) -> bool:
        return product_id in self._held


def build_product_lock(config: Settings = settings, engine: Optional[AsyncEngine] = None) -> ProductLock:
    """Create the lock backend named by ``config.lock_backend``."""
    if config.lock_backend == "postgres":
        if engine is None:
            from pricewatch.db.session import engine as default_engine

            engine = default_engine
        return PostgresAdvisoryLock(engine, namespace=config.lock_namespace)
    if config.lock_backend == "redis":
        return RedisProductLock(config.redis_url, ttl_seconds=config.lock_ttl_seconds)
    if config.lock_backend == "local":
        return LocalProductLock()
    raise ValueError(f"Unknown lock backend: {config.lock_backend}")
