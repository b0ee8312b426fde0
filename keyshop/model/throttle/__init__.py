# model/throttle/__init__.py
import os
from typing import Optional, Callable, AsyncContextManager
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ._postgres import ThrottleStore as PgThrottleStore
from ._redis import ThrottleStore as RedisThrottleStore

Gated = Callable[[], AsyncContextManager[None]]

BACKEND = os.getenv("THROTTLE_BACKEND", "pg").lower()  # 'pg' | 'redis'


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              gated: Optional[Gated] = None,
              backend: Optional[str] = None):
    backend = (backend or BACKEND).lower()
    if backend == "redis":
        if r is None:
            raise RuntimeError("ThrottleStore(redis) requires r=redis.Redis")
        return RedisThrottleStore(r=r)
    if db is None:
        raise RuntimeError("ThrottleStore(pg) requires db=AsyncSession")
    if gated is None:
        raise RuntimeError("ThrottleStore(pg) requires gated=Gated")
    return PgThrottleStore(db=db, gated=gated)


__all__ = ["PgThrottleStore", "RedisThrottleStore", "new_store", "BACKEND"]
