from typing import Optional

import redis.asyncio as redis

from ...infra.sql import GatedAsyncSession
from ._postgres import CallbackGate as SqlCallbackGate
from ._redis import CallbackGate as RedisCallbackGate

SEEN_TTL_SECONDS = 7 * 24 * 3600


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, backend: str,
              db: Optional[GatedAsyncSession] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = SEEN_TTL_SECONDS):
    """Callback gate for ``backend`` ('pg' | 'redis', from GATE_BACKEND)."""
    backend = backend.lower()
    if backend == "pg":
        if db is None:
            raise RuntimeError(
                "CallbackGate(pg) requires db=GatedAsyncSession"
            )
        return SqlCallbackGate(db=db)
    if backend == "redis":
        if r is None:
            raise RuntimeError("CallbackGate(redis) requires r=redis.Redis")
        return RedisCallbackGate(r=r, ttl_seconds=ttl_seconds)
    raise RuntimeError(f"unknown GATE_BACKEND {backend!r}")


__all__ = ["SqlCallbackGate", "RedisCallbackGate", "new_store",
           "SEEN_TTL_SECONDS"]
