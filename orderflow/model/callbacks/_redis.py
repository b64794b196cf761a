from __future__ import annotations
from typing import Optional

import redis.asyncio as redis


# ---- keys
def k_seen(key: str) -> str: return f"cbseen:{key}"


class CallbackGate:
    def __init__(self, *, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def mark_event_seen(self, key: Optional[str]) -> bool:
        # NX gate: True if we set it now
        if not key:
            return True
        ok = await self.r.set(k_seen(key), "1", nx=True, ex=self.ttl)
        return bool(ok)

    async def forget_event(self, key: str) -> None:
        await self.r.delete(k_seen(key))

    async def purge_older_than(self, ts: float) -> int:
        # keys expire on their own
        return 0
