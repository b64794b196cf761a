from __future__ import annotations
from typing import Optional

from sqlalchemy import text

from ...helpers import now_ts
from ...infra.sql import GatedAsyncSession


class CallbackGate:
    """Dedupe gate for gateway callbacks, kept in ``callback_events_seen``."""

    def __init__(self, *, db: GatedAsyncSession) -> None:
        self.db = db

    async def mark_event_seen(self, key: Optional[str]) -> bool:
        # True if new (not seen), False if already seen
        if not key:
            return True
        async with self.db.gated():
            async with self.db.session.begin():
                row = (await self.db.session.execute(text("""
                  INSERT INTO callback_events_seen(idempotency_key, created_at)
                  VALUES(:k, :now)
                  ON CONFLICT (idempotency_key) DO NOTHING
                  RETURNING idempotency_key
                """), {"k": key, "now": now_ts()})).first()
        return row is not None

    async def forget_event(self, key: str) -> None:
        async with self.db.gated():
            async with self.db.session.begin():
                await self.db.session.execute(text("""
                  DELETE FROM callback_events_seen WHERE idempotency_key = :k
                """), {"k": key})

    async def purge_older_than(self, ts: float) -> int:
        async with self.db.gated():
            async with self.db.session.begin():
                rows = (await self.db.session.execute(text("""
                  DELETE FROM callback_events_seen WHERE created_at < :ts
                  RETURNING idempotency_key
                """), {"ts": ts})).all()
        return len(rows)
