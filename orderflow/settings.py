from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy import text, JSON

from .helpers import now_ts
from .infra.sql import Database, GatedAsyncSession

logger = structlog.get_logger(__name__)


# ----------------------------
# Business settings snapshot
# ----------------------------
@dataclass(frozen=True)
class SettingsSnapshot:
    points_earn_rate: int = 1000
    points_per_amount: int = 100_000
    cashback_percent: float = 5.0
    min_topup: int = 50_000
    loaded_at: float = 0.0

    @classmethod
    def from_rows(cls, values: Dict[str, Any],
                  loaded_at: float = 0.0) -> "SettingsSnapshot":
        """Parse ``system_settings`` rows; each field falls back on its own
        when its row is missing or its value does not convert."""
        d = cls()

        def pick(key: str, field: str, convert: Callable[[Any], Any],
                 default):
            v = values.get(key)
            if not isinstance(v, dict) or v.get(field) is None:
                return default
            try:
                out = convert(v[field])
            except (TypeError, ValueError):
                logger.warning("Malformed setting, using default", key=key,
                               field=field, value=v[field], default=default)
                return default
            if out < 0:
                logger.warning("Negative setting, using default", key=key,
                               field=field, value=out, default=default)
                return default
            return out

        return cls(
            points_earn_rate=pick("points_earn_rate", "rate", int,
                                  d.points_earn_rate),
            points_per_amount=pick("points_earn_rate", "per_amount", int,
                                   d.points_per_amount),
            cashback_percent=pick("reseller_cashback_rate", "percent", float,
                                  d.cashback_percent),
            min_topup=pick("min_topup_amount", "amount", int, d.min_topup),
            loaded_at=loaded_at,
        )


_SELECT_SETTINGS = text(
    "SELECT key, value FROM system_settings"
).columns(value=JSON)


async def load_snapshot(db: GatedAsyncSession) -> SettingsSnapshot:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(_SELECT_SETTINGS)).all()
    return SettingsSnapshot.from_rows({k: v for k, v in rows},
                                      loaded_at=now_ts())


class SettingsCache:
    """Holds the current snapshot; reloads at most every ``refresh_seconds``."""

    def __init__(self, database: Database, refresh_seconds: float = 60.0):
        self.database = database
        self.refresh_seconds = refresh_seconds
        self._snapshot: Optional[SettingsSnapshot] = None
        self._lock = asyncio.Lock()

    def _fresh(self) -> bool:
        s = self._snapshot
        return s is not None and (
            now_ts() - s.loaded_at < self.refresh_seconds
        )

    async def get(self) -> SettingsSnapshot:
        if self._fresh():
            return self._snapshot
        async with self._lock:
            if self._fresh():
                return self._snapshot
            async with self.database.session() as db:
                self._snapshot = await load_snapshot(db)
            logger.debug("Settings reloaded", snapshot=self._snapshot)
            return self._snapshot

    def invalidate(self) -> None:
        self._snapshot = None
