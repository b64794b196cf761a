"""
Order pipeline: wires the components together at the order boundaries.

    order -> PAID       fulfillment jobs created, "order.paid" sent
    order -> DELIVERED  stock finalized, cashback or points credited,
                        "order.delivered" sent
    order -> FAILED     reserved stock released, "order.failed" sent

Every component call stays idempotent on its own, so a hook that runs twice
(a reconcile racing a callback, a batch re-run) does no extra work.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
import structlog

from .config import Config
from .gateway import PaymentGateway
from .helpers import now_ts
from .infra.sql import Database, GatedAsyncSession
from .model import fulfillment, loyalty, orders, payments, stock, wallet
from .model.callbacks import SEEN_TTL_SECONDS, new_store
from .model.orm import OrderStatus
from .notify import Notifier
from .providers import ProviderRegistry
from .settings import SettingsCache

logger = structlog.get_logger(__name__)


class Pipeline:
    def __init__(self, *, cfg: Config, database: Database,
                 gateway: PaymentGateway, providers: ProviderRegistry,
                 settings: SettingsCache, notifier: Notifier,
                 r: Optional[redis.Redis] = None):
        self.cfg = cfg
        self.database = database
        self.gateway = gateway
        self.providers = providers
        self.settings = settings
        self.notifier = notifier
        self.redis = r

    # ---- boundary hooks
    async def on_transition(self, db: GatedAsyncSession, order_id: str,
                            status: Optional[str]) -> bool:
        """
        Run the side effects of the order entering ``status``.

        The status change is already committed when this runs, so a hook
        failure is logged rather than raised; the order keeps its old
        ``settled_status`` and ``housekeeping`` runs the hook again.
        """
        hook = {
            OrderStatus.PAID: self.on_paid,
            OrderStatus.DELIVERED: self.on_delivered,
            OrderStatus.FAILED: self.on_failed,
        }.get(status)
        if hook is None:
            return False
        try:
            await hook(db, order_id)
        except Exception:
            logger.exception("Order hook failed, left for housekeeping",
                             order_id=order_id, status=status)
            return False
        await orders.mark_settled(db, order_id, status)
        return True

    async def on_paid(self, db: GatedAsyncSession, order_id: str) -> None:
        await fulfillment.create_jobs(db, order_id, self.cfg.job_max_attempts)
        await self.notifier.dispatch(db, order_id, "order.paid")

    async def on_delivered(self, db: GatedAsyncSession,
                           order_id: str) -> None:
        await stock.finalize(db, order_id)
        snapshot = await self.settings.get()
        await wallet.credit_cashback(db, order_id, snapshot)
        await loyalty.award_points(db, order_id, snapshot)
        await self.notifier.dispatch(db, order_id, "order.delivered")

    async def on_failed(self, db: GatedAsyncSession, order_id: str) -> None:
        await stock.release(db, order_id)
        await self.notifier.dispatch(db, order_id, "order.failed")

    async def after_job(self, result: Dict[str, Any]) -> None:
        if result.get("order_transition") is None:
            return
        async with self.database.session() as db:
            await self.on_transition(db, result["order_id"],
                                     result["order_transition"])

    # ---- payment entry points
    async def open_payment(self, db: GatedAsyncSession,
                           order_id: str) -> Dict[str, Any]:
        return await payments.open_payment(
            db, self.gateway, order_id,
            fallback_ttl=self.cfg.payment_fallback_ttl,
        )

    async def reconcile(self, db: GatedAsyncSession,
                        order_id: str) -> Dict[str, Any]:
        res = await payments.reconcile(db, self.gateway, order_id)
        await self.on_transition(db, order_id, res["order_transition"])
        return res

    async def apply_callback(self, db: GatedAsyncSession, payload: bytes,
                             headers: dict) -> Dict[str, Any]:
        gate = new_store(backend=self.cfg.gate_backend, db=db, r=self.redis)
        res = await payments.apply_callback(db, self.gateway, gate, payload,
                                            headers)
        if res["order_id"]:
            await self.on_transition(db, res["order_id"],
                                     res["order_transition"])
        return res

    async def pay_with_wallet(self, db: GatedAsyncSession, order_id: str,
                              reseller_id: str) -> Dict[str, Any]:
        res = await wallet.pay_with_wallet(db, order_id, reseller_id)
        if res["applied"]:
            await self.on_transition(db, order_id, OrderStatus.PAID)
        return res

    async def cancel(self, db: GatedAsyncSession, order_id: str,
                     reason: str) -> bool:
        return await orders.cancel_order(db, order_id, reason)

    # ---- periodic work
    async def run_batch(self, limit: Optional[int] = None
                        ) -> List[Dict[str, Any]]:
        return await fulfillment.run_batch(
            self.database, self.providers,
            limit=limit or self.cfg.fulfillment_batch_size,
            concurrency=self.cfg.fulfillment_concurrency,
            after_job=self.after_job,
        )

    async def housekeeping(self) -> Dict[str, int]:
        """
        Periodic repair: requeue jobs of dead workers, expire overdue
        payments, re-run order hooks that did not finish and drop callback
        keys past their retention.
        """
        async with self.database.session() as db:
            requeued = await fulfillment.requeue_stale(
                db, self.cfg.job_lease_seconds
            )
            for res in requeued:
                await self.on_transition(db, res["order_id"],
                                         res["order_transition"])
            expired = await payments.expire_stale(db)

            resettled = 0
            outstanding = await orders.unsettled(
                db, now_ts() - self.cfg.hook_retry_seconds
            )
            for row in outstanding:
                logger.info("Re-running order hook", order_id=row["order_id"],
                            status=row["hook"])
                if await self.on_transition(db, row["order_id"], row["hook"]):
                    resettled += 1

            gate = new_store(backend=self.cfg.gate_backend, db=db,
                             r=self.redis)
            purged = await gate.purge_older_than(now_ts() - SEEN_TTL_SECONDS)
        return {"requeued": len(requeued), "expired": len(expired),
                "resettled": resettled, "purged": purged}
