"""
Fulfillment scheduler.

Per job:

    PENDING -> PROCESSING -> COMPLETED
                          -> PENDING    (transient failure, attempts += 1,
                                         next_retry_at = now + backoff)
                          -> FAILED     (permanent failure, or attempts
                                         reached max_attempts)

Claiming a job is the conditional write PENDING -> PROCESSING, so a job
dispatched twice runs once. Provider calls happen outside any transaction;
everything a job writes on completion (delivery data, job status, order
aggregation) is one transaction.
"""

from __future__ import annotations
import asyncio
from typing import Optional, Dict, Any, List, Callable, Awaitable

import structlog
from sqlalchemy import text, bindparam, JSON
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    ExternalError, ExternalPermanentError, ExternalTransientError,
    InsufficientStock, InvalidInput,
)
from ..helpers import now_ts, new_id, to_iso
from ..infra.sql import Database, GatedAsyncSession
from ..infra.timings import timeit
from ..providers import ProviderRegistry
from .orm import JobStatus, JobType, OrderStatus
from .orders import _transition, _aggregate
from . import stock

logger = structlog.get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
ACCOUNT_COOLDOWN_SECONDS = 5 * 60

AfterJob = Callable[[Dict[str, Any]], Awaitable[None]]


def backoff(attempts: int) -> int:
    """Seconds until the next try after ``attempts`` failures: 1m, 2m, 4m..."""
    return min(60 * 2 ** max(0, attempts - 1), 3600)


_JOB_COLUMNS = """
    id, order_item_id, order_id, job_type, status, attempts, max_attempts,
    last_error, next_retry_at, result, provider_account_id, created_at,
    started_at, completed_at
"""


# ------------------------------------------------------------------------------
# UN-GATED internal functions
# ------------------------------------------------------------------------------
async def _create_jobs(session: AsyncSession, order_id: str,
                       max_attempts: int) -> List[str]:
    items = (await session.execute(text("""
        SELECT oi.id, p.product_type
        FROM order_items oi JOIN products p ON p.id = oi.product_id
        WHERE oi.order_id = :id
        ORDER BY oi.created_at, oi.id
    """), {"id": order_id})).all()
    now = now_ts()
    created = []
    for item_id, product_type in items:
        row = (await session.execute(text("""
            INSERT INTO fulfillment_jobs(
                id, order_item_id, order_id, job_type, status, attempts,
                max_attempts, created_at
            ) VALUES (
                :id, :item, :order_id, :job_type, 'PENDING', 0,
                :max_attempts, :now
            )
            ON CONFLICT (order_item_id) DO NOTHING
            RETURNING id
        """), {
            "id": new_id(), "item": item_id, "order_id": order_id,
            "job_type": product_type or JobType.STOCK,
            "max_attempts": max_attempts, "now": now,
        })).first()
        if row is not None:
            created.append(row[0])
    return created


async def _claim_job(session: AsyncSession, job_id: str,
                     now: float) -> Optional[Dict[str, Any]]:
    row = (await session.execute(text(f"""
        UPDATE fulfillment_jobs
        SET status = 'PROCESSING', started_at = :now
        WHERE id = :id AND status = 'PENDING'
          AND (next_retry_at IS NULL OR next_retry_at <= :now)
        RETURNING {_JOB_COLUMNS}
    """).columns(result=JSON), {"id": job_id, "now": now})).mappings().first()
    return dict(row) if row else None


async def _load_item(session: AsyncSession,
                     item_id: str) -> Optional[Dict[str, Any]]:
    row = (await session.execute(text("""
        SELECT oi.id, oi.order_id, oi.product_id, oi.quantity,
               oi.input_data, oi.delivery_data, p.name AS product_name,
               p.product_type, p.provider_slug
        FROM order_items oi JOIN products p ON p.id = oi.product_id
        WHERE oi.id = :id
    """).columns(input_data=JSON, delivery_data=JSON),
        {"id": item_id})).mappings().first()
    return dict(row) if row else None


_DELIVER_SQL = text("""
    UPDATE order_items
    SET delivery_data = :delivery_data, delivered_at = :now
    WHERE id = :id AND delivery_data IS NULL
    RETURNING id
""").bindparams(bindparam("delivery_data", type_=JSON))

_COMPLETE_SQL = text("""
    UPDATE fulfillment_jobs
    SET status = 'COMPLETED', result = :result, completed_at = :now,
        provider_account_id = COALESCE(:account_id, provider_account_id),
        last_error = NULL
    WHERE id = :id AND status = 'PROCESSING'
    RETURNING id
""").bindparams(bindparam("result", type_=JSON))


async def _complete(session: AsyncSession, job: Dict[str, Any],
                    delivery_data: Optional[dict], result: dict,
                    account_id: Optional[str] = None) -> Dict[str, Any]:
    now = now_ts()
    if delivery_data is not None:
        await session.execute(_DELIVER_SQL, {
            "id": job["order_item_id"], "delivery_data": delivery_data,
            "now": now,
        })
    done = (await session.execute(_COMPLETE_SQL, {
        "id": job["id"], "result": result, "account_id": account_id,
        "now": now,
    })).first()
    order_status = await _aggregate(session, job["order_id"])
    return {
        "job_id": job["id"],
        "order_id": job["order_id"],
        "status": JobStatus.COMPLETED if done else "SKIPPED",
        "message": "delivered" if done else "job no longer processing",
        "order_transition": order_status,
    }


async def _fail(session: AsyncSession, job: Dict[str, Any], error: str,
                permanent: bool) -> Dict[str, Any]:
    now = now_ts()
    attempts = int(job["attempts"]) + 1
    max_attempts = int(job["max_attempts"])
    if permanent or attempts >= max_attempts:
        row = (await session.execute(text("""
            UPDATE fulfillment_jobs
            SET status = 'FAILED', attempts = :attempts, last_error = :err,
                completed_at = :now
            WHERE id = :id AND status = 'PROCESSING'
            RETURNING id
        """), {"id": job["id"], "attempts": min(attempts, max_attempts),
               "err": error, "now": now})).first()
        status = JobStatus.FAILED
    else:
        row = (await session.execute(text("""
            UPDATE fulfillment_jobs
            SET status = 'PENDING', attempts = :attempts, last_error = :err,
                next_retry_at = :retry_at
            WHERE id = :id AND status = 'PROCESSING'
            RETURNING id
        """), {"id": job["id"], "attempts": attempts, "err": error,
               "retry_at": now + backoff(attempts)})).first()
        status = JobStatus.PENDING
    order_status = await _aggregate(session, job["order_id"])
    return {
        "job_id": job["id"],
        "order_id": job["order_id"],
        "status": status if row else "SKIPPED",
        "message": error,
        "attempts": attempts,
        "order_transition": order_status,
    }


async def _reserve_account(session: AsyncSession, provider_slug: str,
                           now: float) -> Optional[Dict[str, Any]]:
    """Least used active account outside cooldown; one invite is booked."""
    candidates = (await session.execute(text("""
        SELECT id, provider_slug, name, credentials, max_invites,
               invites_used
        FROM provider_accounts
        WHERE provider_slug = :slug AND is_active = :active
          AND (cooldown_until IS NULL OR cooldown_until < :now)
          AND (max_invites IS NULL OR invites_used < max_invites)
        ORDER BY invites_used, id
        LIMIT 5
    """).columns(credentials=JSON), {
        "slug": provider_slug, "active": True, "now": now,
    })).mappings().all()
    for acc in candidates:
        # max_invites is the account's total invite stock
        row = (await session.execute(text("""
            UPDATE provider_accounts
            SET invites_used = invites_used + 1
            WHERE id = :id
              AND (max_invites IS NULL OR invites_used < max_invites)
            RETURNING id
        """), {"id": acc["id"]})).first()
        if row is not None:
            return dict(acc)
    return None


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------
async def create_jobs(db: GatedAsyncSession, order_id: str,
                      max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> List[str]:
    """One job per order item; items that already have one are skipped."""
    async with db.gated():
        async with db.session.begin():
            created = await _create_jobs(db.session, order_id, max_attempts)
    if created:
        logger.info("Fulfillment jobs created", order_id=order_id,
                    jobs=len(created))
    return created


async def select_due(db: GatedAsyncSession, limit: int = 10,
                     now: Optional[float] = None) -> List[str]:
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT id FROM fulfillment_jobs
                WHERE status = 'PENDING'
                  AND (next_retry_at IS NULL OR next_retry_at <= :now)
                ORDER BY created_at, id
                LIMIT :n
            """), {"now": now, "n": int(limit)})).all()
    return [r[0] for r in rows]


async def get_job(db: GatedAsyncSession,
                  job_id: str) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text(f"""
                SELECT {_JOB_COLUMNS} FROM fulfillment_jobs WHERE id = :id
            """).columns(result=JSON), {"id": job_id})).mappings().first()
    return dict(row) if row else None


async def run_job(db: GatedAsyncSession, job_id: str,
                  providers: ProviderRegistry) -> Dict[str, Any]:
    """
    Execute one job if it is claimable now.

    Safe under at-least-once dispatch: a job that is not PENDING and due
    comes back as SKIPPED, and an item that already holds delivery data is
    completed without calling the provider again.
    """
    async with db.gated():
        async with db.session.begin():
            job = await _claim_job(db.session, job_id, now_ts())
            if job is None:
                return {"job_id": job_id, "status": "SKIPPED",
                        "message": "not claimable", "order_id": None,
                        "order_transition": None}
            order_status = (await db.session.execute(
                text("SELECT status FROM orders WHERE id = :id"),
                {"id": job["order_id"]},
            )).scalar_one()
            if order_status == OrderStatus.PAID:
                await _transition(db.session, job["order_id"],
                                  OrderStatus.PAID, OrderStatus.PROCESSING)
            elif order_status != OrderStatus.PROCESSING:
                out = await _fail(db.session, job,
                                  f"order is {order_status}", True)
                logger.warning("Job dropped, order not payable",
                               job_id=job_id, order_id=job["order_id"],
                               order_status=order_status)
                return out
            item = await _load_item(db.session, job["order_item_id"])

    log = logger.bind(job_id=job_id, order_id=job["order_id"],
                      job_type=job["job_type"])

    if item is None:
        async with db.gated():
            async with db.session.begin():
                return await _fail(db.session, job,
                                   "Order item or product not found", True)

    if item["delivery_data"] is not None:
        # delivered by an earlier run that died before completing the job
        async with db.gated():
            async with db.session.begin():
                out = await _complete(db.session, job, None,
                                      {"recovered": True})
        log.info("Job completed from existing delivery")
        return out

    try:
        async with timeit(f"fulfillment.{job['job_type'].lower()}"):
            if job["job_type"] == JobType.INVITE:
                out = await _run_invite(db, job, item, providers)
            else:
                out = await _run_stock(db, job, item)
    except (ExternalPermanentError, ExternalTransientError,
            InsufficientStock) as e:
        permanent = isinstance(e, ExternalPermanentError)
        async with db.gated():
            async with db.session.begin():
                out = await _fail(db.session, job, e.message, permanent)
        log.warning("Job attempt failed", error=e.message,
                    permanent=permanent, attempts=out["attempts"],
                    job_status=out["status"])
        return out
    except Exception as e:
        # unexpected: retried like a transient failure, bounded by attempts
        log.exception("Job crashed")
        async with db.gated():
            async with db.session.begin():
                return await _fail(db.session, job,
                                   f"{type(e).__name__}: {e}", False)

    log.info("Job completed", order_transition=out["order_transition"])
    return out


async def _run_stock(db: GatedAsyncSession, job: Dict[str, Any],
                     item: Dict[str, Any]) -> Dict[str, Any]:
    # no external I/O: claim, deliver, sell and complete in one transaction
    async with db.gated():
        async with db.session.begin():
            units = await stock._claim(db.session, item["product_id"],
                                       int(item["quantity"]),
                                       item["order_id"], item["id"])
            stock_ids = [u["id"] for u in units]
            delivery = {
                "type": JobType.STOCK,
                "items": [u["secret_data"] for u in units],
                "stock_ids": stock_ids,
                "delivered_at": to_iso(now_ts()),
            }
            await db.session.execute(_DELIVER_SQL, {
                "id": item["id"], "delivery_data": delivery,
                "now": now_ts(),
            })
            await stock._finalize(db.session, item["order_id"], item["id"])
            return await _complete(db.session, job, None, {
                "stock_ids": stock_ids, "items_count": len(units),
            })


async def _run_invite(db: GatedAsyncSession, job: Dict[str, Any],
                      item: Dict[str, Any],
                      providers: ProviderRegistry) -> Dict[str, Any]:
    slug = item["provider_slug"]
    if not slug:
        raise ExternalPermanentError("Product has no provider configured")

    provider = providers.get(slug)
    input_data = item["input_data"] or {}
    provider.check_input(input_data)

    async with db.gated():
        async with db.session.begin():
            account = await _reserve_account(db.session, slug, now_ts())
    if account is None:
        raise ExternalTransientError("No available provider accounts")

    try:
        async with timeit(f"provider.{slug}"):
            result = await provider.send_invite(account, input_data)
    except Exception as e:
        # the account is only rested when the provider itself pushed back
        until = None
        if isinstance(e, ExternalError) and not isinstance(e, InvalidInput):
            until = now_ts() + ACCOUNT_COOLDOWN_SECONDS
        async with db.gated():
            async with db.session.begin():
                await db.session.execute(text("""
                    UPDATE provider_accounts
                    SET invites_used = invites_used - 1,
                        cooldown_until = COALESCE(:until, cooldown_until)
                    WHERE id = :id
                """), {"id": account["id"], "until": until})
        raise

    delivery = {
        "type": JobType.INVITE,
        "provider": slug,
        "result": result,
        "account_id": account["id"],
        "delivered_at": to_iso(now_ts()),
    }
    async with db.gated():
        async with db.session.begin():
            await db.session.execute(text("""
                UPDATE provider_accounts SET last_invite_at = :now
                WHERE id = :id
            """), {"id": account["id"], "now": now_ts()})
            return await _complete(db.session, job, delivery, result,
                                   account_id=account["id"])


async def requeue_stale(db: GatedAsyncSession, lease_seconds: int,
                        now: Optional[float] = None) -> List[Dict[str, Any]]:
    """PROCESSING jobs older than the lease count as a transient failure."""
    now = now_ts() if now is None else now
    out = []
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text(f"""
                SELECT {_JOB_COLUMNS} FROM fulfillment_jobs
                WHERE status = 'PROCESSING' AND started_at < :cutoff
                ORDER BY started_at
            """).columns(result=JSON),
                {"cutoff": now - lease_seconds})).mappings().all()
            for job in rows:
                res = await _fail(db.session, dict(job),
                                  "worker lease expired", False)
                if res["status"] != "SKIPPED":
                    out.append(res)
    if out:
        logger.warning("Requeued stale jobs", jobs=len(out))
    return out


async def list_failed(db: GatedAsyncSession,
                      limit: int = 100) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT j.id, j.order_id, j.order_item_id, j.job_type,
                       j.attempts, j.max_attempts, j.last_error,
                       j.completed_at, p.name AS product_name,
                       o.customer_email
                FROM fulfillment_jobs j
                JOIN order_items oi ON oi.id = j.order_item_id
                JOIN products p ON p.id = oi.product_id
                JOIN orders o ON o.id = j.order_id
                WHERE j.status = 'FAILED'
                ORDER BY j.completed_at DESC
                LIMIT :n
            """), {"n": max(1, min(int(limit), 500))})).mappings().all()
    return [
        {**dict(r), "completed_at": to_iso(r["completed_at"])} for r in rows
    ]


async def run_batch(
    database: Database,
    providers: ProviderRegistry,
    *,
    limit: int = 10,
    concurrency: int = 4,
    after_job: Optional[AfterJob] = None,
) -> List[Dict[str, Any]]:
    """
    Select up to ``limit`` due jobs (oldest first) and run them with at most
    ``concurrency`` in flight. Each job gets its own session; a failure in
    one job, or in ``after_job`` for it, is logged and reported as ERROR.
    """
    async with database.session() as db:
        job_ids = await select_due(db, limit)
    if not job_ids:
        return []

    sem = asyncio.Semaphore(max(1, concurrency))

    async def _one(job_id: str) -> Dict[str, Any]:
        async with sem:
            try:
                async with database.session() as db:
                    res = await run_job(db, job_id, providers)
                if after_job is not None:
                    await after_job(res)
                return res
            except Exception as e:
                logger.exception("Fulfillment job errored", job_id=job_id)
                return {"job_id": job_id, "status": "ERROR",
                        "message": str(e), "order_id": None,
                        "order_transition": None}

    results = await asyncio.gather(*(_one(j) for j in job_ids))
    logger.info("Fulfillment batch done", jobs=len(results),
                completed=sum(r["status"] == JobStatus.COMPLETED
                              for r in results))
    return list(results)
