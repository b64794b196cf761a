"""
Stock allocator.

A product's stock is a pool of single-use StockItem rows:

    AVAILABLE -> RESERVED -> SOLD        (SOLD is terminal)
    RESERVED  -> AVAILABLE               (release on cancel / failure)

A claim is one set-based conditional UPDATE over the oldest AVAILABLE rows,
so two concurrent claims against the last unit cannot both win. A short
claim raises ``InsufficientStock`` inside the caller's transaction, which
rolls back and leaves every unit untouched.
"""

from __future__ import annotations
from typing import Dict, List, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InsufficientStock, NotFound, ValidationError
from ..helpers import now_ts, new_id
from ..infra.sql import GatedAsyncSession
from .orm import JobType, Product, StockItem, StockStatus

logger = structlog.get_logger(__name__)


def _claim_sql(dialect: str):
    # on PG, concurrent claimers skip each other's candidate rows instead of
    # queueing behind them; sqlite has a single writer anyway
    lock = "FOR UPDATE SKIP LOCKED" if dialect == "postgresql" else ""
    return text(f"""
        UPDATE stock_items
        SET status = 'RESERVED', order_id = :order_id,
            order_item_id = :order_item_id, reserved_at = :now
        WHERE status = 'AVAILABLE' AND id IN (
            SELECT id FROM stock_items
            WHERE product_id = :product_id AND status = 'AVAILABLE'
            ORDER BY created_at, id
            LIMIT :n
            {lock}
        )
        RETURNING id, secret_data
    """)


# UN-GATED internal function
async def _claim(
    session: AsyncSession,
    product_id: str,
    quantity: int,
    order_id: str,
    order_item_id: str,
) -> List[Dict[str, str]]:
    if quantity < 1:
        raise ValidationError("quantity must be at least 1")

    # a re-dispatched job finds the units it reserved before crashing
    held = (await session.execute(text("""
        SELECT id, secret_data FROM stock_items
        WHERE order_item_id = :oi AND status = 'RESERVED'
        ORDER BY created_at, id
    """), {"oi": order_item_id})).mappings().all()
    units = [dict(r) for r in held]
    if len(units) >= quantity:
        return units[:quantity]

    need = quantity - len(units)
    dialect = session.bind.dialect.name
    rows = (await session.execute(_claim_sql(dialect), {
        "product_id": product_id,
        "order_id": order_id,
        "order_item_id": order_item_id,
        "now": now_ts(),
        "n": need,
    })).mappings().all()
    if len(rows) < need:
        raise InsufficientStock(product_id, need, len(rows))
    return units + [dict(r) for r in rows]


async def claim(
    db: GatedAsyncSession,
    product_id: str,
    quantity: int,
    order_id: str,
    order_item_id: str,
) -> List[Dict[str, str]]:
    """
    Reserve ``quantity`` units of ``product_id`` for one order item.

    Returns ``[{"id", "secret_data"}, ...]``. All or nothing.
    """
    try:
        async with db.gated():
            async with db.session.begin():
                units = await _claim(db.session, product_id, quantity,
                                     order_id, order_item_id)
    except InsufficientStock as e:
        logger.warning("Stock claim refused", product_id=product_id,
                       needed=e.needed, available=e.available,
                       order_id=order_id)
        raise
    logger.info("Stock claimed", product_id=product_id, quantity=quantity,
                order_id=order_id, order_item_id=order_item_id)
    return units


# UN-GATED internal function
async def _release(session: AsyncSession, order_id: str,
                   order_item_id: Optional[str] = None) -> int:
    where = "order_id = :key"
    key = order_id
    if order_item_id is not None:
        where = "order_item_id = :key"
        key = order_item_id
    rows = (await session.execute(text(f"""
        UPDATE stock_items
        SET status = 'AVAILABLE', order_id = NULL, order_item_id = NULL,
            reserved_at = NULL
        WHERE {where} AND status = 'RESERVED'
        RETURNING id
    """), {"key": key})).all()
    return len(rows)


async def release(db: GatedAsyncSession, order_id: str,
                  order_item_id: Optional[str] = None) -> int:
    """RESERVED units of the order (or one item) go back to AVAILABLE."""
    async with db.gated():
        async with db.session.begin():
            n = await _release(db.session, order_id, order_item_id)
    if n:
        logger.info("Stock released", order_id=order_id, units=n)
    return n


# UN-GATED internal function
async def _finalize(session: AsyncSession, order_id: str,
                    order_item_id: Optional[str] = None) -> int:
    where = "order_id = :key"
    key = order_id
    if order_item_id is not None:
        where = "order_item_id = :key"
        key = order_item_id
    rows = (await session.execute(text(f"""
        UPDATE stock_items SET status = 'SOLD', sold_at = :now
        WHERE {where} AND status = 'RESERVED'
        RETURNING id
    """), {"key": key, "now": now_ts()})).all()
    return len(rows)


async def finalize(db: GatedAsyncSession, order_id: str,
                   order_item_id: Optional[str] = None) -> int:
    """RESERVED -> SOLD once delivery is confirmed. Never reverted."""
    async with db.gated():
        async with db.session.begin():
            n = await _finalize(db.session, order_id, order_item_id)
    if n:
        logger.info("Stock finalized", order_id=order_id, units=n)
    return n


async def compute_inventory(db: GatedAsyncSession,
                            product_id: str) -> Dict[str, int]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT status, COUNT(*) AS n FROM stock_items
                WHERE product_id = :p
                GROUP BY status
            """), {"p": product_id})).all()
    counts = {s: 0 for s in (StockStatus.AVAILABLE, StockStatus.RESERVED,
                             StockStatus.SOLD)}
    for status, n in rows:
        counts[status] = int(n)
    return {
        "product_id": product_id,
        "available": counts[StockStatus.AVAILABLE],
        "reserved": counts[StockStatus.RESERVED],
        "sold": counts[StockStatus.SOLD],
        "total": sum(counts.values()),
    }


async def add_stock(db: GatedAsyncSession, product_id: str,
                    secrets: List[str]) -> List[str]:
    """Load new AVAILABLE units; returns their ids in insertion order."""
    secrets = [s for s in secrets if s and s.strip()]
    if not secrets:
        raise ValidationError("no stock data given")
    ts = now_ts()
    ids = []
    async with db.gated():
        async with db.session.begin():
            exists = (await db.session.execute(
                text("SELECT 1 FROM products WHERE id = :p"),
                {"p": product_id},
            )).first()
            if exists is None:
                raise NotFound("product not found")
            for i, secret in enumerate(secrets):
                sid = new_id()
                ids.append(sid)
                db.session.add(StockItem(
                    id=sid,
                    product_id=product_id,
                    secret_data=secret.strip(),
                    status=StockStatus.AVAILABLE,
                    # keep FIFO order stable within one load
                    created_at=ts + i * 1e-6,
                ))
    logger.info("Stock added", product_id=product_id, units=len(ids))
    return ids


async def create_product(
    db: GatedAsyncSession,
    *,
    name: str,
    retail_price: int,
    product_type: str = JobType.STOCK,
    reseller_price: Optional[int] = None,
    provider_slug: Optional[str] = None,
) -> str:
    if not name:
        raise ValidationError("name is required")
    if product_type not in (JobType.STOCK, JobType.INVITE):
        raise ValidationError(f"unknown product type {product_type}")
    if retail_price < 0 or (reseller_price is not None and
                            reseller_price < 0):
        raise ValidationError("prices must not be negative")
    if product_type == JobType.INVITE and not provider_slug:
        raise ValidationError("invite products need a provider_slug")
    product_id = new_id()
    async with db.gated():
        async with db.session.begin():
            db.session.add(Product(
                id=product_id,
                name=name,
                product_type=product_type,
                retail_price=retail_price,
                reseller_price=reseller_price,
                provider_slug=provider_slug,
                is_active=True,
                created_at=now_ts(),
            ))
    logger.info("Product created", product_id=product_id, name=name,
                product_type=product_type)
    return product_id
