"""
Order state machine.

Every status change is a single conditional write keyed on the status the
caller last observed (``UPDATE ... WHERE status = :expected RETURNING``).
A write that matches zero rows means another actor already moved the
order; callers treat that as a no-op.

    AWAITING_PAYMENT -> PAID | CANCELLED
    PAID             -> PROCESSING
    PROCESSING       -> DELIVERED | FAILED
    any pre-terminal -> CANCELLED (operator) | FAILED (unrecoverable)
"""

from __future__ import annotations
from typing import Optional, Dict, Any, List

import structlog
from sqlalchemy import text, bindparam, JSON
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ValidationError, NotFound, InvariantViolation
from ..helpers import now_ts, new_id, new_guest_token, is_valid_email, to_iso
from ..infra.sql import GatedAsyncSession
from .orm import Order, OrderItem, OrderStatus, JobType
from . import stock

logger = structlog.get_logger(__name__)

S = OrderStatus

TERMINAL = frozenset({S.DELIVERED, S.FAILED, S.CANCELLED})

TRANSITIONS = {
    S.AWAITING_PAYMENT: frozenset({S.PAID, S.CANCELLED, S.FAILED}),
    S.PAID: frozenset({S.PROCESSING, S.CANCELLED, S.FAILED}),
    S.PROCESSING: frozenset({S.DELIVERED, S.FAILED, S.CANCELLED}),
    S.DELIVERED: frozenset(),
    S.FAILED: frozenset(),
    S.CANCELLED: frozenset(),
}

_COARSE = {
    S.AWAITING_PAYMENT: "awaiting_payment",
    S.PAID: "processing",
    S.PROCESSING: "processing",
    S.DELIVERED: "delivered",
    S.FAILED: "failed",
    S.CANCELLED: "cancelled",
}


def compute_total(subtotal: int, discount_amount: int = 0,
                  points_discount: int = 0) -> int:
    return max(0, int(subtotal) - int(discount_amount) - int(points_discount))


def coarse_status(status: str) -> str:
    """Buyer-visible status; job level detail never leaves the operator API."""
    return _COARSE.get(status, "processing")


def is_legal(expected: str, target: str) -> bool:
    return target in TRANSITIONS.get(expected, frozenset())


# ------------------------------------------------------------------------------
# Reads
# ------------------------------------------------------------------------------
_SELECT_ITEMS = text("""
    SELECT oi.id, oi.order_id, oi.product_id, oi.quantity, oi.unit_price,
           oi.total_price, oi.input_data, oi.delivery_data, oi.delivered_at,
           p.name AS product_name, p.product_type, p.provider_slug
    FROM order_items oi JOIN products p ON p.id = oi.product_id
    WHERE oi.order_id = :order_id
    ORDER BY oi.created_at, oi.id
""").columns(input_data=JSON, delivery_data=JSON)


# UN-GATED internal function
async def _load_order(session: AsyncSession, order_id: str,
                      with_items: bool = True) -> Optional[Dict[str, Any]]:
    row = (await session.execute(text("""
        SELECT id, user_id, guest_token, reseller_id, customer_email,
               customer_name, subtotal, discount_amount, points_discount,
               total_amount, status, created_at, updated_at, paid_at,
               delivered_at
        FROM orders WHERE id = :id
    """), {"id": order_id})).mappings().first()
    if row is None:
        return None
    order = dict(row)
    if with_items:
        items = (await session.execute(
            _SELECT_ITEMS, {"order_id": order_id}
        )).mappings().all()
        order["items"] = [dict(i) for i in items]
    return order


async def get_order(db: GatedAsyncSession, order_id: str,
                    with_items: bool = True) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            return await _load_order(db.session, order_id, with_items)


# ------------------------------------------------------------------------------
# Checkout
# ------------------------------------------------------------------------------
async def create_order(
    db: GatedAsyncSession,
    *,
    customer_email: str,
    items: List[Dict[str, Any]],
    customer_name: str = "",
    user_id: Optional[str] = None,
    reseller_id: Optional[str] = None,
    discount_amount: int = 0,
    points_discount: int = 0,
) -> Dict[str, Any]:
    """
    Persist an order and its items in AWAITING_PAYMENT.

    ``items`` is a list of ``{"product_id", "quantity", "input_data"}``.
    Prices come from the product rows (reseller price for reseller orders)
    and the total is fixed here, never recomputed afterwards.
    """
    customer_email = (customer_email or "").strip()
    if not is_valid_email(customer_email):
        raise ValidationError(
            "customer_email is required and must be a valid email address"
        )
    if not items:
        raise ValidationError("order needs at least one item")
    if discount_amount < 0 or points_discount < 0:
        raise ValidationError("discounts must not be negative")

    wanted = []
    for it in items:
        qty = int(it.get("quantity") or 0)
        if qty < 1:
            raise ValidationError("quantity must be at least 1")
        pid = it.get("product_id")
        if not pid:
            raise ValidationError("product_id is required")
        wanted.append((pid, qty, it.get("input_data") or None))

    order_id = new_id()
    ts = now_ts()

    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(
                text("""
                    SELECT id, product_type, retail_price, reseller_price,
                           is_active
                    FROM products WHERE id IN :ids
                """).bindparams(bindparam("ids", expanding=True)),
                {"ids": sorted({w[0] for w in wanted})},
            )).mappings().all()
            products = {r["id"]: r for r in rows}

            subtotal = 0
            order_items = []
            for pid, qty, input_data in wanted:
                p = products.get(pid)
                if p is None or not p["is_active"]:
                    raise ValidationError(f"unknown product {pid}")
                if p["product_type"] == JobType.INVITE and qty != 1:
                    raise ValidationError(
                        "invite products are sold one per item"
                    )
                unit_price = p["retail_price"]
                if reseller_id and p["reseller_price"] is not None:
                    unit_price = p["reseller_price"]
                line = unit_price * qty
                subtotal += line
                order_items.append(OrderItem(
                    id=new_id(),
                    order_id=order_id,
                    product_id=pid,
                    quantity=qty,
                    unit_price=unit_price,
                    total_price=line,
                    input_data=input_data,
                    created_at=ts,
                ))

            db.session.add(Order(
                id=order_id,
                user_id=user_id,
                guest_token=None if user_id else new_guest_token(),
                reseller_id=reseller_id,
                customer_email=customer_email,
                customer_name=(customer_name or "").strip(),
                subtotal=subtotal,
                discount_amount=discount_amount,
                points_discount=points_discount,
                total_amount=compute_total(
                    subtotal, discount_amount, points_discount
                ),
                status=S.AWAITING_PAYMENT,
                created_at=ts,
                updated_at=ts,
            ))
            # orders row first, items reference it
            await db.session.flush()
            db.session.add_all(order_items)
            await db.session.flush()

            order = await _load_order(db.session, order_id)

    logger.info("Order created", order_id=order_id,
                total_amount=order["total_amount"],
                items=len(order["items"]))
    return order


# ------------------------------------------------------------------------------
# Transitions
# ------------------------------------------------------------------------------
# UN-GATED internal function
async def _transition(session: AsyncSession, order_id: str, expected: str,
                      target: str) -> bool:
    if not is_legal(expected, target):
        raise InvariantViolation(
            f"illegal order transition {expected} -> {target}"
        )
    sets = ["status = :target", "updated_at = :now"]
    if target == S.PAID:
        sets.append("paid_at = :now")
    if target == S.DELIVERED:
        sets.append("delivered_at = :now")
    guard = ""
    if target == S.DELIVERED:
        guard = """
          AND NOT EXISTS (
            SELECT 1 FROM order_items
            WHERE order_id = :id AND delivery_data IS NULL
          )
        """
    row = (await session.execute(text(f"""
        UPDATE orders SET {", ".join(sets)}
        WHERE id = :id AND status = :expected {guard}
        RETURNING id
    """), {
        "id": order_id, "expected": expected, "target": target,
        "now": now_ts(),
    })).first()
    return row is not None


async def transition(db: GatedAsyncSession, order_id: str, expected: str,
                     target: str) -> bool:
    """
    Move ``order_id`` from ``expected`` to ``target``.

    Returns True when this call applied the transition, False when the
    order was no longer in ``expected`` (or, for DELIVERED, some item has
    no delivery data yet).
    """
    async with db.gated():
        async with db.session.begin():
            applied = await _transition(db.session, order_id, expected,
                                        target)
    if applied:
        logger.info("Order transitioned", order_id=order_id,
                    from_status=expected, to_status=target)
    return applied


# UN-GATED internal function
async def _aggregate(session: AsyncSession, order_id: str) -> Optional[str]:
    status = (await session.execute(
        text("SELECT status FROM orders WHERE id = :id"), {"id": order_id}
    )).scalar_one_or_none()
    if status != S.PROCESSING:
        return None

    row = (await session.execute(text("""
        SELECT
          (SELECT COUNT(*) FROM order_items
             WHERE order_id = :id AND delivery_data IS NULL) AS undelivered,
          (SELECT COUNT(*) FROM fulfillment_jobs
             WHERE order_id = :id AND status = 'FAILED') AS failed,
          (SELECT COUNT(*) FROM fulfillment_jobs
             WHERE order_id = :id
               AND status IN ('PENDING', 'PROCESSING')) AS open_jobs
    """), {"id": order_id})).mappings().one()

    if row["undelivered"] == 0:
        if await _transition(session, order_id, S.PROCESSING, S.DELIVERED):
            return S.DELIVERED
    elif row["failed"] > 0 and row["open_jobs"] == 0:
        if await _transition(session, order_id, S.PROCESSING, S.FAILED):
            return S.FAILED
    return None


async def aggregate(db: GatedAsyncSession, order_id: str) -> Optional[str]:
    """
    Fold item and job outcomes into the order status.

    DELIVERED once every item has delivery data, FAILED once a job failed
    terminally and none is still pending or running, otherwise unchanged.
    Returns the new status when this call changed it.
    """
    async with db.gated():
        async with db.session.begin():
            new_status = await _aggregate(db.session, order_id)
    if new_status is not None:
        logger.info("Order aggregated", order_id=order_id,
                    status=new_status)
    return new_status


# ------------------------------------------------------------------------------
# Boundary side effects bookkeeping
# ------------------------------------------------------------------------------
# settled_status may only move forward along NULL -> PAID -> terminal
_SETTLE_FROM = {
    S.PAID: "settled_status IS NULL",
    S.DELIVERED: "(settled_status IS NULL OR settled_status = 'PAID')",
    S.FAILED: "(settled_status IS NULL OR settled_status = 'PAID')",
}


async def mark_settled(db: GatedAsyncSession, order_id: str,
                       status: str) -> bool:
    """Record that the side effects of entering ``status`` are done."""
    guard = _SETTLE_FROM.get(status)
    if guard is None:
        return False
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text(f"""
                UPDATE orders SET settled_status = :status
                WHERE id = :id AND {guard}
                RETURNING id
            """), {"id": order_id, "status": status})).first()
    return row is not None


async def unsettled(db: GatedAsyncSession, older_than: float,
                    limit: int = 100) -> List[Dict[str, Any]]:
    """
    Orders whose boundary side effects are still outstanding.

    Each row carries the ``hook`` status to re-run: PAID for paid or
    processing orders that never got their jobs, DELIVERED or FAILED for
    terminal orders whose wrap-up did not finish. Orders touched after
    ``older_than`` are left to the writer that is still handling them.
    """
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT id, status FROM orders
                WHERE updated_at <= :cutoff AND (
                    (status IN ('PAID', 'PROCESSING')
                       AND settled_status IS NULL)
                 OR (status IN ('DELIVERED', 'FAILED')
                       AND paid_at IS NOT NULL
                       AND (settled_status IS NULL
                            OR settled_status = 'PAID'))
                )
                ORDER BY updated_at
                LIMIT :n
            """), {"cutoff": older_than, "n": int(limit)})).mappings().all()
    return [
        {"order_id": r["id"],
         "hook": S.PAID if r["status"] == S.PROCESSING else r["status"]}
        for r in rows
    ]


async def cancel_order(db: GatedAsyncSession, order_id: str,
                       reason: str = "cancelled by operator") -> bool:
    """
    Operator cancel of a pre-terminal order.

    In the same transaction: open payment attempts are failed, fulfillment
    jobs that have not started are failed and reserved stock is released.
    """
    async with db.gated():
        async with db.session.begin():
            status = (await db.session.execute(
                text("SELECT status FROM orders WHERE id = :id"),
                {"id": order_id},
            )).scalar_one_or_none()
            if status is None:
                raise NotFound("order not found")
            if status in TERMINAL:
                raise InvariantViolation(
                    f"order is already {status}"
                )
            if not await _transition(db.session, order_id, status,
                                     S.CANCELLED):
                return False
            now = now_ts()
            await db.session.execute(text("""
                UPDATE payments SET status = 'FAILED', updated_at = :now
                WHERE order_id = :id AND status = 'PENDING'
            """), {"id": order_id, "now": now})
            await db.session.execute(text("""
                UPDATE fulfillment_jobs
                SET status = 'FAILED', last_error = :reason,
                    completed_at = :now
                WHERE order_id = :id AND status = 'PENDING'
            """), {"id": order_id, "now": now, "reason": reason})
            released = await stock._release(db.session, order_id)

    logger.info("Order cancelled", order_id=order_id, from_status=status,
                released_stock=released, reason=reason)
    return True


def order_view(order: Dict[str, Any]) -> Dict[str, Any]:
    """Buyer-facing rendering: coarse status, no job internals."""
    return {
        "order_id": order["id"],
        "status": coarse_status(order["status"]),
        "total_amount": order["total_amount"],
        "created_at": to_iso(order["created_at"]),
        "paid_at": to_iso(order["paid_at"]),
        "delivered_at": to_iso(order["delivered_at"]),
        "guest_token": order.get("guest_token"),
        "items": [
            {
                "id": i["id"],
                "product_id": i["product_id"],
                "product_name": i["product_name"],
                "quantity": i["quantity"],
                "unit_price": i["unit_price"],
                "total_price": i["total_price"],
            }
            for i in order.get("items", [])
        ],
    }
