"""
Payment reconciler.

- ``open_payment``: one live (PENDING) payment attempt per order. The slot is
  reserved first (partial unique index), the gateway is called outside any
  transaction, then the links are filled in.
- ``reconcile``: read-through pull. Settled orders are answered from the
  database without a gateway call; otherwise the gateway is queried and the
  mapped result is applied with conditional writes on payment and order in
  one transaction.
- ``apply_callback``: gateway push; signature check, callback log, dedupe
  gate, then the same conditional apply.
- ``expire_stale``: time based cancellation of overdue PENDING payments.

Gateway failures propagate to the caller and never leave partial writes.
"""

from __future__ import annotations
import asyncio
from typing import Optional, Dict, Any, List

import orjson
import structlog
from sqlalchemy import text, bindparam, JSON
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InvariantViolation, NotFound, ValidationError
from ..gateway import PaymentGateway, map_gateway_status
from ..helpers import now_ts, new_id, new_ref_id, to_iso
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from .orm import CallbackLog, OrderStatus, PaymentStatus
from .orders import _transition

logger = structlog.get_logger(__name__)

P = PaymentStatus

# payment outcome -> order outcome
ORDER_OUTCOME = {
    P.PAID: OrderStatus.PAID,
    P.EXPIRED: OrderStatus.CANCELLED,
    P.FAILED: OrderStatus.CANCELLED,
}

_PAYMENT_COLUMNS = """
    id, order_id, ref_id, external_trx_id, amount, fee, net_amount, status,
    qr_link, pay_url, expires_at, paid_at, opened_at, created_at, updated_at
"""

# a reservation whose gateway call never finished is dropped after this
STALE_OPEN_SECONDS = 120
# how long a second caller waits for the first to receive its links
OPEN_WAIT_SECONDS = 5.0
OPEN_POLL_SECONDS = 0.1


def payment_view(p: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if p is None:
        return None
    return {
        "id": p["id"],
        "order_id": p["order_id"],
        "ref_id": p["ref_id"],
        "amount": p["amount"],
        "status": p["status"],
        "qr_link": p["qr_link"],
        "pay_url": p["pay_url"],
        "expires_at": to_iso(p["expires_at"]),
        "paid_at": to_iso(p["paid_at"]),
    }


# ------------------------------------------------------------------------------
# UN-GATED internal functions
# ------------------------------------------------------------------------------
async def _order_head(session: AsyncSession,
                      order_id: str) -> Optional[Dict[str, Any]]:
    row = (await session.execute(text("""
        SELECT id, status, total_amount, paid_at FROM orders WHERE id = :id
    """), {"id": order_id})).mappings().first()
    return dict(row) if row else None


async def _pending_payment(session: AsyncSession,
                           order_id: str) -> Optional[Dict[str, Any]]:
    row = (await session.execute(text(f"""
        SELECT {_PAYMENT_COLUMNS} FROM payments
        WHERE order_id = :id AND status = 'PENDING'
    """), {"id": order_id})).mappings().first()
    return dict(row) if row else None


async def _latest_payment(session: AsyncSession,
                          order_id: str) -> Optional[Dict[str, Any]]:
    row = (await session.execute(text(f"""
        SELECT {_PAYMENT_COLUMNS} FROM payments
        WHERE order_id = :id
        ORDER BY created_at DESC, id DESC
        LIMIT 1
    """), {"id": order_id})).mappings().first()
    return dict(row) if row else None


async def _payment_by_ref(session: AsyncSession,
                          ref_id: str) -> Optional[Dict[str, Any]]:
    row = (await session.execute(text(f"""
        SELECT {_PAYMENT_COLUMNS} FROM payments WHERE ref_id = :ref
    """), {"ref": ref_id})).mappings().first()
    return dict(row) if row else None


async def _expire_overdue(session: AsyncSession, order_id: str,
                          now: float) -> int:
    rows = (await session.execute(text("""
        UPDATE payments SET status = 'EXPIRED', updated_at = :now
        WHERE order_id = :id AND status = 'PENDING' AND expires_at <= :now
        RETURNING id
    """), {"id": order_id, "now": now})).all()
    return len(rows)


_RESERVE_SQL = text("""
    INSERT INTO payments(
        id, order_id, ref_id, amount, status, expires_at,
        created_at, updated_at
    ) VALUES (
        :id, :order_id, :ref_id, :amount, 'PENDING',
        :expires_at, :now, :now
    )
    ON CONFLICT DO NOTHING
    RETURNING id
""")

_SETTLE_SQL = text("""
    UPDATE payments
    SET status = :status,
        paid_at = :paid_at,
        fee = COALESCE(:fee, fee),
        net_amount = COALESCE(:net_amount, net_amount),
        external_trx_id = COALESCE(:trx_id, external_trx_id),
        gateway_data = :gateway_data,
        updated_at = :now
    WHERE id = :id AND status = 'PENDING'
    RETURNING id
""").bindparams(bindparam("gateway_data", type_=JSON))


async def _apply(
    session: AsyncSession,
    payment: Dict[str, Any],
    mapped: str,
    report: Dict[str, Any],
) -> Dict[str, Any]:
    """
    Conditionally settle a PENDING payment and move its order.

    Returns ``{"payment_applied", "order_status"}`` where ``order_status`` is
    the order's new status if this call moved it, else None.
    """
    now = now_ts()
    fee = net = None
    if mapped == P.PAID:
        charged = report.get("amount_charged")
        settled = report.get("amount_settled")
        if charged is None:
            charged = payment["amount"]
        if settled is not None:
            net = settled
            fee = max(0, charged - settled)
    row = (await session.execute(_SETTLE_SQL, {
        "id": payment["id"],
        "status": mapped,
        "paid_at": now if mapped == P.PAID else None,
        "fee": fee,
        "net_amount": net,
        "trx_id": report.get("external_trx_id"),
        "gateway_data": report.get("raw"),
        "now": now,
    })).first()
    if row is None:
        return {"payment_applied": False, "order_status": None}

    target = ORDER_OUTCOME[mapped]
    moved = await _transition(session, payment["order_id"],
                              OrderStatus.AWAITING_PAYMENT, target)
    if not moved and mapped == P.PAID:
        # money arrived for an order someone else already closed
        logger.warning("Payment settled for order not awaiting payment",
                       order_id=payment["order_id"], ref_id=payment["ref_id"])
    return {
        "payment_applied": True,
        "order_status": target if moved else None,
    }


async def _log_callback(session: AsyncSession, *, source: str,
                        ref_id: Optional[str], event_type: Optional[str],
                        payload: Any, signature: Optional[str],
                        is_valid: bool, outcome: str) -> None:
    session.add(CallbackLog(
        id=new_id(),
        source=source,
        ref_id=ref_id,
        event_type=event_type,
        payload=payload if isinstance(payload, dict) else {"raw": payload},
        signature=signature,
        is_valid=is_valid,
        outcome=outcome,
        created_at=now_ts(),
    ))


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------
async def _wait_until_opened(db: GatedAsyncSession, payment_id: str,
                             timeout: float) -> Dict[str, Any]:
    """Wait for a concurrent caller to finish opening ``payment_id``."""
    deadline = now_ts() + timeout
    while True:
        async with db.gated():
            async with db.session.begin():
                row = (await db.session.execute(text(f"""
                    SELECT {_PAYMENT_COLUMNS} FROM payments WHERE id = :id
                """), {"id": payment_id})).mappings().first()
        if row is not None and row["status"] == P.PENDING \
                and row["opened_at"] is not None:
            return dict(row)
        if row is None or row["status"] != P.PENDING or now_ts() >= deadline:
            raise InvariantViolation(
                "Payment is being opened, retry shortly"
            )
        await asyncio.sleep(OPEN_POLL_SECONDS)


async def open_payment(
    db: GatedAsyncSession,
    gateway: PaymentGateway,
    order_id: str,
    *,
    fallback_ttl: int = 24 * 3600,
    open_wait: float = OPEN_WAIT_SECONDS,
) -> Dict[str, Any]:
    """
    Open (or return the live) payment attempt for an order.

    Idempotent: while a non-expired PENDING payment exists it is returned
    unchanged and the gateway is not called. A caller that finds the
    attempt still being opened by another request waits up to
    ``open_wait`` seconds for its links, then gets ``InvariantViolation``
    (409) and should retry.
    """
    now = now_ts()
    async with db.gated():
        async with db.session.begin():
            order = await _order_head(db.session, order_id)
            if order is None:
                raise NotFound("order not found")
            if order["status"] != OrderStatus.AWAITING_PAYMENT:
                raise ValidationError("Order is not awaiting payment")
            amount = int(order["total_amount"])
            if amount <= 0:
                raise ValidationError("order total is zero, nothing to charge")

            expired = await _expire_overdue(db.session, order_id, now)
            if expired:
                logger.info("Expired overdue payment before reopening",
                            order_id=order_id)

            existing = await _pending_payment(db.session, order_id)
            if existing is not None and existing["opened_at"] is None \
                    and existing["created_at"] < now - STALE_OPEN_SECONDS:
                # the request that reserved it died before the gateway call
                await db.session.execute(text("""
                    UPDATE payments SET status = 'FAILED', updated_at = :now
                    WHERE id = :id AND status = 'PENDING'
                """), {"id": existing["id"], "now": now})
                logger.warning("Dropped abandoned payment reservation",
                               order_id=order_id, ref_id=existing["ref_id"])
                existing = None
            if existing is not None and existing["opened_at"] is not None:
                return existing
            in_flight = existing["id"] if existing is not None else None

            if in_flight is None:
                payment_id = new_id()
                ref_id = new_ref_id()
                # the partial unique index admits one PENDING row per order
                row = (await db.session.execute(_RESERVE_SQL, {
                    "id": payment_id, "order_id": order_id,
                    "ref_id": ref_id, "amount": amount,
                    "expires_at": now + fallback_ttl, "now": now,
                })).first()
                if row is None:
                    # lost the race: the winner's row is the live attempt
                    winner = await _pending_payment(db.session, order_id)
                    if winner is None:
                        raise InvariantViolation(
                            "Payment is being opened, retry shortly"
                        )
                    if winner["opened_at"] is not None:
                        return winner
                    in_flight = winner["id"]

    if in_flight is not None:
        return await _wait_until_opened(db, in_flight, open_wait)

    # no transaction is open across the gateway call
    try:
        async with timeit("gateway.create_charge"):
            charge = await gateway.create_charge(amount, ref_id)
    except Exception as e:
        async with db.gated():
            async with db.session.begin():
                await db.session.execute(text("""
                    UPDATE payments SET status = 'FAILED', updated_at = :now
                    WHERE id = :id AND status = 'PENDING'
                """), {"id": payment_id, "now": now_ts()})
        logger.warning("Gateway refused charge", order_id=order_id,
                       ref_id=ref_id, error=str(e))
        raise

    expires_at = charge.get("expires_at") or (now + fallback_ttl)
    async with db.gated():
        async with db.session.begin():
            await db.session.execute(text("""
                UPDATE payments
                SET external_trx_id = :trx_id, qr_link = :qr_link,
                    pay_url = :pay_url, expires_at = :expires_at,
                    opened_at = :now, updated_at = :now
                WHERE id = :id AND status = 'PENDING'
            """), {
                "id": payment_id,
                "trx_id": charge.get("external_trx_id"),
                "qr_link": charge.get("qr_link"),
                "pay_url": charge.get("pay_url"),
                "expires_at": float(expires_at),
                "now": now_ts(),
            })
            payment = await _payment_by_ref(db.session, ref_id)

    logger.info("Payment opened", order_id=order_id, ref_id=ref_id,
                amount=amount, gateway=gateway.name)
    return payment


async def get_latest_payment(db: GatedAsyncSession,
                             order_id: str) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            return await _latest_payment(db.session, order_id)


async def reconcile(
    db: GatedAsyncSession,
    gateway: PaymentGateway,
    order_id: str,
) -> Dict[str, Any]:
    """
    Resolve an order's payment state.

    Returns ``{"order_status", "payment", "changed", "order_transition"}``.
    ``order_transition`` is the status this call moved the order to, if any.
    A gateway error propagates with nothing written.
    """
    async with db.gated():
        async with db.session.begin():
            order = await _order_head(db.session, order_id)
            if order is None:
                raise NotFound("order not found")
            payment = None
            if order["status"] == OrderStatus.AWAITING_PAYMENT:
                payment = await _pending_payment(db.session, order_id)
            if payment is not None and payment["opened_at"] is None:
                # the gateway has not seen this reference yet
                return {
                    "order_status": order["status"],
                    "payment": payment,
                    "changed": False,
                    "order_transition": None,
                }
            if payment is None:
                latest = await _latest_payment(db.session, order_id)
                return {
                    "order_status": order["status"],
                    "payment": latest,
                    "changed": False,
                    "order_transition": None,
                }

    async with timeit("gateway.query_status"):
        report = await gateway.query_status(payment["ref_id"],
                                            int(payment["amount"]))

    mapped = map_gateway_status(report.get("status"))
    if mapped == P.PENDING and payment["expires_at"] <= now_ts():
        mapped = P.EXPIRED

    if mapped == P.PENDING:
        return {
            "order_status": order["status"],
            "payment": payment,
            "changed": False,
            "order_transition": None,
        }

    async with db.gated():
        async with db.session.begin():
            result = await _apply(db.session, payment, mapped, report)
            order = await _order_head(db.session, order_id)
            payment = await _payment_by_ref(db.session, payment["ref_id"])

    if result["payment_applied"]:
        logger.info("Payment reconciled", order_id=order_id,
                    ref_id=payment["ref_id"], payment_status=mapped,
                    order_status=order["status"])
    return {
        "order_status": order["status"],
        "payment": payment,
        "changed": result["payment_applied"],
        "order_transition": result["order_status"],
    }


async def apply_callback(
    db: GatedAsyncSession,
    gateway: PaymentGateway,
    gate,
    payload: bytes,
    headers: dict,
) -> Dict[str, Any]:
    """
    Handle one gateway push callback.

    ``gate`` is a callback gate store (``mark_event_seen`` /
    ``forget_event``). Every callback is recorded in ``callback_logs``.
    Returns ``{"ok", "outcome", "order_id", "order_transition"}``.
    """
    try:
        event = gateway.verify_callback(payload, headers)
    except ValidationError as e:
        try:
            raw = orjson.loads(payload)
        except orjson.JSONDecodeError:
            raw = payload.decode("utf-8", errors="replace")
        ref_id = raw.get("ref_id") if isinstance(raw, dict) else None
        async with db.gated():
            async with db.session.begin():
                await _log_callback(
                    db.session, source=gateway.name, ref_id=ref_id,
                    event_type=None, payload=raw, signature=None,
                    is_valid=False, outcome="invalid",
                )
        logger.warning("Rejected gateway callback", reason=e.message,
                       ref_id=ref_id)
        return {"ok": False, "outcome": "invalid", "order_id": None,
                "order_transition": None}

    ref_id = event["ref_id"]
    raw_status = event["status"]
    mapped = map_gateway_status(raw_status)
    log_kw = dict(source=gateway.name, ref_id=ref_id, event_type=raw_status,
                  payload=event["raw"], signature=event.get("signature"),
                  is_valid=True)

    idem = f"{ref_id}:{raw_status.lower()}"
    if not await gate.mark_event_seen(idem):
        async with db.gated():
            async with db.session.begin():
                await _log_callback(db.session, outcome="duplicate",
                                    **log_kw)
        return {"ok": True, "outcome": "duplicate", "order_id": None,
                "order_transition": None}

    try:
        async with db.gated():
            async with db.session.begin():
                payment = await _payment_by_ref(db.session, ref_id)
                result = {"payment_applied": False, "order_status": None}
                if payment is None:
                    outcome = "unknown_payment"
                elif mapped == P.PENDING or mapped == payment["status"]:
                    outcome = "ignored"
                elif payment["status"] != P.PENDING:
                    # EXPIRED vs FAILED is the same outcome for the order
                    settled_paid = P.PAID in (payment["status"], mapped)
                    outcome = "conflict" if settled_paid else "ignored"
                else:
                    result = await _apply(db.session, payment, mapped, event)
                    outcome = "applied" if result["payment_applied"] \
                        else "ignored"
                await _log_callback(db.session, outcome=outcome, **log_kw)
    except Exception:
        # let the gateway's redelivery through the gate again
        await gate.forget_event(idem)
        raise

    order_id = payment["order_id"] if payment else None
    if outcome == "conflict":
        logger.warning("Gateway report contradicts settled payment",
                       ref_id=ref_id, order_id=order_id,
                       local_status=payment["status"], reported=raw_status)
    elif outcome == "unknown_payment":
        logger.warning("Callback for unknown payment", ref_id=ref_id)
    elif outcome == "applied":
        logger.info("Payment callback applied", ref_id=ref_id,
                    order_id=order_id, payment_status=mapped)
    return {
        "ok": outcome in ("applied", "ignored", "duplicate"),
        "outcome": outcome,
        "order_id": order_id,
        "order_transition": result["order_status"],
    }


async def expire_stale(db: GatedAsyncSession,
                       now: Optional[float] = None) -> List[str]:
    """Expire overdue PENDING payments; their orders are cancelled."""
    now = now_ts() if now is None else now
    cancelled = []
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                UPDATE payments SET status = 'EXPIRED', updated_at = :now
                WHERE status = 'PENDING' AND expires_at <= :now
                RETURNING id, order_id
            """), {"now": now})).mappings().all()
            for r in rows:
                if await _transition(db.session, r["order_id"],
                                     OrderStatus.AWAITING_PAYMENT,
                                     OrderStatus.CANCELLED):
                    cancelled.append(r["order_id"])
    if rows:
        logger.info("Expired stale payments", payments=len(rows),
                    orders_cancelled=len(cancelled))
    return cancelled
