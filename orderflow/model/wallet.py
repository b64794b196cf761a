"""
Reseller wallet ledger.

Each mutation changes the balance with a conditional increment and writes
its WalletTransaction row in the same transaction. Transactions carry a
unique ``reference`` (``TOPUP:<ext id>``, ``PURCHASE:<order id>``,
``CASHBACK:<order id>``), which makes every mutation idempotent; a replay
either finds the reference up front or loses on the unique index and rolls
back.
"""

from __future__ import annotations
import math
from typing import Optional, Dict, Any, List

import structlog
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    InsufficientBalance, NotFound, ValidationError
)
from ..helpers import now_ts, new_id
from ..infra.sql import GatedAsyncSession, insert_for
from ..settings import SettingsSnapshot
from .orm import Wallet, WalletTransaction, OrderStatus
from .orders import _transition

logger = structlog.get_logger(__name__)

TOPUP = "TOPUP"
PURCHASE = "PURCHASE"
CASHBACK = "CASHBACK"


# ------------------------------------------------------------------------------
# UN-GATED internal functions
# ------------------------------------------------------------------------------
async def _ensure_wallet(session: AsyncSession, user_id: str) -> None:
    stmt = insert_for(session, Wallet.__table__).values(
        user_id=user_id, balance=0, total_topup=0, total_spent=0,
        total_cashback=0, updated_at=now_ts(),
    ).on_conflict_do_nothing()
    await session.execute(stmt)


async def _reference_exists(session: AsyncSession, reference: str) -> bool:
    row = (await session.execute(text("""
        SELECT 1 FROM wallet_transactions WHERE reference = :ref
    """), {"ref": reference})).first()
    return row is not None


async def _credit(session: AsyncSession, user_id: str, amount: int,
                  counter: str) -> int:
    # counter is one of our column names, never user input
    return (await session.execute(text(f"""
        UPDATE reseller_wallets
        SET balance = balance + :a, {counter} = {counter} + :a,
            updated_at = :now
        WHERE user_id = :u
        RETURNING balance
    """), {"a": amount, "u": user_id, "now": now_ts()})).scalar_one()


def _record(session: AsyncSession, *, user_id: str, reference: str,
            kind: str, amount: int, balance_after: int,
            order_id: Optional[str] = None,
            description: Optional[str] = None) -> None:
    session.add(WalletTransaction(
        id=new_id(),
        user_id=user_id,
        order_id=order_id,
        reference=reference,
        transaction_type=kind,
        amount=amount,
        balance_after=balance_after,
        description=description,
        created_at=now_ts(),
    ))


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------
async def ensure_wallet(db: GatedAsyncSession, user_id: str) -> None:
    async with db.gated():
        async with db.session.begin():
            await _ensure_wallet(db.session, user_id)


async def get_wallet(db: GatedAsyncSession,
                     user_id: str) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                SELECT user_id, balance, total_topup, total_spent,
                       total_cashback, updated_at
                FROM reseller_wallets WHERE user_id = :u
            """), {"u": user_id})).mappings().first()
    return dict(row) if row else None


async def list_transactions(db: GatedAsyncSession,
                            user_id: str) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT id, order_id, reference, transaction_type, amount,
                       balance_after, description, created_at
                FROM wallet_transactions WHERE user_id = :u
                ORDER BY created_at, id
            """), {"u": user_id})).mappings().all()
    return [dict(r) for r in rows]


async def topup(
    db: GatedAsyncSession,
    user_id: str,
    amount: int,
    reference: str,
    settings: SettingsSnapshot,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    """Credit a confirmed top-up. Returns ``{"applied", "balance"}``."""
    if not reference:
        raise ValidationError("reference is required")
    if amount < settings.min_topup:
        raise ValidationError(
            f"minimum top-up is {settings.min_topup}"
        )
    ref = f"{TOPUP}:{reference}"
    try:
        async with db.gated():
            async with db.session.begin():
                await _ensure_wallet(db.session, user_id)
                if await _reference_exists(db.session, ref):
                    return {"applied": False,
                            "balance": await _balance(db.session, user_id)}
                balance = await _credit(db.session, user_id, amount,
                                        "total_topup")
                _record(db.session, user_id=user_id, reference=ref,
                        kind=TOPUP, amount=amount, balance_after=balance,
                        description=description or "Wallet top-up")
    except IntegrityError:
        # a concurrent replay of the same top-up won
        return {"applied": False,
                "balance": (await get_wallet(db, user_id))["balance"]}
    logger.info("Wallet topped up", user_id=user_id, amount=amount,
                balance=balance)
    return {"applied": True, "balance": balance}


async def _balance(session: AsyncSession, user_id: str) -> int:
    return (await session.execute(text("""
        SELECT balance FROM reseller_wallets WHERE user_id = :u
    """), {"u": user_id})).scalar_one()


async def pay_with_wallet(db: GatedAsyncSession, order_id: str,
                          reseller_id: str) -> Dict[str, Any]:
    """
    Settle a reseller's own order from their wallet.

    One transaction: order AWAITING_PAYMENT -> PAID, conditional debit, and
    the PURCHASE row. ``InsufficientBalance`` rolls all of it back.
    Returns ``{"applied", "balance", "order_status"}``; ``applied`` is False
    for a replay or when the order was settled some other way first.
    """
    ref = f"{PURCHASE}:{order_id}"
    try:
        async with db.gated():
            async with db.session.begin():
                order = (await db.session.execute(text("""
                    SELECT id, status, total_amount, reseller_id
                    FROM orders WHERE id = :id
                """), {"id": order_id})).mappings().first()
                if order is None or order["reseller_id"] != reseller_id:
                    raise NotFound("order not found")
                if await _reference_exists(db.session, ref):
                    return {"applied": False, "balance": None,
                            "order_status": order["status"]}
                if order["status"] != OrderStatus.AWAITING_PAYMENT:
                    raise ValidationError("Order is not awaiting payment")

                total = int(order["total_amount"])
                if not await _transition(db.session, order_id,
                                         OrderStatus.AWAITING_PAYMENT,
                                         OrderStatus.PAID):
                    return {"applied": False, "balance": None,
                            "order_status": None}

                await _ensure_wallet(db.session, reseller_id)
                balance = (await db.session.execute(text("""
                    UPDATE reseller_wallets
                    SET balance = balance - :t,
                        total_spent = total_spent + :t,
                        updated_at = :now
                    WHERE user_id = :u AND balance >= :t
                    RETURNING balance
                """), {"t": total, "u": reseller_id,
                       "now": now_ts()})).scalar_one_or_none()
                if balance is None:
                    raise InsufficientBalance(reseller_id, total)

                _record(db.session, user_id=reseller_id, reference=ref,
                        kind=PURCHASE, amount=-total, balance_after=balance,
                        order_id=order_id,
                        description=f"Purchase order {order_id}")
                # a QR opened earlier for this order is no longer payable
                await db.session.execute(text("""
                    UPDATE payments SET status = 'FAILED', updated_at = :now
                    WHERE order_id = :id AND status = 'PENDING'
                """), {"id": order_id, "now": now_ts()})
    except IntegrityError:
        return {"applied": False, "balance": None, "order_status": None}
    except InsufficientBalance:
        logger.info("Wallet purchase refused, insufficient balance",
                    order_id=order_id, reseller_id=reseller_id)
        raise

    logger.info("Order paid from wallet", order_id=order_id,
                reseller_id=reseller_id, amount=total, balance=balance)
    return {"applied": True, "balance": balance,
            "order_status": OrderStatus.PAID}


def cashback_amount(total_amount: int, percent: float) -> int:
    return int(math.floor(total_amount * percent / 100))


async def credit_cashback(db: GatedAsyncSession, order_id: str,
                          settings: SettingsSnapshot) -> int:
    """Credit reseller cashback for a delivered order, once. Returns amount."""
    ref = f"{CASHBACK}:{order_id}"
    try:
        async with db.gated():
            async with db.session.begin():
                order = (await db.session.execute(text("""
                    SELECT status, total_amount, reseller_id
                    FROM orders WHERE id = :id
                """), {"id": order_id})).mappings().first()
                if order is None or not order["reseller_id"]:
                    return 0
                if order["status"] != OrderStatus.DELIVERED:
                    return 0
                amount = cashback_amount(order["total_amount"],
                                         settings.cashback_percent)
                if amount <= 0:
                    return 0
                if await _reference_exists(db.session, ref):
                    return 0
                user_id = order["reseller_id"]
                await _ensure_wallet(db.session, user_id)
                balance = await _credit(db.session, user_id, amount,
                                        "total_cashback")
                _record(db.session, user_id=user_id, reference=ref,
                        kind=CASHBACK, amount=amount, balance_after=balance,
                        order_id=order_id,
                        description=f"Cashback order {order_id}")
    except IntegrityError:
        return 0
    logger.info("Cashback credited", order_id=order_id, user_id=user_id,
                amount=amount)
    return amount
