from __future__ import annotations

import structlog
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from ..helpers import now_ts, new_id
from ..infra.sql import GatedAsyncSession, insert_for
from ..settings import SettingsSnapshot
from .orm import UserPoints, PointsTransaction, OrderStatus

logger = structlog.get_logger(__name__)


def points_for(total_amount: int, settings: SettingsSnapshot) -> int:
    if settings.points_per_amount <= 0:
        return 0
    return (int(total_amount) // settings.points_per_amount) \
        * settings.points_earn_rate


async def award_points(db: GatedAsyncSession, order_id: str,
                       settings: SettingsSnapshot) -> int:
    """Loyalty points for a delivered account order, credited once."""
    ref = f"EARN:{order_id}"
    try:
        async with db.gated():
            async with db.session.begin():
                order = (await db.session.execute(text("""
                    SELECT status, total_amount, user_id, reseller_id
                    FROM orders WHERE id = :id
                """), {"id": order_id})).mappings().first()
                if order is None or not order["user_id"]:
                    return 0
                # resellers earn cashback instead
                if order["reseller_id"]:
                    return 0
                if order["status"] != OrderStatus.DELIVERED:
                    return 0
                points = points_for(order["total_amount"], settings)
                if points <= 0:
                    return 0
                seen = (await db.session.execute(text("""
                    SELECT 1 FROM points_transactions WHERE reference = :r
                """), {"r": ref})).first()
                if seen is not None:
                    return 0

                user_id = order["user_id"]
                now = now_ts()
                await db.session.execute(
                    insert_for(db.session, UserPoints.__table__).values(
                        user_id=user_id, balance=0, total_earned=0,
                        updated_at=now,
                    ).on_conflict_do_nothing()
                )
                balance = (await db.session.execute(text("""
                    UPDATE user_points
                    SET balance = balance + :p,
                        total_earned = total_earned + :p,
                        updated_at = :now
                    WHERE user_id = :u
                    RETURNING balance
                """), {"p": points, "u": user_id, "now": now})).scalar_one()
                db.session.add(PointsTransaction(
                    id=new_id(),
                    user_id=user_id,
                    order_id=order_id,
                    reference=ref,
                    amount=points,
                    balance_after=balance,
                    created_at=now,
                ))
    except IntegrityError:
        return 0
    logger.info("Loyalty points awarded", order_id=order_id,
                user_id=user_id, points=points)
    return points
