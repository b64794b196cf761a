import asyncio

import orjson
import pytest
from sqlalchemy import text

from orderflow.errors import GatewayError, InvariantViolation, ValidationError
from orderflow.gateway import MockGateway, map_gateway_status
from orderflow.helpers import now_ts
from orderflow.model import orders, payments
from orderflow.model.callbacks import new_store
from orderflow.model.orm import OrderStatus as S, PaymentStatus as P


async def _callback_outcomes(db):
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text(
                "SELECT outcome FROM callback_logs ORDER BY created_at"
            ))).all()
    return [r[0] for r in rows]


class TestMapGatewayStatus:
    @pytest.mark.parametrize("raw,expected", [
        ("Success", P.PAID),
        ("paid", P.PAID),
        ("Expired", P.EXPIRED),
        ("Failed", P.FAILED),
        ("Cancelled", P.FAILED),
        ("Unpaid", P.PENDING),
        (None, P.PENDING),
    ])
    def test_mapping(self, raw, expected):
        assert map_gateway_status(raw) == expected


class TestOpenPayment:
    async def test_idempotent_while_pending(self, db, gateway, make_product,
                                            make_order):
        pid = await make_product()
        order = await make_order(pid)
        first = await payments.open_payment(db, gateway, order["id"])
        second = await payments.open_payment(db, gateway, order["id"])
        assert first["id"] == second["id"]
        assert first["status"] == P.PENDING
        assert first["qr_link"]
        assert gateway.calls["create_charge"] == 1

    async def test_zero_total_refused(self, db, gateway, make_product,
                                      make_order):
        pid = await make_product(price=10_000)
        order = await make_order(pid, discount_amount=10_000)
        with pytest.raises(ValidationError):
            await payments.open_payment(db, gateway, order["id"])

    async def test_gateway_failure_marks_attempt_failed(
            self, db, gateway, make_product, make_order):
        pid = await make_product()
        order = await make_order(pid)
        gateway.fail_next = GatewayError("down")
        with pytest.raises(GatewayError):
            await payments.open_payment(db, gateway, order["id"])
        latest = await payments.get_latest_payment(db, order["id"])
        assert latest["status"] == P.FAILED
        # a fresh attempt is allowed afterwards
        again = await payments.open_payment(db, gateway, order["id"])
        assert again["status"] == P.PENDING
        assert again["id"] != latest["id"]

    async def test_expired_attempt_replaced(self, db, gateway, make_product,
                                            make_order):
        pid = await make_product()
        order = await make_order(pid)
        first = await payments.open_payment(db, gateway, order["id"])
        async with db.gated():
            async with db.session.begin():
                await db.session.execute(text(
                    "UPDATE payments SET expires_at = 0 WHERE id = :id"
                ), {"id": first["id"]})
        second = await payments.open_payment(db, gateway, order["id"])
        assert second["id"] != first["id"]
        assert gateway.calls["create_charge"] == 2


class _HeldGateway(MockGateway):
    """Blocks in create_charge until ``release`` is set."""

    def __init__(self, secret):
        super().__init__(secret)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def create_charge(self, amount, ref_id):
        self.entered.set()
        await self.release.wait()
        return await super().create_charge(amount, ref_id)


async def _reserve_unopened(db, order, created_at):
    async with db.gated():
        async with db.session.begin():
            await db.session.execute(text("""
                INSERT INTO payments(id, order_id, ref_id, amount, status,
                                     expires_at, created_at, updated_at)
                VALUES ('p-held', :order_id, 'ref-held', :amount, 'PENDING',
                        :expires_at, :created_at, :created_at)
            """), {"order_id": order["id"], "amount": order["total_amount"],
                   "expires_at": now_ts() + 3600, "created_at": created_at})


class TestConcurrentOpen:
    async def test_second_caller_gets_links(self, database, make_product,
                                            make_order):
        gateway = _HeldGateway("test-secret")
        pid = await make_product()
        order = await make_order(pid)

        async def open_():
            async with database.session() as s:
                return await payments.open_payment(s, gateway, order["id"])

        first = asyncio.ensure_future(open_())
        await gateway.entered.wait()
        second = asyncio.ensure_future(open_())
        await asyncio.sleep(0.2)
        gateway.release.set()
        a, b = await asyncio.gather(first, second)
        assert a["id"] == b["id"]
        assert a["qr_link"] and b["qr_link"]
        assert gateway.calls["create_charge"] == 1

    async def test_impatient_caller_gets_conflict(self, database, db,
                                                  make_product, make_order):
        gateway = _HeldGateway("test-secret")
        pid = await make_product()
        order = await make_order(pid)

        async def open_():
            async with database.session() as s:
                return await payments.open_payment(s, gateway, order["id"])

        first = asyncio.ensure_future(open_())
        await gateway.entered.wait()
        with pytest.raises(InvariantViolation):
            await payments.open_payment(db, gateway, order["id"],
                                        open_wait=0)
        gateway.release.set()
        opened = await first
        assert opened["qr_link"]

    async def test_abandoned_reservation_replaced(self, db, gateway,
                                                  make_product, make_order):
        pid = await make_product()
        order = await make_order(pid)
        await _reserve_unopened(db, order, now_ts() - 3600)
        payment = await payments.open_payment(db, gateway, order["id"])
        assert payment["id"] != "p-held"
        assert payment["qr_link"]
        async with db.gated():
            async with db.session.begin():
                status = (await db.session.execute(text(
                    "SELECT status FROM payments WHERE id = 'p-held'"
                ))).scalar_one()
        assert status == P.FAILED

    async def test_reconcile_skips_unopened(self, db, gateway, make_product,
                                            make_order):
        pid = await make_product()
        order = await make_order(pid)
        await _reserve_unopened(db, order, now_ts())
        res = await payments.reconcile(db, gateway, order["id"])
        assert res["changed"] is False
        assert res["payment"]["id"] == "p-held"
        assert gateway.calls["query_status"] == 0


class TestReconcile:
    async def test_paid_moves_order_once(self, db, database, gateway,
                                         make_product, make_order):
        pid = await make_product()
        order = await make_order(pid)
        payment = await payments.open_payment(db, gateway, order["id"])
        gateway.resolve(payment["ref_id"], "Success")

        async def poll():
            async with database.session() as s:
                return await payments.reconcile(s, gateway, order["id"])

        results = await asyncio.gather(*(poll() for _ in range(10)))
        transitions = [r["order_transition"] for r in results
                       if r["order_transition"]]
        assert transitions == [S.PAID]
        fresh = await orders.get_order(db, order["id"])
        assert fresh["status"] == S.PAID

    async def test_terminal_order_skips_gateway(self, db, gateway,
                                                make_product, make_order):
        pid = await make_product()
        order = await make_order(pid)
        payment = await payments.open_payment(db, gateway, order["id"])
        gateway.resolve(payment["ref_id"], "Success")
        await payments.reconcile(db, gateway, order["id"])
        calls = gateway.calls["query_status"]

        for _ in range(3):
            res = await payments.reconcile(db, gateway, order["id"])
            assert not res["changed"]
        assert gateway.calls["query_status"] == calls

    async def test_pending_writes_nothing(self, db, gateway, make_product,
                                          make_order):
        pid = await make_product()
        order = await make_order(pid)
        await payments.open_payment(db, gateway, order["id"])
        res = await payments.reconcile(db, gateway, order["id"])
        assert res["order_status"] == S.AWAITING_PAYMENT
        assert not res["changed"]

    async def test_fee_recorded(self, db, make_product, make_order):
        from orderflow.gateway import MockGateway
        gw = MockGateway("s", fee=700)
        pid = await make_product(price=50_000)
        order = await make_order(pid)
        payment = await payments.open_payment(db, gw, order["id"])
        gw.resolve(payment["ref_id"], "Success")
        res = await payments.reconcile(db, gw, order["id"])
        assert res["payment"]["fee"] == 700
        assert res["payment"]["net_amount"] == 49_300

    async def test_gateway_error_propagates(self, db, gateway, make_product,
                                            make_order):
        pid = await make_product()
        order = await make_order(pid)
        await payments.open_payment(db, gateway, order["id"])
        gateway.fail_next = GatewayError("timeout")
        with pytest.raises(GatewayError):
            await payments.reconcile(db, gateway, order["id"])
        fresh = await orders.get_order(db, order["id"])
        assert fresh["status"] == S.AWAITING_PAYMENT

    async def test_expired_cancels_order(self, db, gateway, make_product,
                                         make_order):
        pid = await make_product()
        order = await make_order(pid)
        payment = await payments.open_payment(db, gateway, order["id"])
        gateway.resolve(payment["ref_id"], "Expired")
        res = await payments.reconcile(db, gateway, order["id"])
        assert res["order_transition"] == S.CANCELLED
        assert res["payment"]["status"] == P.EXPIRED


class TestApplyCallback:
    async def test_applied_then_duplicate(self, db, gateway, make_product,
                                          make_order):
        gate = new_store(backend="pg", db=db)
        pid = await make_product()
        order = await make_order(pid)
        payment = await payments.open_payment(db, gateway, order["id"])
        gateway.resolve(payment["ref_id"], "Success")
        body, headers = gateway.build_callback(payment["ref_id"])

        first = await payments.apply_callback(db, gateway, gate, body,
                                              headers)
        second = await payments.apply_callback(db, gateway, gate, body,
                                               headers)
        assert first["outcome"] == "applied"
        assert first["order_transition"] == S.PAID
        assert second["outcome"] == "duplicate"
        assert await _callback_outcomes(db) == ["applied", "duplicate"]

    async def test_bad_signature_logged_invalid(self, db, gateway,
                                                make_product, make_order):
        gate = new_store(backend="pg", db=db)
        body = orjson.dumps({"ref_id": "RP-1", "status": "Success"})
        res = await payments.apply_callback(
            db, gateway, gate, body, {"x-mockpay-signature": "forged"}
        )
        assert res == {"ok": False, "outcome": "invalid", "order_id": None,
                       "order_transition": None}
        assert await _callback_outcomes(db) == ["invalid"]

    async def test_contradiction_left_for_operator(self, db, gateway,
                                                   make_product, make_order):
        gate = new_store(backend="pg", db=db)
        pid = await make_product()
        order = await make_order(pid)
        payment = await payments.open_payment(db, gateway, order["id"])
        gateway.resolve(payment["ref_id"], "Success")
        await payments.reconcile(db, gateway, order["id"])

        # a later chargeback-like report for the same charge
        gateway.resolve(payment["ref_id"], "Failed")
        body, headers = gateway.build_callback(payment["ref_id"])
        res = await payments.apply_callback(db, gateway, gate, body, headers)
        assert res["outcome"] == "conflict"
        assert not res["ok"]
        fresh = await orders.get_order(db, order["id"])
        assert fresh["status"] == S.PAID
        latest = await payments.get_latest_payment(db, order["id"])
        assert latest["status"] == P.PAID

    async def test_unknown_payment(self, db, gateway):
        gate = new_store(backend="pg", db=db)
        await gateway.create_charge(10_000, "RP-ghost")
        gateway.resolve("RP-ghost", "Success")
        body, headers = gateway.build_callback("RP-ghost")
        res = await payments.apply_callback(db, gateway, gate, body, headers)
        assert res["outcome"] == "unknown_payment"

    def test_gate_backend_is_explicit(self):
        with pytest.raises(TypeError):
            new_store()
        with pytest.raises(RuntimeError):
            new_store(backend="memcached")


class TestExpireStale:
    async def test_overdue_payment_cancels_order(self, db, gateway,
                                                 make_product, make_order):
        pid = await make_product()
        order = await make_order(pid)
        await payments.open_payment(db, gateway, order["id"])
        cancelled = await payments.expire_stale(db, now=2 ** 40)
        assert cancelled == [order["id"]]
        latest = await payments.get_latest_payment(db, order["id"])
        assert latest["status"] == P.EXPIRED
        # EXPIRED is final
        assert await payments.expire_stale(db, now=2 ** 40) == []
