import pytest

from orderflow.errors import InvariantViolation, NotFound, ValidationError
from orderflow.model import orders, stock
from orderflow.model.orm import OrderStatus as S


class TestComputeTotal:
    def test_subtracts_discounts(self):
        assert orders.compute_total(100_000, 10_000, 5_000) == 85_000

    def test_clamped_at_zero(self):
        assert orders.compute_total(10_000, 8_000, 5_000) == 0


class TestCoarseStatus:
    def test_buyer_sees_processing_for_paid_and_processing(self):
        assert orders.coarse_status(S.PAID) == "processing"
        assert orders.coarse_status(S.PROCESSING) == "processing"

    def test_terminal_states(self):
        assert orders.coarse_status(S.DELIVERED) == "delivered"
        assert orders.coarse_status(S.FAILED) == "failed"
        assert orders.coarse_status(S.AWAITING_PAYMENT) == "awaiting_payment"


class TestCreateOrder:
    async def test_total_fixed_at_creation(self, db, make_product,
                                           make_order):
        pid = await make_product(price=40_000)
        order = await make_order(pid, quantity=3, discount_amount=20_000,
                                 points_discount=5_000)
        assert order["status"] == S.AWAITING_PAYMENT
        assert order["subtotal"] == 120_000
        assert order["total_amount"] == 95_000
        assert order["items"][0]["unit_price"] == 40_000
        assert order["items"][0]["total_price"] == 120_000

    async def test_guest_order_gets_token(self, make_product, make_order):
        pid = await make_product()
        guest = await make_order(pid)
        member = await make_order(pid, user_id="user-1")
        assert guest["guest_token"]
        assert member["guest_token"] is None

    async def test_reseller_price(self, make_product, make_order):
        pid = await make_product(price=50_000, reseller_price=42_000)
        order = await make_order(pid, reseller_id="res-1", quantity=2)
        assert order["total_amount"] == 84_000

    async def test_rejects_bad_email(self, make_product, make_order):
        pid = await make_product()
        with pytest.raises(ValidationError):
            await make_order(pid, customer_email="not-an-email")

    async def test_rejects_unknown_product(self, make_order):
        with pytest.raises(ValidationError):
            await make_order("nope")

    async def test_invite_products_one_per_item(self, make_product,
                                                make_order):
        pid = await make_product(product_type="INVITE",
                                 provider_slug="chatgpt")
        with pytest.raises(ValidationError):
            await make_order(pid, quantity=2)


class TestTransition:
    async def test_applies_once(self, db, make_product, make_order):
        pid = await make_product()
        order = await make_order(pid)
        assert await orders.transition(db, order["id"], S.AWAITING_PAYMENT,
                                       S.PAID)
        # the second actor observed a stale status
        assert not await orders.transition(db, order["id"],
                                           S.AWAITING_PAYMENT, S.PAID)
        fresh = await orders.get_order(db, order["id"])
        assert fresh["status"] == S.PAID
        assert fresh["paid_at"] is not None

    async def test_illegal_transition_raises(self, db, make_product,
                                             make_order):
        pid = await make_product()
        order = await make_order(pid)
        with pytest.raises(InvariantViolation):
            await orders.transition(db, order["id"], S.AWAITING_PAYMENT,
                                    S.DELIVERED)
        with pytest.raises(InvariantViolation):
            await orders.transition(db, order["id"], S.DELIVERED, S.PAID)

    async def test_delivered_requires_delivery_data(self, db, make_product,
                                                    make_order):
        pid = await make_product()
        order = await make_order(pid)
        await orders.transition(db, order["id"], S.AWAITING_PAYMENT, S.PAID)
        await orders.transition(db, order["id"], S.PAID, S.PROCESSING)
        assert not await orders.transition(db, order["id"], S.PROCESSING,
                                           S.DELIVERED)


class TestCancelOrder:
    async def test_cancel_releases_reserved_stock(self, db, make_product,
                                                  make_order):
        pid = await make_product(units=3)
        order = await make_order(pid, quantity=2)
        item_id = order["items"][0]["id"]
        await stock.claim(db, pid, 2, order["id"], item_id)
        assert (await stock.compute_inventory(db, pid))["reserved"] == 2

        assert await orders.cancel_order(db, order["id"], "fraud check")
        inv = await stock.compute_inventory(db, pid)
        assert inv["reserved"] == 0
        assert inv["available"] == 3
        fresh = await orders.get_order(db, order["id"])
        assert fresh["status"] == S.CANCELLED

    async def test_cancel_terminal_order_refused(self, db, make_product,
                                                 make_order):
        pid = await make_product()
        order = await make_order(pid)
        await orders.cancel_order(db, order["id"])
        with pytest.raises(InvariantViolation):
            await orders.cancel_order(db, order["id"])

    async def test_cancel_unknown_order(self, db):
        with pytest.raises(NotFound):
            await orders.cancel_order(db, "missing")


class TestOrderView:
    async def test_hides_internal_status(self, db, make_product, make_order):
        pid = await make_product()
        order = await make_order(pid)
        await orders.transition(db, order["id"], S.AWAITING_PAYMENT, S.PAID)
        view = orders.order_view(await orders.get_order(db, order["id"]))
        assert view["status"] == "processing"
        assert "delivery_data" not in view["items"][0]
