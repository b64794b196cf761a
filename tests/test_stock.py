import asyncio

import pytest

from orderflow.errors import InsufficientStock, NotFound, ValidationError
from orderflow.model import stock


class TestClaim:
    async def test_claim_one_of_three(self, db, make_product, make_order):
        pid = await make_product(units=3)
        order = await make_order(pid)
        units = await stock.claim(db, pid, 1, order["id"],
                                  order["items"][0]["id"])
        assert len(units) == 1
        inv = await stock.compute_inventory(db, pid)
        assert inv == {"product_id": pid, "available": 2, "reserved": 1,
                       "sold": 0, "total": 3}

    async def test_claim_is_fifo(self, db, make_product, make_order):
        pid = await make_product(name="Spotify", units=3)
        order = await make_order(pid)
        units = await stock.claim(db, pid, 2, order["id"],
                                  order["items"][0]["id"])
        assert [u["secret_data"] for u in units] == [
            "Spotify login #0", "Spotify login #1",
        ]

    async def test_short_claim_changes_nothing(self, db, make_product,
                                               make_order):
        pid = await make_product(units=2)
        order = await make_order(pid, quantity=5)
        with pytest.raises(InsufficientStock) as exc:
            await stock.claim(db, pid, 5, order["id"],
                              order["items"][0]["id"])
        assert exc.value.available == 2
        inv = await stock.compute_inventory(db, pid)
        assert inv["available"] == 2
        assert inv["reserved"] == 0

    async def test_reclaim_returns_held_units(self, db, make_product,
                                              make_order):
        pid = await make_product(units=3)
        order = await make_order(pid)
        item_id = order["items"][0]["id"]
        first = await stock.claim(db, pid, 1, order["id"], item_id)
        again = await stock.claim(db, pid, 1, order["id"], item_id)
        assert first == again
        assert (await stock.compute_inventory(db, pid))["reserved"] == 1

    async def test_concurrent_claims_never_oversell(self, database,
                                                    make_product,
                                                    make_order):
        pid = await make_product(units=3)
        order_list = [await make_order(pid) for _ in range(6)]

        async def attempt(order):
            async with database.session() as s:
                try:
                    return await stock.claim(s, pid, 1, order["id"],
                                             order["items"][0]["id"])
                except InsufficientStock:
                    return []

        results = await asyncio.gather(*(attempt(o) for o in order_list))
        claimed = [u["id"] for units in results for u in units]
        assert len(claimed) == 3
        assert len(set(claimed)) == 3

    async def test_quantity_must_be_positive(self, db, make_product,
                                             make_order):
        pid = await make_product(units=1)
        order = await make_order(pid)
        with pytest.raises(ValidationError):
            await stock.claim(db, pid, 0, order["id"],
                              order["items"][0]["id"])


class TestReleaseAndFinalize:
    async def test_release_returns_units(self, db, make_product, make_order):
        pid = await make_product(units=2)
        order = await make_order(pid, quantity=2)
        await stock.claim(db, pid, 2, order["id"], order["items"][0]["id"])
        assert await stock.release(db, order["id"]) == 2
        assert (await stock.compute_inventory(db, pid))["available"] == 2

    async def test_sold_is_terminal(self, db, make_product, make_order):
        pid = await make_product(units=2)
        order = await make_order(pid)
        await stock.claim(db, pid, 1, order["id"], order["items"][0]["id"])
        assert await stock.finalize(db, order["id"]) == 1
        # neither release nor a second finalize touch SOLD units
        assert await stock.release(db, order["id"]) == 0
        assert await stock.finalize(db, order["id"]) == 0
        inv = await stock.compute_inventory(db, pid)
        assert inv["sold"] == 1
        assert inv["available"] == 1


class TestAddStock:
    async def test_blank_lines_skipped(self, db, make_product):
        pid = await make_product()
        ids = await stock.add_stock(db, pid, ["a", " ", "b"])
        assert len(ids) == 2

    async def test_unknown_product(self, db):
        with pytest.raises(NotFound):
            await stock.add_stock(db, "missing", ["x"])
