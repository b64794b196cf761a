"""HTTP surface tests against a fresh app and SQLite file per test."""

import pytest
from fastapi.testclient import TestClient

from orderflow.config import Config
from orderflow.server import create_app

ADMIN = {"x-admin-token": "test-admin"}


@pytest.fixture()
def client(tmp_path):
    cfg = Config(
        database_url=f"sqlite:///{tmp_path / 'api.db'}",
        admin_token="test-admin",
        reseller_key_secret="test-reseller",
        mock_secret="api-secret",
    )
    with TestClient(create_app(cfg)) as c:
        yield c


def _product(client, units=2, **kw):
    payload = {"name": "YouTube Premium", "retail_price": 30_000, **kw}
    r = client.post("/api/admin/products", json=payload, headers=ADMIN)
    assert r.status_code == 200
    pid = r.json()["product_id"]
    if units:
        r = client.post(f"/api/admin/products/{pid}/stock",
                        json={"items": [f"acct-{i}" for i in range(units)]},
                        headers=ADMIN)
        assert r.json()["added"] == units
    return pid


def _reseller(client, reseller_id):
    r = client.post(f"/api/admin/resellers/{reseller_id}/key",
                    headers=ADMIN)
    return {"x-reseller-id": reseller_id, "x-reseller-key": r.json()["key"]}


def _order(client, pid, headers=None, **kw):
    payload = {
        "customer_email": "buyer@example.com",
        "items": [{"product_id": pid, "quantity": 1}],
        **kw,
    }
    r = client.post("/api/orders", json=payload, headers=headers)
    assert r.status_code == 200
    return r.json()


class TestCheckoutFlow:
    def test_pay_and_deliver(self, client):
        pid = _product(client)
        order = _order(client, pid)
        assert order["status"] == "awaiting_payment"
        assert order["total_amount"] == 30_000

        r = client.post(f"/api/orders/{order['order_id']}/payment")
        assert r.status_code == 200
        payment = r.json()
        assert payment["status"] == "PENDING"

        r = client.post(f"/mockpay/{payment['ref_id']}/emit",
                        json={"t": "paid"})
        assert r.json()["outcome"] == "applied"

        r = client.get(f"/api/orders/{order['order_id']}/status")
        assert r.json()["status"] == "processing"

        r = client.post("/api/admin/fulfillment/run", headers=ADMIN)
        assert r.json()["processed"] == 1

        r = client.get(f"/api/orders/{order['order_id']}/status")
        assert r.json()["status"] == "delivered"
        assert r.json()["payment"]["status"] == "PAID"

        inv = client.get(f"/api/inventory/{pid}").json()
        assert inv["available"] == 1
        assert inv["sold"] == 1

    def test_payment_open_is_idempotent(self, client):
        pid = _product(client)
        order = _order(client, pid)
        a = client.post(f"/api/orders/{order['order_id']}/payment").json()
        b = client.post(f"/api/orders/{order['order_id']}/payment").json()
        assert a["id"] == b["id"]

    def test_validation_error_shape(self, client):
        r = client.post("/api/orders", json={"customer_email": "nope",
                                             "items": []})
        assert r.status_code == 400
        assert "detail" in r.json()

    def test_unknown_order(self, client):
        r = client.get("/api/orders/missing/status")
        assert r.status_code == 404


class TestCallbackEndpoint:
    def test_forged_callback_rejected(self, client):
        r = client.post("/payments/callback", content=b'{"ref_id": "x"}',
                        headers={"x-mockpay-signature": "bad"})
        assert r.status_code == 400


class TestWalletEndpoints:
    def test_topup_and_pay(self, client):
        r = client.post("/api/admin/wallets/res-1/topup",
                        json={"amount": 100_000, "reference": "BANK-1"},
                        headers=ADMIN)
        assert r.json()["balance"] == 100_000

        pid = _product(client, reseller_price=25_000)
        res1 = _reseller(client, "res-1")
        order = _order(client, pid, headers=res1)
        assert order["total_amount"] == 25_000
        r = client.post(f"/api/orders/{order['order_id']}/wallet",
                        headers=res1)
        assert r.json()["applied"] is True
        assert r.json()["balance"] == 75_000

    def test_insufficient_balance(self, client):
        pid = _product(client)
        res2 = _reseller(client, "res-2")
        order = _order(client, pid, headers=res2)
        r = client.post(f"/api/orders/{order['order_id']}/wallet",
                        headers=res2)
        assert r.status_code == 400

    def test_reseller_price_needs_key(self, client):
        pid = _product(client, reseller_price=25_000)
        payload = {"customer_email": "buyer@example.com",
                   "items": [{"product_id": pid, "quantity": 1}]}
        r = client.post("/api/orders",
                        json={**payload, "reseller_id": "res-1"})
        assert r.status_code == 400
        r = client.post("/api/orders", json=payload,
                        headers={"x-reseller-id": "res-1",
                                 "x-reseller-key": "guess"})
        assert r.status_code == 401
        # anonymous buyers pay retail
        assert _order(client, pid)["total_amount"] == 30_000

    def test_wallet_needs_owner_key(self, client):
        client.post("/api/admin/wallets/res-1/topup",
                    json={"amount": 100_000, "reference": "BANK-2"},
                    headers=ADMIN)
        pid = _product(client, reseller_price=25_000)
        order = _order(client, pid, headers=_reseller(client, "res-1"))
        url = f"/api/orders/{order['order_id']}/wallet"
        assert client.post(url).status_code == 401
        # another reseller cannot spend on this order
        r = client.post(url, headers=_reseller(client, "res-9"))
        assert r.status_code == 404


class TestAdmin:
    def test_token_required(self, client):
        assert client.get("/api/admin/timings").status_code == 401
        r = client.get("/api/admin/timings",
                       headers={"x-admin-token": "wrong"})
        assert r.status_code == 401

    def test_cancel_and_failed_list(self, client):
        pid = _product(client)
        order = _order(client, pid)
        r = client.post(f"/api/admin/orders/{order['order_id']}/cancel",
                        json={"reason": "customer request"}, headers=ADMIN)
        assert r.json()["cancelled"] is True
        r = client.post(f"/api/admin/orders/{order['order_id']}/cancel",
                        json={}, headers=ADMIN)
        assert r.status_code == 409

        r = client.get("/api/admin/fulfillment/failed", headers=ADMIN)
        assert r.json()["items"] == []

    def test_timings_collected(self, client):
        pid = _product(client)
        _order(client, pid)
        items = client.get("/api/admin/timings", headers=ADMIN).json()
        assert "api.create_order" in [i["kind"] for i in items["items"]]

    def test_retry_unknown_delivery(self, client):
        r = client.post("/api/admin/webhooks/missing/retry", headers=ADMIN)
        assert r.status_code == 404
