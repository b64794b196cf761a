import hashlib
import hmac

import httpx
import orjson
import pytest
from sqlalchemy import text

from orderflow.errors import NotFound, ValidationError
from orderflow.model import orders
from orderflow.model.orm import OrderStatus as S
from orderflow.notify import Notifier
from orderflow.notify import webhook
from orderflow.notify.email import EmailMessage, LogEmailSender, build_email


class Subscriber:
    """Fake reseller endpoint; answers with the scripted status codes."""

    def __init__(self, *codes):
        self.codes = list(codes)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        code = self.codes.pop(0) if self.codes else 200
        return httpx.Response(code, text="ok" if code < 300 else "boom")


async def _deliveries(db):
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT id, response_status, delivered_at, failed_at, error,
                       retry_of
                FROM webhook_deliveries ORDER BY created_at
            """))).mappings().all()
    return [dict(r) for r in rows]


class TestSign:
    def test_hmac_over_timestamp_and_body(self):
        body = b'{"event":"order.paid"}'
        expected = hmac.new(b"secret", b"1700000000." + body,
                            hashlib.sha256).hexdigest()
        assert webhook.sign("secret", 1700000000, body) == expected

    def test_verify(self):
        body = b"{}"
        header = "sha256=" + webhook.sign("k", 5, body)
        assert webhook.verify("k", "5", body, header)
        assert not webhook.verify("other", "5", body, header)


class TestEmail:
    async def test_delivered_lists_stock_secrets(self, db, make_product,
                                                 make_order):
        pid = await make_product(name="Netflix")
        order = await make_order(pid)
        order["items"][0]["delivery_data"] = {
            "type": "STOCK", "items": ["user@netflix / hunter2"],
        }
        msg = build_email(order, "order.delivered",
                          "https://shop.example")
        assert msg.to == "buyer@example.com"
        assert "user@netflix / hunter2" in msg.body
        assert f"/track/{order['guest_token']}" in msg.body

    async def test_unknown_event(self, db, make_product, make_order):
        pid = await make_product()
        order = await make_order(pid)
        with pytest.raises(ValueError):
            build_email(order, "order.refunded")

    async def test_log_sender_keeps_recent_only(self):
        sender = LogEmailSender(keep=2)
        for n in range(3):
            await sender.send(EmailMessage(
                to=f"b{n}@example.com", subject="s", body="b",
                event_type="order.paid",
            ))
        assert [m.to for m in sender.outbox] == [
            "b1@example.com", "b2@example.com",
        ]


class TestSendWebhooks:
    async def test_signed_post_recorded(self, db, make_product, make_order,
                                        add_subscriber):
        endpoint = Subscriber(200)
        http = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
        await add_subscriber("res-1", secret="whsec")
        pid = await make_product()
        order = await make_order(pid, reseller_id="res-1")

        rows = await webhook.send_webhooks(db, http, order, "order.paid")
        assert len(rows) == 1
        [req] = endpoint.requests
        ts = req.headers["x-webhook-timestamp"]
        assert webhook.verify("whsec", ts, req.content,
                              req.headers["x-webhook-signature"])
        body = orjson.loads(req.content)
        assert body["event"] == "order.paid"
        assert body["order_id"] == order["id"]
        assert body["items"][0]["product_id"] == pid
        assert "paid_at" not in body

        [d] = await _deliveries(db)
        assert d["delivered_at"] is not None
        assert d["failed_at"] is None

    async def test_non_reseller_order_sends_nothing(self, db, make_product,
                                                    make_order):
        endpoint = Subscriber()
        http = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
        pid = await make_product()
        order = await make_order(pid)
        assert await webhook.send_webhooks(db, http, order,
                                           "order.paid") == []
        assert endpoint.requests == []

    async def test_failure_then_operator_retry(self, db, make_product,
                                               make_order, add_subscriber):
        endpoint = Subscriber(500, 200)
        http = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
        await add_subscriber("res-1")
        pid = await make_product()
        order = await make_order(pid, reseller_id="res-1")

        await webhook.send_webhooks(db, http, order, "order.paid")
        [failed] = await _deliveries(db)
        assert failed["response_status"] == 500
        assert failed["failed_at"] is not None
        assert failed["delivered_at"] is None
        assert failed["error"] == "HTTP 500"

        retried = await webhook.retry(db, http, failed["id"])
        assert retried["retry_of"] == failed["id"]
        rows = await _deliveries(db)
        assert len(rows) == 2
        # the original row is never rewritten
        assert rows[0]["delivered_at"] is None
        assert rows[1]["delivered_at"] is not None
        # same event body on both attempts
        first, second = endpoint.requests
        assert first.content == second.content

        with pytest.raises(ValidationError):
            await webhook.retry(db, http, retried["id"])

    async def test_transport_error_recorded(self, db, make_product,
                                            make_order, add_subscriber):
        def refuse(request):
            raise httpx.ConnectError("connection refused")

        http = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        await add_subscriber("res-1")
        pid = await make_product()
        order = await make_order(pid, reseller_id="res-1")
        await webhook.send_webhooks(db, http, order, "order.paid")
        [d] = await _deliveries(db)
        assert d["response_status"] is None
        assert "ConnectError" in d["error"]

    async def test_retry_unknown_delivery(self, db):
        with pytest.raises(NotFound):
            await webhook.retry(db, httpx.AsyncClient(), "missing")


class TestNotifier:
    async def test_email_failure_does_not_block_webhooks(
            self, db, make_product, make_order, add_subscriber):
        class BrokenSender(LogEmailSender):
            async def send(self, msg):
                raise RuntimeError("smtp down")

        endpoint = Subscriber(200)
        http = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
        await add_subscriber("res-1")
        pid = await make_product()
        order = await make_order(pid, reseller_id="res-1")
        await orders.transition(db, order["id"], S.AWAITING_PAYMENT, S.PAID)

        notifier = Notifier(http, BrokenSender())
        rows = await notifier.dispatch(db, order["id"], "order.paid")
        assert len(rows) == 1
        body = orjson.loads(endpoint.requests[0].content)
        assert body["order_status"] == S.PAID
        assert "paid_at" in body

    async def test_email_sent(self, db, make_product, make_order):
        sender = LogEmailSender()
        notifier = Notifier(httpx.AsyncClient(), sender)
        pid = await make_product()
        order = await make_order(pid)
        await notifier.dispatch(db, order["id"], "order.failed")
        [msg] = sender.outbox
        assert msg.event_type == "order.failed"
        assert msg.to == "buyer@example.com"
