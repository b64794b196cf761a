"""
Signed webhooks to reseller endpoints.

The JSON body is serialized once and those exact bytes are both signed and
sent:

    X-Webhook-Timestamp: <unix seconds>
    X-Webhook-Signature: sha256=<hex hmac_sha256(secret, "<ts>." + body)>

Every POST attempt writes one ``webhook_deliveries`` row and rows are never
updated. A replay re-sends the stored payload with a fresh timestamp and
signature as a new row pointing at the original through ``retry_of``.
"""

from __future__ import annotations
import hashlib
import hmac
import time
from typing import Any, Dict, List, Optional

import httpx
import orjson
import structlog
from sqlalchemy import text, JSON

from ..errors import NotFound, ValidationError
from ..helpers import now_ts, new_id, to_iso
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from ..model.orm import WebhookDelivery

logger = structlog.get_logger(__name__)

RESPONSE_BODY_LIMIT = 1000


def sign(secret: str, timestamp: int, body: bytes) -> str:
    msg = f"{timestamp}.".encode() + body
    return hmac.new(secret.encode(), msg, hashlib.sha256).hexdigest()


def verify(secret: str, timestamp: str, body: bytes, header: str) -> bool:
    """Receiver side check, as a subscriber would implement it."""
    expected = "sha256=" + sign(secret, int(timestamp), body)
    return hmac.compare_digest(expected, header or "")


def build_payload(order: Dict[str, Any], event_type: str) -> Dict[str, Any]:
    payload = {
        "event": event_type,
        "order_id": order["id"],
        "order_status": order["status"],
        "customer_email": order["customer_email"],
        "customer_name": order["customer_name"],
        "total_amount": order["total_amount"],
        "items": [
            {
                "product_id": i["product_id"],
                "product_name": i.get("product_name") or "Unknown",
                "quantity": i["quantity"],
                "unit_price": i["unit_price"],
            }
            for i in order.get("items", [])
        ],
        "created_at": to_iso(order["created_at"]),
    }
    if order.get("paid_at") is not None:
        payload["paid_at"] = to_iso(order["paid_at"])
    if order.get("delivered_at") is not None:
        payload["delivered_at"] = to_iso(order["delivered_at"])
    return payload


async def _post(http: httpx.AsyncClient, url: str, secret: str,
                body: bytes) -> Dict[str, Any]:
    ts = int(time.time())
    headers = {
        "content-type": "application/json",
        "x-webhook-timestamp": str(ts),
        "x-webhook-signature": f"sha256={sign(secret, ts, body)}",
    }
    try:
        async with timeit("webhook.post"):
            r = await http.post(url, content=body, headers=headers)
    except httpx.HTTPError as e:
        return {"ok": False, "status": None, "body": None,
                "error": f"{type(e).__name__}: {e}" if str(e)
                else type(e).__name__}
    ok = 200 <= r.status_code < 300
    return {
        "ok": ok,
        "status": r.status_code,
        "body": r.text[:RESPONSE_BODY_LIMIT],
        "error": None if ok else f"HTTP {r.status_code}",
    }


async def _record(db: GatedAsyncSession, *, subscriber_id: str,
                  order_id: str, event_type: str, payload: Dict[str, Any],
                  outcome: Dict[str, Any],
                  retry_of: Optional[str] = None) -> Dict[str, Any]:
    now = now_ts()
    row = {
        "id": new_id(),
        "subscriber_id": subscriber_id,
        "order_id": order_id,
        "event_type": event_type,
        "payload": payload,
        "response_status": outcome["status"],
        "response_body": outcome["body"],
        "delivered_at": now if outcome["ok"] else None,
        "failed_at": None if outcome["ok"] else now,
        "error": outcome["error"],
        "retry_of": retry_of,
        "created_at": now,
    }
    async with db.gated():
        async with db.session.begin():
            db.session.add(WebhookDelivery(**row))
    return row


async def _subscribers(db: GatedAsyncSession,
                       reseller_id: str) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT id, webhook_url, webhook_secret
                FROM webhook_subscribers
                WHERE reseller_id = :r AND is_active = :yes
                  AND webhook_enabled = :yes AND webhook_url IS NOT NULL
                ORDER BY created_at, id
            """), {"r": reseller_id, "yes": True})).mappings().all()
    return [dict(r) for r in rows]


async def send_webhooks(db: GatedAsyncSession, http: httpx.AsyncClient,
                        order: Dict[str, Any],
                        event_type: str) -> List[Dict[str, Any]]:
    """POST the event to each of the reseller's enabled endpoints."""
    if not order.get("reseller_id"):
        return []
    subs = await _subscribers(db, order["reseller_id"])
    if not subs:
        return []

    payload = build_payload(order, event_type)
    body = orjson.dumps(payload)
    deliveries = []
    for sub in subs:
        if not sub["webhook_secret"]:
            logger.warning("Webhook subscriber without secret skipped",
                           subscriber_id=sub["id"])
            continue
        outcome = await _post(http, sub["webhook_url"],
                              sub["webhook_secret"], body)
        deliveries.append(await _record(
            db, subscriber_id=sub["id"], order_id=order["id"],
            event_type=event_type, payload=payload, outcome=outcome,
        ))
        if not outcome["ok"]:
            logger.warning("Webhook delivery failed", order_id=order["id"],
                           subscriber_id=sub["id"], error=outcome["error"])
    return deliveries


_SELECT_DELIVERY = text("""
    SELECT d.id, d.subscriber_id, d.order_id, d.event_type, d.payload,
           d.delivered_at, s.webhook_url, s.webhook_secret, s.is_active,
           s.webhook_enabled
    FROM webhook_deliveries d
    JOIN webhook_subscribers s ON s.id = d.subscriber_id
    WHERE d.id = :id
""").columns(payload=JSON)


async def retry(db: GatedAsyncSession, http: httpx.AsyncClient,
                delivery_id: str) -> Dict[str, Any]:
    """Operator replay of a failed delivery; returns the new delivery row."""
    async with db.gated():
        async with db.session.begin():
            d = (await db.session.execute(
                _SELECT_DELIVERY, {"id": delivery_id}
            )).mappings().first()
    if d is None:
        raise NotFound("webhook delivery not found")
    if d["delivered_at"] is not None:
        raise ValidationError("webhook delivery already succeeded")
    if not (d["is_active"] and d["webhook_enabled"] and d["webhook_url"]
            and d["webhook_secret"]):
        raise ValidationError("webhook subscriber is disabled")

    body = orjson.dumps(d["payload"])
    outcome = await _post(http, d["webhook_url"], d["webhook_secret"], body)
    row = await _record(
        db, subscriber_id=d["subscriber_id"], order_id=d["order_id"],
        event_type=d["event_type"], payload=d["payload"], outcome=outcome,
        retry_of=delivery_id,
    )
    logger.info("Webhook delivery replayed", delivery_id=delivery_id,
                new_delivery_id=row["id"], ok=outcome["ok"])
    return row


def delivery_view(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "subscriber_id": row["subscriber_id"],
        "order_id": row["order_id"],
        "event_type": row["event_type"],
        "response_status": row["response_status"],
        "delivered_at": to_iso(row["delivered_at"]),
        "failed_at": to_iso(row["failed_at"]),
        "error": row["error"],
        "retry_of": row["retry_of"],
    }
