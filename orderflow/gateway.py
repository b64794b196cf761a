from abc import ABC, abstractmethod
from typing import Optional, TypedDict, Dict
import base64
import hashlib
import hmac
import time
import uuid

import httpx
import orjson
import structlog

from .errors import GatewayError, ValidationError
from .model.orm import PaymentStatus

logger = structlog.get_logger(__name__)


# ----------------------------
# Gateway result shapes
# ----------------------------
class ChargeResult(TypedDict):
    external_trx_id: Optional[str]
    qr_link: Optional[str]
    pay_url: Optional[str]
    expires_at: Optional[float]     # epoch seconds, None if not reported
    amount_charged: int
    amount_settled: Optional[int]


class StatusResult(TypedDict):
    status: str                     # gateway vocabulary, unmapped
    external_trx_id: Optional[str]
    amount_charged: Optional[int]
    amount_settled: Optional[int]
    raw: dict


class CallbackEvent(StatusResult):
    ref_id: str
    signature: Optional[str]


def map_gateway_status(raw: Optional[str]) -> str:
    s = (raw or "").strip().lower()
    if s in ("success", "paid"):
        return PaymentStatus.PAID
    if s == "expired":
        return PaymentStatus.EXPIRED
    if s == "failed" or s.startswith("cancel"):
        return PaymentStatus.FAILED
    return PaymentStatus.PENDING


def _int_or_none(v) -> Optional[int]:
    if v is None or v == "":
        return None
    try:
        return int(float(v))
    except (TypeError, ValueError):
        return None


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class PaymentGateway(ABC):
    name = "gateway"

    @abstractmethod
    async def create_charge(self, amount: int, ref_id: str) -> ChargeResult:
        ...

    @abstractmethod
    async def query_status(self, ref_id: str, amount: int) -> StatusResult:
        ...

    # raises ValidationError on a bad signature or unparseable payload
    @abstractmethod
    def verify_callback(self, payload: bytes, headers: dict) -> CallbackEvent:
        ...


# ----------------------------
# Tokopay implementation
# ----------------------------
def _md5(s: str) -> str:
    return hashlib.md5(s.encode()).hexdigest()


class TokopayGateway(PaymentGateway):
    name = "tokopay"

    def __init__(self, http: httpx.AsyncClient, *, base_url: str,
                 merchant_id: str, secret: str, channel: str = "QRIS"):
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.merchant_id = merchant_id
        self.secret = secret
        self.channel = channel

    def request_signature(self, ref_id: str) -> str:
        return _md5(f"{self.merchant_id}:{self.secret}:{ref_id}")

    def callback_signature(self, trx_id: str, ref_id: str) -> str:
        return _md5(f"{trx_id}:{ref_id}:{self.secret}")

    async def _order(self, ref_id: str, amount: int) -> dict:
        # Simple Order: the same GET creates the charge or reports on it
        params = {
            "merchant": self.merchant_id,
            "secret": self.secret,
            "ref_id": ref_id,
            "nominal": str(amount),
            "metode": self.channel,
            "signature": self.request_signature(ref_id),
        }
        try:
            r = await self.http.get(f"{self.base_url}/v1/order",
                                    params=params)
        except httpx.HTTPError as e:
            raise GatewayError(f"tokopay unreachable: {e}") from e
        if r.status_code >= 400:
            raise GatewayError(f"tokopay answered HTTP {r.status_code}")
        try:
            body = r.json()
        except ValueError as e:
            raise GatewayError("tokopay sent malformed JSON") from e
        if not isinstance(body, dict) or str(
                body.get("status", "")).lower() != "success":
            raise GatewayError(f"tokopay error: {body!r}")
        data = body.get("data")
        if not isinstance(data, dict):
            raise GatewayError("tokopay response without data")
        return data

    async def create_charge(self, amount: int, ref_id: str) -> ChargeResult:
        data = await self._order(ref_id, amount)
        expired_at = _int_or_none(data.get("expired_at"))
        return {
            "external_trx_id": data.get("trx_id"),
            "qr_link": data.get("qr_link"),
            "pay_url": data.get("pay_url"),
            "expires_at": float(expired_at) if expired_at else None,
            "amount_charged": _int_or_none(data.get("nominal")) or amount,
            "amount_settled": _int_or_none(data.get("total_bayar")),
        }

    async def query_status(self, ref_id: str, amount: int) -> StatusResult:
        data = await self._order(ref_id, amount)
        status = data.get("status")
        if not status:
            raise GatewayError("tokopay status response without status")
        return {
            "status": str(status),
            "external_trx_id": data.get("trx_id"),
            "amount_charged": _int_or_none(data.get("nominal")),
            "amount_settled": _int_or_none(data.get("total_bayar")),
            "raw": data,
        }

    def verify_callback(self, payload: bytes, headers: dict) -> CallbackEvent:
        try:
            event = orjson.loads(payload)
        except orjson.JSONDecodeError:
            raise ValidationError("Invalid JSON")
        if not isinstance(event, dict):
            raise ValidationError("Invalid JSON")
        trx_id = str(event.get("trx_id") or "")
        ref_id = str(event.get("ref_id") or "")
        sig = event.get("signature")
        expected = self.callback_signature(trx_id, ref_id)
        if not sig or not hmac.compare_digest(expected, str(sig)):
            raise ValidationError("Invalid signature")
        return {
            "ref_id": ref_id,
            "status": str(event.get("status") or ""),
            "external_trx_id": trx_id or None,
            "amount_charged": _int_or_none(event.get("nominal")),
            "amount_settled": _int_or_none(event.get("total_bayar")),
            "signature": str(sig),
            "raw": event,
        }


# ----------------------------
# MockPay implementation
# ----------------------------
class MockGateway(PaymentGateway):
    """In-process gateway for development and tests.

    Charges live in memory. ``resolve`` scripts the status a later
    ``query_status`` reports; ``build_callback`` produces a signed push
    callback the way the real gateway would send it.
    """

    name = "mockpay"

    def __init__(self, secret: str = "supersecret", *,
                 fee: int = 0, ttl_seconds: Optional[int] = None):
        self.secret = secret
        self.fee = fee
        self.ttl_seconds = ttl_seconds
        self.charges: Dict[str, dict] = {}
        self.fail_next: Optional[Exception] = None
        self.calls = {"create_charge": 0, "query_status": 0}

    def _maybe_fail(self):
        if self.fail_next is not None:
            exc, self.fail_next = self.fail_next, None
            raise exc

    async def create_charge(self, amount: int, ref_id: str) -> ChargeResult:
        self.calls["create_charge"] += 1
        self._maybe_fail()
        trx_id = f"mock_{uuid.uuid4().hex}"
        self.charges[ref_id] = {
            "trx_id": trx_id,
            "amount": amount,
            "status": "Pending",
        }
        expires_at = (
            time.time() + self.ttl_seconds if self.ttl_seconds else None
        )
        return {
            "external_trx_id": trx_id,
            "qr_link": f"/mockpay/{ref_id}/qr",
            "pay_url": f"/mockpay/{ref_id}",
            "expires_at": expires_at,
            "amount_charged": amount,
            "amount_settled": max(0, amount - self.fee),
        }

    async def query_status(self, ref_id: str, amount: int) -> StatusResult:
        self.calls["query_status"] += 1
        self._maybe_fail()
        charge = self.charges.get(ref_id)
        if charge is None:
            raise GatewayError(f"mockpay: unknown ref_id {ref_id}")
        return {
            "status": charge["status"],
            "external_trx_id": charge["trx_id"],
            "amount_charged": charge["amount"],
            "amount_settled": max(0, charge["amount"] - self.fee),
            "raw": dict(charge),
        }

    def resolve(self, ref_id: str, status: str) -> None:
        charge = self.charges.get(ref_id)
        if charge is None:
            raise GatewayError(f"mockpay: unknown ref_id {ref_id}")
        charge["status"] = status

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def build_callback(self, ref_id: str) -> tuple[bytes, dict]:
        charge = self.charges.get(ref_id)
        if charge is None:
            raise GatewayError(f"mockpay: unknown ref_id {ref_id}")
        event = {
            "trx_id": charge["trx_id"],
            "ref_id": ref_id,
            "status": charge["status"],
            "nominal": charge["amount"],
            "total_bayar": max(0, charge["amount"] - self.fee),
            "created_at": int(time.time()),
        }
        payload = orjson.dumps(event)
        return payload, {
            "x-mockpay-signature": self.sign(payload),
            "content-type": "application/json",
        }

    def verify_callback(self, payload: bytes, headers: dict) -> CallbackEvent:
        sig = headers.get("x-mockpay-signature")
        expected = self.sign(payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise ValidationError("Invalid signature")
        try:
            event = orjson.loads(payload)
        except orjson.JSONDecodeError:
            raise ValidationError("Invalid JSON")
        if not isinstance(event, dict) or not event.get("ref_id"):
            raise ValidationError("Invalid callback payload")
        return {
            "ref_id": str(event.get("ref_id") or ""),
            "status": str(event.get("status") or ""),
            "external_trx_id": event.get("trx_id"),
            "amount_charged": _int_or_none(event.get("nominal")),
            "amount_settled": _int_or_none(event.get("total_bayar")),
            "signature": sig,
            "raw": event,
        }


def new_gateway(cfg, http: httpx.AsyncClient) -> PaymentGateway:
    if cfg.gateway == "tokopay":
        if not cfg.tokopay_merchant_id or not cfg.tokopay_secret:
            raise RuntimeError(
                "GATEWAY=tokopay requires TOKOPAY_MERCHANT_ID and "
                "TOKOPAY_SECRET"
            )
        return TokopayGateway(
            http,
            base_url=cfg.tokopay_base_url,
            merchant_id=cfg.tokopay_merchant_id,
            secret=cfg.tokopay_secret,
            channel=cfg.tokopay_channel,
        )
    logger.warning("Using in-process mock payment gateway")
    return MockGateway(cfg.mock_secret)
