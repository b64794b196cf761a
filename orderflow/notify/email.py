from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict

import httpx
import structlog
from jinja2 import Environment, DictLoader, StrictUndefined, select_autoescape

logger = structlog.get_logger(__name__)

EVENTS = ("order.paid", "order.delivered", "order.failed")

SUBJECTS = {
    "order.paid": "Payment received - Order #{{ number }}",
    "order.delivered": "Your order has been delivered - Order #{{ number }}",
    "order.failed": "There is a problem with Order #{{ number }}",
}

TEMPLATES = {
    "order.paid.txt": """\
Hi {{ order.customer_name or "there" }},

Payment for order #{{ number }} has been received.

Order details:
{% for item in order["items"] -%}
- {{ item.product_name }} x{{ item.quantity }}
{% endfor %}
Total: Rp {{ order.total_amount | idr }}

Your order is being processed and will be delivered shortly.
{% if track_url %}
Track your order: {{ track_url }}
{% endif %}
Thank you for shopping with RuangPremium!

---
RuangPremium
""",
    "order.delivered.txt": """\
Hi {{ order.customer_name or "there" }},

Order #{{ number }} has been delivered.

Order details:
{% for item in order["items"] %}
{%- set d = item.delivery_data or {} %}
{{ item.product_name }}:
{% if d.get("type") == "STOCK" -%}
{% for secret in d.get("items", []) -%}
{% if secret is mapping -%}
{% for k, v in secret.items() %}{{ k }}: {{ v }}
{% endfor -%}
{% else -%}
{{ secret }}
{% endif -%}
{% endfor -%}
{% elif d.get("type") == "INVITE" -%}
An invitation has been sent to the email address you registered.
Please check your inbox (and spam folder) and accept the invitation.
{% endif -%}
{% endfor %}
{% if track_url %}
Full details: {{ track_url }}
{% endif %}
If anything is wrong, contact us through the Contact page.

Thank you for shopping with RuangPremium!

---
RuangPremium
""",
    "order.failed.txt": """\
Hi {{ order.customer_name or "there" }},

We are sorry, order #{{ number }} ran into a problem during delivery.

Our team will contact you shortly to resolve it, or you can reach us
through the Contact page.

---
RuangPremium
""",
}


def _idr(amount: Any) -> str:
    return f"{int(amount or 0):,}".replace(",", ".")


env = Environment(
    loader=DictLoader(TEMPLATES),
    autoescape=select_autoescape(["html"]),
    undefined=StrictUndefined,
)
env.filters["idr"] = _idr


@dataclass
class EmailMessage:
    to: str
    subject: str
    body: str
    event_type: str


def order_number(order_id: str) -> str:
    return order_id[:8].upper()


def build_email(order: Dict[str, Any], event_type: str,
                track_base_url: str = "") -> EmailMessage:
    if event_type not in EVENTS:
        raise ValueError(f"unknown event type {event_type!r}")
    number = order_number(order["id"])
    track_url = ""
    if track_base_url and order.get("guest_token"):
        track_url = f"{track_base_url.rstrip('/')}/track/{order['guest_token']}"
    ctx = {"order": order, "number": number, "track_url": track_url}
    subject = env.from_string(SUBJECTS[event_type]).render(**ctx)
    body = env.get_template(f"{event_type}.txt").render(**ctx)
    return EmailMessage(to=order["customer_email"], subject=subject,
                        body=body.strip() + "\n", event_type=event_type)


# ----------------------------
# Senders
# ----------------------------
class EmailSender(ABC):
    @abstractmethod
    async def send(self, msg: EmailMessage) -> None: ...


class LogEmailSender(EmailSender):
    """Development sender: logs the message and keeps the most recent ones
    in ``outbox``."""

    def __init__(self, keep: int = 100) -> None:
        self.outbox: Deque[EmailMessage] = deque(maxlen=keep)

    async def send(self, msg: EmailMessage) -> None:
        self.outbox.append(msg)
        logger.info("Email prepared", to=msg.to, subject=msg.subject,
                    event_type=msg.event_type, preview=msg.body[:100])


class HttpEmailSender(EmailSender):
    def __init__(self, http: httpx.AsyncClient, api_url: str, api_key: str,
                 from_addr: str):
        self.http = http
        self.api_url = api_url
        self.api_key = api_key
        self.from_addr = from_addr

    async def send(self, msg: EmailMessage) -> None:
        r = await self.http.post(
            self.api_url,
            json={
                "from": self.from_addr,
                "to": [msg.to],
                "subject": msg.subject,
                "text": msg.body,
            },
            headers={"authorization": f"Bearer {self.api_key}"},
        )
        r.raise_for_status()
        logger.info("Email sent", to=msg.to, event_type=msg.event_type)
