from typing import Any, Dict, List, Optional

import httpx
import structlog

from ..infra.sql import GatedAsyncSession
from ..model.orders import get_order
from . import webhook
from .email import EVENTS, EmailSender, LogEmailSender, build_email

logger = structlog.get_logger(__name__)


class Notifier:
    """
    Fans an order lifecycle event out to the buyer (email) and to the
    reseller's webhook endpoints. Email is best-effort: a failed send is
    logged and never retried.
    """

    def __init__(self, http: httpx.AsyncClient,
                 email_sender: Optional[EmailSender] = None,
                 track_base_url: str = ""):
        self.http = http
        self.email_sender = email_sender or LogEmailSender()
        self.track_base_url = track_base_url

    async def dispatch(self, db: GatedAsyncSession, order_id: str,
                       event_type: str) -> List[Dict[str, Any]]:
        if event_type not in EVENTS:
            raise ValueError(f"unknown event type {event_type!r}")
        order = await get_order(db, order_id)
        if order is None:
            logger.warning("Notification for unknown order", order_id=order_id,
                           event_type=event_type)
            return []

        try:
            msg = build_email(order, event_type, self.track_base_url)
            await self.email_sender.send(msg)
        except Exception:
            logger.exception("Email notification failed", order_id=order_id,
                             event_type=event_type)

        return await webhook.send_webhooks(db, self.http, order, event_type)

    async def retry(self, db: GatedAsyncSession,
                    delivery_id: str) -> Dict[str, Any]:
        return await webhook.retry(db, self.http, delivery_id)
