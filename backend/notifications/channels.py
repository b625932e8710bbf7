"""Notification channel implementations.

Each channel handles delivery for one transport. The external email
service is reached through :class:`WebhookChannel`; :class:`LogChannel`
stands in for it in development. A channel either returns a
:class:`DeliveryAck` or raises :class:`TransportError`.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from core.constants import Urgency
from core.exceptions import TransportError
from core.utils import utc_now

logger = logging.getLogger(__name__)


# ─── Data Types ────────────────────────────────────────────────

@dataclass
class Notification:
    """A notification to be delivered."""
    to: str
    subject: str
    body_template_id: str
    data: dict[str, Any] = field(default_factory=dict)
    urgency: Urgency = Urgency.MEDIUM
    organization_id: Optional[str] = None
    created_at: str = field(default_factory=lambda: utc_now().isoformat())


@dataclass
class DeliveryAck:
    """Acknowledgement returned by the delivery service."""
    channel: str
    recipient: str
    message_id: str
    delivered_at: str
    detail: str = ""

    def to_dict(self) -> dict:
        return {
            "delivered": True,
            "channel": self.channel,
            "recipient": self.recipient,
            "message_id": self.message_id,
            "delivered_at": self.delivered_at,
            "detail": self.detail,
        }


# ─── Base Channel ──────────────────────────────────────────────

class BaseChannel(ABC):
    """Abstract base for notification channels."""

    name: str

    @abstractmethod
    async def send(self, notification: Notification) -> DeliveryAck:
        """Deliver a notification or raise TransportError."""
        ...


# ─── Webhook Channel (external email service) ─────────────────

class WebhookChannel(BaseChannel):
    """POST notifications to the external notification service.

    Payload:
        {"to", "subject", "template_id", "data", "urgency",
         "organization_id", "timestamp"}
    """

    name = "webhook"

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.token = token
        self.timeout = timeout
        self._transport = transport

    async def send(self, notification: Notification) -> DeliveryAck:
        headers = {
            "Content-Type": "application/json",
            "X-Workflow-Event": "notification",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        payload = {
            "to": notification.to,
            "subject": notification.subject,
            "template_id": notification.body_template_id,
            "data": notification.data,
            "urgency": notification.urgency.value,
            "organization_id": notification.organization_id,
            "timestamp": notification.created_at,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Notification service rejected message to {notification.to}: {e}")
            raise TransportError(
                f"Notification service returned HTTP {e.response.status_code}",
                recipient=notification.to,
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Notification service unreachable: {e}")
            raise TransportError(
                f"Notification service unreachable: {e}", recipient=notification.to
            ) from e

        message_id = ""
        try:
            body = response.json()
            if isinstance(body, dict):
                message_id = str(body.get("id") or body.get("message_id") or "")
        except ValueError:
            pass

        return DeliveryAck(
            channel=self.name,
            recipient=notification.to,
            message_id=message_id or str(uuid.uuid4()),
            delivered_at=utc_now().isoformat(),
            detail=f"HTTP {response.status_code}",
        )


# ─── Log Channel (development) ────────────────────────────────

class LogChannel(BaseChannel):
    """Write notifications to the application log instead of sending them."""

    name = "log"

    async def send(self, notification: Notification) -> DeliveryAck:
        logger.info(
            f"[notification:{notification.urgency.value}] to={notification.to} "
            f"subject={notification.subject!r} template={notification.body_template_id}"
        )
        return DeliveryAck(
            channel=self.name,
            recipient=notification.to,
            message_id=str(uuid.uuid4()),
            delivered_at=utc_now().isoformat(),
            detail="logged",
        )
