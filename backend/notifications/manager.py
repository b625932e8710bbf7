"""Notification Manager: dispatcher in front of the delivery channel.

Implements the collaborator contract the step handlers rely on:

    send(to, subject, body_template_id, data, urgency) -> DeliveryAck | TransportError
"""

import logging
from typing import Any, Optional

from app.config import get_settings
from core.constants import Urgency
from core.exceptions import TransportError
from notifications.channels import (
    BaseChannel,
    DeliveryAck,
    LogChannel,
    Notification,
    WebhookChannel,
)

logger = logging.getLogger(__name__)


class NotificationManager:
    """Central notification dispatcher.

    Singleton in production, use get_notification_manager(). Tests build
    their own instance or substitute a fake with the same ``send``.
    """

    def __init__(self, channel: Optional[BaseChannel] = None):
        self._channel = channel
        self._sent = 0
        self._failed = 0

    def register_channel(self, channel: BaseChannel) -> None:
        """Set the channel every notification is routed through."""
        self._channel = channel
        logger.info(f"Notification channel registered: {channel.name}")

    def configure_from_settings(self) -> None:
        settings = get_settings()
        if settings.NOTIFICATION_SERVICE_URL:
            self.register_channel(
                WebhookChannel(
                    url=settings.NOTIFICATION_SERVICE_URL,
                    token=settings.NOTIFICATION_SERVICE_TOKEN,
                    timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
                )
            )
        else:
            self.register_channel(LogChannel())

    async def send(
        self,
        to: str,
        subject: str,
        body_template_id: str,
        data: Optional[dict[str, Any]] = None,
        urgency: Urgency = Urgency.MEDIUM,
        organization_id: Optional[str] = None,
    ) -> DeliveryAck:
        """Send one notification.

        Raises:
            TransportError: no channel configured, or delivery failed
        """
        if self._channel is None:
            raise TransportError("No notification channel configured", recipient=to)

        notification = Notification(
            to=to,
            subject=subject,
            body_template_id=body_template_id,
            data=data or {},
            urgency=Urgency(urgency),
            organization_id=organization_id,
        )

        try:
            ack = await self._channel.send(notification)
        except TransportError:
            self._failed += 1
            logger.warning(f"Notification to {to} failed via {self._channel.name}")
            raise

        self._sent += 1
        logger.info(f"Notification sent via {self._channel.name} to {to}")
        return ack

    def get_status(self) -> dict:
        return {
            "channel": self._channel.name if self._channel else None,
            "sent": self._sent,
            "failed": self._failed,
        }


# ─── Singleton ─────────────────────────────────────────────────

_manager: Optional[NotificationManager] = None


def get_notification_manager() -> NotificationManager:
    """Get or create the singleton NotificationManager."""
    global _manager
    if _manager is None:
        _manager = NotificationManager()
        _manager.configure_from_settings()
    return _manager
