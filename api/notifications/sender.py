from __future__ import annotations

from typing import Any, Dict, Optional, Protocol, Sequence

import httpx

from flow_engine.runtime.state import NotificationRequest
from shared.config import config
from shared.logger import get_logger

logger = get_logger(__name__)


class NotificationSender(Protocol):
    async def send(self, template: str, payload: Dict[str, Any]) -> None:
        ...


class WebhookNotificationSender:
    """Posts ``{"template": ..., **payload}`` to the messaging webhook."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def send(self, template: str, payload: Dict[str, Any]) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(self.url, json={"template": template, **payload})
            response.raise_for_status()


class DisabledNotificationSender:
    async def send(self, template: str, payload: Dict[str, Any]) -> None:
        logger.info(
            "Notification webhook not configured, skipping message",
            extra={"template": template, "execution_id": payload.get("executionId")},
        )


_sender: Optional[NotificationSender] = None


def get_notification_sender() -> NotificationSender:
    global _sender
    if _sender is None:
        if config.is_notification_configured:
            _sender = WebhookNotificationSender(
                config.notification_webhook_url,
                timeout=config.notification_timeout_seconds,
            )
        else:
            _sender = DisabledNotificationSender()
    return _sender


def set_notification_sender(sender: Optional[NotificationSender]) -> None:
    """Override the process-wide sender; ``None`` rebuilds it from config on next use."""
    global _sender
    _sender = sender


def template_for(event: str) -> str:
    if event == "formEnd":
        return config.form_end_template
    return config.form_start_template


async def dispatch_notifications(
    requests: Sequence[NotificationRequest],
    sender: Optional[NotificationSender] = None,
) -> None:
    """
    Deliver form notifications after the state change that produced them was
    committed. Delivery failures are logged and never undo or fail the step.
    """

    if not requests:
        return
    sender = sender or get_notification_sender()
    for request in requests:
        template = template_for(request.event)
        try:
            await sender.send(template, request.payload())
        except Exception:
            logger.exception(
                "Failed to deliver notification",
                extra={
                    "template": template,
                    "execution_id": request.execution_id,
                    "node_id": request.node_id,
                },
            )
        else:
            logger.info(
                "Notification sent",
                extra={"template": template, "execution_id": request.execution_id},
            )


__all__ = [
    "DisabledNotificationSender",
    "NotificationSender",
    "WebhookNotificationSender",
    "dispatch_notifications",
    "get_notification_sender",
    "set_notification_sender",
]
