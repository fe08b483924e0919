from __future__ import annotations

import json
import logging
import os
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT_SEC = int(os.getenv("NOTIFICATIONS_WEBHOOK_TIMEOUT_SEC", "15"))


class NotificationSink:
    """Outbound delivery channel. Implementations raise to signal a retryable failure."""

    def send(
        self,
        *,
        user_id: str,
        notification_type: str,
        title: str,
        message: str,
        related_entity: Optional[dict],
    ) -> None:
        raise NotImplementedError


class NoopSink(NotificationSink):
    def send(
        self,
        *,
        user_id: str,
        notification_type: str,
        title: str,
        message: str,
        related_entity: Optional[dict],
    ) -> None:
        return None


class LogSink(NotificationSink):
    def send(
        self,
        *,
        user_id: str,
        notification_type: str,
        title: str,
        message: str,
        related_entity: Optional[dict],
    ) -> None:
        logger.info(
            "Notification: %s",
            title,
            extra={
                "user_id": user_id,
                "notification_type": notification_type,
                "related_entity": related_entity,
            },
        )


class WebhookSink(NotificationSink):
    """POSTs each notification as JSON. HTTP and connection errors propagate."""

    def __init__(self, url: str, timeout: int = WEBHOOK_TIMEOUT_SEC) -> None:
        self.url = url
        self.timeout = timeout

    def send(
        self,
        *,
        user_id: str,
        notification_type: str,
        title: str,
        message: str,
        related_entity: Optional[dict],
    ) -> None:
        import urllib.request

        payload = {
            "user_id": user_id,
            "type": notification_type,
            "title": title,
            "message": message,
            "related_entity": related_entity,
        }
        data = json.dumps(payload).encode("utf-8")
        req = urllib.request.Request(self.url, data=data, method="POST")
        req.add_header("Content-Type", "application/json")
        with urllib.request.urlopen(req, timeout=self.timeout) as resp:
            if not 200 <= resp.status < 300:
                raise RuntimeError(f"Notification webhook returned HTTP {resp.status}")


def get_notification_sink() -> Tuple[NotificationSink, bool]:
    sink_name = (os.getenv("NOTIFICATIONS_SINK") or "").strip().lower()
    if not sink_name or sink_name in {"none", "noop", "disabled"}:
        return NoopSink(), False
    if sink_name == "log":
        return LogSink(), True
    if sink_name == "webhook":
        url = (os.getenv("NOTIFICATIONS_WEBHOOK_URL") or "").strip()
        if not url:
            raise ValueError("NOTIFICATIONS_WEBHOOK_URL is required for the webhook sink")
        return WebhookSink(url), True
    raise ValueError(f"Unsupported notification sink: {sink_name}")
