"""Outbound alert delivery."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

import httpx

from ..core.config import settings
from ..core.logging import logger


class AlertSeverity(str, Enum):
    """Severity levels for alerts."""

    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


@dataclass
class AlertEvent:
    """Structured alert; formatting is left to the receiving channel."""

    kind: str
    title: str
    message: str
    listing_id: int | None = None
    severity: AlertSeverity = AlertSeverity.WARNING
    details: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)

    def as_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["severity"] = self.severity.value
        payload["created_at"] = self.created_at.isoformat()
        if self.listing_id is not None and settings.frontend_url:
            payload["link"] = f"{settings.frontend_url.rstrip('/')}/products/{self.listing_id}"
        return payload


class Notifier(Protocol):
    async def send_alert(self, event: AlertEvent) -> bool:
        ...


class LogNotifier:
    """Write alerts to the service log when no channel is configured."""

    async def send_alert(self, event: AlertEvent) -> bool:
        logger.warning("Alert issued: %s (%s) %s", event.title, event.severity.value, event.message)
        return True


class WebhookNotifier:
    """POST alerts as JSON to a webhook."""

    def __init__(self, url: str, http_client: httpx.AsyncClient | None = None) -> None:
        self.url = url
        self._client = http_client or httpx.AsyncClient(timeout=10.0)

    async def close(self) -> None:
        await self._client.aclose()

    async def send_alert(self, event: AlertEvent) -> bool:
        try:
            response = await self._client.post(self.url, json=event.as_payload())
        except httpx.HTTPError as exc:
            logger.error("Webhook delivery failed for %s: %s", event.kind, exc)
            return False
        if response.status_code >= 400:
            logger.error("Webhook rejected %s alert: HTTP %s", event.kind, response.status_code)
            return False
        return True


def create_notifier() -> Notifier:
    """Factory for dependency injection."""

    if settings.alert_webhook_url:
        return WebhookNotifier(settings.alert_webhook_url)
    return LogNotifier()
