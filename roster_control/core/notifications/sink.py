"""Discord webhook sink for best-effort reconciliation notifications."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import httpx

from roster_control.core.config import Settings, get_settings
from roster_control.core.logging import get_logger
from roster_control.db.models import utcnow

logger = get_logger(__name__)

SEVERITY_COLORS: dict[str, int] = {
    "success": 0x00FF00,
    "info": 0x5865F2,
    "whitelist_grant": 0x00FF7F,
    "whitelist_revoke": 0xFF4444,
    "warning": 0xFFAA00,
    "error": 0xFF0000,
}
DEFAULT_COLOR = 0x5865F2

# Discord embed limits
_MAX_FIELDS = 25
_MAX_FIELD_VALUE = 1024
_MAX_DESCRIPTION = 4096

# Persistent HTTP client, lazily initialized and reused across sinks
_http_client: httpx.AsyncClient | None = None

# Strong references to in-flight deliveries so they are not garbage collected
_pending: set[asyncio.Task[bool]] = set()


@dataclass(slots=True)
class NotificationField:
    name: str
    value: str
    inline: bool = False


@dataclass(slots=True)
class NotificationPayload:
    """Structured notification, rendered by the sink."""

    title: str
    description: str
    fields: list[NotificationField] = field(default_factory=list)
    severity: str = "info"
    timestamp: datetime = field(default_factory=utcnow)

    def to_embed(self) -> dict[str, Any]:
        return {
            "title": self.title[:256],
            "description": self.description[:_MAX_DESCRIPTION],
            "color": SEVERITY_COLORS.get(self.severity, DEFAULT_COLOR),
            "fields": [
                {
                    "name": item.name[:256],
                    "value": (item.value or "-")[:_MAX_FIELD_VALUE],
                    "inline": item.inline,
                }
                for item in self.fields[:_MAX_FIELDS]
            ],
            "timestamp": self.timestamp.isoformat(),
        }


class NotificationSink(Protocol):
    async def send(self, category: str, payload: NotificationPayload) -> bool: ...


def _get_http_client() -> httpx.AsyncClient:
    global _http_client
    if _http_client is None or _http_client.is_closed:
        settings = get_settings()
        _http_client = httpx.AsyncClient(
            timeout=settings.notification_timeout_seconds,
            follow_redirects=False,
        )
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None


class DiscordWebhookSink:
    """
    Posts notification embeds to a Discord webhook chosen by category.

    Categories without a webhook of their own fall back to
    ``settings.notification_default_category``. Delivery is retried on
    rate limiting, server errors and connection failures.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._max_attempts = max_attempts
        self._retry_base_delay = retry_base_delay
        self._semaphore = asyncio.Semaphore(self._settings.notification_max_concurrency)

    def resolve_url(self, category: str) -> str | None:
        urls = self._settings.notification_webhook_urls
        return urls.get(category) or urls.get(self._settings.notification_default_category)

    async def send(self, category: str, payload: NotificationPayload) -> bool:
        """Deliver one payload. Returns True on a 2xx response."""
        if not self._settings.notifications_enabled:
            logger.info("notification_disabled", category=category, title=payload.title)
            return False

        url = self.resolve_url(category)
        if not url:
            logger.warning("notification_no_webhook", category=category, title=payload.title)
            return False

        body = {"embeds": [payload.to_embed()]}
        client = self._client or _get_http_client()

        async with self._semaphore:
            for attempt in range(1, self._max_attempts + 1):
                error: str | None = None
                try:
                    response = await client.post(url, json=body)
                except httpx.TimeoutException:
                    error = "Connection timed out"
                except httpx.TransportError as exc:
                    error = f"Connection failed: {exc}"
                else:
                    if response.is_success:
                        return True
                    if response.status_code != 429 and response.status_code < 500:
                        logger.warning(
                            "notification_rejected",
                            category=category,
                            status=response.status_code,
                        )
                        return False
                    error = f"HTTP {response.status_code}"

                if attempt < self._max_attempts:
                    await asyncio.sleep(self._retry_base_delay * 2 ** (attempt - 1))
                else:
                    logger.warning(
                        "notification_delivery_failed",
                        category=category,
                        attempts=attempt,
                        error=error,
                    )
        return False


async def _deliver(sink: NotificationSink, category: str, payload: NotificationPayload) -> bool:
    try:
        return await sink.send(category, payload)
    except Exception:
        logger.error(
            "notification_send_error",
            category=category,
            title=payload.title,
            exc_info=True,
        )
        return False


def notify(
    sink: NotificationSink | None,
    category: str,
    payload: NotificationPayload,
) -> asyncio.Task[bool] | None:
    """Schedule delivery in the background. Never raises."""
    if sink is None:
        return None
    task = asyncio.create_task(_deliver(sink, category, payload))
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task


async def drain_notifications() -> None:
    """Wait for every scheduled delivery to finish (shutdown and tests)."""
    while _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)
