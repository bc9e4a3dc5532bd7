"""Fire-and-forget notification fan-out."""
import asyncio
import logging
from typing import Optional, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from lunarbot.config import config
from lunarbot.models import Notification
from lunarbot.parse.redact import redact_json

logger = logging.getLogger(__name__)


class Channel(Protocol):
    name: str

    async def send(self, notification: Notification) -> None: ...


class LogChannel:
    name = "log"

    async def send(self, notification: Notification) -> None:
        logger.info(
            f"[notify] user={notification.user_id} type={notification.type} "
            f"{notification.title}: {notification.message}"
        )


class WebhookChannel:
    """POSTs the notification as JSON to a webhook URL."""

    name = "webhook"

    def __init__(self, url: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError, httpx.HTTPStatusError)),
        reraise=True,
    )
    async def send(self, notification: Notification) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(self.url, json=redact_json(notification.model_dump(mode="json")))
            response.raise_for_status()


class NotificationDispatcher:
    """Sends every notification to all channels without blocking the caller."""

    def __init__(self, channels: Optional[list[Channel]] = None):
        if channels is None:
            channels = [LogChannel()]
            if config.NOTIFY_WEBHOOK_URL:
                channels.append(WebhookChannel(config.NOTIFY_WEBHOOK_URL))
        self.channels = channels
        self._pending: set[asyncio.Task] = set()

    async def send(self, notification: Notification) -> None:
        """Deliver to every channel. A failing channel is logged and skipped."""
        for channel in self.channels:
            try:
                await channel.send(notification)
            except Exception as e:
                logger.warning(f"Notification channel {channel.name} failed for {notification.type}: {e}")

    def dispatch(self, notification: Notification) -> asyncio.Task:
        """Schedule delivery in the background and return immediately."""
        task = asyncio.create_task(self.send(notification))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight deliveries (used on shutdown and in tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
