"""Outbound notifications for site status changes.

``emit`` never blocks the caller: the webhook notifier queues events and
a background task delivers them, retrying with exponential backoff and
dropping what it cannot deliver.
"""

import abc
import asyncio
import logging
from typing import Any, Callable, Optional

import httpx

from mirrorwatch.models import (
    Event,
    EventKind,
    StatusTransition,
    SweepSummary,
    TestNotification,
    utcnow,
)

logger = logging.getLogger(__name__)

# Retry settings
_MAX_RETRIES = 3
_BASE_BACKOFF_SECONDS = 2.0
_DEFAULT_QUEUE_SIZE = 100

SEVERITY = {
    EventKind.SITE_DOWN: "CRITICAL",
    EventKind.SITE_RECOVERED: "INFO",
    EventKind.DOMAIN_CHANGED: "INFO",
    EventKind.SWEEP_SUMMARY: "INFO",
    EventKind.TEST: "INFO",
}


def format_message(event: Event) -> str:
    """Human-readable text for chat-style consumers of the webhook."""
    if isinstance(event, StatusTransition):
        if event.kind is EventKind.SITE_DOWN:
            return (
                f"Site Down Alert\n\nSite: {event.site_name}\n"
                f"Status: {event.to_status.value}\n"
                f"Last Working URL: {event.old_url or 'N/A'}"
            )
        if event.kind is EventKind.SITE_RECOVERED:
            return (
                f"Site Recovery Alert\n\nSite: {event.site_name}\n"
                f"Status: Back Online\nNew URL: {event.new_url}"
            )
        return (
            f"New Domain Found\n\nSite: {event.site_name}\n"
            f"Old URL: {event.old_url}\nNew URL: {event.new_url}"
        )
    if isinstance(event, SweepSummary):
        return (
            f"Sweep Summary\n\nChecked: {event.checked}\nWorking: {event.working}\n"
            f"Down: {event.down}\nTransitions: {event.transitions}"
        )
    if isinstance(event, TestNotification):
        return f"Test Notification\n\n{event.message}"
    return str(event)


def build_payload(event: Event, now: Callable = utcnow) -> dict[str, Any]:
    """Webhook body: ``{action, payload, timestamp}`` plus severity and text."""
    return {
        "action": event.action,
        "payload": event.to_payload(),
        "timestamp": now().isoformat(),
        "severity": SEVERITY.get(event.kind, "INFO"),
        "message": format_message(event),
        "source": "mirrorwatch",
    }


class Notifier(abc.ABC):
    """Outbound port for monitor events."""

    @abc.abstractmethod
    def emit(self, event: Event) -> None:
        """Hand off ``event``; must return quickly and never raise."""

    async def aclose(self) -> None:
        """Release resources; pending events may be flushed."""


class LogNotifier(Notifier):
    """Writes events to the log only; used when no webhook is configured."""

    def emit(self, event: Event) -> None:
        logger.info("Notification [%s]: %s", event.action, format_message(event).replace("\n", " | "))


class WebhookNotifier(Notifier):
    """Posts events to a webhook from a background task."""

    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        max_retries: int = _MAX_RETRIES,
        backoff_seconds: float = _BASE_BACKOFF_SECONDS,
        queue_size: int = _DEFAULT_QUEUE_SIZE,
        timeout: float = 10.0,
    ):
        self.url = url
        self.max_retries = max(1, max_retries)
        self.backoff_seconds = backoff_seconds
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._worker: Optional[asyncio.Task] = None
        self.delivered = 0
        self.dropped = 0

    def emit(self, event: Event) -> None:
        try:
            self._ensure_worker()
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Notification queue full, dropping %s event", event.action)
        except RuntimeError:
            # No running event loop to deliver from
            self.dropped += 1
            logger.warning("No event loop available, dropping %s event", event.action)

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            loop = asyncio.get_running_loop()
            self._worker = loop.create_task(self._run(), name="webhook-notifier")

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            except Exception as e:
                self.dropped += 1
                logger.error(
                    "Notification %s dropped, delivery failed: %s", event.action, e, exc_info=True
                )
            finally:
                self._queue.task_done()

    async def _deliver(self, event: Event) -> bool:
        """POST one event, retrying with exponential backoff.

        Returns:
            True if delivered, False if dropped after exhausting retries.
        """
        body = build_payload(event)
        for attempt in range(self.max_retries):
            try:
                response = await self._client.post(self.url, json=body)
                if response.is_success:
                    self.delivered += 1
                    logger.debug("Notification %s delivered", event.action)
                    return True
                error = f"HTTP {response.status_code}"
            except httpx.HTTPError as e:
                error = str(e) or type(e).__name__

            if attempt < self.max_retries - 1:
                wait_time = self.backoff_seconds * (2 ** attempt)
                logger.warning(
                    "Notification %s failed (attempt %d/%d: %s), retrying in %.1fs",
                    event.action, attempt + 1, self.max_retries, error, wait_time,
                )
                await asyncio.sleep(wait_time)
            else:
                logger.warning(
                    "Notification %s dropped after %d attempts: %s",
                    event.action, self.max_retries, error,
                )

        self.dropped += 1
        return False

    async def flush(self) -> None:
        """Wait until every queued event was delivered or dropped."""
        if self._worker is not None and not self._worker.done():
            await self._queue.join()

    async def aclose(self, timeout: float = 10.0) -> None:
        try:
            await asyncio.wait_for(self.flush(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Gave up flushing %d notifications", self._queue.qsize())
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        if self._owns_client:
            await self._client.aclose()
