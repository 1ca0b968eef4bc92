"""Tests for notification formatting and webhook delivery."""

import asyncio
import json
import unittest
from unittest import mock

import httpx

from mirrorwatch.models import EventKind, SiteStatus, StatusTransition, SweepSummary, TestNotification
from mirrorwatch.notifier import LogNotifier, WebhookNotifier, build_payload, format_message
from tests.fakes import T0


def _site_down():
    return StatusTransition(
        kind=EventKind.SITE_DOWN,
        site_name="moviezap",
        from_status=SiteStatus.WORKING,
        to_status=SiteStatus.DOWN,
        old_url="https://moviezap.in/",
        new_url=None,
        at=T0,
    )


class TestFormatting(unittest.TestCase):
    """Test message text and webhook body."""

    def test_site_down_message(self):
        message = format_message(_site_down())
        self.assertIn("Site Down Alert", message)
        self.assertIn("https://moviezap.in/", message)

    def test_recovery_and_domain_messages(self):
        recovered = StatusTransition(
            kind=EventKind.SITE_RECOVERED, site_name="moviezap",
            from_status=SiteStatus.DOWN, to_status=SiteStatus.WORKING,
            old_url="https://moviezap.in/", new_url="https://moviezap.org/", at=T0,
        )
        self.assertIn("Site Recovery Alert", format_message(recovered))
        changed = StatusTransition(
            kind=EventKind.DOMAIN_CHANGED, site_name="movierulz",
            from_status=SiteStatus.WORKING, to_status=SiteStatus.WORKING,
            old_url="https://movierulz.ms/", new_url="https://movierulz.tv/", at=T0,
        )
        self.assertIn("New Domain Found", format_message(changed))

    def test_payload_shape(self):
        body = build_payload(_site_down(), now=lambda: T0)
        self.assertEqual(body["action"], "site_down")
        self.assertEqual(body["timestamp"], "2024-06-01T12:00:00+00:00")
        self.assertEqual(body["severity"], "CRITICAL")
        self.assertEqual(body["payload"]["siteName"], "moviezap")
        self.assertIsNone(body["payload"]["newUrl"])

    def test_summary_payload(self):
        summary = SweepSummary(checked=8, working=7, down=1, transitions=2, started_at=T0, completed_at=T0)
        body = build_payload(summary, now=lambda: T0)
        self.assertEqual(body["action"], "sweep_summary")
        self.assertEqual(body["payload"]["working"], 7)
        self.assertEqual(body["severity"], "INFO")


class TestWebhookNotifier(unittest.IsolatedAsyncioTestCase):
    """Test queued delivery, retries and dropping."""

    def _notifier(self, handler, **kwargs) -> WebhookNotifier:
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        self.addAsyncCleanup(http.aclose)
        kwargs.setdefault("backoff_seconds", 0)
        return WebhookNotifier("https://hooks.example.com/alerts", client=http, **kwargs)

    async def test_delivers_in_emit_order(self):
        received = []

        def handler(request):
            received.append(json.loads(request.content)["action"])
            return httpx.Response(204)

        notifier = self._notifier(handler)
        notifier.emit(_site_down())
        notifier.emit(TestNotification(message="ping", at=T0))
        await notifier.aclose()

        self.assertEqual(received, ["site_down", "test"])
        self.assertEqual(notifier.delivered, 2)
        self.assertEqual(notifier.dropped, 0)

    async def test_retries_then_succeeds(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            return httpx.Response(502) if len(attempts) < 3 else httpx.Response(200)

        notifier = self._notifier(handler)
        notifier.emit(_site_down())
        await notifier.aclose()
        self.assertEqual(len(attempts), 3)
        self.assertEqual(notifier.delivered, 1)

    async def test_drops_after_retries_exhausted(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        notifier = self._notifier(handler, max_retries=2)
        notifier.emit(_site_down())
        await notifier.aclose()
        self.assertEqual(notifier.delivered, 0)
        self.assertEqual(notifier.dropped, 1)

    async def test_unexpected_delivery_error_keeps_worker_alive(self):
        received = []

        def handler(request):
            received.append(json.loads(request.content)["action"])
            return httpx.Response(200)

        notifier = self._notifier(handler)
        with mock.patch(
            "mirrorwatch.notifier.build_payload",
            side_effect=[TypeError("not serializable"), build_payload(_site_down())],
        ), self.assertLogs("mirrorwatch.notifier", level="ERROR") as logs:
            notifier.emit(TestNotification(message="ping", at=T0))
            worker = notifier._worker
            notifier.emit(_site_down())
            await notifier.flush()
            self.assertFalse(worker.done())
            self.assertIs(notifier._worker, worker)

        await notifier.aclose()
        self.assertIn("not serializable", logs.output[0])
        self.assertEqual(received, ["site_down"])
        self.assertEqual(notifier.delivered, 1)
        self.assertEqual(notifier.dropped, 1)

    async def test_emit_does_not_wait_for_delivery(self):
        release = asyncio.Event()

        async def slow_handler(request):
            await release.wait()
            return httpx.Response(200)

        notifier = self._notifier(slow_handler)
        notifier.emit(_site_down())
        self.assertEqual(notifier.delivered, 0)
        release.set()
        await notifier.aclose()
        self.assertEqual(notifier.delivered, 1)

    async def test_full_queue_drops(self):
        release = asyncio.Event()

        async def slow_handler(request):
            await release.wait()
            return httpx.Response(200)

        notifier = self._notifier(slow_handler, queue_size=1)
        for _ in range(3):
            notifier.emit(_site_down())
        self.assertGreaterEqual(notifier.dropped, 1)
        release.set()
        await notifier.aclose()


class TestWebhookWithoutLoop(unittest.TestCase):
    def test_emit_outside_event_loop_drops(self):
        notifier = WebhookNotifier("https://hooks.example.com/alerts", client=httpx.AsyncClient())
        notifier.emit(_site_down())
        self.assertEqual(notifier.dropped, 1)


class TestLogNotifier(unittest.TestCase):
    def test_logs_event(self):
        with self.assertLogs("mirrorwatch.notifier", level="INFO") as logs:
            LogNotifier().emit(_site_down())
        self.assertIn("site_down", logs.output[0])


if __name__ == "__main__":
    unittest.main()
