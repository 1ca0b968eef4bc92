"""Headless-browser search client.

Runs provider-specific search scripts on a Browserless ``/function``
endpoint and parses the JSON array the script returns.
"""

import asyncio
import json
import logging
import time
from typing import Any, Optional

import httpx

from mirrorwatch.errors import BrowserTimeout, BrowserUnavailable
from mirrorwatch.models import SearchProvider, SearchResult
from mirrorwatch.search.scripts import build_search_script

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://chrome.browserless.io"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MIN_INTERVAL_SECONDS = 1.5


class RequestPacer:
    """Enforces a minimum delay between requests to the same provider.

    One pacer is shared by every resolver invocation, so the aggregate
    request rate stays bounded even when several sites resolve at once.
    """

    def __init__(self, min_interval: float = DEFAULT_MIN_INTERVAL_SECONDS):
        self.min_interval = min_interval
        self._last_request: dict[SearchProvider, float] = {}
        self._locks: dict[SearchProvider, asyncio.Lock] = {}

    async def wait(self, provider: SearchProvider) -> None:
        """Sleep until ``provider`` may be called again, then claim the slot."""
        lock = self._locks.setdefault(provider, asyncio.Lock())
        async with lock:
            last = self._last_request.get(provider)
            if last is not None:
                remaining = self.min_interval - (time.monotonic() - last)
                if remaining > 0:
                    logger.debug("Pacing %s for %.2fs", provider.value, remaining)
                    await asyncio.sleep(remaining)
            self._last_request[provider] = time.monotonic()


class BrowserlessClient:
    """Client for the Browserless function API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        pacer: Optional[RequestPacer] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the browser client.

        Args:
            api_key: Browserless token appended to the function URL.
            base_url: Browserless base URL.
            timeout: Per-call timeout in seconds for script execution.
            pacer: Shared pacer; a private one is created if omitted.
            client: Optional preconfigured httpx client (used in tests).
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.pacer = pacer or RequestPacer()
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        logger.info("BrowserlessClient initialized: url=%s", self.base_url)

    @property
    def function_url(self) -> str:
        return f"{self.base_url}/function"

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def run_search(self, provider: SearchProvider, query: str) -> list[SearchResult]:
        """Run one search on ``provider`` and return the extracted result items.

        Args:
            provider: Search engine to drive.
            query: Search query text.

        Returns:
            Result items in page order.

        Raises:
            BrowserTimeout: The script did not finish within the timeout.
            BrowserUnavailable: Transport error, non-2xx response, or a body
                that is not a JSON array of results.
        """
        script = build_search_script(provider, query)
        await self.pacer.wait(provider)

        started = time.monotonic()
        try:
            response = await self._client.post(
                self.function_url,
                params={"token": self.api_key},
                json={"code": script, "context": {}},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise BrowserTimeout(
                f"{provider.value} search timed out after {self.timeout:.0f}s"
            ) from e
        except httpx.HTTPError as e:
            raise BrowserUnavailable(f"{provider.value} search transport error: {e}") from e

        if not response.is_success:
            raise BrowserUnavailable(
                f"{provider.value} search returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        results = self._parse_response(response.text, provider)
        logger.debug(
            "%s search for %r returned %d results in %.0fms",
            provider.value, query, len(results), (time.monotonic() - started) * 1000,
        )
        return results

    def _parse_response(self, body: str, provider: SearchProvider) -> list[SearchResult]:
        """Parse the script's JSON output.

        The script returns ``JSON.stringify(results)``; depending on the
        Browserless version that string is sent as is or JSON-encoded once
        more, so one level of string wrapping is unwrapped.
        """
        try:
            payload: Any = json.loads(body)
            if isinstance(payload, str):
                payload = json.loads(payload)
        except (json.JSONDecodeError, ValueError) as e:
            raise BrowserUnavailable(f"{provider.value} search returned malformed JSON: {e}") from e

        if not isinstance(payload, list):
            raise BrowserUnavailable(
                f"{provider.value} search returned {type(payload).__name__}, expected a list"
            )

        results = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            url = item.get("url")
            if not isinstance(url, str) or not url:
                continue
            title = item.get("title")
            results.append(
                SearchResult(
                    title=title if isinstance(title, str) else "",
                    url=url,
                    provider=provider,
                )
            )
        return results
