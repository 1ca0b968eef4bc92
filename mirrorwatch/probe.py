"""Lightweight HTTP reachability probe for candidate mirror URLs."""

import logging
import time
from typing import Optional

import httpx

from mirrorwatch.models import ProbeResult

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
DEFAULT_TIMEOUT_SECONDS = 5.0
MAX_REDIRECTS = 3

# Servers that refuse HEAD answer with one of these; retry as GET
_HEAD_REFUSED = frozenset({405, 501})


class Prober:
    """Issues HEAD requests (GET when HEAD is refused) and records latency."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        user_agent: str = DEFAULT_USER_AGENT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            max_redirects=MAX_REDIRECTS,
            headers={"User-Agent": user_agent},
        )
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def probe(self, url: str) -> ProbeResult:
        """Check whether ``url`` answers with a 2xx status.

        Args:
            url: Absolute candidate URL.

        Returns:
            ProbeResult; failures of any kind are reported as unreachable
            with the latency measured up to the failure.
        """
        started = time.monotonic()
        try:
            response = await self._client.head(url, timeout=self.timeout)
            if response.status_code in _HEAD_REFUSED:
                logger.debug("HEAD refused by %s (%d), retrying with GET", url, response.status_code)
                async with self._client.stream("GET", url, timeout=self.timeout) as streamed:
                    response = streamed
        except httpx.TooManyRedirects as e:
            return self._failure(url, started, f"too many redirects: {e}")
        except httpx.TimeoutException:
            return self._failure(url, started, f"timeout after {self.timeout:.0f}s")
        except httpx.HTTPError as e:
            return self._failure(url, started, str(e)[:300] or type(e).__name__)

        latency_ms = _elapsed_ms(started)
        reachable = 200 <= response.status_code < 300
        logger.debug("Probe %s -> %d in %dms", url, response.status_code, latency_ms)
        return ProbeResult(
            url=url,
            reachable=reachable,
            latency_ms=latency_ms,
            observed_status=response.status_code,
            error=None if reachable else f"HTTP {response.status_code}",
        )

    def _failure(self, url: str, started: float, error: str) -> ProbeResult:
        latency_ms = _elapsed_ms(started)
        logger.debug("URL not accessible: %s - %s", url, error)
        return ProbeResult(url=url, reachable=False, latency_ms=latency_ms, error=error)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
