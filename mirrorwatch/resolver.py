"""Site resolver.

Finds the current working mirror of one logical site:
1. Search every alias on the primary, then the secondary provider
2. Filter the merged results down to candidate URLs of the site
3. Probe candidates in order; the first reachable one wins
4. Classify the outcome as WORKING, NOT_FOUND, DOWN or ERROR
"""

import asyncio
import logging
from typing import Callable, Mapping, Optional, Protocol, Sequence

from mirrorwatch.catalog import default_profile, get_profile
from mirrorwatch.errors import BrowserError
from mirrorwatch.models import (
    ProbeResult,
    SearchProvider,
    SearchResult,
    SiteProfile,
    SiteRecord,
    SiteStatus,
    utcnow,
)
from mirrorwatch.search.extractor import UrlExtractor

logger = logging.getLogger(__name__)

# Prefix marking notes written by the resolver rather than by an operator
DIAGNOSTIC_PREFIX = "[auto] "

DEFAULT_PROVIDERS = (SearchProvider.PRIMARY, SearchProvider.SECONDARY)


class SearchClient(Protocol):
    async def run_search(self, provider: SearchProvider, query: str) -> list[SearchResult]: ...


class ReachabilityProber(Protocol):
    async def probe(self, url: str) -> ProbeResult: ...


class SiteResolver:
    """Resolves a site name to a detached SiteRecord.

    Holds no per-call state, so concurrent resolutions of different
    names are safe; request pacing lives in the search client.
    """

    def __init__(
        self,
        search_client: SearchClient,
        prober: ReachabilityProber,
        extractor: Optional[UrlExtractor] = None,
        profiles: Optional[Mapping[str, SiteProfile]] = None,
        providers: Sequence[SearchProvider] = DEFAULT_PROVIDERS,
        max_aliases_per_provider: int = 3,
        inter_alias_delay: float = 1.5,
        clock: Callable = utcnow,
    ):
        self.search_client = search_client
        self.prober = prober
        self.extractor = extractor or UrlExtractor()
        self.profiles = dict(profiles) if profiles is not None else None
        self.providers = tuple(providers)
        self.max_aliases_per_provider = max(1, max_aliases_per_provider)
        self.inter_alias_delay = inter_alias_delay
        self.clock = clock

    def profile_for(self, name: str) -> SiteProfile:
        """Return the configured profile for ``name`` or synthesize one."""
        key = name.strip().lower()
        profile = self.profiles.get(key) if self.profiles is not None else get_profile(key)
        return profile or default_profile(key)

    async def resolve(self, name: str) -> SiteRecord:
        """Resolve ``name`` to a new, detached record (``id`` is None).

        Args:
            name: Logical site name.

        Returns:
            SiteRecord carrying status, working URL, latency and diagnostics.
        """
        profile = self.profile_for(name)
        logger.info("Searching for working link for: %s", profile.name)

        try:
            results, last_error = await self._search(profile)
        except Exception as e:
            logger.error("Search for %s failed unexpectedly: %s", profile.name, e, exc_info=True)
            return self._error_record(profile, f"Search failed: {e}")

        if results is None:
            logger.warning("All searches failed for %s: %s", profile.name, last_error)
            return self._error_record(profile, f"All searches failed, last error: {last_error}")

        candidates = self.extractor.extract(results, profile)
        if not candidates:
            logger.warning(
                "No candidate URLs for %s among %d results", profile.name, len(results)
            )
            return SiteRecord(
                name=profile.name,
                status=SiteStatus.NOT_FOUND,
                last_checked=self.clock(),
            )

        try:
            winner = await self._first_reachable(candidates)
        except Exception as e:
            logger.error("Probing candidates for %s failed: %s", profile.name, e, exc_info=True)
            return self._error_record(profile, f"Probe failed: {e}")

        if winner is None:
            logger.warning(
                "None of %d candidates for %s is reachable", len(candidates), profile.name
            )
            return SiteRecord(
                name=profile.name,
                status=SiteStatus.DOWN,
                last_checked=self.clock(),
                notes=f"{DIAGNOSTIC_PREFIX}{len(candidates)} candidates unreachable",
            )

        logger.info(
            "Found working URL for %s: %s (%dms)", profile.name, winner.url, winner.latency_ms
        )
        return SiteRecord(
            name=profile.name,
            current_working_url=winner.url,
            status=SiteStatus.WORKING,
            last_checked=self.clock(),
            response_time=winner.latency_ms,
        )

    async def _search(
        self, profile: SiteProfile
    ) -> tuple[Optional[list[SearchResult]], Optional[str]]:
        """Run every provider/alias search.

        Returns:
            Tuple of (merged results or None if every call failed,
            description of the last failure).
        """
        aliases = profile.query_aliases[: self.max_aliases_per_provider]
        merged: list[SearchResult] = []
        succeeded = 0
        last_error: Optional[str] = None
        first_call = True

        for provider in self.providers:
            for alias in aliases:
                if not first_call and self.inter_alias_delay > 0:
                    await asyncio.sleep(self.inter_alias_delay)
                first_call = False
                try:
                    results = await self.search_client.run_search(provider, alias)
                except BrowserError as e:
                    last_error = f"{provider.value} '{alias}': {e}"
                    logger.warning(
                        "%s search failed for term '%s': %s", provider.value, alias, e
                    )
                    continue
                succeeded += 1
                merged.extend(results)

        if succeeded == 0:
            return None, last_error
        return merged, last_error

    async def _first_reachable(self, candidates: list[str]) -> Optional[ProbeResult]:
        for url in candidates:
            result = await self.prober.probe(url)
            if result.reachable:
                return result
            logger.debug("Candidate %s unreachable: %s", url, result.error)
        return None

    def _error_record(self, profile: SiteProfile, message: str) -> SiteRecord:
        return SiteRecord(
            name=profile.name,
            status=SiteStatus.ERROR,
            last_checked=self.clock(),
            notes=f"{DIAGNOSTIC_PREFIX}{message}"[:1000],
        )
