"""Candidate URL extraction and filtering.

Turns raw search result items into an ordered, de-duplicated list of
candidate mirror URLs for one site profile.
"""

import logging
import re
from typing import Iterable, Optional
from urllib.parse import urlparse, urlunparse

from mirrorwatch.models import SearchResult, SiteProfile

logger = logging.getLogger(__name__)

# Permissive absolute URL grammar; the host must contain at least one dot.
URL_PATTERN = re.compile(
    r"https?://[a-z0-9](?:[a-z0-9-]*[a-z0-9])?(?:\.[a-z0-9-]+)*\.[a-z]{2,}(?::\d{1,5})?(?:/[^\s\"'<>]*)?",
    re.IGNORECASE,
)

# Hosts that show up in search results but are never mirror candidates
DENIED_DOMAINS = frozenset({
    # search engines
    "google.com", "google.co.in", "google.co.uk", "bing.com", "duckduckgo.com",
    "yahoo.com", "yandex.com", "yandex.ru", "baidu.com", "ask.com",
    # social networks
    "facebook.com", "fb.com", "twitter.com", "x.com", "instagram.com",
    "reddit.com", "linkedin.com", "pinterest.com", "tiktok.com", "t.me",
    "telegram.me", "quora.com",
    # video platforms
    "youtube.com", "youtu.be", "vimeo.com", "dailymotion.com",
    # reference sites that describe the mirrors rather than host them
    "wikipedia.org",
})

# Trailing characters that commonly stick to URLs scanned out of text
_TRAILING_PUNCTUATION = ".,;:!?)]}"


def normalize_url(url: str) -> str:
    """Normalize a URL for deduplication.

    Removes fragments, lowercases scheme/host, strips trailing slashes.
    """
    parsed = urlparse(url)
    path = parsed.path.rstrip("/") or "/"
    normalized = urlunparse((
        parsed.scheme.lower(),
        parsed.netloc.lower(),
        path,
        parsed.params,
        parsed.query,
        "",  # Remove fragment
    ))
    return normalized


def host_of(url: str) -> str:
    """Lowercase host of ``url`` without port or credentials."""
    return (urlparse(url).hostname or "").lower()


def is_denied_host(host: str, denied: frozenset[str] = DENIED_DOMAINS) -> bool:
    """Check whether a host (or a parent domain of it) is on the denylist."""
    labels = host.lower().split(".")
    return any(".".join(labels[i:]) in denied for i in range(len(labels) - 1))


def find_url(text: str) -> Optional[str]:
    """Return the first absolute URL found in ``text``, or None."""
    if not text:
        return None
    match = URL_PATTERN.search(text)
    if not match:
        return None
    return match.group(0).rstrip(_TRAILING_PUNCTUATION)


class UrlExtractor:
    """Filters search results down to the candidate URLs of one site."""

    def __init__(self, denied_domains: Iterable[str] = DENIED_DOMAINS):
        self.denied_domains = frozenset(d.lower() for d in denied_domains)

    def extract(self, results: Iterable[SearchResult], profile: SiteProfile) -> list[str]:
        """Extract candidate URLs for ``profile``.

        Args:
            results: Merged result items, primary provider first.
            profile: Site profile whose domain pattern candidates must match.

        Returns:
            Candidate URLs in first-seen order, de-duplicated by normalized form.
        """
        domain_re = re.compile(profile.domain_pattern, re.IGNORECASE)
        seen: set[str] = set()
        candidates: list[str] = []
        dropped = {"malformed": 0, "denied": 0, "foreign": 0, "duplicate": 0}

        for item in results:
            url = find_url(item.url)
            if url is None:
                dropped["malformed"] += 1
                continue

            host = host_of(url)
            if is_denied_host(host, self.denied_domains):
                dropped["denied"] += 1
                continue

            if not domain_re.search(host):
                dropped["foreign"] += 1
                continue

            key = normalize_url(url)
            if key in seen:
                dropped["duplicate"] += 1
                continue
            seen.add(key)
            candidates.append(url)

        logger.debug(
            "Extracted %d candidates for %s (dropped: %s)",
            len(candidates), profile.name, dropped,
        )
        return candidates
