"""Wiring and run modes for the mirror monitor.

Builds every collaborator from the configuration dict:
1. Browserless search client with a shared request pacer
2. Reachability prober and site resolver
3. Site repository (in-memory or BigQuery)
4. Notifier (webhook, or log-only when no webhook is configured)
5. Monitor and the service façade on top of them
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Any, Sequence

from mirrorwatch.config import load_sites, require
from mirrorwatch.errors import ConfigError
from mirrorwatch.models import HealthReport, SiteRecord, SweepOutcome
from mirrorwatch.monitor import Monitor
from mirrorwatch.notifier import LogNotifier, Notifier, WebhookNotifier
from mirrorwatch.probe import Prober
from mirrorwatch.resolver import SiteResolver
from mirrorwatch.search.browserless import BrowserlessClient, RequestPacer
from mirrorwatch.service import SiteService
from mirrorwatch.storage.repository import InMemorySiteRepository, SiteRepository

logger = logging.getLogger(__name__)


@dataclass
class App:
    """Everything a run mode needs, plus the resources to release."""

    service: SiteService
    monitor: Monitor
    repository: SiteRepository
    notifier: Notifier
    browser: BrowserlessClient
    prober: Prober

    async def aclose(self) -> None:
        self.monitor.stop()
        await self.notifier.aclose()
        await self.browser.aclose()
        await self.prober.aclose()


def build_repository(config: dict[str, Any]) -> SiteRepository:
    """Create the repository selected by ``storage.backend``."""
    storage = config.get("storage", {})
    backend = storage.get("backend", "memory")

    if backend == "memory":
        logger.info("Using in-memory site repository")
        return InMemorySiteRepository()

    if backend == "bigquery":
        from mirrorwatch.storage.bigquery_repository import BigQuerySiteRepository

        repository = BigQuerySiteRepository(
            project_id=require(config, "storage.project_id"),
            dataset_id=require(config, "storage.dataset"),
            location=storage.get("location", "us-east4"),
        )
        repository.ensure_tables_exist()
        return repository

    raise ConfigError(f"Unknown storage backend: {backend}")


def build_notifier(config: dict[str, Any]) -> Notifier:
    notifier_config = config.get("notifier", {})
    url = notifier_config.get("url")
    if not url:
        logger.info("No notifier URL configured, notifications are logged only")
        return LogNotifier()
    return WebhookNotifier(
        url=url,
        max_retries=notifier_config.get("max_retries", 3),
        queue_size=notifier_config.get("queue_size", 100),
    )


def build_app(config: dict[str, Any], require_search: bool = True) -> App:
    """Build the full object graph from ``config``.

    Args:
        config: Application configuration dict (see ``load_config``).
        require_search: Fail early if no Browserless API key is configured.

    Raises:
        ConfigError: A required value is missing or invalid.
    """
    browser_config = config["browserless"]
    monitoring = config["monitoring"]
    if require_search:
        require(config, "browserless.api_key")

    profiles = load_sites(config)

    browser = BrowserlessClient(
        api_key=browser_config.get("api_key") or "",
        base_url=browser_config["url"],
        timeout=browser_config["timeout_seconds"],
        pacer=RequestPacer(browser_config["min_request_interval_seconds"]),
    )
    prober = Prober(timeout=monitoring["probe_timeout_seconds"])
    resolver = SiteResolver(
        search_client=browser,
        prober=prober,
        profiles={profile.name: profile for profile in profiles},
        max_aliases_per_provider=monitoring["max_aliases_per_provider"],
        inter_alias_delay=monitoring["inter_alias_delay_seconds"],
    )
    repository = build_repository(config)
    notifier = build_notifier(config)
    monitor = Monitor(
        resolver=resolver,
        repository=repository,
        notifier=notifier,
        site_names=[profile.name for profile in profiles],
        full_sweep_interval=monitoring["full_sweep_interval_seconds"],
        stale_check_interval=monitoring["stale_check_interval_seconds"],
        per_site_delay=monitoring["per_site_delay_seconds"],
    )
    service = SiteService(
        resolver=resolver,
        repository=repository,
        monitor=monitor,
        notifier=notifier,
        profiles=profiles,
        per_site_delay=monitoring["per_site_delay_seconds"],
        alert_threshold=monitoring["alert_threshold_seconds"],
    )
    logger.info("Monitoring %d sites", len(profiles))
    return App(
        service=service,
        monitor=monitor,
        repository=repository,
        notifier=notifier,
        browser=browser,
        prober=prober,
    )


async def run_daemon(config: dict[str, Any]) -> None:
    """Run the scheduler until interrupted or sent SIGTERM."""
    app = build_app(config)
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, app.monitor.stop)
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGTERM handler not supported on this platform")

    logger.info("=== Monitor starting ===")
    try:
        await app.monitor.run_forever()
    finally:
        await app.aclose()
        logger.info("=== Monitor shut down ===")


async def run_sweep(config: dict[str, Any]) -> SweepOutcome:
    """Run one full sweep and return its outcome."""
    app = build_app(config)
    try:
        return await app.monitor.run_full_sweep(trigger="manual")
    finally:
        await app.aclose()


async def run_resolve(config: dict[str, Any], names: Sequence[str]) -> list[SiteRecord]:
    """Resolve ``names`` ad hoc without touching the repository."""
    app = build_app(config)
    try:
        return await app.service.resolve_batch(names)
    finally:
        await app.aclose()


async def run_health(config: dict[str, Any]) -> HealthReport:
    app = build_app(config, require_search=False)
    try:
        return app.service.health()
    finally:
        await app.aclose()
