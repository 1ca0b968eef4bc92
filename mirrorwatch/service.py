"""Core API façade consumed by the HTTP surface.

Caller errors (``Invalid``, ``NotFound``, ``AlreadyExists``, ``Busy``) pass
through unchanged; any other failure is logged and re-raised as
``Internal`` with a diagnostic message.
"""

import asyncio
import functools
import inspect
import logging
import re
from dataclasses import replace
from datetime import timedelta
from typing import Any, Callable, Iterable, Optional, Sequence
from urllib.parse import urlsplit

from mirrorwatch.catalog import BUILTIN_PROFILES
from mirrorwatch.errors import AlreadyExists, CallerError, Internal, Invalid, NotFound
from mirrorwatch.models import (
    HealthReport,
    HealthStatus,
    SiteProfile,
    SitePage,
    SiteRecord,
    SiteStatus,
    SweepAck,
    TestNotification,
    utcnow,
)
from mirrorwatch.monitor import Monitor, merge_resolution
from mirrorwatch.notifier import Notifier
from mirrorwatch.resolver import SiteResolver
from mirrorwatch.storage.repository import SiteRepository

logger = logging.getLogger(__name__)

_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._-]{0,63}$")

HEALTHY_THRESHOLD = 80.0
DEGRADED_THRESHOLD = 50.0


def _surface_errors(func: Callable) -> Callable:
    """Pass caller errors through, wrap everything else into Internal."""

    def _wrap(e: Exception) -> Internal:
        logger.error("%s failed: %s", func.__name__, e, exc_info=True)
        return Internal(f"{func.__name__} failed: {type(e).__name__}: {e}")

    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except (CallerError, Internal):
                raise
            except Exception as e:
                raise _wrap(e) from e

        return async_wrapper

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (CallerError, Internal):
            raise
        except Exception as e:
            raise _wrap(e) from e

    return wrapper


def validate_name(name: Any) -> str:
    """Normalize a logical site name, raising Invalid if it is malformed."""
    if not isinstance(name, str) or not name.strip():
        raise Invalid("Site name must be a non-empty string")
    key = name.strip().lower()
    if not _NAME_PATTERN.match(key):
        raise Invalid(f"Invalid site name: {name!r}")
    return key


def _parse_status(value: Any) -> SiteStatus:
    if isinstance(value, SiteStatus):
        return value
    try:
        return SiteStatus(str(value).strip().upper())
    except ValueError:
        raise Invalid(f"Invalid status: {value!r}") from None


def _validate_url(url: str) -> str:
    parts = urlsplit(url.strip())
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise Invalid(f"URL must be an absolute http(s) URL: {url!r}")
    return url.strip()


def _paginate(items: list, page: int, size: int) -> SitePage:
    if page < 0 or size <= 0:
        raise Invalid("page must be >= 0 and size must be > 0")
    start = page * size
    return SitePage(items=items[start:start + size], total_elements=len(items), page=page, size=size)


class SiteService:
    """Entry points for ad-hoc lookups, refreshes, health and admin edits."""

    def __init__(
        self,
        resolver: SiteResolver,
        repository: SiteRepository,
        monitor: Monitor,
        notifier: Notifier,
        profiles: Optional[Sequence[SiteProfile]] = None,
        per_site_delay: float = 3.0,
        alert_threshold: float = 30 * 60,
        clock: Callable = utcnow,
    ):
        self.resolver = resolver
        self.repository = repository
        self.monitor = monitor
        self.notifier = notifier
        self.profiles = list(profiles) if profiles is not None else list(BUILTIN_PROFILES)
        self.per_site_delay = per_site_delay
        self.alert_threshold = alert_threshold
        self.clock = clock
        self._add_lock = asyncio.Lock()

    # ── Resolution ─────────────────────────────────────────────────

    @_surface_errors
    async def resolve(self, name: str) -> SiteRecord:
        """Resolve ``name`` without reading or writing the repository."""
        return await self.resolver.resolve(validate_name(name))

    @_surface_errors
    async def resolve_batch(self, names: Iterable[str]) -> list[SiteRecord]:
        """Resolve several names in order, pausing between them."""
        keys = [validate_name(name) for name in names]
        results = []
        for index, key in enumerate(keys):
            if index > 0 and self.per_site_delay > 0:
                await asyncio.sleep(self.per_site_delay)
            results.append(await self.resolver.resolve(key))
        return results

    @_surface_errors
    async def refresh_one(self, record_id: int) -> SiteRecord:
        """Re-resolve a stored record and upsert it under the same id.

        Raises:
            NotFound: No record with ``record_id``.
        """
        record = self.repository.get_by_id(record_id)
        if record is None:
            raise NotFound(f"Site not found with id: {record_id}")
        return await self.monitor.refresh_record(record)

    @_surface_errors
    async def refresh_all(self) -> SweepAck:
        """Schedule a background full sweep.

        Raises:
            Busy: A sweep is already running.
        """
        self.monitor.trigger_full_sweep()
        logger.info("Manual full sweep scheduled")
        return SweepAck(accepted=True, requested_at=self.clock())

    @_surface_errors
    async def add_new(self, name: str) -> SiteRecord:
        """Resolve and store a site that is not tracked yet.

        Raises:
            AlreadyExists: A record with this name exists (case-insensitive).
        """
        key = validate_name(name)
        async with self._add_lock:
            if self.repository.get_by_name(key) is not None:
                raise AlreadyExists(f"Site already exists: {key}")
            resolved = await self.resolver.resolve(key)
            stored = self.repository.upsert(merge_resolution(None, resolved, self.clock()))
        logger.info("Added site %s (id=%s, status=%s)", stored.name, stored.id, stored.status.value)
        return stored

    # ── Health ─────────────────────────────────────────────────────

    @_surface_errors
    def health(self) -> HealthReport:
        records = self.repository.list_all()
        total = len(records)
        if total == 0:
            return HealthReport(
                status=HealthStatus.HEALTHY,
                total_sites=0,
                working=0,
                down=0,
                uptime_pct=0.0,
                avg_response_ms=0.0,
                last_checked=None,
            )

        working = sum(1 for r in records if r.is_active and r.status is SiteStatus.WORKING)
        uptime_pct = working * 100.0 / total
        response_times = [r.response_time for r in records if r.response_time is not None]
        avg_response_ms = sum(response_times) / len(response_times) if response_times else 0.0
        last_checked = max((r.last_checked for r in records if r.last_checked), default=None)

        if uptime_pct >= HEALTHY_THRESHOLD:
            status = HealthStatus.HEALTHY
        elif uptime_pct >= DEGRADED_THRESHOLD:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.CRITICAL

        allowed_age = timedelta(seconds=self.monitor.full_sweep_interval + self.alert_threshold)
        overdue = last_checked is None or self.clock() - last_checked > allowed_age
        if overdue and status is HealthStatus.HEALTHY:
            status = HealthStatus.DEGRADED

        return HealthReport(
            status=status,
            total_sites=total,
            working=working,
            down=total - working,
            uptime_pct=uptime_pct,
            avg_response_ms=avg_response_ms,
            last_checked=last_checked,
            overdue=overdue,
        )

    # ── Admin ──────────────────────────────────────────────────────

    @_surface_errors
    def get_site(self, record_id: int) -> SiteRecord:
        record = self.repository.get_by_id(record_id)
        if record is None:
            raise NotFound(f"Site not found with id: {record_id}")
        return record

    @_surface_errors
    def list_sites(
        self,
        status: Optional[Any] = None,
        search: Optional[str] = None,
        page: int = 0,
        size: int = 20,
    ) -> SitePage:
        """List records filtered by status and name substring, newest update first."""
        records = self.repository.list_all()
        if status is not None:
            wanted = _parse_status(status)
            records = [r for r in records if r.status is wanted]
        if search:
            needle = search.strip().lower()
            records = [r for r in records if needle in r.name.lower()]
        records.sort(
            key=lambda r: r.last_updated.timestamp() if r.last_updated else float("-inf"),
            reverse=True,
        )
        return _paginate(records, page, size)

    @_surface_errors
    def update_site(
        self,
        record_id: int,
        current_working_url: Optional[str] = None,
        status: Optional[Any] = None,
        is_active: Optional[bool] = None,
        notes: Optional[str] = None,
    ) -> SiteRecord:
        """Apply a manual edit; only the given fields change.

        An empty ``notes`` string clears the notes.

        Raises:
            NotFound: No record with ``record_id``.
            Invalid: Bad status or URL, or WORKING without a URL.
        """
        record = self.get_site(record_id)
        updated = replace(record)

        if current_working_url is not None:
            updated.current_working_url = _validate_url(current_working_url)
        if status is not None:
            updated.status = _parse_status(status)
        if is_active is not None:
            updated.is_active = bool(is_active)
        if notes is not None:
            updated.notes = notes or None

        if updated.status is SiteStatus.WORKING and not updated.current_working_url:
            raise Invalid("A WORKING site needs a current working URL")
        if updated.current_working_url != record.current_working_url:
            # A manual URL edit counts as a check, keeping last_checked >= last_updated
            now = self.clock()
            updated.last_updated = now
            updated.last_checked = max(record.last_checked or now, now)

        stored = self.repository.upsert(updated)
        logger.info("Site %s updated manually", stored.name)
        return stored

    @_surface_errors
    def delete_site(self, record_id: int) -> None:
        record = self.get_site(record_id)
        self.repository.delete(record_id)
        logger.info("Deleted site %s (id=%d)", record.name, record_id)

    @_surface_errors
    def statistics(self) -> dict[str, Any]:
        """Status distribution, records updated in the last 24 hours and total tracked."""
        counts = self.repository.count_by_status()
        since = self.clock() - timedelta(hours=24)
        return {
            "statusDistribution": {status.value: n for status, n in counts.items()},
            "recentlyUpdated": len(self.repository.list_recently_updated(since)),
            "totalSites": sum(counts.values()),
        }

    @_surface_errors
    def activity_log(self, days: int = 7, page: int = 0, size: int = 50) -> SitePage:
        """Records whose URL changed in the last ``days`` days, newest first."""
        if days <= 0:
            raise Invalid("days must be > 0")
        since = self.clock() - timedelta(days=days)
        return _paginate(self.repository.list_recently_updated(since), page, size)

    def supported_sites(self) -> list[SiteProfile]:
        return list(self.profiles)

    @_surface_errors
    def send_test_notification(self, message: Optional[str] = None) -> TestNotification:
        event = TestNotification(
            message=message or "This is a test notification from mirrorwatch.",
            at=self.clock(),
        )
        self.notifier.emit(event)
        logger.info("Test notification emitted")
        return event
