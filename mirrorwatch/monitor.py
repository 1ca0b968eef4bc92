"""Monitor and scheduler.

Runs two recurring jobs over the site records:
1. Full sweep: re-resolve every configured site, persist, emit transitions
   and a closing summary
2. Stale check: re-resolve records not checked within one sweep interval

Both jobs share one sweep lock, so at most one of them touches the
records at a time. Sites inside a job are processed sequentially.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Optional, Sequence

from mirrorwatch.errors import Busy, RepositoryError
from mirrorwatch.models import (
    EventKind,
    SiteRecord,
    SiteStatus,
    StatusTransition,
    SweepOutcome,
    SweepSummary,
    utcnow,
)
from mirrorwatch.notifier import Notifier
from mirrorwatch.resolver import DIAGNOSTIC_PREFIX, SiteResolver
from mirrorwatch.storage.repository import SiteRepository

logger = logging.getLogger(__name__)


def _is_operator_note(notes: Optional[str]) -> bool:
    return bool(notes) and not notes.startswith(DIAGNOSTIC_PREFIX)


def merge_resolution(
    previous: Optional[SiteRecord], resolved: SiteRecord, now
) -> SiteRecord:
    """Combine a detached resolver result with the stored record.

    Operator-owned fields (``is_active`` and hand-written ``notes``) and the
    record id survive; status, check time and latency come from the resolver.
    The working URL is only replaced when the resolver found a winner, and
    ``last_updated`` only advances when the URL actually changes.

    Args:
        previous: Stored record, or None for a first resolution.
        resolved: Detached record returned by the resolver.
        now: Fallback timestamp when the resolver did not set one.

    Returns:
        The record to upsert.
    """
    last_checked = resolved.last_checked or now

    if previous is None:
        url = resolved.current_working_url if resolved.status is SiteStatus.WORKING else None
        return SiteRecord(
            name=resolved.name,
            current_working_url=url,
            status=resolved.status,
            last_checked=last_checked,
            last_updated=last_checked if url else None,
            response_time=resolved.response_time,
            is_active=True,
            notes=resolved.notes,
        )

    if previous.last_checked is not None and previous.last_checked > last_checked:
        last_checked = previous.last_checked

    if resolved.status is SiteStatus.WORKING:
        url = resolved.current_working_url
    else:
        url = previous.current_working_url
    url_changed = url != previous.current_working_url

    return SiteRecord(
        name=previous.name,
        id=previous.id,
        current_working_url=url,
        status=resolved.status,
        last_checked=last_checked,
        last_updated=last_checked if url_changed else previous.last_updated,
        response_time=resolved.response_time,
        is_active=previous.is_active,
        notes=previous.notes if _is_operator_note(previous.notes) else resolved.notes,
    )


def diff_transition(
    previous: Optional[SiteRecord], current: SiteRecord, at
) -> Optional[StatusTransition]:
    """Return the transition event between two states of a record, if any.

    A first resolution (no previous record) never produces an event.
    """
    if previous is None:
        return None

    was_working = previous.status is SiteStatus.WORKING
    is_working = current.status is SiteStatus.WORKING

    if was_working and not is_working:
        kind = EventKind.SITE_DOWN
        new_url = None
    elif is_working and not was_working:
        kind = EventKind.SITE_RECOVERED
        new_url = current.current_working_url
    elif (
        was_working
        and is_working
        and current.current_working_url != previous.current_working_url
    ):
        kind = EventKind.DOMAIN_CHANGED
        new_url = current.current_working_url
    else:
        return None

    return StatusTransition(
        kind=kind,
        site_name=current.name,
        from_status=previous.status,
        to_status=current.status,
        old_url=previous.current_working_url,
        new_url=new_url,
        at=at,
    )


class Monitor:
    """Periodic re-resolution of site records with transition alerts."""

    def __init__(
        self,
        resolver: SiteResolver,
        repository: SiteRepository,
        notifier: Notifier,
        site_names: Sequence[str],
        full_sweep_interval: float = 6 * 3600,
        stale_check_interval: float = 3600,
        per_site_delay: float = 3.0,
        clock: Callable = utcnow,
    ):
        self.resolver = resolver
        self.repository = repository
        self.notifier = notifier
        self.site_names = [name.strip().lower() for name in site_names]
        self.full_sweep_interval = full_sweep_interval
        self.stale_check_interval = stale_check_interval
        self.per_site_delay = per_site_delay
        self.clock = clock
        self._sweep_lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._manual_task: Optional[asyncio.Task] = None
        self.last_outcome: Optional[SweepOutcome] = None

    @property
    def sweep_running(self) -> bool:
        manual_pending = self._manual_task is not None and not self._manual_task.done()
        return self._sweep_lock.locked() or manual_pending

    def stop(self) -> None:
        """Request shutdown; running jobs stop at the next site boundary."""
        logger.info("Monitor stop requested")
        self._stop.set()

    # ── Per-site update ────────────────────────────────────────────

    async def refresh_record(self, record: SiteRecord) -> SiteRecord:
        """Re-resolve one stored record, persist it and emit its transition.

        Args:
            record: The stored record to refresh; its id is kept.

        Returns:
            The stored, updated record.
        """
        stored, _ = await self._check_site(record.name, record)
        return stored

    async def _check_site(
        self, name: str, previous: Optional[SiteRecord]
    ) -> tuple[SiteRecord, Optional[StatusTransition]]:
        resolved = await self.resolver.resolve(name)
        now = self.clock()
        stored = self.repository.upsert(merge_resolution(previous, resolved, now))

        event = diff_transition(previous, stored, now)
        if event is not None:
            logger.info(
                "Site %s: %s (%s -> %s)",
                stored.name, event.action, event.from_status.value, event.to_status.value,
            )
            self.notifier.emit(event)
        return stored, event

    # ── Jobs ───────────────────────────────────────────────────────

    async def run_full_sweep(self, trigger: str = "scheduled") -> SweepOutcome:
        """Re-resolve every configured site and emit a summary.

        Raises:
            Busy: Another sweep or stale check holds the sweep lock.
        """
        if self._sweep_lock.locked():
            raise Busy("A sweep is already running")

        async with self._sweep_lock:
            started_at = self.clock()
            logger.info("Starting %s full sweep of %d sites", trigger, len(self.site_names))
            outcome = await self._process(self.site_names)
            self.last_outcome = outcome

            if outcome.aborted:
                return outcome

            summary = SweepSummary(
                checked=outcome.checked,
                working=outcome.working,
                down=outcome.down,
                transitions=len(outcome.events),
                started_at=started_at,
                completed_at=self.clock(),
                trigger=trigger,
            )
            self.notifier.emit(summary)
            logger.info(
                "Full sweep completed. Checked: %d, Working: %d, Down: %d, Transitions: %d%s",
                summary.checked, summary.working, summary.down, summary.transitions,
                " (cancelled)" if outcome.cancelled else "",
            )
            return outcome

    async def run_stale_check(self) -> SweepOutcome:
        """Re-resolve records not checked within one full sweep interval.

        Raises:
            Busy: Another sweep or stale check holds the sweep lock.
        """
        if self._sweep_lock.locked():
            raise Busy("A sweep is already running")

        async with self._sweep_lock:
            threshold = self.clock() - timedelta(seconds=self.full_sweep_interval)
            try:
                stale = self.repository.list_stale(threshold)
            except RepositoryError as e:
                logger.error("Stale check aborted, repository unavailable: %s", e)
                return SweepOutcome(aborted=True)

            names = [record.name for record in stale if record.is_active]
            if not names:
                logger.debug("No stale sites")
                return SweepOutcome()

            logger.info("Found %d stale sites that need checking", len(names))
            outcome = await self._process(names)
            self.last_outcome = outcome
            return outcome

    def trigger_full_sweep(self) -> asyncio.Task:
        """Start a manual full sweep in the background.

        Raises:
            Busy: A sweep is already running or scheduled to start.
        """
        if self.sweep_running:
            raise Busy("A sweep is already running")
        self._manual_task = asyncio.get_running_loop().create_task(
            self._manual_sweep(), name="manual-full-sweep"
        )
        return self._manual_task

    async def _manual_sweep(self) -> Optional[SweepOutcome]:
        try:
            return await self.run_full_sweep(trigger="manual")
        except Busy:
            logger.warning("Manual sweep skipped, another sweep started first")
            return None

    async def _process(self, names: Sequence[str]) -> SweepOutcome:
        """Sequentially check ``names``; per-site failures never stop the loop."""
        outcome = SweepOutcome()

        for index, name in enumerate(names):
            if index > 0:
                await self._wait_stop(self.per_site_delay)
            if self._stop.is_set():
                outcome.cancelled = True
                logger.info("Shutdown requested, skipping %d remaining sites", len(names) - index)
                break

            try:
                previous = self.repository.get_by_name(name)
                if previous is not None and not previous.is_active:
                    logger.debug("Skipping inactive site %s", name)
                    outcome.skipped += 1
                    continue
                stored, event = await self._check_site(name, previous)
            except RepositoryError as e:
                logger.error("Sweep aborted at %s, repository unavailable: %s", name, e)
                outcome.aborted = True
                break
            except Exception as e:
                logger.error("Error checking site %s: %s", name, e, exc_info=True)
                outcome.failed += 1
                continue

            outcome.checked += 1
            if stored.status is SiteStatus.WORKING:
                outcome.working += 1
            if event is not None:
                outcome.events.append(event)

        return outcome

    # ── Scheduling ─────────────────────────────────────────────────

    async def _wait_stop(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True as soon as stop is requested."""
        if seconds <= 0:
            return self._stop.is_set()
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _every(
        self,
        interval: float,
        job: Callable[[], Awaitable[SweepOutcome]],
        label: str,
        initial_delay: float = 0.0,
    ) -> None:
        if await self._wait_stop(initial_delay):
            return
        while not self._stop.is_set():
            try:
                await job()
            except Busy:
                logger.info("Skipping scheduled %s, a sweep is still running", label)
            except Exception as e:
                logger.error("Scheduled %s failed: %s", label, e, exc_info=True)
            if await self._wait_stop(interval):
                return

    async def run_forever(self) -> None:
        """Run both jobs until :meth:`stop` is called.

        The full sweep starts immediately, the stale check after its first
        interval. A job that finds the lock held is skipped, not queued.
        """
        self._stop.clear()
        logger.info(
            "Monitor started: full sweep every %.0fs, stale check every %.0fs",
            self.full_sweep_interval, self.stale_check_interval,
        )
        jobs = [
            asyncio.create_task(
                self._every(self.full_sweep_interval, self.run_full_sweep, "full sweep")
            ),
            asyncio.create_task(
                self._every(
                    self.stale_check_interval,
                    self.run_stale_check,
                    "stale check",
                    initial_delay=self.stale_check_interval,
                )
            ),
        ]
        try:
            await asyncio.gather(*jobs)
        finally:
            for job in jobs:
                job.cancel()
            if self._manual_task is not None and not self._manual_task.done():
                await asyncio.gather(self._manual_task, return_exceptions=True)
            logger.info("Monitor stopped")
