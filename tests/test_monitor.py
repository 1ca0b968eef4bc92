"""Tests for the monitor: merging, diffing, sweeps and scheduling."""

import asyncio
import unittest
from dataclasses import replace
from datetime import timedelta

from mirrorwatch.errors import Busy
from mirrorwatch.models import EventKind, SiteRecord, SiteStatus, StatusTransition, SweepSummary
from mirrorwatch.monitor import Monitor, diff_transition, merge_resolution
from mirrorwatch.storage.repository import InMemorySiteRepository
from tests.fakes import (
    T0,
    BrokenRepository,
    FakeClock,
    RecordingNotifier,
    ScriptedResolver,
    down,
    error,
    not_found,
    working,
)


def _stored(name, status, url=None, **kwargs):
    kwargs.setdefault("last_checked", T0 - timedelta(hours=7))
    kwargs.setdefault("last_updated", T0 - timedelta(days=1) if url else None)
    return SiteRecord(name=name, status=status, current_working_url=url, **kwargs)


class TestMergeResolution(unittest.TestCase):
    """Test how resolver output is combined with the stored record."""

    def test_first_resolution(self):
        merged = merge_resolution(None, replace(working("movierulz", "https://movierulz.tv/"), last_checked=T0), T0)
        self.assertIsNone(merged.id)
        self.assertTrue(merged.is_active)
        self.assertEqual(merged.last_updated, T0)
        self.assertEqual(merged.last_checked, T0)

    def test_first_resolution_without_url(self):
        merged = merge_resolution(None, replace(down("moviezap"), last_checked=T0), T0)
        self.assertIsNone(merged.current_working_url)
        self.assertIsNone(merged.last_updated)

    def test_keeps_id_and_operator_fields(self):
        previous = _stored(
            "movierulz", SiteStatus.WORKING, "https://movierulz.ms/",
            id=4, is_active=False, notes="Owner asked to keep watching",
        )
        resolved = replace(working("movierulz", "https://movierulz.tv/", 77), last_checked=T0)
        merged = merge_resolution(previous, resolved, T0)
        self.assertEqual(merged.id, 4)
        self.assertFalse(merged.is_active)
        self.assertEqual(merged.notes, "Owner asked to keep watching")
        self.assertEqual(merged.response_time, 77)

    def test_diagnostic_notes_are_replaced(self):
        previous = _stored("moviezap", SiteStatus.ERROR, notes="[auto] All searches failed")
        merged = merge_resolution(previous, replace(down("moviezap"), last_checked=T0), T0)
        self.assertEqual(merged.notes, "[auto] 2 candidates unreachable")

        merged = merge_resolution(merged, replace(working("moviezap", "https://moviezap.in/"), last_checked=T0), T0)
        self.assertIsNone(merged.notes)

    def test_url_kept_when_not_working(self):
        previous = _stored("moviezap", SiteStatus.WORKING, "https://moviezap.in/")
        merged = merge_resolution(previous, replace(down("moviezap"), last_checked=T0), T0)
        self.assertEqual(merged.current_working_url, "https://moviezap.in/")
        self.assertEqual(merged.last_updated, previous.last_updated)
        self.assertIsNone(merged.response_time)

    def test_last_updated_advances_only_on_url_change(self):
        previous = _stored("movierulz", SiteStatus.WORKING, "https://movierulz.tv/")
        same = merge_resolution(previous, replace(working("movierulz", "https://movierulz.tv/"), last_checked=T0), T0)
        self.assertEqual(same.last_updated, previous.last_updated)

        changed = merge_resolution(previous, replace(working("movierulz", "https://movierulz.pl/"), last_checked=T0), T0)
        self.assertEqual(changed.last_updated, T0)
        self.assertGreater(changed.last_updated, previous.last_updated)

    def test_last_checked_never_moves_backwards(self):
        previous = _stored("movierulz", SiteStatus.WORKING, "https://movierulz.tv/", last_checked=T0)
        late = replace(working("movierulz", "https://movierulz.tv/"), last_checked=T0 - timedelta(minutes=5))
        self.assertEqual(merge_resolution(previous, late, T0).last_checked, T0)


class TestDiffTransition(unittest.TestCase):
    """Test which record changes produce events."""

    def _diff(self, before, after):
        return diff_transition(before, after, T0)

    def test_no_previous_record(self):
        self.assertIsNone(self._diff(None, _stored("a", SiteStatus.WORKING, "https://a.tv/")))

    def test_down(self):
        event = self._diff(
            _stored("a", SiteStatus.WORKING, "https://a.tv/"),
            _stored("a", SiteStatus.DOWN, "https://a.tv/"),
        )
        self.assertEqual(event.kind, EventKind.SITE_DOWN)
        self.assertEqual(event.old_url, "https://a.tv/")
        self.assertIsNone(event.new_url)

    def test_recovered(self):
        event = self._diff(
            _stored("a", SiteStatus.NOT_FOUND),
            _stored("a", SiteStatus.WORKING, "https://a.tv/"),
        )
        self.assertEqual(event.kind, EventKind.SITE_RECOVERED)
        self.assertEqual(event.new_url, "https://a.tv/")

    def test_domain_changed(self):
        event = self._diff(
            _stored("a", SiteStatus.WORKING, "https://a.ms/"),
            _stored("a", SiteStatus.WORKING, "https://a.tv/"),
        )
        self.assertEqual(event.kind, EventKind.DOMAIN_CHANGED)

    def test_unchanged_or_non_working_changes(self):
        self.assertIsNone(self._diff(
            _stored("a", SiteStatus.WORKING, "https://a.tv/"),
            _stored("a", SiteStatus.WORKING, "https://a.tv/"),
        ))
        self.assertIsNone(self._diff(_stored("a", SiteStatus.ERROR), _stored("a", SiteStatus.DOWN)))


class MonitorTestCase(unittest.IsolatedAsyncioTestCase):
    """Shared wiring: in-memory repository, scripted resolver, recording notifier."""

    def make_monitor(self, outcomes, site_names, records=None, repository=None, gate=None, **kwargs):
        self.clock = FakeClock()
        self.repo = repository or InMemorySiteRepository(records)
        self.notifier = RecordingNotifier()
        self.resolver = ScriptedResolver(outcomes, clock=self.clock, gate=gate)
        kwargs.setdefault("per_site_delay", 0)
        self.monitor = Monitor(
            resolver=self.resolver,
            repository=self.repo,
            notifier=self.notifier,
            site_names=site_names,
            clock=self.clock,
            **kwargs,
        )
        return self.monitor

    def transitions(self):
        return [e for e in self.notifier.events if isinstance(e, StatusTransition)]

    def summaries(self):
        return [e for e in self.notifier.events if isinstance(e, SweepSummary)]


class TestFullSweepScenarios(MonitorTestCase):
    """End-to-end sweep scenarios with fake collaborators."""

    async def test_first_time_discovery(self):
        self.make_monitor({"movierulz": working("movierulz", "https://movierulz.tv/", 420)}, ["movierulz"])
        outcome = await self.monitor.run_full_sweep()

        record = self.repo.get_by_name("movierulz")
        self.assertEqual(record.status, SiteStatus.WORKING)
        self.assertEqual(record.current_working_url, "https://movierulz.tv/")
        self.assertEqual(record.response_time, 420)
        self.assertIsNotNone(record.id)
        self.assertEqual(self.transitions(), [])
        self.assertEqual(outcome.checked, 1)
        self.assertEqual(len(self.summaries()), 1)

    async def test_domain_change(self):
        previous = _stored("movierulz", SiteStatus.WORKING, "https://movierulz.ms/")
        self.make_monitor(
            {"movierulz": working("movierulz", "https://movierulz.tv/")}, ["movierulz"], records=[previous]
        )
        await self.monitor.run_full_sweep()

        [event] = self.transitions()
        self.assertEqual(event.kind, EventKind.DOMAIN_CHANGED)
        self.assertEqual(event.old_url, "https://movierulz.ms/")
        self.assertEqual(event.new_url, "https://movierulz.tv/")
        record = self.repo.get_by_name("movierulz")
        self.assertGreater(record.last_updated, previous.last_updated)

    async def test_site_goes_down(self):
        previous = _stored("moviezap", SiteStatus.WORKING, "https://moviezap.in/")
        self.make_monitor({"moviezap": down("moviezap")}, ["moviezap"], records=[previous])
        await self.monitor.run_full_sweep()

        record = self.repo.get_by_name("moviezap")
        self.assertEqual(record.status, SiteStatus.DOWN)
        self.assertEqual(record.current_working_url, "https://moviezap.in/")
        self.assertEqual([e.kind for e in self.transitions()], [EventKind.SITE_DOWN])

    async def test_recovery(self):
        previous = _stored("moviezap", SiteStatus.DOWN, "https://moviezap.in/")
        self.make_monitor(
            {"moviezap": working("moviezap", "https://moviezap.org/")}, ["moviezap"], records=[previous]
        )
        await self.monitor.run_full_sweep()

        [event] = self.transitions()
        self.assertEqual(event.kind, EventKind.SITE_RECOVERED)
        self.assertEqual(event.new_url, "https://moviezap.org/")
        self.assertEqual(self.repo.get_by_name("moviezap").status, SiteStatus.WORKING)

    async def test_all_providers_failing_twice(self):
        previous = _stored("movierulz", SiteStatus.ERROR, notes="[auto] All searches failed")
        self.make_monitor({"movierulz": error("movierulz")}, ["movierulz"], records=[previous])
        await self.monitor.run_full_sweep()

        record = self.repo.get_by_name("movierulz")
        self.assertEqual(record.status, SiteStatus.ERROR)
        self.assertTrue(record.notes)
        self.assertEqual(self.transitions(), [])

    async def test_concurrent_manual_trigger_is_rejected(self):
        gate = asyncio.Event()
        self.make_monitor(
            {"movierulz": working("movierulz", "https://movierulz.tv/")}, ["movierulz"], gate=gate
        )
        sweep = asyncio.create_task(self.monitor.run_full_sweep())
        await self.resolver.started.wait()

        with self.assertRaises(Busy):
            self.monitor.trigger_full_sweep()
        with self.assertRaises(Busy):
            await self.monitor.run_full_sweep(trigger="manual")
        with self.assertRaises(Busy):
            await self.monitor.run_stale_check()

        gate.set()
        outcome = await sweep
        self.assertEqual(outcome.checked, 1)
        self.assertEqual(len(self.summaries()), 1)
        self.assertEqual(self.resolver.calls, ["movierulz"])


class TestSweepBehaviour(MonitorTestCase):
    """Sweep-wide guarantees: ordering, counting, skipping and failures."""

    async def test_event_count_matches_changed_records(self):
        records = [
            _stored("a", SiteStatus.WORKING, "https://a.ms/"),
            _stored("b", SiteStatus.WORKING, "https://b.in/"),
            _stored("c", SiteStatus.DOWN, "https://c.in/"),
            _stored("d", SiteStatus.WORKING, "https://d.tv/"),
            _stored("e", SiteStatus.NOT_FOUND),
        ]
        outcomes = {
            "a": working("a", "https://a.tv/"),
            "b": down("b"),
            "c": working("c", "https://c.org/"),
            "d": working("d", "https://d.tv/"),
            "e": not_found("e"),
        }
        self.make_monitor(outcomes, ["a", "b", "c", "d", "e"], records=records)
        before = {r.name: (r.status, r.current_working_url) for r in self.repo.list_all()}

        outcome = await self.monitor.run_full_sweep()

        after = {r.name: (r.status, r.current_working_url) for r in self.repo.list_all()}
        changed = [name for name in before if before[name] != after[name]]
        self.assertEqual(changed, ["a", "b", "c"])
        self.assertEqual(len(self.transitions()), len(changed))
        # Emission order follows processing order
        self.assertEqual([e.site_name for e in self.transitions()], ["a", "b", "c"])
        self.assertEqual(outcome.events, self.transitions())

        summary = self.summaries()[0]
        self.assertEqual((summary.checked, summary.working, summary.down, summary.transitions), (5, 3, 2, 3))
        self.assertIsInstance(self.notifier.events[-1], SweepSummary)

    async def test_inactive_records_are_skipped(self):
        paused = _stored("moviezap", SiteStatus.WORKING, "https://moviezap.in/", is_active=False)
        self.make_monitor(
            {"moviezap": down("moviezap"), "movierulz": working("movierulz", "https://movierulz.tv/")},
            ["movierulz", "moviezap"],
            records=[paused],
        )
        outcome = await self.monitor.run_full_sweep()

        self.assertEqual(self.resolver.calls, ["movierulz"])
        self.assertEqual(outcome.skipped, 1)
        record = self.repo.get_by_name("moviezap")
        self.assertEqual(record.status, SiteStatus.WORKING)
        self.assertFalse(record.is_active)

    async def test_site_failure_does_not_stop_sweep(self):
        self.make_monitor(
            {"a": RuntimeError("resolver bug"), "b": working("b", "https://b.tv/")}, ["a", "b"]
        )
        with self.assertLogs("mirrorwatch.monitor", level="ERROR"):
            outcome = await self.monitor.run_full_sweep()
        self.assertEqual(outcome.failed, 1)
        self.assertEqual(outcome.checked, 1)
        self.assertIsNotNone(self.repo.get_by_name("b"))
        self.assertEqual(len(self.summaries()), 1)

    async def test_repository_failure_aborts_sweep(self):
        repository = BrokenRepository(fail_after=1)
        outcomes = {name: working(name, f"https://{name}.tv/") for name in ("a", "b", "c")}
        self.make_monitor(outcomes, ["a", "b", "c"], repository=repository)

        outcome = await self.monitor.run_full_sweep()

        self.assertTrue(outcome.aborted)
        self.assertEqual(self.resolver.calls, ["a", "b"])
        self.assertEqual([r.name for r in repository.list_all()], ["a"])
        self.assertEqual(self.summaries(), [])

    async def test_stop_skips_remaining_sites(self):
        def stop_then_work(name):
            self.monitor.stop()
            return replace(working(name, "https://a.tv/"), last_checked=self.clock())

        self.make_monitor(
            {"a": stop_then_work, "b": working("b", "https://b.tv/")}, ["a", "b"], per_site_delay=30
        )
        outcome = await asyncio.wait_for(self.monitor.run_full_sweep(), timeout=5)

        self.assertTrue(outcome.cancelled)
        self.assertEqual(self.resolver.calls, ["a"])
        self.assertEqual(outcome.checked, 1)

    async def test_refresh_record_is_idempotent(self):
        previous = _stored("movierulz", SiteStatus.DOWN, "https://movierulz.ms/", notes="watch closely")
        self.make_monitor({"movierulz": working("movierulz", "https://movierulz.tv/", 200)}, [], records=[previous])
        record = self.repo.get_by_name("movierulz")

        first = await self.monitor.refresh_record(record)
        second = await self.monitor.refresh_record(first)

        self.assertEqual(first.id, record.id)
        self.assertEqual(replace(first, last_checked=None), replace(second, last_checked=None))
        self.assertGreaterEqual(second.last_checked, first.last_checked)
        self.assertEqual(second.notes, "watch closely")
        self.assertEqual([e.kind for e in self.transitions()], [EventKind.SITE_RECOVERED])


class TestStaleCheckAndScheduling(MonitorTestCase):
    async def test_stale_check_only_rechecks_stale_active_records(self):
        records = [
            _stored("fresh", SiteStatus.WORKING, "https://fresh.tv/", last_checked=T0),
            _stored("stale", SiteStatus.WORKING, "https://stale.tv/"),
            _stored("paused", SiteStatus.WORKING, "https://paused.tv/", is_active=False),
            SiteRecord(name="never"),
        ]
        self.make_monitor({"stale": down("stale")}, [], records=records)

        outcome = await self.monitor.run_stale_check()

        self.assertEqual(self.resolver.calls, ["stale", "never"])
        self.assertEqual(outcome.checked, 2)
        self.assertEqual([e.kind for e in self.transitions()], [EventKind.SITE_DOWN])
        self.assertEqual(self.summaries(), [])

    async def test_manual_trigger_runs_in_background(self):
        self.make_monitor({"a": working("a", "https://a.tv/")}, ["a"])
        task = self.monitor.trigger_full_sweep()
        self.assertTrue(self.monitor.sweep_running)
        outcome = await task
        self.assertEqual(outcome.checked, 1)
        self.assertEqual(self.summaries()[0].trigger, "manual")
        self.assertFalse(self.monitor.sweep_running)

    async def test_run_forever_sweeps_immediately_until_stopped(self):
        self.make_monitor(
            {"a": working("a", "https://a.tv/")},
            ["a"],
            full_sweep_interval=3600,
            stale_check_interval=3600,
        )
        runner = asyncio.create_task(self.monitor.run_forever())
        for _ in range(100):
            if self.summaries():
                break
            await asyncio.sleep(0)
        self.monitor.stop()
        await asyncio.wait_for(runner, timeout=5)

        self.assertEqual(len(self.summaries()), 1)
        self.assertEqual(self.resolver.calls, ["a"])


if __name__ == "__main__":
    unittest.main()
