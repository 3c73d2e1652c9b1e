"""
Tests for the monitoring sweep and its scheduler.
"""
import asyncio
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from src.sla.application import EscalationEngine, SlaMonitoringJob, SlaTracker
from src.sla.infrastructure.scheduler import JOB_ID, SlaMonitoringScheduler
from tests.conftest import T0, make_context, make_escalation


def minutes(n: int):
    return T0 + timedelta(minutes=n)


@pytest.fixture
def engine(factory, dispatcher, clock) -> EscalationEngine:
    return EscalationEngine(factory, dispatcher, clock=clock)


@pytest.fixture
def job(factory, engine, clock) -> SlaMonitoringJob:
    return SlaMonitoringJob(factory, engine, clock=clock)


class Gate:
    """before_sweep hook that blocks until released."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self):
        self.entered.set()
        await self.release.wait()


class TestSlaMonitoringJob:

    @pytest.mark.integration
    async def test_full_sweep(self, job, store, clock, dispatcher, rule_24x7):
        store.add_escalation(make_escalation(rule_24x7.id))
        await SlaTracker(store.repositories(), clock=clock).initialize("INC-1", make_context())

        clock.set(minutes(480))
        report = await job.run()

        assert report.status == "success"
        assert report.trackings_updated == 1
        assert report.escalations_triggered == 1
        assert report.notifications_sent == 1
        assert report.notifications_failed == 0
        assert job.last_run_at == minutes(480)
        assert job.last_report is report

        tracking = store.trackings[next(iter(store.trackings))]
        assert tracking.business_elapsed_minutes == 480
        assert dispatcher.requests[0].sla_status == "breached"

    @pytest.mark.integration
    async def test_second_sweep_fires_nothing_new(self, job, store, clock, rule_24x7):
        store.add_escalation(make_escalation(rule_24x7.id))
        await SlaTracker(store.repositories(), clock=clock).initialize("INC-1", make_context())
        clock.set(minutes(480))
        await job.run()

        clock.set(minutes(485))
        report = await job.run()
        assert report.escalations_triggered == 0
        assert report.notifications_sent == 0

    @pytest.mark.unit
    async def test_paused_trackings_not_updated(self, job, store, clock, rule_24x7):
        tracker = SlaTracker(store.repositories(), clock=clock)
        await tracker.initialize("INC-1", make_context())
        await tracker.pause("INC-1")

        report = await job.run()
        assert report.trackings_updated == 0

    @pytest.mark.unit
    async def test_overlapping_run_is_skipped(self, factory, engine, clock):
        gate = Gate()
        job = SlaMonitoringJob(factory, engine, clock=clock, before_sweep=gate)

        first = asyncio.create_task(job.run())
        await gate.entered.wait()
        assert job.is_running

        skipped = await job.run()
        assert skipped.skipped
        assert skipped.status == "skipped"
        assert skipped.reason == "sweep already in progress"

        gate.release.set()
        report = await first
        assert not report.skipped
        assert not job.is_running
        assert job.last_report is report

    @pytest.mark.unit
    async def test_tracking_failure_counted(self, job, store, clock, rule_24x7):
        tracker = SlaTracker(store.repositories(), clock=clock)
        await tracker.initialize("INC-1", make_context())
        await tracker.initialize("INC-2", make_context("INC-2"))
        # orphan INC-1 from its rule
        broken = next(t for t in store.trackings.values() if t.ticket_id == "INC-1")
        broken.sla_rule_id = "missing"

        report = await job.run()

        assert report.trackings_updated == 1
        assert report.tracking_errors == 1
        assert report.status == "completed_with_errors"

    @pytest.mark.unit
    async def test_step_failures_are_isolated(self, factory, clock):
        engine = MagicMock()
        engine.process_pending_escalations = AsyncMock(side_effect=RuntimeError("ledger down"))
        engine.flush_pending_notifications = AsyncMock(return_value=[])
        hook = AsyncMock(side_effect=RuntimeError("catalog unreadable"))
        job = SlaMonitoringJob(factory, engine, clock=clock, before_sweep=hook)

        report = await job.run()

        assert report.errors == ["before_sweep: catalog unreadable", "escalations: ledger down"]
        engine.flush_pending_notifications.assert_awaited_once()
        assert report.status == "completed_with_errors"
        assert not job.is_running

    @pytest.mark.unit
    async def test_report_to_dict(self, job):
        data = (await job.run()).to_dict()
        assert data["status"] == "success"
        assert data["started_at"] == T0.isoformat()
        assert data["errors"] == []


class TestSlaMonitoringScheduler:

    @pytest.mark.unit
    async def test_start_status_stop(self, job):
        scheduler = SlaMonitoringScheduler(job, interval_seconds=3600, run_on_start=False)

        await scheduler.start()
        try:
            assert scheduler.is_running
            assert scheduler.next_run_at() is not None
            status = scheduler.get_status()
            assert status["is_running"] is True
            assert status["interval_seconds"] == 3600
            assert status["sweep_in_progress"] is False
            assert status["last_report"] is None
        finally:
            await scheduler.stop()

        assert not scheduler.is_running
        assert scheduler.next_run_at() is None

    @pytest.mark.unit
    async def test_job_registered_once(self, job):
        scheduler = SlaMonitoringScheduler(job, interval_seconds=3600, run_on_start=False)
        await scheduler.start()
        try:
            await scheduler.start()
            assert [j.id for j in scheduler._scheduler.get_jobs()] == [JOB_ID]
            assert scheduler._scheduler.get_job(JOB_ID).max_instances == 1
        finally:
            await scheduler.stop()

    @pytest.mark.unit
    async def test_stop_when_not_started(self, job):
        scheduler = SlaMonitoringScheduler(job)
        await scheduler.stop()
        assert not scheduler.is_running

    @pytest.mark.unit
    async def test_run_once_records_report(self, job):
        scheduler = SlaMonitoringScheduler(job, run_on_start=False)
        report = await scheduler.run_once()
        assert scheduler.last_report is report
        assert scheduler.get_status()["last_report"]["status"] == "success"

    @pytest.mark.unit
    async def test_stop_waits_for_inflight_sweep(self, factory, engine, clock):
        gate = Gate()
        job = SlaMonitoringJob(factory, engine, clock=clock, before_sweep=gate)
        scheduler = SlaMonitoringScheduler(job, interval_seconds=3600, run_on_start=False)
        await scheduler.start()

        tick = asyncio.create_task(scheduler._tick())
        await gate.entered.wait()

        stopper = asyncio.create_task(scheduler.stop(wait=True))
        await asyncio.sleep(0)
        assert not stopper.done()

        gate.release.set()
        await stopper

        assert tick.done() and not tick.cancelled()
        assert job.last_report is not None
        assert not scheduler.is_running

    @pytest.mark.unit
    async def test_stop_without_wait_cancels_inflight_sweep(self, factory, engine, clock):
        gate = Gate()
        job = SlaMonitoringJob(factory, engine, clock=clock, before_sweep=gate)
        scheduler = SlaMonitoringScheduler(job, interval_seconds=3600, run_on_start=False)
        await scheduler.start()

        tick = asyncio.create_task(scheduler._tick())
        await gate.entered.wait()

        await scheduler.stop(wait=False)

        assert tick.cancelled()
        assert job.last_report is None
        assert not job.is_running
