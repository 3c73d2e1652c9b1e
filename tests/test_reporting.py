"""
Tests for SLA reporting queries.

Three trackings on the 24x7 rule, refreshed at T0+500:
- INC-A started T0       -> 500 elapsed, breached by 20
- INC-B started T0+40    -> 460 elapsed, 20 left (critical)
- INC-C started T0+400   -> 100 elapsed, on track
"""
import pytest
from datetime import timedelta

from src.sla.application import SlaReportingService, SlaTracker
from tests.conftest import T0, make_context


def minutes(n: int):
    return T0 + timedelta(minutes=n)


@pytest.fixture
async def populated(tracker, clock, rule_24x7):
    for ticket_id, start in (("INC-A", 0), ("INC-B", 40), ("INC-C", 400)):
        clock.set(minutes(start))
        await tracker.initialize(ticket_id, make_context(ticket_id))

    clock.set(minutes(500))
    for ticket_id in ("INC-A", "INC-B", "INC-C"):
        await tracker.update_elapsed(ticket_id)
    return tracker


@pytest.fixture
def reporting(repos) -> SlaReportingService:
    return SlaReportingService(repos)


class TestBreachLists:

    @pytest.mark.unit
    async def test_breached(self, populated, reporting):
        views = await reporting.get_breached()
        assert [v.tracking.ticket_id for v in views] == ["INC-A"]
        assert views[0].snapshot.overage_minutes == 20
        assert views[0].snapshot.remaining_display == "20m overdue"

    @pytest.mark.unit
    async def test_approaching_breach(self, populated, reporting):
        views = await reporting.get_approaching_breach(threshold_minutes=30)
        assert [v.tracking.ticket_id for v in views] == ["INC-B"]
        assert views[0].snapshot.remaining_minutes == 20

        assert await reporting.get_approaching_breach(threshold_minutes=10) == []

    @pytest.mark.unit
    async def test_paused_ticket_not_approaching(self, populated, reporting):
        await populated.pause("INC-B")
        assert await reporting.get_approaching_breach(threshold_minutes=30) == []

    @pytest.mark.unit
    async def test_resolved_ticket_not_listed(self, populated, reporting):
        await populated.stop("INC-A")
        assert await reporting.get_breached() == []


class TestMetrics:

    @pytest.mark.unit
    async def test_counts(self, populated, reporting):
        metrics = await reporting.get_metrics()

        assert metrics["total_tickets"] == 3
        assert metrics["breached_count"] == 1
        assert metrics["critical_count"] == 1
        assert metrics["on_track_count"] == 1
        assert metrics["warning_count"] == 0
        assert metrics["resolved_count"] == 0
        assert metrics["compliance_rate"] is None
        assert metrics["avg_elapsed_minutes"] == round((500 + 460 + 100) / 3, 1)

    @pytest.mark.unit
    async def test_compliance_rate(self, populated, reporting):
        await populated.stop("INC-A")
        await populated.stop("INC-C")

        metrics = await reporting.get_metrics()
        assert metrics["resolved_count"] == 2
        assert metrics["resolved_within_sla"] == 1
        assert metrics["compliance_rate"] == 50.0

    @pytest.mark.unit
    async def test_window_and_rule_filter(self, populated, reporting, rule_24x7):
        windowed = await reporting.get_metrics(start=minutes(30))
        assert windowed["total_tickets"] == 2

        assert (await reporting.get_metrics(rule_id=rule_24x7.id))["total_tickets"] == 3
        other = await reporting.get_metrics(rule_id="other")
        assert other["total_tickets"] == 0
        assert other["avg_elapsed_minutes"] == 0
