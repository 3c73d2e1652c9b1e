"""
Tests for SLA value objects and status policy.
"""
import pytest
from datetime import timedelta

from src.config import SlaStatus, SlaZone, ResolutionOutcome, PauseAction
from src.sla.domain import (
    CRITICAL_THRESHOLD_PERCENT, PauseLogEntry, PauseInterval, SlaStatusSnapshot, TicketContext,
    classify_status, resolution_outcome, reconstruct_pause_intervals, current_open_pause,
)
from tests.conftest import T0


def at(minutes: int):
    return T0 + timedelta(minutes=minutes)


def entry(action: PauseAction, minute: int, entry_id: str = None) -> PauseLogEntry:
    return PauseLogEntry(
        id=entry_id or f"{action.value}-{minute}",
        tracking_id="trk-1",
        action=action,
        action_at=at(minute),
    )


class TestClassifyStatus:
    """min 60 / avg 240 / max 480; 90% of max is 432."""

    @pytest.mark.unit
    def test_critical_threshold_is_ninety_percent(self):
        assert CRITICAL_THRESHOLD_PERCENT == 90

    @pytest.mark.unit
    @pytest.mark.parametrize("elapsed,expected", [
        (0, SlaStatus.ON_TRACK),
        (60, SlaStatus.ON_TRACK),
        (239, SlaStatus.ON_TRACK),
        (240, SlaStatus.WARNING),
        (431, SlaStatus.WARNING),
        (432, SlaStatus.CRITICAL),
        (479, SlaStatus.CRITICAL),
        (480, SlaStatus.BREACHED),
        (5000, SlaStatus.BREACHED),
    ])
    def test_boundaries(self, elapsed, expected):
        assert classify_status(elapsed, 60, 240, 480) == expected

    @pytest.mark.unit
    def test_non_integral_ninety_percent(self):
        """90% of 7 is 6.3: 6 is still warning."""
        assert classify_status(6, 0, 1, 7) == SlaStatus.WARNING
        assert classify_status(7, 0, 1, 7) == SlaStatus.BREACHED

    @pytest.mark.unit
    def test_avg_above_critical_line_goes_straight_to_critical(self):
        assert classify_status(95, 10, 95, 100) == SlaStatus.CRITICAL


class TestResolutionOutcome:

    @pytest.mark.unit
    @pytest.mark.parametrize("elapsed,expected", [
        (0, ResolutionOutcome.MET_EARLY),
        (60, ResolutionOutcome.MET_EARLY),
        (61, ResolutionOutcome.MET),
        (240, ResolutionOutcome.MET),
        (241, ResolutionOutcome.MET_LATE),
        (479, ResolutionOutcome.MET_LATE),
        (480, ResolutionOutcome.BREACHED),
    ])
    def test_outcomes(self, elapsed, expected):
        assert resolution_outcome(elapsed, 60, 240, 480) == expected


class TestPauseLogFold:

    @pytest.mark.unit
    def test_pairs_in_time_order_regardless_of_input_order(self):
        entries = [
            entry(PauseAction.RESUMED, 130),
            entry(PauseAction.PAUSED, 300),
            entry(PauseAction.PAUSED, 100),
            entry(PauseAction.RESUMED, 320),
        ]
        assert reconstruct_pause_intervals(entries) == [
            PauseInterval(start=at(100), end=at(130)),
            PauseInterval(start=at(300), end=at(320)),
        ]

    @pytest.mark.unit
    def test_resume_closes_earliest_unmatched_pause(self):
        entries = [
            entry(PauseAction.PAUSED, 10),
            entry(PauseAction.PAUSED, 20),
            entry(PauseAction.RESUMED, 30),
        ]
        intervals = reconstruct_pause_intervals(entries)
        assert intervals == [
            PauseInterval(start=at(10), end=at(30)),
            PauseInterval(start=at(20)),
        ]
        assert current_open_pause(intervals) == PauseInterval(start=at(20))

    @pytest.mark.unit
    def test_orphan_resume_ignored(self):
        entries = [entry(PauseAction.RESUMED, 5), entry(PauseAction.PAUSED, 10)]
        intervals = reconstruct_pause_intervals(entries)
        assert intervals == [PauseInterval(start=at(10))]
        assert intervals[0].is_open

    @pytest.mark.unit
    def test_empty_log(self):
        assert reconstruct_pause_intervals([]) == []
        assert current_open_pause([]) is None


class TestSnapshot:

    @pytest.mark.unit
    def test_overdue_snapshot(self, rule_24x7):
        from src.sla.domain import SlaTracking

        tracking = SlaTracking(
            id="trk", ticket_id="INC-1", sla_rule_id=rule_24x7.id,
            sla_start_time=T0, min_target_time=at(60), avg_target_time=at(240), max_target_time=at(480),
            min_tat_minutes=60, avg_tat_minutes=240, max_tat_minutes=480,
            business_elapsed_minutes=500,
        )
        snapshot = SlaStatusSnapshot.from_tracking(tracking)

        assert snapshot.status == SlaStatus.BREACHED
        assert snapshot.zone == SlaZone.RED
        assert snapshot.percent_used == 104
        assert snapshot.remaining_minutes == 0
        assert snapshot.overage_minutes == 20
        assert snapshot.remaining_display == "20m overdue"

    @pytest.mark.unit
    def test_remaining_snapshot(self, rule_24x7):
        from src.sla.domain import SlaTracking

        tracking = SlaTracking(
            id="trk", ticket_id="INC-1", sla_rule_id=rule_24x7.id,
            sla_start_time=T0, min_target_time=at(60), avg_target_time=at(240), max_target_time=at(480),
            min_tat_minutes=60, avg_tat_minutes=240, max_tat_minutes=480,
            business_elapsed_minutes=250,
        )
        snapshot = SlaStatusSnapshot.from_tracking(tracking)

        assert snapshot.zone == SlaZone.YELLOW
        assert snapshot.remaining_minutes == 230
        assert snapshot.remaining_display == "3h 50m remaining"


class TestTicketContext:

    @pytest.mark.unit
    def test_highest_asset_importance(self):
        context = TicketContext(ticket_id="INC-1", asset_importances=("low", "Critical", "high", "bogus"))
        assert context.highest_asset_importance == "critical"

    @pytest.mark.unit
    def test_no_assets(self):
        assert TicketContext(ticket_id="INC-1").highest_asset_importance is None

    @pytest.mark.unit
    def test_dict_round_trip(self):
        context = TicketContext(
            ticket_id="INC-1", priority="p1", is_vip=True,
            asset_categories=frozenset({"laptop", "vpn"}), asset_importances=("high",),
            ticket_number="INC-0001",
        )
        assert TicketContext.from_dict(context.to_dict()) == context
