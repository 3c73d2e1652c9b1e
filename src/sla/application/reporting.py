"""
SLA Reporting
=============

Read-only views over tracking records: breached and approaching-breach
lists, and aggregate compliance metrics.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from src.config import SlaStatus, ResolutionOutcome
from src.sla.domain import SlaTracking, SlaStatusSnapshot
from src.sla.application.services import SlaRepositories


@dataclass
class TrackingView:
    """Tracking record paired with its display snapshot."""
    tracking: SlaTracking
    snapshot: SlaStatusSnapshot


class SlaReportingService:
    """Queries used by dashboards and the admin API."""

    def __init__(self, repositories: SlaRepositories):
        self._repos = repositories

    @staticmethod
    def snapshot(tracking: SlaTracking) -> SlaStatusSnapshot:
        return SlaStatusSnapshot.from_tracking(tracking)

    async def get_breached(self) -> List[TrackingView]:
        """Open trackings at or past max TAT, most overdue first."""
        trackings = await self._repos.trackings.list_open(include_paused=True)
        views = [
            TrackingView(t, self.snapshot(t))
            for t in trackings
            if t.business_elapsed_minutes >= t.max_tat_minutes
        ]
        return sorted(views, key=lambda v: v.snapshot.overage_minutes, reverse=True)

    async def get_approaching_breach(self, threshold_minutes: int = 30) -> List[TrackingView]:
        """
        Running trackings with at most ``threshold_minutes`` business
        minutes left before max TAT, least time left first.
        """
        trackings = await self._repos.trackings.list_open(include_paused=False)
        views = []
        for tracking in trackings:
            remaining = tracking.max_tat_minutes - tracking.business_elapsed_minutes
            if 0 < remaining <= threshold_minutes:
                views.append(TrackingView(tracking, self.snapshot(tracking)))
        return sorted(views, key=lambda v: v.snapshot.remaining_minutes)

    async def get_metrics(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        rule_id: Optional[str] = None
    ) -> dict:
        """
        Aggregate counts over trackings started in ``[start, end]``.

        ``compliance_rate`` is the share of resolved tickets that were not
        breached, or None when nothing is resolved yet.
        """
        trackings = await self._repos.trackings.list_created_between(start, end)
        if rule_id:
            trackings = [t for t in trackings if t.sla_rule_id == rule_id]

        total = len(trackings)
        by_status = {status.value: 0 for status in SlaStatus}
        for tracking in trackings:
            by_status[tracking.sla_status.value] += 1

        resolved = [t for t in trackings if t.is_resolved]
        met = [t for t in resolved if t.final_status != ResolutionOutcome.BREACHED.value]

        return {
            "total_tickets": total,
            "on_track_count": by_status[SlaStatus.ON_TRACK.value],
            "warning_count": by_status[SlaStatus.WARNING.value],
            "critical_count": by_status[SlaStatus.CRITICAL.value],
            "breached_count": by_status[SlaStatus.BREACHED.value],
            "paused_count": sum(1 for t in trackings if t.is_paused),
            "resolved_count": len(resolved),
            "resolved_within_sla": len(met),
            "compliance_rate": round(len(met) * 100 / len(resolved), 2) if resolved else None,
            "avg_elapsed_minutes": (
                round(sum(t.business_elapsed_minutes for t in trackings) / total, 1) if total else 0
            ),
            "avg_paused_minutes": (
                round(sum(t.total_paused_minutes for t in trackings) / total, 1) if total else 0
            ),
        }
