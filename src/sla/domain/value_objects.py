"""
SLA Value Objects
==================

Immutable value objects and pure policy functions for the SLA domain.

- TicketContext: the ticket attributes rule matching needs
- PauseTrigger / PauseInterval: pause bookkeeping
- reconstruct_pause_intervals: fold over the pause log
- classify_status / resolution_outcome: threshold policy
- SlaStatusSnapshot: display figures for a tracking record
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, FrozenSet, Iterable, List, Optional, Tuple

from src.config import (
    SlaStatus, SlaZone, ResolutionOutcome, PauseAction, PauseConditionKind,
    IMPORTANCE_RANK,
)

if TYPE_CHECKING:
    from src.sla.domain.entities import PauseLogEntry, SlaTracking


# Share of max_tat at which a ticket past its avg_tat moves from WARNING to
# CRITICAL. Not configurable per environment.
CRITICAL_THRESHOLD_PERCENT = 90

# percent_used is capped for display
MAX_DISPLAY_PERCENT = 999


@dataclass(frozen=True)
class TicketContext:
    """Ticket attributes supplied by the ticket lifecycle hook."""
    ticket_id: str
    priority: Optional[str] = None
    ticket_type: str = "incident"
    channel: str = "portal"
    user_category: Optional[str] = None
    is_vip: bool = False
    asset_categories: FrozenSet[str] = frozenset()
    asset_importances: Tuple[str, ...] = ()
    ticket_number: Optional[str] = None
    title: Optional[str] = None
    assigned_engineer_id: Optional[str] = None

    @property
    def highest_asset_importance(self) -> Optional[str]:
        """Most important linked asset (critical > high > medium > low)."""
        ranked = [i.lower() for i in self.asset_importances if i and i.lower() in IMPORTANCE_RANK]
        if not ranked:
            return None
        return max(ranked, key=lambda i: IMPORTANCE_RANK[i])

    def to_dict(self) -> dict:
        return {
            "ticket_id": self.ticket_id,
            "priority": self.priority,
            "ticket_type": self.ticket_type,
            "channel": self.channel,
            "user_category": self.user_category,
            "is_vip": self.is_vip,
            "asset_categories": sorted(self.asset_categories),
            "asset_importances": list(self.asset_importances),
            "ticket_number": self.ticket_number,
            "title": self.title,
            "assigned_engineer_id": self.assigned_engineer_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TicketContext":
        return cls(
            ticket_id=data["ticket_id"],
            priority=data.get("priority"),
            ticket_type=data.get("ticket_type") or "incident",
            channel=data.get("channel") or "portal",
            user_category=data.get("user_category"),
            is_vip=bool(data.get("is_vip", False)),
            asset_categories=frozenset(data.get("asset_categories") or ()),
            asset_importances=tuple(data.get("asset_importances") or ()),
            ticket_number=data.get("ticket_number"),
            title=data.get("title"),
            assigned_engineer_id=data.get("assigned_engineer_id"),
        )


@dataclass(frozen=True)
class PauseTrigger:
    """What is asking the timer to pause."""
    kind: PauseConditionKind
    ticket_status: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def manual(cls, reason: Optional[str] = None) -> "PauseTrigger":
        return cls(kind=PauseConditionKind.MANUAL, ticket_status="manual", reason=reason)

    @classmethod
    def for_status(cls, ticket_status: str, reason: Optional[str] = None) -> "PauseTrigger":
        return cls(kind=PauseConditionKind.TICKET_STATUS, ticket_status=ticket_status, reason=reason)


@dataclass(frozen=True)
class PauseInterval:
    """A closed or (end=None) currently-open pause span."""
    start: datetime
    end: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.end is None


def reconstruct_pause_intervals(entries: Iterable["PauseLogEntry"]) -> List[PauseInterval]:
    """
    Fold an append-only pause log into pause intervals.

    Entries are ordered by ``action_at`` (stable for equal timestamps). Each
    ``resumed`` entry closes the earliest still-unmatched ``paused`` entry;
    a ``resumed`` with nothing open is ignored. Unmatched ``paused`` entries
    come back as open intervals, the earliest of which is the current pause.
    """
    ordered = sorted(entries, key=lambda e: e.action_at)
    open_starts: List[datetime] = []
    closed: List[PauseInterval] = []

    for entry in ordered:
        if entry.action == PauseAction.PAUSED:
            open_starts.append(entry.action_at)
        elif entry.action == PauseAction.RESUMED and open_starts:
            closed.append(PauseInterval(start=open_starts.pop(0), end=entry.action_at))

    intervals = closed + [PauseInterval(start=s) for s in open_starts]
    return sorted(intervals, key=lambda i: i.start)


def current_open_pause(intervals: Iterable[PauseInterval]) -> Optional[PauseInterval]:
    """Earliest unmatched pause, if any."""
    open_intervals = [i for i in intervals if i.is_open]
    return min(open_intervals, key=lambda i: i.start) if open_intervals else None


def classify_status(
    elapsed_minutes: int,
    min_tat: int,
    avg_tat: int,
    max_tat: int,
    critical_percent: int = CRITICAL_THRESHOLD_PERCENT
) -> SlaStatus:
    """
    Classify elapsed business minutes against the TAT thresholds.

    - elapsed < avg                          -> ON_TRACK (min only benchmarks excellence)
    - avg <= elapsed < critical% of max      -> WARNING
    - critical% of max <= elapsed < max      -> CRITICAL
    - elapsed >= max                         -> BREACHED
    """
    if elapsed_minutes >= max_tat:
        return SlaStatus.BREACHED
    if elapsed_minutes < avg_tat:
        return SlaStatus.ON_TRACK
    # integer comparison keeps the boundary exact
    if elapsed_minutes * 100 < max_tat * critical_percent:
        return SlaStatus.WARNING
    return SlaStatus.CRITICAL


def resolution_outcome(elapsed_minutes: int, min_tat: int, avg_tat: int, max_tat: int) -> ResolutionOutcome:
    """Final outcome for a ticket resolved after ``elapsed_minutes``."""
    if elapsed_minutes >= max_tat:
        return ResolutionOutcome.BREACHED
    if elapsed_minutes <= min_tat:
        return ResolutionOutcome.MET_EARLY
    if elapsed_minutes <= avg_tat:
        return ResolutionOutcome.MET
    return ResolutionOutcome.MET_LATE


STATUS_ZONES = {
    SlaStatus.ON_TRACK: SlaZone.GREEN,
    SlaStatus.WARNING: SlaZone.YELLOW,
    SlaStatus.CRITICAL: SlaZone.ORANGE,
    SlaStatus.BREACHED: SlaZone.RED,
}


def format_duration(minutes: int) -> str:
    """Render minutes as ``"1d 2h 5m"`` (1d = 1440 minutes)."""
    if minutes < 0:
        return "-" + format_duration(-minutes)
    if minutes == 0:
        return "0m"

    days, rest = divmod(int(minutes), 1440)
    hours, mins = divmod(rest, 60)
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if mins:
        parts.append(f"{mins}m")
    return " ".join(parts)


@dataclass(frozen=True)
class SlaStatusSnapshot:
    """Display-oriented summary of a tracking record."""
    status: SlaStatus
    zone: SlaZone
    elapsed_minutes: int
    percent_used: int
    remaining_minutes: int
    overage_minutes: int
    remaining_display: str = field(default="")

    @classmethod
    def from_tracking(cls, tracking: "SlaTracking") -> "SlaStatusSnapshot":
        elapsed = tracking.business_elapsed_minutes
        max_tat = tracking.max_tat_minutes
        status = classify_status(
            elapsed, tracking.min_tat_minutes, tracking.avg_tat_minutes, max_tat
        )
        percent = min(MAX_DISPLAY_PERCENT, round(elapsed * 100 / max_tat)) if max_tat else 0
        remaining = max(0, max_tat - elapsed)
        overage = max(0, elapsed - max_tat)
        display = (
            f"{format_duration(overage)} overdue" if overage
            else f"{format_duration(remaining)} remaining"
        )
        return cls(
            status=status,
            zone=STATUS_ZONES[status],
            elapsed_minutes=elapsed,
            percent_used=percent,
            remaining_minutes=remaining,
            overage_minutes=overage,
            remaining_display=display,
        )
