"""
SLA Domain Entities
====================

Pure Python domain entities for SLA tracking and escalation.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Dict, FrozenSet, List, Optional

from src.config import (
    LifecycleStatus, SlaStatus, TrackingState, PauseAction, PauseConditionKind,
    TriggerType, ReferenceThreshold, RecipientType, EscalationType, DeliveryStatus,
    WILDCARD,
)
from src.sla.domain.value_objects import TicketContext, PauseTrigger


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# As an end time, 00:00 closes the day (24:00)
END_OF_DAY = time(0, 0)


def window_is_valid(start_time: time, end_time: time) -> bool:
    """Same-day window check; overnight windows are not supported."""
    return end_time == END_OF_DAY or end_time > start_time


# ========== Business Calendar ==========

@dataclass
class BusinessHoursDetail:
    """Working window for one weekday (0 = Sunday ... 6 = Saturday)."""
    day_of_week: int
    is_working_day: bool = True
    start_time: Optional[time] = None
    end_time: Optional[time] = None

    def __post_init__(self):
        if not 0 <= self.day_of_week <= 6:
            raise ValueError("day_of_week must be between 0 (Sunday) and 6 (Saturday)")
        if (
            self.is_working_day
            and self.start_time is not None
            and self.end_time is not None
            and not window_is_valid(self.start_time, self.end_time)
        ):
            raise ValueError(
                f"day {self.day_of_week}: end_time {self.end_time} must be after start_time {self.start_time}"
            )

    @property
    def has_working_window(self) -> bool:
        return self.is_working_day and self.start_time is not None and self.end_time is not None


@dataclass
class BreakHours:
    """A break subtracted from the working window (e.g. lunch)."""
    name: str
    start_time: time
    end_time: time
    applies_to_days: FrozenSet[int] = frozenset()  # empty = every day
    status: LifecycleStatus = LifecycleStatus.ACTIVE

    def applies_to(self, day_of_week: int) -> bool:
        if self.status != LifecycleStatus.ACTIVE:
            return False
        return not self.applies_to_days or day_of_week in self.applies_to_days


@dataclass
class BusinessHoursSchedule:
    """
    Named weekly working-hours template.

    ``is_24x7`` short-circuits all business-hours math.
    """
    id: str
    name: str
    is_24x7: bool = False
    timezone: str = "UTC"
    details: List[BusinessHoursDetail] = field(default_factory=list)
    breaks: List[BreakHours] = field(default_factory=list)
    status: LifecycleStatus = LifecycleStatus.ACTIVE

    def detail_for(self, day_of_week: int) -> Optional[BusinessHoursDetail]:
        for detail in self.details:
            if detail.day_of_week == day_of_week:
                return detail
        return None

    def breaks_for(self, day_of_week: int) -> List[BreakHours]:
        return [b for b in self.breaks if b.applies_to(day_of_week)]

    @property
    def has_any_working_time(self) -> bool:
        """True if at least one weekday has a non-empty working window."""
        return self.is_24x7 or any(d.has_working_window for d in self.details)


@dataclass
class HolidayDate:
    """A full-day or partial holiday, optionally recurring every year."""
    holiday_date: date
    name: str
    is_full_day: bool = True
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    is_recurring: bool = False

    def falls_on(self, day: date) -> bool:
        if self.is_recurring:
            return (self.holiday_date.month, self.holiday_date.day) == (day.month, day.day)
        return self.holiday_date == day


@dataclass
class HolidayCalendar:
    id: str
    name: str
    year: Optional[int] = None
    holidays: List[HolidayDate] = field(default_factory=list)
    status: LifecycleStatus = LifecycleStatus.ACTIVE

    def holidays_on(self, day: date) -> List[HolidayDate]:
        if self.status != LifecycleStatus.ACTIVE:
            return []
        return [h for h in self.holidays if h.falls_on(day)]


# ========== Rules ==========

@dataclass(frozen=True)
class PauseCondition:
    """
    Structured pause-eligibility condition.

    ``TICKET_STATUS`` permits pauses triggered by the listed ticket statuses;
    ``MANUAL`` permits human-triggered pauses, optionally requiring a reason.
    """
    kind: PauseConditionKind
    statuses: FrozenSet[str] = frozenset()
    require_reason: bool = False

    def permits(self, trigger: PauseTrigger) -> bool:
        if self.kind == PauseConditionKind.TICKET_STATUS:
            return trigger.kind == PauseConditionKind.TICKET_STATUS and trigger.ticket_status in self.statuses
        if self.kind == PauseConditionKind.MANUAL:
            if trigger.kind != PauseConditionKind.MANUAL:
                return False
            return bool(trigger.reason) or not self.require_reason
        return False


@dataclass
class SlaRule:
    """
    SLA rule: applicability predicates plus min/avg/max TAT in business minutes.

    Empty predicate sets (or ones containing ``"all"``) match anything.
    """
    id: str
    name: str
    min_tat_minutes: int
    avg_tat_minutes: int
    max_tat_minutes: int
    priority_order: int = 100
    description: Optional[str] = None

    asset_categories: FrozenSet[str] = frozenset()
    asset_importance: FrozenSet[str] = frozenset()
    user_categories: FrozenSet[str] = frozenset()
    ticket_types: FrozenSet[str] = frozenset()
    ticket_channels: FrozenSet[str] = frozenset()
    priorities: FrozenSet[str] = frozenset()

    is_vip_override: bool = False
    business_hours_schedule_id: Optional[str] = None  # None = 24x7
    holiday_calendar_id: Optional[str] = None
    allow_pause_resume: bool = True
    pause_conditions: List[PauseCondition] = field(default_factory=list)
    status: LifecycleStatus = LifecycleStatus.ACTIVE
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        if not (0 <= self.min_tat_minutes <= self.avg_tat_minutes <= self.max_tat_minutes):
            raise ValueError(
                f"SLA rule '{self.name}' requires 0 <= min_tat <= avg_tat <= max_tat "
                f"(got {self.min_tat_minutes}/{self.avg_tat_minutes}/{self.max_tat_minutes})"
            )
        if self.max_tat_minutes <= 0:
            raise ValueError(f"SLA rule '{self.name}' requires max_tat > 0")

        for attr in ("asset_categories", "asset_importance", "user_categories",
                     "ticket_types", "ticket_channels", "priorities"):
            values = getattr(self, attr)
            setattr(self, attr, frozenset(str(v).strip().lower() for v in values))

    @property
    def is_active(self) -> bool:
        return self.status == LifecycleStatus.ACTIVE

    @staticmethod
    def accepts(predicate: FrozenSet[str], value: Optional[str]) -> bool:
        """Wildcard-aware membership test for a single-valued attribute."""
        if not predicate or WILDCARD in predicate:
            return True
        return value is not None and value.lower() in predicate

    def permits_pause(self, trigger: PauseTrigger) -> bool:
        if not self.allow_pause_resume:
            return False
        if not self.pause_conditions:
            return True
        return any(condition.permits(trigger) for condition in self.pause_conditions)

    def pause_statuses(self) -> FrozenSet[str]:
        statuses = set()
        for condition in self.pause_conditions:
            if condition.kind == PauseConditionKind.TICKET_STATUS:
                statuses.update(condition.statuses)
        return frozenset(statuses)


@dataclass(frozen=True)
class RecipientDescriptor:
    """Who to notify; resolved to people by the notification service."""
    type: RecipientType
    group_id: Optional[str] = None
    role: Optional[str] = None
    count: int = 1  # -1 = everyone matching

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "group_id": self.group_id,
            "role": self.role,
            "count": self.count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RecipientDescriptor":
        return cls(
            type=RecipientType(data["type"]),
            group_id=data.get("group_id"),
            role=data.get("role"),
            count=data.get("count", 1),
        )


@dataclass
class EscalationRule:
    """One escalation level attached to an SLA rule."""
    id: str
    sla_rule_id: str
    escalation_level: int
    trigger_type: TriggerType
    recipient: RecipientDescriptor
    reference_threshold: ReferenceThreshold = ReferenceThreshold.MAX_TAT
    trigger_offset_minutes: int = 0
    repeat_interval_minutes: Optional[int] = None  # None = fire once
    max_repeat_count: Optional[int] = None  # None = unlimited
    escalation_type: EscalationType = EscalationType.HIERARCHICAL
    notification_template: Optional[str] = None
    include_ticket_details: bool = True
    status: LifecycleStatus = LifecycleStatus.ACTIVE

    def __post_init__(self):
        if self.escalation_level < 1:
            raise ValueError("escalation_level must be >= 1")
        if self.repeat_interval_minutes is not None and self.repeat_interval_minutes <= 0:
            raise ValueError("repeat_interval_minutes must be positive")
        if self.max_repeat_count is not None and self.max_repeat_count < 1:
            raise ValueError("max_repeat_count must be >= 1")


# ========== Tracking ==========

@dataclass
class SlaTracking:
    """
    Per-ticket SLA state.

    Mutated only through SlaTracker; immutable once ``resolved_at`` is set.
    ``version`` backs the optimistic concurrency check.
    """
    id: str
    ticket_id: str
    sla_rule_id: str
    sla_start_time: datetime
    min_target_time: datetime
    avg_target_time: datetime
    max_target_time: datetime
    min_tat_minutes: int
    avg_tat_minutes: int
    max_tat_minutes: int

    business_elapsed_minutes: int = 0
    total_elapsed_minutes: int = 0
    total_paused_minutes: int = 0

    is_paused: bool = False
    pause_started_at: Optional[datetime] = None
    current_pause_reason: Optional[str] = None

    sla_status: SlaStatus = SlaStatus.ON_TRACK
    warning_triggered_at: Optional[datetime] = None
    breach_triggered_at: Optional[datetime] = None
    last_calculated_at: Optional[datetime] = None

    resolved_at: Optional[datetime] = None
    final_status: Optional[str] = None

    ticket_context: Optional[TicketContext] = None
    version: int = 1
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    @property
    def state(self) -> TrackingState:
        if self.is_resolved:
            return TrackingState.STOPPED
        if self.is_paused:
            return TrackingState.PAUSED
        return TrackingState.RUNNING

    def deadline_for(self, reference: ReferenceThreshold) -> datetime:
        return {
            ReferenceThreshold.MIN_TAT: self.min_target_time,
            ReferenceThreshold.AVG_TAT: self.avg_target_time,
            ReferenceThreshold.MAX_TAT: self.max_target_time,
        }[reference]

    def tat_for(self, reference: ReferenceThreshold) -> int:
        return {
            ReferenceThreshold.MIN_TAT: self.min_tat_minutes,
            ReferenceThreshold.AVG_TAT: self.avg_tat_minutes,
            ReferenceThreshold.MAX_TAT: self.max_tat_minutes,
        }[reference]


@dataclass
class PauseLogEntry:
    """Append-only pause/resume audit row."""
    id: str
    tracking_id: str
    action: PauseAction
    action_at: datetime
    ticket_status: str = "manual"
    reason: Optional[str] = None
    paused_duration_minutes: Optional[int] = None
    created_by: Optional[str] = None


@dataclass
class EscalationNotification:
    """
    Escalation ledger row.

    One row per firing; the ledger is what prevents duplicate fires
    inside a repeat window.
    """
    id: str
    tracking_id: str
    escalation_rule_id: str
    escalation_level: int
    trigger_type: TriggerType
    recipients: Dict
    repeat_count: int
    fired_at: datetime
    delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    delivered_at: Optional[datetime] = None
    error_message: Optional[str] = None

    def mark_sent(self, timestamp: Optional[datetime] = None) -> None:
        self.delivery_status = DeliveryStatus.SENT
        self.delivered_at = timestamp or _utcnow()
        self.error_message = None

    def mark_failed(self, error: str) -> None:
        self.delivery_status = DeliveryStatus.FAILED
        self.error_message = error[:500]
