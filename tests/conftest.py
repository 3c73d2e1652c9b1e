"""
Pytest fixtures and configuration for SLA engine tests.

Provides:
- In-memory repositories implementing the repository interfaces
- A persistence-unit factory over the in-memory store
- A controllable clock
- A recording notification dispatcher
- Sample schedules, calendars and rules
"""
import copy
import pytest
from contextlib import asynccontextmanager
from datetime import datetime, time, timedelta, timezone
from typing import Dict, List, Optional
from uuid import uuid4

from src.config import LifecycleStatus, DeliveryStatus, TriggerType, RecipientType, ReferenceThreshold
from src.core.exceptions import AlreadyTrackedError, ConcurrentModificationError, NotificationDeliveryError
from src.sla.domain import (
    BusinessHoursDetail, BusinessHoursSchedule, HolidayCalendar, SlaRule,
    EscalationRule, RecipientDescriptor, SlaTracking, PauseLogEntry,
    EscalationNotification, TicketContext,
)
from src.sla.application import (
    ISlaRuleRepository, IBusinessCalendarRepository, ISlaTrackingRepository,
    IPauseLogRepository, IEscalationRepository, SlaRepositories,
    INotificationDispatcher, NotificationRequest, SlaTracker,
)


# Monday 2 March 2026, 09:00 UTC
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# ==========================================
# IN-MEMORY REPOSITORIES
# ==========================================

class InMemorySlaRuleRepository(ISlaRuleRepository):

    def __init__(self, store: "InMemoryStore"):
        self.store = store

    async def get(self, rule_id: str) -> Optional[SlaRule]:
        return copy.deepcopy(self.store.rules.get(rule_id))

    async def get_by_name(self, name: str) -> Optional[SlaRule]:
        for rule in self.store.rules.values():
            if rule.name == name:
                return copy.deepcopy(rule)
        return None

    async def list_active(self) -> List[SlaRule]:
        return [copy.deepcopy(r) for r in self.store.rules.values() if r.status == LifecycleStatus.ACTIVE]

    async def save(self, rule: SlaRule) -> SlaRule:
        self.store.rules[rule.id] = copy.deepcopy(rule)
        return rule


class InMemoryBusinessCalendarRepository(IBusinessCalendarRepository):

    def __init__(self, store: "InMemoryStore"):
        self.store = store

    async def get_schedule(self, schedule_id: str) -> Optional[BusinessHoursSchedule]:
        return copy.deepcopy(self.store.schedules.get(schedule_id))

    async def get_schedule_by_name(self, name: str) -> Optional[BusinessHoursSchedule]:
        for schedule in self.store.schedules.values():
            if schedule.name == name:
                return copy.deepcopy(schedule)
        return None

    async def save_schedule(self, schedule: BusinessHoursSchedule) -> BusinessHoursSchedule:
        self.store.schedules[schedule.id] = copy.deepcopy(schedule)
        return schedule

    async def get_calendar(self, calendar_id: str) -> Optional[HolidayCalendar]:
        return copy.deepcopy(self.store.calendars.get(calendar_id))

    async def get_calendar_by_name(self, name: str) -> Optional[HolidayCalendar]:
        for calendar in self.store.calendars.values():
            if calendar.name == name:
                return copy.deepcopy(calendar)
        return None

    async def save_calendar(self, calendar: HolidayCalendar) -> HolidayCalendar:
        self.store.calendars[calendar.id] = copy.deepcopy(calendar)
        return calendar


class InMemorySlaTrackingRepository(ISlaTrackingRepository):
    """Stores copies so callers never share state with the store."""

    def __init__(self, store: "InMemoryStore"):
        self.store = store

    async def get(self, tracking_id: str) -> Optional[SlaTracking]:
        return copy.deepcopy(self.store.trackings.get(tracking_id))

    async def get_by_ticket(self, ticket_id: str) -> Optional[SlaTracking]:
        for tracking in self.store.trackings.values():
            if tracking.ticket_id == ticket_id:
                return copy.deepcopy(tracking)
        return None

    async def add(self, tracking: SlaTracking) -> SlaTracking:
        if any(t.ticket_id == tracking.ticket_id for t in self.store.trackings.values()):
            raise AlreadyTrackedError(tracking.ticket_id)
        self.store.trackings[tracking.id] = copy.deepcopy(tracking)
        return copy.deepcopy(tracking)

    async def update(self, tracking: SlaTracking, expected_version: int) -> SlaTracking:
        stored = self.store.trackings.get(tracking.id)
        if stored is None or stored.version != expected_version:
            raise ConcurrentModificationError("SlaTracking", tracking.id, expected_version)
        saved = copy.deepcopy(tracking)
        saved.version = expected_version + 1
        self.store.trackings[tracking.id] = saved
        return copy.deepcopy(saved)

    async def list_open(self, include_paused: bool = True) -> List[SlaTracking]:
        trackings = [
            t for t in self.store.trackings.values()
            if t.resolved_at is None and (include_paused or not t.is_paused)
        ]
        return [copy.deepcopy(t) for t in sorted(trackings, key=lambda t: t.sla_start_time)]

    async def list_created_between(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[SlaTracking]:
        trackings = [
            t for t in self.store.trackings.values()
            if (start is None or t.sla_start_time >= start) and (end is None or t.sla_start_time <= end)
        ]
        return [copy.deepcopy(t) for t in sorted(trackings, key=lambda t: t.sla_start_time)]


class InMemoryPauseLogRepository(IPauseLogRepository):

    def __init__(self, store: "InMemoryStore"):
        self.store = store

    async def append(self, entry: PauseLogEntry) -> PauseLogEntry:
        self.store.pause_log.append(copy.deepcopy(entry))
        return entry

    async def list_for_tracking(self, tracking_id: str) -> List[PauseLogEntry]:
        entries = [e for e in self.store.pause_log if e.tracking_id == tracking_id]
        return [copy.deepcopy(e) for e in sorted(entries, key=lambda e: e.action_at)]


class InMemoryEscalationRepository(IEscalationRepository):

    def __init__(self, store: "InMemoryStore"):
        self.store = store

    async def list_rules(self, sla_rule_id: str, active_only: bool = True) -> List[EscalationRule]:
        rules = [
            r for r in self.store.escalation_rules.values()
            if r.sla_rule_id == sla_rule_id and (not active_only or r.status == LifecycleStatus.ACTIVE)
        ]
        return [copy.deepcopy(r) for r in sorted(rules, key=lambda r: r.escalation_level)]

    async def get_rule(self, escalation_rule_id: str) -> Optional[EscalationRule]:
        return copy.deepcopy(self.store.escalation_rules.get(escalation_rule_id))

    async def save_rule(self, rule: EscalationRule) -> EscalationRule:
        self.store.escalation_rules[rule.id] = copy.deepcopy(rule)
        return rule

    async def history(self, tracking_id: str, escalation_level: int) -> List[EscalationNotification]:
        rows = [
            n for n in self.store.notifications
            if n.tracking_id == tracking_id and n.escalation_level == escalation_level
        ]
        return [copy.deepcopy(n) for n in sorted(rows, key=lambda n: n.fired_at)]

    async def append(self, notification: EscalationNotification) -> EscalationNotification:
        self.store.notifications.append(copy.deepcopy(notification))
        return notification

    async def list_for_tracking(self, tracking_id: str) -> List[EscalationNotification]:
        rows = [n for n in self.store.notifications if n.tracking_id == tracking_id]
        return [copy.deepcopy(n) for n in sorted(rows, key=lambda n: n.fired_at)]

    async def list_pending(self, limit: int = 100) -> List[EscalationNotification]:
        rows = [n for n in self.store.notifications if n.delivery_status == DeliveryStatus.PENDING]
        return [copy.deepcopy(n) for n in sorted(rows, key=lambda n: n.fired_at)[:limit]]

    async def update_delivery(self, notification: EscalationNotification) -> None:
        for index, row in enumerate(self.store.notifications):
            if row.id == notification.id:
                self.store.notifications[index] = copy.deepcopy(notification)


class InMemoryStore:
    """Backing dicts for the in-memory repositories."""

    escalation_repository_class = InMemoryEscalationRepository

    def __init__(self):
        self.rules: Dict[str, SlaRule] = {}
        self.schedules: Dict[str, BusinessHoursSchedule] = {}
        self.calendars: Dict[str, HolidayCalendar] = {}
        self.escalation_rules: Dict[str, EscalationRule] = {}
        self.trackings: Dict[str, SlaTracking] = {}
        self.pause_log: List[PauseLogEntry] = []
        self.notifications: List[EscalationNotification] = []
        self.units_opened = 0

    def repositories(self) -> SlaRepositories:
        return SlaRepositories(
            rules=InMemorySlaRuleRepository(self),
            calendars=InMemoryBusinessCalendarRepository(self),
            trackings=InMemorySlaTrackingRepository(self),
            pause_log=InMemoryPauseLogRepository(self),
            escalations=self.escalation_repository_class(self),
        )

    def factory(self):
        """RepositoriesFactory over this store."""
        @asynccontextmanager
        async def open_unit():
            self.units_opened += 1
            yield self.repositories()
        return open_unit

    # Seeding helpers (synchronous)

    def add_rule(self, rule: SlaRule) -> SlaRule:
        self.rules[rule.id] = rule
        return rule

    def add_schedule(self, schedule: BusinessHoursSchedule) -> BusinessHoursSchedule:
        self.schedules[schedule.id] = schedule
        return schedule

    def add_calendar(self, calendar: HolidayCalendar) -> HolidayCalendar:
        self.calendars[calendar.id] = calendar
        return calendar

    def add_escalation(self, rule: EscalationRule) -> EscalationRule:
        self.escalation_rules[rule.id] = rule
        return rule


# ==========================================
# CLOCK & DISPATCHER
# ==========================================

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


class RecordingDispatcher(INotificationDispatcher):
    """Records dispatched requests; fails for the listed ticket ids."""

    def __init__(self, fail_for: Optional[set] = None):
        self.requests: List[NotificationRequest] = []
        self.fail_for = fail_for or set()
        self.closed = False

    async def dispatch(self, request: NotificationRequest) -> None:
        if request.ticket_id in self.fail_for:
            raise NotificationDeliveryError("webhook returned 500")
        self.requests.append(request)

    async def close(self) -> None:
        self.closed = True


# ==========================================
# BUILDERS
# ==========================================

def make_rule(**overrides) -> SlaRule:
    data = {
        "id": str(uuid4()),
        "name": "default",
        "min_tat_minutes": 60,
        "avg_tat_minutes": 240,
        "max_tat_minutes": 480,
        "priority_order": 100,
        "created_at": T0 - timedelta(days=30),
    }
    data.update(overrides)
    return SlaRule(**data)


def make_escalation(sla_rule_id: str, level: int = 1, **overrides) -> EscalationRule:
    data = {
        "id": str(uuid4()),
        "sla_rule_id": sla_rule_id,
        "escalation_level": level,
        "trigger_type": TriggerType.BREACHED,
        "recipient": RecipientDescriptor(type=RecipientType.TEAM_LEADER),
        "reference_threshold": ReferenceThreshold.MAX_TAT,
    }
    data.update(overrides)
    return EscalationRule(**data)


def make_context(ticket_id: str = "INC-1", **overrides) -> TicketContext:
    data = {"ticket_id": ticket_id, "priority": "p2", "ticket_number": f"#{ticket_id}"}
    data.update(overrides)
    return TicketContext(**data)


def office_hours(schedule_id: str = "office", timezone_name: str = "UTC", **overrides) -> BusinessHoursSchedule:
    """Mon-Fri 09:00-17:00, weekends off."""
    details = [BusinessHoursDetail(day_of_week=0, is_working_day=False)]
    details += [
        BusinessHoursDetail(day_of_week=d, start_time=time(9, 0), end_time=time(17, 0))
        for d in range(1, 6)
    ]
    details.append(BusinessHoursDetail(day_of_week=6, is_working_day=False))
    data = {"id": schedule_id, "name": schedule_id, "timezone": timezone_name, "details": details}
    data.update(overrides)
    return BusinessHoursSchedule(**data)


# ==========================================
# FIXTURES
# ==========================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(T0)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def repos(store: InMemoryStore) -> SlaRepositories:
    return store.repositories()


@pytest.fixture
def factory(store: InMemoryStore):
    return store.factory()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def schedule() -> BusinessHoursSchedule:
    return office_hours()


@pytest.fixture
def rule_24x7(store: InMemoryStore) -> SlaRule:
    """min 60 / avg 240 / max 480, no schedule (24x7)."""
    return store.add_rule(make_rule(name="round-the-clock"))


@pytest.fixture
def tracker(repos: SlaRepositories, clock: FakeClock) -> SlaTracker:
    return SlaTracker(repos, clock=clock)
