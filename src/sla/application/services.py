"""
SLA Application Services
=========================

Ports used by the application services.

Following SOLID principles:
- Dependency Inversion: services depend on these abstractions, the
  infrastructure layer provides SQLAlchemy / httpx implementations
- Each ``SlaRepositories`` bundle is one persistence unit: it is committed
  when its context exits cleanly and rolled back otherwise
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncContextManager, Callable, List, Optional

from src.sla.domain import (
    SlaRule, BusinessHoursSchedule, HolidayCalendar, EscalationRule,
    SlaTracking, PauseLogEntry, EscalationNotification,
)


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ========== Repository Interfaces (Dependency Inversion) ==========

class ISlaRuleRepository(ABC):
    """Interface for SLA rule data access."""

    @abstractmethod
    async def get(self, rule_id: str) -> Optional[SlaRule]:
        """Get rule by id, whatever its lifecycle status."""

    @abstractmethod
    async def get_by_name(self, name: str) -> Optional[SlaRule]:
        """Get rule by unique name."""

    @abstractmethod
    async def list_active(self) -> List[SlaRule]:
        """List ACTIVE rules."""

    @abstractmethod
    async def save(self, rule: SlaRule) -> SlaRule:
        """Insert or update a rule."""


class IBusinessCalendarRepository(ABC):
    """Interface for schedules and holiday calendars."""

    @abstractmethod
    async def get_schedule(self, schedule_id: str) -> Optional[BusinessHoursSchedule]:
        """Get schedule with its day details and breaks."""

    @abstractmethod
    async def get_schedule_by_name(self, name: str) -> Optional[BusinessHoursSchedule]:
        """Get schedule by name."""

    @abstractmethod
    async def save_schedule(self, schedule: BusinessHoursSchedule) -> BusinessHoursSchedule:
        """Insert or replace a schedule and its children."""

    @abstractmethod
    async def get_calendar(self, calendar_id: str) -> Optional[HolidayCalendar]:
        """Get holiday calendar with its dates."""

    @abstractmethod
    async def get_calendar_by_name(self, name: str) -> Optional[HolidayCalendar]:
        """Get holiday calendar by name."""

    @abstractmethod
    async def save_calendar(self, calendar: HolidayCalendar) -> HolidayCalendar:
        """Insert or replace a calendar and its dates."""


class ISlaTrackingRepository(ABC):
    """Interface for tracking records."""

    @abstractmethod
    async def get(self, tracking_id: str) -> Optional[SlaTracking]:
        """Get tracking by id."""

    @abstractmethod
    async def get_by_ticket(self, ticket_id: str) -> Optional[SlaTracking]:
        """Get the (single) tracking for a ticket."""

    @abstractmethod
    async def add(self, tracking: SlaTracking) -> SlaTracking:
        """
        Persist a new tracking.

        Raises:
            AlreadyTrackedError: a tracking already exists for the ticket
        """

    @abstractmethod
    async def update(self, tracking: SlaTracking, expected_version: int) -> SlaTracking:
        """
        Persist changes if the stored version still equals ``expected_version``.

        Returns the tracking with its version incremented.

        Raises:
            ConcurrentModificationError: the stored version moved on
        """

    @abstractmethod
    async def list_open(self, include_paused: bool = True) -> List[SlaTracking]:
        """List unresolved trackings."""

    @abstractmethod
    async def list_created_between(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[SlaTracking]:
        """List trackings by creation time, for metrics."""


class IPauseLogRepository(ABC):
    """Interface for the append-only pause log."""

    @abstractmethod
    async def append(self, entry: PauseLogEntry) -> PauseLogEntry:
        """Append an entry."""

    @abstractmethod
    async def list_for_tracking(self, tracking_id: str) -> List[PauseLogEntry]:
        """Entries for one tracking, oldest first."""


class IEscalationRepository(ABC):
    """Interface for escalation rules and the escalation ledger."""

    @abstractmethod
    async def list_rules(self, sla_rule_id: str, active_only: bool = True) -> List[EscalationRule]:
        """Escalation rules of an SLA rule ordered by level."""

    @abstractmethod
    async def get_rule(self, escalation_rule_id: str) -> Optional[EscalationRule]:
        """Get escalation rule by id."""

    @abstractmethod
    async def save_rule(self, rule: EscalationRule) -> EscalationRule:
        """Insert or update an escalation rule."""

    @abstractmethod
    async def history(self, tracking_id: str, escalation_level: int) -> List[EscalationNotification]:
        """Ledger rows for one (tracking, level), oldest first."""

    @abstractmethod
    async def append(self, notification: EscalationNotification) -> EscalationNotification:
        """Append a ledger row."""

    @abstractmethod
    async def list_for_tracking(self, tracking_id: str) -> List[EscalationNotification]:
        """All ledger rows for a tracking, oldest first."""

    @abstractmethod
    async def list_pending(self, limit: int = 100) -> List[EscalationNotification]:
        """Rows still awaiting delivery, oldest first."""

    @abstractmethod
    async def update_delivery(self, notification: EscalationNotification) -> None:
        """Persist delivery status fields."""


@dataclass
class SlaRepositories:
    """Repositories sharing one persistence unit."""
    rules: ISlaRuleRepository
    calendars: IBusinessCalendarRepository
    trackings: ISlaTrackingRepository
    pause_log: IPauseLogRepository
    escalations: IEscalationRepository


# Opens a new persistence unit per call
RepositoriesFactory = Callable[[], AsyncContextManager[SlaRepositories]]


# ========== Notification Port ==========

@dataclass
class NotificationRequest:
    """Payload handed to the notification collaborator."""
    notification_id: str
    ticket_id: str
    escalation_level: int
    trigger_type: str
    recipients: dict
    template: Optional[str]
    rule_name: str
    sla_status: str
    elapsed_minutes: int
    max_tat_minutes: int
    time_display: str
    include_ticket_details: bool = True
    ticket_context: dict = field(default_factory=dict)

    @property
    def ticket_number(self) -> str:
        return self.ticket_context.get("ticket_number") or self.ticket_id


class INotificationDispatcher(ABC):
    """
    Fire-and-forget notification collaborator.

    Delivery transport is owned by the notification service; a raised
    exception marks the ledger row failed and is never retried here.
    """

    @abstractmethod
    async def dispatch(self, request: NotificationRequest) -> None:
        """Hand one notification to the delivery channel."""

    async def close(self) -> None:
        """Release transport resources."""
