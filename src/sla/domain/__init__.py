"""
SLA Domain Layer
================

Domain layer for SLA tracking and escalation.

Contains:
- Entities: rules, calendars, escalation rules, tracking records, logs
- Value Objects: ticket context, pause intervals, status snapshot
- Domain Services: BusinessHoursCalculator, SlaRuleMatcher

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from src.sla.domain.value_objects import (
    CRITICAL_THRESHOLD_PERCENT,
    TicketContext,
    PauseTrigger,
    PauseInterval,
    SlaStatusSnapshot,
    reconstruct_pause_intervals,
    current_open_pause,
    classify_status,
    resolution_outcome,
    format_duration,
)
from src.sla.domain.entities import (
    END_OF_DAY,
    window_is_valid,
    BusinessHoursDetail,
    BreakHours,
    BusinessHoursSchedule,
    HolidayDate,
    HolidayCalendar,
    PauseCondition,
    SlaRule,
    RecipientDescriptor,
    EscalationRule,
    SlaTracking,
    PauseLogEntry,
    EscalationNotification,
)
from src.sla.domain.business_hours import BusinessHoursCalculator, MAX_SEARCH_DAYS
from src.sla.domain.matching import SlaRuleMatcher

__all__ = [
    # Value Objects
    "CRITICAL_THRESHOLD_PERCENT",
    "TicketContext",
    "PauseTrigger",
    "PauseInterval",
    "SlaStatusSnapshot",
    "reconstruct_pause_intervals",
    "current_open_pause",
    "classify_status",
    "resolution_outcome",
    "format_duration",
    # Entities
    "END_OF_DAY",
    "window_is_valid",
    "BusinessHoursDetail",
    "BreakHours",
    "BusinessHoursSchedule",
    "HolidayDate",
    "HolidayCalendar",
    "PauseCondition",
    "SlaRule",
    "RecipientDescriptor",
    "EscalationRule",
    "SlaTracking",
    "PauseLogEntry",
    "EscalationNotification",
    # Domain Services
    "BusinessHoursCalculator",
    "MAX_SEARCH_DAYS",
    "SlaRuleMatcher",
]
