"""
SLA Rule Catalog
================

YAML-declared schedules, holiday calendars, SLA rules and escalation
levels, validated with Pydantic and upserted into the store by name.

Example::

    business_hours:
      - name: standard
        timezone: Asia/Kolkata
        days:
          - {day_of_week: 1, start_time: "09:00", end_time: "18:00"}
        breaks:
          - {name: lunch, start_time: "13:00", end_time: "14:00"}

    sla_rules:
      - name: p1-incidents
        priority_order: 1
        min_tat_minutes: 30
        avg_tat_minutes: 60
        max_tat_minutes: 120
        priorities: [p1]
        business_hours: standard
        escalations:
          - {level: 1, trigger_type: breached, recipient: {type: team_leader}}

Times should be quoted: YAML 1.1 reads an unquoted ``13:00`` as the
base-60 integer 780, which is accepted and converted back here.
A window may end at ``"24:00"`` (stored as 00:00, the midnight closing the
day); windows that cross midnight are rejected.
"""

from datetime import date, time
from pathlib import Path
from typing import Annotated, Dict, List, Optional, Union
from uuid import uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, BeforeValidator, Field, ValidationError, field_validator, model_validator

from src.config import (
    LifecycleStatus, PauseConditionKind, TriggerType, ReferenceThreshold,
    RecipientType, EscalationType, settings,
)
from src.core.exceptions import ConfigurationException
from src.sla.domain import (
    END_OF_DAY, window_is_valid,
    BusinessHoursDetail, BreakHours, BusinessHoursSchedule, HolidayDate,
    HolidayCalendar, PauseCondition, SlaRule, RecipientDescriptor, EscalationRule,
)
from src.sla.application.services import SlaRepositories
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

MINUTES_PER_DAY = 24 * 60


def _coerce_time(value: Union[str, int, time, None]) -> Union[str, time, None]:
    # PyYAML turns unquoted 13:00 into 13 * 60 + 0
    if isinstance(value, int) and not isinstance(value, bool):
        if value == MINUTES_PER_DAY:
            return END_OF_DAY
        hours, minutes = divmod(value, 60)
        return time(hours, minutes)
    if isinstance(value, str) and value.strip() in ("24:00", "24:00:00"):
        return END_OF_DAY
    return value


def _check_window(label: str, start_time: Optional[time], end_time: Optional[time]) -> None:
    if start_time is not None and end_time is not None and not window_is_valid(start_time, end_time):
        raise ValueError(
            f"{label}: end_time {end_time:%H:%M} must be after start_time {start_time:%H:%M} "
            "(use 24:00 for midnight; overnight windows are not supported)"
        )


YamlTime = Annotated[time, BeforeValidator(_coerce_time)]


# ========== Calendar ==========

class DayHoursModel(BaseModel):
    day_of_week: int = Field(..., ge=0, le=6, description="0 = Sunday")
    is_working_day: bool = True
    start_time: Optional[YamlTime] = None
    end_time: Optional[YamlTime] = None

    @model_validator(mode="after")
    def check_window(self) -> "DayHoursModel":
        if self.is_working_day and (self.start_time is None or self.end_time is None):
            raise ValueError(f"working day {self.day_of_week} needs start_time and end_time")
        if self.is_working_day:
            _check_window(f"day {self.day_of_week}", self.start_time, self.end_time)
        return self


class BreakModel(BaseModel):
    name: str
    start_time: YamlTime
    end_time: YamlTime
    applies_to_days: List[int] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_window(self) -> "BreakModel":
        _check_window(f"break '{self.name}'", self.start_time, self.end_time)
        return self


class ScheduleModel(BaseModel):
    name: str
    is_24x7: bool = False
    timezone: Optional[str] = None
    days: List[DayHoursModel] = Field(default_factory=list)
    breaks: List[BreakModel] = Field(default_factory=list)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown time zone '{v}'")
        return v

    def to_entity(self, schedule_id: str) -> BusinessHoursSchedule:
        return BusinessHoursSchedule(
            id=schedule_id,
            name=self.name,
            is_24x7=self.is_24x7,
            timezone=self.timezone or settings.sla_default_timezone,
            details=[
                BusinessHoursDetail(
                    day_of_week=d.day_of_week,
                    is_working_day=d.is_working_day,
                    start_time=d.start_time,
                    end_time=d.end_time,
                )
                for d in self.days
            ],
            breaks=[
                BreakHours(
                    name=b.name,
                    start_time=b.start_time,
                    end_time=b.end_time,
                    applies_to_days=frozenset(b.applies_to_days),
                )
                for b in self.breaks
            ],
        )


class HolidayModel(BaseModel):
    holiday_date: date
    name: str
    is_full_day: bool = True
    start_time: Optional[YamlTime] = None
    end_time: Optional[YamlTime] = None
    is_recurring: bool = False

    @model_validator(mode="after")
    def check_partial(self) -> "HolidayModel":
        if not self.is_full_day and (self.start_time is None or self.end_time is None):
            raise ValueError(f"partial holiday '{self.name}' needs start_time and end_time")
        if not self.is_full_day:
            _check_window(f"partial holiday '{self.name}'", self.start_time, self.end_time)
        return self


class HolidayCalendarModel(BaseModel):
    name: str
    year: Optional[int] = None
    holidays: List[HolidayModel] = Field(default_factory=list)

    def to_entity(self, calendar_id: str) -> HolidayCalendar:
        return HolidayCalendar(
            id=calendar_id,
            name=self.name,
            year=self.year,
            holidays=[
                HolidayDate(
                    holiday_date=h.holiday_date,
                    name=h.name,
                    is_full_day=h.is_full_day,
                    start_time=h.start_time,
                    end_time=h.end_time,
                    is_recurring=h.is_recurring,
                )
                for h in self.holidays
            ],
        )


# ========== Rules ==========

class PauseConditionModel(BaseModel):
    kind: PauseConditionKind
    statuses: List[str] = Field(default_factory=list)
    require_reason: bool = False

    def to_entity(self) -> PauseCondition:
        return PauseCondition(
            kind=self.kind,
            statuses=frozenset(s.strip().lower() for s in self.statuses),
            require_reason=self.require_reason,
        )


class RecipientModel(BaseModel):
    type: RecipientType
    group_id: Optional[str] = None
    role: Optional[str] = None
    count: int = 1


class EscalationModel(BaseModel):
    level: int = Field(..., ge=1)
    trigger_type: TriggerType
    recipient: RecipientModel
    reference_threshold: ReferenceThreshold = ReferenceThreshold.MAX_TAT
    trigger_offset_minutes: int = 0
    repeat_interval_minutes: Optional[int] = Field(default=None, gt=0)
    max_repeat_count: Optional[int] = Field(default=None, ge=1)
    escalation_type: EscalationType = EscalationType.HIERARCHICAL
    notification_template: Optional[str] = None
    include_ticket_details: bool = True

    def to_entity(self, rule_id: str, sla_rule_id: str) -> EscalationRule:
        return EscalationRule(
            id=rule_id,
            sla_rule_id=sla_rule_id,
            escalation_level=self.level,
            trigger_type=self.trigger_type,
            recipient=RecipientDescriptor(**self.recipient.model_dump()),
            reference_threshold=self.reference_threshold,
            trigger_offset_minutes=self.trigger_offset_minutes,
            repeat_interval_minutes=self.repeat_interval_minutes,
            max_repeat_count=self.max_repeat_count,
            escalation_type=self.escalation_type,
            notification_template=self.notification_template,
            include_ticket_details=self.include_ticket_details,
        )


class SlaRuleModel(BaseModel):
    name: str
    description: Optional[str] = None
    priority_order: int = 100
    min_tat_minutes: int = Field(..., ge=0)
    avg_tat_minutes: int = Field(..., ge=0)
    max_tat_minutes: int = Field(..., gt=0)

    asset_categories: List[str] = Field(default_factory=list)
    asset_importance: List[str] = Field(default_factory=list)
    user_categories: List[str] = Field(default_factory=list)
    ticket_types: List[str] = Field(default_factory=list)
    ticket_channels: List[str] = Field(default_factory=list)
    priorities: List[str] = Field(default_factory=list)

    is_vip_override: bool = False
    business_hours: Optional[str] = Field(default=None, description="Schedule name; omitted = 24x7")
    holiday_calendar: Optional[str] = None
    allow_pause_resume: bool = True
    pause_conditions: List[PauseConditionModel] = Field(default_factory=list)
    status: LifecycleStatus = LifecycleStatus.ACTIVE
    escalations: List[EscalationModel] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_thresholds(self) -> "SlaRuleModel":
        if not self.min_tat_minutes <= self.avg_tat_minutes <= self.max_tat_minutes:
            raise ValueError(f"rule '{self.name}': expected min_tat <= avg_tat <= max_tat")
        levels = [e.level for e in self.escalations]
        if len(levels) != len(set(levels)):
            raise ValueError(f"rule '{self.name}': duplicate escalation level")
        return self


class RuleCatalog(BaseModel):
    """Top-level catalog document."""
    business_hours: List[ScheduleModel] = Field(default_factory=list)
    holiday_calendars: List[HolidayCalendarModel] = Field(default_factory=list)
    sla_rules: List[SlaRuleModel] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_references(self) -> "RuleCatalog":
        for attr in ("business_hours", "holiday_calendars", "sla_rules"):
            names = [item.name for item in getattr(self, attr)]
            if len(names) != len(set(names)):
                raise ValueError(f"duplicate name in {attr}")

        schedules = {s.name for s in self.business_hours}
        calendars = {c.name for c in self.holiday_calendars}
        for rule in self.sla_rules:
            if rule.business_hours and rule.business_hours not in schedules:
                raise ValueError(f"rule '{rule.name}' references unknown schedule '{rule.business_hours}'")
            if rule.holiday_calendar and rule.holiday_calendar not in calendars:
                raise ValueError(
                    f"rule '{rule.name}' references unknown holiday calendar '{rule.holiday_calendar}'"
                )
        return self

    @property
    def is_empty(self) -> bool:
        return not (self.business_hours or self.holiday_calendars or self.sla_rules)


def parse_catalog(text: str, source: str = "<string>") -> RuleCatalog:
    """
    Parse and validate catalog YAML.

    Raises:
        ConfigurationException: malformed YAML or schema violation
    """
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigurationException(f"Invalid YAML in SLA catalog {source}: {e}", {"source": source})

    try:
        return RuleCatalog.model_validate(data)
    except ValidationError as e:
        raise ConfigurationException(
            f"Invalid SLA catalog {source}",
            {"source": source, "errors": e.errors(include_url=False, include_context=False)}
        )


def load_catalog(path: Path) -> RuleCatalog:
    """Read a catalog file; a missing file yields an empty catalog."""
    if not path.exists():
        logger.warning("SLA catalog file not found, nothing to sync", extra={"path": str(path)})
        return RuleCatalog()

    with open(path, "r", encoding="utf-8") as f:
        return parse_catalog(f.read(), source=str(path))


# ========== Sync ==========

async def sync_catalog(repos: SlaRepositories, catalog: RuleCatalog) -> Dict[str, int]:
    """
    Upsert the catalog into the store, matching existing rows by name.

    Existing ids and ``created_at`` are kept so live trackings and the
    matcher's tie-break are unaffected. Escalation levels no longer in the
    catalog are retired. Rules missing from the catalog are left untouched.
    """
    counts = {"schedules": 0, "calendars": 0, "rules": 0, "escalations": 0, "escalations_retired": 0}

    schedule_ids: Dict[str, str] = {}
    for model in catalog.business_hours:
        existing = await repos.calendars.get_schedule_by_name(model.name)
        schedule = await repos.calendars.save_schedule(
            model.to_entity(existing.id if existing else str(uuid4()))
        )
        schedule_ids[model.name] = schedule.id
        counts["schedules"] += 1

    calendar_ids: Dict[str, str] = {}
    for model in catalog.holiday_calendars:
        existing = await repos.calendars.get_calendar_by_name(model.name)
        calendar = await repos.calendars.save_calendar(
            model.to_entity(existing.id if existing else str(uuid4()))
        )
        calendar_ids[model.name] = calendar.id
        counts["calendars"] += 1

    for model in catalog.sla_rules:
        existing = await repos.rules.get_by_name(model.name)
        rule = SlaRule(
            id=existing.id if existing else str(uuid4()),
            name=model.name,
            description=model.description,
            priority_order=model.priority_order,
            min_tat_minutes=model.min_tat_minutes,
            avg_tat_minutes=model.avg_tat_minutes,
            max_tat_minutes=model.max_tat_minutes,
            asset_categories=frozenset(model.asset_categories),
            asset_importance=frozenset(model.asset_importance),
            user_categories=frozenset(model.user_categories),
            ticket_types=frozenset(model.ticket_types),
            ticket_channels=frozenset(model.ticket_channels),
            priorities=frozenset(model.priorities),
            is_vip_override=model.is_vip_override,
            business_hours_schedule_id=schedule_ids.get(model.business_hours) if model.business_hours else None,
            holiday_calendar_id=calendar_ids.get(model.holiday_calendar) if model.holiday_calendar else None,
            allow_pause_resume=model.allow_pause_resume,
            pause_conditions=[c.to_entity() for c in model.pause_conditions],
            status=model.status,
        )
        if existing:
            rule.created_at = existing.created_at
        rule = await repos.rules.save(rule)
        counts["rules"] += 1

        current = {e.escalation_level: e for e in await repos.escalations.list_rules(rule.id, active_only=False)}
        declared = set()
        for esc in model.escalations:
            previous = current.get(esc.level)
            await repos.escalations.save_rule(
                esc.to_entity(previous.id if previous else str(uuid4()), rule.id)
            )
            declared.add(esc.level)
            counts["escalations"] += 1

        for level, stale in current.items():
            if level not in declared and stale.status == LifecycleStatus.ACTIVE:
                stale.status = LifecycleStatus.RETIRED
                await repos.escalations.save_rule(stale)
                counts["escalations_retired"] += 1

    logger.info("SLA catalog synced", extra=counts)
    return counts
