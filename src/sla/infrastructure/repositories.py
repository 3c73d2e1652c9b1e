"""
SLA Infrastructure Repositories
=================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
entities from the database. Rows are mapped to domain dataclasses on the
way out; ORM models never leave this module.
"""

import functools
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import (
    LifecycleStatus, SlaStatus, PauseAction, PauseConditionKind, TriggerType,
    ReferenceThreshold, EscalationType, DeliveryStatus,
)
from src.core.exceptions import (
    AlreadyTrackedError, ConcurrentModificationError, PersistenceError, ApplicationException,
)
from src.infrastructure.database import get_session_context
from src.sla.application.services import (
    ISlaRuleRepository, IBusinessCalendarRepository, ISlaTrackingRepository,
    IPauseLogRepository, IEscalationRepository, SlaRepositories,
)
from src.sla.domain import (
    SlaRule, PauseCondition, BusinessHoursSchedule, BusinessHoursDetail, BreakHours,
    HolidayCalendar, HolidayDate, EscalationRule, RecipientDescriptor,
    SlaTracking, PauseLogEntry, EscalationNotification, TicketContext,
)
from src.sla.infrastructure.models import (
    SlaRuleModel, BusinessHoursScheduleModel, BusinessHoursDetailModel, BreakHoursModel,
    HolidayCalendarModel, HolidayDateModel, EscalationRuleModel,
    SlaTrackingModel, PauseLogModel, EscalationNotificationModel,
)


def _guarded(func):
    """Wrap driver/ORM failures in PersistenceError; domain errors pass through."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except ApplicationException:
            raise
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Database error in {func.__qualname__}",
                {"error": str(e.__class__.__name__)}
            ) from e
    return wrapper


# ========== Row <-> Entity mapping ==========

def _rule_to_domain(model: SlaRuleModel) -> SlaRule:
    return SlaRule(
        id=model.id,
        name=model.name,
        description=model.description,
        priority_order=model.priority_order,
        min_tat_minutes=model.min_tat_minutes,
        avg_tat_minutes=model.avg_tat_minutes,
        max_tat_minutes=model.max_tat_minutes,
        asset_categories=frozenset(model.asset_categories or ()),
        asset_importance=frozenset(model.asset_importance or ()),
        user_categories=frozenset(model.user_categories or ()),
        ticket_types=frozenset(model.ticket_types or ()),
        ticket_channels=frozenset(model.ticket_channels or ()),
        priorities=frozenset(model.priorities or ()),
        is_vip_override=model.is_vip_override,
        business_hours_schedule_id=model.business_hours_schedule_id,
        holiday_calendar_id=model.holiday_calendar_id,
        allow_pause_resume=model.allow_pause_resume,
        pause_conditions=[
            PauseCondition(
                kind=PauseConditionKind(c["kind"]),
                statuses=frozenset(c.get("statuses") or ()),
                require_reason=bool(c.get("require_reason", False)),
            )
            for c in (model.pause_conditions or [])
        ],
        status=LifecycleStatus(model.status),
        created_at=model.created_at,
    )


def _schedule_to_domain(model: BusinessHoursScheduleModel) -> BusinessHoursSchedule:
    return BusinessHoursSchedule(
        id=model.id,
        name=model.name,
        is_24x7=model.is_24x7,
        timezone=model.timezone,
        status=LifecycleStatus(model.status),
        details=[
            BusinessHoursDetail(
                day_of_week=d.day_of_week,
                is_working_day=d.is_working_day,
                start_time=d.start_time,
                end_time=d.end_time,
            )
            for d in model.details
        ],
        breaks=[
            BreakHours(
                name=b.name,
                start_time=b.start_time,
                end_time=b.end_time,
                applies_to_days=frozenset(b.applies_to_days or ()),
                status=LifecycleStatus(b.status),
            )
            for b in model.breaks
        ],
    )


def _calendar_to_domain(model: HolidayCalendarModel) -> HolidayCalendar:
    return HolidayCalendar(
        id=model.id,
        name=model.name,
        year=model.year,
        status=LifecycleStatus(model.status),
        holidays=[
            HolidayDate(
                holiday_date=h.holiday_date,
                name=h.name,
                is_full_day=h.is_full_day,
                start_time=h.start_time,
                end_time=h.end_time,
                is_recurring=h.is_recurring,
            )
            for h in model.holidays
        ],
    )


def _escalation_rule_to_domain(model: EscalationRuleModel) -> EscalationRule:
    return EscalationRule(
        id=model.id,
        sla_rule_id=model.sla_rule_id,
        escalation_level=model.escalation_level,
        trigger_type=TriggerType(model.trigger_type),
        recipient=RecipientDescriptor.from_dict(model.recipient),
        reference_threshold=ReferenceThreshold(model.reference_threshold),
        trigger_offset_minutes=model.trigger_offset_minutes,
        repeat_interval_minutes=model.repeat_interval_minutes,
        max_repeat_count=model.max_repeat_count,
        escalation_type=EscalationType(model.escalation_type),
        notification_template=model.notification_template,
        include_ticket_details=model.include_ticket_details,
        status=LifecycleStatus(model.status),
    )


def _tracking_to_domain(model: SlaTrackingModel) -> SlaTracking:
    return SlaTracking(
        id=model.id,
        ticket_id=model.ticket_id,
        sla_rule_id=model.sla_rule_id,
        sla_start_time=model.sla_start_time,
        min_target_time=model.min_target_time,
        avg_target_time=model.avg_target_time,
        max_target_time=model.max_target_time,
        min_tat_minutes=model.min_tat_minutes,
        avg_tat_minutes=model.avg_tat_minutes,
        max_tat_minutes=model.max_tat_minutes,
        business_elapsed_minutes=model.business_elapsed_minutes,
        total_elapsed_minutes=model.total_elapsed_minutes,
        total_paused_minutes=model.total_paused_minutes,
        is_paused=model.is_paused,
        pause_started_at=model.pause_started_at,
        current_pause_reason=model.current_pause_reason,
        sla_status=SlaStatus(model.sla_status),
        warning_triggered_at=model.warning_triggered_at,
        breach_triggered_at=model.breach_triggered_at,
        last_calculated_at=model.last_calculated_at,
        resolved_at=model.resolved_at,
        final_status=model.final_status,
        ticket_context=TicketContext.from_dict(model.ticket_context) if model.ticket_context else None,
        version=model.version,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _tracking_values(tracking: SlaTracking) -> dict:
    """Mutable columns of a tracking row."""
    return {
        "business_elapsed_minutes": tracking.business_elapsed_minutes,
        "total_elapsed_minutes": tracking.total_elapsed_minutes,
        "total_paused_minutes": tracking.total_paused_minutes,
        "is_paused": tracking.is_paused,
        "pause_started_at": tracking.pause_started_at,
        "current_pause_reason": tracking.current_pause_reason,
        "sla_status": tracking.sla_status.value,
        "warning_triggered_at": tracking.warning_triggered_at,
        "breach_triggered_at": tracking.breach_triggered_at,
        "last_calculated_at": tracking.last_calculated_at,
        "resolved_at": tracking.resolved_at,
        "final_status": tracking.final_status,
        "ticket_context": tracking.ticket_context.to_dict() if tracking.ticket_context else None,
        "updated_at": tracking.updated_at,
    }


def _pause_entry_to_domain(model: PauseLogModel) -> PauseLogEntry:
    return PauseLogEntry(
        id=model.id,
        tracking_id=model.tracking_id,
        action=PauseAction(model.action),
        action_at=model.action_at,
        ticket_status=model.ticket_status,
        reason=model.reason,
        paused_duration_minutes=model.paused_duration_minutes,
        created_by=model.created_by,
    )


def _notification_to_domain(model: EscalationNotificationModel) -> EscalationNotification:
    return EscalationNotification(
        id=model.id,
        tracking_id=model.tracking_id,
        escalation_rule_id=model.escalation_rule_id,
        escalation_level=model.escalation_level,
        trigger_type=TriggerType(model.trigger_type),
        recipients=model.recipients,
        repeat_count=model.repeat_count,
        fired_at=model.fired_at,
        delivery_status=DeliveryStatus(model.delivery_status),
        delivered_at=model.delivered_at,
        error_message=model.error_message,
    )


# ========== Repositories ==========

class SQLAlchemySlaRuleRepository(ISlaRuleRepository):
    """SQLAlchemy implementation of SLA rule repository."""

    def __init__(self, session: AsyncSession):
        self._session = session

    @_guarded
    async def get(self, rule_id: str) -> Optional[SlaRule]:
        model = await self._session.get(SlaRuleModel, rule_id)
        return _rule_to_domain(model) if model else None

    @_guarded
    async def get_by_name(self, name: str) -> Optional[SlaRule]:
        stmt = select(SlaRuleModel).where(SlaRuleModel.name == name)
        model = (await self._session.execute(stmt)).scalar_one_or_none()
        return _rule_to_domain(model) if model else None

    @_guarded
    async def list_active(self) -> List[SlaRule]:
        stmt = (
            select(SlaRuleModel)
            .where(SlaRuleModel.status == LifecycleStatus.ACTIVE.value)
            .order_by(SlaRuleModel.priority_order, SlaRuleModel.created_at, SlaRuleModel.id)
        )
        result = await self._session.execute(stmt)
        return [_rule_to_domain(m) for m in result.scalars().all()]

    @_guarded
    async def save(self, rule: SlaRule) -> SlaRule:
        model = await self._session.get(SlaRuleModel, rule.id)
        if model is None:
            model = SlaRuleModel(id=rule.id, created_at=rule.created_at)
            self._session.add(model)

        model.name = rule.name
        model.description = rule.description
        model.priority_order = rule.priority_order
        model.min_tat_minutes = rule.min_tat_minutes
        model.avg_tat_minutes = rule.avg_tat_minutes
        model.max_tat_minutes = rule.max_tat_minutes
        model.asset_categories = sorted(rule.asset_categories)
        model.asset_importance = sorted(rule.asset_importance)
        model.user_categories = sorted(rule.user_categories)
        model.ticket_types = sorted(rule.ticket_types)
        model.ticket_channels = sorted(rule.ticket_channels)
        model.priorities = sorted(rule.priorities)
        model.is_vip_override = rule.is_vip_override
        model.business_hours_schedule_id = rule.business_hours_schedule_id
        model.holiday_calendar_id = rule.holiday_calendar_id
        model.allow_pause_resume = rule.allow_pause_resume
        model.pause_conditions = [
            {"kind": c.kind.value, "statuses": sorted(c.statuses), "require_reason": c.require_reason}
            for c in rule.pause_conditions
        ]
        model.status = rule.status.value
        model.updated_at = datetime.now(timezone.utc)

        await self._session.flush()
        return rule


class SQLAlchemyBusinessCalendarRepository(IBusinessCalendarRepository):
    """Schedules and holiday calendars, loaded with their children."""

    def __init__(self, session: AsyncSession):
        self._session = session

    @_guarded
    async def get_schedule(self, schedule_id: str) -> Optional[BusinessHoursSchedule]:
        model = await self._session.get(BusinessHoursScheduleModel, schedule_id)
        return _schedule_to_domain(model) if model else None

    @_guarded
    async def get_schedule_by_name(self, name: str) -> Optional[BusinessHoursSchedule]:
        stmt = select(BusinessHoursScheduleModel).where(BusinessHoursScheduleModel.name == name)
        model = (await self._session.execute(stmt)).scalar_one_or_none()
        return _schedule_to_domain(model) if model else None

    @_guarded
    async def save_schedule(self, schedule: BusinessHoursSchedule) -> BusinessHoursSchedule:
        model = await self._session.get(BusinessHoursScheduleModel, schedule.id)
        if model is None:
            model = BusinessHoursScheduleModel(id=schedule.id, details=[], breaks=[])
            self._session.add(model)

        model.name = schedule.name
        model.is_24x7 = schedule.is_24x7
        model.timezone = schedule.timezone
        model.status = schedule.status.value

        # (schedule_id, day_of_week) is unique: update rows in place
        by_day = {d.day_of_week: d for d in model.details}
        wanted = {d.day_of_week for d in schedule.details}
        for detail in schedule.details:
            row = by_day.get(detail.day_of_week)
            if row is None:
                row = BusinessHoursDetailModel(day_of_week=detail.day_of_week)
                model.details.append(row)
            row.is_working_day = detail.is_working_day
            row.start_time = detail.start_time
            row.end_time = detail.end_time
        for day, row in by_day.items():
            if day not in wanted:
                model.details.remove(row)

        model.breaks = [
            BreakHoursModel(
                name=b.name,
                start_time=b.start_time,
                end_time=b.end_time,
                applies_to_days=sorted(b.applies_to_days),
                status=b.status.value,
            )
            for b in schedule.breaks
        ]

        await self._session.flush()
        return schedule

    @_guarded
    async def get_calendar(self, calendar_id: str) -> Optional[HolidayCalendar]:
        model = await self._session.get(HolidayCalendarModel, calendar_id)
        return _calendar_to_domain(model) if model else None

    @_guarded
    async def get_calendar_by_name(self, name: str) -> Optional[HolidayCalendar]:
        stmt = select(HolidayCalendarModel).where(HolidayCalendarModel.name == name)
        model = (await self._session.execute(stmt)).scalar_one_or_none()
        return _calendar_to_domain(model) if model else None

    @_guarded
    async def save_calendar(self, calendar: HolidayCalendar) -> HolidayCalendar:
        model = await self._session.get(HolidayCalendarModel, calendar.id)
        if model is None:
            model = HolidayCalendarModel(id=calendar.id, holidays=[])
            self._session.add(model)

        model.name = calendar.name
        model.year = calendar.year
        model.status = calendar.status.value
        model.holidays = [
            HolidayDateModel(
                holiday_date=h.holiday_date,
                name=h.name,
                is_full_day=h.is_full_day,
                start_time=h.start_time,
                end_time=h.end_time,
                is_recurring=h.is_recurring,
            )
            for h in calendar.holidays
        ]

        await self._session.flush()
        return calendar


class SQLAlchemySlaTrackingRepository(ISlaTrackingRepository):
    """
    SQLAlchemy implementation of tracking repository.

    ``update`` is a compare-and-set on ``version``.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    def _select(self):
        return select(SlaTrackingModel).execution_options(populate_existing=True)

    @_guarded
    async def get(self, tracking_id: str) -> Optional[SlaTracking]:
        stmt = self._select().where(SlaTrackingModel.id == tracking_id)
        model = (await self._session.execute(stmt)).scalar_one_or_none()
        return _tracking_to_domain(model) if model else None

    @_guarded
    async def get_by_ticket(self, ticket_id: str) -> Optional[SlaTracking]:
        stmt = self._select().where(SlaTrackingModel.ticket_id == ticket_id)
        model = (await self._session.execute(stmt)).scalar_one_or_none()
        return _tracking_to_domain(model) if model else None

    @_guarded
    async def add(self, tracking: SlaTracking) -> SlaTracking:
        if await self.get_by_ticket(tracking.ticket_id) is not None:
            raise AlreadyTrackedError(tracking.ticket_id)

        model = SlaTrackingModel(
            id=tracking.id,
            ticket_id=tracking.ticket_id,
            sla_rule_id=tracking.sla_rule_id,
            sla_start_time=tracking.sla_start_time,
            min_target_time=tracking.min_target_time,
            avg_target_time=tracking.avg_target_time,
            max_target_time=tracking.max_target_time,
            min_tat_minutes=tracking.min_tat_minutes,
            avg_tat_minutes=tracking.avg_tat_minutes,
            max_tat_minutes=tracking.max_tat_minutes,
            version=tracking.version,
            created_at=tracking.created_at,
            **_tracking_values(tracking),
        )
        self._session.add(model)
        try:
            await self._session.flush()
        except IntegrityError as e:
            # lost a race on the unique ticket_id
            raise AlreadyTrackedError(tracking.ticket_id) from e
        return tracking

    @_guarded
    async def update(self, tracking: SlaTracking, expected_version: int) -> SlaTracking:
        stmt = (
            update(SlaTrackingModel)
            .where(
                SlaTrackingModel.id == tracking.id,
                SlaTrackingModel.version == expected_version,
            )
            .values(version=expected_version + 1, **_tracking_values(tracking))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            raise ConcurrentModificationError("SlaTracking", tracking.id, expected_version)

        tracking.version = expected_version + 1
        return tracking

    @_guarded
    async def list_open(self, include_paused: bool = True) -> List[SlaTracking]:
        stmt = self._select().where(SlaTrackingModel.resolved_at.is_(None))
        if not include_paused:
            stmt = stmt.where(SlaTrackingModel.is_paused.is_(False))
        stmt = stmt.order_by(SlaTrackingModel.sla_start_time)
        result = await self._session.execute(stmt)
        return [_tracking_to_domain(m) for m in result.scalars().all()]

    @_guarded
    async def list_created_between(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[SlaTracking]:
        stmt = self._select()
        if start is not None:
            stmt = stmt.where(SlaTrackingModel.sla_start_time >= start)
        if end is not None:
            stmt = stmt.where(SlaTrackingModel.sla_start_time <= end)
        result = await self._session.execute(stmt.order_by(SlaTrackingModel.sla_start_time))
        return [_tracking_to_domain(m) for m in result.scalars().all()]


class SQLAlchemyPauseLogRepository(IPauseLogRepository):
    """Append-only pause log."""

    def __init__(self, session: AsyncSession):
        self._session = session

    @_guarded
    async def append(self, entry: PauseLogEntry) -> PauseLogEntry:
        self._session.add(PauseLogModel(
            id=entry.id,
            tracking_id=entry.tracking_id,
            action=entry.action.value,
            action_at=entry.action_at,
            ticket_status=entry.ticket_status,
            reason=entry.reason,
            paused_duration_minutes=entry.paused_duration_minutes,
            created_by=entry.created_by,
        ))
        await self._session.flush()
        return entry

    @_guarded
    async def list_for_tracking(self, tracking_id: str) -> List[PauseLogEntry]:
        stmt = (
            select(PauseLogModel)
            .where(PauseLogModel.tracking_id == tracking_id)
            .order_by(PauseLogModel.action_at)
        )
        result = await self._session.execute(stmt)
        return [_pause_entry_to_domain(m) for m in result.scalars().all()]


class SQLAlchemyEscalationRepository(IEscalationRepository):
    """Escalation rules plus the escalation ledger."""

    def __init__(self, session: AsyncSession):
        self._session = session

    @_guarded
    async def list_rules(self, sla_rule_id: str, active_only: bool = True) -> List[EscalationRule]:
        stmt = select(EscalationRuleModel).where(EscalationRuleModel.sla_rule_id == sla_rule_id)
        if active_only:
            stmt = stmt.where(EscalationRuleModel.status == LifecycleStatus.ACTIVE.value)
        stmt = stmt.order_by(EscalationRuleModel.escalation_level)
        result = await self._session.execute(stmt)
        return [_escalation_rule_to_domain(m) for m in result.scalars().all()]

    @_guarded
    async def get_rule(self, escalation_rule_id: str) -> Optional[EscalationRule]:
        model = await self._session.get(EscalationRuleModel, escalation_rule_id)
        return _escalation_rule_to_domain(model) if model else None

    @_guarded
    async def save_rule(self, rule: EscalationRule) -> EscalationRule:
        model = await self._session.get(EscalationRuleModel, rule.id)
        if model is None:
            model = EscalationRuleModel(id=rule.id)
            self._session.add(model)

        model.sla_rule_id = rule.sla_rule_id
        model.escalation_level = rule.escalation_level
        model.trigger_type = rule.trigger_type.value
        model.reference_threshold = rule.reference_threshold.value
        model.trigger_offset_minutes = rule.trigger_offset_minutes
        model.repeat_interval_minutes = rule.repeat_interval_minutes
        model.max_repeat_count = rule.max_repeat_count
        model.recipient = rule.recipient.to_dict()
        model.escalation_type = rule.escalation_type.value
        model.notification_template = rule.notification_template
        model.include_ticket_details = rule.include_ticket_details
        model.status = rule.status.value

        await self._session.flush()
        return rule

    @_guarded
    async def history(self, tracking_id: str, escalation_level: int) -> List[EscalationNotification]:
        stmt = (
            select(EscalationNotificationModel)
            .where(
                EscalationNotificationModel.tracking_id == tracking_id,
                EscalationNotificationModel.escalation_level == escalation_level,
            )
            .order_by(EscalationNotificationModel.fired_at)
        )
        result = await self._session.execute(stmt)
        return [_notification_to_domain(m) for m in result.scalars().all()]

    @_guarded
    async def append(self, notification: EscalationNotification) -> EscalationNotification:
        self._session.add(EscalationNotificationModel(
            id=notification.id,
            tracking_id=notification.tracking_id,
            escalation_rule_id=notification.escalation_rule_id,
            escalation_level=notification.escalation_level,
            trigger_type=notification.trigger_type.value,
            recipients=notification.recipients,
            repeat_count=notification.repeat_count,
            fired_at=notification.fired_at,
            delivery_status=notification.delivery_status.value,
            delivered_at=notification.delivered_at,
            error_message=notification.error_message,
        ))
        await self._session.flush()
        return notification

    @_guarded
    async def list_for_tracking(self, tracking_id: str) -> List[EscalationNotification]:
        stmt = (
            select(EscalationNotificationModel)
            .where(EscalationNotificationModel.tracking_id == tracking_id)
            .order_by(EscalationNotificationModel.fired_at)
        )
        result = await self._session.execute(stmt)
        return [_notification_to_domain(m) for m in result.scalars().all()]

    @_guarded
    async def list_pending(self, limit: int = 100) -> List[EscalationNotification]:
        stmt = (
            select(EscalationNotificationModel)
            .where(EscalationNotificationModel.delivery_status == DeliveryStatus.PENDING.value)
            .order_by(EscalationNotificationModel.fired_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [_notification_to_domain(m) for m in result.scalars().all()]

    @_guarded
    async def update_delivery(self, notification: EscalationNotification) -> None:
        stmt = (
            update(EscalationNotificationModel)
            .where(EscalationNotificationModel.id == notification.id)
            .values(
                delivery_status=notification.delivery_status.value,
                delivered_at=notification.delivered_at,
                error_message=notification.error_message,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)


# ========== Unit of work ==========

def repositories_for_session(session: AsyncSession) -> SlaRepositories:
    """Bundle all SLA repositories over one session."""
    return SlaRepositories(
        rules=SQLAlchemySlaRuleRepository(session),
        calendars=SQLAlchemyBusinessCalendarRepository(session),
        trackings=SQLAlchemySlaTrackingRepository(session),
        pause_log=SQLAlchemyPauseLogRepository(session),
        escalations=SQLAlchemyEscalationRepository(session),
    )


@asynccontextmanager
async def sqlalchemy_repositories() -> AsyncIterator[SlaRepositories]:
    """
    Open one persistence unit for background work.

    Committed when the block exits cleanly, rolled back otherwise.
    """
    async with get_session_context() as session:
        yield repositories_for_session(session)
