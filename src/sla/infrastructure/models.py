"""
SLA Infrastructure Models
==========================

SQLAlchemy ORM models for SLA module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import date, datetime, time, timezone
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, Time,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.infrastructure.database import Base
from src.config import LifecycleStatus, SlaStatus, DeliveryStatus, EscalationType, ReferenceThreshold


def _uuid() -> str:
    return str(uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ========== Business Calendar ==========

class BusinessHoursScheduleModel(Base):
    """Maps to the 'business_hours_schedules' table."""
    __tablename__ = "business_hours_schedules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    is_24x7: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=LifecycleStatus.ACTIVE.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    details: Mapped[List["BusinessHoursDetailModel"]] = relationship(
        back_populates="schedule", cascade="all, delete-orphan", lazy="selectin",
        order_by="BusinessHoursDetailModel.day_of_week",
    )
    breaks: Mapped[List["BreakHoursModel"]] = relationship(
        back_populates="schedule", cascade="all, delete-orphan", lazy="selectin",
    )


class BusinessHoursDetailModel(Base):
    """Maps to the 'business_hours_details' table. day_of_week: 0 = Sunday."""
    __tablename__ = "business_hours_details"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    schedule_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("business_hours_schedules.id", ondelete="CASCADE"), nullable=False
    )
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    is_working_day: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    start_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    end_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)

    schedule: Mapped[BusinessHoursScheduleModel] = relationship(back_populates="details")

    __table_args__ = (
        UniqueConstraint("schedule_id", "day_of_week", name="uq_business_hours_day"),
    )


class BreakHoursModel(Base):
    """Maps to the 'break_hours' table."""
    __tablename__ = "break_hours"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    schedule_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("business_hours_schedules.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    applies_to_days: Mapped[list] = mapped_column(JSON, nullable=False, default=list)  # [] = every day
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=LifecycleStatus.ACTIVE.value)

    schedule: Mapped[BusinessHoursScheduleModel] = relationship(back_populates="breaks")


class HolidayCalendarModel(Base):
    """Maps to the 'holiday_calendars' table."""
    __tablename__ = "holiday_calendars"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=LifecycleStatus.ACTIVE.value)

    holidays: Mapped[List["HolidayDateModel"]] = relationship(
        back_populates="calendar", cascade="all, delete-orphan", lazy="selectin",
        order_by="HolidayDateModel.holiday_date",
    )


class HolidayDateModel(Base):
    """Maps to the 'holiday_dates' table."""
    __tablename__ = "holiday_dates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    calendar_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("holiday_calendars.id", ondelete="CASCADE"), nullable=False
    )
    holiday_date: Mapped[date] = mapped_column(Date, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_full_day: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    start_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    end_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    calendar: Mapped[HolidayCalendarModel] = relationship(back_populates="holidays")


# ========== Rules ==========

class SlaRuleModel(Base):
    """
    Maps to the 'sla_rules' table.

    Predicate columns hold JSON lists of accepted values; [] = any.
    """
    __tablename__ = "sla_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    priority_order: Mapped[int] = mapped_column(Integer, nullable=False, default=100)

    min_tat_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    avg_tat_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    max_tat_minutes: Mapped[int] = mapped_column(Integer, nullable=False)

    asset_categories: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    asset_importance: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    user_categories: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    ticket_types: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    ticket_channels: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    priorities: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    is_vip_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    business_hours_schedule_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("business_hours_schedules.id"), nullable=True
    )
    holiday_calendar_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("holiday_calendars.id"), nullable=True
    )
    allow_pause_resume: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    pause_conditions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=LifecycleStatus.ACTIVE.value, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class EscalationRuleModel(Base):
    """Maps to the 'escalation_rules' table."""
    __tablename__ = "escalation_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    sla_rule_id: Mapped[str] = mapped_column(String(36), ForeignKey("sla_rules.id"), nullable=False)
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False)
    trigger_type: Mapped[str] = mapped_column(String(30), nullable=False)
    reference_threshold: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ReferenceThreshold.MAX_TAT.value
    )
    trigger_offset_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    repeat_interval_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_repeat_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    recipient: Mapped[dict] = mapped_column(JSON, nullable=False)
    escalation_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EscalationType.HIERARCHICAL.value
    )
    notification_template: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    include_ticket_details: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=LifecycleStatus.ACTIVE.value)

    __table_args__ = (
        UniqueConstraint("sla_rule_id", "escalation_level", name="uq_escalation_rule_level"),
    )


# ========== Tracking ==========

class SlaTrackingModel(Base):
    """
    Maps to the 'ticket_sla_tracking' table.

    One row per ticket; ``version`` backs optimistic concurrency.
    """
    __tablename__ = "ticket_sla_tracking"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    ticket_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    sla_rule_id: Mapped[str] = mapped_column(String(36), ForeignKey("sla_rules.id"), nullable=False)

    sla_start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    min_target_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    avg_target_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    max_target_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    min_tat_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    avg_tat_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    max_tat_minutes: Mapped[int] = mapped_column(Integer, nullable=False)

    business_elapsed_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_elapsed_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_paused_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pause_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    current_pause_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    sla_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SlaStatus.ON_TRACK.value, index=True
    )
    warning_triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    breach_triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_calculated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    final_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    ticket_context: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class PauseLogModel(Base):
    """Maps to the append-only 'ticket_sla_pause_log' table."""
    __tablename__ = "ticket_sla_pause_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tracking_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("ticket_sla_tracking.id"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(String(10), nullable=False)
    action_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ticket_status: Mapped[str] = mapped_column(String(50), nullable=False, default="manual")
    reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    paused_duration_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)


class EscalationNotificationModel(Base):
    """Maps to the append-only 'escalation_notifications_log' table."""
    __tablename__ = "escalation_notifications_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tracking_id: Mapped[str] = mapped_column(String(36), ForeignKey("ticket_sla_tracking.id"), nullable=False)
    escalation_rule_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("escalation_rules.id"), nullable=False
    )
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False)
    trigger_type: Mapped[str] = mapped_column(String(30), nullable=False)
    recipients: Mapped[dict] = mapped_column(JSON, nullable=False)
    repeat_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    delivery_status: Mapped[str] = mapped_column(
        String(10), nullable=False, default=DeliveryStatus.PENDING.value, index=True
    )
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_escalation_log_tracking_level", "tracking_id", "escalation_level"),
    )
