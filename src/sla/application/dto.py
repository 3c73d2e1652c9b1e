"""
SLA Application DTOs
=====================

Data Transfer Objects for the SLA API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime

from src.config import SlaStatus, SlaZone, TrackingState, PauseAction, TriggerType, DeliveryStatus
from src.sla.domain import (
    TicketContext, SlaTracking, PauseLogEntry, EscalationNotification, SlaStatusSnapshot,
)


ImportanceStr = Literal["critical", "high", "medium", "low"]


# ========== Request DTOs ==========

class TicketContextDTO(BaseModel):
    """Ticket attributes used for SLA rule matching."""
    priority: Optional[str] = Field(None, description="Ticket priority, e.g. p1")
    ticket_type: str = Field(default="incident", description="Ticket type")
    channel: str = Field(default="portal", description="Intake channel")
    user_category: Optional[str] = Field(None, description="Requester category")
    is_vip: bool = Field(default=False, description="Requester is a VIP")
    asset_categories: List[str] = Field(default_factory=list, description="Categories of linked assets")
    asset_importances: List[ImportanceStr] = Field(
        default_factory=list,
        description="Importance of each linked asset; the highest is used"
    )
    ticket_number: Optional[str] = Field(None, description="Human-readable ticket number")
    title: Optional[str] = None
    assigned_engineer_id: Optional[str] = None

    @field_validator("priority", "ticket_type", "channel", "user_category")
    @classmethod
    def normalize(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().lower() if v else v

    def to_domain(self, ticket_id: str) -> TicketContext:
        return TicketContext(
            ticket_id=ticket_id,
            priority=self.priority,
            ticket_type=self.ticket_type,
            channel=self.channel,
            user_category=self.user_category,
            is_vip=self.is_vip,
            asset_categories=frozenset(c.lower() for c in self.asset_categories),
            asset_importances=tuple(self.asset_importances),
            ticket_number=self.ticket_number,
            title=self.title,
            assigned_engineer_id=self.assigned_engineer_id,
        )


class PauseRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500, description="Why the timer is paused")
    actor_id: Optional[str] = Field(None, description="User pausing the timer")
    ticket_status: str = Field(
        default="manual",
        description="Ticket status causing the pause; 'manual' for a human-triggered pause"
    )


class ResumeRequest(BaseModel):
    actor_id: Optional[str] = None
    ticket_status: str = Field(default="manual")


class StopRequest(BaseModel):
    final_status: Optional[str] = Field(
        None,
        description="Explicit final status; derived from elapsed time when omitted"
    )


class StatusChangeRequest(BaseModel):
    """Ticket status transition forwarded by the ticket service."""
    old_status: Optional[str] = None
    new_status: str = Field(..., min_length=1)
    actor_id: Optional[str] = None


# ========== Response DTOs ==========

class SlaSnapshotResponse(BaseModel):
    status: SlaStatus
    zone: SlaZone
    elapsed_minutes: int
    percent_used: int
    remaining_minutes: int
    overage_minutes: int
    remaining_display: str

    @classmethod
    def from_domain(cls, snapshot: SlaStatusSnapshot) -> "SlaSnapshotResponse":
        return cls(
            status=snapshot.status,
            zone=snapshot.zone,
            elapsed_minutes=snapshot.elapsed_minutes,
            percent_used=snapshot.percent_used,
            remaining_minutes=snapshot.remaining_minutes,
            overage_minutes=snapshot.overage_minutes,
            remaining_display=snapshot.remaining_display,
        )


class TrackingResponse(BaseModel):
    """Response model for one SLA tracking record."""
    id: str
    ticket_id: str
    sla_rule_id: str
    state: TrackingState
    sla_status: SlaStatus

    sla_start_time: datetime
    min_target_time: datetime
    avg_target_time: datetime
    max_target_time: datetime
    min_tat_minutes: int
    avg_tat_minutes: int
    max_tat_minutes: int

    business_elapsed_minutes: int
    total_elapsed_minutes: int
    total_paused_minutes: int

    is_paused: bool
    pause_started_at: Optional[datetime] = None
    current_pause_reason: Optional[str] = None
    warning_triggered_at: Optional[datetime] = None
    breach_triggered_at: Optional[datetime] = None
    last_calculated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    final_status: Optional[str] = None
    version: int

    snapshot: SlaSnapshotResponse

    @classmethod
    def from_domain(cls, tracking: SlaTracking) -> "TrackingResponse":
        return cls(
            id=tracking.id,
            ticket_id=tracking.ticket_id,
            sla_rule_id=tracking.sla_rule_id,
            state=tracking.state,
            sla_status=tracking.sla_status,
            sla_start_time=tracking.sla_start_time,
            min_target_time=tracking.min_target_time,
            avg_target_time=tracking.avg_target_time,
            max_target_time=tracking.max_target_time,
            min_tat_minutes=tracking.min_tat_minutes,
            avg_tat_minutes=tracking.avg_tat_minutes,
            max_tat_minutes=tracking.max_tat_minutes,
            business_elapsed_minutes=tracking.business_elapsed_minutes,
            total_elapsed_minutes=tracking.total_elapsed_minutes,
            total_paused_minutes=tracking.total_paused_minutes,
            is_paused=tracking.is_paused,
            pause_started_at=tracking.pause_started_at,
            current_pause_reason=tracking.current_pause_reason,
            warning_triggered_at=tracking.warning_triggered_at,
            breach_triggered_at=tracking.breach_triggered_at,
            last_calculated_at=tracking.last_calculated_at,
            resolved_at=tracking.resolved_at,
            final_status=tracking.final_status,
            version=tracking.version,
            snapshot=SlaSnapshotResponse.from_domain(SlaStatusSnapshot.from_tracking(tracking)),
        )


class TicketSlaResponse(BaseModel):
    """SLA view of a ticket; ``tracked`` is false for untracked tickets."""
    ticket_id: str
    tracked: bool
    tracking: Optional[TrackingResponse] = None


class TrackingListResponse(BaseModel):
    items: List[TrackingResponse]
    count: int


class PauseLogResponse(BaseModel):
    id: str
    action: PauseAction
    action_at: datetime
    ticket_status: str
    reason: Optional[str] = None
    paused_duration_minutes: Optional[int] = None
    created_by: Optional[str] = None

    @classmethod
    def from_domain(cls, entry: PauseLogEntry) -> "PauseLogResponse":
        return cls(
            id=entry.id,
            action=entry.action,
            action_at=entry.action_at,
            ticket_status=entry.ticket_status,
            reason=entry.reason,
            paused_duration_minutes=entry.paused_duration_minutes,
            created_by=entry.created_by,
        )


class EscalationNotificationResponse(BaseModel):
    id: str
    escalation_rule_id: str
    escalation_level: int
    trigger_type: TriggerType
    recipients: Dict[str, Any]
    repeat_count: int
    fired_at: datetime
    delivery_status: DeliveryStatus
    delivered_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @classmethod
    def from_domain(cls, notification: EscalationNotification) -> "EscalationNotificationResponse":
        return cls(
            id=notification.id,
            escalation_rule_id=notification.escalation_rule_id,
            escalation_level=notification.escalation_level,
            trigger_type=notification.trigger_type,
            recipients=notification.recipients,
            repeat_count=notification.repeat_count,
            fired_at=notification.fired_at,
            delivery_status=notification.delivery_status,
            delivered_at=notification.delivered_at,
            error_message=notification.error_message,
        )


class MetricsResponse(BaseModel):
    """Aggregate SLA figures."""
    total_tickets: int
    on_track_count: int
    warning_count: int
    critical_count: int
    breached_count: int
    paused_count: int
    resolved_count: int
    resolved_within_sla: int
    compliance_rate: Optional[float] = Field(None, description="Percent of resolved tickets not breached")
    avg_elapsed_minutes: float
    avg_paused_minutes: float


class SweepReportResponse(BaseModel):
    status: str
    skipped: bool
    reason: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: float = 0.0
    trackings_updated: int = 0
    tracking_errors: int = 0
    escalations_triggered: int = 0
    escalation_errors: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    errors: List[str] = Field(default_factory=list)


class MonitoringStatusResponse(BaseModel):
    is_running: bool
    sweep_in_progress: bool
    interval_seconds: int
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    last_report: Optional[SweepReportResponse] = None
