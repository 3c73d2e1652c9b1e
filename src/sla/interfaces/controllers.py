"""
SLA Controllers (API Routes)
=============================

FastAPI routes for SLA tracking endpoints.

Controllers are thin - they delegate to application services. Domain
errors propagate to the ``ApplicationException`` handler, which maps them
to status codes.
"""

from typing import List, Optional
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.infrastructure.database import get_session
from src.sla.application import (
    Clock, utc_now, SlaRepositories, SlaTracker, SlaTicketIntegration,
    SlaReportingService, EscalationEngine, SlaMonitoringJob,
)
from src.sla.application.dto import (
    TicketContextDTO, PauseRequest, ResumeRequest, StopRequest, StatusChangeRequest,
    TrackingResponse, TicketSlaResponse, TrackingListResponse, PauseLogResponse,
    EscalationNotificationResponse, MetricsResponse, SweepReportResponse,
    MonitoringStatusResponse,
)
from src.sla.infrastructure.repositories import repositories_for_session
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/sla", tags=["SLA Tracking"])


# ========== Example payloads for Swagger ==========

TICKET_CONTEXT_EXAMPLE = {
    "priority": "p1",
    "ticket_type": "incident",
    "channel": "email",
    "user_category": "employee",
    "is_vip": False,
    "asset_categories": ["laptop"],
    "asset_importances": ["high"],
    "ticket_number": "INC-10042",
    "title": "Laptop does not boot",
    "assigned_engineer_id": "ENG-7"
}

METRICS_EXAMPLE = {
    "total_tickets": 120,
    "on_track_count": 80,
    "warning_count": 20,
    "critical_count": 8,
    "breached_count": 12,
    "paused_count": 5,
    "resolved_count": 90,
    "resolved_within_sla": 84,
    "compliance_rate": 93.33,
    "avg_elapsed_minutes": 212.4,
    "avg_paused_minutes": 18.0
}


# ========== Dependencies ==========

def get_clock() -> Clock:
    """Time source; overridden in tests."""
    return utc_now


async def get_repositories(session: AsyncSession = Depends(get_session)) -> SlaRepositories:
    """One persistence unit per request."""
    return repositories_for_session(session)


async def get_tracker(
    repos: SlaRepositories = Depends(get_repositories),
    clock: Clock = Depends(get_clock)
) -> SlaTracker:
    return SlaTracker(repos, clock=clock)


async def get_integration(
    repos: SlaRepositories = Depends(get_repositories),
    clock: Clock = Depends(get_clock)
) -> SlaTicketIntegration:
    return SlaTicketIntegration(repos, clock=clock)


async def get_reporting(repos: SlaRepositories = Depends(get_repositories)) -> SlaReportingService:
    return SlaReportingService(repos)


def get_escalation_engine(request: Request) -> EscalationEngine:
    engine = getattr(request.app.state, "escalation_engine", None)
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Escalation engine not initialized")
    return engine


def get_monitoring_job(request: Request) -> SlaMonitoringJob:
    job = getattr(request.app.state, "monitoring_job", None)
    if job is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Monitoring job not initialized")
    return job


# ========== Ticket tracking ==========

@router.post(
    "/tickets/{ticket_id}/tracking",
    response_model=TrackingResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start SLA tracking for a ticket",
    description="""
    Ticket-create hook. Matches the ticket against the active SLA rules and
    computes min/avg/max deadlines in business time.

    - **422** no SLA rule matches the ticket
    - **409** the ticket is already tracked
    """,
    responses={
        201: {"description": "Tracking started"},
        409: {"description": "Ticket already tracked"},
        422: {"description": "No SLA rule matches"},
    },
    openapi_extra={"requestBody": {"content": {"application/json": {"example": TICKET_CONTEXT_EXAMPLE}}}}
)
async def start_tracking(
    ticket_id: str,
    body: TicketContextDTO,
    tracker: SlaTracker = Depends(get_tracker)
):
    tracking = await tracker.initialize(ticket_id, body.to_domain(ticket_id))
    return TrackingResponse.from_domain(tracking)


@router.get(
    "/tickets/{ticket_id}",
    response_model=TicketSlaResponse,
    summary="Get ticket SLA status",
    description="Current tracking record and display snapshot. Untracked tickets return `tracked: false`."
)
async def get_ticket_sla(ticket_id: str, tracker: SlaTracker = Depends(get_tracker)):
    tracking = await tracker.get_tracking(ticket_id)
    if tracking is None:
        return TicketSlaResponse(ticket_id=ticket_id, tracked=False)
    return TicketSlaResponse(
        ticket_id=ticket_id,
        tracked=True,
        tracking=TrackingResponse.from_domain(tracking)
    )


@router.post(
    "/tickets/{ticket_id}/refresh",
    response_model=TrackingResponse,
    summary="Recompute elapsed business time"
)
async def refresh_ticket(ticket_id: str, tracker: SlaTracker = Depends(get_tracker)):
    return TrackingResponse.from_domain(await tracker.update_elapsed(ticket_id))


@router.post(
    "/tickets/{ticket_id}/pause",
    response_model=TrackingResponse,
    summary="Pause the SLA timer",
    responses={
        409: {"description": "Already paused, or concurrent modification"},
        422: {"description": "Pause not allowed by the SLA rule"},
    }
)
async def pause_ticket(
    ticket_id: str,
    body: PauseRequest,
    tracker: SlaTracker = Depends(get_tracker)
):
    tracking = await tracker.pause(
        ticket_id,
        reason=body.reason,
        actor_id=body.actor_id,
        ticket_status=body.ticket_status,
    )
    return TrackingResponse.from_domain(tracking)


@router.post(
    "/tickets/{ticket_id}/resume",
    response_model=TrackingResponse,
    summary="Resume the SLA timer",
    responses={409: {"description": "Timer is not paused"}}
)
async def resume_ticket(
    ticket_id: str,
    body: Optional[ResumeRequest] = None,
    tracker: SlaTracker = Depends(get_tracker)
):
    body = body or ResumeRequest()
    tracking = await tracker.resume(ticket_id, actor_id=body.actor_id, ticket_status=body.ticket_status)
    return TrackingResponse.from_domain(tracking)


@router.post(
    "/tickets/{ticket_id}/stop",
    response_model=TrackingResponse,
    summary="Stop SLA tracking (ticket closed or cancelled)",
    description="Idempotent: stopping a stopped tracking returns it unchanged."
)
async def stop_ticket(
    ticket_id: str,
    body: Optional[StopRequest] = None,
    tracker: SlaTracker = Depends(get_tracker)
):
    body = body or StopRequest()
    return TrackingResponse.from_domain(await tracker.stop(ticket_id, final_status=body.final_status))


@router.post(
    "/tickets/{ticket_id}/status-change",
    response_model=TicketSlaResponse,
    summary="Ticket status-change hook",
    description="""
    Pauses on `pending_closure`, `awaiting_info`, `on_hold` (plus statuses
    named by the rule's pause conditions), resumes when leaving them, and
    stops on `resolved`, `closed` or `cancelled`.
    """
)
async def ticket_status_changed(
    ticket_id: str,
    body: StatusChangeRequest,
    integration: SlaTicketIntegration = Depends(get_integration)
):
    tracking = await integration.on_status_changed(
        ticket_id, body.old_status, body.new_status, actor_id=body.actor_id
    )
    if tracking is None:
        return TicketSlaResponse(ticket_id=ticket_id, tracked=False)
    return TicketSlaResponse(ticket_id=ticket_id, tracked=True, tracking=TrackingResponse.from_domain(tracking))


@router.get(
    "/tickets/{ticket_id}/pause-history",
    response_model=List[PauseLogResponse],
    summary="Pause/resume log for a ticket"
)
async def get_pause_history(ticket_id: str, tracker: SlaTracker = Depends(get_tracker)):
    entries = await tracker.get_pause_history(ticket_id)
    return [PauseLogResponse.from_domain(e) for e in entries]


@router.get(
    "/tickets/{ticket_id}/escalations",
    response_model=List[EscalationNotificationResponse],
    summary="Escalation ledger for a ticket"
)
async def get_ticket_escalations(
    ticket_id: str,
    engine: EscalationEngine = Depends(get_escalation_engine)
):
    notifications = await engine.get_escalation_history(ticket_id)
    return [EscalationNotificationResponse.from_domain(n) for n in notifications]


# ========== Reports ==========

@router.get(
    "/breached",
    response_model=TrackingListResponse,
    summary="Open tickets past their max TAT"
)
async def get_breached(reporting: SlaReportingService = Depends(get_reporting)):
    views = await reporting.get_breached()
    return TrackingListResponse(items=[TrackingResponse.from_domain(v.tracking) for v in views], count=len(views))


@router.get(
    "/approaching-breach",
    response_model=TrackingListResponse,
    summary="Open tickets close to their max TAT"
)
async def get_approaching_breach(
    threshold_minutes: Optional[int] = Query(
        None, ge=1, description="Business minutes before max TAT (default from settings)"
    ),
    reporting: SlaReportingService = Depends(get_reporting)
):
    threshold = threshold_minutes or settings.sla_approaching_breach_minutes
    views = await reporting.get_approaching_breach(threshold)
    return TrackingListResponse(items=[TrackingResponse.from_domain(v.tracking) for v in views], count=len(views))


@router.get(
    "/metrics",
    response_model=MetricsResponse,
    summary="Aggregate SLA metrics",
    responses={200: {"content": {"application/json": {"example": METRICS_EXAMPLE}}}}
)
async def get_metrics(
    start: Optional[datetime] = Query(None, description="Only trackings started at or after"),
    end: Optional[datetime] = Query(None, description="Only trackings started at or before"),
    rule_id: Optional[str] = Query(None, description="Restrict to one SLA rule"),
    reporting: SlaReportingService = Depends(get_reporting)
):
    return MetricsResponse(**await reporting.get_metrics(start, end, rule_id))


# ========== Monitoring ==========

@router.post(
    "/monitoring/run",
    response_model=SweepReportResponse,
    summary="Run one monitoring sweep now",
    description="Skipped (not queued) when a sweep is already in progress."
)
async def run_monitoring(job: SlaMonitoringJob = Depends(get_monitoring_job)):
    report = await job.run()
    return SweepReportResponse(**report.to_dict())


@router.get(
    "/monitoring/status",
    response_model=MonitoringStatusResponse,
    summary="Monitoring scheduler status"
)
async def monitoring_status(request: Request, job: SlaMonitoringJob = Depends(get_monitoring_job)):
    scheduler = getattr(request.app.state, "monitoring_scheduler", None)
    if scheduler is not None:
        return MonitoringStatusResponse(**scheduler.get_status())

    report = job.last_report
    return MonitoringStatusResponse(
        is_running=False,
        sweep_in_progress=job.is_running,
        interval_seconds=settings.sla_monitoring_interval_seconds,
        last_run_at=job.last_run_at,
        last_report=SweepReportResponse(**report.to_dict()) if report else None,
    )


# Export router for inclusion in main app
sla_router = router
