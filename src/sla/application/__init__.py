"""
SLA Application Layer
======================

Application layer for SLA tracking and escalation.

Contains:
- SlaTracker: per-ticket pause/resume state machine
- EscalationEngine: escalation firing and notification flush
- SlaMonitoringJob: body of the periodic sweep
- SlaTicketIntegration: ticket lifecycle hooks
- SlaReportingService: breached / approaching-breach lists and metrics
- Rule catalog: YAML schema and sync
- Repository and notification interfaces (ports)
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from src.sla.application.services import (
    Clock,
    utc_now,
    ISlaRuleRepository,
    IBusinessCalendarRepository,
    ISlaTrackingRepository,
    IPauseLogRepository,
    IEscalationRepository,
    SlaRepositories,
    RepositoriesFactory,
    NotificationRequest,
    INotificationDispatcher,
)
from src.sla.application.tracker import SlaTracker
from src.sla.application.escalation import (
    EscalationEngine,
    EscalationResult,
    DeliveryResult,
    should_fire,
    trigger_point,
)
from src.sla.application.monitoring import SlaMonitoringJob, SweepReport
from src.sla.application.integration import SlaTicketIntegration
from src.sla.application.reporting import SlaReportingService, TrackingView
from src.sla.application.catalog import RuleCatalog, parse_catalog, load_catalog, sync_catalog

__all__ = [
    # Ports
    "Clock",
    "utc_now",
    "ISlaRuleRepository",
    "IBusinessCalendarRepository",
    "ISlaTrackingRepository",
    "IPauseLogRepository",
    "IEscalationRepository",
    "SlaRepositories",
    "RepositoriesFactory",
    "NotificationRequest",
    "INotificationDispatcher",
    # Services
    "SlaTracker",
    "EscalationEngine",
    "EscalationResult",
    "DeliveryResult",
    "should_fire",
    "trigger_point",
    "SlaMonitoringJob",
    "SweepReport",
    "SlaTicketIntegration",
    "SlaReportingService",
    "TrackingView",
    # Catalog
    "RuleCatalog",
    "parse_catalog",
    "load_catalog",
    "sync_catalog",
]
