"""
SLA Infrastructure Layer
=========================

Infrastructure implementations for SLA tracking:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer and persistence units
- External: rule catalog watcher, notification dispatchers
- Scheduler: APScheduler-driven monitoring sweep
"""

from src.sla.infrastructure.repositories import (
    SQLAlchemySlaRuleRepository,
    SQLAlchemyBusinessCalendarRepository,
    SQLAlchemySlaTrackingRepository,
    SQLAlchemyPauseLogRepository,
    SQLAlchemyEscalationRepository,
    repositories_for_session,
    sqlalchemy_repositories,
)
from src.sla.infrastructure.external import (
    RuleCatalogManager,
    CircuitBreaker,
    WebhookNotificationDispatcher,
    LoggingNotificationDispatcher,
    build_dispatcher,
)
from src.sla.infrastructure.scheduler import SlaMonitoringScheduler

__all__ = [
    "SQLAlchemySlaRuleRepository",
    "SQLAlchemyBusinessCalendarRepository",
    "SQLAlchemySlaTrackingRepository",
    "SQLAlchemyPauseLogRepository",
    "SQLAlchemyEscalationRepository",
    "repositories_for_session",
    "sqlalchemy_repositories",
    "RuleCatalogManager",
    "CircuitBreaker",
    "WebhookNotificationDispatcher",
    "LoggingNotificationDispatcher",
    "build_dispatcher",
    "SlaMonitoringScheduler",
]
