"""
SLA Monitoring Job
==================

Body of one periodic sweep:

1. refresh elapsed time for every open, unpaused tracking
2. fire due escalations
3. flush pending notifications

Each step is isolated: a failure is recorded in the report and the later
steps still run. The job never raises.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from src.config import DeliveryStatus
from src.sla.application.services import RepositoriesFactory, Clock, utc_now
from src.sla.application.tracker import SlaTracker
from src.sla.application.escalation import EscalationEngine
from src.shared.infrastructure.logging import get_logger, log_latency

logger = get_logger(__name__)


@dataclass
class SweepReport:
    """Outcome of one monitoring sweep."""
    skipped: bool = False
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
    errors: List[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.skipped:
            return "skipped"
        if self.errors or self.tracking_errors or self.escalation_errors:
            return "completed_with_errors"
        return "success"

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "skipped": self.skipped,
            "reason": self.reason,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "trackings_updated": self.trackings_updated,
            "tracking_errors": self.tracking_errors,
            "escalations_triggered": self.escalations_triggered,
            "escalation_errors": self.escalation_errors,
            "notifications_sent": self.notifications_sent,
            "notifications_failed": self.notifications_failed,
            "errors": list(self.errors),
        }


class SlaMonitoringJob:
    """
    One sweep over all open trackings.

    Guarded by its own lock: a run that finds a sweep in progress returns a
    skipped report instead of queueing.

    ``before_sweep`` is an optional hook awaited before step 1 (the catalog
    sync uses it); its failure is recorded like any other step.
    """

    def __init__(
        self,
        repositories: RepositoriesFactory,
        escalation_engine: EscalationEngine,
        clock: Optional[Clock] = None,
        before_sweep: Optional[Callable[[], Awaitable[None]]] = None
    ):
        self._repositories = repositories
        self._escalations = escalation_engine
        self._clock = clock or utc_now
        self._before_sweep = before_sweep
        self._lock = asyncio.Lock()
        self.last_run_at: Optional[datetime] = None
        self.last_report: Optional[SweepReport] = None

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def run(self) -> SweepReport:
        if self._lock.locked():
            logger.warning("SLA monitoring sweep skipped: previous sweep still running")
            return SweepReport(skipped=True, reason="sweep already in progress")

        async with self._lock:
            report = SweepReport(started_at=self._clock())
            loop = asyncio.get_running_loop()
            started = loop.time()

            with log_latency(logger, "sla_monitoring_sweep"):
                if self._before_sweep is not None:
                    try:
                        await self._before_sweep()
                    except Exception as e:
                        report.errors.append(f"before_sweep: {e}")
                        logger.error("Pre-sweep hook failed", extra={"error": str(e)})

                await self._update_trackings(report)
                await self._process_escalations(report)
                await self._flush_notifications(report)

            report.completed_at = self._clock()
            report.duration_ms = round((loop.time() - started) * 1000, 2)
            self.last_run_at = report.completed_at
            self.last_report = report

            logger.info("SLA monitoring sweep finished", extra=report.to_dict())
            return report

    # ========== Steps ==========

    async def _update_trackings(self, report: SweepReport) -> None:
        try:
            async with self._repositories() as repos:
                trackings = await repos.trackings.list_open(include_paused=False)
        except Exception as e:
            report.errors.append(f"tracking_updates: {e}")
            logger.error("Listing open trackings failed", extra={"error": str(e)})
            return

        for tracking in trackings:
            try:
                async with self._repositories() as repos:
                    await SlaTracker(repos, clock=self._clock).update_elapsed(tracking.ticket_id)
                report.trackings_updated += 1
            except Exception as e:
                report.tracking_errors += 1
                logger.error(
                    "SLA elapsed update failed",
                    extra={
                        "ticket_id": tracking.ticket_id,
                        "tracking_id": tracking.id,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    }
                )

    async def _process_escalations(self, report: SweepReport) -> None:
        try:
            results = await self._escalations.process_pending_escalations()
        except Exception as e:
            report.errors.append(f"escalations: {e}")
            logger.error("Escalation processing step failed", extra={"error": str(e)})
            return

        report.escalations_triggered = sum(r.escalations_triggered for r in results)
        report.escalation_errors = sum(1 for r in results if r.error)

    async def _flush_notifications(self, report: SweepReport) -> None:
        try:
            results = await self._escalations.flush_pending_notifications()
        except Exception as e:
            report.errors.append(f"notifications: {e}")
            logger.error("Notification flush step failed", extra={"error": str(e)})
            return

        report.notifications_sent = sum(1 for r in results if r.status == DeliveryStatus.SENT)
        report.notifications_failed = sum(1 for r in results if r.status == DeliveryStatus.FAILED)
