"""
SLA Monitoring Scheduler
========================

APScheduler wrapper that runs the monitoring sweep on an interval.

Overlap is prevented twice: the job's own lock and ``max_instances=1``.
There is no module-level instance; the application lifespan owns it.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from src.sla.application.monitoring import SlaMonitoringJob, SweepReport
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

JOB_ID = "sla_monitoring"


class SlaMonitoringScheduler:
    """
    Manages the lifecycle of the monitoring job.

    Usage:
        scheduler = SlaMonitoringScheduler(job, interval_seconds=300)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        job: SlaMonitoringJob,
        interval_seconds: int = 300,
        run_on_start: bool = True,
        misfire_grace_seconds: int = 60
    ):
        self.job = job
        self.interval_seconds = interval_seconds
        self.run_on_start = run_on_start
        self.misfire_grace_seconds = misfire_grace_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False
        self._inflight: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_run_at(self) -> Optional[datetime]:
        return self.job.last_run_at

    @property
    def last_report(self) -> Optional[SweepReport]:
        return self.job.last_report

    async def start(self) -> None:
        """Schedule the sweep; optionally run the first one right away."""
        if self._running:
            logger.warning("SLA monitoring scheduler already running")
            return

        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)

        job_kwargs = {}
        if self.run_on_start:
            job_kwargs["next_run_time"] = datetime.now(timezone.utc)

        self._scheduler.add_job(
            self._tick,
            "interval",
            seconds=self.interval_seconds,
            id=JOB_ID,
            name="SLA Monitoring Sweep",
            misfire_grace_time=self.misfire_grace_seconds,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            **job_kwargs
        )

        self._scheduler.start()
        self._running = True

        logger.info(
            "SLA monitoring scheduler started",
            extra={"interval_seconds": self.interval_seconds, "run_on_start": self.run_on_start}
        )

    async def _tick(self) -> None:
        self._inflight = asyncio.current_task()
        try:
            await self.job.run()
        except Exception as e:
            # job.run() records step failures in its report
            logger.error("SLA monitoring sweep crashed", extra={"error": str(e)})
        finally:
            self._inflight = None

    async def run_once(self) -> SweepReport:
        """Run a single sweep now, sharing the overlap guard."""
        return await self.job.run()

    async def stop(self, wait: bool = True) -> None:
        """
        Stop future ticks.

        With ``wait`` the in-flight sweep is awaited; otherwise it is
        cancelled, which rolls back the ticket it was working on.
        """
        if not self._running:
            return

        if self._scheduler is not None:
            self._scheduler.remove_all_jobs()
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        inflight = self._inflight
        if inflight is not None and not inflight.done():
            if wait:
                await asyncio.gather(inflight, return_exceptions=True)
            else:
                inflight.cancel()
                await asyncio.gather(inflight, return_exceptions=True)

        self._running = False
        logger.info("SLA monitoring scheduler stopped", extra={"waited": wait})

    def next_run_at(self) -> Optional[datetime]:
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None

    def get_status(self) -> dict:
        report = self.last_report
        return {
            "is_running": self._running,
            "sweep_in_progress": self.job.is_running,
            "interval_seconds": self.interval_seconds,
            "last_run_at": self.last_run_at,
            "next_run_at": self.next_run_at(),
            "last_report": report.to_dict() if report else None,
        }
