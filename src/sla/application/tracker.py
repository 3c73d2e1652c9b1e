"""
SLA Tracker
===========

Per-ticket state machine owning the pause/resume timer.

    uninitialized -> running <-> paused -> stopped

``stopped`` is terminal. Every mutation goes through this class so the
pause log and the tracking row stay consistent, and every write carries
the version that was read (optimistic concurrency).
"""

import dataclasses
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from uuid import uuid4

from src.config import PauseAction, SlaStatus
from src.core.exceptions import (
    AlreadyTrackedError, AlreadyPausedError, NotPausedError,
    PauseNotAllowedError, TrackingNotFoundError, ConfigurationException,
)
from src.sla.domain import (
    BusinessHoursCalculator, SlaRuleMatcher,
    SlaRule, SlaTracking, PauseLogEntry, TicketContext, PauseTrigger,
    BusinessHoursSchedule, HolidayCalendar,
    reconstruct_pause_intervals, classify_status, resolution_outcome,
)
from src.sla.application.services import SlaRepositories, Clock, utc_now
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

MANUAL = "manual"


class SlaTracker:
    """SLA timer operations bound to one persistence unit."""

    def __init__(self, repositories: SlaRepositories, clock: Optional[Clock] = None):
        self._repos = repositories
        self._clock = clock or utc_now

    # ========== Reads ==========

    async def get_tracking(self, ticket_id: str) -> Optional[SlaTracking]:
        """Tracking for a ticket, or None when the ticket is untracked."""
        return await self._repos.trackings.get_by_ticket(ticket_id)

    async def get_pause_history(self, ticket_id: str) -> List[PauseLogEntry]:
        tracking = await self._require(ticket_id)
        return await self._repos.pause_log.list_for_tracking(tracking.id)

    # ========== Lifecycle ==========

    async def initialize(self, ticket_id: str, context: TicketContext) -> SlaTracking:
        """
        Start tracking a ticket.

        Resolves the rule, computes the min/avg/max deadlines in business
        time from now and persists a running tracking with zero elapsed time.

        Raises:
            AlreadyTrackedError: ticket already tracked
            NoMatchingRuleError: no active rule applies
            ScheduleUnreachable: the rule's schedule never yields working time
        """
        if context.ticket_id != ticket_id:
            context = dataclasses.replace(context, ticket_id=ticket_id)

        if await self._repos.trackings.get_by_ticket(ticket_id) is not None:
            raise AlreadyTrackedError(ticket_id)

        rule = SlaRuleMatcher.match(context, await self._repos.rules.list_active())
        schedule, calendar = await self._calendar_for(rule)

        now = self._clock()
        add = BusinessHoursCalculator.add_business_minutes
        tracking = SlaTracking(
            id=str(uuid4()),
            ticket_id=ticket_id,
            sla_rule_id=rule.id,
            sla_start_time=now,
            min_target_time=add(now, rule.min_tat_minutes, schedule, calendar),
            avg_target_time=add(now, rule.avg_tat_minutes, schedule, calendar),
            max_target_time=add(now, rule.max_tat_minutes, schedule, calendar),
            min_tat_minutes=rule.min_tat_minutes,
            avg_tat_minutes=rule.avg_tat_minutes,
            max_tat_minutes=rule.max_tat_minutes,
            sla_status=SlaStatus.ON_TRACK,
            last_calculated_at=now,
            ticket_context=context,
            created_at=now,
            updated_at=now,
        )
        tracking = await self._repos.trackings.add(tracking)

        logger.info(
            "SLA tracking initialized",
            extra={
                "ticket_id": ticket_id,
                "tracking_id": tracking.id,
                "sla_rule": rule.name,
                "match_reason": SlaRuleMatcher.explain(context, rule),
                "max_target_time": tracking.max_target_time.isoformat(),
            }
        )
        return tracking

    async def update_elapsed(self, ticket_id: str) -> SlaTracking:
        """
        Recompute elapsed business minutes and status.

        No-op for stopped trackings. While paused, elapsed time is frozen at
        ``pause_started_at``.
        """
        tracking = await self._require(ticket_id)
        if tracking.is_resolved:
            return tracking

        now = self._clock()
        await self._apply_elapsed(tracking, now)
        return await self._save(tracking)

    async def pause(
        self,
        ticket_id: str,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
        ticket_status: Optional[str] = None
    ) -> SlaTracking:
        """
        Freeze the SLA timer.

        ``ticket_status`` names the status that caused the pause; omitted
        (or ``"manual"``) means a human-triggered pause.

        Raises:
            AlreadyPausedError: timer already paused
            PauseNotAllowedError: rule forbids this pause, or tracking stopped
        """
        tracking = await self._require(ticket_id)
        if tracking.is_resolved:
            raise PauseNotAllowedError(ticket_id, "tracking is stopped")
        if tracking.is_paused:
            raise AlreadyPausedError(ticket_id)

        if ticket_status and ticket_status != MANUAL:
            trigger = PauseTrigger.for_status(ticket_status, reason)
        else:
            trigger = PauseTrigger.manual(reason)

        rule = await self._rule_for(tracking)
        if not rule.allow_pause_resume:
            raise PauseNotAllowedError(ticket_id, f"rule '{rule.name}' does not allow pause/resume")
        if not rule.permits_pause(trigger):
            raise PauseNotAllowedError(
                ticket_id,
                f"rule '{rule.name}' has no pause condition for '{trigger.ticket_status}'"
            )

        now = self._clock()
        await self._apply_elapsed(tracking, now, rule)
        tracking.is_paused = True
        tracking.pause_started_at = now
        tracking.current_pause_reason = reason
        tracking = await self._save(tracking)

        await self._repos.pause_log.append(PauseLogEntry(
            id=str(uuid4()),
            tracking_id=tracking.id,
            action=PauseAction.PAUSED,
            action_at=now,
            ticket_status=trigger.ticket_status or MANUAL,
            reason=reason,
            created_by=actor_id,
        ))

        logger.info(
            "SLA timer paused",
            extra={"ticket_id": ticket_id, "tracking_id": tracking.id, "reason": reason, "actor_id": actor_id}
        )
        return tracking

    async def resume(
        self,
        ticket_id: str,
        actor_id: Optional[str] = None,
        ticket_status: Optional[str] = None
    ) -> SlaTracking:
        """
        Restart a paused timer and close the open pause interval.

        Raises:
            NotPausedError: timer is not paused
        """
        tracking = await self._require(ticket_id)
        if not tracking.is_paused or tracking.is_resolved:
            raise NotPausedError(ticket_id)

        now = self._clock()
        paused_minutes = self._minutes_between(tracking.pause_started_at, now)

        tracking.total_paused_minutes += paused_minutes
        tracking.is_paused = False
        tracking.pause_started_at = None
        tracking.current_pause_reason = None
        tracking.updated_at = now
        tracking = await self._save(tracking)

        await self._repos.pause_log.append(PauseLogEntry(
            id=str(uuid4()),
            tracking_id=tracking.id,
            action=PauseAction.RESUMED,
            action_at=now,
            ticket_status=ticket_status or MANUAL,
            paused_duration_minutes=paused_minutes,
            created_by=actor_id,
        ))

        logger.info(
            "SLA timer resumed",
            extra={
                "ticket_id": ticket_id,
                "tracking_id": tracking.id,
                "paused_minutes": paused_minutes,
                "actor_id": actor_id,
            }
        )
        return tracking

    async def stop(self, ticket_id: str, final_status: Optional[str] = None) -> SlaTracking:
        """
        Stop tracking for good.

        Auto-resumes an open pause, runs a final elapsed update, then sets
        ``resolved_at`` and ``final_status`` (derived from elapsed time when
        not given). Calling it again returns the stopped record unchanged.
        """
        tracking = await self._require(ticket_id)
        if tracking.is_resolved:
            return tracking

        if tracking.is_paused:
            tracking = await self.resume(ticket_id, ticket_status="stopped")

        now = self._clock()
        await self._apply_elapsed(tracking, now)
        tracking.resolved_at = now
        tracking.final_status = final_status or resolution_outcome(
            tracking.business_elapsed_minutes,
            tracking.min_tat_minutes,
            tracking.avg_tat_minutes,
            tracking.max_tat_minutes,
        ).value
        tracking = await self._save(tracking)

        logger.info(
            "SLA tracking stopped",
            extra={
                "ticket_id": ticket_id,
                "tracking_id": tracking.id,
                "final_status": tracking.final_status,
                "business_elapsed_minutes": tracking.business_elapsed_minutes,
            }
        )
        return tracking

    # ========== Internals ==========

    async def _require(self, ticket_id: str) -> SlaTracking:
        tracking = await self._repos.trackings.get_by_ticket(ticket_id)
        if tracking is None:
            raise TrackingNotFoundError(ticket_id)
        return tracking

    async def _rule_for(self, tracking: SlaTracking) -> SlaRule:
        rule = await self._repos.rules.get(tracking.sla_rule_id)
        if rule is None:
            raise ConfigurationException(
                f"SLA rule {tracking.sla_rule_id} referenced by tracking {tracking.id} no longer exists",
                {"tracking_id": tracking.id, "sla_rule_id": tracking.sla_rule_id}
            )
        return rule

    async def _calendar_for(
        self,
        rule: SlaRule
    ) -> Tuple[Optional[BusinessHoursSchedule], Optional[HolidayCalendar]]:
        schedule = None
        calendar = None
        if rule.business_hours_schedule_id:
            schedule = await self._repos.calendars.get_schedule(rule.business_hours_schedule_id)
            if schedule is None:
                raise ConfigurationException(
                    f"Business hours schedule {rule.business_hours_schedule_id} not found",
                    {"sla_rule_id": rule.id}
                )
        if rule.holiday_calendar_id:
            calendar = await self._repos.calendars.get_calendar(rule.holiday_calendar_id)
        return schedule, calendar

    async def _apply_elapsed(
        self,
        tracking: SlaTracking,
        now: datetime,
        rule: Optional[SlaRule] = None
    ) -> None:
        """Recompute elapsed minutes and status in place (not persisted)."""
        rule = rule or await self._rule_for(tracking)
        schedule, calendar = await self._calendar_for(rule)

        entries = await self._repos.pause_log.list_for_tracking(tracking.id)
        intervals = reconstruct_pause_intervals(entries)

        end = tracking.pause_started_at if tracking.is_paused and tracking.pause_started_at else now
        elapsed = BusinessHoursCalculator.elapsed_business_minutes(
            tracking.sla_start_time, end, schedule, calendar, intervals
        )

        # elapsed never goes backwards
        tracking.business_elapsed_minutes = max(elapsed, tracking.business_elapsed_minutes)
        tracking.total_elapsed_minutes = max(0, (end - tracking.sla_start_time) // timedelta(minutes=1))
        tracking.sla_status = classify_status(
            tracking.business_elapsed_minutes,
            tracking.min_tat_minutes,
            tracking.avg_tat_minutes,
            tracking.max_tat_minutes,
        )
        if tracking.sla_status != SlaStatus.ON_TRACK and tracking.warning_triggered_at is None:
            tracking.warning_triggered_at = now
        if tracking.sla_status == SlaStatus.BREACHED and tracking.breach_triggered_at is None:
            tracking.breach_triggered_at = now
        tracking.last_calculated_at = now
        tracking.updated_at = now

    async def _save(self, tracking: SlaTracking) -> SlaTracking:
        return await self._repos.trackings.update(tracking, expected_version=tracking.version)

    @staticmethod
    def _minutes_between(start: Optional[datetime], end: datetime) -> int:
        if start is None:
            return 0
        return max(0, round((end - start).total_seconds() / 60))
