"""
Ticket Lifecycle Hooks
======================

Glue between ticket events and the SLA tracker.

- ticket created          -> initialize (never blocks ticket creation)
- status -> pause status  -> pause
- pause status -> other   -> resume
- status -> terminal      -> stop
- priority / asset change -> informational rule re-evaluation + refresh
- ticket assigned         -> refresh elapsed minutes and status
"""

from typing import Optional

from src.config import DEFAULT_PAUSE_STATUSES, TERMINAL_TICKET_STATUSES
from src.core.exceptions import NoMatchingRuleError, AlreadyTrackedError
from src.sla.domain import SlaRuleMatcher, SlaTracking, TicketContext
from src.sla.application.services import SlaRepositories, Clock
from src.sla.application.tracker import SlaTracker
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def _normalize(status: Optional[str]) -> Optional[str]:
    return status.strip().lower() if status else None


class SlaTicketIntegration:
    """Lifecycle hooks called by the ticket service within its own unit of work."""

    def __init__(self, repositories: SlaRepositories, clock: Optional[Clock] = None):
        self._repos = repositories
        self._tracker = SlaTracker(repositories, clock=clock)

    @property
    def tracker(self) -> SlaTracker:
        return self._tracker

    async def on_ticket_created(self, context: TicketContext) -> Optional[SlaTracking]:
        """
        Start SLA tracking for a new ticket.

        Returns None when no rule applies or the ticket is already tracked.
        """
        try:
            return await self._tracker.initialize(context.ticket_id, context)
        except NoMatchingRuleError:
            logger.warning(
                "No SLA rule matched ticket; tracking not started",
                extra={"ticket_id": context.ticket_id, "priority": context.priority}
            )
        except AlreadyTrackedError:
            logger.info("Ticket already tracked", extra={"ticket_id": context.ticket_id})
        return None

    async def pause_statuses_for(self, tracking: SlaTracking) -> frozenset:
        """Built-in pause statuses plus those named by the rule's conditions."""
        rule = await self._repos.rules.get(tracking.sla_rule_id)
        extra = rule.pause_statuses() if rule else frozenset()
        return frozenset(DEFAULT_PAUSE_STATUSES) | extra

    async def on_status_changed(
        self,
        ticket_id: str,
        old_status: Optional[str],
        new_status: str,
        actor_id: Optional[str] = None
    ) -> Optional[SlaTracking]:
        """
        React to a ticket status transition.

        State-machine errors (e.g. PauseNotAllowedError) propagate to the
        caller. Untracked tickets are ignored.
        """
        old_status, new_status = _normalize(old_status), _normalize(new_status)
        tracking = await self._tracker.get_tracking(ticket_id)
        if tracking is None or tracking.is_resolved:
            return tracking

        if new_status in TERMINAL_TICKET_STATUSES:
            return await self._tracker.stop(ticket_id)

        pause_statuses = await self.pause_statuses_for(tracking)

        if new_status in pause_statuses:
            if tracking.is_paused:
                return tracking
            return await self._tracker.pause(
                ticket_id,
                reason=f"Status changed to {new_status}",
                actor_id=actor_id,
                ticket_status=new_status,
            )

        if tracking.is_paused and (old_status in pause_statuses or old_status is None):
            return await self._tracker.resume(ticket_id, actor_id=actor_id, ticket_status=new_status)

        return tracking

    async def re_evaluate(self, ticket_id: str, context: TicketContext) -> dict:
        """
        Report whether a different rule would match the ticket today.

        Informational only: a live tracking is never re-bound to a new rule.
        """
        tracking = await self._tracker.get_tracking(ticket_id)
        current_rule_id = tracking.sla_rule_id if tracking else None

        try:
            matched = SlaRuleMatcher.match(context, await self._repos.rules.list_active())
            matched_rule_id = matched.id
        except NoMatchingRuleError:
            matched_rule_id = None

        changed = tracking is not None and matched_rule_id != current_rule_id
        if changed:
            logger.info(
                "SLA rule would differ after ticket change",
                extra={
                    "ticket_id": ticket_id,
                    "current_rule_id": current_rule_id,
                    "matched_rule_id": matched_rule_id,
                }
            )
        return {
            "ticket_id": ticket_id,
            "current_rule_id": current_rule_id,
            "matched_rule_id": matched_rule_id,
            "changed": changed,
        }

    async def on_priority_changed(self, context: TicketContext) -> Optional[SlaTracking]:
        return await self._refresh_after_change(context)

    async def on_asset_linked(self, context: TicketContext) -> Optional[SlaTracking]:
        return await self._refresh_after_change(context)

    async def on_ticket_assigned(self, ticket_id: str, assignee_id: Optional[str] = None) -> Optional[SlaTracking]:
        """Bring the tracking up to date on reassignment; the SLA clock keeps running."""
        tracking = await self._tracker.get_tracking(ticket_id)
        if tracking is None or tracking.is_resolved:
            return tracking
        logger.debug("Ticket assigned", extra={"ticket_id": ticket_id, "assignee_id": assignee_id})
        return await self._tracker.update_elapsed(ticket_id)

    async def _refresh_after_change(self, context: TicketContext) -> Optional[SlaTracking]:
        tracking = await self._tracker.get_tracking(context.ticket_id)
        if tracking is None:
            return None
        await self.re_evaluate(context.ticket_id, context)
        if tracking.is_resolved:
            return tracking
        return await self._tracker.update_elapsed(context.ticket_id)
