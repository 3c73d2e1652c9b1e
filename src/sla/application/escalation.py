"""
Escalation Engine
=================

Fires escalation levels for open trackings and flushes the resulting
notifications to the notification collaborator.

Triggers are measured in business minutes, so time spent paused never
brings an escalation closer. A level's trigger point is the TAT named by
``reference_threshold`` plus ``trigger_offset_minutes``; ``warning_zone``
and ``imminent_breach`` levels only fire while the threshold itself has not
been reached.

The escalation ledger is the idempotency guard: a level fires only when
its trigger point has been reached, the ledger holds fewer than
``max_repeat_count`` firings for that (tracking, level), and the last
firing is at least ``repeat_interval_minutes`` old. Levels are evaluated
independently of each other.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Sequence
from uuid import uuid4

from src.config import DeliveryStatus, TriggerType
from src.sla.domain import (
    EscalationRule, EscalationNotification, SlaTracking, SlaStatusSnapshot,
)
from src.sla.application.services import (
    RepositoriesFactory, INotificationDispatcher, NotificationRequest,
    Clock, utc_now,
)
from src.sla.application.tracker import SlaTracker
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

PRE_BREACH_TRIGGERS = frozenset({TriggerType.WARNING_ZONE, TriggerType.IMMINENT_BREACH})


def trigger_point(tracking: SlaTracking, rule: EscalationRule) -> int:
    """Business minutes at which the level becomes due."""
    return tracking.tat_for(rule.reference_threshold) + rule.trigger_offset_minutes


def should_fire(
    now: datetime,
    tracking: SlaTracking,
    history: Sequence[EscalationNotification],
    rule: EscalationRule
) -> bool:
    """Trigger window plus repeat/backoff policy for one (tracking, level)."""
    elapsed = tracking.business_elapsed_minutes
    if elapsed < trigger_point(tracking, rule):
        return False
    if rule.trigger_type in PRE_BREACH_TRIGGERS and elapsed >= tracking.tat_for(rule.reference_threshold):
        return False
    if rule.max_repeat_count is not None and len(history) >= rule.max_repeat_count:
        return False
    if not history:
        return True
    if rule.repeat_interval_minutes is None:
        return False
    last_fired = max(n.fired_at for n in history)
    return now - last_fired >= timedelta(minutes=rule.repeat_interval_minutes)


@dataclass
class EscalationResult:
    """Outcome of escalation processing for one tracking."""
    tracking_id: str
    ticket_id: str
    fired_levels: List[int] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def escalations_triggered(self) -> int:
        return len(self.fired_levels)


@dataclass
class DeliveryResult:
    notification_id: str
    status: DeliveryStatus
    error: Optional[str] = None


class EscalationEngine:
    """
    Evaluates escalation rules against open trackings.

    Each tracking is processed in its own persistence unit so a failure on
    one ticket rolls back only that ticket's firings.
    """

    def __init__(
        self,
        repositories: RepositoriesFactory,
        dispatcher: INotificationDispatcher,
        clock: Optional[Clock] = None,
        flush_batch_size: int = 100
    ):
        self._repositories = repositories
        self._dispatcher = dispatcher
        self._clock = clock or utc_now
        self._flush_batch_size = flush_batch_size

    async def process_pending_escalations(self) -> List[EscalationResult]:
        """
        Fire due escalation levels for every unresolved, unpaused tracking.

        Failures are collected per tracking and returned, never raised.
        """
        async with self._repositories() as repos:
            trackings = await repos.trackings.list_open(include_paused=False)

        results: List[EscalationResult] = []
        for tracking in trackings:
            result = EscalationResult(tracking_id=tracking.id, ticket_id=tracking.ticket_id)
            try:
                async with self._repositories() as repos:
                    result.fired_levels = await self._process_tracking(repos, tracking.ticket_id)
            except Exception as e:
                result.fired_levels = []
                result.error = str(e)
                logger.error(
                    "Escalation processing failed",
                    extra={
                        "ticket_id": tracking.ticket_id,
                        "tracking_id": tracking.id,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    }
                )
            results.append(result)

        fired = sum(r.escalations_triggered for r in results)
        if fired:
            logger.info(
                "Escalations triggered",
                extra={"trackings_processed": len(results), "escalations_triggered": fired}
            )
        return results

    async def _process_tracking(self, repos, ticket_id: str) -> List[int]:
        # re-read inside this unit; state may have changed since listing
        tracking = await repos.trackings.get_by_ticket(ticket_id)
        if tracking is None or tracking.is_resolved or tracking.is_paused:
            return []

        rules = await repos.escalations.list_rules(tracking.sla_rule_id)
        if not rules:
            return []

        # evaluate against current business minutes, not the last sweep's
        tracking = await SlaTracker(repos, clock=self._clock).update_elapsed(ticket_id)

        now = self._clock()
        fired: List[int] = []
        for rule in rules:
            history = await repos.escalations.history(tracking.id, rule.escalation_level)
            if not should_fire(now, tracking, history, rule):
                continue

            await repos.escalations.append(EscalationNotification(
                id=str(uuid4()),
                tracking_id=tracking.id,
                escalation_rule_id=rule.id,
                escalation_level=rule.escalation_level,
                trigger_type=rule.trigger_type,
                recipients=rule.recipient.to_dict(),
                repeat_count=len(history),
                fired_at=now,
            ))
            fired.append(rule.escalation_level)

            logger.info(
                "Escalation fired",
                extra={
                    "ticket_id": tracking.ticket_id,
                    "tracking_id": tracking.id,
                    "escalation_level": rule.escalation_level,
                    "trigger_type": rule.trigger_type.value,
                    "repeat_count": len(history),
                }
            )
        return fired

    async def flush_pending_notifications(self) -> List[DeliveryResult]:
        """
        Hand pending ledger rows to the dispatcher and record the outcome.

        A failed delivery is marked FAILED and left alone; re-firing is
        governed by the repeat policy only.
        """
        async with self._repositories() as repos:
            pending = await repos.escalations.list_pending(limit=self._flush_batch_size)

        results: List[DeliveryResult] = []
        for notification in pending:
            try:
                async with self._repositories() as repos:
                    results.append(await self._deliver(repos, notification))
            except Exception as e:
                logger.error(
                    "Notification flush failed",
                    extra={"notification_id": notification.id, "error": str(e)}
                )
                results.append(DeliveryResult(notification.id, DeliveryStatus.FAILED, str(e)))
        return results

    async def _deliver(self, repos, notification: EscalationNotification) -> DeliveryResult:
        tracking = await repos.trackings.get(notification.tracking_id)
        if tracking is None:
            notification.mark_failed("tracking no longer exists")
            await repos.escalations.update_delivery(notification)
            return DeliveryResult(notification.id, DeliveryStatus.FAILED, notification.error_message)

        rule = await repos.rules.get(tracking.sla_rule_id)
        escalation_rule = await repos.escalations.get_rule(notification.escalation_rule_id)
        request = self._build_request(notification, tracking, rule.name if rule else tracking.sla_rule_id, escalation_rule)

        try:
            await self._dispatcher.dispatch(request)
            notification.mark_sent(self._clock())
        except Exception as e:
            notification.mark_failed(str(e))
            logger.warning(
                "Notification delivery failed",
                extra={
                    "notification_id": notification.id,
                    "ticket_id": tracking.ticket_id,
                    "error": str(e),
                }
            )

        await repos.escalations.update_delivery(notification)
        return DeliveryResult(notification.id, notification.delivery_status, notification.error_message)

    @staticmethod
    def _build_request(
        notification: EscalationNotification,
        tracking: SlaTracking,
        rule_name: str,
        escalation_rule: Optional[EscalationRule]
    ) -> NotificationRequest:
        snapshot = SlaStatusSnapshot.from_tracking(tracking)
        return NotificationRequest(
            notification_id=notification.id,
            ticket_id=tracking.ticket_id,
            escalation_level=notification.escalation_level,
            trigger_type=notification.trigger_type.value,
            recipients=notification.recipients,
            template=escalation_rule.notification_template if escalation_rule else None,
            include_ticket_details=escalation_rule.include_ticket_details if escalation_rule else True,
            rule_name=rule_name,
            sla_status=snapshot.status.value,
            elapsed_minutes=tracking.business_elapsed_minutes,
            max_tat_minutes=tracking.max_tat_minutes,
            time_display=snapshot.remaining_display,
            ticket_context=tracking.ticket_context.to_dict() if tracking.ticket_context else {},
        )

    # ========== Reads ==========

    async def get_escalation_history(self, ticket_id: str) -> List[EscalationNotification]:
        async with self._repositories() as repos:
            tracking = await repos.trackings.get_by_ticket(ticket_id)
            if tracking is None:
                return []
            return await repos.escalations.list_for_tracking(tracking.id)

    async def get_pending_notifications(self, limit: int = 100) -> List[EscalationNotification]:
        async with self._repositories() as repos:
            return await repos.escalations.list_pending(limit=limit)
