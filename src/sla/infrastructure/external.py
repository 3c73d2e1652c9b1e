"""
SLA External Service Integrations
==================================

External services for SLA tracking:
- Rule catalog file watcher (watchdog + PyYAML)
- Slack webhook notification dispatcher (httpx)
- Logging dispatcher for environments without a webhook
"""

import asyncio
import threading
import time
from pathlib import Path
from string import Template
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from src.config import settings, TriggerType
from src.core.exceptions import ApplicationException, NotificationDeliveryError
from src.sla.application.catalog import RuleCatalog, load_catalog, sync_catalog
from src.sla.application.services import (
    INotificationDispatcher, NotificationRequest, RepositoriesFactory,
)
from src.sla.domain import format_duration
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


# ========== Rule Catalog ==========

class CatalogFileHandler(FileSystemEventHandler):
    """Watchdog event handler for rule catalog changes."""

    def __init__(self, manager: "RuleCatalogManager", path: Path):
        self.manager = manager
        self.path = path
        super().__init__()

    def _is_target(self, src_path: str) -> bool:
        return Path(src_path).resolve() == self.path.resolve()

    def on_modified(self, event):
        if not event.is_directory and self._is_target(event.src_path):
            logger.info("SLA catalog changed", extra={"path": event.src_path})
            self.manager.reload()

    def on_created(self, event):
        # editors that save via rename show up as create
        self.on_modified(event)


class RuleCatalogManager:
    """
    Thread-safe holder of the current rule catalog with hot-reload.

    The watchdog thread only parses and validates; the parsed catalog is
    marked pending and synced into the store by the event loop (startup or
    the next monitoring sweep). An invalid file is logged and the previous
    catalog stays in effect.
    """

    def __init__(self, path: Path):
        self._path = path
        self._catalog: Optional[RuleCatalog] = None
        self._pending = False
        self._lock = threading.Lock()
        self._observer = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def catalog(self) -> Optional[RuleCatalog]:
        with self._lock:
            return self._catalog

    @property
    def has_pending(self) -> bool:
        with self._lock:
            return self._pending

    def load(self) -> RuleCatalog:
        """
        Initial load; errors propagate so a broken catalog fails startup.

        Raises:
            ConfigurationException: invalid catalog file
        """
        catalog = load_catalog(self._path)
        with self._lock:
            self._catalog = catalog
            self._pending = not catalog.is_empty
        return catalog

    def reload(self) -> bool:
        """Re-read the file; returns False (keeping the old catalog) when invalid."""
        try:
            catalog = load_catalog(self._path)
        except ApplicationException as e:
            logger.error(
                "SLA catalog reload rejected, keeping previous catalog",
                extra={"path": str(self._path), "error": e.message, "details": e.details}
            )
            return False

        with self._lock:
            self._catalog = catalog
            self._pending = True
        logger.info("SLA catalog reloaded", extra={"path": str(self._path)})
        return True

    def take_pending(self) -> Optional[RuleCatalog]:
        """Return the catalog if it awaits syncing, clearing the flag."""
        with self._lock:
            if not self._pending:
                return None
            self._pending = False
            return self._catalog

    async def sync_pending(self, repositories: RepositoriesFactory) -> Optional[Dict[str, int]]:
        """Upsert a pending catalog into the store in its own unit."""
        catalog = self.take_pending()
        if catalog is None:
            return None
        try:
            async with repositories() as repos:
                return await sync_catalog(repos, catalog)
        except Exception:
            # retry on the next sweep
            with self._lock:
                self._pending = True
            raise

    def start_watching(self) -> None:
        """
        Start watching the catalog file.

        Skipped when the file doesn't exist or the platform has no file
        notification support (some containers).
        """
        if not self._path.exists():
            logger.info("SLA catalog file doesn't exist, skipping file watch", extra={"path": str(self._path)})
            return

        try:
            self._observer = Observer()
            self._observer.schedule(
                CatalogFileHandler(self, self._path),
                str(self._path.resolve().parent),
                recursive=False
            )
            self._observer.start()
            logger.info("Started watching SLA catalog", extra={"path": str(self._path)})
        except OSError as e:
            logger.warning("File watching not available, using static catalog", extra={"error": str(e)})
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None


# ========== Notification Dispatch ==========

class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: requests pass through
    - OPEN: after N consecutive failures, reject requests for M seconds
    - HALF_OPEN: after the timeout, let one trial request through
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED
        self._opened_at = None

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._failure_count >= self.failure_threshold or self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            self._opened_at = time.monotonic()
            logger.warning(
                "Circuit breaker opened",
                extra={"failure_count": self._failure_count, "recovery_timeout": self.recovery_timeout}
            )


_HEADERS = {
    TriggerType.WARNING_ZONE.value: ("⚠️", "SLA Warning"),
    TriggerType.IMMINENT_BREACH.value: ("⏰", "SLA Breach Imminent"),
    TriggerType.BREACHED.value: ("🚨", "SLA Breached"),
    TriggerType.RECURRING_BREACH.value: ("🔁", "SLA Still Breached"),
}


def render_template(template: str, request: NotificationRequest) -> str:
    """Fill ``$placeholders`` in a notification template; unknown ones are left as-is."""
    context = request.ticket_context or {}
    return Template(template).safe_substitute(
        ticket_id=request.ticket_id,
        ticket_number=request.ticket_number,
        ticket_title=context.get("title") or "",
        priority=context.get("priority") or "",
        rule_name=request.rule_name,
        escalation_level=request.escalation_level,
        trigger_type=request.trigger_type,
        sla_status=request.sla_status,
        elapsed=format_duration(request.elapsed_minutes),
        max_tat=format_duration(request.max_tat_minutes),
        time_display=request.time_display,
    )


class WebhookNotificationDispatcher(INotificationDispatcher):
    """
    Slack webhook dispatcher with circuit breaker and retry logic.

    Handles sending escalation notifications with:
    - Circuit breaker to prevent cascade failures
    - Exponential backoff retry (1s, 2s, 4s ...)
    - Timeout handling

    Raises NotificationDeliveryError once retries are exhausted; the
    caller records the failure on the ledger row.
    """

    def __init__(
        self,
        webhook_url: str,
        channel: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self._webhook_url = webhook_url
        self._channel = channel or settings.slack_channel
        self._timeout = timeout_seconds or settings.slack_timeout_seconds
        self._max_retries = max_retries or settings.notification_max_retries
        self._circuit_breaker = circuit_breaker or CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        self._http_client = client
        self._sleep = sleep

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    def build_message(self, request: NotificationRequest) -> Dict[str, Any]:
        """Build Slack Block Kit message."""
        emoji, header_text = _HEADERS.get(request.trigger_type, ("🔔", "SLA Escalation"))

        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": f"{emoji} {header_text}", "emoji": True}
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Ticket:*\n{request.ticket_number}"},
                    {"type": "mrkdwn", "text": f"*SLA Rule:*\n{request.rule_name}"},
                    {"type": "mrkdwn", "text": f"*Escalation Level:*\n{request.escalation_level}"},
                    {"type": "mrkdwn", "text": f"*Status:*\n{request.sla_status.replace('_', ' ').title()}"},
                    {
                        "type": "mrkdwn",
                        "text": (
                            f"*Elapsed:*\n{format_duration(request.elapsed_minutes)}"
                            f" of {format_duration(request.max_tat_minutes)}"
                        )
                    },
                    {"type": "mrkdwn", "text": f"*Recipients:*\n{self._describe_recipients(request.recipients)}"},
                ]
            },
        ]

        if request.template:
            blocks.append({
                "type": "section",
                "text": {"type": "mrkdwn", "text": render_template(request.template, request)}
            })

        if request.include_ticket_details and request.ticket_context.get("title"):
            blocks.append({
                "type": "context",
                "elements": [{
                    "type": "mrkdwn",
                    "text": f"{request.ticket_context['title']} | {request.time_display}"
                }]
            })

        return {
            "channel": self._channel,
            "text": f"{header_text}: {request.ticket_number} ({request.time_display})",
            "blocks": blocks,
        }

    @staticmethod
    def _describe_recipients(recipients: Dict[str, Any]) -> str:
        kind = str(recipients.get("type", "unknown")).replace("_", " ")
        target = recipients.get("group_id") or recipients.get("role")
        return f"{kind} ({target})" if target else kind

    async def dispatch(self, request: NotificationRequest) -> None:
        if not self._circuit_breaker.allow_request():
            raise NotificationDeliveryError(
                "circuit breaker open",
                {"ticket_id": request.ticket_id, "notification_id": request.notification_id}
            )

        message = self.build_message(request)
        last_error = "no attempt made"

        for attempt in range(self._max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self._webhook_url, json=message)
                if response.is_success:
                    self._circuit_breaker.record_success()
                    logger.info(
                        "Slack notification sent",
                        extra={
                            "ticket_id": request.ticket_id,
                            "escalation_level": request.escalation_level,
                            "trigger_type": request.trigger_type,
                        }
                    )
                    return
                last_error = f"webhook returned {response.status_code}"
                logger.warning(
                    "Slack webhook returned non-success",
                    extra={"status_code": response.status_code, "attempt": attempt + 1}
                )
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.error(
                    "Slack notification failed",
                    extra={"error": str(e), "attempt": attempt + 1, "ticket_id": request.ticket_id}
                )

            if attempt < self._max_retries - 1:
                await self._sleep(2 ** attempt)

        self._circuit_breaker.record_failure()
        raise NotificationDeliveryError(
            f"giving up after {self._max_retries} attempts: {last_error}",
            {"ticket_id": request.ticket_id, "notification_id": request.notification_id}
        )

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None


class LoggingNotificationDispatcher(INotificationDispatcher):
    """Logs notifications instead of sending them (no webhook configured)."""

    async def dispatch(self, request: NotificationRequest) -> None:
        logger.info(
            "Escalation notification",
            extra={
                "notification_id": request.notification_id,
                "ticket_id": request.ticket_id,
                "escalation_level": request.escalation_level,
                "trigger_type": request.trigger_type,
                "recipients": request.recipients,
                "sla_status": request.sla_status,
                "time_display": request.time_display,
            }
        )


def build_dispatcher() -> INotificationDispatcher:
    """Webhook dispatcher when a Slack URL is configured, logging otherwise."""
    if settings.slack_webhook_url:
        return WebhookNotificationDispatcher(settings.slack_webhook_url)
    logger.info("Slack webhook URL not configured, notifications will be logged only")
    return LoggingNotificationDispatcher()
