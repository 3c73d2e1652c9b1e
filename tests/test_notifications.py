"""
Tests for notification dispatchers.
"""
import json
import pytest
from unittest.mock import AsyncMock

import httpx

from src.core.exceptions import NotificationDeliveryError
from src.sla.application import NotificationRequest
from src.sla.infrastructure.external import (
    CircuitBreaker, CircuitState, LoggingNotificationDispatcher,
    WebhookNotificationDispatcher, render_template,
)

WEBHOOK = "https://hooks.slack.test/services/T000/B000/XXX"


def make_request(**overrides) -> NotificationRequest:
    data = {
        "notification_id": "n-1",
        "ticket_id": "INC-1",
        "escalation_level": 2,
        "trigger_type": "breached",
        "recipients": {"type": "custom_group", "group_id": "noc", "role": None, "count": -1},
        "template": None,
        "rule_name": "p1-incidents",
        "sla_status": "breached",
        "elapsed_minutes": 135,
        "max_tat_minutes": 120,
        "time_display": "15m overdue",
        "ticket_context": {"ticket_number": "INC-0001", "title": "VPN down", "priority": "p1"},
    }
    data.update(overrides)
    return NotificationRequest(**data)


def dispatcher_with(handler, **kwargs) -> WebhookNotificationDispatcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookNotificationDispatcher(
        WEBHOOK, channel="#sla", client=client, sleep=AsyncMock(), **kwargs
    )


class TestRenderTemplate:

    @pytest.mark.unit
    def test_placeholders(self):
        text = render_template(
            "Ticket $ticket_number breached after $elapsed of business time (max $max_tat)",
            make_request(),
        )
        assert text == "Ticket INC-0001 breached after 2h 15m of business time (max 2h)"

    @pytest.mark.unit
    def test_unknown_placeholder_left_alone(self):
        assert render_template("$ticket_id $nope", make_request()) == "INC-1 $nope"

    @pytest.mark.unit
    def test_ticket_number_falls_back_to_id(self):
        assert render_template("$ticket_number", make_request(ticket_context={})) == "INC-1"


class TestWebhookNotificationDispatcher:

    @pytest.mark.unit
    def test_build_message(self):
        dispatcher = WebhookNotificationDispatcher(WEBHOOK, channel="#sla")
        message = dispatcher.build_message(make_request(template="Escalating $ticket_number"))

        assert message["channel"] == "#sla"
        assert message["text"] == "SLA Breached: INC-0001 (15m overdue)"
        fields = [f["text"] for f in message["blocks"][1]["fields"]]
        assert "*Elapsed:*\n2h 15m of 2h" in fields
        assert "*Recipients:*\ncustom group (noc)" in fields
        assert message["blocks"][2]["text"]["text"] == "Escalating INC-0001"
        assert message["blocks"][3]["elements"][0]["text"] == "VPN down | 15m overdue"

    @pytest.mark.unit
    def test_ticket_details_can_be_omitted(self):
        dispatcher = WebhookNotificationDispatcher(WEBHOOK, channel="#sla")
        message = dispatcher.build_message(make_request(include_ticket_details=False))
        assert [b["type"] for b in message["blocks"]] == ["header", "section"]

    @pytest.mark.unit
    async def test_dispatch_posts_message(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, text="ok")

        dispatcher = dispatcher_with(handler)
        await dispatcher.dispatch(make_request())
        await dispatcher.close()

        assert len(seen) == 1
        assert seen[0]["channel"] == "#sla"

    @pytest.mark.unit
    async def test_retries_then_gives_up(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500)

        dispatcher = dispatcher_with(handler, max_retries=3)
        with pytest.raises(NotificationDeliveryError) as exc_info:
            await dispatcher.dispatch(make_request())

        assert len(calls) == 3
        assert "webhook returned 500" in exc_info.value.message
        assert exc_info.value.status_code == 502
        assert [c.args[0] for c in dispatcher._sleep.await_args_list] == [1, 2]

    @pytest.mark.unit
    async def test_recovers_after_transport_error(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("connection refused")
            return httpx.Response(200)

        dispatcher = dispatcher_with(handler, max_retries=3)
        await dispatcher.dispatch(make_request())
        assert len(attempts) == 2

    @pytest.mark.unit
    async def test_open_circuit_rejects_without_calling(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200)

        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=600)
        breaker.record_failure()
        dispatcher = dispatcher_with(handler, circuit_breaker=breaker)

        with pytest.raises(NotificationDeliveryError):
            await dispatcher.dispatch(make_request())
        assert calls == []


class TestCircuitBreaker:

    @pytest.mark.unit
    def test_opens_after_threshold(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=600)
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert not breaker.allow_request()

    @pytest.mark.unit
    def test_half_open_after_timeout(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0)
        breaker.record_failure()
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED


class TestLoggingNotificationDispatcher:

    @pytest.mark.unit
    async def test_logs_instead_of_sending(self, caplog):
        with caplog.at_level("INFO"):
            await LoggingNotificationDispatcher().dispatch(make_request())
        assert "Escalation notification" in caplog.text
