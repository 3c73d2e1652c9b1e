"""
API tests for the SLA routes.

The app is built without running its lifespan; repositories, clock and the
background services on ``app.state`` are swapped for in-memory versions.
"""
import pytest
from datetime import timedelta

from fastapi.testclient import TestClient

from src.main import create_app
from src.sla.application import EscalationEngine, SlaMonitoringJob
from src.sla.interfaces.controllers import get_clock, get_repositories
from tests.conftest import T0, make_escalation, make_rule

CONTEXT = {"priority": "P2", "ticket_number": "INC-0001", "title": "Printer jam"}


@pytest.fixture
def app(store, clock, dispatcher):
    app = create_app()
    factory = store.factory()

    async def in_memory_repositories():
        return store.repositories()

    app.dependency_overrides[get_repositories] = in_memory_repositories
    app.dependency_overrides[get_clock] = lambda: clock

    engine = EscalationEngine(factory, dispatcher, clock=clock)
    app.state.escalation_engine = engine
    app.state.monitoring_job = SlaMonitoringJob(factory, engine, clock=clock)
    app.state.monitoring_scheduler = None
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


def start(client: TestClient, ticket_id: str = "INC-1", **context):
    return client.post(f"/sla/tickets/{ticket_id}/tracking", json={**CONTEXT, **context})


class TestTracking:

    @pytest.mark.integration
    def test_start_tracking(self, client, rule_24x7):
        response = start(client)

        assert response.status_code == 201
        body = response.json()
        assert body["ticket_id"] == "INC-1"
        assert body["sla_rule_id"] == rule_24x7.id
        assert body["state"] == "running"
        assert body["sla_status"] == "on_track"
        assert body["max_tat_minutes"] == 480
        assert body["snapshot"]["zone"] == "green"
        assert body["snapshot"]["remaining_display"] == "8h remaining"

    @pytest.mark.integration
    def test_duplicate_is_conflict(self, client, rule_24x7):
        start(client)
        response = client.post(
            "/sla/tickets/INC-1/tracking",
            json=CONTEXT,
            headers={"X-Correlation-ID": "corr-123"},
        )

        assert response.status_code == 409
        assert response.headers["X-Correlation-ID"] == "corr-123"
        body = response.json()
        assert body["error"] == "AlreadyTrackedError"
        assert body["correlation_id"] == "corr-123"
        assert body["details"] == {"ticket_id": "INC-1"}

    @pytest.mark.integration
    def test_no_matching_rule(self, client, store):
        store.add_rule(make_rule(priorities={"p1"}))
        response = start(client)
        assert response.status_code == 422
        assert response.json()["error"] == "NoMatchingRuleError"

    @pytest.mark.integration
    def test_invalid_body(self, client, rule_24x7):
        response = start(client, asset_importances=["enormous"])
        assert response.status_code == 422
        assert "detail" in response.json()

    @pytest.mark.integration
    def test_get_untracked_ticket(self, client):
        response = client.get("/sla/tickets/INC-404")
        assert response.status_code == 200
        assert response.json() == {"ticket_id": "INC-404", "tracked": False, "tracking": None}

    @pytest.mark.integration
    def test_refresh_unknown_ticket(self, client):
        response = client.post("/sla/tickets/INC-404/refresh")
        assert response.status_code == 404
        assert response.json()["error"] == "TrackingNotFoundError"

    @pytest.mark.integration
    def test_refresh_and_get(self, client, clock, rule_24x7):
        start(client)
        clock.advance(minutes=250)

        refreshed = client.post("/sla/tickets/INC-1/refresh").json()
        assert refreshed["business_elapsed_minutes"] == 250
        assert refreshed["sla_status"] == "warning"

        body = client.get("/sla/tickets/INC-1").json()
        assert body["tracked"] is True
        assert body["tracking"]["snapshot"]["zone"] == "yellow"


class TestTimerControl:

    @pytest.mark.integration
    def test_pause_resume_stop(self, client, clock, rule_24x7):
        start(client)
        clock.advance(minutes=30)

        paused = client.post("/sla/tickets/INC-1/pause", json={"reason": "waiting for parts", "actor_id": "u-1"})
        assert paused.status_code == 200
        assert paused.json()["state"] == "paused"

        again = client.post("/sla/tickets/INC-1/pause", json={})
        assert again.status_code == 409
        assert again.json()["error"] == "AlreadyPausedError"

        clock.advance(minutes=60)
        resumed = client.post("/sla/tickets/INC-1/resume")
        assert resumed.status_code == 200
        assert resumed.json()["total_paused_minutes"] == 60

        clock.advance(minutes=10)
        stopped = client.post("/sla/tickets/INC-1/stop").json()
        assert stopped["state"] == "stopped"
        assert stopped["business_elapsed_minutes"] == 40
        assert stopped["final_status"] == "met_early"

        history = client.get("/sla/tickets/INC-1/pause-history").json()
        assert [e["action"] for e in history] == ["paused", "resumed"]
        assert history[0]["created_by"] == "u-1"

    @pytest.mark.integration
    def test_resume_running_timer(self, client, rule_24x7):
        start(client)
        response = client.post("/sla/tickets/INC-1/resume", json={"actor_id": "u-1"})
        assert response.status_code == 409
        assert response.json()["error"] == "NotPausedError"

    @pytest.mark.integration
    def test_pause_not_allowed(self, client, store):
        store.add_rule(make_rule(allow_pause_resume=False))
        start(client)
        response = client.post("/sla/tickets/INC-1/pause", json={"reason": "lunch"})
        assert response.status_code == 422
        assert response.json()["error"] == "PauseNotAllowedError"

    @pytest.mark.integration
    def test_stop_with_explicit_status_is_idempotent(self, client, rule_24x7):
        start(client)
        first = client.post("/sla/tickets/INC-1/stop", json={"final_status": "cancelled"}).json()
        second = client.post("/sla/tickets/INC-1/stop", json={"final_status": "closed"}).json()
        assert first["final_status"] == second["final_status"] == "cancelled"
        assert first["version"] == second["version"]

    @pytest.mark.integration
    def test_status_change_hook(self, client, rule_24x7):
        start(client)

        paused = client.post(
            "/sla/tickets/INC-1/status-change",
            json={"old_status": "open", "new_status": "awaiting_info"},
        ).json()
        assert paused["tracking"]["is_paused"] is True

        resolved = client.post(
            "/sla/tickets/INC-1/status-change",
            json={"old_status": "awaiting_info", "new_status": "resolved"},
        ).json()
        assert resolved["tracking"]["state"] == "stopped"

        untracked = client.post("/sla/tickets/INC-9/status-change", json={"new_status": "on_hold"}).json()
        assert untracked["tracked"] is False


class TestReportsAndMonitoring:

    @pytest.mark.integration
    def test_monitoring_run_fires_escalation(self, client, store, clock, dispatcher, rule_24x7):
        store.add_escalation(make_escalation(rule_24x7.id))
        start(client)
        clock.set(T0 + timedelta(minutes=480))

        report = client.post("/sla/monitoring/run").json()
        assert report["status"] == "success"
        assert report["trackings_updated"] == 1
        assert report["escalations_triggered"] == 1
        assert report["notifications_sent"] == 1
        assert dispatcher.requests[0].ticket_number == "INC-0001"

        ledger = client.get("/sla/tickets/INC-1/escalations").json()
        assert [(n["escalation_level"], n["delivery_status"]) for n in ledger] == [(1, "sent")]

        status = client.get("/sla/monitoring/status").json()
        assert status["is_running"] is False
        assert status["last_report"]["escalations_triggered"] == 1

    @pytest.mark.integration
    def test_breach_lists_and_metrics(self, client, clock, rule_24x7):
        start(client, "INC-A")
        clock.advance(minutes=40)
        start(client, "INC-B")
        clock.advance(minutes=460)
        client.post("/sla/tickets/INC-A/refresh")
        client.post("/sla/tickets/INC-B/refresh")

        breached = client.get("/sla/breached").json()
        assert [t["ticket_id"] for t in breached["items"]] == ["INC-A"]

        approaching = client.get("/sla/approaching-breach", params={"threshold_minutes": 30}).json()
        assert approaching["count"] == 1
        assert approaching["items"][0]["ticket_id"] == "INC-B"

        metrics = client.get("/sla/metrics").json()
        assert metrics["total_tickets"] == 2
        assert metrics["breached_count"] == 1
        assert metrics["critical_count"] == 1
        assert metrics["compliance_rate"] is None

    @pytest.mark.integration
    def test_invalid_threshold(self, client):
        assert client.get("/sla/approaching-breach", params={"threshold_minutes": 0}).status_code == 422

    @pytest.mark.integration
    def test_monitoring_unavailable_without_job(self, app, client):
        app.state.monitoring_job = None
        assert client.post("/sla/monitoring/run").status_code == 503


class TestSystemRoutes:

    @pytest.mark.integration
    def test_health_degraded_without_database(self, client):
        body = client.get("/health").json()
        assert body["status"] == "degraded"
        assert body["checks"]["database"] == "unavailable"
        assert body["checks"]["sla_scheduler"] == "stopped"

    @pytest.mark.integration
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["service"] == "SLA Engine"
        assert "X-Correlation-ID" in response.headers
