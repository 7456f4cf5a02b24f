"""HTTP API tests for the follow-up service (in-memory store, no network)."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from agents.followup.calendar import OpenCalendar
from agents.followup.config import FollowUpConfig
from agents.followup.dispatch import NoOpDispatcher
from agents.followup.dto import Invoice, Payment, SequenceDefinition, SequenceStep
from agents.followup.store import InMemoryStore
from backend.app import app
from backend.apps.followup.service import build_services, get_services
from backend.core.observability import health, metrics

NOW = datetime(2024, 3, 15, 10, 0, tzinfo=UTC)


@pytest.fixture
def services():
    store = InMemoryStore()
    store.add_sequence(
        SequenceDefinition(
            sequence_id="seq-overdue",
            company_id="company-1",
            name="Overdue collection",
            steps=[
                SequenceStep(step_number=1, delay_days=0, subject="Invoice {{ invoiceNumber }} overdue"),
                SequenceStep(step_number=2, delay_days=7),
            ],
        )
    )
    store.add_invoice(
        Invoice(
            invoice_id="inv-1",
            company_id="company-1",
            invoice_number="INV-2024-001",
            status="SENT",
            due_date=NOW - timedelta(days=5),
            total_amount=Decimal("500.00"),
            customer_name="Acme Trading LLC",
            customer_email="billing@acme.example",
        )
    )
    return build_services(
        store, NoOpDispatcher(), OpenCalendar(), FollowUpConfig(max_workers=1), clock=lambda: NOW
    )


@pytest.fixture
def client(services):
    metrics.reset_metrics()
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_process_sequences(client, services):
    response = client.post("/api/cron/process-sequences", headers={"X-Trace-ID": "trace-1"})

    assert response.status_code == 200
    body = response.json()
    assert body["monitor"]["processed"] == 1
    assert body["monitor"]["triggered"] == 1
    assert body["pending"]["processed"] == 0
    assert len(services.dispatcher.sent) == 1


def test_process_monitor_only(client):
    response = client.post("/api/cron/process-sequences", json={"run_pending": False})

    assert response.status_code == 200
    assert set(response.json()) == {"monitor"}


def test_manual_trigger_and_execution_status(client):
    response = client.post(
        "/api/sequences/seq-overdue/trigger",
        json={"invoice_id": "inv-1", "actor_id": "ops-1", "reason": "customer call"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["triggered"] is True
    execution_id = body["execution_id"]

    status_response = client.get("/api/sequences/seq-overdue/executions/inv-1")

    assert status_response.status_code == 200
    record = status_response.json()
    assert record["execution_id"] == execution_id
    assert record["status"] == "ACTIVE"
    assert record["trigger_type"] == "MANUAL_TRIGGER"
    assert [step["step_number"] for step in record["steps"]] == [1]


@pytest.mark.parametrize(
    "path,payload",
    [
        ("/api/sequences/seq-missing/trigger", {"invoice_id": "inv-1", "actor_id": "ops-1"}),
        ("/api/sequences/seq-overdue/trigger", {"invoice_id": "inv-missing", "actor_id": "ops-1"}),
        ("/api/hooks/payment-received", {"invoice_id": "inv-missing"}),
        ("/api/hooks/invoice-status-changed", {"invoice_id": "inv-missing", "to_status": "PAID"}),
    ],
)
def test_unknown_records_return_404(client, path, payload):
    response = client.post(path, json=payload)

    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "not_found"


def test_missing_execution_returns_404(client):
    response = client.get("/api/sequences/seq-overdue/executions/inv-1")

    assert response.status_code == 404


def test_manual_trigger_validation(client):
    response = client.post("/api/sequences/seq-overdue/trigger", json={"invoice_id": "inv-1"})

    assert response.status_code == 422


def test_payment_hook_stops_execution(client, services):
    client.post("/api/cron/process-sequences")
    services.store.add_payment("inv-1", Payment(Decimal("500.00"), NOW))

    response = client.post("/api/hooks/payment-received", json={"invoice_id": "inv-1", "amount": "500.00"})

    assert response.status_code == 200
    assert response.json() == {"stopped": 1, "triggered": 0, "errors": []}
    status_response = client.get("/api/sequences/seq-overdue/executions/inv-1")
    assert status_response.json()["stop_reason"] == "payment received"


def test_status_hook_triggers_overdue(client, services):
    services.store.set_invoice_status("inv-1", "OVERDUE")

    response = client.post(
        "/api/hooks/invoice-status-changed",
        json={"invoice_id": "inv-1", "from_status": "SENT", "to_status": "OVERDUE"},
    )

    assert response.status_code == 200
    assert response.json()["triggered"] == 1


def test_metrics_endpoint(client):
    client.post("/api/cron/process-sequences")

    response = client.get("/api/followup/metrics", params={"company_id": "company-1"})

    assert response.status_code == 200
    body = response.json()
    assert body["triggers"]["active_sequences"] == 1
    assert body["triggers"]["triggers_last_day"] == 1
    assert body["counters"]["followup_trigger_events_total{outcome=TRIGGERED}"]["count"] == 1


def test_health_live(client):
    response = client.get("/health/live")

    assert response.status_code == 200
    assert response.json() == {"status": "OK"}


def test_health_helpers(tmp_path):
    assert health.check_database(f"sqlite:///{tmp_path / 'health.db'}") == "OK"
    assert health.get_version() == "1.0.0"
