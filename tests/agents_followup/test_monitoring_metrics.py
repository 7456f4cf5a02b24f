"""Tests for monitoring metrics and backend counters."""

from agents.followup.dto import TriggerEvent, TriggerOutcome, TriggerType
from backend.core.observability import metrics


def test_metrics_without_activity(monitor):
    result = monitor.get_monitoring_metrics()

    assert result.active_sequences == 0
    assert result.total_triggers == 0
    assert result.success_rate == 100.0
    assert result.most_common_triggers == []


def test_metrics_after_cycle(monitor, store, clock, make_sequence, make_invoice):
    store.add_sequence(make_sequence())
    store.add_sequence(make_sequence(sequence_id="seq-reminder", name="Payment reminder"))
    store.add_sequence(make_sequence(sequence_id="seq-off", active=False))
    store.add_invoice(make_invoice())
    monitor.run_once()
    store.record_trigger_event(
        TriggerEvent(
            company_id="company-1",
            sequence_id="seq-overdue",
            invoice_id="inv-2",
            trigger_type=TriggerType.OVERDUE_DAYS,
            outcome=TriggerOutcome.FAILED,
            success=False,
            reason="dispatch rejected",
            created_at=clock.now,
        )
    )

    result = monitor.get_monitoring_metrics("company-1")

    assert result.active_sequences == 2
    assert result.total_triggers == 2
    assert result.active_executions == 2
    assert result.triggers_last_day == 2
    assert result.triggers_last_hour == 2
    assert result.failed_triggers == 1
    assert result.success_rate == 66.7
    assert sorted(t["trigger_type"] for t in result.most_common_triggers) == [
        "DUE_DATE_REACHED",
        "OVERDUE_DAYS",
    ]


def test_metrics_age_out_of_hour_window(monitor, store, clock, make_sequence, make_invoice):
    store.add_sequence(make_sequence())
    store.add_invoice(make_invoice())
    monitor.run_once()

    clock.advance(hours=2)
    result = monitor.get_monitoring_metrics()

    assert result.triggers_last_day == 1
    assert result.triggers_last_hour == 0


def test_metrics_scoped_to_company(monitor, store, make_sequence, make_invoice):
    store.add_sequence(make_sequence())
    store.add_invoice(make_invoice())
    monitor.run_once()

    result = monitor.get_monitoring_metrics("company-2")

    assert result.active_sequences == 0
    assert result.active_executions == 0
    assert result.triggers_last_day == 0


def test_backend_counters(monitor, store, make_sequence, make_invoice):
    store.add_sequence(make_sequence())
    store.add_invoice(make_invoice())
    monitor.run_once()
    monitor.run_once()

    snapshot = metrics.get_metrics()

    assert snapshot["followup_trigger_events_total{outcome=TRIGGERED}"]["count"] == 1
    assert snapshot["followup_trigger_events_total{outcome=ALREADY_RUNNING}"]["count"] == 1
    assert snapshot["followup_steps_dispatched_total"]["count"] == 1
    assert snapshot["followup_cycle_duration_ms"]["count"] == 2


def test_metrics_disabled(monkeypatch):
    monkeypatch.setattr(metrics.settings, "enable_metrics", False)

    metrics.increment_steps_dispatched()

    assert metrics.get_metrics() == {"note": "metrics disabled"}


def test_histogram_keeps_running_summary():
    for value in (250.0, 0.05, 4000.0, 12.0):
        metrics.record_histogram("followup_cycle_duration_ms", value)

    snapshot = metrics.get_metrics()["followup_cycle_duration_ms"]

    assert snapshot["count"] == 4
    assert snapshot["min"] == 0.05
    assert snapshot["max"] == 4000.0
    assert snapshot["avg"] == (250.0 + 0.05 + 4000.0 + 12.0) / 4
    assert snapshot["buckets"] == {"100.0-1000.0": 1, "<0.1": 1, ">=1000.0": 1, "10.0-100.0": 1}
    assert "values" not in metrics._metrics["followup_cycle_duration_ms"]
