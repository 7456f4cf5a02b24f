"""Tests for the SQLAlchemy persistence adapter."""

from datetime import timedelta
from decimal import Decimal

import pytest
import sqlalchemy as sa

from agents.followup.config import FollowUpConfig
from agents.followup.controller import ExecutionController
from agents.followup.dto import (
    CandidateQuery,
    ExecutionRecord,
    ExecutionStatus,
    MessageTemplate,
    Payment,
    StepLogEntry,
    StopTag,
    TriggerEvent,
    TriggerOutcome,
    TriggerType,
)
from agents.followup.ids import SequentialIdGenerator
from agents.followup.monitor import TriggerMonitor
from agents.followup.store import SqlStore


@pytest.fixture
def sql_store(tmp_path):
    engine = sa.create_engine(
        f"sqlite:///{tmp_path / 'followup.db'}", connect_args={"check_same_thread": False}
    )
    store = SqlStore(engine)
    store.create_schema()
    yield store
    engine.dispose()


def make_record(clock, execution_id="EXEC-1", sequence_id="seq-overdue", **overrides):
    values = {
        "execution_id": execution_id,
        "sequence_id": sequence_id,
        "invoice_id": "inv-1",
        "company_id": "company-1",
        "total_steps": 3,
        "trigger_type": TriggerType.OVERDUE_DAYS,
        "started_at": clock.now,
        "next_step_at": clock.now,
    }
    values.update(overrides)
    return ExecutionRecord(**values)


def make_entry(clock, step_number=1, execution_id="EXEC-1", **overrides):
    values = {
        "execution_id": execution_id,
        "sequence_id": "seq-overdue",
        "invoice_id": "inv-1",
        "trigger_type": TriggerType.OVERDUE_DAYS,
        "step_number": step_number,
        "dispatch_handles": (f"h-{step_number}",),
        "executed_at": clock.now,
        "recipient": "Billing@Acme.example",
    }
    values.update(overrides)
    return StepLogEntry(**values)


class TestSeedData:
    """Sequences, invoices and templates."""

    def test_sequence_round_trip(self, sql_store, make_sequence):
        sequence = make_sequence(trigger_config=[{"type": "OVERDUE_DAYS", "conditions": []}])
        sql_store.add_sequence(sequence)
        sql_store.add_sequence(make_sequence(sequence_id="seq-off", active=False))

        loaded = sql_store.get_sequence("seq-overdue")

        assert loaded.steps == sequence.steps
        assert loaded.trigger_config == sequence.trigger_config
        assert [s.sequence_id for s in sql_store.list_active_sequences()] == ["seq-overdue"]
        assert sql_store.get_sequence("seq-missing") is None

    def test_invoice_with_payments(self, sql_store, clock, make_invoice):
        invoice = make_invoice(status="sent", payments=[Payment(Decimal("100.50"), clock.now, "pay-1")])
        sql_store.add_invoice(invoice)
        sql_store.add_payment("inv-1", Payment(Decimal("20"), clock.now + timedelta(hours=1)))

        loaded = sql_store.get_invoice("inv-1")

        assert loaded.status == "SENT"
        assert loaded.due_date == invoice.due_date
        assert loaded.total_amount == Decimal("500.00")
        assert loaded.amount_paid == Decimal("120.50")
        assert loaded.payments[0].payment_id == "pay-1"
        assert loaded.payments[0].paid_at == clock.now

    def test_candidate_query(self, sql_store, clock, make_invoice):
        sql_store.add_invoice(make_invoice(invoice_id="inv-late", due_date=clock.now - timedelta(days=3)))
        sql_store.add_invoice(make_invoice(invoice_id="inv-soon", due_date=clock.now + timedelta(days=2)))
        sql_store.add_invoice(make_invoice(invoice_id="inv-paid", status="PAID"))
        sql_store.add_invoice(make_invoice(invoice_id="inv-other", company_id="company-2"))

        overdue = sql_store.find_candidate_invoices(
            CandidateQuery("company-1", ("SENT", "OVERDUE"), limit=10, due_before=clock.now)
        )
        upcoming = sql_store.find_candidate_invoices(
            CandidateQuery(
                "company-1", ("SENT", "OVERDUE"), limit=10, due_on_or_before=clock.now + timedelta(days=7)
            )
        )

        assert [i.invoice_id for i in overdue] == ["inv-late"]
        assert [i.invoice_id for i in upcoming] == ["inv-late", "inv-soon"]

    def test_templates(self, sql_store):
        sql_store.add_template(MessageTemplate("tpl-1", "Subject", "Body", subject_ar="موضوع"))

        assert sql_store.get_template("tpl-1").subject_ar == "موضوع"
        assert sql_store.get_template("tpl-2") is None


class TestExecutions:
    """Execution records and their uniqueness."""

    def test_one_active_execution_per_sequence_and_invoice(self, sql_store, clock):
        assert sql_store.create_execution(make_record(clock)) is True
        assert sql_store.create_execution(make_record(clock, execution_id="EXEC-2")) is False
        assert sql_store.create_execution(
            make_record(clock, execution_id="EXEC-3", sequence_id="seq-reminder")
        ) is True

    def test_finished_execution_frees_the_slot(self, sql_store, clock):
        record = make_record(clock)
        sql_store.create_execution(record)
        record.status = ExecutionStatus.COMPLETED
        record.finished_at = clock.now

        assert sql_store.update_execution(record) is True
        assert sql_store.create_execution(make_record(clock, execution_id="EXEC-2")) is True

    def test_terminal_record_is_not_overwritten(self, sql_store, clock):
        record = make_record(clock)
        sql_store.create_execution(record)
        stopped = make_record(clock, status=ExecutionStatus.STOPPED, stop_reason="manual")
        assert sql_store.update_execution(stopped) is True

        stale = make_record(clock, current_step=2)

        assert sql_store.update_execution(stale) is False
        assert sql_store.get_execution("EXEC-1").status == ExecutionStatus.STOPPED

    def test_due_executions_and_counts(self, sql_store, clock):
        sql_store.create_execution(make_record(clock, next_step_at=clock.now - timedelta(hours=1)))
        sql_store.create_execution(
            make_record(clock, execution_id="EXEC-2", sequence_id="seq-b", next_step_at=clock.now + timedelta(days=1))
        )

        due = sql_store.list_due_executions(clock.now, limit=10)

        assert [r.execution_id for r in due] == ["EXEC-1"]
        assert due[0].next_step_at == clock.now - timedelta(hours=1)
        assert sql_store.count_executions(ExecutionStatus.ACTIVE) == 2
        assert sql_store.count_executions(ExecutionStatus.ACTIVE, "company-2") == 0

    def test_latest_execution(self, sql_store, clock):
        first = make_record(clock, status=ExecutionStatus.COMPLETED, started_at=clock.now - timedelta(days=40))
        sql_store.create_execution(first)
        sql_store.create_execution(make_record(clock, execution_id="EXEC-2"))

        assert sql_store.find_latest_execution("seq-overdue", "inv-1").execution_id == "EXEC-2"
        assert len(sql_store.list_executions_for_invoice("inv-1")) == 2
        assert len(sql_store.list_executions_for_invoice("inv-1", ExecutionStatus.ACTIVE)) == 1


class TestStepLog:
    """Append-only step log."""

    def test_each_step_is_logged_once(self, sql_store, clock):
        sql_store.create_execution(make_record(clock))

        assert sql_store.append_step_log(make_entry(clock)) is True
        assert sql_store.append_step_log(make_entry(clock)) is False
        assert [e.step_number for e in sql_store.list_step_logs("EXEC-1")] == [1]

    def test_no_append_after_terminal(self, sql_store, clock):
        sql_store.create_execution(make_record(clock, status=ExecutionStatus.STOPPED))

        assert sql_store.append_step_log(make_entry(clock)) is False

    def test_cooldown_and_rate_queries(self, sql_store, clock):
        sql_store.create_execution(make_record(clock))
        sql_store.append_step_log(make_entry(clock, executed_at=clock.now - timedelta(hours=10)))
        sql_store.append_step_log(make_entry(clock, step_number=2, executed_at=clock.now - timedelta(hours=2)))

        latest = sql_store.find_latest_step_log("inv-1", TriggerType.OVERDUE_DAYS, clock.now - timedelta(hours=24))

        assert latest.step_number == 2
        assert latest.dispatch_handles == ("h-2",)
        assert sql_store.find_latest_step_log("inv-1", TriggerType.DUE_DATE_REACHED, clock.now - timedelta(days=1)) is None
        assert sql_store.count_step_logs_to_recipient("billing@acme.example", clock.now - timedelta(hours=24)) == 2
        assert sql_store.count_step_logs_to_recipient("billing@acme.example", clock.now - timedelta(hours=5)) == 1


class TestSignalsAndEvents:
    """Unsubscribes, stop signals and the trigger audit log."""

    def test_unsubscribe_is_case_insensitive_and_idempotent(self, sql_store):
        sql_store.unsubscribe("Billing@Acme.example")
        sql_store.unsubscribe("billing@acme.example")

        assert sql_store.is_unsubscribed("BILLING@ACME.EXAMPLE")
        assert not sql_store.is_unsubscribed("other@acme.example")

    def test_stop_signals(self, sql_store, clock):
        sql_store.add_stop_signal("inv-1", StopTag.EMAIL_BOUNCE, clock.now)

        assert sql_store.has_stop_signal("inv-1", StopTag.EMAIL_BOUNCE, clock.now)
        assert not sql_store.has_stop_signal("inv-1", StopTag.EMAIL_BOUNCE, clock.now + timedelta(seconds=1))
        assert not sql_store.has_stop_signal("inv-1", StopTag.DISPUTE_OPENED, clock.now - timedelta(days=1))

    def test_trigger_events(self, sql_store, clock):
        sql_store.record_trigger_event(
            TriggerEvent(
                company_id="company-1",
                sequence_id="seq-overdue",
                invoice_id="inv-1",
                trigger_type=TriggerType.MANUAL_TRIGGER,
                outcome=TriggerOutcome.MANUAL,
                success=True,
                actor_id="ops-1",
                event_id="EVT-1",
                created_at=clock.now,
            )
        )

        events = sql_store.list_trigger_events(clock.now - timedelta(hours=1))

        assert len(events) == 1
        assert events[0].outcome == TriggerOutcome.MANUAL
        assert events[0].actor_id == "ops-1"
        assert events[0].created_at == clock.now
        assert sql_store.list_trigger_events(clock.now - timedelta(hours=1), "company-2") == []


def test_full_cycle_on_sql_store(sql_store, dispatcher, calendar, clock, make_sequence, make_invoice):
    config = FollowUpConfig(max_workers=1)
    controller = ExecutionController(
        sql_store, dispatcher, calendar, config, id_generator=SequentialIdGenerator(), clock=clock
    )
    monitor = TriggerMonitor(
        sql_store, controller, calendar, config, id_generator=SequentialIdGenerator("EVT"), clock=clock
    )
    sql_store.add_sequence(make_sequence())
    sql_store.add_invoice(make_invoice())

    assert monitor.run_once().triggered == 1
    assert monitor.run_once().triggered == 0

    clock.advance(days=7)
    assert controller.process_pending_executions().successful == 1
    clock.advance(days=7)
    assert controller.process_pending_executions().successful == 1

    record = sql_store.get_execution("EXEC-0001")
    assert record.status == ExecutionStatus.COMPLETED
    assert record.current_step == 3
    assert [e.step_number for e in sql_store.list_step_logs("EXEC-0001")] == [1, 2, 3]
    assert len(dispatcher.sent) == 3
