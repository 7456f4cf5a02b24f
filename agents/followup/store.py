"""Persistence adapters for the follow-up core.

`InMemoryStore` backs tests, dry runs and the seeded CLI. `SqlStore` uses
SQLAlchemy Core; unique constraints enforce one ACTIVE execution per
(sequence, invoice) and one step log entry per (execution, step), and a
losing concurrent write is reported as a no-op.
"""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Iterable
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import sqlalchemy as sa
from sqlalchemy import MetaData
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from .dto import (
    CandidateQuery,
    ExecutionRecord,
    ExecutionStatus,
    Invoice,
    MessageTemplate,
    Payment,
    SequenceDefinition,
    StepLogEntry,
    StopTag,
    TriggerEvent,
    TriggerOutcome,
    TriggerType,
)
from .schema import load_steps_or_empty, steps_to_json

logger = logging.getLogger(__name__)


def _utc(value: datetime | None) -> datetime | None:
    """Normalize to an aware UTC datetime (naive values are taken as UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _matches_query(invoice: Invoice, query: CandidateQuery) -> bool:
    if invoice.company_id != query.company_id:
        return False
    if invoice.status.upper() not in query.statuses:
        return False
    if query.due_before is not None and not invoice.due_date < query.due_before:
        return False
    if query.due_on_or_before is not None and not invoice.due_date <= query.due_on_or_before:
        return False
    return True


class InMemoryStore:
    """Thread-safe in-process implementation of the persistence port.

    Records are copied on the way in and out so callers only change stored
    state through the port methods.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._sequences: dict[str, SequenceDefinition] = {}
        self._invoices: dict[str, Invoice] = {}
        self._templates: dict[str, MessageTemplate] = {}
        self._executions: dict[str, ExecutionRecord] = {}
        self._step_logs: dict[tuple[str, int], StepLogEntry] = {}
        self._events: list[TriggerEvent] = []
        self._unsubscribed: set[str] = set()
        self._stop_signals: list[tuple[str, StopTag, datetime]] = []

    # Seeding
    def add_sequence(self, sequence: SequenceDefinition) -> None:
        with self._lock:
            self._sequences[sequence.sequence_id] = copy.deepcopy(sequence)

    def add_invoice(self, invoice: Invoice) -> None:
        with self._lock:
            self._invoices[invoice.invoice_id] = copy.deepcopy(invoice)

    def add_payment(self, invoice_id: str, payment: Payment) -> None:
        with self._lock:
            self._invoices[invoice_id].payments.append(payment)

    def set_invoice_status(self, invoice_id: str, status: str) -> None:
        with self._lock:
            self._invoices[invoice_id].status = status

    def add_template(self, template: MessageTemplate) -> None:
        with self._lock:
            self._templates[template.template_id] = template

    def unsubscribe(self, email: str) -> None:
        with self._lock:
            self._unsubscribed.add(email.lower())

    def add_stop_signal(self, invoice_id: str, tag: StopTag, observed_at: datetime) -> None:
        with self._lock:
            self._stop_signals.append((invoice_id, tag, observed_at))

    # Sequences and invoices
    def list_active_sequences(self) -> list[SequenceDefinition]:
        with self._lock:
            return [copy.deepcopy(s) for s in self._sequences.values() if s.active]

    def get_sequence(self, sequence_id: str) -> SequenceDefinition | None:
        with self._lock:
            sequence = self._sequences.get(sequence_id)
            return copy.deepcopy(sequence) if sequence else None

    def get_invoice(self, invoice_id: str) -> Invoice | None:
        with self._lock:
            invoice = self._invoices.get(invoice_id)
            return copy.deepcopy(invoice) if invoice else None

    def find_candidate_invoices(self, query: CandidateQuery) -> list[Invoice]:
        with self._lock:
            matches = [i for i in self._invoices.values() if _matches_query(i, query)]
            matches.sort(key=lambda i: i.due_date)
            return [copy.deepcopy(i) for i in matches[: query.limit]]

    def get_template(self, template_id: str) -> MessageTemplate | None:
        with self._lock:
            return self._templates.get(template_id)

    # Executions
    def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        with self._lock:
            record = self._executions.get(execution_id)
            return copy.deepcopy(record) if record else None

    def find_latest_execution(self, sequence_id: str, invoice_id: str) -> ExecutionRecord | None:
        with self._lock:
            records = [
                r
                for r in self._executions.values()
                if r.sequence_id == sequence_id and r.invoice_id == invoice_id
            ]
            if not records:
                return None
            return copy.deepcopy(max(records, key=lambda r: r.started_at))

    def list_executions_for_invoice(
        self, invoice_id: str, status: ExecutionStatus | None = None
    ) -> list[ExecutionRecord]:
        with self._lock:
            return [
                copy.deepcopy(r)
                for r in self._executions.values()
                if r.invoice_id == invoice_id and (status is None or r.status == status)
            ]

    def list_due_executions(self, now: datetime, limit: int) -> list[ExecutionRecord]:
        with self._lock:
            due = [
                r
                for r in self._executions.values()
                if r.status == ExecutionStatus.ACTIVE and r.next_step_at is not None and r.next_step_at <= now
            ]
            due.sort(key=lambda r: r.next_step_at)
            return [copy.deepcopy(r) for r in due[:limit]]

    def count_executions(self, status: ExecutionStatus, company_id: str | None = None) -> int:
        with self._lock:
            return sum(
                1
                for r in self._executions.values()
                if r.status == status and (company_id is None or r.company_id == company_id)
            )

    def create_execution(self, record: ExecutionRecord) -> bool:
        with self._lock:
            for existing in self._executions.values():
                if (
                    existing.status == ExecutionStatus.ACTIVE
                    and existing.sequence_id == record.sequence_id
                    and existing.invoice_id == record.invoice_id
                ):
                    return False
            self._executions[record.execution_id] = copy.deepcopy(record)
            return True

    def update_execution(self, record: ExecutionRecord) -> bool:
        with self._lock:
            stored = self._executions.get(record.execution_id)
            if stored is None or stored.status.is_terminal:
                return False
            self._executions[record.execution_id] = copy.deepcopy(record)
            return True

    # Step log
    def append_step_log(self, entry: StepLogEntry) -> bool:
        key = (entry.execution_id, entry.step_number)
        with self._lock:
            record = self._executions.get(entry.execution_id)
            if key in self._step_logs or record is None or record.status.is_terminal:
                return False
            self._step_logs[key] = entry
            return True

    def list_step_logs(self, execution_id: str) -> list[StepLogEntry]:
        with self._lock:
            entries = [e for (eid, _), e in self._step_logs.items() if eid == execution_id]
        return sorted(entries, key=lambda e: e.step_number)

    def find_latest_step_log(
        self, invoice_id: str, trigger_type: TriggerType, since: datetime
    ) -> StepLogEntry | None:
        with self._lock:
            entries = [
                e
                for e in self._step_logs.values()
                if e.invoice_id == invoice_id and e.trigger_type == trigger_type and e.executed_at > since
            ]
        return max(entries, key=lambda e: e.executed_at) if entries else None

    def count_step_logs_to_recipient(self, recipient: str, since: datetime) -> int:
        recipient = recipient.lower()
        with self._lock:
            return sum(
                1
                for e in self._step_logs.values()
                if e.recipient and e.recipient.lower() == recipient and e.executed_at > since
            )

    # Signals and audit
    def is_unsubscribed(self, email: str) -> bool:
        with self._lock:
            return email.lower() in self._unsubscribed

    def has_stop_signal(self, invoice_id: str, tag: StopTag, since: datetime) -> bool:
        with self._lock:
            return any(
                inv == invoice_id and t == tag and observed_at >= since
                for inv, t, observed_at in self._stop_signals
            )

    def record_trigger_event(self, event: TriggerEvent) -> None:
        with self._lock:
            self._events.append(copy.deepcopy(event))

    def list_trigger_events(self, since: datetime, company_id: str | None = None) -> list[TriggerEvent]:
        with self._lock:
            return [
                copy.deepcopy(e)
                for e in self._events
                if e.created_at >= since and (company_id is None or e.company_id == company_id)
            ]


def build_tables(metadata: MetaData) -> dict[str, sa.Table]:
    """Table definitions used by `SqlStore`."""
    return {
        "sequences": sa.Table(
            "followup_sequences",
            metadata,
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("company_id", sa.String(64), nullable=False, index=True),
            sa.Column("name", sa.Text(), nullable=False),
            sa.Column("active", sa.Boolean(), nullable=False, default=True),
            sa.Column("steps", sa.Text(), nullable=True),
            sa.Column("trigger_config", sa.JSON(), nullable=True),
            sa.Column("attributes", sa.JSON(), nullable=True),
        ),
        "invoices": sa.Table(
            "followup_invoices",
            metadata,
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("company_id", sa.String(64), nullable=False, index=True),
            sa.Column("invoice_number", sa.String(64), nullable=False),
            sa.Column("status", sa.String(32), nullable=False),
            sa.Column("due_date", sa.DateTime(), nullable=False),
            sa.Column("total_amount", sa.String(40), nullable=False),
            sa.Column("currency", sa.String(8), nullable=False, default="AED"),
            sa.Column("customer_id", sa.String(64)),
            sa.Column("customer_name", sa.Text()),
            sa.Column("customer_email", sa.Text()),
            sa.Column("company_name", sa.Text()),
        ),
        "payments": sa.Table(
            "followup_payments",
            metadata,
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("invoice_id", sa.String(64), nullable=False, index=True),
            sa.Column("payment_id", sa.String(64)),
            sa.Column("amount", sa.String(40), nullable=False),
            sa.Column("paid_at", sa.DateTime(), nullable=False),
        ),
        "templates": sa.Table(
            "followup_templates",
            metadata,
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("subject", sa.Text(), nullable=False),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("subject_ar", sa.Text()),
            sa.Column("content_ar", sa.Text()),
        ),
        "executions": sa.Table(
            "followup_executions",
            metadata,
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("sequence_id", sa.String(64), nullable=False, index=True),
            sa.Column("invoice_id", sa.String(64), nullable=False, index=True),
            sa.Column("company_id", sa.String(64), nullable=False),
            sa.Column("total_steps", sa.Integer(), nullable=False),
            sa.Column("trigger_type", sa.String(32), nullable=False),
            sa.Column("trigger_reason", sa.Text(), nullable=False, default=""),
            sa.Column("current_step", sa.Integer(), nullable=False, default=0),
            sa.Column("status", sa.String(16), nullable=False),
            sa.Column("started_at", sa.DateTime(), nullable=False),
            sa.Column("last_step_at", sa.DateTime()),
            sa.Column("next_step_at", sa.DateTime(), index=True),
            sa.Column("stop_reason", sa.Text()),
            sa.Column("failure_count", sa.Integer(), nullable=False, default=0),
            sa.Column("finished_at", sa.DateTime()),
            # "<sequence>:<invoice>" while ACTIVE, NULL once terminal
            sa.Column("active_key", sa.String(130), unique=True),
        ),
        "step_log": sa.Table(
            "followup_step_log",
            metadata,
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("execution_id", sa.String(64), nullable=False),
            sa.Column("sequence_id", sa.String(64), nullable=False),
            sa.Column("invoice_id", sa.String(64), nullable=False, index=True),
            sa.Column("trigger_type", sa.String(32), nullable=False),
            sa.Column("step_number", sa.Integer(), nullable=False),
            sa.Column("dispatch_handles", sa.JSON(), nullable=False),
            sa.Column("executed_at", sa.DateTime(), nullable=False),
            sa.Column("scheduled_for", sa.DateTime()),
            sa.Column("recipient", sa.Text(), index=True),
            sa.UniqueConstraint("execution_id", "step_number", name="uq_followup_step_log_execution_step"),
        ),
        "trigger_events": sa.Table(
            "followup_trigger_events",
            metadata,
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("company_id", sa.String(64), nullable=False, index=True),
            sa.Column("sequence_id", sa.String(64)),
            sa.Column("invoice_id", sa.String(64), nullable=False),
            sa.Column("trigger_type", sa.String(32), nullable=False),
            sa.Column("outcome", sa.String(32), nullable=False),
            sa.Column("success", sa.Boolean(), nullable=False),
            sa.Column("reason", sa.Text()),
            sa.Column("execution_id", sa.String(64)),
            sa.Column("actor_id", sa.String(64), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, index=True),
        ),
        "unsubscribes": sa.Table(
            "followup_unsubscribes",
            metadata,
            sa.Column("email", sa.String(320), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        ),
        "stop_signals": sa.Table(
            "followup_stop_signals",
            metadata,
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("invoice_id", sa.String(64), nullable=False, index=True),
            sa.Column("tag", sa.String(32), nullable=False),
            sa.Column("observed_at", sa.DateTime(), nullable=False),
        ),
    }


def _naive(value: datetime | None) -> datetime | None:
    """UTC datetime without tzinfo for portable DateTime columns."""
    value = _utc(value)
    return value.replace(tzinfo=None) if value else None


class SqlStore:
    """SQLAlchemy Core implementation of the persistence port.

    Datetimes are stored as naive UTC and returned aware.
    """

    def __init__(self, engine: Engine | str):
        if isinstance(engine, str):
            engine = sa.create_engine(engine, future=True)
        self.engine = engine
        self.metadata = MetaData()
        self.tables = build_tables(self.metadata)

    def create_schema(self) -> None:
        self.metadata.create_all(self.engine)

    # Seeding
    def add_sequence(self, sequence: SequenceDefinition) -> None:
        table = self.tables["sequences"]
        with self.engine.begin() as conn:
            conn.execute(sa.delete(table).where(table.c.id == sequence.sequence_id))
            conn.execute(
                sa.insert(table).values(
                    id=sequence.sequence_id,
                    company_id=sequence.company_id,
                    name=sequence.name,
                    active=sequence.active,
                    steps=steps_to_json(sequence.steps),
                    trigger_config=sequence.trigger_config,
                    attributes=sequence.metadata,
                )
            )

    def add_invoice(self, invoice: Invoice) -> None:
        table = self.tables["invoices"]
        with self.engine.begin() as conn:
            conn.execute(sa.delete(table).where(table.c.id == invoice.invoice_id))
            conn.execute(
                sa.insert(table).values(
                    id=invoice.invoice_id,
                    company_id=invoice.company_id,
                    invoice_number=invoice.invoice_number,
                    status=invoice.status.upper(),
                    due_date=_naive(invoice.due_date),
                    total_amount=str(invoice.total_amount),
                    currency=invoice.currency,
                    customer_id=invoice.customer_id,
                    customer_name=invoice.customer_name,
                    customer_email=invoice.customer_email,
                    company_name=invoice.company_name,
                )
            )
        for payment in invoice.payments:
            self.add_payment(invoice.invoice_id, payment)

    def add_payment(self, invoice_id: str, payment: Payment) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                sa.insert(self.tables["payments"]).values(
                    invoice_id=invoice_id,
                    payment_id=payment.payment_id,
                    amount=str(payment.amount),
                    paid_at=_naive(payment.paid_at),
                )
            )

    def set_invoice_status(self, invoice_id: str, status: str) -> None:
        table = self.tables["invoices"]
        with self.engine.begin() as conn:
            conn.execute(sa.update(table).where(table.c.id == invoice_id).values(status=status.upper()))

    def add_template(self, template: MessageTemplate) -> None:
        table = self.tables["templates"]
        with self.engine.begin() as conn:
            conn.execute(sa.delete(table).where(table.c.id == template.template_id))
            conn.execute(
                sa.insert(table).values(
                    id=template.template_id,
                    subject=template.subject,
                    content=template.content,
                    subject_ar=template.subject_ar,
                    content_ar=template.content_ar,
                )
            )

    def unsubscribe(self, email: str) -> None:
        table = self.tables["unsubscribes"]
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    sa.insert(table).values(email=email.lower(), created_at=_naive(datetime.now(UTC)))
                )
        except IntegrityError:
            logger.debug("Email already unsubscribed")

    def add_stop_signal(self, invoice_id: str, tag: StopTag, observed_at: datetime) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                sa.insert(self.tables["stop_signals"]).values(
                    invoice_id=invoice_id, tag=tag.value, observed_at=_naive(observed_at)
                )
            )

    # Row mapping
    def _sequence_from_row(self, row: Any) -> SequenceDefinition:
        return SequenceDefinition(
            sequence_id=row.id,
            company_id=row.company_id,
            name=row.name,
            steps=load_steps_or_empty(row.steps, row.id),
            active=bool(row.active),
            trigger_config=row.trigger_config,
            metadata=row.attributes or {},
        )

    def _invoices_from_rows(self, conn, rows: Iterable[Any]) -> list[Invoice]:
        rows = list(rows)
        if not rows:
            return []

        payments_table = self.tables["payments"]
        payment_rows = conn.execute(
            sa.select(payments_table)
            .where(payments_table.c.invoice_id.in_([r.id for r in rows]))
            .order_by(payments_table.c.paid_at)
        ).all()

        payments: dict[str, list[Payment]] = {}
        for p in payment_rows:
            payments.setdefault(p.invoice_id, []).append(
                Payment(amount=Decimal(p.amount), paid_at=_utc(p.paid_at), payment_id=p.payment_id)
            )

        return [
            Invoice(
                invoice_id=r.id,
                company_id=r.company_id,
                invoice_number=r.invoice_number,
                status=r.status,
                due_date=_utc(r.due_date),
                total_amount=Decimal(r.total_amount),
                currency=r.currency,
                payments=payments.get(r.id, []),
                customer_id=r.customer_id,
                customer_name=r.customer_name,
                customer_email=r.customer_email,
                company_name=r.company_name,
            )
            for r in rows
        ]

    @staticmethod
    def _execution_from_row(row: Any) -> ExecutionRecord:
        return ExecutionRecord(
            execution_id=row.id,
            sequence_id=row.sequence_id,
            invoice_id=row.invoice_id,
            company_id=row.company_id,
            total_steps=row.total_steps,
            trigger_type=TriggerType.parse(row.trigger_type),
            trigger_reason=row.trigger_reason or "",
            current_step=row.current_step,
            status=ExecutionStatus(row.status),
            started_at=_utc(row.started_at),
            last_step_at=_utc(row.last_step_at),
            next_step_at=_utc(row.next_step_at),
            stop_reason=row.stop_reason,
            failure_count=row.failure_count,
            finished_at=_utc(row.finished_at),
        )

    @staticmethod
    def _execution_values(record: ExecutionRecord) -> dict[str, Any]:
        active_key = None
        if record.status == ExecutionStatus.ACTIVE:
            active_key = f"{record.sequence_id}:{record.invoice_id}"
        return {
            "sequence_id": record.sequence_id,
            "invoice_id": record.invoice_id,
            "company_id": record.company_id,
            "total_steps": record.total_steps,
            "trigger_type": record.trigger_type.value,
            "trigger_reason": record.trigger_reason,
            "current_step": record.current_step,
            "status": record.status.value,
            "started_at": _naive(record.started_at),
            "last_step_at": _naive(record.last_step_at),
            "next_step_at": _naive(record.next_step_at),
            "stop_reason": record.stop_reason,
            "failure_count": record.failure_count,
            "finished_at": _naive(record.finished_at),
            "active_key": active_key,
        }

    @staticmethod
    def _step_log_from_row(row: Any) -> StepLogEntry:
        return StepLogEntry(
            execution_id=row.execution_id,
            sequence_id=row.sequence_id,
            invoice_id=row.invoice_id,
            trigger_type=TriggerType.parse(row.trigger_type),
            step_number=row.step_number,
            dispatch_handles=tuple(row.dispatch_handles or ()),
            executed_at=_utc(row.executed_at),
            scheduled_for=_utc(row.scheduled_for),
            recipient=row.recipient,
        )

    # Sequences and invoices
    def list_active_sequences(self) -> list[SequenceDefinition]:
        table = self.tables["sequences"]
        with self.engine.connect() as conn:
            rows = conn.execute(sa.select(table).where(table.c.active.is_(True)).order_by(table.c.id)).all()
        return [self._sequence_from_row(r) for r in rows]

    def get_sequence(self, sequence_id: str) -> SequenceDefinition | None:
        table = self.tables["sequences"]
        with self.engine.connect() as conn:
            row = conn.execute(sa.select(table).where(table.c.id == sequence_id)).first()
        return self._sequence_from_row(row) if row else None

    def get_invoice(self, invoice_id: str) -> Invoice | None:
        table = self.tables["invoices"]
        with self.engine.connect() as conn:
            rows = conn.execute(sa.select(table).where(table.c.id == invoice_id)).all()
            invoices = self._invoices_from_rows(conn, rows)
        return invoices[0] if invoices else None

    def find_candidate_invoices(self, query: CandidateQuery) -> list[Invoice]:
        table = self.tables["invoices"]
        stmt = sa.select(table).where(
            table.c.company_id == query.company_id,
            table.c.status.in_(query.statuses),
        )
        if query.due_before is not None:
            stmt = stmt.where(table.c.due_date < _naive(query.due_before))
        if query.due_on_or_before is not None:
            stmt = stmt.where(table.c.due_date <= _naive(query.due_on_or_before))
        stmt = stmt.order_by(table.c.due_date).limit(query.limit)

        with self.engine.connect() as conn:
            return self._invoices_from_rows(conn, conn.execute(stmt).all())

    def get_template(self, template_id: str) -> MessageTemplate | None:
        table = self.tables["templates"]
        with self.engine.connect() as conn:
            row = conn.execute(sa.select(table).where(table.c.id == template_id)).first()
        if row is None:
            return None
        return MessageTemplate(
            template_id=row.id,
            subject=row.subject,
            content=row.content,
            subject_ar=row.subject_ar,
            content_ar=row.content_ar,
        )

    # Executions
    def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        table = self.tables["executions"]
        with self.engine.connect() as conn:
            row = conn.execute(sa.select(table).where(table.c.id == execution_id)).first()
        return self._execution_from_row(row) if row else None

    def find_latest_execution(self, sequence_id: str, invoice_id: str) -> ExecutionRecord | None:
        table = self.tables["executions"]
        stmt = (
            sa.select(table)
            .where(table.c.sequence_id == sequence_id, table.c.invoice_id == invoice_id)
            .order_by(table.c.started_at.desc())
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).first()
        return self._execution_from_row(row) if row else None

    def list_executions_for_invoice(
        self, invoice_id: str, status: ExecutionStatus | None = None
    ) -> list[ExecutionRecord]:
        table = self.tables["executions"]
        stmt = sa.select(table).where(table.c.invoice_id == invoice_id)
        if status is not None:
            stmt = stmt.where(table.c.status == status.value)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(table.c.started_at)).all()
        return [self._execution_from_row(r) for r in rows]

    def list_due_executions(self, now: datetime, limit: int) -> list[ExecutionRecord]:
        table = self.tables["executions"]
        stmt = (
            sa.select(table)
            .where(
                table.c.status == ExecutionStatus.ACTIVE.value,
                table.c.next_step_at.is_not(None),
                table.c.next_step_at <= _naive(now),
            )
            .order_by(table.c.next_step_at)
            .limit(limit)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).all()
        return [self._execution_from_row(r) for r in rows]

    def count_executions(self, status: ExecutionStatus, company_id: str | None = None) -> int:
        table = self.tables["executions"]
        stmt = sa.select(sa.func.count()).select_from(table).where(table.c.status == status.value)
        if company_id is not None:
            stmt = stmt.where(table.c.company_id == company_id)
        with self.engine.connect() as conn:
            return int(conn.execute(stmt).scalar_one())

    def create_execution(self, record: ExecutionRecord) -> bool:
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    sa.insert(self.tables["executions"]).values(
                        id=record.execution_id, **self._execution_values(record)
                    )
                )
        except IntegrityError:
            return False
        return True

    def update_execution(self, record: ExecutionRecord) -> bool:
        table = self.tables["executions"]
        with self.engine.begin() as conn:
            result = conn.execute(
                sa.update(table)
                .where(table.c.id == record.execution_id, table.c.status == ExecutionStatus.ACTIVE.value)
                .values(**self._execution_values(record))
            )
        return result.rowcount > 0

    # Step log
    def append_step_log(self, entry: StepLogEntry) -> bool:
        executions = self.tables["executions"]
        try:
            with self.engine.begin() as conn:
                status = conn.execute(
                    sa.select(executions.c.status).where(executions.c.id == entry.execution_id)
                ).scalar_one_or_none()
                if status != ExecutionStatus.ACTIVE.value:
                    return False
                conn.execute(
                    sa.insert(self.tables["step_log"]).values(
                        execution_id=entry.execution_id,
                        sequence_id=entry.sequence_id,
                        invoice_id=entry.invoice_id,
                        trigger_type=entry.trigger_type.value,
                        step_number=entry.step_number,
                        dispatch_handles=list(entry.dispatch_handles),
                        executed_at=_naive(entry.executed_at),
                        scheduled_for=_naive(entry.scheduled_for),
                        recipient=entry.recipient.lower() if entry.recipient else None,
                    )
                )
        except IntegrityError:
            return False
        return True

    def list_step_logs(self, execution_id: str) -> list[StepLogEntry]:
        table = self.tables["step_log"]
        stmt = sa.select(table).where(table.c.execution_id == execution_id).order_by(table.c.step_number)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).all()
        return [self._step_log_from_row(r) for r in rows]

    def find_latest_step_log(
        self, invoice_id: str, trigger_type: TriggerType, since: datetime
    ) -> StepLogEntry | None:
        table = self.tables["step_log"]
        stmt = (
            sa.select(table)
            .where(
                table.c.invoice_id == invoice_id,
                table.c.trigger_type == trigger_type.value,
                table.c.executed_at > _naive(since),
            )
            .order_by(table.c.executed_at.desc())
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).first()
        return self._step_log_from_row(row) if row else None

    def count_step_logs_to_recipient(self, recipient: str, since: datetime) -> int:
        table = self.tables["step_log"]
        stmt = (
            sa.select(sa.func.count())
            .select_from(table)
            .where(table.c.recipient == recipient.lower(), table.c.executed_at > _naive(since))
        )
        with self.engine.connect() as conn:
            return int(conn.execute(stmt).scalar_one())

    # Signals and audit
    def is_unsubscribed(self, email: str) -> bool:
        table = self.tables["unsubscribes"]
        with self.engine.connect() as conn:
            row = conn.execute(sa.select(table.c.email).where(table.c.email == email.lower())).first()
        return row is not None

    def has_stop_signal(self, invoice_id: str, tag: StopTag, since: datetime) -> bool:
        table = self.tables["stop_signals"]
        stmt = (
            sa.select(table.c.id)
            .where(
                table.c.invoice_id == invoice_id,
                table.c.tag == tag.value,
                table.c.observed_at >= _naive(since),
            )
            .limit(1)
        )
        with self.engine.connect() as conn:
            return conn.execute(stmt).first() is not None

    def record_trigger_event(self, event: TriggerEvent) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                sa.insert(self.tables["trigger_events"]).values(
                    id=event.event_id,
                    company_id=event.company_id,
                    sequence_id=event.sequence_id,
                    invoice_id=event.invoice_id,
                    trigger_type=event.trigger_type.value,
                    outcome=event.outcome.value,
                    success=event.success,
                    reason=event.reason,
                    execution_id=event.execution_id,
                    actor_id=event.actor_id,
                    created_at=_naive(event.created_at),
                )
            )

    def list_trigger_events(self, since: datetime, company_id: str | None = None) -> list[TriggerEvent]:
        table = self.tables["trigger_events"]
        stmt = sa.select(table).where(table.c.created_at >= _naive(since))
        if company_id is not None:
            stmt = stmt.where(table.c.company_id == company_id)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(table.c.created_at)).all()
        return [
            TriggerEvent(
                company_id=r.company_id,
                sequence_id=r.sequence_id,
                invoice_id=r.invoice_id,
                trigger_type=TriggerType.parse(r.trigger_type),
                outcome=TriggerOutcome(r.outcome),
                success=bool(r.success),
                reason=r.reason,
                execution_id=r.execution_id,
                actor_id=r.actor_id,
                event_id=r.id,
                created_at=_utc(r.created_at),
            )
            for r in rows
        ]


__all__ = ["InMemoryStore", "SqlStore", "build_tables"]
