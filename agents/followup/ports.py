"""Collaborator contracts for the follow-up core.

The trigger monitor and execution controller receive implementations of
these protocols through their constructors. Adapters live in `store`,
`dispatch` and `calendar`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from .dto import (
    CandidateQuery,
    DispatchHints,
    ExecutionRecord,
    ExecutionStatus,
    Invoice,
    MessageTemplate,
    RenderedMessage,
    SequenceDefinition,
    StepLogEntry,
    StopTag,
    TriggerEvent,
    TriggerType,
)


@runtime_checkable
class CalendarOracle(Protocol):
    """Business calendar contract.

    Both calls are pure lookups and safe to call concurrently.
    """

    def is_permitted_now(self, instant: datetime) -> bool: ...

    def next_permitted_instant(self, instant: datetime) -> datetime: ...


@runtime_checkable
class DispatchPort(Protocol):
    """Message delivery contract.

    `dispatch` returns an opaque handle once the message is accepted and
    raises on rejection. Acceptance does not imply delivery.
    """

    def dispatch(self, message: RenderedMessage, hints: DispatchHints) -> str: ...

    def cancel(self, handle: str) -> bool: ...


@runtime_checkable
class IdGenerator(Protocol):
    """Source of identifiers for executions and audit events."""

    def new_id(self) -> str: ...


@runtime_checkable
class PersistencePort(Protocol):
    """Read/write access to invoices, sequences, executions and audit entries.

    Write contract:
    - `create_execution` returns False when an ACTIVE execution already
      exists for the (sequence, invoice) pair; nothing is written.
    - `append_step_log` returns False when the (execution, step) entry
      already exists; nothing is written.
    """

    # Sequences and invoices
    def list_active_sequences(self) -> list[SequenceDefinition]: ...

    def get_sequence(self, sequence_id: str) -> SequenceDefinition | None: ...

    def get_invoice(self, invoice_id: str) -> Invoice | None: ...

    def find_candidate_invoices(self, query: CandidateQuery) -> list[Invoice]: ...

    def get_template(self, template_id: str) -> MessageTemplate | None: ...

    # Executions
    def get_execution(self, execution_id: str) -> ExecutionRecord | None: ...

    def find_latest_execution(self, sequence_id: str, invoice_id: str) -> ExecutionRecord | None: ...

    def list_executions_for_invoice(
        self, invoice_id: str, status: ExecutionStatus | None = None
    ) -> list[ExecutionRecord]: ...

    def list_due_executions(self, now: datetime, limit: int) -> list[ExecutionRecord]: ...

    def count_executions(self, status: ExecutionStatus, company_id: str | None = None) -> int: ...

    def create_execution(self, record: ExecutionRecord) -> bool: ...

    def update_execution(self, record: ExecutionRecord) -> bool:
        """Persist changes to an execution that is still ACTIVE in storage."""
        ...

    # Step log
    def append_step_log(self, entry: StepLogEntry) -> bool: ...

    def list_step_logs(self, execution_id: str) -> list[StepLogEntry]: ...

    def find_latest_step_log(
        self, invoice_id: str, trigger_type: TriggerType, since: datetime
    ) -> StepLogEntry | None: ...

    def count_step_logs_to_recipient(self, recipient: str, since: datetime) -> int: ...

    # Signals and audit
    def is_unsubscribed(self, email: str) -> bool: ...

    def has_stop_signal(self, invoice_id: str, tag: StopTag, since: datetime) -> bool: ...

    def record_trigger_event(self, event: TriggerEvent) -> None: ...

    def list_trigger_events(
        self, since: datetime, company_id: str | None = None
    ) -> list[TriggerEvent]: ...
