"""Execution controller for follow-up sequences.

Owns the lifecycle of an execution record: start, step advance, stop and
the periodic sweep over executions whose next step is due. Step progress
is derived from the append-only step log, so repeated or concurrent
continuation calls never dispatch a step twice.
"""

import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import UTC, datetime, timedelta

from backend.core.observability import metrics

from .config import FollowUpConfig
from .dto import (
    CLOSED_STATUSES,
    DispatchHints,
    ExecutionRecord,
    ExecutionResult,
    ExecutionStatus,
    Invoice,
    PendingRunResult,
    SequenceDefinition,
    StepLogEntry,
    StopTag,
    TriggerType,
)
from .errors import DataError
from .ids import UuidGenerator
from .policies import StopConditionEvaluator, determine_priority
from .ports import CalendarOracle, DispatchPort, IdGenerator, PersistencePort
from .templates import TemplateEngine

_RATE_WINDOW = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ExecutionController:
    """Starts, advances and stops sequence executions.

    Collaborators are injected; no cross-invoice lock is held while
    waiting on the dispatch port.
    """

    def __init__(
        self,
        store: PersistencePort,
        dispatcher: DispatchPort,
        calendar: CalendarOracle,
        config: FollowUpConfig | None = None,
        id_generator: IdGenerator | None = None,
        clock: Callable[[], datetime] | None = None,
        template_engine: TemplateEngine | None = None,
    ):
        """Initialize controller.

        Args:
            store: Persistence port
            dispatcher: Dispatch port
            calendar: Business calendar oracle
            config: Follow-up configuration
            id_generator: Source of execution IDs
            clock: Returns the current instant (UTC)
            template_engine: Message renderer
        """
        self.store = store
        self.dispatcher = dispatcher
        self.calendar = calendar
        self.config = config or FollowUpConfig()
        self.id_generator = id_generator or UuidGenerator()
        self.clock = clock or _utcnow
        self.templates = template_engine or TemplateEngine(self.config, store)
        self.stop_evaluator = StopConditionEvaluator(store)
        self.logger = logging.getLogger(__name__)

    def clamp(self, instant: datetime) -> datetime:
        """Move an instant forward to the next permitted business instant."""
        if self.calendar.is_permitted_now(instant):
            return instant
        return self.calendar.next_permitted_instant(instant)

    def validate_start(
        self, sequence: SequenceDefinition, invoice: Invoice, now: datetime
    ) -> tuple[bool, str | None]:
        """Check whether a sequence may start for an invoice.

        Args:
            sequence: Sequence definition
            invoice: Invoice snapshot
            now: Current timestamp

        Returns:
            Tuple of (can_start, rejection reason)
        """
        if not sequence.active:
            return False, f"Sequence {sequence.sequence_id} is not active"

        if not sequence.steps:
            return False, f"Sequence {sequence.sequence_id} has no valid steps"

        status = invoice.status.upper()
        if status in CLOSED_STATUSES:
            return False, f"Invoice {invoice.invoice_number} is {status}"

        email = invoice.customer_email
        if email:
            if self.store.is_unsubscribed(email):
                return False, "Customer has unsubscribed from follow-ups"

            sent = self.store.count_step_logs_to_recipient(email, now - _RATE_WINDOW)
            if sent >= self.config.max_messages_per_customer_per_day:
                return (
                    False,
                    f"Daily message limit reached ({sent}/"
                    f"{self.config.max_messages_per_customer_per_day})",
                )

        return True, None

    def start(
        self,
        sequence: SequenceDefinition,
        invoice: Invoice,
        trigger_type: TriggerType = TriggerType.MANUAL_TRIGGER,
        trigger_reason: str = "",
        start_immediately: bool | None = None,
    ) -> ExecutionResult:
        """Start a sequence execution for an invoice.

        Step 1 runs synchronously when starting immediately or when its
        business-clamped time is not in the future; otherwise the record
        waits for the pending sweep.

        Args:
            sequence: Sequence definition
            invoice: Invoice snapshot
            trigger_type: Trigger type that caused the start
            trigger_reason: Human readable trigger explanation
            start_immediately: Override of `config.start_immediately`

        Returns:
            Execution result (`duplicate` is set when an ACTIVE execution exists)
        """
        now = self.clock()
        result = ExecutionResult(success=False)

        try:
            can_start, reason = self.validate_start(sequence, invoice, now)
            if not can_start:
                result.add_error(reason)
                return result

            active = [
                r
                for r in self.store.list_executions_for_invoice(invoice.invoice_id, ExecutionStatus.ACTIVE)
                if r.sequence_id == sequence.sequence_id
            ]
            if active:
                result.duplicate = True
                result.execution_id = active[0].execution_id
                result.status = active[0].status
                result.add_error("Sequence already running for this invoice")
                return result

            first_at = self.clamp(now + timedelta(days=sequence.steps[0].delay_days))
            record = ExecutionRecord(
                execution_id=self.id_generator.new_id(),
                sequence_id=sequence.sequence_id,
                invoice_id=invoice.invoice_id,
                company_id=sequence.company_id,
                total_steps=sequence.total_steps,
                trigger_type=trigger_type,
                trigger_reason=trigger_reason,
                started_at=now,
                next_step_at=first_at,
            )

            if not self.store.create_execution(record):
                self.logger.info(
                    "Lost start race, execution already exists",
                    extra={"sequence_id": sequence.sequence_id, "invoice_id": invoice.invoice_id},
                )
                result.duplicate = True
                result.add_error("Sequence already running for this invoice")
                return result

            self.logger.info(
                "Sequence execution started",
                extra={
                    "execution_id": record.execution_id,
                    "sequence_id": sequence.sequence_id,
                    "invoice_id": invoice.invoice_id,
                    "trigger_type": trigger_type.value,
                },
            )

            if start_immediately is None:
                start_immediately = self.config.start_immediately

            if start_immediately or first_at <= now:
                return self._advance_or_fail(record, sequence, invoice, now)

            result.success = True
            result.execution_id = record.execution_id
            result.status = record.status
            result.next_step_at = first_at
            result.steps_remaining = record.total_steps
            return result

        except Exception as e:
            self.logger.error(
                f"Failed to start sequence: {e}",
                extra={"sequence_id": sequence.sequence_id, "invoice_id": invoice.invoice_id},
            )
            result.add_error(f"Failed to start sequence: {e}")
            return result

    def continue_execution(self, execution_id: str) -> ExecutionResult:
        """Run the next step of an execution.

        Terminal executions are left untouched. Missing sequence or invoice
        data fails the execution.

        Args:
            execution_id: Execution ID

        Returns:
            Execution result
        """
        now = self.clock()
        result = ExecutionResult(success=False, execution_id=execution_id)

        try:
            record = self.store.get_execution(execution_id)
            if record is None:
                result.add_error(str(DataError("execution", execution_id)))
                return result

            if record.status.is_terminal:
                return ExecutionResult(
                    success=True,
                    execution_id=execution_id,
                    status=record.status,
                    steps_executed=record.current_step,
                    steps_remaining=record.total_steps - record.current_step,
                    stop_reason=record.stop_reason,
                )

            sequence = self.store.get_sequence(record.sequence_id)
            invoice = self.store.get_invoice(record.invoice_id)
            missing = None
            if sequence is None:
                missing = DataError("sequence", record.sequence_id)
            elif invoice is None:
                missing = DataError("invoice", record.invoice_id)

            if missing is not None:
                self._finish(record, ExecutionStatus.FAILED, now, str(missing))
                result.status = record.status
                result.add_error(str(missing))
                return result

            return self._advance_or_fail(record, sequence, invoice, now)

        except Exception as e:
            self.logger.error(f"Failed to continue execution: {e}", extra={"execution_id": execution_id})
            result.add_error(f"Failed to continue execution: {e}")
            return result

    def _advance_or_fail(
        self,
        record: ExecutionRecord,
        sequence: SequenceDefinition,
        invoice: Invoice,
        now: datetime,
    ) -> ExecutionResult:
        """Advance a stored execution; an unexpected error counts as a failed attempt.

        The record already exists at this point, so it must end up either
        rescheduled or FAILED.
        """
        try:
            return self._advance(record, sequence, invoice, now)
        except Exception as e:
            self.logger.error(
                f"Step processing failed: {e}",
                extra={"execution_id": record.execution_id, "invoice_id": record.invoice_id},
            )
            result = ExecutionResult(success=True, execution_id=record.execution_id)
            return self._record_dispatch_failure(record, record.current_step + 1, e, now, result)

    def _advance(
        self,
        record: ExecutionRecord,
        sequence: SequenceDefinition,
        invoice: Invoice,
        now: datetime,
    ) -> ExecutionResult:
        """Dispatch the next step of an ACTIVE execution."""
        result = ExecutionResult(success=True, execution_id=record.execution_id)

        logs = self.store.list_step_logs(record.execution_id)
        last_step = max((entry.step_number for entry in logs), default=0)
        step_number = last_step + 1
        step = sequence.step(step_number)

        if step is None:
            record.current_step = min(last_step, record.total_steps)
            self._finish(record, ExecutionStatus.COMPLETED, now)
            result.status = record.status
            result.steps_executed = record.current_step
            return result

        stop_reason = self.stop_evaluator.check(invoice, step.stop_conditions, record.started_at)
        if stop_reason is None and invoice.customer_email and self.store.is_unsubscribed(invoice.customer_email):
            stop_reason = f"stop condition: {StopTag.UNSUBSCRIBED.reason}"

        if stop_reason:
            self._stop_record(record, stop_reason, now)
            result.status = record.status
            result.stop_reason = stop_reason
            result.steps_executed = record.current_step
            result.steps_remaining = record.total_steps - record.current_step
            return result

        scheduled_for = max(now, record.next_step_at) if record.next_step_at else now
        hints = DispatchHints(
            scheduled_for=scheduled_for,
            priority=determine_priority(step_number, step.tone),
            company_id=record.company_id,
            invoice_id=record.invoice_id,
            sequence_id=record.sequence_id,
            execution_id=record.execution_id,
            step_number=step_number,
            max_retries=self.config.max_dispatch_attempts,
            metadata={
                "trigger_type": record.trigger_type.value,
                "tone": step.tone.value,
                "language": step.language.value,
            },
        )

        handles: list[str] = []
        try:
            rendered = self.templates.render_step(step, invoice, now)
            for message in rendered.messages:
                handles.append(self.dispatcher.dispatch(message, hints))
        except Exception as e:
            self._cancel_handles(handles)
            return self._record_dispatch_failure(record, step_number, e, now, result)

        entry = StepLogEntry(
            execution_id=record.execution_id,
            sequence_id=record.sequence_id,
            invoice_id=record.invoice_id,
            trigger_type=record.trigger_type,
            step_number=step_number,
            dispatch_handles=tuple(handles),
            executed_at=now,
            scheduled_for=scheduled_for,
            recipient=invoice.customer_email,
        )
        if not self.store.append_step_log(entry):
            # Another worker logged this step first
            self._cancel_handles(handles)
            self.logger.info(
                "Step already logged, dispatch withdrawn",
                extra={"execution_id": record.execution_id, "step_number": step_number},
            )
            result.duplicate = True
            result.status = record.status
            result.steps_executed = last_step
            return result

        metrics.increment_steps_dispatched()
        record.current_step = step_number
        record.last_step_at = now
        record.failure_count = 0

        if step_number >= sequence.total_steps:
            self._finish(record, ExecutionStatus.COMPLETED, now)
        else:
            following = sequence.step(step_number + 1)
            record.next_step_at = self.clamp(now + timedelta(days=following.delay_days))
            self.store.update_execution(record)

        self.logger.info(
            "Sequence step dispatched",
            extra={
                "execution_id": record.execution_id,
                "step_number": step_number,
                "handles": len(handles),
                "status": record.status.value,
            },
        )

        result.status = record.status
        result.dispatch_handles = handles
        result.next_step_at = record.next_step_at
        result.steps_executed = step_number
        result.steps_remaining = record.total_steps - step_number
        return result

    def _record_dispatch_failure(
        self,
        record: ExecutionRecord,
        step_number: int,
        error: Exception,
        now: datetime,
        result: ExecutionResult,
    ) -> ExecutionResult:
        """Count a failed dispatch; retry later or fail the execution."""
        metrics.increment_dispatch_failures()
        record.failure_count += 1

        if record.failure_count >= self.config.max_dispatch_attempts:
            self._finish(
                record,
                ExecutionStatus.FAILED,
                now,
                f"dispatch failed after {record.failure_count} attempts: {error}",
            )
        else:
            delay = timedelta(seconds=self.config.backoff_seconds(record.failure_count))
            record.next_step_at = self.clamp(now + delay)
            self.store.update_execution(record)

        self.logger.warning(
            f"Dispatch failed for step {step_number}: {error}",
            extra={
                "execution_id": record.execution_id,
                "failure_count": record.failure_count,
                "status": record.status.value,
            },
        )

        result.status = record.status
        result.next_step_at = record.next_step_at
        result.steps_executed = record.current_step
        result.steps_remaining = record.total_steps - record.current_step
        result.add_error(f"Dispatch failed for step {step_number}: {error}")
        return result

    def _cancel_handles(self, handles) -> None:
        for handle in handles:
            try:
                self.dispatcher.cancel(handle)
            except Exception as e:
                self.logger.warning(f"Failed to cancel dispatch {handle}: {e}")

    def _finish(
        self, record: ExecutionRecord, status: ExecutionStatus, now: datetime, reason: str | None = None
    ) -> bool:
        """Move a record to a terminal status; False if storage already holds one."""
        record.status = status
        record.next_step_at = None
        record.finished_at = now
        if reason:
            record.stop_reason = reason
        if not self.store.update_execution(record):
            self.logger.info(
                "Execution already finished elsewhere",
                extra={"execution_id": record.execution_id, "status": status.value},
            )
            return False
        metrics.increment_executions_finished(status.value)
        return True

    def _stop_record(self, record: ExecutionRecord, reason: str, now: datetime) -> bool:
        """Mark the record STOPPED and cancel queued dispatches."""
        if not self._finish(record, ExecutionStatus.STOPPED, now, reason):
            return False

        for entry in self.store.list_step_logs(record.execution_id):
            if entry.scheduled_for and entry.scheduled_for > now:
                self._cancel_handles(entry.dispatch_handles)

        self.logger.info(
            "Sequence execution stopped",
            extra={"execution_id": record.execution_id, "reason": reason},
        )
        return True

    def stop(self, sequence_id: str, invoice_id: str, reason: str) -> bool:
        """Stop the ACTIVE execution of a sequence for an invoice.

        Args:
            sequence_id: Sequence ID
            invoice_id: Invoice ID
            reason: Stop reason stored on the record

        Returns:
            True if an execution was stopped, False if nothing was active
        """
        now = self.clock()
        changed = False
        for record in self.store.list_executions_for_invoice(invoice_id, ExecutionStatus.ACTIVE):
            if record.sequence_id != sequence_id:
                continue
            if self._stop_record(record, reason, now):
                changed = True
        return changed

    def process_pending_executions(self, limit: int | None = None) -> PendingRunResult:
        """Continue every ACTIVE execution whose next step is due.

        Args:
            limit: Maximum executions per sweep (default `pending_batch_size`)

        Returns:
            Sweep summary
        """
        start_time = time.time()
        summary = PendingRunResult()

        try:
            due = self.store.list_due_executions(self.clock(), limit or self.config.pending_batch_size)
        except Exception as e:
            self.logger.error(f"Failed to load pending executions: {e}")
            summary.errors.append(f"Failed to load pending executions: {e}")
            return summary

        with ThreadPoolExecutor(max_workers=self.config.max_workers) as pool:
            futures = {pool.submit(self.continue_execution, r.execution_id): r for r in due}
            for future in as_completed(futures):
                execution_id = futures[future].execution_id
                summary.processed += 1
                outcome = future.result()
                if outcome.success:
                    summary.successful += 1
                else:
                    summary.failed += 1
                    summary.errors.extend(f"Execution {execution_id}: {err}" for err in outcome.errors)

        metrics.observe_duration(start_time, "followup_pending_sweep_duration_ms")
        self.logger.info(
            "Pending executions processed",
            extra={
                "processed": summary.processed,
                "successful": summary.successful,
                "failed": summary.failed,
            },
        )
        return summary

    def get_execution_status(self, sequence_id: str, invoice_id: str) -> ExecutionRecord | None:
        """Latest execution record for a (sequence, invoice) pair."""
        return self.store.find_latest_execution(sequence_id, invoice_id)
