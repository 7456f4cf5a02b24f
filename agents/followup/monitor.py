"""Trigger monitor for follow-up sequences.

Runs one evaluation cycle over all active sequences, handles manual
triggers and reacts to invoice events. Every start decision leaves an
audit trigger event behind so it can be explained after the fact.
"""

import logging
import threading
import time
from collections import Counter
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from backend.core.observability import metrics

from .config import FollowUpConfig
from .controller import ExecutionController
from .dto import (
    CLOSED_STATUSES,
    ExecutionStatus,
    HookResult,
    Invoice,
    InvoiceStatus,
    MonitoringMetrics,
    MonitorResult,
    SequenceDefinition,
    TriggerEvent,
    TriggerExecutionResult,
    TriggerOutcome,
    TriggerRule,
    TriggerType,
)
from .errors import DataError, EvaluationError
from .guards import GuardDecision, TriggerGuards
from .ids import UuidGenerator
from .policies import ConditionEvaluator, EligibilityValidator, StopConditionEvaluator
from .ports import CalendarOracle, IdGenerator, PersistencePort
from .rules import RuleParser
from .selector import CandidateSelector

_SUCCESS_OUTCOMES = (TriggerOutcome.TRIGGERED, TriggerOutcome.MANUAL)
_ATTEMPT_OUTCOMES = (TriggerOutcome.TRIGGERED, TriggerOutcome.MANUAL, TriggerOutcome.FAILED)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class CandidateDecision:
    """Outcome of evaluating one invoice against one rule."""

    outcome: TriggerOutcome | None
    reason: str | None = None
    execution_id: str | None = None
    warnings: list[str] = field(default_factory=list)


class _SequenceCycle:
    """Per-sequence bookkeeping for one evaluation pass.

    An invoice is decided at most once per sequence per cycle, by the first
    rule that gets past its own cooldown.
    """

    def __init__(self):
        self._claimed: set[str] = set()
        self._lock = threading.Lock()

    def claim(self, invoice_id: str) -> bool:
        with self._lock:
            if invoice_id in self._claimed:
                return False
            self._claimed.add(invoice_id)
            return True

    def release(self, invoice_id: str) -> None:
        with self._lock:
            self._claimed.discard(invoice_id)


class TriggerMonitor:
    """Evaluates trigger rules and starts sequence executions."""

    def __init__(
        self,
        store: PersistencePort,
        controller: ExecutionController,
        calendar: CalendarOracle,
        config: FollowUpConfig | None = None,
        id_generator: IdGenerator | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize monitor.

        Args:
            store: Persistence port
            controller: Execution controller used to start sequences
            calendar: Business calendar oracle
            config: Follow-up configuration
            id_generator: Source of audit event IDs
            clock: Returns the current instant (UTC)
        """
        self.store = store
        self.controller = controller
        self.config = config or FollowUpConfig()
        self.id_generator = id_generator or UuidGenerator()
        self.clock = clock or _utcnow
        self.logger = logging.getLogger(__name__)

        self.rule_parser = RuleParser(self.config)
        self.selector = CandidateSelector(store, self.config)
        self.evaluator = ConditionEvaluator()
        self.eligibility = EligibilityValidator(self.config)
        self.stop_evaluator = StopConditionEvaluator(store)
        self.guards = TriggerGuards(store, calendar, self.config)

    def run_once(self) -> MonitorResult:
        """Run one full trigger evaluation cycle.

        Safe to call repeatedly and concurrently: dedup state is re-read from
        persistence for every candidate.

        Returns:
            Cycle summary; never raises
        """
        start_time = time.time()
        result = MonitorResult()
        now = self.clock()

        try:
            sequences = self.store.list_active_sequences()
        except Exception as e:
            self.logger.error(f"Failed to load active sequences: {e}")
            result.errors.append(f"Failed to load active sequences: {e}")
            result.processing_time_seconds = time.time() - start_time
            return result

        for sequence in sequences:
            result.processed += 1
            try:
                self._process_sequence(sequence, now, result)
            except Exception as e:
                error = EvaluationError(sequence.sequence_id, e)
                self.logger.error(str(error), extra={"sequence_id": sequence.sequence_id})
                result.errors.append(f"Sequence {sequence.sequence_id} aborted: {e}")

        result.processing_time_seconds = time.time() - start_time
        metrics.observe_duration(start_time, "followup_cycle_duration_ms")

        self.logger.info(
            "Trigger monitor cycle finished",
            extra={
                "processed": result.processed,
                "triggered": result.triggered,
                "deferred": result.deferred,
                "errors": len(result.errors),
            },
        )
        return result

    def _process_sequence(self, sequence: SequenceDefinition, now: datetime, result: MonitorResult) -> None:
        """Evaluate all rules of one sequence.

        Raises:
            Exception: Collaborator failures abort the sequence
        """
        parsed = self.rule_parser.parse(sequence)
        result.warnings.extend(parsed.warnings)

        if parsed.is_empty:
            self.logger.debug("Sequence has no trigger rules", extra={"sequence_id": sequence.sequence_id})
            return

        cycle = _SequenceCycle()
        for rule in parsed.rules:
            candidates = self.selector.select(sequence.company_id, rule.trigger_type, now)
            if not candidates:
                continue

            with ThreadPoolExecutor(max_workers=self.config.max_workers) as pool:
                futures = [
                    pool.submit(self.evaluate_candidate, sequence, rule, invoice, now, cycle)
                    for invoice in candidates
                ]
                for future in as_completed(futures):
                    decision = future.result()
                    result.warnings.extend(decision.warnings)
                    if decision.outcome == TriggerOutcome.TRIGGERED:
                        result.triggered += 1
                    elif decision.outcome == TriggerOutcome.DEFERRED:
                        result.deferred += 1
                    elif decision.outcome == TriggerOutcome.FAILED:
                        result.errors.append(
                            f"Sequence {sequence.sequence_id}: start failed: {decision.reason}"
                        )

    def evaluate_candidate(
        self,
        sequence: SequenceDefinition,
        rule: TriggerRule,
        invoice: Invoice,
        now: datetime,
        cycle: _SequenceCycle | None = None,
    ) -> CandidateDecision:
        """Run conditions, guards and eligibility for one invoice, then start.

        Args:
            sequence: Sequence definition
            rule: Rule being evaluated
            invoice: Candidate invoice
            now: Evaluation instant
            cycle: Per-sequence cycle state

        Returns:
            Candidate decision (outcome None when already decided this cycle)
        """
        matched, mismatch = self.evaluator.matches(rule, invoice, now)
        if not matched:
            if self.config.audit_unmatched:
                self._audit(sequence, invoice, rule.trigger_type, TriggerOutcome.NOT_MATCHED, mismatch, now)
            return CandidateDecision(TriggerOutcome.NOT_MATCHED, mismatch)

        if cycle is not None and not cycle.claim(invoice.invoice_id):
            return CandidateDecision(None)

        decision = self.guards.check_already_running(sequence.sequence_id, invoice.invoice_id, now)
        if not decision.allowed:
            return self._blocked(sequence, invoice, rule, decision, now)

        decision = self.guards.check_cooldown(invoice.invoice_id, rule, now)
        if not decision.allowed:
            # Cooldown is per trigger type; later rules of this sequence may still match
            if cycle is not None:
                cycle.release(invoice.invoice_id)
            return self._blocked(sequence, invoice, rule, decision, now)

        eligible, reason = self.eligibility.validate(invoice, now)
        if not eligible:
            self._audit(sequence, invoice, rule.trigger_type, TriggerOutcome.INELIGIBLE, reason, now)
            return CandidateDecision(TriggerOutcome.INELIGIBLE, reason)

        decision = self.guards.check_business_context(now)
        if not decision.allowed:
            return self._blocked(sequence, invoice, rule, decision, now)

        trigger_reason = (
            f"{rule.trigger_type.value} rule matched ({rule.source.value}) "
            f"for invoice {invoice.invoice_number}"
        )
        started = self.controller.start(sequence, invoice, rule.trigger_type, trigger_reason)

        if started.duplicate:
            outcome, reason = TriggerOutcome.ALREADY_RUNNING, "Sequence already running for this invoice"
        elif started.execution_id:
            outcome, reason = TriggerOutcome.TRIGGERED, trigger_reason
        else:
            outcome, reason = TriggerOutcome.FAILED, "; ".join(started.errors)

        self._audit(
            sequence,
            invoice,
            rule.trigger_type,
            outcome,
            reason,
            now,
            execution_id=started.execution_id,
        )

        warnings = []
        if outcome == TriggerOutcome.TRIGGERED and started.errors:
            warnings = [f"Execution {started.execution_id}: {err}" for err in started.errors]

        return CandidateDecision(outcome, reason, started.execution_id, warnings)

    def _blocked(
        self,
        sequence: SequenceDefinition,
        invoice: Invoice,
        rule: TriggerRule,
        decision: GuardDecision,
        now: datetime,
    ) -> CandidateDecision:
        self._audit(sequence, invoice, rule.trigger_type, decision.outcome, decision.reason, now)
        return CandidateDecision(decision.outcome, decision.reason)

    def _audit(
        self,
        sequence: SequenceDefinition | None,
        invoice: Invoice,
        trigger_type: TriggerType,
        outcome: TriggerOutcome,
        reason: str | None,
        now: datetime,
        execution_id: str | None = None,
        actor_id: str = "system",
    ) -> None:
        event = TriggerEvent(
            company_id=sequence.company_id if sequence else invoice.company_id,
            sequence_id=sequence.sequence_id if sequence else None,
            invoice_id=invoice.invoice_id,
            trigger_type=trigger_type,
            outcome=outcome,
            success=outcome in _SUCCESS_OUTCOMES,
            reason=reason,
            execution_id=execution_id,
            actor_id=actor_id,
            event_id=self.id_generator.new_id(),
            created_at=now,
        )
        self.store.record_trigger_event(event)
        metrics.increment_trigger_outcome(outcome.value)

    def manual_trigger(
        self,
        sequence_id: str,
        invoice_id: str,
        actor_id: str,
        reason: str | None = None,
    ) -> TriggerExecutionResult:
        """Start a sequence for an invoice on operator request.

        Skips rule matching but keeps eligibility and stop checks. Step 1
        runs immediately. Always audited with the actor.

        Args:
            sequence_id: Sequence ID
            invoice_id: Invoice ID
            actor_id: Operator requesting the trigger
            reason: Optional operator note

        Returns:
            Trigger result; never raises
        """
        now = self.clock()

        try:
            sequence = self.store.get_sequence(sequence_id)
            if sequence is None:
                return TriggerExecutionResult(False, reason=str(DataError("sequence", sequence_id)))

            invoice = self.store.get_invoice(invoice_id)
            if invoice is None:
                return TriggerExecutionResult(False, reason=str(DataError("invoice", invoice_id)))

            trigger_type = TriggerType.MANUAL_TRIGGER

            eligible, rejection = self.eligibility.validate(invoice, now)
            if not eligible:
                self._audit(
                    sequence, invoice, trigger_type, TriggerOutcome.INELIGIBLE, rejection, now, actor_id=actor_id
                )
                return TriggerExecutionResult(False, reason=rejection)

            first_tags = sequence.steps[0].stop_conditions if sequence.steps else ()
            since = now - timedelta(days=self.config.rerun_window_days)
            stop_reason = self.stop_evaluator.check(invoice, first_tags, since)
            if stop_reason:
                self._audit(
                    sequence, invoice, trigger_type, TriggerOutcome.STOPPED, stop_reason, now, actor_id=actor_id
                )
                return TriggerExecutionResult(False, reason=stop_reason)

            trigger_reason = reason or f"Manual trigger by {actor_id}"
            started = self.controller.start(
                sequence, invoice, trigger_type, trigger_reason, start_immediately=True
            )

            if started.duplicate:
                outcome, audit_reason = TriggerOutcome.ALREADY_RUNNING, "; ".join(started.errors)
            elif started.execution_id:
                outcome, audit_reason = TriggerOutcome.MANUAL, trigger_reason
            else:
                outcome, audit_reason = TriggerOutcome.FAILED, "; ".join(started.errors)

            self._audit(
                sequence,
                invoice,
                trigger_type,
                outcome,
                audit_reason,
                now,
                execution_id=started.execution_id,
                actor_id=actor_id,
            )

            if outcome == TriggerOutcome.MANUAL:
                return TriggerExecutionResult(
                    True,
                    execution_id=started.execution_id,
                    reason="; ".join(started.errors) or None,
                    next_check_at=started.next_step_at,
                )
            return TriggerExecutionResult(False, execution_id=started.execution_id, reason=audit_reason)

        except Exception as e:
            self.logger.error(
                f"Manual trigger failed: {e}",
                extra={"sequence_id": sequence_id, "invoice_id": invoice_id, "actor_id": actor_id},
            )
            return TriggerExecutionResult(False, reason=f"Manual trigger failed: {e}")

    def _stop_invoice(self, invoice: Invoice, reason: str, result: HookResult) -> None:
        """Stop every in-flight execution of an invoice and audit each stop."""
        now = self.clock()
        for record in self.store.list_executions_for_invoice(invoice.invoice_id, ExecutionStatus.ACTIVE):
            if self.controller.stop(record.sequence_id, invoice.invoice_id, reason):
                result.stopped += 1
                self.store.record_trigger_event(
                    TriggerEvent(
                        company_id=record.company_id,
                        sequence_id=record.sequence_id,
                        invoice_id=invoice.invoice_id,
                        trigger_type=record.trigger_type,
                        outcome=TriggerOutcome.STOPPED,
                        success=True,
                        reason=reason,
                        execution_id=record.execution_id,
                        event_id=self.id_generator.new_id(),
                        created_at=now,
                    )
                )
                metrics.increment_trigger_outcome(TriggerOutcome.STOPPED.value)

    def on_payment_received(self, invoice_id: str, amount=None) -> HookResult:
        """Stop in-flight executions once an invoice is settled.

        Args:
            invoice_id: Invoice ID
            amount: Payment amount (informational, the snapshot is authoritative)

        Returns:
            Hook result; never raises
        """
        result = HookResult()
        try:
            invoice = self.store.get_invoice(invoice_id)
            if invoice is None:
                result.errors.append(str(DataError("invoice", invoice_id)))
                return result

            self.logger.info(
                "Payment received",
                extra={"invoice_id": invoice_id, "amount": str(amount) if amount is not None else None},
            )

            reason = self.stop_evaluator.check(invoice, (), self.clock())
            if reason:
                self._stop_invoice(invoice, reason, result)

        except Exception as e:
            self.logger.error(f"Payment hook failed: {e}", extra={"invoice_id": invoice_id})
            result.errors.append(f"Payment hook failed: {e}")

        return result

    def on_invoice_status_changed(self, invoice_id: str, from_status: str | None, to_status: str) -> HookResult:
        """React to an invoice status transition.

        Closing statuses stop in-flight executions. A transition into OVERDUE
        evaluates the invoice against the OVERDUE_DAYS rules of the company's
        active sequences right away.

        Args:
            invoice_id: Invoice ID
            from_status: Previous status
            to_status: New status

        Returns:
            Hook result; never raises
        """
        result = HookResult()
        new_status = (to_status or "").upper()
        old_status = (from_status or "").upper()

        try:
            invoice = self.store.get_invoice(invoice_id)
            if invoice is None:
                result.errors.append(str(DataError("invoice", invoice_id)))
                return result

            if new_status in CLOSED_STATUSES:
                self._stop_invoice(invoice, f"invoice status changed to {new_status}", result)
                return result

            if new_status == InvoiceStatus.OVERDUE.value and old_status != new_status:
                self._trigger_overdue(invoice, result)

        except Exception as e:
            self.logger.error(f"Status hook failed: {e}", extra={"invoice_id": invoice_id})
            result.errors.append(f"Status hook failed: {e}")

        return result

    def _trigger_overdue(self, invoice: Invoice, result: HookResult) -> None:
        now = self.clock()
        for sequence in self.store.list_active_sequences():
            if sequence.company_id != invoice.company_id:
                continue

            try:
                cycle = _SequenceCycle()
                for rule in self.rule_parser.parse(sequence).for_type(TriggerType.OVERDUE_DAYS):
                    decision = self.evaluate_candidate(sequence, rule, invoice, now, cycle)
                    if decision.outcome == TriggerOutcome.TRIGGERED:
                        result.triggered += 1
                    elif decision.outcome == TriggerOutcome.FAILED:
                        result.errors.append(f"Sequence {sequence.sequence_id}: {decision.reason}")
            except Exception as e:
                result.errors.append(f"Sequence {sequence.sequence_id} aborted: {e}")

    def get_monitoring_metrics(self, company_id: str | None = None) -> MonitoringMetrics:
        """Trigger activity overview.

        Args:
            company_id: Restrict to one company (None for all)

        Returns:
            Monitoring metrics
        """
        now = self.clock()
        result = MonitoringMetrics()

        sequences = [
            s for s in self.store.list_active_sequences() if company_id is None or s.company_id == company_id
        ]
        result.active_sequences = len(sequences)
        result.total_triggers = sum(len(self.rule_parser.parse(s).rules) for s in sequences)
        result.active_executions = self.store.count_executions(ExecutionStatus.ACTIVE, company_id)

        day_events = self.store.list_trigger_events(now - timedelta(days=1), company_id)
        hour_start = now - timedelta(hours=1)

        successes = [e for e in day_events if e.outcome in _SUCCESS_OUTCOMES]
        attempts = [e for e in day_events if e.outcome in _ATTEMPT_OUTCOMES]

        result.triggers_last_day = len(successes)
        result.triggers_last_hour = sum(1 for e in successes if e.created_at > hour_start)
        result.failed_triggers = sum(1 for e in day_events if e.outcome == TriggerOutcome.FAILED)
        if attempts:
            result.success_rate = round(len(successes) / len(attempts) * 100, 1)

        counts = Counter(e.trigger_type.value for e in successes)
        result.most_common_triggers = [
            {"trigger_type": trigger_type, "count": count} for trigger_type, count in counts.most_common(5)
        ]
        return result
