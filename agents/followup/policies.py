"""Business policies for trigger matching and sequence progression.

Implements deterministic, functional policies: condition evaluation
against invoice facts, invoice eligibility, stop conditions and the
priority hint passed to the dispatch port.
"""

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from .config import FollowUpConfig
from .dto import (
    CLOSED_STATUSES,
    Condition,
    ConditionOperator,
    ConditionType,
    Invoice,
    MessagePriority,
    StopTag,
    Tone,
    TriggerRule,
)
from .ports import PersistencePort


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _as_decimal(value: Any) -> Decimal | None:
    if not _is_number(value):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _same_kind_equal(fact: Any, operand: Any) -> bool:
    if isinstance(fact, str):
        return isinstance(operand, str) and fact.upper() == operand.upper()
    fact_num, operand_num = _as_decimal(fact), _as_decimal(operand)
    if fact_num is None or operand_num is None:
        return False
    return fact_num == operand_num


class ConditionEvaluator:
    """Evaluates typed conditions against invoice facts.

    Unknown condition types or operators and type mismatches between fact
    and operand evaluate to False. Nothing here raises.
    """

    def fact(self, condition_type: ConditionType, invoice: Invoice, now: datetime) -> Any:
        """Resolve the invoice fact a condition refers to.

        Args:
            condition_type: Condition type
            invoice: Invoice snapshot
            now: Evaluation instant

        Returns:
            Fact value or None if unsupported
        """
        if condition_type == ConditionType.INVOICE_STATUS:
            return invoice.status
        if condition_type == ConditionType.DUE_DATE:
            return invoice.days_to_due(now)
        if condition_type == ConditionType.DAYS_OVERDUE:
            return invoice.days_overdue(now)
        if condition_type == ConditionType.PAYMENT_RECEIVED:
            return invoice.amount_paid
        return None

    def evaluate(self, condition: Condition, invoice: Invoice, now: datetime | None = None) -> bool:
        """Evaluate a single condition."""
        if now is None:
            now = datetime.now(UTC)

        fact = self.fact(condition.condition_type, invoice, now)
        if fact is None:
            return False
        return self.compare(fact, condition.operator, condition.value)

    def compare(self, fact: Any, operator: ConditionOperator, operand: Any) -> bool:
        """Apply an operator to a fact and operand."""
        if operator == ConditionOperator.EQUALS:
            return _same_kind_equal(fact, operand)

        if operator in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
            fact_num, operand_num = _as_decimal(fact), _as_decimal(operand)
            if fact_num is None or operand_num is None:
                return False
            if operator == ConditionOperator.GREATER_THAN:
                return fact_num > operand_num
            return fact_num < operand_num

        if operator in (ConditionOperator.IN, ConditionOperator.NOT_IN):
            if not isinstance(operand, (list, tuple)):
                return False
            found = any(_same_kind_equal(fact, item) for item in operand)
            return found if operator == ConditionOperator.IN else not found

        return False

    def matches(
        self, rule: TriggerRule, invoice: Invoice, now: datetime | None = None
    ) -> tuple[bool, str | None]:
        """Check whether all conditions of a rule hold (AND).

        Args:
            rule: Trigger rule
            invoice: Invoice snapshot
            now: Current timestamp (for testing)

        Returns:
            Tuple of (matched, description of the first failing condition)
        """
        if now is None:
            now = datetime.now(UTC)

        for condition in rule.conditions:
            if not self.evaluate(condition, invoice, now):
                fact = self.fact(condition.condition_type, invoice, now)
                return (
                    False,
                    f"{condition.condition_type.value} {condition.operator.value} "
                    f"{condition.value!r} not met (actual {fact!r})",
                )
        return True, None


class EligibilityValidator:
    """Invoice-level checks applied after a rule matched."""

    def __init__(self, config: FollowUpConfig):
        self.config = config

    def validate(self, invoice: Invoice, now: datetime | None = None) -> tuple[bool, str | None]:
        """Check if an invoice may receive follow-ups.

        Args:
            invoice: Invoice snapshot
            now: Current timestamp (for testing)

        Returns:
            Tuple of (eligible, rejection reason)
        """
        if now is None:
            now = datetime.now(UTC)

        outstanding = invoice.outstanding_amount
        if outstanding < self.config.min_amount:
            return (
                False,
                f"Outstanding amount {outstanding:.2f} {invoice.currency} below minimum "
                f"{self.config.min_amount:.2f}",
            )

        cutoff = now - timedelta(hours=self.config.recent_payment_hours)
        for payment in invoice.payments:
            if payment.paid_at > cutoff:
                return (
                    False,
                    f"Payment received within the last {self.config.recent_payment_hours} hours",
                )

        return True, None


class StopConditionEvaluator:
    """Decides whether an execution must stop before its next step.

    Order is fixed: payment, then invoice status, then step stop tags.
    """

    def __init__(self, store: PersistencePort):
        self.store = store

    def check(
        self, invoice: Invoice, stop_tags: Iterable[StopTag], since: datetime
    ) -> str | None:
        """Get the stop reason, if any.

        Args:
            invoice: Current invoice snapshot
            stop_tags: Tags declared by the step about to run
            since: Only external signals at or after this instant count

        Returns:
            Stop reason or None to continue
        """
        if invoice.amount_paid >= Decimal(invoice.total_amount):
            return "payment received"

        status = invoice.status.upper()
        if status in CLOSED_STATUSES:
            return f"invoice status changed to {status}"

        for tag in stop_tags:
            if self.store.has_stop_signal(invoice.invoice_id, tag, since):
                return f"stop condition: {tag.reason}"

        return None


def determine_priority(step_number: int, tone: Tone) -> MessagePriority:
    """Priority hint for a step dispatch.

    Args:
        step_number: 1-based step number
        tone: Step tone

    Returns:
        Message priority
    """
    if step_number >= 3 and tone in (Tone.FORMAL, Tone.VERY_FORMAL):
        return MessagePriority.HIGH
    if step_number >= 2:
        return MessagePriority.NORMAL
    return MessagePriority.LOW
