"""Data Transfer Objects for the follow-up sequence agent.

Provides type-safe data structures for trigger evaluation and
sequence execution with serialization support.
"""

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any

_DAY = timedelta(days=1)


def _parse_enum(enum_cls, raw: Any, fallback, aliases: dict[str, str] | None = None):
    """Map a loosely typed configuration value onto a closed enumeration."""
    if isinstance(raw, enum_cls):
        return raw
    if not isinstance(raw, str):
        return fallback

    key = raw.strip().upper().replace("-", "_").replace(" ", "_")
    if aliases and key in aliases:
        key = aliases[key]
    try:
        return enum_cls(key)
    except ValueError:
        return fallback


class TriggerType(Enum):
    """Trigger type enumeration."""

    DUE_DATE_REACHED = "DUE_DATE_REACHED"
    OVERDUE_DAYS = "OVERDUE_DAYS"
    INVOICE_STATUS_CHANGE = "INVOICE_STATUS_CHANGE"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    PAYMENT_PARTIAL = "PAYMENT_PARTIAL"
    MANUAL_TRIGGER = "MANUAL_TRIGGER"
    CUSTOMER_RESPONSE = "CUSTOMER_RESPONSE"
    EMAIL_BOUNCE = "EMAIL_BOUNCE"
    SCHEDULED_FOLLOWUP = "SCHEDULED_FOLLOWUP"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: Any) -> "TriggerType":
        return _parse_enum(
            cls,
            raw,
            cls.UNKNOWN,
            {
                "DUE_DATE_APPROACHING": "DUE_DATE_REACHED",
                "OVERDUE_BY_DAYS": "OVERDUE_DAYS",
                "STATUS_CHANGED": "INVOICE_STATUS_CHANGE",
                "MANUAL": "MANUAL_TRIGGER",
            },
        )


class ConditionType(Enum):
    """Fact a condition is evaluated against."""

    INVOICE_STATUS = "INVOICE_STATUS"
    DUE_DATE = "DUE_DATE"  # days until due date
    DAYS_OVERDUE = "DAYS_OVERDUE"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"  # sum of payments
    UNSUPPORTED = "UNSUPPORTED"

    @classmethod
    def parse(cls, raw: Any) -> "ConditionType":
        return _parse_enum(
            cls,
            raw,
            cls.UNSUPPORTED,
            {
                "STATUS": "INVOICE_STATUS",
                "DAYS_TO_DUE": "DUE_DATE",
                "AMOUNT_PAID": "PAYMENT_RECEIVED",
            },
        )


class ConditionOperator(Enum):
    """Comparison operator enumeration."""

    EQUALS = "EQUALS"
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"
    IN = "IN"
    NOT_IN = "NOT_IN"
    UNSUPPORTED = "UNSUPPORTED"

    @classmethod
    def parse(cls, raw: Any) -> "ConditionOperator":
        return _parse_enum(
            cls,
            raw,
            cls.UNSUPPORTED,
            {
                "EQ": "EQUALS",
                "GT": "GREATER_THAN",
                "LT": "LESS_THAN",
                "IN_SET": "IN",
                "NOT_IN_SET": "NOT_IN",
            },
        )


class InvoiceStatus(str, Enum):
    """Invoice status values observed by the core."""

    DRAFT = "DRAFT"
    SENT = "SENT"
    OVERDUE = "OVERDUE"
    PAID = "PAID"
    WRITTEN_OFF = "WRITTEN_OFF"
    CANCELLED = "CANCELLED"


UNPAID_STATUSES = (InvoiceStatus.SENT.value, InvoiceStatus.OVERDUE.value)
CLOSED_STATUSES = (InvoiceStatus.PAID.value, InvoiceStatus.WRITTEN_OFF.value)


class ExecutionStatus(Enum):
    """Sequence execution state."""

    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    STOPPED = "STOPPED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.ACTIVE


class Language(Enum):
    """Message language enumeration."""

    ENGLISH = "ENGLISH"
    ARABIC = "ARABIC"
    BOTH = "BOTH"

    @classmethod
    def parse(cls, raw: Any) -> "Language":
        return _parse_enum(cls, raw, cls.ENGLISH, {"EN": "ENGLISH", "AR": "ARABIC"})

    def expand(self) -> list["Language"]:
        """Languages a single step is actually sent in."""
        if self is Language.BOTH:
            return [Language.ENGLISH, Language.ARABIC]
        return [self]


class Tone(Enum):
    """Message tone enumeration."""

    VERY_FORMAL = "VERY_FORMAL"
    FORMAL = "FORMAL"
    BUSINESS = "BUSINESS"
    FRIENDLY = "FRIENDLY"
    CASUAL = "CASUAL"

    @classmethod
    def parse(cls, raw: Any) -> "Tone":
        return _parse_enum(cls, raw, cls.BUSINESS)


class StopTag(Enum):
    """Custom stop conditions a step may declare."""

    CUSTOMER_RESPONSE = "CUSTOMER_RESPONSE"
    EMAIL_BOUNCE = "EMAIL_BOUNCE"
    DISPUTE_OPENED = "DISPUTE_OPENED"
    UNSUBSCRIBED = "UNSUBSCRIBED"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, raw: Any) -> "StopTag":
        return _parse_enum(cls, raw, cls.OTHER)

    @property
    def reason(self) -> str:
        return _STOP_TAG_REASONS[self]


_STOP_TAG_REASONS = {
    StopTag.CUSTOMER_RESPONSE: "customer responded",
    StopTag.EMAIL_BOUNCE: "email bounced",
    StopTag.DISPUTE_OPENED: "dispute opened",
    StopTag.UNSUBSCRIBED: "customer unsubscribed",
    StopTag.OTHER: "external stop signal",
}


class MessagePriority(Enum):
    """Scheduling priority hint for the dispatch port."""

    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class RuleSource(Enum):
    """Where a trigger rule came from."""

    NAME_HEURISTIC = "name_heuristic"
    CONFIGURATION = "configuration"
    DEFAULT = "default"


class TriggerOutcome(Enum):
    """Audited outcome of one trigger evaluation."""

    TRIGGERED = "TRIGGERED"
    FAILED = "FAILED"
    NOT_MATCHED = "NOT_MATCHED"
    COOLDOWN = "COOLDOWN"
    ALREADY_RUNNING = "ALREADY_RUNNING"
    INELIGIBLE = "INELIGIBLE"
    DEFERRED = "DEFERRED"
    STOPPED = "STOPPED"
    MANUAL = "MANUAL"


@dataclass(frozen=True)
class Payment:
    """Payment recorded against an invoice."""

    amount: Decimal
    paid_at: datetime
    payment_id: str | None = None


@dataclass
class Invoice:
    """Snapshot of an invoice at evaluation time."""

    invoice_id: str
    company_id: str
    invoice_number: str
    status: str
    due_date: datetime
    total_amount: Decimal
    currency: str = "AED"
    payments: list[Payment] = field(default_factory=list)
    customer_id: str | None = None
    customer_name: str | None = None
    customer_email: str | None = None
    company_name: str | None = None

    @property
    def amount_paid(self) -> Decimal:
        """Sum of all payments."""
        return sum((Decimal(p.amount) for p in self.payments), Decimal("0"))

    @property
    def outstanding_amount(self) -> Decimal:
        return Decimal(self.total_amount) - self.amount_paid

    def days_to_due(self, now: datetime) -> int:
        """Whole days until due date, rounded up (negative once past due)."""
        return math.ceil((self.due_date - now) / _DAY)

    def days_overdue(self, now: datetime) -> int:
        """Whole days past due date, rounded up, never negative."""
        return max(0, math.ceil((now - self.due_date) / _DAY))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "invoice_id": self.invoice_id,
            "company_id": self.company_id,
            "invoice_number": self.invoice_number,
            "status": self.status,
            "due_date": self.due_date.isoformat(),
            "total_amount": str(self.total_amount),
            "currency": self.currency,
            "payments": [
                {"amount": str(p.amount), "paid_at": p.paid_at.isoformat(), "payment_id": p.payment_id}
                for p in self.payments
            ],
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "company_name": self.company_name,
        }


@dataclass(frozen=True)
class SequenceStep:
    """One message step of a follow-up sequence."""

    step_number: int
    delay_days: int
    subject: str = "Invoice Reminder"
    content: str = "Please review your invoice."
    template_id: str | None = None
    language: Language = Language.ENGLISH
    tone: Tone = Tone.BUSINESS
    stop_conditions: tuple[StopTag, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass
class SequenceDefinition:
    """Follow-up sequence as configured for a company."""

    sequence_id: str
    company_id: str
    name: str
    steps: list[SequenceStep] = field(default_factory=list)
    active: bool = True
    trigger_config: Any = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    def step(self, step_number: int) -> SequenceStep | None:
        """Get step by 1-based number."""
        if 1 <= step_number <= len(self.steps):
            return self.steps[step_number - 1]
        return None


@dataclass(frozen=True)
class Condition:
    """Typed predicate over an invoice fact."""

    condition_type: ConditionType
    operator: ConditionOperator
    value: Any

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.condition_type.value,
            "operator": self.operator.value,
            "value": list(self.value) if isinstance(self.value, tuple) else self.value,
        }


@dataclass(frozen=True)
class TriggerRule:
    """Condition set plus cooldown deciding whether a sequence starts."""

    trigger_type: TriggerType
    conditions: tuple[Condition, ...]
    cooldown_hours: float
    source: RuleSource = RuleSource.CONFIGURATION

    def __post_init__(self):
        if self.cooldown_hours < 0:
            raise ValueError("cooldown_hours must be >= 0")
        if not self.conditions:
            raise ValueError("trigger rule requires at least one condition")

    @property
    def cooldown(self) -> timedelta:
        return timedelta(hours=self.cooldown_hours)


@dataclass
class ExecutionRecord:
    """Runtime state of one sequence applied to one invoice."""

    execution_id: str
    sequence_id: str
    invoice_id: str
    company_id: str
    total_steps: int
    trigger_type: TriggerType
    trigger_reason: str = ""
    current_step: int = 0
    status: ExecutionStatus = ExecutionStatus.ACTIVE
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_step_at: datetime | None = None
    next_step_at: datetime | None = None
    stop_reason: str | None = None
    failure_count: int = 0
    finished_at: datetime | None = None

    @property
    def last_activity_at(self) -> datetime:
        return self.finished_at or self.last_step_at or self.started_at

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "execution_id": self.execution_id,
            "sequence_id": self.sequence_id,
            "invoice_id": self.invoice_id,
            "company_id": self.company_id,
            "total_steps": self.total_steps,
            "trigger_type": self.trigger_type.value,
            "trigger_reason": self.trigger_reason,
            "current_step": self.current_step,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "last_step_at": self.last_step_at.isoformat() if self.last_step_at else None,
            "next_step_at": self.next_step_at.isoformat() if self.next_step_at else None,
            "stop_reason": self.stop_reason,
            "failure_count": self.failure_count,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass(frozen=True)
class StepLogEntry:
    """Proof that a step of an execution was dispatched."""

    execution_id: str
    sequence_id: str
    invoice_id: str
    trigger_type: TriggerType
    step_number: int
    dispatch_handles: tuple[str, ...]
    executed_at: datetime
    scheduled_for: datetime | None = None
    recipient: str | None = None

    @property
    def dispatch_handle(self) -> str | None:
        return self.dispatch_handles[0] if self.dispatch_handles else None


@dataclass
class TriggerEvent:
    """Audit record of one trigger decision."""

    company_id: str
    sequence_id: str | None
    invoice_id: str
    trigger_type: TriggerType
    outcome: TriggerOutcome
    success: bool
    reason: str | None = None
    execution_id: str | None = None
    actor_id: str = "system"
    event_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "company_id": self.company_id,
            "sequence_id": self.sequence_id,
            "invoice_id": self.invoice_id,
            "trigger_type": self.trigger_type.value,
            "outcome": self.outcome.value,
            "success": self.success,
            "reason": self.reason,
            "execution_id": self.execution_id,
            "actor_id": self.actor_id,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class MessageTemplate:
    """Stored message template referenced by steps."""

    template_id: str
    subject: str
    content: str
    subject_ar: str | None = None
    content_ar: str | None = None


@dataclass(frozen=True)
class CandidateQuery:
    """Coarse filter passed to the persistence port."""

    company_id: str
    statuses: tuple[str, ...]
    limit: int
    due_before: datetime | None = None
    due_on_or_before: datetime | None = None


@dataclass
class RenderedMessage:
    """Message ready for dispatch."""

    subject: str
    content: str
    language: Language
    recipient_email: str | None = None
    recipient_name: str | None = None
    template_id: str | None = None


@dataclass
class DispatchHints:
    """Scheduling hints passed alongside a rendered message."""

    scheduled_for: datetime
    priority: MessagePriority
    company_id: str
    invoice_id: str
    sequence_id: str
    execution_id: str
    step_number: int
    max_retries: int = 3
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionResult:
    """Result of a start or continue call on an execution."""

    success: bool
    execution_id: str | None = None
    status: ExecutionStatus | None = None
    dispatch_handles: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    next_step_at: datetime | None = None
    steps_executed: int = 0
    steps_remaining: int = 0
    stop_reason: str | None = None
    duplicate: bool = False  # lost a start or append race, nothing written

    def add_error(self, error: str) -> None:
        """Add error message."""
        self.errors.append(error)
        self.success = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "execution_id": self.execution_id,
            "status": self.status.value if self.status else None,
            "dispatch_handles": self.dispatch_handles,
            "errors": self.errors,
            "next_step_at": self.next_step_at.isoformat() if self.next_step_at else None,
            "steps_executed": self.steps_executed,
            "steps_remaining": self.steps_remaining,
            "stop_reason": self.stop_reason,
            "duplicate": self.duplicate,
        }


@dataclass
class TriggerExecutionResult:
    """Result of a trigger attempt."""

    triggered: bool
    execution_id: str | None = None
    reason: str | None = None
    next_check_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"triggered": self.triggered}
        if self.execution_id:
            result["execution_id"] = self.execution_id
        if self.reason:
            result["reason"] = self.reason
        if self.next_check_at:
            result["next_check_at"] = self.next_check_at.isoformat()
        return result


@dataclass
class MonitorResult:
    """Summary of one trigger monitor cycle."""

    processed: int = 0
    triggered: int = 0
    deferred: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    processing_time_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "triggered": self.triggered,
            "errors": self.errors,
            "deferred": self.deferred,
            "warnings": self.warnings,
            "processing_time_seconds": self.processing_time_seconds,
        }


@dataclass
class PendingRunResult:
    """Summary of one sweep over due executions."""

    processed: int = 0
    successful: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "errors": self.errors,
        }


@dataclass
class HookResult:
    """Result of an inbound invoice event."""

    stopped: int = 0
    triggered: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"stopped": self.stopped, "triggered": self.triggered, "errors": self.errors}


@dataclass
class MonitoringMetrics:
    """Trigger activity overview for a company or the whole system."""

    active_sequences: int = 0
    total_triggers: int = 0  # trigger rules across active sequences
    active_executions: int = 0
    triggers_last_hour: int = 0
    triggers_last_day: int = 0
    success_rate: float = 100.0
    most_common_triggers: list[dict[str, Any]] = field(default_factory=list)
    failed_triggers: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "active_sequences": self.active_sequences,
            "total_triggers": self.total_triggers,
            "active_executions": self.active_executions,
            "triggers_last_hour": self.triggers_last_hour,
            "triggers_last_day": self.triggers_last_day,
            "success_rate": self.success_rate,
            "most_common_triggers": self.most_common_triggers,
            "failed_triggers": self.failed_triggers,
        }
