"""Follow-up Agent - invoice follow-up sequence automation.

This module provides the core of automated invoice follow-ups: it scans
outstanding invoices against configurable trigger rules and, for each
match, starts or advances a per-(sequence, invoice) execution that sends
a scheduled message and decides when the next step runs.

Key Components:
- Config: Configuration with environment overrides
- Rules: Trigger rule parsing from sequence names and configuration
- Policies: Condition, eligibility and stop-condition evaluation
- Guards: Cooldown, dedup and business-context checks
- Controller: Execution lifecycle (start, continue, stop, pending sweep)
- Monitor: Trigger evaluation cycle, manual triggers and invoice hooks
- Store/Dispatch/Calendar: Persistence, delivery and calendar adapters

Collaborators are injected through constructors; correctness is derived
from persisted state, so cycles may overlap across processes.
"""

__version__ = "1.0.0"

from .config import FollowUpConfig
from .controller import ExecutionController
from .dto import (
    ExecutionRecord,
    ExecutionResult,
    ExecutionStatus,
    Invoice,
    MonitorResult,
    SequenceDefinition,
    SequenceStep,
    TriggerRule,
    TriggerType,
)
from .errors import ConfigurationError, DataError, DispatchError, EvaluationError, FollowUpError
from .monitor import TriggerMonitor
from .rules import RuleParser

__all__ = [
    "FollowUpConfig",
    "ExecutionController",
    "TriggerMonitor",
    "RuleParser",
    "SequenceDefinition",
    "SequenceStep",
    "Invoice",
    "TriggerRule",
    "TriggerType",
    "ExecutionRecord",
    "ExecutionResult",
    "ExecutionStatus",
    "MonitorResult",
    "FollowUpError",
    "ConfigurationError",
    "DataError",
    "DispatchError",
    "EvaluationError",
]
