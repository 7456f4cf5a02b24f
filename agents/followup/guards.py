"""Cooldown, dedup and business-context guards.

Every check re-derives its answer from persisted state, so overlapping
monitor cycles converge on at most one start per (sequence, invoice,
cooldown window).
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from .config import FollowUpConfig
from .dto import ExecutionStatus, TriggerOutcome, TriggerRule
from .ports import CalendarOracle, PersistencePort

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuardDecision:
    """Outcome of a single guard check."""

    allowed: bool
    outcome: TriggerOutcome | None = None
    reason: str | None = None
    retry_at: datetime | None = None

    @classmethod
    def allow(cls) -> "GuardDecision":
        return cls(allowed=True)


class TriggerGuards:
    """Guards evaluated between a rule match and an execution start."""

    def __init__(self, store: PersistencePort, calendar: CalendarOracle, config: FollowUpConfig):
        """Initialize guards.

        Args:
            store: Persistence port
            calendar: Business calendar oracle
            config: Follow-up configuration
        """
        self.store = store
        self.calendar = calendar
        self.config = config

    def check_cooldown(self, invoice_id: str, rule: TriggerRule, now: datetime) -> GuardDecision:
        """Block while a step of the same trigger type ran within the cooldown.

        A step logged at T blocks until T + cooldown (exclusive), across all
        sequences of the invoice.

        Args:
            invoice_id: Invoice ID
            rule: Matched trigger rule
            now: Evaluation instant

        Returns:
            Guard decision
        """
        latest = self.store.find_latest_step_log(invoice_id, rule.trigger_type, now - rule.cooldown)
        if latest is None:
            return GuardDecision.allow()

        until = latest.executed_at + rule.cooldown
        return GuardDecision(
            allowed=False,
            outcome=TriggerOutcome.COOLDOWN,
            reason=f"Cooldown active for {rule.trigger_type.value} until {until.isoformat()}",
            retry_at=until,
        )

    def check_already_running(self, sequence_id: str, invoice_id: str, now: datetime) -> GuardDecision:
        """Block while the sequence is running or recently ran for the invoice.

        Args:
            sequence_id: Sequence ID
            invoice_id: Invoice ID
            now: Evaluation instant

        Returns:
            Guard decision
        """
        latest = self.store.find_latest_execution(sequence_id, invoice_id)
        if latest is None:
            return GuardDecision.allow()

        if latest.status == ExecutionStatus.ACTIVE:
            return GuardDecision(
                allowed=False,
                outcome=TriggerOutcome.ALREADY_RUNNING,
                reason=f"Sequence already running (execution {latest.execution_id})",
            )

        window = timedelta(days=self.config.rerun_window_days)
        if latest.last_activity_at > now - window:
            return GuardDecision(
                allowed=False,
                outcome=TriggerOutcome.ALREADY_RUNNING,
                reason=(
                    f"Sequence finished as {latest.status.value} within the last "
                    f"{self.config.rerun_window_days} days"
                ),
                retry_at=latest.last_activity_at + window,
            )

        return GuardDecision.allow()

    def check_business_context(self, now: datetime) -> GuardDecision:
        """Defer matches when the next permitted instant is too far away.

        Args:
            now: Evaluation instant

        Returns:
            Guard decision (DEFERRED carries the next permitted instant)
        """
        if self.calendar.is_permitted_now(now):
            return GuardDecision.allow()

        next_permitted = self.calendar.next_permitted_instant(now)
        if next_permitted - now > timedelta(hours=self.config.business_horizon_hours):
            logger.debug(
                "Outside business hours, deferring",
                extra={"next_permitted": next_permitted.isoformat()},
            )
            return GuardDecision(
                allowed=False,
                outcome=TriggerOutcome.DEFERRED,
                reason=f"Outside business hours, next permitted at {next_permitted.isoformat()}",
                retry_at=next_permitted,
            )

        return GuardDecision.allow()
