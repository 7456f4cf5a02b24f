"""Configuration management for the follow-up sequence agent.

Provides sensible defaults for trigger evaluation and sequence execution
with environment-based overrides.
"""

import os
from dataclasses import dataclass, fields
from decimal import Decimal
from typing import Any


@dataclass
class FollowUpConfig:
    """Configuration for trigger monitoring and sequence execution.

    Every setting can be overridden via environment variables with the
    pattern: FOLLOWUP_<SETTING> (e.g. FOLLOWUP_CANDIDATE_BATCH_SIZE=50).
    """

    # Candidate selection
    candidate_batch_size: int = 100
    due_lookahead_days: int = 7

    # Cooldown defaults (hours) for heuristic rules
    overdue_cooldown_hours: int = 24
    reminder_cooldown_hours: int = 72
    default_cooldown_hours: int = 24

    # Dedup: terminal executions block a re-start for this many days
    rerun_window_days: int = 30

    # Business context: defer matches when the next permitted instant is further away
    business_horizon_hours: int = 4

    # Eligibility
    min_amount: Decimal = Decimal("10")
    recent_payment_hours: int = 48

    # Execution
    start_immediately: bool = False
    max_dispatch_attempts: int = 3
    retry_backoff_seconds: str = "300,1800,7200"
    max_messages_per_customer_per_day: int = 3
    pending_batch_size: int = 200

    # Worker pool
    max_workers: int = 4

    # Audit
    audit_unmatched: bool = False

    # Branding used by templates
    support_email: str = "support@example.com"

    @classmethod
    def from_env(cls, prefix: str = "FOLLOWUP") -> "FollowUpConfig":
        """Create configuration with environment overrides.

        Args:
            prefix: Environment variable prefix

        Returns:
            Configured instance
        """
        config = cls()

        for f in fields(cls):
            raw = os.getenv(f"{prefix}_{f.name.upper()}")
            if raw is None:
                continue

            current = getattr(config, f.name)
            if isinstance(current, bool):
                value: Any = raw.strip().lower() in ("1", "true", "yes", "on")
            elif isinstance(current, int):
                value = int(raw)
            elif isinstance(current, Decimal):
                value = Decimal(raw)
            else:
                value = raw
            setattr(config, f.name, value)

        return config

    def backoff_seconds(self, attempt: int) -> int:
        """Get retry delay for a failed dispatch attempt.

        Args:
            attempt: 1-based failed attempt count

        Returns:
            Delay in seconds
        """
        steps = [int(x.strip()) for x in self.retry_backoff_seconds.split(",") if x.strip()]
        idx = min(max(attempt - 1, 0), len(steps) - 1) if steps else 0
        return steps[idx] if steps else 300

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary.

        Returns:
            Dictionary representation of configuration
        """
        result: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            result[f.name] = str(value) if isinstance(value, Decimal) else value
        return result
