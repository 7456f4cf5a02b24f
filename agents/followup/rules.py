"""Trigger rule parsing.

Turns a sequence definition into an ordered list of typed trigger rules:
name heuristics first, then explicitly configured rules. A configured rule
replaces a heuristic rule of the same trigger type.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from .config import FollowUpConfig
from .dto import (
    Condition,
    ConditionOperator,
    ConditionType,
    InvoiceStatus,
    RuleSource,
    SequenceDefinition,
    TriggerRule,
    TriggerType,
)
from .errors import ConfigurationError
from .schema import trigger_rule_errors

logger = logging.getLogger(__name__)

OVERDUE_KEYWORDS = ("overdue", "past due")
REMINDER_KEYWORDS = ("reminder", "follow")


@dataclass
class ParsedRules:
    """Rules of one sequence plus configuration warnings."""

    rules: list[TriggerRule] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.rules

    def for_type(self, trigger_type: TriggerType) -> list[TriggerRule]:
        return [r for r in self.rules if r.trigger_type == trigger_type]


class RuleParser:
    """Builds trigger rules from sequence names and trigger configuration.

    Parsing never raises: malformed configuration degrades to the default
    overdue rule, malformed entries are skipped one by one.
    """

    def __init__(self, config: FollowUpConfig | None = None):
        self.config = config or FollowUpConfig()

    def default_rule(self) -> TriggerRule:
        """Rule used when configuration cannot be read at all."""
        return TriggerRule(
            trigger_type=TriggerType.OVERDUE_DAYS,
            conditions=(Condition(ConditionType.DUE_DATE, ConditionOperator.LESS_THAN, 0),),
            cooldown_hours=self.config.default_cooldown_hours,
            source=RuleSource.DEFAULT,
        )

    def heuristic_rules(self, name: str) -> list[TriggerRule]:
        """Derive rules from keywords in the sequence name.

        Args:
            name: Sequence name

        Returns:
            Zero, one or two rules (overdue before reminder)
        """
        lowered = (name or "").lower()
        rules = []

        if any(keyword in lowered for keyword in OVERDUE_KEYWORDS):
            rules.append(
                TriggerRule(
                    trigger_type=TriggerType.OVERDUE_DAYS,
                    conditions=(
                        Condition(ConditionType.DUE_DATE, ConditionOperator.LESS_THAN, 0),
                        Condition(
                            ConditionType.INVOICE_STATUS,
                            ConditionOperator.IN,
                            (InvoiceStatus.SENT.value, InvoiceStatus.OVERDUE.value),
                        ),
                    ),
                    cooldown_hours=self.config.overdue_cooldown_hours,
                    source=RuleSource.NAME_HEURISTIC,
                )
            )

        if any(keyword in lowered for keyword in REMINDER_KEYWORDS):
            rules.append(
                TriggerRule(
                    trigger_type=TriggerType.DUE_DATE_REACHED,
                    conditions=(
                        Condition(
                            ConditionType.DUE_DATE,
                            ConditionOperator.LESS_THAN,
                            self.config.due_lookahead_days,
                        ),
                        Condition(
                            ConditionType.INVOICE_STATUS,
                            ConditionOperator.EQUALS,
                            InvoiceStatus.SENT.value,
                        ),
                    ),
                    cooldown_hours=self.config.reminder_cooldown_hours,
                    source=RuleSource.NAME_HEURISTIC,
                )
            )

        return rules

    def parse(self, sequence: SequenceDefinition) -> ParsedRules:
        """Parse all trigger rules of a sequence.

        Args:
            sequence: Sequence definition

        Returns:
            Ordered rules and warnings
        """
        result = ParsedRules()

        try:
            entries = self._decode(sequence.trigger_config)
        except ConfigurationError as exc:
            warning = f"Sequence {sequence.sequence_id}: {exc}; using default overdue rule"
            logger.warning(warning, extra={"sequence_id": sequence.sequence_id})
            result.rules = [self.default_rule()]
            result.warnings.append(warning)
            return result

        rules = self.heuristic_rules(sequence.name)

        for index, entry in enumerate(entries):
            try:
                rule = self._parse_entry(entry)
            except ConfigurationError as exc:
                warning = f"Sequence {sequence.sequence_id}: trigger #{index + 1} skipped: {exc}"
                logger.warning(warning, extra={"sequence_id": sequence.sequence_id})
                result.warnings.append(warning)
                continue

            # Configured rules win over heuristics of the same type
            rules = [
                r
                for r in rules
                if r.source != RuleSource.NAME_HEURISTIC or r.trigger_type != rule.trigger_type
            ]
            rules.append(rule)

        result.rules = rules
        return result

    def _decode(self, raw: Any) -> list[Any]:
        """Normalize trigger configuration to a list of entries."""
        if raw is None:
            return []

        if isinstance(raw, (str, bytes)):
            if isinstance(raw, str) and not raw.strip():
                return []
            try:
                raw = json.loads(raw)
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"unparsable trigger configuration ({exc})") from exc

        if isinstance(raw, dict):
            if "triggers" not in raw:
                raise ConfigurationError("trigger configuration mapping has no 'triggers' key")
            raw = raw["triggers"]

        if raw is None:
            return []
        if not isinstance(raw, list):
            raise ConfigurationError(f"trigger configuration must be a list, got {type(raw).__name__}")
        return raw

    def _parse_entry(self, entry: Any) -> TriggerRule:
        """Convert one configured entry to a rule.

        Raises:
            ConfigurationError: If the entry cannot produce a usable rule
        """
        errors = trigger_rule_errors(entry)
        if errors:
            raise ConfigurationError("; ".join(errors))

        trigger_type = TriggerType.parse(entry["type"])
        if trigger_type == TriggerType.UNKNOWN:
            raise ConfigurationError(f"unknown trigger type {entry['type']!r}")

        conditions = []
        for raw_condition in entry["conditions"]:
            condition_type = ConditionType.parse(raw_condition["type"])
            if condition_type == ConditionType.UNSUPPORTED:
                raise ConfigurationError(f"unknown condition type {raw_condition['type']!r}")

            operator = ConditionOperator.parse(raw_condition["operator"])
            if operator == ConditionOperator.UNSUPPORTED:
                raise ConfigurationError(f"unknown operator {raw_condition['operator']!r}")

            value = raw_condition["value"]
            if isinstance(value, list):
                value = tuple(value)
            conditions.append(Condition(condition_type, operator, value))

        cooldown = entry.get("cooldownHours", entry.get("cooldown_hours", self.config.default_cooldown_hours))

        return TriggerRule(
            trigger_type=trigger_type,
            conditions=tuple(conditions),
            cooldown_hours=cooldown,
            source=RuleSource.CONFIGURATION,
        )
