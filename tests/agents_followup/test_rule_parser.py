"""Tests for trigger rule parsing."""

import json

import pytest

from agents.followup.config import FollowUpConfig
from agents.followup.dto import (
    Condition,
    ConditionOperator,
    ConditionType,
    RuleSource,
    TriggerRule,
    TriggerType,
)
from agents.followup.rules import RuleParser


@pytest.fixture
def parser():
    return RuleParser(FollowUpConfig())


def overdue_entry(**overrides):
    entry = {
        "type": "OVERDUE_DAYS",
        "conditions": [{"type": "DAYS_OVERDUE", "operator": "GREATER_THAN", "value": 14}],
        "cooldownHours": 48,
    }
    entry.update(overrides)
    return entry


class TestNameHeuristics:
    """Rules derived from the sequence name."""

    def test_overdue_name_yields_overdue_rule(self, parser, make_sequence):
        parsed = parser.parse(make_sequence(name="Overdue collection"))

        assert [r.trigger_type for r in parsed.rules] == [TriggerType.OVERDUE_DAYS]
        rule = parsed.rules[0]
        assert rule.cooldown_hours == 24
        assert rule.source == RuleSource.NAME_HEURISTIC
        assert parsed.warnings == []

    def test_reminder_name_yields_due_date_rule(self, parser, make_sequence):
        parsed = parser.parse(make_sequence(name="Friendly payment reminder"))

        assert [r.trigger_type for r in parsed.rules] == [TriggerType.DUE_DATE_REACHED]
        assert parsed.rules[0].cooldown_hours == 72

    def test_both_keywords_keep_overdue_first(self, parser, make_sequence):
        parsed = parser.parse(make_sequence(name="Past due follow-up"))

        assert [r.trigger_type for r in parsed.rules] == [
            TriggerType.OVERDUE_DAYS,
            TriggerType.DUE_DATE_REACHED,
        ]

    def test_no_keywords_and_no_config_is_manual_only(self, parser, make_sequence):
        parsed = parser.parse(make_sequence(name="Quarterly statement"))

        assert parsed.is_empty
        assert parsed.warnings == []


class TestConfiguredRules:
    """Rules from explicit trigger configuration."""

    def test_configured_rule_replaces_heuristic_of_same_type(self, parser, make_sequence):
        sequence = make_sequence(name="Overdue collection", trigger_config=[overdue_entry()])

        parsed = parser.parse(sequence)

        assert len(parsed.rules) == 1
        rule = parsed.rules[0]
        assert rule.source == RuleSource.CONFIGURATION
        assert rule.cooldown_hours == 48
        condition = rule.conditions[0]
        assert condition.condition_type == ConditionType.DAYS_OVERDUE
        assert condition.operator == ConditionOperator.GREATER_THAN
        assert condition.value == 14

    def test_configured_rule_is_added_after_other_heuristics(self, parser, make_sequence):
        sequence = make_sequence(name="Payment reminder", trigger_config=[overdue_entry()])

        parsed = parser.parse(sequence)

        assert [r.trigger_type for r in parsed.rules] == [
            TriggerType.DUE_DATE_REACHED,
            TriggerType.OVERDUE_DAYS,
        ]

    def test_json_string_and_envelope_are_accepted(self, parser, make_sequence):
        as_string = make_sequence(name="Statement", trigger_config=json.dumps([overdue_entry()]))
        as_envelope = make_sequence(name="Statement", trigger_config={"triggers": [overdue_entry()]})

        assert parser.parse(as_string).rules == parser.parse(as_envelope).rules
        assert len(parser.parse(as_string).rules) == 1

    def test_aliases_and_list_values(self, parser, make_sequence):
        entry = {
            "type": "overdue_by_days",
            "conditions": [
                {"type": "status", "operator": "in", "value": ["SENT", "OVERDUE"]},
                {"type": "days_overdue", "operator": "gt", "value": 3},
            ],
        }
        parsed = parser.parse(make_sequence(name="Statement", trigger_config=[entry]))

        rule = parsed.rules[0]
        assert rule.trigger_type == TriggerType.OVERDUE_DAYS
        assert rule.conditions[0].value == ("SENT", "OVERDUE")
        assert rule.conditions[1].operator == ConditionOperator.GREATER_THAN
        # No cooldown configured
        assert rule.cooldown_hours == FollowUpConfig().default_cooldown_hours

    def test_missing_cooldown_uses_default(self, parser, make_sequence):
        entry = overdue_entry()
        del entry["cooldownHours"]

        parsed = parser.parse(make_sequence(name="Statement", trigger_config=[entry]))

        assert parsed.rules[0].cooldown_hours == 24

    @pytest.mark.parametrize(
        "bad_entry",
        [
            overdue_entry(type="WHEN_THE_MOON_IS_FULL"),
            overdue_entry(conditions=[{"type": "DAYS_OVERDUE", "operator": "ROUGHLY", "value": 3}]),
            overdue_entry(conditions=[{"type": "CUSTOMER_MOOD", "operator": "EQUALS", "value": "x"}]),
            overdue_entry(conditions=[]),
            overdue_entry(cooldownHours=-1),
            {"conditions": [{"type": "DAYS_OVERDUE", "operator": "GREATER_THAN", "value": 1}]},
            "not-an-object",
        ],
    )
    def test_invalid_entry_is_skipped_alone(self, parser, make_sequence, bad_entry):
        good = {
            "type": "DUE_DATE_REACHED",
            "conditions": [{"type": "DUE_DATE", "operator": "LESS_THAN", "value": 3}],
        }
        sequence = make_sequence(name="Statement", trigger_config=[bad_entry, good])

        parsed = parser.parse(sequence)

        assert [r.trigger_type for r in parsed.rules] == [TriggerType.DUE_DATE_REACHED]
        assert len(parsed.warnings) == 1
        assert "trigger #1 skipped" in parsed.warnings[0]


class TestMalformedConfiguration:
    """Whole-configuration failures degrade to the default rule."""

    @pytest.mark.parametrize(
        "raw",
        [
            "{this is not json",
            {"rules": []},
            42,
        ],
    )
    def test_falls_back_to_default_rule(self, parser, make_sequence, raw):
        parsed = parser.parse(make_sequence(name="Payment reminder", trigger_config=raw))

        assert parsed.rules == [parser.default_rule()]
        assert parsed.rules[0].source == RuleSource.DEFAULT
        assert parsed.rules[0].trigger_type == TriggerType.OVERDUE_DAYS
        assert len(parsed.warnings) == 1
        assert "default overdue rule" in parsed.warnings[0]

    @pytest.mark.parametrize("raw", [None, "", "   ", {"triggers": None}])
    def test_empty_configuration_is_not_an_error(self, parser, make_sequence, raw):
        parsed = parser.parse(make_sequence(name="Statement", trigger_config=raw))

        assert parsed.is_empty
        assert parsed.warnings == []


class TestTriggerRuleInvariants:
    """Rules built in code obey the same limits as configured ones."""

    def test_rule_without_conditions_is_rejected(self):
        with pytest.raises(ValueError, match="at least one condition"):
            TriggerRule(TriggerType.OVERDUE_DAYS, (), cooldown_hours=24)

    def test_negative_cooldown_is_rejected(self):
        condition = Condition(ConditionType.DAYS_OVERDUE, ConditionOperator.GREATER_THAN, 0)

        with pytest.raises(ValueError, match="cooldown_hours"):
            TriggerRule(TriggerType.OVERDUE_DAYS, (condition,), cooldown_hours=-1)
