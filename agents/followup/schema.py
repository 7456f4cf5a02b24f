"""Storage schemas for sequence steps and trigger configuration.

Step lists are stored JSON encoded and versioned:

    [{"stepNumber": 1, "delayDays": 0, ...}, ...]              # version 1
    {"version": 1, "steps": [{"stepNumber": 1, ...}, ...]}

Trigger configuration is an ordered list of
`{type, conditions: [{type, operator, value}], cooldownHours}` objects,
checked entry by entry against `TRIGGER_RULE_SCHEMA`.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Literal

import yaml
from jsonschema import Draft202012Validator
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .dto import Language, SequenceDefinition, SequenceStep, StopTag, Tone
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

STEP_SCHEMA_VERSION = 1
DEFAULT_DELAY_DAYS = 7

TRIGGER_RULE_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["type", "conditions"],
    "properties": {
        "type": {"type": "string", "minLength": 1},
        "conditions": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["type", "operator", "value"],
                "properties": {
                    "type": {"type": "string"},
                    "operator": {"type": "string"},
                },
            },
        },
        "cooldownHours": {"type": "number", "minimum": 0},
        "cooldown_hours": {"type": "number", "minimum": 0},
    },
}

_TRIGGER_RULE_VALIDATOR = Draft202012Validator(TRIGGER_RULE_SCHEMA)


class StepModel(BaseModel):
    """One stored step."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    step_number: int | None = Field(None, alias="stepNumber", ge=1)
    delay_days: int | None = Field(None, alias="delayDays", ge=0)
    template_id: str | None = Field(None, alias="templateId")
    subject: str | None = None
    content: str | None = None
    language: str | None = None
    tone: str | None = None
    stop_conditions: list[str] = Field(default_factory=list, alias="stopConditions")
    metadata: dict[str, Any] = Field(default_factory=dict)


class StepListModel(BaseModel):
    """Versioned envelope around stored steps."""

    model_config = ConfigDict(extra="ignore")

    version: Literal[1] = STEP_SCHEMA_VERSION
    steps: list[StepModel]


def parse_steps(raw: Any) -> list[SequenceStep]:
    """Validate a stored step list and convert it to typed steps.

    Args:
        raw: JSON string, list of step objects or versioned envelope

    Returns:
        Steps ordered by step number

    Raises:
        ConfigurationError: If the encoding is invalid or step numbers are
            not the contiguous range 1..N
    """
    if raw is None:
        return []

    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Step list is not valid JSON: {exc}") from exc

    if isinstance(raw, list):
        raw = {"version": STEP_SCHEMA_VERSION, "steps": raw}

    try:
        envelope = StepListModel.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid step list: {exc.error_count()} validation error(s)") from exc

    steps = []
    for index, model in enumerate(envelope.steps):
        steps.append(
            SequenceStep(
                step_number=model.step_number or index + 1,
                delay_days=DEFAULT_DELAY_DAYS if model.delay_days is None else model.delay_days,
                subject=model.subject or "Invoice Reminder",
                content=model.content or "Please review your invoice.",
                template_id=model.template_id,
                language=Language.parse(model.language),
                tone=Tone.parse(model.tone),
                stop_conditions=tuple(StopTag.parse(tag) for tag in model.stop_conditions),
                metadata=dict(model.metadata),
            )
        )

    steps.sort(key=lambda s: s.step_number)
    numbers = [s.step_number for s in steps]
    if numbers != list(range(1, len(steps) + 1)):
        raise ConfigurationError(f"Step numbers must be contiguous from 1, got {numbers}")

    return steps


def load_steps_or_empty(raw: Any, sequence_id: str) -> list[SequenceStep]:
    """Parse steps, degrading to an empty list on configuration errors."""
    try:
        return parse_steps(raw)
    except ConfigurationError as exc:
        logger.warning(
            "Invalid step configuration, sequence has no runnable steps",
            extra={"sequence_id": sequence_id, "error": str(exc)},
        )
        return []


def steps_to_json(steps: list[SequenceStep]) -> str:
    """Encode typed steps in the versioned storage format."""
    return json.dumps(
        {
            "version": STEP_SCHEMA_VERSION,
            "steps": [
                {
                    "stepNumber": s.step_number,
                    "delayDays": s.delay_days,
                    "templateId": s.template_id,
                    "subject": s.subject,
                    "content": s.content,
                    "language": s.language.value,
                    "tone": s.tone.value,
                    "stopConditions": [t.value for t in s.stop_conditions],
                    "metadata": s.metadata,
                }
                for s in steps
            ],
        }
    )


def trigger_rule_errors(entry: Any) -> list[str]:
    """Return JSON schema violations for one configured trigger rule."""
    return [error.message for error in _TRIGGER_RULE_VALIDATOR.iter_errors(entry)]


def load_sequences_yaml(path: Path | str) -> list[SequenceDefinition]:
    """Load sequence definitions from a YAML file.

    Expected layout::

        sequences:
          - id: seq-overdue
            company_id: company-1
            name: Overdue follow-up
            active: true
            steps: [...]
            triggers: [...]

    Args:
        path: YAML file path

    Returns:
        Sequence definitions (sequences with invalid steps get no steps)

    Raises:
        ConfigurationError: If the file is not a mapping with a `sequences` list
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict) or not isinstance(data.get("sequences"), list):
        raise ConfigurationError(f"Invalid sequence file format: {path}")

    sequences = []
    for item in data["sequences"]:
        sequence_id = str(item["id"])
        sequences.append(
            SequenceDefinition(
                sequence_id=sequence_id,
                company_id=str(item["company_id"]),
                name=item.get("name", sequence_id),
                steps=load_steps_or_empty(item.get("steps"), sequence_id),
                active=bool(item.get("active", True)),
                trigger_config=item.get("triggers"),
                metadata=item.get("metadata") or {},
            )
        )
    return sequences
