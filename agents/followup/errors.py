"""Follow-up exception hierarchy.

All follow-up specific exceptions inherit from FollowUpError.
"""


class FollowUpError(Exception):
    """Base exception for all follow-up errors."""


class ConfigurationError(FollowUpError):
    """Raised when sequence or trigger configuration cannot be used.

    Callers recover locally by falling back to defaults.
    """


class DataError(FollowUpError):
    """Raised when a record required for execution is missing."""

    def __init__(self, kind: str, record_id: str) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind.capitalize()} not found: {record_id}")


class DispatchError(FollowUpError):
    """Raised when the dispatch port rejects a message."""


class EvaluationError(FollowUpError):
    """Raised when a collaborator fails during trigger evaluation.

    Aborts the evaluation of the affected sequence only.
    """

    def __init__(self, sequence_id: str, cause: Exception) -> None:
        self.sequence_id = sequence_id
        self.cause = cause
        super().__init__(f"Evaluation failed for sequence {sequence_id}: {cause}")
