"""
Error taxonomy shared by the grading engine and the HTTP layer.

Per-question problems (RubricParseError, EvaluationTimeout) are recovered
inside the orchestrator and turned into manual-review markers. Everything
else propagates to the caller and is rendered by the handlers in main.py.
"""


class GradingError(Exception):
    """Base class for errors surfaced by the service."""

    status_code = 500
    error_type = "grading_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(GradingError):
    status_code = 400
    error_type = "validation_error"


class AuthorizationError(GradingError):
    status_code = 403
    error_type = "authorization_error"


class NotFoundError(GradingError):
    status_code = 404
    error_type = "not_found"


class ConflictError(GradingError):
    status_code = 409
    error_type = "conflict"


class PersistenceError(GradingError):
    status_code = 503
    error_type = "persistence_error"


class RubricParseError(GradingError):
    """A question's correct answer or rubric is not valid structured data."""

    status_code = 422
    error_type = "rubric_parse_error"


class EvaluationTimeout(GradingError):
    """The external equivalence check did not answer in time."""

    status_code = 504
    error_type = "evaluation_timeout"


class ProviderError(GradingError):
    status_code = 502
    error_type = "provider_error"


class ProviderExhausted(ProviderError):
    """Quota or rate exhaustion on one provider key; the pool moves on."""


class QuestionGenerationError(GradingError):
    status_code = 502
    error_type = "question_generation_error"
