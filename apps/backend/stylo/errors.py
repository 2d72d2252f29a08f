"""Error taxonomy shared by the submission pipeline and the HTTP layer.

Each error carries the HTTP status it maps to and a public message that is
safe to show to the learner (no provider or storage details).
"""

from __future__ import annotations


class TrainingError(Exception):
    status_code: int = 500
    reason_code: str = "INTERNAL_ERROR"
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(TrainingError):
    status_code = 400
    reason_code = "VALIDATION_ERROR"
    default_message = "Invalid request"


class AuthError(TrainingError):
    status_code = 401
    reason_code = "UNAUTHENTICATED"
    default_message = "Authentication required"


class NotFoundError(TrainingError):
    status_code = 404
    reason_code = "NOT_FOUND"
    default_message = "Item not found"


class QuotaExceededError(TrainingError):
    status_code = 429
    reason_code = "QUOTA_EXCEEDED"
    default_message = "Submission quota exceeded, please try again later"


class GraderError(TrainingError):
    """Base class for failures of the external grading capability."""

    status_code = 503
    reason_code = "GRADER_UNAVAILABLE"
    default_message = "Grading is temporarily unavailable, please resubmit your text"
    transient: bool = False


class GraderUnavailable(GraderError):
    """Upstream 5xx-class failure, timeout or connection error. Retried."""

    transient = True


class GraderRejected(GraderError):
    """Upstream 4xx-class failure. Returned immediately, never retried."""


class GraderFormatError(GraderError):
    """The grader answered with a payload that does not match the expected shape."""

    reason_code = "GRADER_FORMAT_ERROR"


class PersistenceError(TrainingError):
    """Committing the card/submission pair failed; state may need reconciliation."""

    status_code = 500
    reason_code = "PERSISTENCE_ERROR"
    default_message = "Your result could not be saved, please retry"


class Cancelled:
    """Outcome of a submission aborted by its cancel signal before commit.

    Not an error: nothing was persisted and nothing should be shown to the user.
    """

    _instance: Cancelled | None = None

    def __new__(cls) -> Cancelled:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "CANCELLED"


CANCELLED = Cancelled()
