"""
Error taxonomy for the assessment and training-progression engine
"""
from typing import Any, Dict, Optional


class TrainingEngineError(Exception):
    """Base class for all engine errors"""

    error_code = "training_engine_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the error payload shape used by API callers"""
        payload = {"error": self.error_code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFoundError(TrainingEngineError):
    """Referenced quiz, attempt, module or assignment does not exist"""

    error_code = "not_found"


class InvalidAnswerError(TrainingEngineError):
    """Submitted answers reference unknown questions or options"""

    error_code = "invalid_answer"


class InvalidQuizError(TrainingEngineError):
    """Quiz cannot be graded: zero total points or a question without a correct option"""

    error_code = "invalid_quiz"


class AttemptLimitExceededError(TrainingEngineError):
    """
    A new attempt cannot be started

    Raised when attempts are exhausted, the assignment is already closed,
    or another attempt is still in progress. Nothing is mutated.
    """

    error_code = "attempt_limit_exceeded"


class InvalidTransitionError(TrainingEngineError):
    """State machine transition not allowed from the current state"""

    error_code = "invalid_transition"


class ConcurrentUpdateError(TrainingEngineError):
    """Optimistic concurrency conflict; the caller should retry"""

    error_code = "concurrent_update"
