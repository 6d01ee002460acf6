"""
Error taxonomy for the recommendation engine.
"""

from typing import Any, List, Optional


class RecommenderError(Exception):
    """Base class for engine errors."""

    code: str = "recommender_error"
    status: int = 500
    retryable: bool = False

    def __init__(self, message: str = "", *, code: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message or self.__class__.__name__)
        if code:
            self.code = code
        if status:
            self.status = status

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "detail": str(self),
            "retryable": self.retryable,
        }


class SignalUnavailable(RecommenderError):
    """The user has no listening history in the requested window.

    Callers degrade to popularity/content scoring instead of failing.
    """

    code = "signal_unavailable"
    status = 404

    def __init__(self, user_id: str, message: str = ""):
        super().__init__(message or f"No listening history for user {user_id}")
        self.user_id = user_id


class InvalidParameter(RecommenderError):
    """A request parameter is out of range or unknown."""

    code = "invalid_parameter"
    status = 400

    def __init__(self, parameter: str, message: str = ""):
        super().__init__(message or f"Invalid value for '{parameter}'")
        self.parameter = parameter


class EmptyCandidatePool(RecommenderError):
    """Filters excluded every candidate track."""

    code = "empty_candidate_pool"
    status = 200


class PersistenceWriteFailure(RecommenderError):
    """Generated recommendations could not be written to storage.

    The computed recommendations are attached so callers can still serve them.
    """

    code = "persistence_write_failure"
    status = 503
    retryable = True

    def __init__(self, message: str = "", recommendations: Optional[List[Any]] = None):
        super().__init__(message)
        self.recommendations = list(recommendations or [])
