"""
Recommender Errors
===================
Hard errors carry a stable code and the HTTP status the API layer renders.
Soft conditions (fallback used, exploration forced off) are response flags, never exceptions.
"""

from typing import Any, Dict, Optional


class RecommendationError(Exception):
    """Base class for errors surfaced to API callers."""

    code = "COMMON_INTERNAL"
    status_code = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            },
        }


class BadRequestError(RecommendationError):
    """Malformed request — nothing was recorded."""
    code = "RANK_BAD_REQUEST"
    status_code = 400


class DecisionNotFoundError(RecommendationError):
    """Feedback referenced a decision id that was never recorded."""
    code = "FBK_DECISION_NOT_FOUND"
    status_code = 404


class DecisionPersistenceError(RecommendationError):
    """The store failed after all retries; no decision id may be returned."""
    code = "RANK_STORE_ERROR"
    status_code = 503


class NoFallbackCandidateError(RecommendationError):
    """The gate emptied the pool and the fallback provider produced nothing."""
    code = "RANK_NO_CANDIDATE"
    status_code = 503
