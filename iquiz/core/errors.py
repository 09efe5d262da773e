"""
Error taxonomy shared by the services and mapped to the response envelope.
"""
from typing import Any, Optional


class QuizError(Exception):
    """Base class for failures reported to the caller as ``success: false``."""

    status_code: int = 400

    def __init__(self, message: str, error: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.error = error


class ValidationError(QuizError):
    """Missing or malformed fields, or a broken invariant."""


class AccessDenied(QuizError):
    """Role or ownership mismatch."""

    status_code = 403


class NotFound(QuizError):
    """Dangling id reference."""


class InvalidState(QuizError):
    """Illegal lifecycle transition."""


class IncompleteGrading(QuizError):
    """Grade release requested while submitted responses are still ungraded."""


class StoreError(QuizError):
    """Underlying store failure."""
