"""
Domain errors raised by the scoring services.

Each error knows the HTTP status it maps to so the API layer can render
it without a lookup table. Services never raise ``HTTPException``.
"""
from typing import Any, Dict, Optional


class ScoringError(Exception):
    status_code = 500
    error_type = "scoring_error"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"message": self.message, "type": self.error_type, "status_code": self.status_code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ScoringError):
    """Malformed answer payload or a reference to a question that does not exist."""
    status_code = 422
    error_type = "validation_error"


class NotFoundError(ScoringError):
    status_code = 404
    error_type = "not_found"


class AuthorizationError(ScoringError):
    """Student has no active enrollment for the question bank."""
    status_code = 403
    error_type = "authorization_error"


class AttemptStateError(ScoringError):
    """Mutation requested on an attempt that is already completed."""
    status_code = 409
    error_type = "attempt_state_error"


class PersistenceError(ScoringError):
    """Transient store failure. Safe to retry for idempotent operations."""
    status_code = 503
    error_type = "persistence_error"
    retryable = True


class LockTimeoutError(PersistenceError):
    error_type = "lock_timeout"
