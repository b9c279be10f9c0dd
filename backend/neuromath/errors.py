"""Error taxonomy for the diagnostic service.

Every error raised by the core derives from :class:`DiagnosticError` and
carries a ``retryable`` flag so callers can tell a transient condition (retry
the same transition later) from a terminal one.
"""

from typing import Optional


class DiagnosticError(Exception):
    """Base class for all diagnostic errors."""

    kind = "diagnostic_error"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        """Convert to dictionary for logging/serialization."""
        return {"error": self.kind, "detail": self.message, "retryable": self.retryable}


class InputValidationError(DiagnosticError):
    """Invalid age, empty name, or blank answer. The caller should re-prompt."""

    kind = "validation_error"


class InvalidStateError(DiagnosticError):
    """Operation attempted in the wrong stage."""

    kind = "invalid_state"


class SessionBusyError(InvalidStateError):
    """Another mutating operation is already running on the same session."""

    kind = "session_busy"
    retryable = True


class UpstreamRateLimited(DiagnosticError):
    """The generation gateway is throttling requests."""

    kind = "upstream_rate_limited"
    retryable = True

    def __init__(self, message: str, retry_after: Optional[str] = None):
        super().__init__(message)
        self.retry_after = retry_after


class UpstreamUnavailable(DiagnosticError):
    """The generation gateway failed or returned an unusable payload."""

    kind = "upstream_unavailable"
    retryable = True


class UpstreamQuotaExhausted(UpstreamUnavailable):
    """The gateway refused the call because credits or quota ran out."""

    kind = "upstream_quota_exhausted"
    retryable = False


class PersistenceError(DiagnosticError):
    """The store rejected a write; the transition it belongs to did not happen."""

    kind = "persistence_error"
    retryable = True
