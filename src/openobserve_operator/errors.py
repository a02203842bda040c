"""Exception hierarchy shared by admission, reconciliation, and deletion."""
from __future__ import annotations

from typing import Optional


class OperatorError(Exception):
    """Base class for every error the operator records as a condition."""

    reason = "Error"
    retryable = True

    def __init__(self, message: str, *, reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if reason:
            self.reason = reason


class ValidationError(OperatorError):
    """Structural or admission rule failure; never retried."""

    reason = "ValidationFailed"
    retryable = False


class DependencyMissingError(OperatorError):
    """A referenced resource is absent or not Ready yet."""

    reason = "DependencyMissing"


class HasDependentsError(DependencyMissingError):
    """Deletion is blocked while other resources still reference this one."""

    reason = "HasDependents"


class RemoteError(OperatorError):
    """Failure reported by, or while talking to, the remote backend."""

    reason = "RemoteError"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> None:
        super().__init__(message, reason=reason)
        self.status_code = status_code


class RemoteTransientError(RemoteError):
    """Network failure or 5xx response."""

    reason = "RemoteUnavailable"


class RemoteTimeoutError(RemoteTransientError):
    reason = "RemoteTimeout"


class RemoteAuthError(RemoteError):
    """Credentials were rejected; retried only at the backoff cap pace."""

    reason = "AuthenticationFailed"


class RemoteConflictError(RemoteError):
    """Remote object exists under an identity that cannot be adopted."""

    reason = "RemoteConflict"


class RemoteNotFoundError(RemoteError):
    reason = "RemoteNotFound"


class RemoteRejectedError(ValidationError, RemoteError):
    """The backend refused the payload with a 4xx response."""

    reason = "RemoteRejected"

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        RemoteError.__init__(self, message, status_code=status_code)
