"""Exception hierarchy raised by the control-plane stores."""

from __future__ import annotations


class ControlPlaneError(RuntimeError):
    """Base class for failures reported by control-plane stores."""

    status_code = 500

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ValidationError(ControlPlaneError, ValueError):
    """Raised when input is missing, malformed, or out of range."""

    status_code = 400


class NotFoundError(ControlPlaneError, LookupError):
    """Raised when a referenced record does not exist."""

    status_code = 404


class ConflictError(ControlPlaneError):
    """Raised when a state-machine precondition or uniqueness rule fails."""

    status_code = 409


def status_code_for(exc: BaseException) -> int:
    """Classify *exc* into the HTTP status a transport layer should return."""

    if isinstance(exc, ControlPlaneError):
        return exc.status_code
    return 500


__all__ = [
    "ConflictError",
    "ControlPlaneError",
    "NotFoundError",
    "ValidationError",
    "status_code_for",
]
