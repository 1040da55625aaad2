"""Typed failures raised by the delivery service.

Every error carries a stable ``code`` so that the HTTP layer and the CLI can
report it without inspecting the message text.
"""

from __future__ import annotations


class TimeCapsuleError(RuntimeError):
    """Base class for every failure surfaced to callers."""

    code = "unknown_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.code)


class AuthRequired(TimeCapsuleError):
    """No identified owner for an owner-scoped operation."""

    code = "auth_required"


class NotFound(TimeCapsuleError):
    """Unknown delivery id or access token."""

    code = "not_found"


class ValidationError(TimeCapsuleError):
    """Request rejected before reaching any collaborator."""

    code = "validation_error"


class TransportError(TimeCapsuleError):
    """Mail transport or object store call failed."""

    code = "transport_error"


class PreconditionFailed(TimeCapsuleError):
    """Conditional status update matched no row in the expected state."""

    code = "precondition_failed"


class UnknownError(TimeCapsuleError):
    """Unclassified failure."""

    code = "unknown_error"
