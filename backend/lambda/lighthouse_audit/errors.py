"""errors.py — Failure taxonomy for the audit trigger Lambda.

Every collaborator either returns a value or raises one of these; nothing
falls through with a half-assigned result.
"""
from __future__ import annotations

from typing import Any, List, Optional

__all__ = [
    "CollaboratorUnavailableError",
    "ConfigError",
    "DispatchError",
    "LighthouseAuditError",
    "MalformedMessageError",
    "StateConflictError",
    "StateStoreReadError",
    "StateStoreWriteError",
    "UnknownIdentityError",
]


class LighthouseAuditError(Exception):
    """Base class; ``error_code`` is what lands in observability lines."""

    error_code = "lighthouse_audit_error"


class ConfigError(LighthouseAuditError):
    error_code = "config_invalid"


class MalformedMessageError(LighthouseAuditError):
    """Payload could not be decoded. Dropped, never retried."""

    error_code = "malformed_message"


class UnknownIdentityError(LighthouseAuditError):
    error_code = "unknown_identity"


class StateStoreReadError(LighthouseAuditError):
    error_code = "state_read_failed"


class StateStoreWriteError(LighthouseAuditError):
    """The debounce record may not have persisted; caller must see this."""

    error_code = "state_write_failed"


class StateConflictError(LighthouseAuditError):
    """A conditional state write lost to a concurrent writer."""

    error_code = "state_conflict"


class CollaboratorUnavailableError(LighthouseAuditError):
    error_code = "collaborator_unavailable"

    def __init__(self, collaborator: str, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(f"{collaborator}: {message}")
        self.collaborator = collaborator
        self.cause = cause


class DispatchError(CollaboratorUnavailableError):
    """One or more fan-out messages were not accepted by the sink."""

    error_code = "dispatch_failed"

    def __init__(self, failed: List[Any], first_error: BaseException):
        super().__init__(
            "message_sink",
            f"{len(failed)} message(s) failed to publish; first error: {first_error}",
            cause=first_error,
        )
        self.failed = failed
        self.first_error = first_error
