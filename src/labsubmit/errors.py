"""Error taxonomy shared by every component.

All failures raised by the service derive from :class:`LabSubmitError` and
carry a short machine readable ``code`` that the HTTP layer forwards to
clients unchanged.  Compile and runtime failures reported by the execution
backend are *not* errors here; they are ordinary
:class:`~labsubmit.executor.base.ExecutionResult` outcomes.

The hierarchy:

* ``LocalValidationError`` – the request is wrong before anything leaves the
  process (unsupported language, malformed payload, out of range marks).
  Never retried.
* ``TransportError`` – the execution backend could not be reached or did not
  answer in time.  Retried by the orchestrator, then folded into a
  ``backend_unavailable`` result.
* ``AuthorizationError`` – the actor may not perform the action.  Always
  carries a :class:`DenialReason`.
* ``StateConflictError`` – an illegal lifecycle transition.  The record is
  left untouched.
"""

from __future__ import annotations

import enum
from typing import Optional


class DenialReason(str, enum.Enum):
    """Why an authorization check failed."""

    NOT_OWNER = "not_owner"
    INSUFFICIENT_ROLE = "insufficient_role"
    NOT_FOUND = "not_found"
    UNAUTHENTICATED = "unauthenticated"
    SESSION_RESOLVING = "session_resolving"


class LabSubmitError(Exception):
    """Base class for all service errors."""

    code = "error"

    def __init__(self, message: str = "") -> None:
        self.message = message or self.code
        super().__init__(self.message)


class LocalValidationError(LabSubmitError):
    code = "invalid_request"


class UnsupportedLanguage(LocalValidationError):
    code = "unsupported_language"

    def __init__(self, language_id: Optional[str]) -> None:
        self.language_id = language_id
        super().__init__(f"Unsupported language: {language_id}")


class MalformedRequest(LocalValidationError):
    code = "malformed_request"


class OutOfRange(LocalValidationError):
    code = "out_of_range"


class TransportError(LabSubmitError):
    code = "transport_error"


class DeadlineExceeded(TransportError):
    code = "deadline_exceeded"


class AuthorizationError(LabSubmitError):
    """Raised when the access guard denies an action."""

    def __init__(self, reason: DenialReason, message: str = "") -> None:
        self.reason = DenialReason(reason)
        self.code = self.reason.value
        super().__init__(message or self.reason.value.replace("_", " ").capitalize())


class StateConflictError(LabSubmitError):
    code = "state_conflict"


class DeadlinePassed(StateConflictError):
    code = "deadline_passed"


class ExecutionRejected(StateConflictError):
    code = "execution_rejected"


class RecordExists(StateConflictError):
    code = "record_exists"


class RecordNotFound(LabSubmitError):
    code = "not_found"

    def __init__(self, kind: str, record_id: str) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} {record_id} not found")
