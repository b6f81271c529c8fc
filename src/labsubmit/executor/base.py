"""
Data types exchanged between the execution client and the orchestrator.

:class:`ExecutionRequest` is what callers hand to the orchestrator,
:class:`BackendResponse` is the parsed wire response of a single backend
call and :class:`ExecutionResult` is the normalised outcome produced exactly
once per request.  A result is never partially populated: a ``success``
carries stdout and an exit code, every failure outcome carries an
explanatory ``stderr``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional


class Outcome(str, enum.Enum):
    SUCCESS = "success"
    COMPILE_ERROR = "compile_error"
    RUNTIME_ERROR = "runtime_error"
    TIMED_OUT = "timed_out"
    BACKEND_UNAVAILABLE = "backend_unavailable"


@dataclass(frozen=True)
class ExecutionRequest:
    """Source code to run plus the language it is written in.

    ``graded`` selects the longer deadline used when a submission is
    executed for evaluation rather than interactively.
    """

    language_id: str
    source_code: str
    stdin: Optional[str] = None
    graded: bool = False


@dataclass(frozen=True)
class StageReport:
    """Output of one backend stage (``compile`` or ``run``)."""

    stdout: str = ""
    stderr: str = ""
    output: str = ""
    code: Optional[int] = None
    signal: Optional[str] = None
    status: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "StageReport":
        code = payload.get("code")
        return cls(
            stdout=payload.get("stdout") or "",
            stderr=payload.get("stderr") or "",
            output=payload.get("output") or "",
            code=int(code) if code is not None else None,
            signal=payload.get("signal") or None,
            status=payload.get("status") or None,
            message=payload.get("message") or None,
        )

    @property
    def timed_out(self) -> bool:
        # Piston reports wall/cpu limit hits either as status "TO" or as a
        # SIGKILL without an exit code on older releases.
        if self.status in {"TO", "timeout"}:
            return True
        return self.signal == "SIGKILL" and self.code is None

    @property
    def failed(self) -> bool:
        # Any status other than a time limit ("RE", "SG", "XX", "OL", "EL", ...)
        # means the stage did not complete normally, even without an exit code.
        if self.status is not None and not self.timed_out:
            return True
        return bool(self.signal) or (self.code is not None and self.code != 0)

    @property
    def diagnostics(self) -> str:
        return self.stderr or self.message or ""


@dataclass(frozen=True)
class BackendResponse:
    """Parsed backend reply.

    ``run`` is absent when compilation failed and the program never ran.
    """

    language: str
    version: str
    run: Optional[StageReport] = None
    compile: Optional[StageReport] = None


@dataclass
class ExecutionResult:
    """Normalised result of an orchestrated execution.

    Attributes
    ----------
    outcome: Outcome
        Classification of the run.
    stdout: str
        Program output (empty for failures that never ran the program).
    stderr: str
        Error output, compiler diagnostics or an explanatory message.
    exit_code: int, optional
        Exit status of the program when it ran to completion.
    duration_ms: int
        Wall‑clock time of the whole orchestrated attempt including
        retries and backoff.
    attempts: int
        Number of backend calls made.
    """

    outcome: Outcome
    stdout: str
    stderr: str
    exit_code: Optional[int]
    duration_ms: int
    attempts: int = 1
    language: str = ""
    version: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @property
    def retryable(self) -> bool:
        """Whether the user should be offered a "try again" affordance."""
        return self.outcome is Outcome.BACKEND_UNAVAILABLE
