"""
Remote code execution for practical assignments.

Source code is never run in this process.  The :class:`ExecutionClient`
ships it to a Piston compatible backend, and the
:class:`ExecutionOrchestrator` wraps the client with language resolution,
deadlines, retries and outcome classification.  Supported languages live in
the read-only :class:`LanguageRegistry`.
"""

from .base import BackendResponse, ExecutionRequest, ExecutionResult, Outcome, StageReport
from .client import ExecutionClient
from .languages import BUILTIN_LANGUAGES, LanguageRegistry, LanguageSpec
from .orchestrator import ExecutionOrchestrator, RetryPolicy, classify

__all__ = [
    "BackendResponse",
    "ExecutionRequest",
    "ExecutionResult",
    "Outcome",
    "StageReport",
    "ExecutionClient",
    "BUILTIN_LANGUAGES",
    "LanguageRegistry",
    "LanguageSpec",
    "ExecutionOrchestrator",
    "RetryPolicy",
    "classify",
]
