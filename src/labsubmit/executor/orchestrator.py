"""
Execution orchestrator.

Turns an :class:`ExecutionRequest` into exactly one :class:`ExecutionResult`:

1. resolve the language locally (an unknown language never reaches the
   network);
2. call the backend through :class:`ExecutionClient` with a bounded
   per-attempt deadline;
3. retry transport failures with exponential backoff, never backend
   reported compile/runtime failures;
4. classify the final response;
5. report the wall‑clock duration of the whole attempt, retries included.

The orchestrator holds no per-request state, so a single instance serves
any number of concurrent runs.  ``run`` is a coroutine: cancelling the
awaiting task abandons the in-flight call and no result is produced.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from ..errors import MalformedRequest, TransportError
from .base import BackendResponse, ExecutionRequest, ExecutionResult, Outcome
from .client import ExecutionClient
from .languages import LanguageRegistry


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Deadlines and backoff applied to every orchestrated run (seconds)."""

    run_timeout: float = 10.0
    graded_timeout: float = 20.0
    max_retries: int = 2
    backoff_base: float = 0.5
    backoff_factor: float = 2.0
    backoff_cap: float = 4.0

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            run_timeout=config.run_timeout_seconds,
            graded_timeout=config.graded_timeout_seconds,
            max_retries=config.max_retries,
            backoff_base=config.backoff_base_ms / 1000.0,
            backoff_factor=config.backoff_factor,
            backoff_cap=config.backoff_cap_ms / 1000.0,
        )

    def deadline_for(self, request: ExecutionRequest) -> float:
        return self.graded_timeout if request.graded else self.run_timeout

    def delay(self, retry: int) -> float:
        """Backoff before retry number ``retry`` (1-based)."""
        return min(self.backoff_base * self.backoff_factor ** (retry - 1), self.backoff_cap)


def classify(response: BackendResponse) -> tuple[Outcome, str, str, Optional[int]]:
    """Map a backend response to ``(outcome, stdout, stderr, exit_code)``."""
    compile_stage = response.compile
    # A missing run stage means the program never got past compilation
    if compile_stage is not None and (
        compile_stage.failed or compile_stage.timed_out or response.run is None
    ):
        stderr = compile_stage.diagnostics or compile_stage.output
        return (
            Outcome.COMPILE_ERROR,
            compile_stage.stdout,
            stderr or f"Compilation failed with exit code {compile_stage.code}",
            compile_stage.code,
        )

    run = response.run
    if run.timed_out:
        return (
            Outcome.TIMED_OUT,
            run.stdout,
            run.diagnostics or "Program exceeded the time limit",
            run.code,
        )
    if run.failed:
        if run.diagnostics:
            stderr = run.diagnostics
        elif run.signal:
            stderr = f"Program terminated by signal {run.signal}"
        elif run.code is not None:
            stderr = f"Program exited with code {run.code}"
        else:
            stderr = f"Program failed with status {run.status}"
        return Outcome.RUNTIME_ERROR, run.stdout, stderr, run.code
    return Outcome.SUCCESS, run.stdout, run.stderr, run.code if run.code is not None else 0


class ExecutionOrchestrator:
    def __init__(
        self,
        registry: LanguageRegistry,
        client: ExecutionClient,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.client = client
        self.policy = policy or RetryPolicy()
        self._clock = clock
        self._sleep = sleep

    def _elapsed_ms(self, start: float) -> int:
        return int(round((self._clock() - start) * 1000))

    async def run(self, request: ExecutionRequest) -> ExecutionResult:
        """Execute ``request`` and return its normalised result.

        Raises :class:`UnsupportedLanguage` or :class:`MalformedRequest`
        before any network call when the request itself is invalid; the
        backend refusing a request is reported the same way.  Every other
        failure is returned as an :class:`ExecutionResult`.
        """
        spec = self.registry.resolve(request.language_id)
        if not isinstance(request.source_code, str) or not request.source_code.strip():
            raise MalformedRequest("Source code must not be empty")
        if request.stdin is not None and not isinstance(request.stdin, str):
            raise MalformedRequest("stdin must be a string")

        deadline = self.policy.deadline_for(request)
        start = self._clock()
        attempts = 0
        while True:
            attempts += 1
            logger.info(
                "Executing %s %s (attempt %d, deadline %gs, graded=%s)",
                spec.runtime_name,
                spec.runtime_version,
                attempts,
                deadline,
                request.graded,
            )
            try:
                response = await self.client.execute(spec, request.source_code, request.stdin, deadline)
            except TransportError as exc:
                if attempts > self.policy.max_retries:
                    logger.error("Execution backend unavailable after %d attempts: %s", attempts, exc)
                    return ExecutionResult(
                        outcome=Outcome.BACKEND_UNAVAILABLE,
                        stdout="",
                        stderr=f"Execution service unavailable, please try again. ({exc.message})",
                        exit_code=None,
                        duration_ms=self._elapsed_ms(start),
                        attempts=attempts,
                        language=spec.id,
                        version=spec.runtime_version,
                    )
                delay = self.policy.delay(attempts)
                logger.warning("Attempt %d failed (%s); retrying in %.2fs", attempts, exc.code, delay)
                await self._sleep(delay)
                continue

            outcome, stdout, stderr, exit_code = classify(response)
            result = ExecutionResult(
                outcome=outcome,
                stdout=stdout,
                stderr=stderr,
                exit_code=exit_code,
                duration_ms=self._elapsed_ms(start),
                attempts=attempts,
                language=spec.id,
                version=response.version or spec.runtime_version,
            )
            logger.log(
                logging.INFO if result.ok else logging.WARNING,
                "Execution finished: outcome=%s exit_code=%s duration_ms=%s attempts=%s",
                result.outcome.value,
                result.exit_code,
                result.duration_ms,
                result.attempts,
            )
            return result
