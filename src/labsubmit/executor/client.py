"""
HTTP client for the Piston compatible execution backend.

The client owns the wire contract and nothing else.  One call to
:meth:`ExecutionClient.execute` makes exactly one outbound request; it never
retries.  Failures are split into two families the orchestrator treats very
differently:

* transport failures (connection errors, deadline misses, 5xx / 429,
  unreadable bodies, 4xx without a body) raise :class:`TransportError`;
* a 4xx with an explanatory body means the backend refused the request
  itself (unknown runtime, oversized payload) and raises
  :class:`MalformedRequest`.

Compile and runtime failures come back as a normal 2xx
:class:`BackendResponse` and are classified by the orchestrator.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from ..errors import DeadlineExceeded, MalformedRequest, TransportError
from .base import BackendResponse, StageReport
from .languages import LanguageSpec


logger = logging.getLogger(__name__)


class ExecutionClient:
    """Stateless adapter around ``POST /api/v2/piston/execute``."""

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.headers = {"Content-Type": "application/json"}
        if token:
            self.headers["Authorization"] = token
        # Tests inject an httpx.MockTransport here.
        self._transport = transport

    @staticmethod
    def build_payload(
        spec: LanguageSpec, source_code: str, stdin: Optional[str] = None
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "language": spec.runtime_name,
            "version": spec.runtime_version,
            "files": [{"name": spec.file_name, "content": source_code}],
        }
        if stdin is not None:
            payload["stdin"] = stdin
        return payload

    async def execute(
        self,
        spec: LanguageSpec,
        source_code: str,
        stdin: Optional[str],
        deadline: float,
    ) -> BackendResponse:
        """Send one execution request and parse the backend's answer.

        ``deadline`` is a hard limit in seconds on the whole exchange.  A
        response arriving later is discarded and :class:`DeadlineExceeded`
        is raised instead.
        """
        payload = self.build_payload(spec, source_code, stdin)
        try:
            response = await asyncio.wait_for(self._post(payload, deadline), timeout=deadline)
        except asyncio.TimeoutError:
            raise DeadlineExceeded(f"No response from execution backend within {deadline:g}s")
        except httpx.TimeoutException as exc:
            raise DeadlineExceeded(f"Execution backend timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Could not reach execution backend: {exc}") from exc
        return self.parse_response(response)

    async def _post(self, payload: Dict[str, Any], deadline: float) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(deadline), transport=self._transport
        ) as client:
            return await client.post(self.url, json=payload, headers=self.headers)

    @staticmethod
    def parse_response(response: httpx.Response) -> BackendResponse:
        status = response.status_code
        if status >= 500 or status == 429:
            raise TransportError(f"Execution backend returned {status}")
        if status >= 400:
            detail = _error_detail(response)
            if not detail:
                raise TransportError(f"Execution backend returned {status} with no body")
            logger.warning("Execution backend rejected request: status=%s detail=%s", status, detail)
            raise MalformedRequest(f"Execution backend rejected request: {detail}")

        try:
            data = response.json()
        except ValueError as exc:
            raise TransportError(f"Unreadable response from execution backend: {exc}") from exc
        if not isinstance(data, dict):
            raise TransportError(f"Unexpected response from execution backend: {data!r:.200}")
        run_stage = data.get("run")
        compile_stage = data.get("compile")
        if not isinstance(run_stage, dict) and not isinstance(compile_stage, dict):
            raise TransportError(f"Unexpected response from execution backend: {data!r:.200}")

        try:
            run = StageReport.from_payload(run_stage) if isinstance(run_stage, dict) else None
            compile_report = (
                StageReport.from_payload(compile_stage) if isinstance(compile_stage, dict) else None
            )
        except (TypeError, ValueError) as exc:
            raise TransportError(f"Malformed stage report from execution backend: {exc}") from exc
        # Piston omits the run stage only when compilation did not succeed
        if run is None and not (compile_report.failed or compile_report.timed_out):
            raise TransportError("Execution backend reported a successful compile but no run stage")

        return BackendResponse(
            language=str(data.get("language", "")),
            version=str(data.get("version", "")),
            run=run,
            compile=compile_report,
        )


def _error_detail(response: httpx.Response) -> str:
    if not response.content:
        return ""
    try:
        body = response.json()
    except ValueError:
        return response.text.strip()
    if isinstance(body, dict):
        return str(body.get("message") or body.get("detail") or body.get("error") or body)
    return str(body)
