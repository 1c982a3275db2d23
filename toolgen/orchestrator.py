from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any, Dict, Optional

import httpx

from toolgen.inputs import InputCollector, missing_message
from toolgen.models import (
    Failure,
    FailureKind,
    GenerationOutcome,
    GenerationRequest,
    RetryState,
    Success,
    Tool,
)
from toolgen.parsing import (
    INVALID_FORMAT,
    describe_exception,
    extract_output,
    is_timeout_signal,
    safe_json,
    status_message,
)
from toolgen.templates import render_all

log = logging.getLogger(__name__)

GENERATE_ENDPOINT = os.getenv("GENERATE_ENDPOINT", "http://localhost:3000/api/ai/generate").strip()

# Just under the 60s gateway limit of the backend host
try:
    GENERATE_TIMEOUT_MS = int(os.getenv("GENERATE_TIMEOUT_MS", "58000"))
except Exception:
    GENERATE_TIMEOUT_MS = 58000
try:
    GENERATE_MAX_RETRIES = int(os.getenv("GENERATE_MAX_RETRIES", "2"))
except Exception:
    GENERATE_MAX_RETRIES = 2
if GENERATE_MAX_RETRIES < 0:
    GENERATE_MAX_RETRIES = 0

TIMEOUT_MESSAGE = (
    "The request timed out. The AI model is taking longer than expected to respond. "
    "Please try again with a simpler prompt or try again later."
)

_REQUEST_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}


class _TimeoutClass(Exception):
    """Raised by a single attempt when the failure is eligible for retry."""


class RequestOrchestrator:
    """Sends one generation cycle to the backend: validate, render, POST, classify, retry.

    Only timeout-class failures (deadline hit, HTTP 504, or an error payload
    mentioning a timeout) are retried, strictly one attempt after another.
    Every other result is terminal and returned as a ``GenerationOutcome``;
    nothing is raised to the caller except cancellation.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        endpoint: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        max_retries: Optional[int] = None,
    ):
        self.endpoint = endpoint or GENERATE_ENDPOINT
        self.timeout_ms = GENERATE_TIMEOUT_MS if timeout_ms is None else timeout_ms
        self.max_retries = GENERATE_MAX_RETRIES if max_retries is None else max_retries
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "RequestOrchestrator":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            # The deadline is enforced around the whole attempt, not per socket op
            self._client = httpx.AsyncClient(timeout=None)
        return self._client

    def status(self) -> Dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "timeout_ms": self.timeout_ms,
            "max_retries": self.max_retries,
        }

    def new_retry_state(self) -> RetryState:
        return RetryState(attempt_count=0, max_attempts=self.max_retries)

    def build_request(self, tool: Tool, collector: InputCollector) -> GenerationRequest:
        values = collector.values
        rendered = render_all([p.raw_text for p in tool.prompts], values)
        return GenerationRequest(
            tool_id=tool.id,
            inputs=values,
            templates=list(tool.prompts),
            rendered_prompts=rendered,
        )

    async def generate(
        self,
        tool: Tool,
        collector: InputCollector,
        retry_state: Optional[RetryState] = None,
    ) -> GenerationOutcome:
        state = retry_state if retry_state is not None else self.new_retry_state()
        try:
            return await self._run(tool, collector, state)
        finally:
            state.reset()

    async def _run(self, tool: Tool, collector: InputCollector, state: RetryState) -> GenerationOutcome:
        missing = collector.validate(tool.inputs)
        if missing:
            log.info("generate.validation tool=%s missing=%s", tool.id, missing)
            return Failure(kind=FailureKind.VALIDATION, message=missing_message(missing))

        while True:
            attempt = state.attempt_count + 1
            try:
                # Re-rendered on every attempt so edits made between attempts are sent
                request = self.build_request(tool, collector)
                return await self._attempt(request, attempt, state.max_attempts + 1)
            except _TimeoutClass as exc:
                if not state.can_retry():
                    log.warning("generate.timeout tool=%s attempts=%d reason=%s; giving up", tool.id, attempt, exc)
                    return Failure(kind=FailureKind.TIMEOUT, message=TIMEOUT_MESSAGE)
                state.advance()
                log.info(
                    "generate.retry tool=%s retry=%d/%d reason=%s",
                    tool.id,
                    state.attempt_count,
                    state.max_attempts,
                    exc,
                )
            except httpx.RequestError as exc:
                log.warning("generate.network tool=%s attempt=%d error=%r", tool.id, attempt, exc)
                return Failure(kind=FailureKind.NETWORK, message=describe_exception(exc))
            except Exception as exc:
                log.exception("generate.unexpected tool=%s attempt=%d", tool.id, attempt)
                return Failure(kind=FailureKind.UNKNOWN, message=describe_exception(exc))

    async def _post(self, request: GenerationRequest) -> httpx.Response:
        client = self._get_client()
        return await client.post(self.endpoint, json=request.payload(), headers=_REQUEST_HEADERS)

    async def _attempt(self, request: GenerationRequest, attempt: int, total: int) -> GenerationOutcome:
        log.info(
            "generate.attempt tool=%s attempt=%d/%d prompts=%d",
            request.tool_id,
            attempt,
            total,
            len(request.rendered_prompts),
        )
        started = time.monotonic()
        try:
            # wait_for cancels the in-flight post when the deadline fires
            resp = await asyncio.wait_for(self._post(request), timeout=self.timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            raise _TimeoutClass(f"no response within {self.timeout_ms}ms") from None
        except httpx.TimeoutException as exc:
            raise _TimeoutClass(f"transport timeout: {exc!r}") from None
        dur_ms = int((time.monotonic() - started) * 1000)

        payload = safe_json(resp)
        if not resp.is_success:
            if is_timeout_signal(resp.status_code, payload):
                raise _TimeoutClass(f"status={resp.status_code}")
            msg = status_message(resp, payload)
            log.warning("generate.http_error tool=%s status=%d dur_ms=%d msg=%s", request.tool_id, resp.status_code, dur_ms, msg)
            return Failure(kind=FailureKind.NETWORK, message=msg)

        output = extract_output(payload)
        if output is None:
            log.warning("generate.bad_format tool=%s status=%d dur_ms=%d", request.tool_id, resp.status_code, dur_ms)
            return Failure(kind=FailureKind.FORMAT, message=INVALID_FORMAT)
        log.info("generate.ok tool=%s chars=%d dur_ms=%d", request.tool_id, len(output), dur_ms)
        return Success(text=output)
