import asyncio
import json

import httpx
import pytest

from toolgen import orchestrator as orch_mod
from toolgen.inputs import InputCollector
from toolgen.models import Failure, FailureKind, PromptTemplate, RetryState, Success, Tool, ToolInput
from toolgen.orchestrator import TIMEOUT_MESSAGE, RequestOrchestrator

ENDPOINT = "http://backend.test/api/ai/generate"

TOOL = Tool(
    id="blog-writer",
    title="Blog writer",
    credits_cost=3,
    inputs=[ToolInput(name="topic", description="Subject", required=True), ToolInput(name="tone")],
    prompts=[
        PromptTemplate(raw_text="Write about {{topic}}", id="p1"),
        PromptTemplate(raw_text="Tone: {{tone}}", id="p2"),
    ],
)


def _generate(handler, collector, retry_state=None, **kwargs):
    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            orch = RequestOrchestrator(client=client, endpoint=ENDPOINT, **kwargs)
            return await orch.generate(TOOL, collector, retry_state)

    return asyncio.run(go())


class Recorder:
    """Backend double answering from a script of (status, body) pairs."""

    def __init__(self, *script):
        self.script = list(script)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        status, body = self.script[min(len(self.requests), len(self.script)) - 1]
        if isinstance(body, (dict, list)):
            return httpx.Response(status, json=body)
        return httpx.Response(status, text=body or "")

    @property
    def bodies(self):
        return [json.loads(r.content) for r in self.requests]


def test_missing_required_input_never_hits_network():
    backend = Recorder((200, {"output": "never"}))
    out = _generate(backend, InputCollector({"topic": ""}))
    assert out == Failure(kind=FailureKind.VALIDATION, message="Missing required inputs: topic")
    assert backend.requests == []


def test_success_returns_output_and_sends_rendered_prompts():
    backend = Recorder((200, {"output": "Hello world"}))
    out = _generate(backend, InputCollector({"topic": "cats"}))
    assert out == Success(text="Hello world")
    assert len(backend.requests) == 1

    req = backend.requests[0]
    assert req.method == "POST"
    assert str(req.url) == ENDPOINT
    assert req.headers["content-type"] == "application/json"
    assert req.headers["accept"] == "application/json"

    body = backend.bodies[0]
    assert body["toolId"] == "blog-writer"
    assert body["inputs"] == {"topic": "cats"}
    assert [p["content"] for p in body["prompts"]] == ["Write about cats", "Tone: {{tone}}"]
    assert [p["id"] for p in body["prompts"]] == ["p1", "p2"]


def test_always_504_makes_exactly_three_attempts():
    backend = Recorder((504, None))
    out = _generate(backend, InputCollector({"topic": "cats"}))
    assert out == Failure(kind=FailureKind.TIMEOUT, message=TIMEOUT_MESSAGE)
    assert len(backend.requests) == 3


def test_504_twice_then_success():
    backend = Recorder((504, None), (504, None), (200, {"output": "ok"}))
    out = _generate(backend, InputCollector({"topic": "cats"}))
    assert out == Success(text="ok")
    assert len(backend.requests) == 3


def test_error_payload_mentioning_timeout_is_retried():
    backend = Recorder((500, {"error": "upstream timeout"}), (200, {"output": "second time lucky"}))
    out = _generate(backend, InputCollector({"topic": "cats"}))
    assert out == Success(text="second time lucky")
    assert len(backend.requests) == 2


def test_server_error_is_network_failure_without_retry():
    backend = Recorder((500, {"error": "boom"}))
    out = _generate(backend, InputCollector({"topic": "cats"}))
    assert out == Failure(kind=FailureKind.NETWORK, message="boom")
    assert len(backend.requests) == 1


def test_structured_error_message_is_preferred():
    backend = Recorder((400, {"error": {"message": "prompt too long"}}))
    out = _generate(backend, InputCollector({"topic": "cats"}))
    assert out == Failure(kind=FailureKind.NETWORK, message="prompt too long")


def test_status_line_used_when_error_body_missing():
    backend = Recorder((503, "<html>down</html>"))
    out = _generate(backend, InputCollector({"topic": "cats"}))
    assert out == Failure(kind=FailureKind.NETWORK, message="Failed to generate response: 503 Service Unavailable")


@pytest.mark.parametrize("body", [{}, {"output": ""}, {"result": "x"}, "not json"])
def test_success_without_output_is_format_failure(body):
    backend = Recorder((200, body))
    out = _generate(backend, InputCollector({"topic": "cats"}))
    assert out == Failure(kind=FailureKind.FORMAT, message="Invalid response format from server")
    assert len(backend.requests) == 1


def test_late_response_is_a_timeout_not_a_success():
    calls = []

    async def slow(request):
        calls.append(request)
        await asyncio.sleep(0.5)
        return httpx.Response(200, json={"output": "too late"})

    out = _generate(slow, InputCollector({"topic": "cats"}), timeout_ms=20, max_retries=0)
    assert out == Failure(kind=FailureKind.TIMEOUT, message=TIMEOUT_MESSAGE)
    assert len(calls) == 1


def test_deadline_applies_to_every_attempt():
    calls = []

    async def hang(request):
        calls.append(request)
        await asyncio.sleep(5)
        return httpx.Response(200, json={"output": "never"})

    out = _generate(hang, InputCollector({"topic": "cats"}), timeout_ms=20)
    assert isinstance(out, Failure) and out.kind is FailureKind.TIMEOUT
    assert len(calls) == 3


def test_transport_timeout_counts_as_timeout_class():
    calls = []

    def read_timeout(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ReadTimeout("read timed out", request=request)
        return httpx.Response(200, json={"output": "recovered"})

    out = _generate(read_timeout, InputCollector({"topic": "cats"}))
    assert out == Success(text="recovered")
    assert len(calls) == 2


def test_retry_rerenders_with_values_edited_between_attempts():
    collector = InputCollector({"topic": "cats"})
    backend = Recorder((504, None), (200, {"output": "ok"}))

    def editing(request):
        resp = backend(request)
        collector.set_value("topic", "dogs")
        return resp

    out = _generate(editing, collector)
    assert out == Success(text="ok")
    assert [b["prompts"][0]["content"] for b in backend.bodies] == ["Write about cats", "Write about dogs"]


def test_retry_state_is_reset_after_terminal_outcomes():
    state = RetryState(max_attempts=2)
    _generate(Recorder((504, None)), InputCollector({"topic": "cats"}), retry_state=state)
    assert state.attempt_count == 0

    _generate(Recorder((504, None), (200, {"output": "ok"})), InputCollector({"topic": "cats"}), retry_state=state)
    assert state.attempt_count == 0


def test_retry_bound_follows_retry_state():
    backend = Recorder((504, None))
    out = _generate(backend, InputCollector({"topic": "cats"}), retry_state=RetryState(max_attempts=0))
    assert isinstance(out, Failure) and out.kind is FailureKind.TIMEOUT
    assert len(backend.requests) == 1


def test_connection_error_is_network_failure():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    out = _generate(refuse, InputCollector({"topic": "cats"}))
    assert out == Failure(kind=FailureKind.NETWORK, message="connection refused")


def test_unexpected_exception_is_unknown_failure():
    def explode(request):
        raise RuntimeError("kaput")

    out = _generate(explode, InputCollector({"topic": "cats"}))
    assert out == Failure(kind=FailureKind.UNKNOWN, message="kaput")


def test_defaults_come_from_module_settings(monkeypatch):
    monkeypatch.setattr(orch_mod, "GENERATE_ENDPOINT", "http://elsewhere.test/gen")
    monkeypatch.setattr(orch_mod, "GENERATE_TIMEOUT_MS", 1234)
    monkeypatch.setattr(orch_mod, "GENERATE_MAX_RETRIES", 5)
    o = RequestOrchestrator()
    assert o.status() == {"endpoint": "http://elsewhere.test/gen", "timeout_ms": 1234, "max_retries": 5}
    assert o.new_retry_state().max_attempts == 5


def test_shipped_defaults():
    o = RequestOrchestrator()
    assert orch_mod.GENERATE_TIMEOUT_MS == 58000
    assert orch_mod.GENERATE_MAX_RETRIES == 2
    assert o.timeout_ms == 58000
    assert o.max_retries == 2
