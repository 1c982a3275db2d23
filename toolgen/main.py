import asyncio
import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from toolgen.catalog import ToolCatalog
from toolgen.inputs import InputCollector
from toolgen.lifecycle import GenerationStateMachine
from toolgen.models import Failure, FailureKind, GenerationOutcome, GenerationView, Phase, Tool
from toolgen.orchestrator import RequestOrchestrator
from toolgen.reveal import ProgressiveRevealer

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

log = logging.getLogger(__name__)

_catalog: Optional[ToolCatalog] = None
_orchestrator: Optional[RequestOrchestrator] = None


def get_catalog() -> ToolCatalog:
    global _catalog
    if _catalog is None:
        _catalog = ToolCatalog.load()
    return _catalog


def get_orchestrator() -> RequestOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = RequestOrchestrator()
    return _orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        get_catalog()
    except Exception:
        log.exception("startup: failed to load tool catalog")
        raise
    yield
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.aclose()
        _orchestrator = None


app = FastAPI(lifespan=lifespan)

allow_origins = [o.strip() for o in os.getenv("ALLOW_ORIGINS", "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _tool_from_path(path: str) -> str:
    parts = path.strip("/").split("/")
    if len(parts) >= 2 and parts[0] == "tools":
        return parts[1]
    return "-"


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = str(uuid.uuid4())
    start = time.time()
    request.state.request_id = rid
    response = None
    try:
        response = await call_next(request)
        return response
    finally:
        dur_ms = int((time.time() - start) * 1000)
        log.info(
            "rid=%s method=%s path=%s tool=%s status=%s dur_ms=%d",
            rid,
            request.method,
            request.url.path,
            _tool_from_path(request.url.path),
            getattr(response, "status_code", "?"),
            dur_ms,
        )


class GenerateBody(BaseModel):
    inputs: Dict[str, str] = Field(default_factory=dict, description="Input values keyed by input name")


def _lookup(catalog: ToolCatalog, tool_id: str) -> Tool:
    try:
        return catalog.get(tool_id)
    except KeyError:
        raise HTTPException(status_code=404, detail={"error": f"unknown tool: {tool_id}"})


def _outcome_payload(outcome: GenerationOutcome) -> Dict[str, Any]:
    if isinstance(outcome, Failure):
        return {
            "ok": False,
            "kind": outcome.kind.value,
            "message": outcome.message,
            "display": outcome.display_text,
        }
    return {"ok": True, "text": outcome.text, "display": outcome.display_text}


def _line(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False) + "\n"


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/backend/status")
def backend_status(orchestrator: RequestOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    return orchestrator.status()


@app.get("/tools")
def list_tools(catalog: ToolCatalog = Depends(get_catalog)) -> List[Dict[str, Any]]:
    return catalog.summaries()


@app.get("/tools/{tool_id}")
def get_tool(tool_id: str, catalog: ToolCatalog = Depends(get_catalog)) -> Dict[str, Any]:
    return _lookup(catalog, tool_id).model_dump()


@app.post("/tools/{tool_id}/generate")
async def generate_endpoint(
    tool_id: str,
    body: GenerateBody,
    catalog: ToolCatalog = Depends(get_catalog),
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    tool = _lookup(catalog, tool_id)
    outcome = await orchestrator.generate(tool, InputCollector(body.inputs))
    status_code = 200
    if isinstance(outcome, Failure) and outcome.kind is FailureKind.VALIDATION:
        status_code = 422
    return JSONResponse(status_code=status_code, content=_outcome_payload(outcome))


@app.post("/tools/{tool_id}/generate/stream")
async def generate_stream(
    tool_id: str,
    body: GenerateBody,
    request: Request,
    catalog: ToolCatalog = Depends(get_catalog),
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    """
    NDJSON stream of one generation cycle: meta, phase changes, revealed
    text deltas, then a settled event with the outcome.
    """
    tool = _lookup(catalog, tool_id)
    request_id = getattr(request.state, "request_id", None)

    async def _iter() -> AsyncIterator[str]:
        machine = GenerationStateMachine(
            orchestrator,
            revealer=ProgressiveRevealer(),
            collector=InputCollector(body.inputs),
            tool=tool,
        )
        queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        last = {"phase": None, "text": ""}

        def _on_change(view: GenerationView) -> None:
            if view.phase is not last["phase"]:
                last["phase"] = view.phase
                if view.phase is Phase.SETTLED and view.outcome is not None:
                    queue.put_nowait(_line({"event": "settled", "data": _outcome_payload(view.outcome)}))
                    return
                queue.put_nowait(_line({"event": "phase", "data": view.phase.value}))
            if view.phase is Phase.REVEALING and len(view.text) > len(last["text"]):
                queue.put_nowait(_line({"event": "delta", "data": view.text[len(last["text"]):]}))
                last["text"] = view.text

        machine.subscribe(_on_change)
        yield _line({"event": "meta", "request_id": request_id, "tool": tool.id, "credits_cost": tool.credits_cost})

        runner = asyncio.create_task(machine.submit())
        runner.add_done_callback(lambda _t: queue.put_nowait(None))
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield item
            if not runner.cancelled() and runner.exception() is not None:
                log.error("generate_stream: cycle failed tool=%s", tool.id, exc_info=runner.exception())
                yield _line({"event": "error", "data": {"error": str(runner.exception())}})
        finally:
            # Client went away or the cycle ended: stop reveal ticks and the request
            machine.teardown()
            if not runner.done():
                runner.cancel()

    return StreamingResponse(_iter(), media_type="application/x-ndjson")
