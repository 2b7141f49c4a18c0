"""
HTTP API for running jobs.

``POST /execute`` takes ``url``, ``action`` and ``instruction`` as JSON or as
form fields, launches one sandbox and streams its events back as they happen,
one line per event:

    LOG: <log line>
    IMG: <base64 jpeg>
    END: <JobResult JSON>
    ERR: <stream error>

A client disconnect ends the stream and force-removes the sandbox.
"""

import os
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, StreamingResponse
from pydantic import BaseModel

from .config import OrchestratorConfig
from .log_config import configure_logging, get_logger
from .sandbox.errors import SandboxLaunchError
from .sandbox.events import JobEvent, LogLine, ProgressImage, ResultEvent, StreamError
from .sandbox.manager import SandboxHandle, SandboxManager
from .sandbox.types import JobAction, JobDescriptor

configure_logging()
log = get_logger("web_api", service="orchestrator")


class ExecuteRequest(BaseModel):
    url: str
    action: str
    instruction: str = ""


async def _read_execute_request(request: Request) -> ExecuteRequest:
    """Accept a JSON body or classic form fields with the same names."""
    if request.headers.get("content-type", "").startswith("application/json"):
        raw = await request.json()
    else:
        raw = dict(await request.form())
    return ExecuteRequest.model_validate(raw)


def render_event(event: JobEvent) -> str:
    """Wire form of one event; newlines inside payloads are flattened."""
    if isinstance(event, ProgressImage):
        return f"IMG: {event.image}\n"
    if isinstance(event, ResultEvent):
        return f"END: {event.result.to_json()}\n"
    if isinstance(event, StreamError):
        return f"ERR: Error reading logs: {_single_line(event.message)}\n"
    if isinstance(event, LogLine):
        return f"LOG: {_single_line(event.text)}\n"
    raise TypeError(f"unknown event type: {type(event).__name__}")


def _single_line(text: str) -> str:
    return text.replace("\r", " ").replace("\n", " ")


async def _event_feed(handle: SandboxHandle, started: float) -> AsyncIterator[str]:
    outcome = "disconnected"
    try:
        async for event in handle.events():
            if isinstance(event, ResultEvent):
                outcome = "success" if event.result.success else "job_failed"
            elif isinstance(event, StreamError):
                outcome = "stream_error"
            yield render_event(event)
        if outcome == "disconnected":
            outcome = "no_result"
    finally:
        # Runs on normal completion and on client disconnect; removal happens
        # in the handle's watcher task, not in this (possibly cancelled) one.
        handle.close()
        log.info(
            "job.stream_end",
            container_id=handle.container_id,
            outcome=outcome,
            duration_ms=int((time.time() - started) * 1000),
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.manager = SandboxManager(OrchestratorConfig.from_env())
    try:
        yield
    finally:
        await app.state.manager.aclose()


app = FastAPI(title="bbaas", lifespan=lifespan)


@app.post("/execute")
async def execute_job(request: Request):
    start_time = time.time()
    http_status = 200
    outcome = "success"

    try:
        body = await _read_execute_request(request)
    except ValueError as e:
        log.warn(
            "http.request", http_method="POST", http_path="/execute", http_status=400, exc=e
        )
        return PlainTextResponse(f"invalid request: {e}", status_code=400)

    try:
        action = JobAction(body.action)
    except ValueError:
        log.warn("http.request", http_method="POST", http_path="/execute", http_status=400)
        return PlainTextResponse(f"unknown action: {body.action}", status_code=400)

    descriptor = JobDescriptor(action=action, url=body.url, target=body.instruction)
    manager: SandboxManager = request.app.state.manager

    try:
        handle = await manager.launch(descriptor.to_payload())
    except SandboxLaunchError as e:
        outcome = "error"
        http_status = 500
        return PlainTextResponse(f"Failed to run job: {e}", status_code=500)
    finally:
        log.info(
            "http.request",
            http_method="POST",
            http_path="/execute",
            http_status=http_status,
            action=descriptor.action.value,
            duration_ms=int((time.time() - start_time) * 1000),
            outcome=outcome,
        )

    return StreamingResponse(
        _event_feed(handle, start_time),
        media_type="text/plain; charset=utf-8",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/api/v1/health")
def api_health() -> dict:
    """Health check endpoint."""
    return {"success": True, "data": {"status": "healthy", "service": "bbaas"}}


def main() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8080")),
    )


if __name__ == "__main__":
    main()
