"""Run API: JSON endpoints and the live SSE stream.

Endpoints:
    - POST /runs - Trigger a pipeline run (returns immediately)
    - GET /runs - All runs, newest first
    - GET /runs/{run_id} - Snapshot of one run
    - GET /runs/{run_id}/logs?since=N - Log lines from index N
    - GET /runs/{run_id}/stream - SSE: init, log, status, complete (+ heartbeat)

Security:
    All endpoints respect ``api.api_key`` when configured. The stream also
    accepts the key via ``?token=`` for EventSource compatibility.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from harborline.auth import require_api_key, require_stream_token
from harborline.errors import RunNotFoundError, ValidationError
from harborline.models import RunConfig
from harborline.orchestrator import Orchestrator

if TYPE_CHECKING:
    from harborline.broadcast import BroadcastHub, Subscriber

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/runs", tags=["runs"])

HEARTBEAT_SECONDS = 30.0


def get_orchestrator(request: Request) -> Orchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not available")
    return orchestrator


# ── REST ──────────────────────────────────────────────────────────────────────


@router.post("", status_code=202)
async def trigger_run(
    config: RunConfig,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    _: bool = Depends(require_api_key),
):
    """Start a pipeline run. The workflow continues in the background."""
    try:
        run_id = orchestrator.trigger(config)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    snapshot = orchestrator.get_snapshot(run_id)
    return {"id": run_id, "status": snapshot.status.value, "image": snapshot.image}


@router.get("")
async def list_runs(
    orchestrator: Orchestrator = Depends(get_orchestrator),
    _: bool = Depends(require_api_key),
):
    return {"runs": [s.model_dump(mode="json") for s in orchestrator.list_snapshots()]}


@router.get("/{run_id}")
async def get_run(
    run_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    _: bool = Depends(require_api_key),
):
    try:
        return orchestrator.get_snapshot(run_id).model_dump(mode="json")
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@router.get("/{run_id}/logs")
async def get_run_logs(
    run_id: str,
    since: int = Query(default=0, ge=0, description="Index of the first line to return"),
    orchestrator: Orchestrator = Depends(get_orchestrator),
    _: bool = Depends(require_api_key),
):
    """Log lines from ``since``; poll again with ``since=next`` for more."""
    try:
        run = orchestrator.get(run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    lines = run.logs_snapshot(since)
    return {
        "id": run_id,
        "since": since,
        "next": since + len(lines),
        "finished": run.finished,
        "lines": lines,
    }


# ── SSE Streaming ─────────────────────────────────────────────────────────────


async def _sse_generator(hub: BroadcastHub, sub: Subscriber, heartbeat: float = HEARTBEAT_SECONDS):
    """Relay a subscriber's events as SSE until ``complete`` or disconnect."""
    try:
        while True:
            try:
                event = await sub.next_event(timeout=heartbeat)
            except StopAsyncIteration:
                break
            if event is None:
                yield "event: heartbeat\ndata: {}\n\n"
                continue
            yield event.to_sse()
    finally:
        hub.unsubscribe(sub)


@router.get("/{run_id}/stream")
async def stream_run(
    run_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    _: bool = Depends(require_stream_token),
):
    """Stream a run's progress via SSE.

    Connect with EventSource:
    ```javascript
    const es = new EventSource('/runs/abc123/stream?token=YOUR_KEY');
    es.addEventListener('log', (e) => console.log(JSON.parse(e.data).line));
    ```

    Event types:
    - init: snapshot fields plus ``logs`` (the full backlog), sent once
    - log: ``{line, index}`` for every new line
    - status: compact snapshot on every transition
    - complete: ``{status, duration}``, then the stream ends
    - heartbeat: keep-alive when idle
    """
    try:
        sub = orchestrator.subscribe(run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e

    return StreamingResponse(
        _sse_generator(orchestrator.hub, sub),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
