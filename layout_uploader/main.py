"""Entry point for the FastAPI application."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from layout_uploader.errors import RunInProgressError
from layout_uploader.jobs import RunManager, RunSnapshot
from layout_uploader.schemas import CancelResponse, ProgressUpdate, RunConfig, RunSnapshotResponse

LOGGER = logging.getLogger(__name__)
TERMINAL_STATUSES = {"COMPLETED", "CANCELLED", "FAILED"}

app = FastAPI(title="Layout Tile Uploader")
RUN_MANAGER = RunManager()


def _snapshot_to_response(snapshot: RunSnapshot) -> RunSnapshotResponse:
    progress = snapshot.get("progress")
    return RunSnapshotResponse(
        run_id=snapshot.get("run_id"),
        status=str(snapshot.get("status", "IDLE")),
        layout_key=snapshot.get("layout_key"),
        layout_path=snapshot.get("layout_path"),
        max_zoom=snapshot.get("max_zoom"),
        tiles_uploaded=snapshot.get("tiles_uploaded", 0),
        message=snapshot.get("message"),
        progress=ProgressUpdate(**progress) if progress else None,
    )


@app.get("/health", tags=["health"])
async def healthcheck() -> dict[str, str]:
    """Return a simple status useful for smoke tests."""

    return {"status": "ok"}


@app.post("/runs", response_model=RunSnapshotResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_run(config: RunConfig) -> RunSnapshotResponse:
    try:
        snapshot = await RUN_MANAGER.start_run(config)
    except RunInProgressError as exc:
        LOGGER.warning("Rejected run start for layout %s: %s", config.layout_key, exc)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _snapshot_to_response(snapshot)


@app.get("/runs/current", response_model=RunSnapshotResponse)
async def current_run() -> RunSnapshotResponse:
    return _snapshot_to_response(RUN_MANAGER.current())


@app.get("/progress", response_model=ProgressUpdate | None)
async def get_progress() -> ProgressUpdate | None:
    """Latest progress snapshot, or ``null`` before the first run."""

    return RUN_MANAGER.get_progress()


@app.post("/cancel", response_model=CancelResponse)
async def cancel_run() -> CancelResponse:
    return CancelResponse(cancelled=RUN_MANAGER.cancel())


@app.get("/progress/stream")
async def progress_stream(request: Request) -> StreamingResponse:
    queue = RUN_MANAGER.subscribe()

    async def event_generator() -> AsyncIterator[str]:
        heartbeat = 0
        try:
            while True:
                try:
                    snapshot = await asyncio.wait_for(queue.get(), timeout=5)
                except asyncio.TimeoutError:
                    heartbeat += 1
                    yield f"event: heartbeat\ndata: {heartbeat}\n\n"
                    if await request.is_disconnected():
                        break
                    continue
                yield f"event: snapshot\ndata: {json.dumps(snapshot)}\n\n"
                if await request.is_disconnected():
                    break
        finally:
            RUN_MANAGER.unsubscribe(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")
