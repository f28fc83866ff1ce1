"""
Pipeline management routes.

Endpoints for starting and stopping the catalog pipeline, checking its
status, and streaming its progress log as Server-Sent Events.
"""

import asyncio
import json
import os
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from ..services.pipeline_runner import (
    PipelineAlreadyRunning,
    PipelineCoordinator,
    PipelineNotRunning,
    PipelineRun,
)


router = APIRouter(prefix="/api/pipeline", tags=["pipeline"])

# Seconds between progress polls on an open event stream
POLL_INTERVAL = float(os.getenv("PIPELINE_POLL_INTERVAL", "1.0"))


class PipelineRunResponse(BaseModel):
    """State of a pipeline run."""
    run_id: str
    status: str
    current_step: Optional[int] = None
    current_step_name: Optional[str] = None
    steps: List[str]
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None


class PipelineStatusResponse(BaseModel):
    """Response for pipeline status check."""
    status: str
    run: Optional[PipelineRunResponse] = None
    progress_entries: int


def get_coordinator(request: Request) -> PipelineCoordinator:
    """Dependency returning the app's pipeline coordinator."""
    return request.app.state.coordinator


def run_response(run: PipelineRun) -> PipelineRunResponse:
    return PipelineRunResponse(**run.to_dict())


def sse_event(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


@router.get("/status", response_model=PipelineStatusResponse)
def get_pipeline_status(coordinator: PipelineCoordinator = Depends(get_coordinator)):
    """
    Check whether the pipeline is running.

    Returns:
        "running" or "stopped", plus the active or most recent run
    """
    run = coordinator.current_run
    return PipelineStatusResponse(
        status="running" if coordinator.is_running else "stopped",
        run=run_response(run) if run else None,
        progress_entries=len(coordinator.progress),
    )


@router.post("/start", response_model=PipelineRunResponse)
def start_pipeline(coordinator: PipelineCoordinator = Depends(get_coordinator)):
    """
    Queue a pipeline run.

    Raises:
        HTTPException: 409 if a run is already queued or running
    """
    try:
        run = coordinator.submit()
    except PipelineAlreadyRunning as e:
        raise HTTPException(status_code=409, detail=str(e))
    return run_response(run)


@router.post("/stop", response_model=PipelineRunResponse)
def stop_pipeline(coordinator: PipelineCoordinator = Depends(get_coordinator)):
    """
    Stop the active run, terminating its current step.

    Raises:
        HTTPException: 409 if no run is in progress
    """
    try:
        run = coordinator.stop()
    except PipelineNotRunning as e:
        raise HTTPException(status_code=409, detail=str(e))
    return run_response(run)


@router.get("/progress")
async def stream_progress(
    request: Request,
    since: int = Query(0, ge=0, description="First progress index to send"),
    follow: bool = Query(True, description="Keep the stream open for new entries"),
    coordinator: PipelineCoordinator = Depends(get_coordinator),
):
    """
    Stream progress log entries as Server-Sent Events.

    Each event is `data: {"index": n, "message": "..."}`. With follow=false
    the stream ends after the entries logged so far.
    """

    async def events():
        yield sse_event({"message": "Connected to event stream"})
        cursor = since
        while True:
            for entry in coordinator.progress.since(cursor):
                yield sse_event({"index": entry.index, "message": entry.message})
                cursor = entry.index + 1
            if not follow or await request.is_disconnected():
                break
            await asyncio.sleep(POLL_INTERVAL)

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
