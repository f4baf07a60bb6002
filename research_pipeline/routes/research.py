"""
Research routes
---------------
Thin FastAPI router over the pipeline orchestrator:
- run a request to completion and return the JSON result
- stream progress events as server-sent events while the run executes
- cancel an in-flight run
"""

from __future__ import annotations

import asyncio
import uuid
from typing import AsyncIterator, Dict, Literal, Optional

import structlog
from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from research_pipeline.core.exceptions import InsufficientCreditsError
from research_pipeline.models.result import PipelineResult, RunStatus
from research_pipeline.services.pipeline_orchestrator import PipelineOrchestrator
from research_pipeline.services.progress import CancellationToken, ProgressBroadcaster

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/research", tags=["research"])


class ResearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=20000)
    mode: Literal["pipeline", "agent"] = "pipeline"
    deep_mode: bool = False
    has_history: bool = False
    profile: Optional[str] = Field(None, description="Agent budget profile (agent mode only)")
    max_budget: Optional[int] = Field(None, ge=1, description="Agent credit ceiling (agent mode only)")


def _orchestrator(request: Request) -> PipelineOrchestrator:
    return request.app.state.orchestrator


def _active_runs(request: Request) -> Dict[str, CancellationToken]:
    return request.app.state.active_runs


async def _preflight(orchestrator: PipelineOrchestrator, req: ResearchRequest, user_id: str) -> None:
    """Reject with 402 before a stream is opened when credits cannot cover the base cost."""
    config = orchestrator.config
    if req.mode == "agent":
        required = config.budget_profile(req.profile).base_cost
    else:
        required = config.costs.total(req.deep_mode, with_research=False)
    balance = await orchestrator.ledger.check_balance(user_id)
    if balance < required:
        raise HTTPException(status_code=402, detail=InsufficientCreditsError(balance, required).to_event_data())


async def _execute(
    orchestrator: PipelineOrchestrator,
    req: ResearchRequest,
    user_id: str,
    broadcaster: ProgressBroadcaster,
    cancel: CancellationToken,
) -> PipelineResult:
    if req.mode == "agent":
        return await orchestrator.run_agent(
            req.query,
            user_id=user_id,
            profile=req.profile,
            max_budget=req.max_budget,
            broadcaster=broadcaster,
            cancel=cancel,
        )
    return await orchestrator.run(
        req.query,
        user_id=user_id,
        deep_mode=req.deep_mode,
        has_history=req.has_history,
        broadcaster=broadcaster,
        cancel=cancel,
    )


@router.post("/run")
async def run_research(
    req: ResearchRequest,
    request: Request,
    x_user_id: str = Header("anonymous"),
):
    """Run a request to completion and return the serialisable result."""
    orchestrator = _orchestrator(request)
    runs = _active_runs(request)
    await _preflight(orchestrator, req, x_user_id)

    broadcaster = ProgressBroadcaster(uuid.uuid4().hex)
    cancel = CancellationToken()
    runs[broadcaster.run_id] = cancel
    try:
        result = await _execute(orchestrator, req, x_user_id, broadcaster, cancel)
    finally:
        runs.pop(broadcaster.run_id, None)

    if result.error and result.error.get("insufficient_credits"):
        raise HTTPException(status_code=402, detail=result.error)
    status_code = 200 if result.succeeded or result.status == RunStatus.CANCELLED else 502
    return JSONResponse(result.model_dump(mode="json"), status_code=status_code)


@router.post("/stream")
async def stream_research(
    req: ResearchRequest,
    request: Request,
    x_user_id: str = Header("anonymous"),
):
    """Start a run and stream its progress events (``text/event-stream``)."""
    orchestrator = _orchestrator(request)
    runs = _active_runs(request)
    await _preflight(orchestrator, req, x_user_id)

    broadcaster = ProgressBroadcaster(uuid.uuid4().hex)
    cancel = CancellationToken()
    runs[broadcaster.run_id] = cancel

    async def _run() -> PipelineResult:
        try:
            return await _execute(orchestrator, req, x_user_id, broadcaster, cancel)
        finally:
            runs.pop(broadcaster.run_id, None)

    task = asyncio.create_task(_run())

    async def event_gen() -> AsyncIterator[bytes]:
        try:
            async for event in broadcaster.stream():
                yield event.to_sse().encode("utf-8")
            result = await task
            yield f"event: result\ndata: {result.model_dump_json()}\n\n".encode("utf-8")
        finally:
            # Client went away before the terminal event
            if not task.done():
                cancel.cancel("client disconnected")

    return StreamingResponse(
        event_gen(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Run-Id": broadcaster.run_id},
    )


@router.post("/{run_id}/cancel")
async def cancel_research(run_id: str, request: Request):
    token = _active_runs(request).get(run_id)
    if token is None:
        raise HTTPException(status_code=404, detail="Run not found")
    token.cancel("cancelled by caller")
    logger.info("Run cancellation requested", run_id=run_id)
    return {"run_id": run_id, "cancelled": True}


__all__ = ["ResearchRequest", "router"]
