"""
FastAPI application factory
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from research_pipeline.core.config import PipelineConfig
from research_pipeline.core.exceptions import InsufficientCreditsError, PipelineError
from research_pipeline.logging_config import configure_logging
from research_pipeline.routes import research_router
from research_pipeline.services.budget_gate import CreditLedger, InMemoryCreditLedger
from research_pipeline.services.pipeline_orchestrator import PipelineOrchestrator

logger = structlog.get_logger(__name__)


async def pipeline_error_handler(request: Request, exc: PipelineError):
    status_code = 402 if isinstance(exc, InsufficientCreditsError) else 502
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "detail": exc.to_event_data()},
    )


def create_app(
    config: Optional[PipelineConfig] = None,
    *,
    ledger: Optional[CreditLedger] = None,
    orchestrator: Optional[PipelineOrchestrator] = None,
) -> FastAPI:
    config = config or PipelineConfig.from_env()
    configure_logging(config.log_level, pretty=config.log_pretty)
    if orchestrator is None:
        ledger = ledger or InMemoryCreditLedger(default_balance=config.initial_credit_balance)
        orchestrator = PipelineOrchestrator(config, ledger)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting research pipeline API",
            completion_providers=[p.name for p in config.completion_providers],
            research_providers=[p.name for p in orchestrator.research_executor.providers],
        )
        yield
        await orchestrator.aclose()
        logger.info("Research pipeline API stopped")

    app = FastAPI(title="Research Pipeline API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Run-Id"],
    )
    app.add_exception_handler(PipelineError, pipeline_error_handler)
    app.state.orchestrator = orchestrator
    app.state.active_runs = {}
    app.include_router(research_router)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "completion_configured": orchestrator.gateway.is_configured(),
            "research_configured": orchestrator.research_executor.is_configured(),
        }

    return app


__all__ = ["create_app", "pipeline_error_handler"]
