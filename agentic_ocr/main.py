from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agentic_ocr.core.config import settings
from agentic_ocr.modules.extraction.agents.orchestrator import get_orchestrator
from agentic_ocr.modules.extraction.router import router as receipts_router

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    orchestrator = get_orchestrator()
    config = orchestrator.get_agent_status().config
    logger.info(
        "Starting Agentic Receipt OCR API",
        mode=config.mode,
        vendors=orchestrator.registry.vendor_tags(),
        cost_budget=config.cost_budget,
        quality_threshold=config.quality_threshold,
    )
    yield
    tracker = orchestrator.cost_tracker
    if tracker is not None and tracker.runs:
        summary = tracker.summary()
        logger.info(
            "Session cost summary",
            receipts=summary["total_receipts"],
            committed_cost_usd=summary["committed_cost_usd"],
            over_budget_runs=summary["over_budget_runs"],
        )
    logger.info("Shutting down Agentic Receipt OCR API")


app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/api/docs",
    openapi_url="/api/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(receipts_router, prefix=settings.api_prefix)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}
