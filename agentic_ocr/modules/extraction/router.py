"""Agentic OCR API: /receipts/agentic endpoints.

Processing:
  - POST  /agentic          JSON body (image URL or base64 data) + options
  - POST  /agentic/upload   multipart upload (image or PDF receipt) + form options

Introspection & admin:
  - GET   /agentic/status   agents, current config, cost projection
  - PATCH /agentic/config   runtime config update (admin permission)
"""

from __future__ import annotations

import time
from typing import Any

import structlog
from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from pydantic import ValidationError

from agentic_ocr.core.config import settings
from agentic_ocr.core.security import get_current_user, require_admin
from agentic_ocr.modules.extraction.agent_schemas import (
    AgenticResult,
    ExtractionRequest,
    OrchestratorConfig,
    ReceiptImage,
)
from agentic_ocr.modules.extraction.agents.orchestrator import (
    PipelineOrchestrator,
    get_orchestrator,
)
from agentic_ocr.modules.extraction.config_store import MODE_PRESETS
from agentic_ocr.modules.extraction.exceptions import (
    ConfigurationInvalid,
    ImageTooLarge,
    InputInvalid,
)
from agentic_ocr.modules.extraction.image_service import (
    SUPPORTED_MIME_TYPES,
    load_receipt_image,
)
from agentic_ocr.modules.extraction.schemas import (
    ConfigUpdateRequest,
    ExtractionOptions,
    ProcessReceiptRequest,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/receipts", tags=["receipts"])


async def _run_pipeline(
    orchestrator: PipelineOrchestrator,
    image: ReceiptImage,
    options: ExtractionOptions,
    request: Request,
) -> AgenticResult:
    start = time.monotonic()
    try:
        result = await orchestrator.process_receipt(ExtractionRequest(image=image, options=options))
    except InputInvalid as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(
        "Agentic receipt processed",
        file=image.file_name,
        client=request.client.host if request.client else None,
        success=result.success,
        confidence=result.quality.overall_confidence,
        cost=result.pipeline.total_cost,
        elapsed_ms=int((time.monotonic() - start) * 1000),
    )
    return result


def _load_image(**kwargs: Any) -> ReceiptImage:
    try:
        return load_receipt_image(**kwargs)
    except ImageTooLarge as e:
        raise HTTPException(status_code=413, detail=str(e))
    except InputInvalid as e:
        raise HTTPException(status_code=400, detail=str(e))


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------


@router.post("/agentic", response_model=AgenticResult)
async def process_receipt(
    body: ProcessReceiptRequest,
    request: Request,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
    user: dict = Depends(get_current_user),
) -> AgenticResult:
    """Process a receipt referenced by URL or carried as base64 data.

    Always returns an AgenticResult when the input is valid; a pipeline that
    found no usable result reports ``success=false`` with an error block.
    """
    image = _load_image(
        image_data=body.image_data,
        image_url=body.image_url,
        file_type=body.file_type,
        file_name=body.file_name or "",
    )
    return await _run_pipeline(orchestrator, image, body.options, request)


@router.post("/agentic/upload", response_model=AgenticResult)
async def process_receipt_upload(
    request: Request,
    file: UploadFile = File(..., description="Receipt image (JPEG, PNG, WebP, GIF) or PDF"),
    forced_vendor: str | None = Form(None, description="Parse as this vendor tag"),
    max_cost: float | None = Form(None, description="Per-request USD ceiling"),
    skip_baseline_fallback: bool = Form(False),
    force_fallback: bool = Form(False),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
    user: dict = Depends(get_current_user),
) -> AgenticResult:
    """Upload a receipt file and process it through the agentic pipeline."""
    contents = await file.read()
    size_mb = len(contents) / (1024 * 1024)
    if size_mb > settings.extraction_max_file_size_mb:
        raise HTTPException(
            status_code=413,
            detail=f"File too large: {size_mb:.1f} MB (max {settings.extraction_max_file_size_mb} MB).",
        )

    try:
        options = ExtractionOptions(
            forced_vendor=forced_vendor or None,
            max_cost=max_cost,
            skip_baseline_fallback=skip_baseline_fallback,
            force_fallback=force_fallback,
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False))

    logger.info("Agentic upload request", filename=file.filename, size_mb=round(size_mb, 2))
    image = _load_image(
        image_bytes=contents,
        file_type=file.content_type,
        file_name=file.filename or "",
    )
    return await _run_pipeline(orchestrator, image, options, request)


# ---------------------------------------------------------------------------
# Status & configuration
# ---------------------------------------------------------------------------


@router.get("/agentic/status")
async def agentic_status(
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Agent availability, current config and projected per-receipt cost."""
    report = orchestrator.get_agent_status()
    return {
        "agents": [agent.model_dump() for agent in report.agents],
        "config": report.config.model_dump(),
        "cost_estimate": orchestrator.estimate_cost().model_dump(),
        "capabilities": {
            "vendor_tags": orchestrator.registry.vendor_tags(),
            "supported_formats": sorted(SUPPORTED_MIME_TYPES),
            "max_file_size_mb": settings.extraction_max_file_size_mb,
        },
    }


@router.patch("/agentic/config", response_model=OrchestratorConfig)
async def update_agentic_config(
    body: ConfigUpdateRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
    user: dict = Depends(require_admin),
) -> OrchestratorConfig:
    """Apply a mode preset and/or merge config fields. Takes effect for new runs only."""
    partial = {**MODE_PRESETS[body.preset], **body.config} if body.preset else dict(body.config)
    try:
        config = orchestrator.update_config(partial)
    except ConfigurationInvalid as e:
        raise HTTPException(status_code=422, detail={"message": e.message, "errors": e.errors})

    logger.info(
        "Agentic config changed",
        sub=user.get("sub"),
        preset=body.preset,
        fields=sorted(body.config),
    )
    return config
