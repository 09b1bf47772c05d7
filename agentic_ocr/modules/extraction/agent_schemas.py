"""Agentic OCR Agent Contracts: Pydantic models for inter-agent communication.

Defines the data structures that flow through the pipeline:
  Caller       -> Orchestrator:  ExtractionRequest (ReceiptImage + options)
  Agent        -> Orchestrator:  AgentInvocationResult (detection / parsing payload)
  Orchestrator -> Caller:        AgenticResult (data + pipeline trace + quality + metadata)
  ConfigStore  -> Orchestrator:  OrchestratorConfig snapshot
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from agentic_ocr.modules.extraction.exceptions import ErrorCode
from agentic_ocr.modules.extraction.schemas import (
    ExtractionOptions,
    ParseQuality,
    ReceiptData,
)

AgentKind = Literal["detection", "parsing", "fallback"]
OrchestratorMode = Literal["production", "development", "testing"]
DetectionMethod = Literal["pattern_matching", "llm", "forced", "disabled", "none"]


# ---------------------------------------------------------------------------
# Vendor tags (open set: any normalized string can be registered)
# ---------------------------------------------------------------------------


class VendorTags:
    """Well-known vendor tags. Registries accept any other normalized tag too."""

    GENERIC = "generic"
    UNKNOWN = "unknown"
    WALMART = "walmart"
    HOME_DEPOT = "home_depot"
    TARGET = "target"
    AMAZON = "amazon"
    COSTCO = "costco"
    GROCERY_GENERIC = "grocery_generic"
    RESTAURANT = "restaurant"
    GAS_STATION = "gas_station"
    PHARMACY = "pharmacy"
    OFFICE_SUPPLIES = "office_supplies"
    HARDWARE_STORE = "hardware_store"


def normalize_vendor_tag(tag: str) -> str:
    """Lower-case, trim and snake-case a vendor tag ("Home Depot" -> "home_depot")."""
    return "_".join(tag.strip().lower().replace("-", " ").split())


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


class ReceiptImage(BaseModel):
    """Receipt image reference. Opaque to the orchestrator, read only by agents."""

    data: bytes | None = Field(None, repr=False, description="Raw image bytes")
    url: str | None = Field(None, description="Remote image location")
    mime_type: str = "image/jpeg"
    text: str | None = Field(
        None, repr=False, description="OCR or PDF text layer, used by rule-based agents"
    )
    file_name: str = ""

    model_config = {"frozen": True}


class ExtractionRequest(BaseModel):
    """Single receipt processing request."""

    image: ReceiptImage
    options: ExtractionOptions = Field(default_factory=ExtractionOptions)

    model_config = {"frozen": True}


class InvocationContext(BaseModel):
    """Hints passed from earlier stages to the agent being invoked."""

    vendor_tag: str = VendorTags.GENERIC
    vendor_indicators: list[str] = Field(default_factory=list)
    vendor_confidence: float = 0.0
    previous_failures: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Agent output
# ---------------------------------------------------------------------------


class AgentError(BaseModel):
    """Why an invocation failed or was not attempted."""

    code: ErrorCode
    message: str


class VendorCandidate(BaseModel):
    vendor_tag: str
    confidence: float = Field(..., ge=0.0, le=100.0)
    indicators: list[str] = Field(default_factory=list)


class VendorDetectionPayload(BaseModel):
    """Output of the vendor detection stage."""

    kind: Literal["vendor_detection"] = "vendor_detection"
    vendor_tag: str
    indicators: list[str] = Field(default_factory=list)
    candidates: list[VendorCandidate] = Field(default_factory=list)
    fallback_to_generic: bool = False
    method: DetectionMethod = "pattern_matching"


class ParsingPayload(BaseModel):
    """Output of a parsing or fallback agent."""

    kind: Literal["parsing"] = "parsing"
    receipt: ReceiptData
    parse_quality: ParseQuality
    vendor_specific_fields: dict[str, Any] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    parsing_strategy: str = "generic"


class AgentInvocationResult(BaseModel):
    """Outcome of one agent invocation (or of a stage that skipped invocation)."""

    agent_name: str
    stage: AgentKind
    success: bool
    confidence: float = Field(0.0, ge=0.0, le=100.0)
    cost: float = Field(0.0, ge=0.0, description="USD actually committed for this call")
    processing_time_ms: int = Field(0, ge=0)
    payload: VendorDetectionPayload | ParsingPayload | None = None
    error: AgentError | None = None
    skipped: bool = Field(False, description="True when no agent was actually invoked")

    model_config = {"frozen": True}

    @property
    def receipt(self) -> ReceiptData | None:
        if isinstance(self.payload, ParsingPayload):
            return self.payload.receipt
        return None

    @property
    def usable(self) -> bool:
        """Successful invocation that produced receipt data."""
        return self.success and self.receipt is not None


# ---------------------------------------------------------------------------
# Result envelope
# ---------------------------------------------------------------------------


class PipelineRun(BaseModel):
    """Per-stage trace of one orchestrated run."""

    stage1_vendor_detection: AgentInvocationResult
    stage2_parsing: AgentInvocationResult | None = None
    fallbacks: list[AgentInvocationResult] = Field(default_factory=list)
    total_cost: float = 0.0
    total_processing_time_ms: int = 0
    cost_ceiling: float = 0.0
    remaining_budget: float = 0.0
    over_budget: bool = False


class QualityAssessment(BaseModel):
    overall_confidence: float = Field(0.0, ge=0.0, le=100.0)
    vendor_detection_confidence: float = Field(0.0, ge=0.0, le=100.0)
    parsing_quality: float = Field(0.0, ge=0.0, le=100.0)
    improvement_over_baseline: float = 0.0


class ResultMetadata(BaseModel):
    vendor_type: str = VendorTags.GENERIC
    detected_vendor: str | None = Field(
        None, description="Raw detector output, which may have no registered parser"
    )
    agents_used: list[str] = Field(default_factory=list)
    fallbacks_triggered: list[str] = Field(default_factory=list)
    fallback_reasons: list[str] = Field(default_factory=list)
    cost_breakdown: dict[str, float] = Field(default_factory=dict)
    chosen_agent: str | None = None
    fallback_skipped_due_to_budget: bool = False
    accepted_below_threshold: str | None = Field(
        None, description="Why a result under the quality threshold was still returned"
    )


class PipelineErrorInfo(BaseModel):
    code: ErrorCode
    message: str
    agent_name: str | None = None


class AgenticResult(BaseModel):
    """Envelope returned for every processed receipt, successful or not."""

    success: bool
    data: ReceiptData | None = None
    pipeline: PipelineRun
    quality: QualityAssessment = Field(default_factory=QualityAssessment)
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)
    error: PipelineErrorInfo | None = None


# ---------------------------------------------------------------------------
# Configuration snapshot
# ---------------------------------------------------------------------------


class OrchestratorConfig(BaseModel):
    """Immutable orchestrator configuration snapshot."""

    mode: OrchestratorMode = "production"
    enable_vendor_detection: bool = True
    enable_specialized_parsing: bool = True
    enable_fallbacks: bool = True
    quality_threshold: float = Field(70.0, ge=0.0, le=100.0)
    cost_budget: float = Field(0.05, ge=0.0, description="USD ceiling per request")
    fallback_order: tuple[str, ...] = ("generic-enhanced", "baseline-ocr")
    agent_timeout_seconds: float = Field(30.0, gt=0.0)
    run_timeout_seconds: float = Field(120.0, gt=0.0)

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("fallback_order")
    @classmethod
    def _unique_fallbacks(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        if len(set(v)) != len(v):
            raise ValueError("fallback_order must not contain duplicates")
        return v


# ---------------------------------------------------------------------------
# Status & cost estimates
# ---------------------------------------------------------------------------


class AgentStatus(BaseModel):
    name: str
    kind: AgentKind
    vendor_tags: list[str] = Field(default_factory=list)
    available: bool
    declared_cost: float
    declared_latency_ms: int


class AgentStatusReport(BaseModel):
    agents: list[AgentStatus]
    config: OrchestratorConfig


class CostRange(BaseModel):
    min: float = 0.0
    max: float = 0.0
    typical: float = 0.0


class CostEstimate(BaseModel):
    """Declared-cost projection for one receipt (USD)."""

    vendor_detection: float = 0.0
    parsing: CostRange = Field(default_factory=CostRange)
    fallback: CostRange = Field(default_factory=CostRange)
    total: CostRange = Field(default_factory=CostRange)
    budget: float = 0.0
