"""Agentic OCR receipt schemas: structured purchase data + HTTP request bodies."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Extracted receipt data
# ---------------------------------------------------------------------------


class LineItem(BaseModel):
    """Single purchased item on a receipt."""

    id: str
    description: str = "Unknown Item"
    quantity: float = 1.0
    unit_price: float = 0.0
    total_price: float = 0.0
    category: str | None = None
    sku: str | None = Field(None, description="UPC, SKU or DPCI code when printed")
    tax_code: str | None = Field(None, description="Vendor tax flag, e.g. Walmart T/F/N")
    vendor_specific_data: dict[str, Any] = Field(default_factory=dict)


class ReceiptData(BaseModel):
    """Normalized structured purchase data extracted from one receipt."""

    vendor: str = "Unknown"
    date: str = Field(..., description="Purchase date, ISO format YYYY-MM-DD")
    currency: str = "USD"
    total_amount: float = 0.0
    subtotal: float = 0.0
    tax: float = 0.0
    line_items: list[LineItem] = Field(default_factory=list)
    category: str = "Other"
    confidence: float = Field(75.0, ge=0.0, le=100.0, description="Model self-reported confidence")
    receipt_number: str | None = None
    payment_method: str | None = None
    store_number: str | None = None
    notes: str | None = None
    raw_text: str | None = None


class ParseQuality(BaseModel):
    """Heuristic quality breakdown of a parsed receipt (all scores 0..100)."""

    overall_score: float = Field(..., ge=0.0, le=100.0)
    line_item_accuracy: float = Field(..., ge=0.0, le=100.0)
    math_consistency: float = Field(..., ge=0.0, le=100.0)
    vendor_format_match: float = Field(..., ge=0.0, le=100.0)
    missing_fields: list[str] = Field(default_factory=list)
    suspicious_patterns: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Request options
# ---------------------------------------------------------------------------


class ExtractionOptions(BaseModel):
    """Per-request knobs accepted by the orchestrator."""

    skip_baseline_fallback: bool = Field(
        False, description="Never run the baseline OCR agent as a fallback"
    )
    forced_vendor: str | None = Field(
        None, description="Skip vendor detection and parse as this vendor tag"
    )
    max_cost: float | None = Field(
        None, ge=0.0, description="Per-request USD ceiling, capped by the configured budget"
    )
    force_fallback: bool = Field(
        False, description="Run the fallback chain even when primary parsing looks good"
    )
    baseline_confidence: float | None = Field(
        None, ge=0.0, le=100.0,
        description="Confidence of an external non-agentic run, used for improvement reporting",
    )
    timeout_seconds: float | None = Field(
        None, gt=0.0, description="Deadline for the whole run; defaults to the configured value"
    )

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# HTTP request bodies
# ---------------------------------------------------------------------------


class ProcessReceiptRequest(BaseModel):
    """JSON body for POST /receipts/agentic."""

    image_url: str | None = Field(None, description="Public URL of the receipt image")
    image_data: str | None = Field(None, description="Base64 payload or data: URL")
    file_type: str | None = Field(None, description="MIME type hint, e.g. image/jpeg")
    file_name: str | None = None
    options: ExtractionOptions = Field(default_factory=ExtractionOptions)


class ConfigUpdateRequest(BaseModel):
    """JSON body for PATCH /receipts/agentic/config."""

    config: dict[str, Any] = Field(default_factory=dict)
    preset: Literal["production", "development", "testing"] | None = Field(
        None, description="Apply a mode preset before merging `config`"
    )
