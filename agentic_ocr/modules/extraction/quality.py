"""Agentic OCR Quality Evaluator.

Three pure pieces:
  - ``score_parse_quality()``: heuristic breakdown of one parsed receipt,
    used by parsing agents to derive their confidence.
  - ``should_fallback()``: whether the fallback chain runs after stage 2, and why.
  - ``QualityEvaluator``: aggregates stage results into a QualityAssessment.
"""

from __future__ import annotations

import structlog

from agentic_ocr.modules.extraction.agent_schemas import (
    AgentInvocationResult,
    OrchestratorConfig,
    QualityAssessment,
)
from agentic_ocr.modules.extraction.schemas import ExtractionOptions, ParseQuality, ReceiptData

logger = structlog.get_logger()

# Weighting of the parse quality components (sums to 1.0)
_WEIGHT_MATH = 0.3
_WEIGHT_LINE_ITEMS = 0.4
_WEIGHT_VENDOR = 0.2
_WEIGHT_FIELDS = 0.1

# |subtotal + tax - total| below this counts as exact
_MATH_TOLERANCE = 0.02
# Penalty per dollar of math mismatch
_MATH_PENALTY_PER_UNIT = 50
_MISSING_FIELD_PENALTY = 20


# ---------------------------------------------------------------------------
# Parse quality scoring
# ---------------------------------------------------------------------------


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def score_parse_quality(receipt: ReceiptData, vendor_confidence: float) -> ParseQuality:
    """Score a parsed receipt.

    Args:
        receipt: Normalized receipt data.
        vendor_confidence: Vendor detection confidence (0..100).

    Returns:
        ParseQuality with a weighted overall score in 0..100.
    """
    math_diff = abs(receipt.subtotal + receipt.tax - receipt.total_amount)
    if math_diff < _MATH_TOLERANCE:
        math_consistency = 100.0
    else:
        math_consistency = _clamp(100 - math_diff * _MATH_PENALTY_PER_UNIT)

    items = receipt.line_items
    valid_items = [
        item for item in items
        if item.description and item.description != "Unknown Item" and item.total_price > 0
    ]
    line_item_accuracy = len(valid_items) / len(items) * 100 if items else 50.0

    vendor_format_match = _clamp(vendor_confidence)

    missing: list[str] = []
    if not receipt.vendor or receipt.vendor == "Unknown":
        missing.append("vendor")
    if not receipt.date:
        missing.append("date")
    if receipt.total_amount <= 0:
        missing.append("total_amount")

    suspicious: list[str] = []
    if math_diff > 1:
        suspicious.append("Math inconsistency detected")
    if not items:
        suspicious.append("No line items found")
    if receipt.confidence < 50:
        suspicious.append("Low parsing confidence")

    overall = (
        math_consistency * _WEIGHT_MATH
        + line_item_accuracy * _WEIGHT_LINE_ITEMS
        + vendor_format_match * _WEIGHT_VENDOR
        + _clamp(100 - len(missing) * _MISSING_FIELD_PENALTY) * _WEIGHT_FIELDS
    )

    return ParseQuality(
        overall_score=round(_clamp(overall), 2),
        line_item_accuracy=round(line_item_accuracy, 2),
        math_consistency=round(math_consistency, 2),
        vendor_format_match=round(vendor_format_match, 2),
        missing_fields=missing,
        suspicious_patterns=suspicious,
    )


# ---------------------------------------------------------------------------
# Fallback decision
# ---------------------------------------------------------------------------


def should_fallback(
    primary: AgentInvocationResult | None,
    config: OrchestratorConfig,
    options: ExtractionOptions,
) -> tuple[bool, list[str]]:
    """Decide whether the fallback chain runs after primary parsing.

    Returns:
        (should_fallback, reasons): whether to run fallbacks and why.
    """
    if not config.enable_fallbacks:
        return False, []

    reasons: list[str] = []
    if primary is None or not primary.usable:
        detail = primary.error.message if primary is not None and primary.error else "not attempted"
        reasons.append(f"primary parsing failed: {detail}")
    elif primary.confidence < config.quality_threshold:
        reasons.append(
            f"primary confidence {primary.confidence:.1f} below threshold {config.quality_threshold:.1f}"
        )

    if options.force_fallback:
        reasons.append("fallback forced by request")

    return len(reasons) > 0, reasons


# ---------------------------------------------------------------------------
# Assessment
# ---------------------------------------------------------------------------


class QualityEvaluator:
    """Aggregates per-stage results into a QualityAssessment. Stateless apart from the threshold."""

    def __init__(self, threshold: float) -> None:
        self.threshold = threshold

    def meets_threshold(self, result: AgentInvocationResult | None) -> bool:
        return result is not None and result.usable and result.confidence >= self.threshold

    def assess(
        self,
        stage_results: list[AgentInvocationResult],
        *,
        chosen: AgentInvocationResult | None,
        baseline_confidence: float | None = None,
    ) -> QualityAssessment:
        """Build the quality block of the result envelope.

        Args:
            stage_results: Every stage result in pipeline order (detection first).
            chosen: The result whose payload becomes the output data, if any.
            baseline_confidence: Confidence of a baseline (non-agentic) run to
                compare against; None reports no improvement.
        """
        detection = next((r for r in stage_results if r.stage == "detection"), None)
        vendor_confidence = 0.0
        if detection is not None and detection.success and not detection.skipped:
            vendor_confidence = detection.confidence

        parsing = next((r for r in stage_results if r.stage == "parsing"), None)
        parsing_quality = 0.0
        if parsing is not None and parsing.usable:
            parsing_quality = parsing.confidence

        overall = chosen.confidence if chosen is not None and chosen.usable else 0.0
        improvement = 0.0
        if baseline_confidence is not None and chosen is not None and chosen.usable:
            improvement = round(overall - baseline_confidence, 2)

        return QualityAssessment(
            overall_confidence=overall,
            vendor_detection_confidence=vendor_confidence,
            parsing_quality=parsing_quality,
            improvement_over_baseline=improvement,
        )
