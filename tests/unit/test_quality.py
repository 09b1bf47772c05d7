"""Unit tests for parse quality scoring, the fallback decision and QualityEvaluator."""

from __future__ import annotations

import pytest

from agentic_ocr.modules.extraction.agent_schemas import (
    AgentError,
    AgentInvocationResult,
    OrchestratorConfig,
    ParsingPayload,
)
from agentic_ocr.modules.extraction.exceptions import ErrorCode
from agentic_ocr.modules.extraction.quality import (
    QualityEvaluator,
    score_parse_quality,
    should_fallback,
)
from agentic_ocr.modules.extraction.schemas import (
    ExtractionOptions,
    LineItem,
    ParseQuality,
    ReceiptData,
)


def _receipt(**overrides) -> ReceiptData:
    data = {
        "vendor": "TARGET",
        "date": "2024-05-01",
        "total_amount": 21.60,
        "subtotal": 20.00,
        "tax": 1.60,
        "line_items": [
            LineItem(id="item-1", description="UP&UP TISSUE", total_price=12.00),
            LineItem(id="item-2", description="GOOD & GATHER PASTA", total_price=8.00),
        ],
    }
    data.update(overrides)
    return ReceiptData(**data)


def _parsed(name: str, stage: str, confidence: float, success: bool = True) -> AgentInvocationResult:
    payload = None
    if success:
        payload = ParsingPayload(
            receipt=_receipt(),
            parse_quality=ParseQuality(
                overall_score=confidence,
                line_item_accuracy=100,
                math_consistency=100,
                vendor_format_match=100,
            ),
        )
    return AgentInvocationResult(
        agent_name=name,
        stage=stage,
        success=success,
        confidence=confidence if success else 0,
        payload=payload,
        error=None if success else AgentError(code=ErrorCode.AGENT_INVOCATION_FAILED, message="boom"),
    )


# ---------------------------------------------------------------------------
# score_parse_quality
# ---------------------------------------------------------------------------


def test_consistent_receipt_scores_high() -> None:
    quality = score_parse_quality(_receipt(), vendor_confidence=90)

    assert quality.math_consistency == 100
    assert quality.line_item_accuracy == 100
    assert quality.missing_fields == []
    # 100*0.3 + 100*0.4 + 90*0.2 + 100*0.1
    assert quality.overall_score == pytest.approx(98.0)


def test_math_mismatch_is_penalized() -> None:
    quality = score_parse_quality(_receipt(total_amount=23.60), vendor_confidence=90)

    assert quality.math_consistency == pytest.approx(0.0)
    assert "Math inconsistency detected" in quality.suspicious_patterns


def test_missing_fields_and_items_are_reported() -> None:
    quality = score_parse_quality(
        _receipt(vendor="Unknown", total_amount=0.0, subtotal=0.0, tax=0.0, line_items=[]),
        vendor_confidence=0,
    )

    assert quality.missing_fields == ["vendor", "total_amount"]
    assert quality.line_item_accuracy == 50
    assert "No line items found" in quality.suspicious_patterns


def test_placeholder_items_lower_item_accuracy() -> None:
    items = [
        LineItem(id="item-1", description="MILK", total_price=3.0),
        LineItem(id="item-2", total_price=0.0),
    ]
    quality = score_parse_quality(_receipt(line_items=items), vendor_confidence=50)

    assert quality.line_item_accuracy == 50


# ---------------------------------------------------------------------------
# should_fallback
# ---------------------------------------------------------------------------


def test_no_fallback_above_threshold() -> None:
    run, reasons = should_fallback(_parsed("walmart-parser", "parsing", 92), OrchestratorConfig(), ExtractionOptions())
    assert run is False
    assert reasons == []


def test_fallback_on_failure_and_low_confidence() -> None:
    config = OrchestratorConfig()

    run, reasons = should_fallback(_parsed("p", "parsing", 0, success=False), config, ExtractionOptions())
    assert run is True
    assert "boom" in reasons[0]

    run, reasons = should_fallback(_parsed("p", "parsing", 40), config, ExtractionOptions())
    assert run is True
    assert "below threshold" in reasons[0]


def test_disabled_fallbacks_override_everything() -> None:
    config = OrchestratorConfig(enable_fallbacks=False)
    run, _ = should_fallback(None, config, ExtractionOptions(force_fallback=True))
    assert run is False


def test_force_fallback_option() -> None:
    run, reasons = should_fallback(
        _parsed("p", "parsing", 95), OrchestratorConfig(), ExtractionOptions(force_fallback=True)
    )
    assert run is True
    assert reasons == ["fallback forced by request"]


# ---------------------------------------------------------------------------
# QualityEvaluator
# ---------------------------------------------------------------------------


def test_assess_takes_confidences_from_stages() -> None:
    detection = AgentInvocationResult(agent_name="vendor-detector", stage="detection", success=True, confidence=80)
    parsing = _parsed("walmart-parser", "parsing", 65)
    fallback = _parsed("generic-enhanced", "fallback", 88)

    assessment = QualityEvaluator(70).assess([detection, parsing, fallback], chosen=fallback)

    assert assessment.overall_confidence == 88
    assert assessment.vendor_detection_confidence == 80
    assert assessment.parsing_quality == 65
    assert assessment.improvement_over_baseline == 0


def test_assess_skipped_detection_counts_as_zero() -> None:
    detection = AgentInvocationResult(
        agent_name="forced-vendor", stage="detection", success=True, confidence=100, skipped=True
    )
    parsing = _parsed("walmart-parser", "parsing", 90)

    assessment = QualityEvaluator(70).assess([detection, parsing], chosen=parsing, baseline_confidence=60)

    assert assessment.vendor_detection_confidence == 0
    assert assessment.improvement_over_baseline == pytest.approx(30)


def test_assess_without_usable_result() -> None:
    failed = _parsed("generic-parser", "parsing", 0, success=False)

    assessment = QualityEvaluator(70).assess([failed], chosen=None, baseline_confidence=50)

    assert assessment.overall_confidence == 0
    assert assessment.parsing_quality == 0
    assert assessment.improvement_over_baseline == 0


def test_meets_threshold() -> None:
    evaluator = QualityEvaluator(70)
    assert evaluator.meets_threshold(_parsed("a", "fallback", 70)) is True
    assert evaluator.meets_threshold(_parsed("a", "fallback", 69.9)) is False
    assert evaluator.meets_threshold(None) is False
