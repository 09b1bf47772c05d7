"""Agentic OCR Fallback: Baseline OCR.

Last-resort extraction without vendor context:
  - receipts with a text layer are parsed with line patterns (free)
  - image-only receipts get one call to the cheap baseline model

Pattern extraction confidence is capped because nothing validates it
beyond the arithmetic checks in the parse quality score.
"""

from __future__ import annotations

import re

import structlog
from pydantic import ValidationError

from agentic_ocr.core.config import settings
from agentic_ocr.modules.extraction.agent_schemas import (
    InvocationContext,
    ParsingPayload,
    ReceiptImage,
)
from agentic_ocr.modules.extraction.agents.base import AgentOutcome, BaseAgent
from agentic_ocr.modules.extraction.agents.sanitizer import (
    normalize_date,
    parse_money,
    sanitize_receipt_json,
)
from agentic_ocr.modules.extraction.cost_tracker import CostTracker
from agentic_ocr.modules.extraction.exceptions import AgentInvocationFailed
from agentic_ocr.modules.extraction.quality import score_parse_quality
from agentic_ocr.modules.extraction.schemas import ReceiptData

logger = structlog.get_logger()

_PATTERN_CONFIDENCE_CAP = 60.0
_MIN_TEXT_CHARS = 20

_AMOUNT = r"\$?\s*(-?\d{1,6}(?:[.,]\d{2}))"
_TOTAL_RE = re.compile(rf"^\s*(?:grand\s+)?total(?!\s+tax)(?:\s+due)?\b[^\d$-]*{_AMOUNT}", re.IGNORECASE | re.MULTILINE)
_SUBTOTAL_RE = re.compile(rf"^\s*sub\s*-?\s*total\b[^\d$-]*{_AMOUNT}", re.IGNORECASE | re.MULTILINE)
_TAX_RE = re.compile(rf"^\s*(?:sales\s+)?tax\b[^\d$-]*{_AMOUNT}", re.IGNORECASE | re.MULTILINE)
_ITEM_RE = re.compile(rf"^\s*(?P<desc>[A-Za-z][^\n]*?)\s+{_AMOUNT}\s*[A-Z]?\s*$", re.MULTILINE)
_DATE_RE = re.compile(r"\b(\d{4}-\d{2}-\d{2}|\d{1,2}[/-]\d{1,2}[/-]\d{2,4})\b")

# Lines that carry an amount but are not purchased items
_NON_ITEM_WORDS = re.compile(
    r"\b(sub\s*-?\s*total|total|tax|change|cash|tend|visa|mastercard|amex|debit|credit|"
    r"balance|payment|savings|discount\s+total)\b",
    re.IGNORECASE,
)


def extract_receipt_from_text(text: str) -> ReceiptData:
    """Pattern-based receipt extraction from an OCR text layer."""
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    vendor = lines[0] if lines else "Unknown"

    def _amount(pattern: re.Pattern[str]) -> float:
        match = pattern.search(text)
        return parse_money(match.group(1)) if match else 0.0

    total = _amount(_TOTAL_RE)
    subtotal = _amount(_SUBTOTAL_RE)
    tax = _amount(_TAX_RE)
    if not subtotal and total:
        subtotal = round(total - tax, 2)

    items = []
    for match in _ITEM_RE.finditer(text):
        description = match.group("desc").strip()
        if _NON_ITEM_WORDS.search(description):
            continue
        price = parse_money(match.group(2))
        items.append({
            "description": description,
            "quantity": 1,
            "unit_price": price,
            "total_price": price,
        })

    date_match = _DATE_RE.search(text)

    data = sanitize_receipt_json({
        "vendor": vendor,
        "date": normalize_date(date_match.group(1) if date_match else None),
        "total_amount": total,
        "subtotal": subtotal,
        "tax": tax,
        "line_items": items,
        "confidence": _PATTERN_CONFIDENCE_CAP,
    })
    data["raw_text"] = text
    return ReceiptData.model_validate(data)


class BaselineOCRAgent(BaseAgent):
    """Fallback of last resort: cheap, vendor-agnostic extraction."""

    agent_name = "baseline-ocr"
    kind = "fallback"
    declared_cost = 0.005
    declared_latency_ms = 2500
    requires_llm = False

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        cost_tracker: CostTracker | None = None,
    ) -> None:
        super().__init__(
            provider=provider or settings.baseline_provider,
            model=model or settings.baseline_model,
            cost_tracker=cost_tracker,
        )
        self._system_prompt = self.load_prompt("baseline_ocr.txt")

    @staticmethod
    def _has_text(image: ReceiptImage | None) -> bool:
        return bool(image is not None and image.text and len(image.text.strip()) >= _MIN_TEXT_CHARS)

    def estimate_cost(self, image: ReceiptImage | None = None) -> float:
        return 0.0 if self._has_text(image) else self.declared_cost

    async def run(self, image: ReceiptImage, context: InvocationContext) -> AgentOutcome:
        if self._has_text(image):
            receipt = extract_receipt_from_text(image.text or "")
            quality = score_parse_quality(receipt, context.vendor_confidence)
            confidence = min(quality.overall_score, _PATTERN_CONFIDENCE_CAP)
            strategy, cost = "pattern_based", 0.0
        else:
            if not self.has_llm_credentials():
                raise AgentInvocationFailed("No text layer and no LLM credentials for baseline OCR")
            result = await self.call_llm(
                system_prompt=self._system_prompt,
                user_content="Extract this receipt.",
                image=image,
                response_json=True,
            )
            cost = result["cost_usd"]
            try:
                receipt = ReceiptData.model_validate(sanitize_receipt_json(result["content"]))
            except ValidationError as e:
                raise AgentInvocationFailed(
                    f"baseline output failed validation: {e.error_count()} error(s)",
                    cost=cost,
                    cause=e,
                ) from e
            quality = score_parse_quality(receipt, context.vendor_confidence)
            confidence = quality.overall_score
            strategy = "baseline_llm"

        logger.info(
            "Baseline extraction",
            file=image.file_name,
            strategy=strategy,
            items=len(receipt.line_items),
            total=receipt.total_amount,
            confidence=confidence,
        )

        payload = ParsingPayload(
            receipt=receipt,
            parse_quality=quality,
            warnings=list(quality.suspicious_patterns),
            parsing_strategy=strategy,
        )
        return AgentOutcome(payload=payload, confidence=confidence, cost=cost)
