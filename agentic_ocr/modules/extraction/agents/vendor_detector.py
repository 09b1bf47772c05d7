"""Agentic OCR Stage 1: Vendor Detector.

Identifies the store that issued a receipt so the orchestrator can pick a
vendor-specialized parser.

Two methods:
  - pattern matching over the OCR / PDF text layer (free, ~85% accurate)
  - LLM vision classification when the receipt has no text layer

Pattern scoring per vendor (0..100):
  name match 40, brand slogan 20, format indicators 10 each (max 20),
  price pattern 10, item pattern 10.
Vendors scoring <= 10 are not candidates; a best score below 30 reports
``generic`` with confidence 20.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

import structlog

from agentic_ocr.core.config import settings
from agentic_ocr.modules.extraction.agent_schemas import (
    InvocationContext,
    ReceiptImage,
    VendorCandidate,
    VendorDetectionPayload,
    VendorTags,
    normalize_vendor_tag,
)
from agentic_ocr.modules.extraction.agents.base import AgentOutcome, BaseAgent
from agentic_ocr.modules.extraction.cost_tracker import CostTracker
from agentic_ocr.modules.extraction.exceptions import AgentInvocationFailed

logger = structlog.get_logger()

_MIN_CANDIDATE_SCORE = 10
_GENERIC_THRESHOLD = 30
_GENERIC_CONFIDENCE = 20
_SPECIALIZED_THRESHOLD = 60  # below this, detection suggests generic parsing
_MIN_TEXT_CHARS = 10


# ---------------------------------------------------------------------------
# Vendor patterns
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VendorPattern:
    vendor_tag: str
    name_matchers: tuple[str, ...]
    logo_text: tuple[str, ...] = ()
    format_indicators: tuple[str, ...] = ()
    price_patterns: tuple[str, ...] = ()
    item_patterns: tuple[str, ...] = ()
    _compiled: dict[str, list[re.Pattern[str]]] = field(default_factory=dict, compare=False, repr=False)

    def compiled(self, group: str) -> list[re.Pattern[str]]:
        if group not in self._compiled:
            self._compiled[group] = [
                re.compile(p, re.IGNORECASE | re.MULTILINE) for p in getattr(self, group)
            ]
        return self._compiled[group]


VENDOR_PATTERNS: list[VendorPattern] = [
    VendorPattern(
        vendor_tag=VendorTags.WALMART,
        name_matchers=(r"walmart\s*supercenter", r"wal-mart", r"walmart\s*store", r"walmart"),
        logo_text=("save money. live better.", "great value", "equate"),
        format_indicators=(
            r"\d+\s+AT\s+\d+\s+FOR\s+\$?\d+\.\d{2}",  # bulk pricing "6 AT 1 FOR 0.78"
            r"TC#\s*\d+",
            r"ST#\s*\d+",
        ),
        price_patterns=(r"\$?\d+\.\d{2}\s*[A-Z]?$", r"\d+\s*@\s*\$?\d+\.\d{2}"),
        item_patterns=(r"^\s*[A-Z0-9\s]+\s+\$?\d+\.\d{2}", r"\d{12,14}\s+.+\s+\$?\d+\.\d{2}"),
    ),
    VendorPattern(
        vendor_tag=VendorTags.HOME_DEPOT,
        name_matchers=(r"the\s*home\s*depot", r"home\s*depot", r"homedepot\.com"),
        logo_text=("more saving. more doing.", "you can do it. we can help."),
        format_indicators=(r"SKU\s*#?\s*\d+", r"STORE\s*#\s*\d+", r"INTERNET\s*#\s*\d+"),
        price_patterns=(r"\$\d+\.\d{2}\s*EA", r"\$\d+\.\d{2}\s*/\s*[A-Z]+"),
        item_patterns=(r"^\s*\d+\s+.+\$\d+\.\d{2}", r"SKU\s*#?\s*\d+\s*.+"),
    ),
    VendorPattern(
        vendor_tag=VendorTags.TARGET,
        name_matchers=(r"target\s*store", r"\btarget\b", r"target\.com"),
        logo_text=("expect more. pay less.", "up&up", "good & gather"),
        format_indicators=(r"REF#\s*\d+", r"DPCI\s*\d+-\d+-\d+"),
        price_patterns=(r"\$\d+\.\d{2}\s*T\b", r"\$\d+\.\d{2}\s*F\b"),
        item_patterns=(r"^\s*.+\s+\$\d+\.\d{2}\s*[TF]?$", r"DPCI\s*\d+-\d+-\d+\s*.+"),
    ),
    VendorPattern(
        vendor_tag=VendorTags.GROCERY_GENERIC,
        name_matchers=(r"grocery", r"market", r"\bfood", r"supermarket", r"\bdeli\b"),
        format_indicators=(r"\d+\s*@\s*\$?\d+\.\d{2}", r"LB\s*@\s*\$?\d+\.\d{2}"),
        price_patterns=(r"\$?\d+\.\d{2}$", r"\d+\.\d{2}\s*[A-Z]?$"),
        item_patterns=(r"^\s*.+\s+\$?\d+\.\d{2}$",),
    ),
]


def score_vendor(text: str, pattern: VendorPattern) -> tuple[float, list[str]]:
    """Score how strongly ``text`` matches one vendor's patterns.

    Returns:
        (score 0..100, evidence strings)
    """
    score = 0.0
    evidence: list[str] = []

    for matcher in pattern.compiled("name_matchers"):
        match = matcher.search(text)
        if match:
            score += 40
            evidence.append(f"Name match: {match.group(0).strip()}")
            break

    lowered = text.lower()
    for slogan in pattern.logo_text:
        if slogan in lowered:
            score += 20
            evidence.append(f"Brand text: {slogan}")
            break

    format_matches = 0
    for matcher in pattern.compiled("format_indicators"):
        match = matcher.search(text)
        if match:
            format_matches += 1
            evidence.append(f"Format indicator: {match.group(0).strip()}")
    score += min(20, format_matches * 10)

    if any(m.search(text) for m in pattern.compiled("price_patterns")):
        score += 10
    if any(m.search(text) for m in pattern.compiled("item_patterns")):
        score += 10

    return score, evidence


def detect_vendor_from_text(text: str) -> tuple[VendorDetectionPayload, float]:
    """Rule-based vendor detection over a receipt's text layer.

    Returns:
        (payload, confidence 0..100)
    """
    candidates: list[VendorCandidate] = []
    for pattern in VENDOR_PATTERNS:
        score, evidence = score_vendor(text, pattern)
        if score > _MIN_CANDIDATE_SCORE:
            candidates.append(
                VendorCandidate(vendor_tag=pattern.vendor_tag, confidence=score, indicators=evidence)
            )
    candidates.sort(key=lambda c: c.confidence, reverse=True)

    if not candidates:
        payload = VendorDetectionPayload(
            vendor_tag=VendorTags.UNKNOWN,
            indicators=["No vendor patterns matched"],
            fallback_to_generic=True,
            method="pattern_matching",
        )
        return payload, 0.0

    best = candidates[0]
    if best.confidence < _GENERIC_THRESHOLD:
        payload = VendorDetectionPayload(
            vendor_tag=VendorTags.GENERIC,
            indicators=[f"Low confidence match for {best.vendor_tag}", *best.indicators],
            candidates=candidates,
            fallback_to_generic=True,
            method="pattern_matching",
        )
        return payload, float(_GENERIC_CONFIDENCE)

    payload = VendorDetectionPayload(
        vendor_tag=best.vendor_tag,
        indicators=best.indicators,
        candidates=candidates,
        fallback_to_generic=best.confidence < _SPECIALIZED_THRESHOLD,
        method="pattern_matching",
    )
    return payload, best.confidence


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class VendorDetectionAgent(BaseAgent):
    """Stage 1: vendor tag + confidence for a receipt.

    Uses pattern matching when the receipt carries a text layer and a short
    LLM vision classification otherwise.
    """

    agent_name = "vendor-detector"
    kind = "detection"
    declared_cost = 0.001
    declared_latency_ms = 1500
    timeout_seconds = 10.0
    requires_llm = False

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        cost_tracker: CostTracker | None = None,
    ) -> None:
        super().__init__(
            provider=provider or settings.vendor_detection_provider,
            model=model or settings.vendor_detection_model,
            cost_tracker=cost_tracker,
        )
        self._system_prompt = self.load_prompt("vendor_detector.txt")

    @staticmethod
    def _has_text(image: ReceiptImage | None) -> bool:
        return bool(image is not None and image.text and len(image.text.strip()) > _MIN_TEXT_CHARS)

    def estimate_cost(self, image: ReceiptImage | None = None) -> float:
        return 0.0 if self._has_text(image) else self.declared_cost

    async def run(self, image: ReceiptImage, context: InvocationContext) -> AgentOutcome:
        if self._has_text(image):
            payload, confidence = detect_vendor_from_text(image.text or "")
            logger.info(
                "Vendor detected",
                file=image.file_name,
                method="pattern_matching",
                vendor=payload.vendor_tag,
                confidence=confidence,
            )
            return AgentOutcome(payload=payload, confidence=confidence, cost=0.0)

        if not self.has_llm_credentials():
            raise AgentInvocationFailed("No text layer and no LLM credentials for vendor classification")

        result = await self.call_llm(
            system_prompt=self._system_prompt,
            user_content=(
                "Identify the store that issued this receipt. "
                f"Known vendor tags: {', '.join(sorted(_known_tags()))}."
            ),
            image=image,
            response_json=True,
        )
        data = result["content"]
        raw_tag = str(data.get("vendor_tag") or data.get("vendor_type") or VendorTags.UNKNOWN)
        tag = normalize_vendor_tag(raw_tag) or VendorTags.UNKNOWN

        confidence = float(data.get("confidence") or 0.0)
        if 0 < confidence <= 1:
            confidence *= 100
        confidence = max(0.0, min(100.0, confidence))

        indicators = [str(i) for i in data.get("indicators") or []]
        if confidence < _GENERIC_THRESHOLD and tag not in (VendorTags.UNKNOWN, VendorTags.GENERIC):
            indicators.insert(0, f"Low confidence match for {tag}")
            tag = VendorTags.GENERIC

        payload = VendorDetectionPayload(
            vendor_tag=tag,
            indicators=indicators,
            candidates=[VendorCandidate(vendor_tag=tag, confidence=confidence, indicators=indicators)],
            fallback_to_generic=confidence < _SPECIALIZED_THRESHOLD,
            method="llm",
        )
        logger.info(
            "Vendor detected",
            file=image.file_name,
            method="llm",
            vendor=tag,
            confidence=confidence,
        )
        return AgentOutcome(payload=payload, confidence=confidence, cost=result["cost_usd"])


def _known_tags() -> list[str]:
    return [
        value for name, value in vars(VendorTags).items()
        if not name.startswith("_") and isinstance(value, str)
    ]
