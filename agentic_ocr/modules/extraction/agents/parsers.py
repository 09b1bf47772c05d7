"""Agentic OCR Stage 2: Receipt Parser Pool.

Vendor-focused parsers with vendor-specific prompts plus vendor-specific
post-processing rules, and two generic parsers. Each parser returns a
ParsingPayload whose parse-quality score becomes the invocation confidence.

Parsers:
  - WalmartParser:          bulk pricing ("6 AT 1 FOR 0.78"), T/F/N tax flags
  - HomeDepotParser:        SKU extraction, per-unit pricing
  - TargetParser:           DPCI codes, tax flags
  - GenericParser:          any vendor, stage-2 default
  - GenericEnhancedParser:  fallback; prompt includes what went wrong earlier
"""

from __future__ import annotations

import re

import structlog
from pydantic import ValidationError

from agentic_ocr.modules.extraction.agent_schemas import (
    InvocationContext,
    ParsingPayload,
    ReceiptImage,
    VendorTags,
)
from agentic_ocr.modules.extraction.agents.base import AgentOutcome, BaseAgent
from agentic_ocr.modules.extraction.agents.sanitizer import sanitize_receipt_json
from agentic_ocr.modules.extraction.cost_tracker import CostTracker
from agentic_ocr.modules.extraction.exceptions import AgentInvocationFailed
from agentic_ocr.modules.extraction.quality import score_parse_quality
from agentic_ocr.modules.extraction.schemas import LineItem, ReceiptData

logger = structlog.get_logger()

# JSON schema hint appended to all parser prompts
_RESPONSE_SCHEMA_HINT = """
## Output
Return a single JSON object with exactly this structure:
{
  "vendor": "Store name as printed",
  "date": "YYYY-MM-DD",
  "currency": "USD",
  "total_amount": 0.00,
  "subtotal": 0.00,
  "tax": 0.00,
  "line_items": [
    {"id": "1", "description": "item description", "quantity": 1, "unit_price": 0.00,
     "total_price": 0.00, "category": "category", "sku": null, "tax_code": null}
  ],
  "category": "Groceries|Home Improvement|Retail|Dining|Fuel|Pharmacy|Office|Other",
  "confidence": 85,
  "receipt_number": null,
  "payment_method": null,
  "store_number": null
}
confidence is 0-100 and reflects how legible and complete the receipt was.
"""

# Max chars of text layer included as a hint (controls token cost)
_MAX_TEXT_HINT_CHARS = 6000


class ReceiptParser(BaseAgent):
    """Base class for receipt parsers."""

    agent_name = "receipt-parser"
    kind = "parsing"
    prompt_file: str = ""  # Override in subclasses
    vendor_tags: tuple[str, ...] = ()
    parsing_strategy = "vendor_specific"
    declared_cost = 0.01
    declared_latency_ms = 4000

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        cost_tracker: CostTracker | None = None,
    ) -> None:
        super().__init__(provider=provider, model=model, cost_tracker=cost_tracker)
        base_prompt = self.load_prompt(self.prompt_file) if self.prompt_file else ""
        self._system_prompt = base_prompt + "\n" + _RESPONSE_SCHEMA_HINT

    # ------------------------------------------------------------------
    # Prompt
    # ------------------------------------------------------------------

    def build_user_content(self, image: ReceiptImage, context: InvocationContext) -> str:
        parts = [f"Parse the attached receipt image ({image.file_name or 'receipt'})."]
        if context.vendor_indicators:
            parts.append(f"VENDOR INDICATORS FOUND: {', '.join(context.vendor_indicators)}")
        if context.vendor_tag not in (VendorTags.GENERIC, VendorTags.UNKNOWN):
            parts.append(
                f"VENDOR CONTEXT: detected vendor {context.vendor_tag}, "
                f"confidence {context.vendor_confidence:.0f}"
            )
        if image.text:
            parts.append(
                "--- OCR text layer (may contain errors) ---\n"
                + image.text[:_MAX_TEXT_HINT_CHARS]
            )
        return "\n\n".join(parts)

    # ------------------------------------------------------------------
    # Vendor hooks
    # ------------------------------------------------------------------

    def postprocess(self, receipt: ReceiptData) -> ReceiptData:
        """Vendor-specific correction rules applied after validation."""
        return receipt

    def vendor_specific_fields(self, receipt: ReceiptData) -> dict:
        return {"vendor_type": self.vendor_tags[0] if self.vendor_tags else VendorTags.GENERIC}

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, image: ReceiptImage, context: InvocationContext) -> AgentOutcome:
        result = await self.call_llm(
            system_prompt=self._system_prompt,
            user_content=self.build_user_content(image, context),
            image=image,
            response_json=True,
        )
        cost = result["cost_usd"]

        try:
            receipt = ReceiptData.model_validate(sanitize_receipt_json(result["content"]))
        except ValidationError as e:
            raise AgentInvocationFailed(
                f"{self.agent_name} output failed validation: {e.error_count()} error(s)",
                cost=cost,
                cause=e,
            ) from e

        if image.text and not receipt.raw_text:
            receipt = receipt.model_copy(update={"raw_text": image.text})
        receipt = self.postprocess(receipt)

        quality = score_parse_quality(receipt, context.vendor_confidence)
        payload = ParsingPayload(
            receipt=receipt,
            parse_quality=quality,
            vendor_specific_fields=self.vendor_specific_fields(receipt),
            warnings=list(quality.suspicious_patterns),
            parsing_strategy=self.parsing_strategy,
        )

        logger.info(
            "Receipt parsed",
            agent=self.agent_name,
            file=image.file_name,
            vendor=receipt.vendor,
            items=len(receipt.line_items),
            total=receipt.total_amount,
            quality=quality.overall_score,
            warnings=len(payload.warnings),
        )

        return AgentOutcome(payload=payload, confidence=quality.overall_score, cost=cost)


# ---------------------------------------------------------------------------
# Vendor-specialized parsers
# ---------------------------------------------------------------------------

_BULK_PRICING_RE = re.compile(r"(\d+)\s+AT\s+[\d.]+\s+FOR\s+\$?(\d+(?:\.\d+)?)", re.IGNORECASE)
_TRAILING_TAX_FLAG_RE = re.compile(r"\s+([TFN])$")
_SKU_RE = re.compile(r"SKU\s*#?\s*(\d+)", re.IGNORECASE)
_DPCI_RE = re.compile(r"\b(\d{3}-\d{2}-\d{4})\b")


class WalmartParser(ReceiptParser):
    """Walmart receipts: bulk pricing and T/F/N tax flags."""

    agent_name = "walmart-parser"
    prompt_file = "parser_walmart.txt"
    vendor_tags = (VendorTags.WALMART,)

    def postprocess(self, receipt: ReceiptData) -> ReceiptData:
        items: list[LineItem] = []
        for item in receipt.line_items:
            update: dict = {}
            extra = dict(item.vendor_specific_data)

            bulk = _BULK_PRICING_RE.search(item.description)
            if bulk:
                quantity = int(bulk.group(1))
                total_price = float(bulk.group(2))
                if quantity > 0:
                    update.update(
                        quantity=float(quantity),
                        unit_price=round(total_price / quantity, 4),
                        total_price=total_price,
                    )
                    extra.update(bulk_pricing=True, original_description=item.description)

            flag = _TRAILING_TAX_FLAG_RE.search(item.description)
            if flag and not item.tax_code:
                update["tax_code"] = flag.group(1)
                update["description"] = item.description[: flag.start()].strip()

            if extra != item.vendor_specific_data:
                update["vendor_specific_data"] = extra
            items.append(item.model_copy(update=update) if update else item)

        return receipt.model_copy(update={"line_items": items})

    def vendor_specific_fields(self, receipt: ReceiptData) -> dict:
        return {
            "vendor_type": VendorTags.WALMART,
            "bulk_items_count": sum(
                1 for item in receipt.line_items if item.vendor_specific_data.get("bulk_pricing")
            ),
            "store_number": receipt.store_number,
        }


class HomeDepotParser(ReceiptParser):
    """Home Depot receipts: SKU numbers and per-unit pricing."""

    agent_name = "home-depot-parser"
    prompt_file = "parser_home_depot.txt"
    vendor_tags = (VendorTags.HOME_DEPOT,)

    def postprocess(self, receipt: ReceiptData) -> ReceiptData:
        items: list[LineItem] = []
        for item in receipt.line_items:
            match = _SKU_RE.search(item.description)
            if match and not item.sku:
                extra = {**item.vendor_specific_data, "has_sku_code": True}
                items.append(item.model_copy(update={"sku": match.group(1), "vendor_specific_data": extra}))
            else:
                items.append(item)
        return receipt.model_copy(update={"line_items": items})

    def vendor_specific_fields(self, receipt: ReceiptData) -> dict:
        return {
            "vendor_type": VendorTags.HOME_DEPOT,
            "sku_items_count": sum(1 for item in receipt.line_items if item.sku),
        }


class TargetParser(ReceiptParser):
    """Target receipts: DPCI codes and tax flags."""

    agent_name = "target-parser"
    prompt_file = "parser_target.txt"
    vendor_tags = (VendorTags.TARGET,)

    def postprocess(self, receipt: ReceiptData) -> ReceiptData:
        items: list[LineItem] = []
        for item in receipt.line_items:
            update: dict = {}
            match = _DPCI_RE.search(item.description)
            if match and not item.sku:
                update["sku"] = match.group(1)
                update["vendor_specific_data"] = {**item.vendor_specific_data, "dpci": match.group(1)}
            flag = _TRAILING_TAX_FLAG_RE.search(item.description)
            if flag and not item.tax_code:
                update["tax_code"] = flag.group(1)
            items.append(item.model_copy(update=update) if update else item)
        return receipt.model_copy(update={"line_items": items})

    def vendor_specific_fields(self, receipt: ReceiptData) -> dict:
        return {
            "vendor_type": VendorTags.TARGET,
            "dpci_items_count": sum(
                1 for item in receipt.line_items if item.vendor_specific_data.get("dpci")
            ),
        }


# ---------------------------------------------------------------------------
# Generic parsers
# ---------------------------------------------------------------------------


class GenericParser(ReceiptParser):
    """Any vendor. Used when no specialized parser exists or specialization is off."""

    agent_name = "generic-parser"
    prompt_file = "parser_generic.txt"
    vendor_tags = (VendorTags.GENERIC, VendorTags.UNKNOWN)
    parsing_strategy = "generic"


class GenericEnhancedParser(ReceiptParser):
    """Fallback: slower, more careful generic pass informed by earlier failures."""

    agent_name = "generic-enhanced"
    kind = "fallback"
    prompt_file = "parser_generic_enhanced.txt"
    parsing_strategy = "generic_enhanced"
    declared_cost = 0.01
    declared_latency_ms = 6000

    def build_user_content(self, image: ReceiptImage, context: InvocationContext) -> str:
        content = super().build_user_content(image, context)
        if context.previous_failures:
            failures = "\n".join(f"- {f}" for f in context.previous_failures)
            content += f"\n\nPREVIOUS ATTEMPTS FAILED OR SCORED LOW:\n{failures}"
        return content
