"""Agentic OCR Sanitizer: post-processing of LLM receipt output.

Fixes common LLM output errors before Pydantic validation:
  1. camelCase keys (totalAmount, lineItems) instead of snake_case
  2. Money values as strings ("$1,234.56", "12,50 EUR")
  3. Line items as null, as a dict, or with missing ids / descriptions
  4. Missing required fields (vendor, date, currency, category)
  5. Confidence on a 0..1 scale or out of range
  6. Dates in US format (MM/DD/YYYY) instead of ISO

Shared by every parsing agent and by the pattern-based baseline.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any


# ---------------------------------------------------------------------------
# Field-shape constants
# ---------------------------------------------------------------------------

# camelCase / alias keys -> ReceiptData field names
KEY_ALIASES = {
    "totalAmount": "total_amount",
    "total": "total_amount",
    "amount": "total_amount",
    "subTotal": "subtotal",
    "taxAmount": "tax",
    "tax_amount": "tax",
    "lineItems": "line_items",
    "items": "line_items",
    "receiptNumber": "receipt_number",
    "paymentMethod": "payment_method",
    "storeNumber": "store_number",
    "merchant": "vendor",
    "vendor_name": "vendor",
    "vendorName": "vendor",
    "purchase_date": "date",
    "transaction_date": "date",
}

LINE_ITEM_KEY_ALIASES = {
    "unitPrice": "unit_price",
    "price": "unit_price",
    "totalPrice": "total_price",
    "amount": "total_price",
    "qty": "quantity",
    "name": "description",
    "taxCode": "tax_code",
    "vendorSpecificData": "vendor_specific_data",
    "upc": "sku",
}

MONEY_FIELDS = {"total_amount", "subtotal", "tax"}
LINE_ITEM_MONEY_FIELDS = {"unit_price", "total_price", "quantity"}

_DEFAULT_CONFIDENCE = 75.0

_US_DATE_RE = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{2,4})$")


# ---------------------------------------------------------------------------
# Helper: strip markdown code fences from LLM output
# ---------------------------------------------------------------------------

def strip_code_fences(raw_text: str) -> str:
    """Strip markdown code fences (```json ... ```) from LLM response."""
    text = raw_text.strip()
    if text.startswith("```"):
        first_newline = text.find("\n")
        text = text[first_newline + 1:] if first_newline != -1 else text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


# ---------------------------------------------------------------------------
# Scalar coercion
# ---------------------------------------------------------------------------

def parse_money(value: Any) -> float:
    """Coerce "$1,234.56", "12,50", 3 or None into a float (0.0 when unreadable)."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    text = re.sub(r"[^\d,.\-]", "", str(value))
    if not text:
        return 0.0
    # "12,50" is a decimal comma; "1,234.56" is a thousands separator
    if "," in text and "." not in text and re.search(r",\d{2}$", text):
        text = text.replace(",", ".")
    else:
        text = text.replace(",", "")
    try:
        return float(text)
    except ValueError:
        return 0.0


def normalize_date(value: Any) -> str:
    """Return an ISO date string, defaulting to today when missing or unreadable."""
    if not value:
        return date.today().isoformat()
    text = str(value).strip()
    try:
        return datetime.fromisoformat(text[:10]).date().isoformat()
    except ValueError:
        pass
    match = _US_DATE_RE.match(text)
    if match:
        month, day, year = (int(g) for g in match.groups())
        if year < 100:
            year += 2000
        try:
            return date(year, month, day).isoformat()
        except ValueError:
            pass
    return date.today().isoformat()


def normalize_confidence(value: Any) -> float:
    """Clamp model confidence to 0..100; 0..1 floats are rescaled."""
    if value is None or isinstance(value, bool):
        return _DEFAULT_CONFIDENCE
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return _DEFAULT_CONFIDENCE
    if 0 < conf <= 1:
        conf *= 100
    return max(0.0, min(100.0, conf))


# ---------------------------------------------------------------------------
# Core sanitizer
# ---------------------------------------------------------------------------

def _rename_keys(d: dict, aliases: dict[str, str]) -> dict:
    result: dict[str, Any] = {}
    for key, val in d.items():
        target = aliases.get(key, key)
        # Never overwrite a canonical key with an alias value
        if target in result and key != target:
            continue
        result[target] = val
    return result


def _sanitize_line_item(raw: Any, index: int) -> dict | None:
    if isinstance(raw, str):
        raw = {"description": raw}
    if not isinstance(raw, dict):
        return None

    item = _rename_keys(raw, LINE_ITEM_KEY_ALIASES)
    for key in LINE_ITEM_MONEY_FIELDS:
        if key in item:
            item[key] = parse_money(item[key])

    item["id"] = str(item.get("id") or f"item-{index + 1}")
    item["description"] = str(item.get("description") or "Unknown Item").strip() or "Unknown Item"
    if not item.get("quantity"):
        item["quantity"] = 1.0
    item.setdefault("unit_price", 0.0)
    if not item.get("total_price"):
        item["total_price"] = round(item["unit_price"] * item["quantity"], 2)
    if item.get("sku") is not None:
        item["sku"] = str(item["sku"])
    if not isinstance(item.get("vendor_specific_data"), dict):
        item["vendor_specific_data"] = {}
    return item


def sanitize_receipt_json(data: dict) -> dict:
    """Fix common LLM output errors so the dict validates as ReceiptData.

    Unknown keys are dropped by the model; this only normalizes shape and
    fills required defaults.
    """
    result = _rename_keys(data, KEY_ALIASES)

    for key in MONEY_FIELDS:
        result[key] = parse_money(result.get(key))

    vendor = result.get("vendor")
    if isinstance(vendor, dict):
        vendor = vendor.get("name") or vendor.get("value")
    result["vendor"] = str(vendor).strip() if vendor else "Unknown"

    result["date"] = normalize_date(result.get("date"))
    result["currency"] = str(result.get("currency") or "USD").upper()[:3]
    result["category"] = str(result.get("category") or "Other")
    result["confidence"] = normalize_confidence(result.get("confidence"))

    raw_items = result.get("line_items")
    if raw_items is None:
        raw_items = []
    elif isinstance(raw_items, dict):
        raw_items = list(raw_items.values())
    items = [_sanitize_line_item(item, i) for i, item in enumerate(raw_items)]
    result["line_items"] = [item for item in items if item is not None]

    for key in ("receipt_number", "payment_method", "store_number"):
        if result.get(key) is not None:
            result[key] = str(result[key])

    return result
