"""Integration tests for the agentic receipt pipeline.

These tests run the real agents from ``build_default_registry`` behind the
FastAPI app: PDF rendering with PyMuPDF, pattern-based vendor detection over
the PDF text layer, the Walmart parser's post-processing and the baseline
OCR fallback. Only the LLM call itself is mocked.

Covered:

  - A Walmart PDF is detected by pattern, parsed by the Walmart parser and
    returned without fallbacks
  - A parser that keeps failing triggers the fallback chain, which ends in
    the free pattern-based baseline
  - Committed cost per agent adds up to the pipeline total
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import fitz
import pytest
from httpx import AsyncClient

from agentic_ocr.core.security import get_current_user
from agentic_ocr.main import app
from agentic_ocr.modules.extraction.agent_schemas import OrchestratorConfig
from agentic_ocr.modules.extraction.agents.base import BaseAgent
from agentic_ocr.modules.extraction.agents.orchestrator import (
    PipelineOrchestrator,
    build_default_registry,
    get_orchestrator,
)
from agentic_ocr.modules.extraction.agents.parsers import ReceiptParser
from agentic_ocr.modules.extraction.config_store import ConfigurationStore
from agentic_ocr.modules.extraction.cost_tracker import CostTracker
from agentic_ocr.modules.extraction.exceptions import AgentInvocationFailed

PREFIX = "/api/v1/receipts"

WALMART_LINES = [
    "WALMART SUPERCENTER",
    "Save money. Live better.",
    "ST# 1234 OP# 00001 TE# 01 TR# 0001",
    "GV WHOLE MILK 3.50 F",
    "BANANAS 6 AT 1 FOR 0.78 0.78 N",
    "SUBTOTAL 4.28",
    "TOTAL 4.28",
    "TC# 1234 5678",
]

WALMART_LLM_OUTPUT = {
    "vendor": "Walmart Supercenter",
    "date": "2024-03-15",
    "total_amount": 4.28,
    "subtotal": 4.28,
    "tax": 0,
    "line_items": [
        {"description": "GV WHOLE MILK F", "unit_price": 3.50, "total_price": 3.50},
        {"description": "BANANAS 6 AT 1 FOR 0.78 N", "unit_price": 0.78, "total_price": 0.78},
    ],
    "store_number": "1234",
    "confidence": 90,
}


def _walmart_pdf() -> bytes:
    doc = fitz.open()
    page = doc.new_page()
    page.insert_text((72, 72), "\n".join(WALMART_LINES), fontsize=10)
    data = doc.tobytes()
    doc.close()
    return data


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def tracker() -> CostTracker:
    return CostTracker()


@pytest.fixture
def live_pipeline(monkeypatch, tracker):
    """Real registry and agents, LLM credentials faked, auth bypassed."""
    monkeypatch.setattr(BaseAgent, "has_llm_credentials", lambda self: True)

    orchestrator = PipelineOrchestrator(
        registry=build_default_registry(),
        config_store=ConfigurationStore(OrchestratorConfig()),
        cost_tracker=tracker,
    )

    async def _user() -> dict:
        return {"sub": "auth0|integration", "permissions": []}

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_current_user] = _user
    yield orchestrator
    app.dependency_overrides.clear()


async def _upload(client: AsyncClient, **form) -> dict:
    resp = await client.post(
        f"{PREFIX}/agentic/upload",
        files=[("file", ("walmart.pdf", _walmart_pdf(), "application/pdf"))],
        data=form,
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


async def test_walmart_pdf_end_to_end(client: AsyncClient, live_pipeline, monkeypatch, tracker) -> None:
    llm = AsyncMock(return_value={
        "content": WALMART_LLM_OUTPUT,
        "input_tokens": 1800,
        "output_tokens": 400,
        "cost_usd": 0.0005,
        "duration_ms": 900,
        "provider": "google",
        "model": "gemini-2.5-flash",
    })
    monkeypatch.setattr(ReceiptParser, "call_llm", llm)

    body = await _upload(client)

    assert body["success"] is True
    assert body["metadata"]["vendor_type"] == "walmart"
    assert body["metadata"]["detected_vendor"] == "walmart"
    assert body["metadata"]["chosen_agent"] == "walmart-parser"
    assert body["metadata"]["fallbacks_triggered"] == []

    stage1 = body["pipeline"]["stage1_vendor_detection"]
    assert stage1["agent_name"] == "vendor-detector"
    assert stage1["cost"] == 0
    assert stage1["payload"]["method"] == "pattern_matching"

    items = {item["description"]: item for item in body["data"]["line_items"]}
    assert items["BANANAS 6 AT 1 FOR 0.78"]["quantity"] == 6
    assert items["BANANAS 6 AT 1 FOR 0.78"]["tax_code"] == "N"
    assert items["GV WHOLE MILK"]["tax_code"] == "F"

    assert body["pipeline"]["total_cost"] == pytest.approx(0.0005)
    assert body["quality"]["overall_confidence"] >= 70
    assert "WALMART" in body["data"]["raw_text"]

    # The parser saw the text layer and the detected vendor
    assert "VENDOR CONTEXT: detected vendor walmart" in llm.call_args.kwargs["user_content"]
    assert tracker.runs[0].chosen_agent == "walmart-parser"


async def test_failing_parsers_fall_back_to_baseline(
    client: AsyncClient, live_pipeline, monkeypatch
) -> None:
    monkeypatch.setattr(
        ReceiptParser,
        "call_llm",
        AsyncMock(side_effect=AgentInvocationFailed("gemini-2.5-flash returned invalid JSON", cost=0.001)),
    )

    body = await _upload(client)

    meta = body["metadata"]
    assert body["success"] is True
    assert meta["agents_used"] == ["vendor-detector", "walmart-parser", "generic-enhanced", "baseline-ocr"]
    assert meta["fallbacks_triggered"] == ["generic-enhanced", "baseline-ocr"]
    assert meta["chosen_agent"] == "baseline-ocr"
    assert meta["accepted_below_threshold"] == "fallback_exhausted"
    assert meta["cost_breakdown"] == {
        "vendor-detector": 0.0,
        "walmart-parser": 0.001,
        "generic-enhanced": 0.001,
        "baseline-ocr": 0.0,
    }

    assert body["pipeline"]["stage2_parsing"]["error"]["code"] == "AGENT_INVOCATION_FAILED"
    assert body["pipeline"]["total_cost"] == pytest.approx(0.002)
    assert body["quality"]["overall_confidence"] <= 60
    assert body["data"]["total_amount"] == pytest.approx(4.28)


async def test_skip_baseline_leaves_no_usable_result(
    client: AsyncClient, live_pipeline, monkeypatch
) -> None:
    monkeypatch.setattr(
        ReceiptParser,
        "call_llm",
        AsyncMock(side_effect=AgentInvocationFailed("gemini-2.5-flash returned invalid JSON", cost=0.001)),
    )

    body = await _upload(client, skip_baseline_fallback="true")

    assert body["success"] is False
    assert body["data"] is None
    assert body["metadata"]["fallbacks_triggered"] == ["generic-enhanced"]
    assert body["error"]["code"] == "ALL_CANDIDATES_EXHAUSTED"
    assert body["error"]["agent_name"] == "generic-enhanced"
