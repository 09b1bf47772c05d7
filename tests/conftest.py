"""Shared test fixtures for the Agentic OCR test suite."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable

import pytest
from httpx import ASGITransport, AsyncClient

from agentic_ocr.main import app
from agentic_ocr.modules.extraction.agent_schemas import (
    AgentKind,
    InvocationContext,
    OrchestratorConfig,
    ParsingPayload,
    ReceiptImage,
    VendorDetectionPayload,
)
from agentic_ocr.modules.extraction.agents.base import AgentOutcome, BaseAgent
from agentic_ocr.modules.extraction.agents.orchestrator import PipelineOrchestrator
from agentic_ocr.modules.extraction.config_store import ConfigurationStore
from agentic_ocr.modules.extraction.cost_tracker import CostTracker
from agentic_ocr.modules.extraction.registry import AgentRegistry
from agentic_ocr.modules.extraction.schemas import LineItem, ParseQuality, ReceiptData

SAMPLE_RECEIPT = ReceiptData(
    vendor="WALMART SUPERCENTER",
    date="2024-03-15",
    total_amount=10.80,
    subtotal=10.00,
    tax=0.80,
    line_items=[
        LineItem(id="item-1", description="GV WHOLE MILK", unit_price=3.50, total_price=3.50),
        LineItem(id="item-2", description="BANANAS", unit_price=6.50, total_price=6.50),
    ],
    category="Groceries",
)


class StubAgent(BaseAgent):
    """Scripted agent: fixed confidence / cost, optional delay or failure."""

    requires_llm = False

    def __init__(
        self,
        name: str,
        kind: AgentKind = "parsing",
        *,
        confidence: float = 90.0,
        cost: float = 0.01,
        estimate: float | None = None,
        error: BaseException | None = None,
        delay: float = 0.0,
        vendor_tag: str = "generic",
        available: bool = True,
        timeout_seconds: float | None = None,
    ) -> None:
        super().__init__(provider="google", model="stub-model")
        self.agent_name = name
        self.kind = kind
        self.confidence = confidence
        self.cost = cost
        self.declared_cost = cost if estimate is None else estimate
        self.error = error
        self.delay = delay
        self.vendor_tag = vendor_tag
        self.available = available
        self.timeout_seconds = timeout_seconds
        self.calls: list[InvocationContext] = []
        self.was_cancelled = False

    def is_available(self) -> bool:
        return self.available

    async def run(self, image: ReceiptImage, context: InvocationContext) -> AgentOutcome:
        self.calls.append(context)
        if self.delay:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.was_cancelled = True
                raise
        if self.error is not None:
            raise self.error

        if self.kind == "detection":
            payload: VendorDetectionPayload | ParsingPayload = VendorDetectionPayload(
                vendor_tag=self.vendor_tag,
                indicators=[f"Name match: {self.vendor_tag}"],
            )
        else:
            payload = ParsingPayload(
                receipt=SAMPLE_RECEIPT.model_copy(update={"notes": self.agent_name}),
                parse_quality=ParseQuality(
                    overall_score=self.confidence,
                    line_item_accuracy=100.0,
                    math_consistency=100.0,
                    vendor_format_match=100.0,
                ),
                parsing_strategy="stub",
            )
        return AgentOutcome(payload=payload, confidence=self.confidence, cost=self.cost)


@pytest.fixture
async def client() -> AsyncClient:
    """Async HTTP client that talks directly to the FastAPI ASGI app."""
    transport = ASGITransport(app=app)  # type: ignore[arg-type]
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac  # type: ignore[misc]


@pytest.fixture
def make_agent() -> type[StubAgent]:
    return StubAgent


@pytest.fixture
def receipt_image() -> ReceiptImage:
    return ReceiptImage(data=b"\xff\xd8\xff\xe0fake-jpeg", mime_type="image/jpeg", file_name="receipt.jpg")


@pytest.fixture
def make_orchestrator() -> Callable[..., PipelineOrchestrator]:
    """Build an orchestrator over a private registry and config store."""

    def _make(
        *,
        detector: BaseAgent | None = None,
        parsers: Iterable[tuple[str, BaseAgent]] = (),
        fallbacks: Iterable[BaseAgent] = (),
        config: OrchestratorConfig | None = None,
        cost_tracker: CostTracker | None = None,
    ) -> PipelineOrchestrator:
        registry = AgentRegistry()
        if detector is not None:
            registry.set_detector(detector)
        for tag, agent in parsers:
            registry.register(tag, agent)
        for agent in fallbacks:
            registry.register_fallback(agent)
        return PipelineOrchestrator(
            registry=registry,
            config_store=ConfigurationStore(config or OrchestratorConfig()),
            cost_tracker=cost_tracker,
        )

    return _make
