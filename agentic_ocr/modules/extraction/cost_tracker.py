"""Agentic OCR Cost Tracker: vision-model token pricing and spend reporting.

Two layers:
  - ``estimate_call_cost()`` prices the token usage of one LLM call in USD.
    Agents report this figure to the orchestrator, which commits it against
    the per-request budget.
  - ``CostTracker`` keeps every priced call and every finished receipt run,
    and reports spend per agent and per vendor (CLI cost report, CSV/JSON
    export, session summary at shutdown).

Usage:
    tracker = CostTracker()
    tracker.record("walmart-parser", "google", "gemini-2.5-flash",
                   input_tokens=1800, output_tokens=600)
    tracker.record_run(result)  # AgenticResult
    print(tracker.summary_text())
"""

from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, NamedTuple

import structlog

if TYPE_CHECKING:
    from agentic_ocr.modules.extraction.agent_schemas import AgenticResult

logger = structlog.get_logger()


# ---------------------------------------------------------------------------
# Vision model pricing (USD per 1M tokens)
# ---------------------------------------------------------------------------


class ModelPricing(NamedTuple):
    input: float
    output: float
    cache_write: float = 0.0
    cache_read: float = 0.0


# Receipt images are billed as input tokens by every provider.
MODEL_PRICING: dict[str, ModelPricing] = {
    "gemini-2.0-flash-lite": ModelPricing(0.075, 0.30, cache_read=0.01875),
    "gemini-2.0-flash": ModelPricing(0.10, 0.40, cache_read=0.025),
    "gemini-2.5-flash": ModelPricing(0.15, 0.60, cache_read=0.0375),
    "gemini-2.5-pro": ModelPricing(1.25, 10.00, cache_read=0.3125),
    "claude-3-5-haiku": ModelPricing(0.80, 4.00, 1.00, 0.08),
    "claude-sonnet-4": ModelPricing(3.00, 15.00, 3.75, 0.30),
    "gpt-4o-mini": ModelPricing(0.15, 0.60, cache_read=0.075),
    "gpt-4o": ModelPricing(2.50, 10.00, cache_read=1.25),
    "gpt-4.1-mini": ModelPricing(0.40, 1.60, cache_read=0.10),
    "gpt-4.1": ModelPricing(2.00, 8.00, cache_read=0.50),
}

# Unknown models are priced like the most expensive vision model we use
UNKNOWN_MODEL_PRICING = ModelPricing(3.00, 15.00, 3.75, 0.30)


def pricing_for(model: str) -> ModelPricing:
    """Pricing for a model id, matching versioned ids ("gemini-2.0-flash-001") by prefix family."""
    if model in MODEL_PRICING:
        return MODEL_PRICING[model]
    family = max((name for name in MODEL_PRICING if name in model), key=len, default=None)
    if family is None:
        logger.warning("No pricing for model, using conservative default", model=model)
        return UNKNOWN_MODEL_PRICING
    return MODEL_PRICING[family]


def estimate_call_cost(
    model: str,
    *,
    input_tokens: int = 0,
    output_tokens: int = 0,
    cache_creation_tokens: int = 0,
    cache_read_tokens: int = 0,
) -> float:
    """USD cost of one LLM call."""
    price = pricing_for(model)
    billed = (
        input_tokens * price.input
        + output_tokens * price.output
        + cache_creation_tokens * price.cache_write
        + cache_read_tokens * price.cache_read
    )
    return billed / 1_000_000


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class CallRecord:
    """One priced LLM call made by an agent."""

    agent_name: str
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    cached_tokens: int
    cost_usd: float
    file_name: str = ""
    duration_ms: int = 0
    timestamp: float = field(default_factory=time.time)

    @property
    def tokens(self) -> int:
        return self.input_tokens + self.output_tokens + self.cached_tokens


@dataclass
class RunRecord:
    """Budget outcome of one orchestrated receipt."""

    file_name: str
    success: bool
    vendor_type: str
    chosen_agent: str | None
    total_cost: float
    cost_ceiling: float
    over_budget: bool
    fallbacks_triggered: list[str]
    overall_confidence: float
    timestamp: float = field(default_factory=time.time)


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------


class CostTracker:
    """Collects priced LLM calls and receipt runs for a batch or a process lifetime."""

    def __init__(self, max_records: int | None = None) -> None:
        # Oldest records drop off once max_records is reached
        self.calls: deque[CallRecord] = deque(maxlen=max_records)
        self.runs: deque[RunRecord] = deque(maxlen=max_records)
        self._started = time.monotonic()

    def record(
        self,
        agent_name: str,
        provider: str,
        model: str,
        *,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cache_creation_tokens: int = 0,
        cache_read_tokens: int = 0,
        file_name: str = "",
        duration_ms: int = 0,
    ) -> CallRecord:
        """Price and keep one LLM call."""
        call = CallRecord(
            agent_name=agent_name,
            provider=provider,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cached_tokens=cache_creation_tokens + cache_read_tokens,
            cost_usd=estimate_call_cost(
                model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cache_creation_tokens=cache_creation_tokens,
                cache_read_tokens=cache_read_tokens,
            ),
            file_name=file_name,
            duration_ms=duration_ms,
        )
        self.calls.append(call)
        logger.debug(
            "LLM call priced",
            agent=agent_name,
            model=model,
            file=file_name,
            tokens=call.tokens,
            cost_usd=round(call.cost_usd, 6),
        )
        return call

    def record_run(self, result: AgenticResult, file_name: str = "") -> RunRecord:
        """Keep the budget outcome of one orchestrated receipt."""
        run = RunRecord(
            file_name=file_name,
            success=result.success,
            vendor_type=result.metadata.vendor_type,
            chosen_agent=result.metadata.chosen_agent,
            total_cost=result.pipeline.total_cost,
            cost_ceiling=result.pipeline.cost_ceiling,
            over_budget=result.pipeline.over_budget,
            fallbacks_triggered=list(result.metadata.fallbacks_triggered),
            overall_confidence=result.quality.overall_confidence,
        )
        self.runs.append(run)
        return run

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _by_agent(self) -> dict[str, dict[str, Any]]:
        grouped: dict[str, list[CallRecord]] = defaultdict(list)
        for call in self.calls:
            grouped[f"{call.agent_name} ({call.provider}/{call.model})"].append(call)

        report = {}
        for key, calls in grouped.items():
            cost = sum(c.cost_usd for c in calls)
            report[key] = {
                "calls": len(calls),
                "input_tokens": sum(c.input_tokens for c in calls),
                "output_tokens": sum(c.output_tokens for c in calls),
                "total_tokens": sum(c.tokens for c in calls),
                "cost_usd": round(cost, 4),
                "avg_cost_per_call": round(cost / len(calls), 4),
                "avg_duration_ms": round(sum(c.duration_ms for c in calls) / len(calls)),
            }
        return report

    def _by_vendor(self) -> dict[str, dict[str, Any]]:
        grouped: dict[str, list[RunRecord]] = defaultdict(list)
        for run in self.runs:
            grouped[run.vendor_type].append(run)

        return {
            vendor: {
                "receipts": len(runs),
                "successful": sum(1 for r in runs if r.success),
                "fallback_runs": sum(1 for r in runs if r.fallbacks_triggered),
                "cost_usd": round(sum(r.total_cost for r in runs), 4),
                "avg_confidence": round(sum(r.overall_confidence for r in runs) / len(runs), 1),
            }
            for vendor, runs in sorted(grouped.items())
        }

    def summary(self) -> dict[str, Any]:
        """Spend totals plus per-agent and per-vendor breakdowns."""
        receipts = len(self.runs)
        committed = sum(r.total_cost for r in self.runs)
        return {
            "total_receipts": receipts,
            "successful_receipts": sum(1 for r in self.runs if r.success),
            "fallback_runs": sum(1 for r in self.runs if r.fallbacks_triggered),
            "over_budget_runs": sum(1 for r in self.runs if r.over_budget),
            "llm_calls": len(self.calls),
            "total_tokens": sum(c.tokens for c in self.calls),
            "llm_cost_usd": round(sum(c.cost_usd for c in self.calls), 4),
            "committed_cost_usd": round(committed, 4),
            "avg_cost_per_receipt": round(committed / receipts, 4) if receipts else 0.0,
            "elapsed_seconds": round(time.monotonic() - self._started, 1),
            "agents": self._by_agent(),
            "vendors": self._by_vendor(),
        }

    def summary_text(self) -> str:
        """Printable cost report."""
        s = self.summary()
        rule = "-" * 60
        out = [
            "=" * 60,
            "  AGENTIC OCR BATCH: COST REPORT",
            "=" * 60,
            f"  Receipts:         {s['total_receipts']} ({s['successful_receipts']} ok)",
            f"  Fallback runs:    {s['fallback_runs']}",
            f"  Over budget:      {s['over_budget_runs']}",
            f"  LLM calls:        {s['llm_calls']} ({s['total_tokens']:,} tokens)",
            f"  Committed cost:   ${s['committed_cost_usd']:.4f}",
            f"  Avg per receipt:  ${s['avg_cost_per_receipt']:.4f}",
            f"  Elapsed:          {s['elapsed_seconds']}s",
            rule,
        ]
        for vendor, v in s["vendors"].items():
            out.append(
                f"  {vendor:<16} {v['receipts']:>4} receipts  {v['successful']:>4} ok  "
                f"${v['cost_usd']:.4f}  avg conf {v['avg_confidence']}"
            )
        if s["vendors"]:
            out.append(rule)
        for key, a in s["agents"].items():
            out.append(
                f"  {key}\n"
                f"    {a['calls']} calls, {a['total_tokens']:,} tokens, ${a['cost_usd']:.4f} "
                f"(${a['avg_cost_per_call']:.4f}/call, {a['avg_duration_ms']}ms avg)"
            )
        out.append("=" * 60)
        return "\n".join(out)

    def to_records_list(self) -> list[dict[str, Any]]:
        """One row per receipt run for CSV/JSON export."""
        return [
            {
                "file_name": r.file_name,
                "success": r.success,
                "vendor_type": r.vendor_type,
                "chosen_agent": r.chosen_agent or "",
                "fallbacks_triggered": "|".join(r.fallbacks_triggered),
                "overall_confidence": round(r.overall_confidence, 1),
                "total_cost": round(r.total_cost, 6),
                "cost_ceiling": round(r.cost_ceiling, 6),
                "over_budget": r.over_budget,
                "timestamp": r.timestamp,
            }
            for r in self.runs
        ]
