"""Agentic OCR Pipeline Orchestrator.

Pure Python controller with no LLM calls of its own. Routes one receipt
through the agent pipeline:

  Stage 1  Vendor detection   (skipped when forced or disabled)
  Stage 2  Parsing            (vendor-specialized parser, else generic)
  Stage 3  Fallbacks          (config.fallback_order, first result >= threshold wins)

Every invocation reserves its estimated cost on a per-run BudgetTracker
before it starts and commits the real cost after it ends. Agent failures,
timeouts and cancellations are recorded in the result envelope instead of
being raised; only InputInvalid (and ConfigurationInvalid on updates)
reach the caller as exceptions.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from agentic_ocr.core.config import settings
from agentic_ocr.modules.extraction.agent_schemas import (
    AgentError,
    AgentInvocationResult,
    AgenticResult,
    AgentKind,
    AgentStatusReport,
    CostEstimate,
    CostRange,
    ExtractionRequest,
    InvocationContext,
    OrchestratorConfig,
    OrchestratorMode,
    PipelineErrorInfo,
    PipelineRun,
    ReceiptImage,
    ResultMetadata,
    VendorDetectionPayload,
    VendorTags,
    normalize_vendor_tag,
)
from agentic_ocr.modules.extraction.agents.base import BaseAgent
from agentic_ocr.modules.extraction.agents.baseline import BaselineOCRAgent
from agentic_ocr.modules.extraction.agents.parsers import (
    GenericEnhancedParser,
    GenericParser,
    HomeDepotParser,
    TargetParser,
    WalmartParser,
)
from agentic_ocr.modules.extraction.agents.vendor_detector import VendorDetectionAgent
from agentic_ocr.modules.extraction.budget import BudgetTracker
from agentic_ocr.modules.extraction.config_store import ConfigurationStore
from agentic_ocr.modules.extraction.cost_tracker import CostTracker
from agentic_ocr.modules.extraction.exceptions import (
    AgenticOCRError,
    AllCandidatesExhausted,
    BudgetExhausted,
    ErrorCode,
    InputInvalid,
)
from agentic_ocr.modules.extraction.quality import QualityEvaluator, should_fallback
from agentic_ocr.modules.extraction.registry import AgentRegistry

logger = structlog.get_logger()

BASELINE_AGENT_NAME = BaselineOCRAgent.agent_name


class _InvocationCancelled(Exception):
    """The caller's cancel event fired while an agent was running."""


@dataclass
class _RunState:
    """Mutable bookkeeping for one run. Never shared between runs."""

    config: OrchestratorConfig
    budget: BudgetTracker
    deadline: float
    cancel_event: asyncio.Event | None = None
    agents_used: list[str] = field(default_factory=list)
    attempted: list[AgentInvocationResult] = field(default_factory=list)
    budget_blocked: bool = False
    fallback_skipped: bool = False  # a fallback candidate was passed over for budget
    deadline_hit: bool = False
    cancelled: bool = False

    def time_left(self) -> float:
        return self.deadline - time.monotonic()

    @property
    def stopped(self) -> bool:
        return self.cancelled or self.deadline_hit or self.time_left() <= 0


def _stage_result(
    agent_name: str,
    stage: AgentKind,
    *,
    success: bool,
    confidence: float = 0.0,
    payload: VendorDetectionPayload | None = None,
    code: ErrorCode | None = None,
    message: str = "",
    skipped: bool = False,
    cost: float = 0.0,
    elapsed_ms: int = 0,
) -> AgentInvocationResult:
    return AgentInvocationResult(
        agent_name=agent_name,
        stage=stage,
        success=success,
        confidence=confidence,
        cost=max(0.0, cost),
        processing_time_ms=max(0, elapsed_ms),
        payload=payload,
        error=AgentError(code=code, message=message) if code is not None else None,
        skipped=skipped,
    )


def _error_info(exc: AgenticOCRError, agent_name: str | None = None) -> PipelineErrorInfo:
    return PipelineErrorInfo(code=exc.code, message=str(exc), agent_name=agent_name)


class PipelineOrchestrator:
    """Budget-aware controller for the three-stage receipt pipeline.

    The registry and configuration store are shared by every concurrent run;
    budget tracking and quality evaluation are created per run.
    """

    agent_name = "orchestrator"

    def __init__(
        self,
        registry: AgentRegistry,
        config_store: ConfigurationStore | None = None,
        cost_tracker: CostTracker | None = None,
    ) -> None:
        self.registry = registry
        self.config_store = config_store or ConfigurationStore()
        self.cost_tracker = cost_tracker

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def process_receipt(
        self,
        request: ExtractionRequest,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> AgenticResult:
        """Run one receipt through detection, parsing and (maybe) fallbacks.

        Args:
            request: Image reference plus per-request options.
            cancel_event: Optional caller abort signal. When set, the running
                invocation is recorded as cancelled and no further agent starts.

        Returns:
            AgenticResult, also when every agent failed.

        Raises:
            InputInvalid: no image supplied, or a forced vendor with no parser.
        """
        image = request.image
        options = request.options
        if not image.data and not image.url:
            raise InputInvalid("No image provided: supply image bytes or an image URL")

        forced_tag: str | None = None
        if options.forced_vendor is not None:
            forced_tag = normalize_vendor_tag(options.forced_vendor)
            if not forced_tag:
                raise InputInvalid("forced_vendor must not be empty")
            if forced_tag != VendorTags.GENERIC and not self.registry.has_vendor(forced_tag):
                raise InputInvalid(
                    f"No parsing agent registered for forced vendor '{forced_tag}'. "
                    f"Registered: {', '.join(self.registry.vendor_tags())}"
                )

        config = self.config_store.current()
        ceiling = config.cost_budget
        if options.max_cost is not None:
            ceiling = min(options.max_cost, ceiling)
        run_timeout = options.timeout_seconds or config.run_timeout_seconds

        state = _RunState(
            config=config,
            budget=BudgetTracker(ceiling=ceiling),
            deadline=time.monotonic() + run_timeout,
            cancel_event=cancel_event,
        )
        evaluator = QualityEvaluator(config.quality_threshold)

        logger.info(
            "Orchestrator: processing receipt",
            file=image.file_name,
            mode=config.mode,
            ceiling=ceiling,
            forced_vendor=forced_tag,
        )

        if ceiling <= 0:
            return self._budget_refused_result(state, image)

        # Stage 1: vendor detection
        stage1 = await self._detect_vendor(state, image, forced_tag)
        detected_tag = VendorTags.GENERIC
        indicators: list[str] = []
        if stage1.success and isinstance(stage1.payload, VendorDetectionPayload):
            detected_tag = stage1.payload.vendor_tag
            indicators = list(stage1.payload.indicators)
        vendor_type = detected_tag if self.registry.has_vendor(detected_tag) else VendorTags.GENERIC
        vendor_confidence = stage1.confidence if stage1.success else 0.0

        # Stage 2: parsing
        context = InvocationContext(
            vendor_tag=vendor_type,
            vendor_indicators=indicators,
            vendor_confidence=vendor_confidence,
        )
        parser = self._select_parser(vendor_type, config)
        if parser is None:
            stage2 = _stage_result(
                "none",
                "parsing",
                success=False,
                code=ErrorCode.ALL_CANDIDATES_EXHAUSTED,
                message="No parsing agent registered for this vendor or for generic receipts",
                skipped=True,
            )
        else:
            stage2 = await self._invoke(state, parser, image, context, stage="parsing")

        # Stage 3: fallbacks
        fallbacks: list[AgentInvocationResult] = []
        fallbacks_triggered: list[str] = []
        accepted_reason: str | None = None
        run_fallbacks, fallback_reasons = should_fallback(stage2, config, options)

        if run_fallbacks:
            previous_failures = list(fallback_reasons)
            chain = [
                agent for agent in self.registry.fallback_chain(config.fallback_order)
                if agent is not parser
                and agent.agent_name != stage2.agent_name
                and not (options.skip_baseline_fallback and agent.agent_name == BASELINE_AGENT_NAME)
            ]
            if not chain:
                accepted_reason = "no_fallback_candidates"

            for agent in chain:
                if state.stopped:
                    break
                if state.budget.exhausted:
                    state.budget_blocked = state.fallback_skipped = True
                    logger.info("Fallback chain stopped: budget exhausted", file=image.file_name)
                    break
                if not state.budget.can_afford(agent.estimate_cost(image)):
                    state.budget_blocked = state.fallback_skipped = True
                    logger.info(
                        "Fallback skipped: estimate exceeds remaining budget",
                        agent=agent.agent_name,
                        remaining=round(state.budget.remaining(), 6),
                    )
                    continue

                fallback_context = context.model_copy(
                    update={"previous_failures": list(previous_failures)}
                )
                result = await self._invoke(state, agent, image, fallback_context, stage="fallback")
                if result.skipped:
                    continue

                fallbacks.append(result)
                fallbacks_triggered.append(agent.agent_name)
                if evaluator.meets_threshold(result):
                    break
                if result.error is not None:
                    previous_failures.append(f"{agent.agent_name} failed: {result.error.message}")
                else:
                    previous_failures.append(
                        f"{agent.agent_name} confidence {result.confidence:.1f} below threshold"
                    )

        # Assembly
        candidates = [r for r in (stage2, *fallbacks) if r.usable]
        chosen: AgentInvocationResult | None = None
        for result in candidates:
            if chosen is None or result.confidence >= chosen.confidence:
                chosen = result

        baseline_confidence = options.baseline_confidence
        baseline_run = next(
            (r for r in fallbacks if r.agent_name == BASELINE_AGENT_NAME and r.usable), None
        )
        if baseline_run is not None:
            baseline_confidence = baseline_run.confidence

        quality = evaluator.assess(
            [stage1, stage2, *fallbacks],
            chosen=chosen,
            baseline_confidence=baseline_confidence,
        )

        if chosen is not None and chosen.confidence < config.quality_threshold:
            accepted_reason = self._below_threshold_reason(state, config, accepted_reason)
        else:
            accepted_reason = None

        cost_breakdown: dict[str, float] = {}
        for result in state.attempted:
            cost_breakdown[result.agent_name] = round(
                cost_breakdown.get(result.agent_name, 0.0) + result.cost, 6
            )

        pipeline = PipelineRun(
            stage1_vendor_detection=stage1,
            stage2_parsing=stage2,
            fallbacks=fallbacks,
            total_cost=round(state.budget.spent, 6),
            total_processing_time_ms=sum(
                r.processing_time_ms for r in (stage1, stage2, *fallbacks)
            ),
            cost_ceiling=ceiling,
            remaining_budget=round(state.budget.remaining(), 6),
            over_budget=state.budget.over_budget,
        )
        metadata = ResultMetadata(
            vendor_type=vendor_type,
            detected_vendor=detected_tag if stage1.success else None,
            agents_used=list(state.agents_used),
            fallbacks_triggered=fallbacks_triggered,
            fallback_reasons=fallback_reasons,
            cost_breakdown=cost_breakdown,
            chosen_agent=chosen.agent_name if chosen is not None else None,
            fallback_skipped_due_to_budget=state.fallback_skipped,
            accepted_below_threshold=accepted_reason,
        )

        error: PipelineErrorInfo | None = None
        if chosen is None:
            error = self._terminal_error(state, stage2)

        result = AgenticResult(
            success=chosen is not None,
            data=chosen.receipt if chosen is not None else None,
            pipeline=pipeline,
            quality=quality,
            metadata=metadata,
            error=error,
        )

        log = logger.info if result.success else logger.warning
        log(
            "Orchestrator: receipt complete",
            file=image.file_name,
            success=result.success,
            vendor=vendor_type,
            chosen=metadata.chosen_agent,
            confidence=quality.overall_confidence,
            agents=metadata.agents_used,
            fallbacks=fallbacks_triggered,
            cost=pipeline.total_cost,
            over_budget=pipeline.over_budget,
            error=error.code.value if error else None,
        )
        if self.cost_tracker is not None:
            self.cost_tracker.record_run(result, file_name=image.file_name)
        return result

    def estimate_cost(self, sample: ReceiptImage | None = None) -> CostEstimate:
        """Project the cost of one receipt from declared agent costs, without running anything."""
        config = self.config_store.current()

        detection = 0.0
        detector = self.registry.detector()
        if config.enable_vendor_detection and detector is not None:
            detection = detector.estimate_cost(sample)

        generic = [a.estimate_cost(sample) for a in self.registry.agents_for_vendor(VendorTags.GENERIC)]
        if config.enable_specialized_parsing:
            parsers = {
                id(agent): agent.estimate_cost(sample)
                for tag in self.registry.vendor_tags()
                for agent in self.registry.agents_for_vendor(tag)
            }
            parsing_costs = list(parsers.values())
        else:
            parsing_costs = generic
        parsing = CostRange(
            min=min(parsing_costs, default=0.0),
            max=max(parsing_costs, default=0.0),
            typical=generic[0] if generic else (parsing_costs[0] if parsing_costs else 0.0),
        )

        fallback_costs = []
        if config.enable_fallbacks:
            fallback_costs = [
                a.estimate_cost(sample) for a in self.registry.fallback_chain(config.fallback_order)
            ]
        fallback = CostRange(
            min=0.0,
            max=round(sum(fallback_costs), 6),
            typical=fallback_costs[0] if fallback_costs else 0.0,
        )

        ceiling = config.cost_budget
        total = CostRange(
            min=round(min(detection + parsing.min, ceiling), 6),
            max=round(min(detection + parsing.max + fallback.max, ceiling), 6),
            typical=round(min(detection + parsing.typical, ceiling), 6),
        )
        return CostEstimate(
            vendor_detection=detection,
            parsing=parsing,
            fallback=fallback,
            total=total,
            budget=ceiling,
        )

    def get_agent_status(self) -> AgentStatusReport:
        return AgentStatusReport(agents=self.registry.status(), config=self.config_store.current())

    def update_config(self, partial: Mapping[str, Any]) -> OrchestratorConfig:
        return self.config_store.update(partial)

    def apply_preset(self, mode: OrchestratorMode) -> OrchestratorConfig:
        return self.config_store.apply_preset(mode)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _detect_vendor(
        self,
        state: _RunState,
        image: ReceiptImage,
        forced_tag: str | None,
    ) -> AgentInvocationResult:
        if forced_tag is not None:
            return _stage_result(
                "forced-vendor",
                "detection",
                success=True,
                confidence=100.0,
                payload=VendorDetectionPayload(
                    vendor_tag=forced_tag,
                    indicators=["Vendor forced by request"],
                    method="forced",
                ),
                skipped=True,
            )
        if not state.config.enable_vendor_detection:
            return _stage_result(
                "vendor-detection-disabled",
                "detection",
                success=True,
                confidence=100.0,
                payload=VendorDetectionPayload(
                    vendor_tag=VendorTags.GENERIC,
                    indicators=["Vendor detection disabled"],
                    method="disabled",
                ),
                skipped=True,
            )

        detector = self.registry.detector()
        if detector is None:
            return _stage_result(
                "vendor-detector",
                "detection",
                success=False,
                code=ErrorCode.AGENT_INVOCATION_FAILED,
                message="No vendor detector registered",
                skipped=True,
            )
        return await self._invoke(state, detector, image, InvocationContext(), stage="detection")

    def _select_parser(self, vendor_type: str, config: OrchestratorConfig) -> BaseAgent | None:
        """First available specialized parser, else the generic parser."""
        if config.enable_specialized_parsing and vendor_type != VendorTags.GENERIC:
            for agent in self.registry.agents_for_vendor(vendor_type):
                if agent.is_available():
                    return agent

        generic = self.registry.agents_for_vendor(VendorTags.GENERIC)
        for agent in generic:
            if agent.is_available():
                return agent
        # Nothing available: invoke the first generic anyway and record its failure
        return generic[0] if generic else None

    # ------------------------------------------------------------------
    # Invocation with budget, deadline and cancellation
    # ------------------------------------------------------------------

    async def _invoke(
        self,
        state: _RunState,
        agent: BaseAgent,
        image: ReceiptImage,
        context: InvocationContext,
        *,
        stage: AgentKind,
    ) -> AgentInvocationResult:
        """Reserve, invoke, commit. Returns a skipped result when the agent never started."""
        if state.cancelled or (state.cancel_event is not None and state.cancel_event.is_set()):
            state.cancelled = True
            return _stage_result(
                agent.agent_name, stage, success=False,
                code=ErrorCode.CANCELLED, message="Run cancelled before invocation", skipped=True,
            )

        time_left = state.time_left()
        if time_left <= 0:
            state.deadline_hit = True
            return _stage_result(
                agent.agent_name, stage, success=False,
                code=ErrorCode.AGENT_TIMEOUT, message="Run deadline exceeded before invocation",
                skipped=True,
            )

        estimate = agent.estimate_cost(image)
        if not state.budget.reserve(estimate):
            state.budget_blocked = True
            if stage == "fallback":
                state.fallback_skipped = True
            return _stage_result(
                agent.agent_name, stage, success=False,
                code=ErrorCode.BUDGET_EXHAUSTED,
                message=(
                    f"Estimated cost {estimate:.4f} exceeds remaining budget "
                    f"{state.budget.remaining():.4f}"
                ),
                skipped=True,
            )

        agent_timeout = agent.timeout_seconds or state.config.agent_timeout_seconds
        timeout = min(agent_timeout, time_left)
        state.agents_used.append(agent.agent_name)
        start = time.monotonic()

        try:
            result = await self._run_with_limits(
                agent, image, context, timeout=timeout, cancel_event=state.cancel_event
            )
        except asyncio.TimeoutError:
            if time_left <= agent_timeout:
                state.deadline_hit = True
            logger.warning("Agent timed out", agent=agent.agent_name, timeout=round(timeout, 2))
            result = _stage_result(
                agent.agent_name, stage, success=False,
                code=ErrorCode.AGENT_TIMEOUT,
                message=f"{agent.agent_name} timed out after {timeout:.1f}s",
                cost=estimate,
                elapsed_ms=int((time.monotonic() - start) * 1000),
            )
        except _InvocationCancelled:
            state.cancelled = True
            logger.warning("Agent invocation cancelled", agent=agent.agent_name)
            result = _stage_result(
                agent.agent_name, stage, success=False,
                code=ErrorCode.CANCELLED,
                message=f"{agent.agent_name} cancelled by caller",
                cost=estimate,
                elapsed_ms=int((time.monotonic() - start) * 1000),
            )
        except Exception as e:
            logger.error(
                "Agent raised outside invoke()",
                agent=agent.agent_name,
                error=str(e),
                exc_info=True,
            )
            result = _stage_result(
                agent.agent_name, stage, success=False,
                code=ErrorCode.AGENT_INVOCATION_FAILED,
                message=f"{type(e).__name__}: {e}",
                elapsed_ms=int((time.monotonic() - start) * 1000),
            )
        except asyncio.CancelledError:
            state.budget.commit(estimate, agent.agent_name)
            raise

        if result.stage != stage:
            result = result.model_copy(update={"stage": stage})

        state.budget.commit(result.cost, agent.agent_name)
        state.attempted.append(result)
        return result

    @staticmethod
    async def _run_with_limits(
        agent: BaseAgent,
        image: ReceiptImage,
        context: InvocationContext,
        *,
        timeout: float,
        cancel_event: asyncio.Event | None,
    ) -> AgentInvocationResult:
        """Await ``agent.invoke`` racing the timeout and the caller's cancel event.

        The agent task is cancelled on every exit path, including cancellation
        of the awaiting task itself.
        """
        task = asyncio.ensure_future(agent.invoke(image, context))
        waiter = asyncio.ensure_future(cancel_event.wait()) if cancel_event is not None else None
        try:
            waiting = {task} if waiter is None else {task, waiter}
            done, _ = await asyncio.wait(
                waiting, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if task in done:
                if task.cancelled():
                    raise _InvocationCancelled()
                return task.result()
            if waiter is not None and waiter in done:
                raise _InvocationCancelled()
            raise asyncio.TimeoutError()
        finally:
            for pending in (task, waiter):
                if pending is not None and not pending.done():
                    pending.cancel()

    # ------------------------------------------------------------------
    # Result helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _below_threshold_reason(
        state: _RunState,
        config: OrchestratorConfig,
        current: str | None,
    ) -> str:
        if state.cancelled:
            return "cancelled"
        if state.deadline_hit:
            return "deadline_exceeded"
        if not config.enable_fallbacks:
            return "fallbacks_disabled"
        if state.budget_blocked:
            return "budget_exhausted"
        return current or "fallback_exhausted"

    @staticmethod
    def _terminal_error(state: _RunState, stage2: AgentInvocationResult) -> PipelineErrorInfo:
        if state.budget_blocked:
            return _error_info(BudgetExhausted(
                f"Cost ceiling {state.budget.ceiling:.4f} reached after spending "
                f"{state.budget.spent:.4f} without a usable result"
            ))

        last = next(
            (r for r in reversed(state.attempted) if r.stage != "detection" and r.error is not None),
            None,
        )
        if last is None and stage2.error is not None:
            last = stage2
        detail = last.error.message if last is not None and last.error else "no usable result"
        return _error_info(
            AllCandidatesExhausted(f"All candidates exhausted; last failure: {detail}"),
            agent_name=last.agent_name if last is not None else None,
        )

    @staticmethod
    def _budget_refused_result(state: _RunState, image: ReceiptImage) -> AgenticResult:
        logger.warning("Orchestrator: no budget for this request", file=image.file_name)
        stage1 = _stage_result(
            "vendor-detector",
            "detection",
            success=False,
            code=ErrorCode.BUDGET_EXHAUSTED,
            message="Cost ceiling is zero",
            skipped=True,
        )
        return AgenticResult(
            success=False,
            pipeline=PipelineRun(stage1_vendor_detection=stage1, cost_ceiling=state.budget.ceiling),
            metadata=ResultMetadata(fallback_skipped_due_to_budget=True),
            error=_error_info(BudgetExhausted("Cost ceiling is zero; no agent was invoked")),
        )


# ---------------------------------------------------------------------------
# Default wiring
# ---------------------------------------------------------------------------


def build_default_registry(cost_tracker: CostTracker | None = None) -> AgentRegistry:
    """Registry with the built-in detector, parsers and fallbacks."""
    registry = AgentRegistry()
    registry.set_detector(VendorDetectionAgent(cost_tracker=cost_tracker))

    for parser_cls in (WalmartParser, HomeDepotParser, TargetParser, GenericParser):
        parser = parser_cls(cost_tracker=cost_tracker)
        for tag in parser.vendor_tags:
            registry.register(tag, parser)

    registry.register_fallback(GenericEnhancedParser(cost_tracker=cost_tracker))
    registry.register_fallback(BaselineOCRAgent(cost_tracker=cost_tracker))
    return registry


_config_store: ConfigurationStore | None = None
_orchestrator: PipelineOrchestrator | None = None


def get_config_store() -> ConfigurationStore:
    global _config_store
    if _config_store is None:
        _config_store = ConfigurationStore()
    return _config_store


def get_orchestrator() -> PipelineOrchestrator:
    """Process-wide orchestrator (FastAPI dependency)."""
    global _orchestrator
    if _orchestrator is None:
        tracker = CostTracker(max_records=settings.cost_tracker_max_records)
        _orchestrator = PipelineOrchestrator(
            registry=build_default_registry(cost_tracker=tracker),
            config_store=get_config_store(),
            cost_tracker=tracker,
        )
    return _orchestrator

