"""Agentic OCR Agent Registry: vendor tag -> ordered parsing agents, plus detector and fallbacks.

Registrations are copy-on-write under a lock: readers always see either the
state before or after a registration, never a partial one.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from types import MappingProxyType
from typing import TYPE_CHECKING

import structlog

from agentic_ocr.modules.extraction.agent_schemas import AgentStatus, normalize_vendor_tag

if TYPE_CHECKING:
    from agentic_ocr.modules.extraction.agents.base import BaseAgent

logger = structlog.get_logger()


class AgentRegistry:
    """Lookup table for every agent the orchestrator may invoke."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_tag: MappingProxyType[str, tuple[BaseAgent, ...]] = MappingProxyType({})
        self._fallbacks: MappingProxyType[str, BaseAgent] = MappingProxyType({})
        self._detector: BaseAgent | None = None

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, vendor_tag: str, agent: BaseAgent) -> None:
        """Append a parsing agent for a vendor tag. Earlier registrations keep priority."""
        tag = normalize_vendor_tag(vendor_tag)
        with self._lock:
            current = self._by_tag.get(tag, ())
            if any(a is agent for a in current):
                return
            updated = dict(self._by_tag)
            updated[tag] = (*current, agent)
            self._by_tag = MappingProxyType(updated)
        logger.info("Agent registered", vendor_tag=tag, agent=agent.agent_name)

    def set_detector(self, agent: BaseAgent) -> None:
        with self._lock:
            self._detector = agent
        logger.info("Vendor detector registered", agent=agent.agent_name)

    def register_fallback(self, agent: BaseAgent) -> None:
        """Register a fallback agent under its own name (replaces a same-named one)."""
        with self._lock:
            updated = dict(self._fallbacks)
            updated[agent.agent_name] = agent
            self._fallbacks = MappingProxyType(updated)
        logger.info("Fallback agent registered", agent=agent.agent_name)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def agents_for_vendor(self, vendor_tag: str) -> list[BaseAgent]:
        """Parsing agents registered for a tag, in priority order (empty if none)."""
        return list(self._by_tag.get(normalize_vendor_tag(vendor_tag), ()))

    def has_vendor(self, vendor_tag: str) -> bool:
        return bool(self._by_tag.get(normalize_vendor_tag(vendor_tag)))

    def vendor_tags(self) -> list[str]:
        return sorted(tag for tag, agents in self._by_tag.items() if agents)

    def detector(self) -> BaseAgent | None:
        return self._detector

    def fallback_chain(self, names: Iterable[str]) -> list[BaseAgent]:
        """Resolve fallback names in order, skipping names that are not registered."""
        chain: list[BaseAgent] = []
        fallbacks = self._fallbacks
        for name in names:
            agent = fallbacks.get(name)
            if agent is None:
                logger.warning("Unknown fallback agent in config, skipping", agent=name)
                continue
            chain.append(agent)
        return chain

    def all_agents(self) -> list[BaseAgent]:
        """Every distinct agent: detector first, then parsers, then fallbacks."""
        seen: list[BaseAgent] = []

        def _add(agent: BaseAgent | None) -> None:
            if agent is not None and not any(a is agent for a in seen):
                seen.append(agent)

        _add(self._detector)
        for tag in sorted(self._by_tag):
            for agent in self._by_tag[tag]:
                _add(agent)
        for agent in self._fallbacks.values():
            _add(agent)
        return seen

    def tags_for_agent(self, agent: BaseAgent) -> list[str]:
        return sorted(tag for tag, agents in self._by_tag.items() if any(a is agent for a in agents))

    def status(self) -> list[AgentStatus]:
        return [
            AgentStatus(
                name=agent.agent_name,
                kind=agent.kind,
                vendor_tags=self.tags_for_agent(agent),
                available=agent.is_available(),
                declared_cost=agent.declared_cost,
                declared_latency_ms=agent.declared_latency_ms,
            )
            for agent in self.all_agents()
        ]
