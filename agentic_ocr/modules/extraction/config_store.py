"""Agentic OCR Configuration Store: process-wide, runtime-updatable orchestrator config.

``current()`` hands out an immutable snapshot; a run reads it once and uses it
for its whole lifetime, so concurrent updates never change a run midway.
``update()`` validates the merged config first and swaps it under a lock.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from typing import Any

import structlog
from pydantic import ValidationError

from agentic_ocr.core.config import Settings, settings
from agentic_ocr.modules.extraction.agent_schemas import OrchestratorConfig, OrchestratorMode
from agentic_ocr.modules.extraction.exceptions import ConfigurationInvalid

logger = structlog.get_logger()

# Mode presets applied by ``apply_preset``
MODE_PRESETS: dict[str, dict[str, Any]] = {
    "production": {
        "mode": "production",
        "enable_vendor_detection": True,
        "enable_specialized_parsing": True,
        "enable_fallbacks": True,
        "quality_threshold": 75.0,
        "cost_budget": 0.03,
    },
    "development": {
        "mode": "development",
        "enable_vendor_detection": True,
        "enable_specialized_parsing": True,
        "enable_fallbacks": True,
        "quality_threshold": 60.0,
        "cost_budget": 0.05,
    },
    "testing": {
        "mode": "testing",
        "enable_vendor_detection": True,
        "enable_specialized_parsing": False,
        "enable_fallbacks": True,
        "quality_threshold": 50.0,
        "cost_budget": 0.01,
    },
}


def config_from_settings(s: Settings) -> OrchestratorConfig:
    """Initial config built from environment settings."""
    return OrchestratorConfig(
        mode=s.agentic_mode,  # type: ignore[arg-type]
        enable_vendor_detection=s.agentic_enable_vendor_detection,
        enable_specialized_parsing=s.agentic_enable_specialized_parsing,
        enable_fallbacks=s.agentic_enable_fallbacks,
        quality_threshold=s.agentic_quality_threshold,
        cost_budget=s.agentic_cost_budget,
        fallback_order=tuple(s.agentic_fallback_order),
        agent_timeout_seconds=s.agent_timeout_seconds,
        run_timeout_seconds=s.run_timeout_seconds,
    )


class ConfigurationStore:
    """Lock-protected holder of the current OrchestratorConfig."""

    def __init__(self, initial: OrchestratorConfig | None = None) -> None:
        self._lock = threading.Lock()
        self._initial = initial or config_from_settings(settings)
        self._config = self._initial

    def current(self) -> OrchestratorConfig:
        """Consistent snapshot; safe to hold for the whole run."""
        return self._config

    def update(self, partial: Mapping[str, Any]) -> OrchestratorConfig:
        """Merge ``partial`` into the current config and swap it in atomically.

        Raises:
            ConfigurationInvalid: unknown keys or values failing validation.
                The current config is left untouched.
        """
        if not isinstance(partial, Mapping):
            logger.warning("Rejected config update", payload_type=type(partial).__name__)
            raise ConfigurationInvalid(
                f"Config update must be an object, got {type(partial).__name__}",
                errors=[{"loc": [], "msg": "expected an object", "type": "type_error"}],
            )

        with self._lock:
            merged = {**self._config.model_dump(), **dict(partial)}
            try:
                new_config = OrchestratorConfig.model_validate(merged)
            except ValidationError as e:
                errors = [
                    {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
                    for err in e.errors()
                ]
                logger.warning("Rejected config update", errors=errors)
                raise ConfigurationInvalid(
                    f"Invalid orchestrator configuration: {len(errors)} error(s)",
                    errors=errors,
                    cause=e,
                ) from e
            self._config = new_config

        logger.info(
            "Orchestrator config updated",
            changed=sorted(partial.keys()),
            mode=new_config.mode,
            quality_threshold=new_config.quality_threshold,
            cost_budget=new_config.cost_budget,
        )
        return new_config

    def apply_preset(self, mode: OrchestratorMode) -> OrchestratorConfig:
        """Apply a mode preset (threshold, budget and toggles) on top of the current config."""
        preset = MODE_PRESETS.get(mode)
        if preset is None:
            raise ConfigurationInvalid(
                f"Unknown mode preset: {mode}",
                errors=[{"loc": ["mode"], "msg": f"unknown preset '{mode}'", "type": "value_error"}],
            )
        return self.update(preset)

    def reset(self) -> OrchestratorConfig:
        """Restore the config the store was created with."""
        with self._lock:
            self._config = self._initial
        return self._initial
