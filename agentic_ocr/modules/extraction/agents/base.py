"""Agentic OCR BaseAgent: invocation contract, shared async vision-LLM calls, cost reporting.

Every agent the orchestrator can run derives from BaseAgent and implements
``run()``. The public ``invoke()`` wraps it: it times the call and converts
any failure into a failed AgentInvocationResult, so one bad agent never
takes down a pipeline run.

Providers supported:
  - google (Gemini Flash / Pro)
  - anthropic (Claude via direct API or Vertex AI)
  - openai (GPT-4o / GPT-4.1 vision)
"""

from __future__ import annotations

import base64
import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from agentic_ocr.core.config import settings
from agentic_ocr.modules.extraction.agent_schemas import (
    AgentError,
    AgentInvocationResult,
    AgentKind,
    InvocationContext,
    ParsingPayload,
    ReceiptImage,
    VendorDetectionPayload,
)
from agentic_ocr.modules.extraction.agents.sanitizer import strip_code_fences
from agentic_ocr.modules.extraction.cost_tracker import CostTracker, estimate_call_cost
from agentic_ocr.modules.extraction.exceptions import (
    AgentInvocationFailed,
    AgenticOCRError,
    ErrorCode,
)
from agentic_ocr.modules.extraction.image_service import fetch_image_bytes

logger = structlog.get_logger()

# Default models per provider
DEFAULT_MODELS: dict[str, str] = {
    "anthropic": "claude-sonnet-4@20250514",
    "google": "gemini-2.5-flash",
    "openai": "gpt-4.1",
}

# Directory where prompt templates live
_PROMPTS_DIR = Path(__file__).parent / "prompts"


@dataclass
class AgentOutcome:
    """What ``run()`` hands back to ``invoke()`` on success."""

    payload: VendorDetectionPayload | ParsingPayload
    confidence: float
    cost: float = 0.0


class BaseAgent:
    """Base class for all Agentic OCR agents.

    Provides:
      - The invoke() contract used by the orchestrator
      - Declared cost / latency / availability for budgeting and status
      - Lazy async LLM clients (Gemini / Anthropic / OpenAI) with image input
      - Prompt loading from prompts/ directory
      - JSON parsing with code-fence stripping
      - Per-call USD cost from token usage
    """

    agent_name: str = "base"
    kind: AgentKind = "parsing"
    declared_cost: float = 0.01
    declared_latency_ms: int = 3000
    timeout_seconds: float | None = None  # None -> orchestrator default
    requires_llm: bool = True

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        cost_tracker: CostTracker | None = None,
    ) -> None:
        self.provider = provider or settings.extraction_provider
        self.model = model or settings.extraction_model or DEFAULT_MODELS.get(self.provider, "")
        self.cost_tracker = cost_tracker

        # Lazy-initialized clients
        self._gemini_client: Any = None
        self._anthropic_client: Any = None
        self._openai_client: Any = None
        self._is_vertex = False

        logger.debug(
            f"{self.agent_name} initialized",
            provider=self.provider,
            model=self.model,
        )

    # ------------------------------------------------------------------
    # Capability interface
    # ------------------------------------------------------------------

    def is_available(self) -> bool:
        """True when the agent can be invoked right now (credentials present)."""
        if not self.requires_llm:
            return True
        return self.has_llm_credentials()

    def has_llm_credentials(self) -> bool:
        if self.provider == "google":
            return bool(settings.google_ai_api_key)
        if self.provider == "anthropic":
            return bool(settings.anthropic_api_key or settings.vertex_credentials_path)
        if self.provider == "openai":
            return bool(settings.openai_api_key)
        return False

    def estimate_cost(self, image: ReceiptImage | None = None) -> float:
        """Expected USD cost of one invocation, used for budget reservations."""
        return self.declared_cost

    async def run(self, image: ReceiptImage, context: InvocationContext) -> AgentOutcome:
        raise NotImplementedError

    async def invoke(
        self,
        image: ReceiptImage,
        context: InvocationContext | None = None,
    ) -> AgentInvocationResult:
        """Run the agent and always return a result; failures become success=False."""
        start = time.monotonic()
        context = context or InvocationContext()

        try:
            outcome = await self.run(image, context)
        except AgentInvocationFailed as e:
            return self._failed(e.code, str(e), cost=e.cost, start=start)
        except AgenticOCRError as e:
            return self._failed(ErrorCode.AGENT_INVOCATION_FAILED, str(e), start=start)
        except Exception as e:
            logger.error(
                f"{self.agent_name} invocation failed",
                file=image.file_name,
                error=str(e),
                exc_info=True,
            )
            return self._failed(
                ErrorCode.AGENT_INVOCATION_FAILED,
                f"{type(e).__name__}: {e}",
                start=start,
            )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        return AgentInvocationResult(
            agent_name=self.agent_name,
            stage=self.kind,
            success=True,
            confidence=max(0.0, min(100.0, outcome.confidence)),
            cost=max(0.0, outcome.cost),
            processing_time_ms=elapsed_ms,
            payload=outcome.payload,
        )

    def _failed(
        self,
        code: ErrorCode,
        message: str,
        *,
        cost: float = 0.0,
        start: float,
    ) -> AgentInvocationResult:
        logger.warning(f"{self.agent_name} returned failure", code=code.value, error=message)
        return AgentInvocationResult(
            agent_name=self.agent_name,
            stage=self.kind,
            success=False,
            confidence=0.0,
            cost=max(0.0, cost),
            processing_time_ms=int((time.monotonic() - start) * 1000),
            error=AgentError(code=code, message=message),
        )

    # ------------------------------------------------------------------
    # Prompt loading
    # ------------------------------------------------------------------

    @staticmethod
    def load_prompt(filename: str) -> str:
        """Load a prompt template from the prompts/ directory."""
        path = _PROMPTS_DIR / filename
        if not path.exists():
            raise FileNotFoundError(f"Prompt file not found: {path}")
        return path.read_text(encoding="utf-8").strip()

    # ------------------------------------------------------------------
    # LLM client builders (lazy)
    # ------------------------------------------------------------------

    def _get_gemini_client(self) -> Any:
        """Get or create the Gemini client."""
        if self._gemini_client is None:
            from google import genai
            from google.genai import types as genai_types

            self._gemini_client = genai.Client(
                api_key=settings.google_ai_api_key,
                http_options=genai_types.HttpOptions(
                    timeout=int(settings.agent_timeout_seconds * 1000),
                ),
            )
        return self._gemini_client

    def _get_anthropic_client(self) -> Any:
        """Get or create the async Anthropic client (direct or Vertex AI)."""
        if self._anthropic_client is None:
            import anthropic

            if settings.vertex_credentials_path:
                import os
                os.environ.setdefault(
                    "GOOGLE_APPLICATION_CREDENTIALS",
                    settings.vertex_credentials_path,
                )
                self._anthropic_client = anthropic.AsyncAnthropicVertex(
                    project_id=settings.vertex_project_id,
                    region=settings.vertex_location,
                )
                self._is_vertex = True
            else:
                self._anthropic_client = anthropic.AsyncAnthropic(
                    api_key=settings.anthropic_api_key,
                )
                self._is_vertex = False

        return self._anthropic_client

    def _get_openai_client(self) -> Any:
        """Get or create the async OpenAI client."""
        if self._openai_client is None:
            from openai import AsyncOpenAI

            self._openai_client = AsyncOpenAI(api_key=settings.openai_api_key)
        return self._openai_client

    # ------------------------------------------------------------------
    # Unified LLM call
    # ------------------------------------------------------------------

    async def call_llm(
        self,
        system_prompt: str,
        user_content: str,
        *,
        image: ReceiptImage | None = None,
        response_json: bool = True,
        temperature: float = 0.0,
    ) -> dict[str, Any]:
        """Call the configured LLM provider with optional receipt image.

        Returns:
            {
                "content": str | dict,  # Raw text or parsed JSON
                "input_tokens": int,
                "output_tokens": int,
                "cost_usd": float,
                "duration_ms": int,
                "provider": str,
                "model": str,
            }

        Raises:
            AgentInvocationFailed: the response was not valid JSON; carries
                the cost of the billed call.
        """
        image_part: tuple[bytes, str] | None = None
        if image is not None:
            image_part = await fetch_image_bytes(image, timeout=settings.agent_timeout_seconds)

        start = time.time()
        if self.provider == "google":
            raw_text, usage = await self._call_gemini(
                system_prompt, user_content, image_part,
                response_json=response_json, temperature=temperature,
            )
        elif self.provider == "anthropic":
            raw_text, usage = await self._call_anthropic(
                system_prompt, user_content, image_part, temperature=temperature,
            )
        elif self.provider == "openai":
            raw_text, usage = await self._call_openai(
                system_prompt, user_content, image_part,
                response_json=response_json, temperature=temperature,
            )
        else:
            raise ValueError(f"Unsupported provider: {self.provider}")
        duration_ms = int((time.time() - start) * 1000)

        cost = estimate_call_cost(self.model, **usage)

        logger.info(
            f"{self.agent_name} LLM call",
            provider=self.provider,
            model=self.model,
            file=image.file_name if image else "",
            input_tokens=usage["input_tokens"],
            output_tokens=usage["output_tokens"],
            cost_usd=round(cost, 6),
            duration_ms=duration_ms,
        )

        if self.cost_tracker:
            self.cost_tracker.record(
                self.agent_name,
                self.provider,
                self.model,
                file_name=image.file_name if image else "",
                duration_ms=duration_ms,
                **usage,
            )

        content: str | dict = raw_text
        if response_json:
            try:
                content = self.parse_json(raw_text)
            except (json.JSONDecodeError, TypeError) as e:
                raise AgentInvocationFailed(
                    f"{self.model} returned invalid JSON",
                    cost=cost,
                    cause=e,
                ) from e

        return {
            "content": content,
            "input_tokens": usage["input_tokens"],
            "output_tokens": usage["output_tokens"],
            "cost_usd": cost,
            "duration_ms": duration_ms,
            "provider": self.provider,
            "model": self.model,
        }

    async def _call_gemini(
        self,
        system_prompt: str,
        user_content: str,
        image_part: tuple[bytes, str] | None,
        *,
        response_json: bool,
        temperature: float,
    ) -> tuple[str, dict[str, int]]:
        from google.genai import types

        client = self._get_gemini_client()

        config_kwargs: dict[str, Any] = {
            "system_instruction": system_prompt,
            "temperature": temperature,
        }
        if response_json:
            config_kwargs["response_mime_type"] = "application/json"

        contents: list[Any] = []
        if image_part is not None:
            data, mime_type = image_part
            contents.append(types.Part.from_bytes(data=data, mime_type=mime_type))
        contents.append(user_content)

        response = await client.aio.models.generate_content(
            model=self.model,
            contents=contents,
            config=types.GenerateContentConfig(**config_kwargs),
        )

        meta = response.usage_metadata
        usage = {
            "input_tokens": getattr(meta, "prompt_token_count", 0) or 0,
            "output_tokens": getattr(meta, "candidates_token_count", 0) or 0,
            "cache_read_tokens": getattr(meta, "cached_content_token_count", 0) or 0,
        }
        return response.text or "", usage

    async def _call_anthropic(
        self,
        system_prompt: str,
        user_content: str,
        image_part: tuple[bytes, str] | None,
        *,
        temperature: float,
    ) -> tuple[str, dict[str, int]]:
        client = self._get_anthropic_client()

        # Prompt caching for direct API
        if not self._is_vertex:
            system_messages: Any = [
                {
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ]
        else:
            system_messages = system_prompt

        blocks: list[dict[str, Any]] = []
        if image_part is not None:
            data, mime_type = image_part
            blocks.append({
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": mime_type,
                    "data": base64.b64encode(data).decode("ascii"),
                },
            })
        blocks.append({"type": "text", "text": user_content})

        response = await client.messages.create(
            model=self.model,
            max_tokens=4096,
            system=system_messages,
            messages=[{"role": "user", "content": blocks}],
            temperature=temperature,
        )

        meta = response.usage
        usage = {
            "input_tokens": getattr(meta, "input_tokens", 0) or 0,
            "output_tokens": getattr(meta, "output_tokens", 0) or 0,
            "cache_creation_tokens": getattr(meta, "cache_creation_input_tokens", 0) or 0,
            "cache_read_tokens": getattr(meta, "cache_read_input_tokens", 0) or 0,
        }
        raw_text = response.content[0].text if response.content else ""
        return raw_text, usage

    async def _call_openai(
        self,
        system_prompt: str,
        user_content: str,
        image_part: tuple[bytes, str] | None,
        *,
        response_json: bool,
        temperature: float,
    ) -> tuple[str, dict[str, int]]:
        client = self._get_openai_client()

        parts: list[dict[str, Any]] = [{"type": "text", "text": user_content}]
        if image_part is not None:
            data, mime_type = image_part
            encoded = base64.b64encode(data).decode("ascii")
            parts.append({
                "type": "image_url",
                "image_url": {"url": f"data:{mime_type};base64,{encoded}"},
            })

        kwargs: dict[str, Any] = {}
        if response_json:
            kwargs["response_format"] = {"type": "json_object"}

        response = await client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": parts},
            ],
            temperature=temperature,
            **kwargs,
        )

        meta = response.usage
        usage = {
            "input_tokens": getattr(meta, "prompt_tokens", 0) or 0,
            "output_tokens": getattr(meta, "completion_tokens", 0) or 0,
        }
        return response.choices[0].message.content or "", usage

    # ------------------------------------------------------------------
    # JSON parsing
    # ------------------------------------------------------------------

    @staticmethod
    def parse_json(raw_text: str) -> dict:
        """Parse LLM output as JSON, stripping code fences if present."""
        text = strip_code_fences(raw_text)
        data = json.loads(text)
        if not isinstance(data, dict):
            raise TypeError(f"Expected a JSON object, got {type(data).__name__}")
        return data
