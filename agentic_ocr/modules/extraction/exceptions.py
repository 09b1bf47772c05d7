"""Agentic OCR exception hierarchy.

Only ``InputInvalid`` and ``ConfigurationInvalid`` escape to callers of the
orchestrator. The other classes are raised inside agents and converted into
failed invocation results or into the error block of the result envelope.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes carried in result envelopes."""

    INPUT_INVALID = "INPUT_INVALID"
    BUDGET_EXHAUSTED = "BUDGET_EXHAUSTED"
    AGENT_INVOCATION_FAILED = "AGENT_INVOCATION_FAILED"
    AGENT_TIMEOUT = "AGENT_TIMEOUT"
    CANCELLED = "CANCELLED"
    ALL_CANDIDATES_EXHAUSTED = "ALL_CANDIDATES_EXHAUSTED"
    CONFIGURATION_INVALID = "CONFIGURATION_INVALID"


class AgenticOCRError(Exception):
    """Base exception for all agentic OCR errors."""

    code: ErrorCode = ErrorCode.AGENT_INVOCATION_FAILED

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause
        self.message = message

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by {type(self.cause).__name__}: {self.cause})"
        return self.message


class InputInvalid(AgenticOCRError):
    """Raised when the request carries no usable receipt image."""

    code = ErrorCode.INPUT_INVALID


class ImageTooLarge(InputInvalid):
    """The receipt image exceeds the configured size limit."""


class BudgetExhausted(AgenticOCRError):
    """The per-request budget cannot cover any further invocation."""

    code = ErrorCode.BUDGET_EXHAUSTED


class AgentInvocationFailed(AgenticOCRError):
    """Raised by an agent when its call failed.

    Attributes:
        cost: USD already spent before the failure (e.g. tokens billed for
            a response that could not be parsed).
    """

    def __init__(
        self,
        message: str,
        *,
        cost: float = 0.0,
        code: ErrorCode = ErrorCode.AGENT_INVOCATION_FAILED,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.cost = cost
        self.code = code


class AllCandidatesExhausted(AgenticOCRError):
    """Every candidate agent failed or was skipped."""

    code = ErrorCode.ALL_CANDIDATES_EXHAUSTED


class ConfigurationInvalid(AgenticOCRError):
    """Raised when a config update fails validation.

    Attributes:
        errors: pydantic-style error list describing every rejected field.
    """

    code = ErrorCode.CONFIGURATION_INVALID

    def __init__(
        self,
        message: str,
        *,
        errors: list[dict[str, Any]] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.errors = errors or []
