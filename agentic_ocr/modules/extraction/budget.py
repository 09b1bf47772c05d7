"""Agentic OCR Budget Tracker: per-request reserve-before-invoke / commit-after accounting.

One tracker is created per orchestrated run and never shared between runs.
Amounts are USD floats; comparisons use a small epsilon so that sums such as
0.01 + 0.02 do not spuriously overrun a 0.03 ceiling.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger()

_EPSILON = 1e-9


@dataclass
class BudgetTracker:
    """Tracks committed spend against a hard per-request ceiling."""

    ceiling: float
    spent: float = 0.0
    reserved: float = 0.0
    over_budget: bool = False
    commits: list[tuple[str, float]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.ceiling = max(0.0, self.ceiling)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def remaining(self) -> float:
        """Unspent and unreserved budget. Never negative."""
        left = self.ceiling - self.spent - self.reserved
        return left if left > _EPSILON else 0.0

    @property
    def exhausted(self) -> bool:
        """True once no further invocation may be started."""
        return self.over_budget or self.ceiling - self.spent <= _EPSILON

    def can_afford(self, estimated_cost: float) -> bool:
        if self.exhausted:
            return False
        return estimated_cost <= self.remaining() + _EPSILON

    # ------------------------------------------------------------------
    # Reserve / commit
    # ------------------------------------------------------------------

    def reserve(self, estimated_cost: float) -> bool:
        """Reserve the estimate of the next invocation.

        Returns False (and reserves nothing) when the run is exhausted or the
        estimate does not fit in the remaining ceiling.
        """
        estimated_cost = max(0.0, estimated_cost)
        if not self.can_afford(estimated_cost):
            logger.info(
                "Budget reservation refused",
                estimated=round(estimated_cost, 6),
                remaining=round(self.remaining(), 6),
                ceiling=self.ceiling,
            )
            return False
        self.reserved += estimated_cost
        return True

    def commit(self, actual_cost: float, agent_name: str = "") -> None:
        """Record real spend and release any outstanding reservation.

        A commit that pushes spend past the ceiling still succeeds: the
        money is already gone. The run is flagged ``over_budget`` instead.
        """
        actual_cost = max(0.0, actual_cost)
        self.reserved = 0.0
        self.spent += actual_cost
        self.commits.append((agent_name, actual_cost))

        if self.spent > self.ceiling + _EPSILON:
            self.over_budget = True
            logger.warning(
                "Budget ceiling exceeded by committed cost",
                agent=agent_name,
                spent=round(self.spent, 6),
                ceiling=self.ceiling,
            )
