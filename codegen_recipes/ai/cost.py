"""Token and cost accounting for AI calls within one run."""

import logging
import math
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from ..errors import BudgetExceededError
from .config import DEFAULT_COST_TABLE
from .config import BudgetConfig
from .config import ModelPricing

logger = logging.getLogger(__name__)

PricingLookup = Callable[[str], ModelPricing | None]


def estimate_tokens(text: str) -> int:
    """Rough token estimate: about 4 characters per token."""
    return math.ceil(len(text) / 4)


def table_lookup(table: dict[str, ModelPricing]) -> PricingLookup:
    """Pricing lookup over a cost table.

    ``anthropic/claude-sonnet-4-5`` style names fall back to the part after
    the last slash.
    """

    def lookup(model: str) -> ModelPricing | None:
        if model in table:
            return table[model]
        return table.get(model.rsplit("/", 1)[-1])

    return lookup


@dataclass
class Reservation:
    """Budget held for one in-flight call."""

    id: str
    model: str
    tokens: int
    cost_usd: float


@dataclass
class CostRecord:
    """Actual usage of one completed call."""

    name: str
    model: str
    input_tokens: int
    output_tokens: int
    cost_usd: float
    retry_attempts: int = 0


class CostTracker:
    """Enforces token and cost ceilings across every call in a run.

    Checks happen before a call and always in the same order: the token
    estimate first (no pricing lookup), then the cost estimate. Checking and
    reserving happen under one lock so concurrent calls cannot both pass
    against the same remaining budget.
    """

    def __init__(
        self,
        budget: BudgetConfig | None = None,
        cost_table: dict[str, ModelPricing] | None = None,
        pricing_lookup: PricingLookup | None = None,
    ):
        self.budget = budget or BudgetConfig()
        self._pricing_lookup = pricing_lookup or table_lookup({**DEFAULT_COST_TABLE, **(cost_table or {})})
        self._lock = threading.Lock()
        self._reservations: dict[str, Reservation] = {}
        self.records: list[CostRecord] = []
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.total_cost_usd = 0.0
        self.warning_triggered = False
        self.limit_hit = False

    @property
    def total_tokens(self) -> int:
        return self.total_input_tokens + self.total_output_tokens

    @property
    def reserved_tokens(self) -> int:
        with self._lock:
            return sum(r.tokens for r in self._reservations.values())

    def calculate_cost(self, model: str, input_tokens: int, output_tokens: int) -> float:
        pricing = self._pricing_lookup(model)
        if pricing is None:
            logger.debug(f"No pricing found for model {model}, cost will be 0")
            return 0.0
        return (
            input_tokens * pricing.input_per_million / 1_000_000
            + output_tokens * pricing.output_per_million / 1_000_000
        )

    def _check_tokens_locked(self, estimate: int) -> None:
        held_tokens = sum(r.tokens for r in self._reservations.values())
        spent_tokens = self.total_tokens + held_tokens
        if self.budget.max_tokens is not None and spent_tokens + estimate > self.budget.max_tokens:
            self.limit_hit = True
            raise BudgetExceededError("tokens", estimate, spent_tokens, self.budget.max_tokens)

    def check_tokens(self, input_tokens: int, max_output_tokens: int) -> None:
        """
        Check the token ceiling only, without looking up pricing or reserving.

        Lets a caller holding several trackers check every token ceiling
        before any of them evaluates cost.

        Raises:
            BudgetExceededError: If the call would exceed the token ceiling
        """
        with self._lock:
            self._check_tokens_locked(input_tokens + max_output_tokens)

    def check_and_reserve(self, model: str, input_tokens: int, max_output_tokens: int) -> Reservation:
        """
        Reserve budget for a call, or refuse it.

        Args:
            model: Model that will serve the call
            input_tokens: Estimated prompt tokens
            max_output_tokens: Upper bound on completion tokens

        Returns:
            Reservation to settle or release once the call finishes

        Raises:
            BudgetExceededError: If the call would exceed the token or cost ceiling
        """
        estimate = input_tokens + max_output_tokens
        with self._lock:
            self._check_tokens_locked(estimate)

            cost = 0.0
            if self.budget.max_cost_usd is not None:
                cost = self.calculate_cost(model, input_tokens, max_output_tokens)
                spent_cost = self.total_cost_usd + sum(r.cost_usd for r in self._reservations.values())
                if spent_cost + cost > self.budget.max_cost_usd:
                    self.limit_hit = True
                    raise BudgetExceededError("cost", cost, spent_cost, self.budget.max_cost_usd)

            reservation = Reservation(id=uuid.uuid4().hex, model=model, tokens=estimate, cost_usd=cost)
            self._reservations[reservation.id] = reservation
        return reservation

    def release(self, reservation: Reservation) -> None:
        """Drop a reservation without recording usage (the call did not happen)."""
        with self._lock:
            self._reservations.pop(reservation.id, None)

    def settle(
        self,
        reservation: Reservation | None,
        name: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        retry_attempts: int = 0,
    ) -> CostRecord:
        """Replace a reservation with the call's actual usage."""
        cost = self.calculate_cost(model, input_tokens, output_tokens)
        record = CostRecord(name, model, input_tokens, output_tokens, cost, retry_attempts)
        with self._lock:
            if reservation is not None:
                self._reservations.pop(reservation.id, None)
            self.records.append(record)
            self.total_input_tokens += input_tokens
            self.total_output_tokens += output_tokens
            self.total_cost_usd += cost
            warn_now = (
                self.budget.warn_at_cost_usd is not None
                and not self.warning_triggered
                and self.total_cost_usd >= self.budget.warn_at_cost_usd
            )
            if warn_now:
                self.warning_triggered = True

        logger.debug(
            f'Recorded "{name}": {input_tokens} in + {output_tokens} out = ${cost:.4f} '
            f"(total: ${self.total_cost_usd:.4f})"
        )
        if warn_now:
            limit = f"${self.budget.max_cost_usd:.2f}" if self.budget.max_cost_usd is not None else "?"
            logger.warning(f"Budget warning: ${self.total_cost_usd:.4f} spent of {limit} limit")
        return record

    def summary(self) -> dict:
        return {
            "total_input_tokens": self.total_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "total_tokens": self.total_tokens,
            "total_cost_usd": self.total_cost_usd,
            "calls": len(self.records),
            "budget_warning_triggered": self.warning_triggered,
            "budget_limit_hit": self.limit_hit,
        }

    def format_report(self) -> str:
        """Human-readable cost report."""
        lines = ["AI Cost Summary:", ""]
        if not self.records:
            lines.append("  No AI calls made.")
            return "\n".join(lines)

        for r in self.records:
            retries = f" ({r.retry_attempts} retries)" if r.retry_attempts else ""
            lines.append(f"  {r.name} ({r.model}): {r.input_tokens} in + {r.output_tokens} out = ${r.cost_usd:.4f}{retries}")

        lines.append("")
        lines.append(
            f"  Total: {self.total_input_tokens} in + {self.total_output_tokens} out = ${self.total_cost_usd:.4f}"
        )
        if self.warning_triggered:
            lines.append("  Warning: Budget warning threshold was triggered")
        if self.limit_hit:
            lines.append("  Error: Budget limit was exceeded")
        return "\n".join(lines)
