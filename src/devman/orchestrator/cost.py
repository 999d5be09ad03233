"""Token and cost accounting."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field

from devman.core.types import Usage

# USD per million tokens (input, output).
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "haiku": (0.25, 1.25),
    "opus": (15.0, 75.0),
}
DEFAULT_PRICING = (3.0, 15.0)
CACHE_READ_FACTOR = 0.1
CACHE_WRITE_FACTOR = 1.25


def pricing_for(model: str) -> tuple[float, float]:
    lowered = model.lower()
    for family, prices in MODEL_PRICING.items():
        if family in lowered:
            return prices
    return DEFAULT_PRICING


def estimate_cost(model: str, usage: Usage) -> float:
    input_price, output_price = pricing_for(model)
    return (
        usage.input_tokens * input_price
        + usage.output_tokens * output_price
        + usage.cache_read_tokens * input_price * CACHE_READ_FACTOR
        + usage.cache_creation_tokens * input_price * CACHE_WRITE_FACTOR
    ) / 1_000_000


@dataclass
class CostTotals:
    usage: Usage = field(default_factory=Usage)
    cost_usd: float = 0.0
    requests: int = 0


class CostTracker:
    def __init__(self) -> None:
        self._by_model: dict[str, CostTotals] = defaultdict(CostTotals)
        self._by_task: dict[str, CostTotals] = defaultdict(CostTotals)

    def record(self, model: str, task: str, usage: Usage) -> float:
        cost = estimate_cost(model, usage)
        for totals in (self._by_model[model], self._by_task[task]):
            totals.usage = totals.usage + usage
            totals.cost_usd += cost
            totals.requests += 1
        return cost

    @property
    def total_cost(self) -> float:
        return sum(totals.cost_usd for totals in self._by_model.values())

    def summary(self) -> dict[str, object]:
        return {
            "total_cost_usd": round(self.total_cost, 6),
            "by_model": {
                model: {**totals.usage.to_dict(), "cost_usd": round(totals.cost_usd, 6), "requests": totals.requests}
                for model, totals in sorted(self._by_model.items())
            },
            "by_task": {
                task: {**totals.usage.to_dict(), "cost_usd": round(totals.cost_usd, 6), "requests": totals.requests}
                for task, totals in sorted(self._by_task.items())
            },
        }
