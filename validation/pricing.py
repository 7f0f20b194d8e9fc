"""
AI Pricing - Model pricing table and cost accounting for the validation agents.

Prices are USD per 1M tokens.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelPricing:
    input_per_1m: float
    output_per_1m: float
    label: str


MODEL_PRICING: Dict[str, ModelPricing] = {
    "gpt-4o-mini": ModelPricing(input_per_1m=0.15, output_per_1m=0.60, label="GPT-4o mini"),
    "gpt-4o": ModelPricing(input_per_1m=2.50, output_per_1m=10.00, label="GPT-4o"),
    "gpt-4.1-mini": ModelPricing(input_per_1m=0.40, output_per_1m=1.60, label="GPT-4.1 mini"),
    "gpt-4.1": ModelPricing(input_per_1m=2.00, output_per_1m=8.00, label="GPT-4.1"),
}


@dataclass
class TokenUsage:
    model: str
    input_tokens: int = 0
    output_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            model=self.model,
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


@dataclass
class AgentCost:
    model: str
    model_label: str
    input_tokens: int
    output_tokens: int
    input_cost: float
    output_cost: float

    @property
    def total_cost(self) -> float:
        return self.input_cost + self.output_cost

    def to_dict(self) -> Dict:
        return {
            "model": self.model,
            "model_label": self.model_label,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "input_cost": self.input_cost,
            "output_cost": self.output_cost,
            "total_cost": self.total_cost,
        }


@dataclass
class CostReport:
    curator: AgentCost
    judge: AgentCost
    durations_ms: Dict[str, int] = field(default_factory=dict)

    @property
    def total_input_tokens(self) -> int:
        return self.curator.input_tokens + self.judge.input_tokens

    @property
    def total_output_tokens(self) -> int:
        return self.curator.output_tokens + self.judge.output_tokens

    @property
    def total_cost(self) -> float:
        return self.curator.total_cost + self.judge.total_cost

    def to_dict(self) -> Dict:
        return {
            "curator": self.curator.to_dict(),
            "judge": self.judge.to_dict(),
            "total_input_tokens": self.total_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "total_cost": self.total_cost,
            "durations_ms": dict(self.durations_ms),
        }


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> AgentCost:
    """
    Cost of one agent's token usage.

    Raises:
        ValueError: the model has no pricing entry
    """
    pricing = MODEL_PRICING.get(model)
    if pricing is None:
        raise ValueError(f"Unknown model: {model}. Available: {', '.join(MODEL_PRICING)}")
    return AgentCost(
        model=model,
        model_label=pricing.label,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        input_cost=input_tokens / 1_000_000 * pricing.input_per_1m,
        output_cost=output_tokens / 1_000_000 * pricing.output_per_1m,
    )


def build_cost_report(curator: TokenUsage, judge: TokenUsage, durations_ms: Dict[str, int]) -> CostReport:
    return CostReport(
        curator=calculate_cost(curator.model, curator.input_tokens, curator.output_tokens),
        judge=calculate_cost(judge.model, judge.input_tokens, judge.output_tokens),
        durations_ms=dict(durations_ms),
    )


def log_cost_report(report: CostReport):
    def _seconds(name: str) -> str:
        return f"{report.durations_ms.get(name, 0) / 1000:.1f}s"

    for role, cost in (("Curator", report.curator), ("Judge", report.judge)):
        log.info(
            f"{role} ({cost.model_label}): {cost.input_tokens:,} in / {cost.output_tokens:,} out, "
            f"${cost.total_cost:.6f} (input ${cost.input_cost:.6f}, output ${cost.output_cost:.6f})"
        )
    log.info(
        f"AI validation total: {report.total_input_tokens:,} in / {report.total_output_tokens:,} out, "
        f"${report.total_cost:.6f} in {_seconds('total')} "
        f"(fetch {_seconds('fetch')}, curator {_seconds('curator')}, judge {_seconds('judge')})"
    )
