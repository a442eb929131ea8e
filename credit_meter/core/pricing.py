"""
Credit cost schedule.

Fixed per-operation credit costs. The schedule is configuration and can be
replaced wholesale; there is no dynamic pricing.
"""

from dataclasses import dataclass, field
from typing import Dict

IMAGE_OPERATION = "image"
DISTILLATION_OPERATION = "distillation"

# Monthly allowance shared by every caller of the process
MONTHLY_CREDIT_LIMIT = 25000

IMAGE_SIZES = ("small", "medium", "large")
PIPELINE_COMPLEXITIES = ("simple", "standard", "complex")


def _default_prices() -> Dict[str, Dict[str, int]]:
    return {
        IMAGE_OPERATION: {"small": 5, "medium": 10, "large": 25},
        DISTILLATION_OPERATION: {"simple": 2, "standard": 4, "complex": 8},
    }


@dataclass(frozen=True)
class CreditSchedule:
    """Credit cost per operation kind and tier (size, complexity)."""
    prices: Dict[str, Dict[str, int]] = field(default_factory=_default_prices)

    def __post_init__(self):
        for operation, tiers in self.prices.items():
            for tier, cost in tiers.items():
                if not isinstance(cost, int) or isinstance(cost, bool) or cost < 0:
                    raise ValueError(
                        f"cost for {operation}.{tier} must be a non-negative integer"
                    )

    def get_cost(self, operation_kind: str, tier: str) -> int:
        """Get the credit cost of one operation.

        Raises:
            ValueError: If the operation kind or tier is not priced
        """
        tiers = self.prices.get(operation_kind)
        if tiers is None:
            raise ValueError(f"Unsupported operation: {operation_kind}")
        if tier not in tiers:
            raise ValueError(
                f"Unsupported {operation_kind} tier: {tier} "
                f"(expected one of {sorted(tiers)})"
            )
        return tiers[tier]

    def image_cost(self, size: str) -> int:
        return self.get_cost(IMAGE_OPERATION, size)

    def distillation_cost(self, complexity: str) -> int:
        return self.get_cost(DISTILLATION_OPERATION, complexity)


DEFAULT_SCHEDULE = CreditSchedule()
