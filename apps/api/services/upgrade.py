"""Upgrade suggestions based on allowance utilization."""

from __future__ import annotations

from typing import Iterable, Optional

from services.pricing import TIER_ORDER, SubscriptionPlan
from services.subscriptions import UserSubscriptionContext


def utilization(context: UserSubscriptionContext) -> float:
    """Percentage of the plan's monthly allowance already used, clamped to 0-100."""
    if context.plan is None or context.plan.monthly_allowance <= 0:
        return 0.0
    used = context.balance.used if context.balance is not None else 0
    percent = used / context.plan.monthly_allowance * 100
    return min(100.0, max(0.0, percent))


class UpgradeAdvisor:
    def __init__(self, threshold: float = 80.0) -> None:
        self.threshold = float(threshold)

    def suggest(
        self,
        context: UserSubscriptionContext,
        available_plans: Iterable[SubscriptionPlan],
    ) -> Optional[SubscriptionPlan]:
        if utilization(context) < self.threshold:
            return None

        current_index = TIER_ORDER.index(context.tier)
        if current_index >= len(TIER_ORDER) - 1:
            return None
        next_tier = TIER_ORDER[current_index + 1]

        candidates = [plan for plan in available_plans if plan.tier == next_tier]
        if not candidates:
            return None
        same_cycle = [plan for plan in candidates if plan.billing_cycle == context.plan.billing_cycle]
        return (same_cycle or candidates)[0]
