"""Pricing table, subscription plan catalog, and token packs."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from services.errors import InvalidCategory


class TokenCategory(str, Enum):
    VOICE_CLONING = "voice_cloning"
    STEM_SEPARATION = "stem_separation"
    VOICE_CLEANING = "voice_cleaning"
    VOICE_CHANGING = "voice_changing"
    VIDEO_GENERATION = "video_generation"


class SubscriptionTier(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    BIYEARLY = "biyearly"
    YEARLY = "yearly"


TIER_ORDER: List[SubscriptionTier] = [SubscriptionTier.FREE, SubscriptionTier.BASIC, SubscriptionTier.PREMIUM]

_CYCLE_MONTHS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.BIYEARLY: 6,
    BillingCycle.YEARLY: 12,
}

# Used when the caller has no plan or the plan omits a category.
DEFAULT_TOKEN_COSTS: Dict[TokenCategory, int] = {
    TokenCategory.VOICE_CLONING: 10,
    TokenCategory.STEM_SEPARATION: 5,
    TokenCategory.VOICE_CLEANING: 3,
    TokenCategory.VOICE_CHANGING: 2,
    TokenCategory.VIDEO_GENERATION: 25,
}


@dataclass(frozen=True)
class SubscriptionPlan:
    id: str
    name: str
    tier: SubscriptionTier
    billing_cycle: BillingCycle
    price: float
    tokens: int
    token_costs: Mapping[TokenCategory, int]
    currency: str = "USD"
    max_file_size_mb: int = 10
    max_concurrent_jobs: int = 1
    watermark: bool = False
    features: tuple = field(default_factory=tuple)

    @property
    def monthly_allowance(self) -> int:
        return self.tokens // _CYCLE_MONTHS[self.billing_cycle]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "tier": self.tier.value,
            "billing_cycle": self.billing_cycle.value,
            "price": self.price,
            "currency": self.currency,
            "tokens": self.tokens,
            "monthly_allowance": self.monthly_allowance,
            "token_costs": {category.value: cost for category, cost in self.token_costs.items()},
            "max_file_size_mb": self.max_file_size_mb,
            "max_concurrent_jobs": self.max_concurrent_jobs,
            "watermark": self.watermark,
            "features": list(self.features),
        }


@dataclass(frozen=True)
class TokenPack:
    id: str
    name: str
    tokens: int
    price: float
    description: str
    bonus_tokens: int = 0
    currency: str = "USD"
    popular: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "tokens": self.tokens,
            "bonus_tokens": self.bonus_tokens,
            "price": self.price,
            "currency": self.currency,
            "description": self.description,
            "popular": self.popular,
        }


_FREE_COSTS = {
    TokenCategory.VOICE_CLONING: 15,
    TokenCategory.STEM_SEPARATION: 8,
    TokenCategory.VOICE_CLEANING: 5,
    TokenCategory.VOICE_CHANGING: 3,
    TokenCategory.VIDEO_GENERATION: 30,
}
_BASIC_COSTS = {
    TokenCategory.VOICE_CLONING: 10,
    TokenCategory.STEM_SEPARATION: 5,
    TokenCategory.VOICE_CLEANING: 3,
    TokenCategory.VOICE_CHANGING: 2,
    TokenCategory.VIDEO_GENERATION: 25,
}
_PREMIUM_COSTS = {
    TokenCategory.VOICE_CLONING: 7,
    TokenCategory.STEM_SEPARATION: 3,
    TokenCategory.VOICE_CLEANING: 2,
    TokenCategory.VOICE_CHANGING: 1,
    TokenCategory.VIDEO_GENERATION: 20,
}


def _premium(plan_id: str, cycle: BillingCycle, price: float) -> SubscriptionPlan:
    return SubscriptionPlan(
        id=plan_id,
        name="Premium",
        tier=SubscriptionTier.PREMIUM,
        billing_cycle=cycle,
        price=price,
        tokens=2000 * _CYCLE_MONTHS[cycle],
        token_costs=_PREMIUM_COSTS,
        max_file_size_mb=200,
        max_concurrent_jobs=10,
        features=("Studio-quality stem separation", "4K video generation", "API access", "Priority support"),
    )


SUBSCRIPTION_PLANS: List[SubscriptionPlan] = [
    SubscriptionPlan(
        id="free-monthly",
        name="Free",
        tier=SubscriptionTier.FREE,
        billing_cycle=BillingCycle.MONTHLY,
        price=0.0,
        tokens=50,
        token_costs=_FREE_COSTS,
        max_file_size_mb=10,
        max_concurrent_jobs=1,
        watermark=True,
        features=("Basic voice cloning", "720p video generation", "Watermarked outputs"),
    ),
    SubscriptionPlan(
        id="basic-monthly",
        name="Basic",
        tier=SubscriptionTier.BASIC,
        billing_cycle=BillingCycle.MONTHLY,
        price=19.99,
        tokens=500,
        token_costs=_BASIC_COSTS,
        max_file_size_mb=50,
        max_concurrent_jobs=3,
        features=("Advanced voice cloning", "1080p video generation", "No watermarks"),
    ),
    SubscriptionPlan(
        id="basic-quarterly",
        name="Basic",
        tier=SubscriptionTier.BASIC,
        billing_cycle=BillingCycle.QUARTERLY,
        price=47.97,
        tokens=1500,
        token_costs=_BASIC_COSTS,
        max_file_size_mb=50,
        max_concurrent_jobs=3,
        features=("Advanced voice cloning", "1080p video generation", "No watermarks"),
    ),
    _premium("premium-monthly", BillingCycle.MONTHLY, 49.99),
    _premium("premium-quarterly", BillingCycle.QUARTERLY, 112.47),
    _premium("premium-biyearly", BillingCycle.BIYEARLY, 209.95),
    _premium("premium-yearly", BillingCycle.YEARLY, 359.95),
]

TOKEN_PACKS: List[TokenPack] = [
    TokenPack(id="starter-pack", name="Starter Pack", tokens=100, price=4.99,
              description="Perfect for trying out our features"),
    TokenPack(id="standard-pack", name="Standard Pack", tokens=250, bonus_tokens=25, price=9.99,
              description="Great for regular users", popular=True),
    TokenPack(id="pro-pack", name="Pro Pack", tokens=500, bonus_tokens=75, price=17.99,
              description="Best value for power users"),
    TokenPack(id="business-pack", name="Business Pack", tokens=1000, bonus_tokens=200, price=29.99,
              description="Ideal for professionals and teams"),
    TokenPack(id="enterprise-pack", name="Enterprise Pack", tokens=2500, bonus_tokens=500, price=59.99,
              description="Maximum value for heavy users"),
]


def validate_category(value: Any) -> TokenCategory:
    """Coerce an external value to a TokenCategory or raise InvalidCategory."""
    if isinstance(value, TokenCategory):
        return value
    try:
        return TokenCategory(str(value or "").strip().lower().replace("-", "_"))
    except ValueError as exc:
        raise InvalidCategory(f"Unknown feature category: {value!r}") from exc


def cost(category: TokenCategory, plan: Optional[SubscriptionPlan]) -> int:
    """Token cost of one invocation of `category` under `plan`."""
    if plan is not None:
        tier_cost = plan.token_costs.get(category)
        if tier_cost is not None:
            return int(tier_cost)
    return DEFAULT_TOKEN_COSTS[category]


def cost_table(plan: Optional[SubscriptionPlan]) -> Dict[str, int]:
    return {category.value: cost(category, plan) for category in TokenCategory}


def get_plan_by_id(plan_id: Optional[str]) -> Optional[SubscriptionPlan]:
    if not plan_id:
        return None
    return next((plan for plan in SUBSCRIPTION_PLANS if plan.id == plan_id), None)


def plans_by_tier(tier: SubscriptionTier) -> List[SubscriptionPlan]:
    return [plan for plan in SUBSCRIPTION_PLANS if plan.tier == tier]


def plans_by_billing_cycle(cycle: BillingCycle) -> List[SubscriptionPlan]:
    return [plan for plan in SUBSCRIPTION_PLANS if plan.billing_cycle == cycle]


def get_token_pack(pack_id: str) -> Optional[TokenPack]:
    return next((pack for pack in TOKEN_PACKS if pack.id == pack_id), None)


def free_plan() -> SubscriptionPlan:
    return plans_by_tier(SubscriptionTier.FREE)[0]
