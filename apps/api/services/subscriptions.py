"""Resolution of the caller's subscription context from stored records."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.subscription import Subscription
from models.user import User
from services.balance import BalanceAggregator, TokenBalance
from services.pricing import SubscriptionPlan, SubscriptionTier, get_plan_by_id

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset({"active", "trial"})
SUBSCRIPTION_STATUSES = frozenset({"active", "inactive", "cancelled", "expired", "trial"})
DEFAULT_PLAN_ID = "free-monthly"


@dataclass(frozen=True)
class UserSubscriptionContext:
    user_id: str
    plan: Optional[SubscriptionPlan] = None
    status: str = "inactive"
    demo_mode_used: bool = False
    # Read-through view; the ledger stays authoritative.
    balance: Optional[TokenBalance] = None

    @property
    def tier(self) -> SubscriptionTier:
        return self.plan.tier if self.plan is not None else SubscriptionTier.FREE

    def with_balance(self, balance: TokenBalance) -> "UserSubscriptionContext":
        return replace(self, balance=balance)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "plan": self.plan.to_dict() if self.plan is not None else None,
            "tier": self.tier.value,
            "status": self.status,
            "demo_mode_used": self.demo_mode_used,
            "token_balance": self.balance.to_dict() if self.balance is not None else None,
        }


async def ensure_user(db: AsyncSession, user_id: str, email: Optional[str] = None) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user:
        return user

    user = User(id=user_id, email=email or f"{user_id}@local.invalid", demo_mode_used=False)
    db.add(user)
    await db.commit()
    return user


async def get_subscription(db: AsyncSession, user_id: str) -> Optional[Subscription]:
    result = await db.execute(select(Subscription).where(Subscription.user_id == user_id))
    return result.scalar_one_or_none()


async def resolve_context(
    db: AsyncSession,
    user_id: str,
    aggregator: Optional[BalanceAggregator] = None,
) -> UserSubscriptionContext:
    """Build the caller's context.

    Users without a subscription record are on the free plan. A record that
    is not active or trialing resolves to no plan, so default costs apply.
    """
    user = await ensure_user(db, user_id)
    subscription = await get_subscription(db, user_id)

    if subscription is None:
        plan = get_plan_by_id(DEFAULT_PLAN_ID)
        status = "active"
    else:
        status = (subscription.status or "inactive").lower()
        plan = get_plan_by_id(subscription.plan_id) if status in ACTIVE_STATUSES else None
        if subscription.plan_id and plan is None and status in ACTIVE_STATUSES:
            logger.warning(f"Unknown plan id {subscription.plan_id!r} for user {user_id}; using default costs")

    context = UserSubscriptionContext(
        user_id=user_id,
        plan=plan,
        status=status,
        demo_mode_used=bool(user.demo_mode_used),
    )
    if aggregator is not None:
        context = context.with_balance(await aggregator.balance(db, user_id))
    return context


async def set_subscription(db: AsyncSession, user_id: str, plan_id: Optional[str], status: str) -> Subscription:
    await ensure_user(db, user_id)
    subscription = await get_subscription(db, user_id)
    if subscription is None:
        subscription = Subscription(user_id=user_id)
        db.add(subscription)
    subscription.plan_id = plan_id
    subscription.status = status
    await db.commit()
    logger.info(f"Subscription for user {user_id} set to plan={plan_id} status={status}")
    return subscription


async def claim_demo_mode(db: AsyncSession, user_id: str) -> bool:
    """Flip `demo_mode_used` from false to true. Only one caller per user ever gets True."""
    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.demo_mode_used.is_(False))
        .values(demo_mode_used=True)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1
