"""Wiring of the ledger, pricing, spend, demo, and upgrade components."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, settings as default_settings
from services import pricing
from services.balance import BalanceAggregator, BalanceCheckpointStore, TokenBalance
from services.demo_mode import DemoModeController, DemoSessionStore, PricingContext
from services.entitlements import Decision, EntitlementAuthorizer, UsageRequest
from services.ledger import LedgerStore
from services.spend import SpendExecutor, SpendReceipt, UserLockRegistry
from services.subscriptions import UserSubscriptionContext
from services.upgrade import UpgradeAdvisor


class EntitlementEngine:
    """Outbound surface used by feature handlers, dashboards, and credit flows."""

    def __init__(
        self,
        *,
        ledger: Optional[LedgerStore] = None,
        checkpoints: Optional[BalanceCheckpointStore] = None,
        locks: Optional[UserLockRegistry] = None,
        demo_store: Optional[DemoSessionStore] = None,
        max_attempts: int = 3,
        backoff_ms: int = 25,
        demo_duration_minutes: int = 30,
        demo_token_allowance: int = 100,
        upgrade_threshold: float = 80.0,
    ) -> None:
        self.ledger = ledger or LedgerStore()
        self.aggregator = BalanceAggregator(self.ledger, checkpoints)
        self.executor = SpendExecutor(
            self.ledger,
            self.aggregator,
            locks,
            max_attempts=max_attempts,
            backoff_ms=backoff_ms,
        )
        self.demo = DemoModeController(
            demo_store,
            default_duration_minutes=demo_duration_minutes,
            default_token_allowance=demo_token_allowance,
        )
        self.authorizer = EntitlementAuthorizer(self.aggregator, self.executor, self.demo)
        self.advisor = UpgradeAdvisor(upgrade_threshold)

    @classmethod
    def from_settings(cls, config: Settings = default_settings, **overrides: Any) -> "EntitlementEngine":
        options: Dict[str, Any] = {
            "checkpoints": BalanceCheckpointStore() if config.BALANCE_CHECKPOINTS_ENABLED else None,
            "max_attempts": config.LEDGER_APPEND_MAX_ATTEMPTS,
            "backoff_ms": config.LEDGER_RETRY_BACKOFF_MS,
            "demo_duration_minutes": config.DEMO_DEFAULT_DURATION_MINUTES,
            "demo_token_allowance": config.DEMO_DEFAULT_TOKEN_ALLOWANCE,
            "upgrade_threshold": config.UPGRADE_UTILIZATION_THRESHOLD,
        }
        options.update(overrides)
        return cls(**options)

    async def authorize(
        self,
        db: AsyncSession,
        context: UserSubscriptionContext,
        request: UsageRequest,
        pricing_context: Optional[PricingContext] = None,
    ) -> Decision:
        return await self.authorizer.authorize(db, context, request, pricing_context)

    async def balance(self, db: AsyncSession, user_id: str) -> TokenBalance:
        return await self.aggregator.balance(db, user_id)

    async def balance_by_category(self, db: AsyncSession, user_id: str) -> Dict[pricing.TokenCategory, TokenBalance]:
        return await self.aggregator.balance_by_category(db, user_id)

    async def spend(self, db: AsyncSession, user_id: str, category: Any, amount: int, description: str = "") -> TokenBalance:
        return await self.executor.spend(db, user_id, category, amount, description)

    async def credit(
        self,
        db: AsyncSession,
        user_id: str,
        kind: Any,
        amount: int,
        category: Any,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SpendReceipt:
        return await self.executor.credit(db, user_id, kind, amount, category, description, metadata)

    def suggest_upgrade(
        self,
        context: UserSubscriptionContext,
        available_plans: Optional[List[pricing.SubscriptionPlan]] = None,
    ) -> Optional[pricing.SubscriptionPlan]:
        plans = pricing.SUBSCRIPTION_PLANS if available_plans is None else available_plans
        return self.advisor.suggest(context, plans)


def get_engine(request: Request) -> EntitlementEngine:
    """FastAPI dependency returning the app-wide engine, creating it on first use."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        engine = EntitlementEngine.from_settings()
        request.app.state.engine = engine
    return engine
