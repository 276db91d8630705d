"""Entitlement authorizer: prices a feature request and renders allow/deny."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from services import pricing
from services.balance import BalanceAggregator
from services.demo_mode import DemoModeController, PricingContext
from services.errors import InsufficientFunds, InvalidAmount
from services.spend import SpendExecutor
from services.subscriptions import UserSubscriptionContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageRequest:
    category: pricing.TokenCategory
    quantity: int = 1
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    file_size_mb: Optional[float] = None
    processing_seconds: Optional[float] = None


@dataclass(frozen=True)
class Approved:
    cost: int
    available: Optional[int]
    charged_to_ledger: int
    transaction_id: Optional[str] = None
    demo_allowance_remaining: Optional[int] = None
    approved = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approved": True,
            "cost": self.cost,
            "tokens_deducted": self.charged_to_ledger,
            "remaining_balance": max(self.available, 0) if self.available is not None else None,
            "transaction_id": self.transaction_id,
            "demo_allowance_remaining": self.demo_allowance_remaining,
        }


@dataclass(frozen=True)
class Denied:
    required: int
    available: int
    reason: str = InsufficientFunds.code
    approved = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approved": False,
            "reason": self.reason,
            "required": self.required,
            "available": max(self.available, 0),
        }


Decision = Union[Approved, Denied]


class EntitlementAuthorizer:
    def __init__(
        self,
        aggregator: BalanceAggregator,
        executor: SpendExecutor,
        demo: DemoModeController,
    ) -> None:
        self.aggregator = aggregator
        self.executor = executor
        self.demo = demo

    async def authorize(
        self,
        db: AsyncSession,
        context: UserSubscriptionContext,
        request: UsageRequest,
        pricing_context: Optional[PricingContext] = None,
    ) -> Decision:
        category = pricing.validate_category(request.category)
        quantity = request.quantity
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise InvalidAmount("quantity must be a positive integer")

        cost = pricing.cost(category, context.plan) * quantity
        pricing_context = pricing_context or PricingContext.ledger()

        if pricing_context.is_demo:
            demo = await self.demo.consume(
                pricing_context.demo_session_id,
                category,
                cost,
                file_size_mb=request.file_size_mb,
                processing_seconds=request.processing_seconds,
            )
            if demo is not None:
                logger.info(
                    f"Demo session {demo.session_id} absorbed {cost} tokens of {category.value} "
                    f"for user {context.user_id}; {demo.token_allowance} left"
                )
                return Approved(
                    cost=cost,
                    available=context.balance.available if context.balance is not None else None,
                    charged_to_ledger=0,
                    demo_allowance_remaining=demo.token_allowance,
                )

        balance = await self.aggregator.balance(db, context.user_id)
        if balance.available < cost:
            logger.warning(
                f"Denied {category.value} x{quantity} for user {context.user_id}: "
                f"required={cost} available={balance.available}"
            )
            return Denied(required=cost, available=balance.available)

        description = request.description or f"{category.value} x{quantity}"
        try:
            receipt = await self.executor.execute(
                db,
                context.user_id,
                category,
                cost,
                description,
                request.metadata or None,
            )
        except InsufficientFunds as exc:
            # Another request for this user spent the balance between our read and the debit.
            logger.warning(
                f"Denied {category.value} x{quantity} for user {context.user_id} after race: "
                f"required={exc.required} available={exc.available}"
            )
            return Denied(required=exc.required, available=exc.available)

        return Approved(
            cost=cost,
            available=receipt.balance.available,
            charged_to_ledger=cost,
            transaction_id=receipt.transaction_id,
        )
