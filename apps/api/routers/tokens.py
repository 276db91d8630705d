"""Token balance, cost, usage, and authorization endpoints."""

from __future__ import annotations

import logging
from math import ceil
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services import pricing, rewards
from services.demo_mode import PricingContext
from services.engine import EntitlementEngine, get_engine
from services.entitlements import Denied, UsageRequest
from services.ledger import TransactionKind, serialize_transaction
from services.subscriptions import ensure_user, resolve_context
from services.usage import USAGE_PERIODS, period_start, usage_metrics

router = APIRouter()
logger = logging.getLogger(__name__)


class AuthorizeRequest(BaseModel):
    category: str
    quantity: int = Field(default=1, ge=1, le=1000)
    description: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    demo_session_id: Optional[str] = None
    file_size_mb: Optional[float] = Field(default=None, ge=0)
    processing_seconds: Optional[float] = Field(default=None, ge=0)


class SocialEngagementRequest(BaseModel):
    platform: str
    action: str
    verification_url: Optional[str] = Field(default=None, max_length=2048)


@router.get("/balance")
async def get_balance(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    engine: EntitlementEngine = Depends(get_engine),
):
    balance = await engine.balance(db, auth.user_id)
    return balance.to_dict()


@router.get("/balance/by-category")
async def get_balance_by_category(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    engine: EntitlementEngine = Depends(get_engine),
):
    balances = await engine.balance_by_category(db, auth.user_id)
    return {category.value: balance.to_dict() for category, balance in balances.items()}


@router.get("/transactions")
async def list_transactions(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    kind: Optional[TransactionKind] = Query(default=None),
    category: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    engine: EntitlementEngine = Depends(get_engine),
):
    token_category = pricing.validate_category(category) if category else None
    rows, total = await engine.ledger.list_transactions(
        db,
        auth.user_id,
        kind=kind,
        category=token_category,
        page=page,
        limit=limit,
    )
    return {
        "transactions": [serialize_transaction(row) for row in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": ceil(total / limit) if total else 0,
        },
    }


@router.get("/costs")
async def get_costs(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    context = await resolve_context(db, auth.user_id)
    return {
        "plan_id": context.plan.id if context.plan else None,
        "tier": context.tier.value,
        "costs": pricing.cost_table(context.plan),
    }


@router.get("/usage")
async def get_usage(
    period: str = Query(default="30d"),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    engine: EntitlementEngine = Depends(get_engine),
):
    if period not in USAGE_PERIODS:
        raise HTTPException(
            status_code=422,
            detail=f"period must be one of: {', '.join(USAGE_PERIODS)}",
        )
    context = await resolve_context(db, auth.user_id, engine.aggregator)
    transactions = await engine.ledger.replay(db, auth.user_id, since=period_start(period))
    return {"period": period, **usage_metrics(transactions, context)}


@router.post("/authorize")
async def authorize_usage(
    request: AuthorizeRequest,
    _rate_limit: None = Depends(
        rate_limit("tokens_authorize", limit=settings.AUTHORIZE_RATE_LIMIT_PER_MINUTE, window_seconds=60)
    ),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    engine: EntitlementEngine = Depends(get_engine),
):
    category = pricing.validate_category(request.category)
    context = await resolve_context(db, auth.user_id)

    pricing_context = PricingContext.ledger()
    if request.demo_session_id:
        demo = await engine.demo.get(request.demo_session_id)
        if demo is None or demo.user_id != auth.user_id:
            raise HTTPException(status_code=404, detail="Demo session not found.")
        pricing_context = engine.demo.pricing_context(demo)

    decision = await engine.authorize(
        db,
        context,
        UsageRequest(
            category=category,
            quantity=request.quantity,
            description=request.description,
            metadata=request.metadata,
            file_size_mb=request.file_size_mb,
            processing_seconds=request.processing_seconds,
        ),
        pricing_context,
    )

    if isinstance(decision, Denied):
        denied_context = context.with_balance(await engine.balance(db, auth.user_id))
        suggestion = engine.suggest_upgrade(denied_context)
        detail = {
            "error_code": decision.reason,
            "message": (
                f"Insufficient tokens. Required: {decision.required}, "
                f"available: {max(decision.available, 0)}."
            ),
            **decision.to_dict(),
            "suggested_upgrade": suggestion.to_dict() if suggestion else None,
        }
        raise HTTPException(status_code=402, detail=detail)

    return decision.to_dict()


@router.get("/social-engagements")
async def list_social_engagements(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await rewards.engagement_overview(db, auth.user_id)


@router.post("/social-engagement")
async def submit_social_engagement(
    request: SocialEngagementRequest,
    _rate_limit: None = Depends(rate_limit("tokens_social", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    engine: EntitlementEngine = Depends(get_engine),
):
    await ensure_user(db, auth.user_id, auth.email)
    engagement, receipt = await rewards.claim_engagement(
        db,
        engine.executor,
        auth.user_id,
        request.platform,
        request.action,
        request.verification_url,
    )
    return {
        "ok": True,
        "engagement": engagement,
        "tokens_earned": receipt.amount,
        "transaction_id": receipt.transaction_id,
        "balance": receipt.balance.to_dict(),
    }
