"""Billing router: plan and pack catalogs, credits, and pack purchase completion."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services import pricing
from services.engine import EntitlementEngine, get_engine
from services.errors import InvalidTransactionKind
from services.ledger import TransactionKind
from services.subscriptions import ensure_user

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditRequest(BaseModel):
    kind: TransactionKind
    amount: int = Field(ge=1, le=1_000_000)
    category: str
    description: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PackCompletionRequest(BaseModel):
    category: str = pricing.TokenCategory.VOICE_CLONING.value
    billing_reference: Optional[str] = None


@router.get("/plans")
async def list_plans(
    tier: Optional[pricing.SubscriptionTier] = Query(default=None),
    billing_cycle: Optional[pricing.BillingCycle] = Query(default=None),
):
    plans = pricing.SUBSCRIPTION_PLANS
    if tier is not None:
        plans = [plan for plan in plans if plan.tier == tier]
    if billing_cycle is not None:
        plans = [plan for plan in plans if plan.billing_cycle == billing_cycle]
    return {"plans": [plan.to_dict() for plan in plans]}


@router.get("/packs")
async def list_packs():
    return {"packs": [pack.to_dict() for pack in pricing.TOKEN_PACKS]}


@router.post("/credit")
async def credit_tokens(
    request: CreditRequest,
    _rate_limit: None = Depends(rate_limit("billing_credit", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    engine: EntitlementEngine = Depends(get_engine),
):
    if not settings.MANUAL_CREDITS_ENABLED:
        raise HTTPException(
            status_code=503,
            detail="Manual credits are disabled. Enable MANUAL_CREDITS_ENABLED to use /billing/credit.",
        )
    if request.kind == TransactionKind.PURCHASED:
        raise InvalidTransactionKind("Purchased tokens are only granted by completing a token pack purchase.")

    await ensure_user(db, auth.user_id, auth.email)
    receipt = await engine.credit(
        db,
        auth.user_id,
        request.kind,
        request.amount,
        request.category,
        request.description or f"{request.kind.value} credit",
        request.metadata or None,
    )
    return {
        "ok": True,
        "transaction_id": receipt.transaction_id,
        "kind": request.kind.value,
        "amount": receipt.amount,
        "balance": receipt.balance.to_dict(),
    }


@router.post("/packs/{pack_id}/complete")
async def complete_pack_purchase(
    pack_id: str,
    request: Optional[PackCompletionRequest] = None,
    _rate_limit: None = Depends(rate_limit("billing_pack", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    engine: EntitlementEngine = Depends(get_engine),
):
    pack = pricing.get_token_pack(pack_id)
    if pack is None:
        raise HTTPException(status_code=404, detail=f"Token pack {pack_id!r} not found.")

    request = request or PackCompletionRequest()
    billing_reference = request.billing_reference or f"pack:{pack.id}"
    metadata = {"pack_id": pack.id, "billing_reference": billing_reference, "price": pack.price}

    await ensure_user(db, auth.user_id, auth.email)
    purchased = await engine.credit(
        db,
        auth.user_id,
        TransactionKind.PURCHASED,
        pack.tokens,
        request.category,
        f"Purchased {pack.name}",
        metadata,
    )
    transaction_ids = [purchased.transaction_id]
    balance = purchased.balance
    if pack.bonus_tokens > 0:
        bonus = await engine.credit(
            db,
            auth.user_id,
            TransactionKind.BONUS,
            pack.bonus_tokens,
            request.category,
            f"Bonus tokens for {pack.name}",
            metadata,
        )
        transaction_ids.append(bonus.transaction_id)
        balance = bonus.balance

    logger.info(f"Pack {pack.id} completed for user {auth.user_id} ({billing_reference})")
    return {
        "ok": True,
        "pack": pack.to_dict(),
        "tokens_added": pack.tokens + pack.bonus_tokens,
        "transaction_ids": transaction_ids,
        "balance": balance.to_dict(),
    }
