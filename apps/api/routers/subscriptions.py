"""Subscription context and upgrade suggestion endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services import pricing
from services.engine import EntitlementEngine, get_engine
from services.subscriptions import SUBSCRIPTION_STATUSES, resolve_context, set_subscription
from services.upgrade import utilization

router = APIRouter()


class SubscriptionUpdate(BaseModel):
    plan_id: Optional[str] = None
    status: str = "active"


@router.get("/me")
async def get_my_subscription(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    engine: EntitlementEngine = Depends(get_engine),
):
    context = await resolve_context(db, auth.user_id, engine.aggregator)
    return {**context.to_dict(), "utilization": round(utilization(context), 2)}


@router.put("/me")
async def update_my_subscription(
    request: SubscriptionUpdate,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    engine: EntitlementEngine = Depends(get_engine),
):
    status = request.status.strip().lower()
    if status not in SUBSCRIPTION_STATUSES:
        raise HTTPException(
            status_code=422,
            detail=f"status must be one of: {', '.join(sorted(SUBSCRIPTION_STATUSES))}",
        )
    if request.plan_id and pricing.get_plan_by_id(request.plan_id) is None:
        raise HTTPException(status_code=404, detail=f"Plan {request.plan_id!r} not found.")

    await set_subscription(db, auth.user_id, request.plan_id, status)
    context = await resolve_context(db, auth.user_id, engine.aggregator)
    return context.to_dict()


@router.get("/upgrade-suggestion")
async def get_upgrade_suggestion(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    engine: EntitlementEngine = Depends(get_engine),
):
    context = await resolve_context(db, auth.user_id, engine.aggregator)
    suggestion = engine.suggest_upgrade(context)
    return {
        "current_plan_id": context.plan.id if context.plan else None,
        "utilization": round(utilization(context), 2),
        "suggested_plan": suggestion.to_dict() if suggestion else None,
    }
