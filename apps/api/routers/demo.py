"""Demo session endpoints. One demo per user, ever."""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services import pricing
from services.demo_mode import DemoMode
from services.engine import EntitlementEngine, get_engine
from services.subscriptions import claim_demo_mode, ensure_user

router = APIRouter()
logger = logging.getLogger(__name__)


class DemoStartRequest(BaseModel):
    duration_minutes: Optional[int] = Field(default=None, ge=1, le=24 * 60)
    token_allowance: Optional[int] = Field(default=None, ge=0, le=100_000)
    eligible_categories: Optional[List[str]] = None


class DemoExtendRequest(BaseModel):
    minutes: int = Field(ge=1, le=24 * 60)


async def _owned_session(engine: EntitlementEngine, session_id: str, user_id: str) -> DemoMode:
    demo = await engine.demo.get(session_id)
    if demo is None or demo.user_id != user_id:
        raise HTTPException(status_code=404, detail="Demo session not found.")
    return demo


@router.post("/start")
async def start_demo(
    request: Optional[DemoStartRequest] = None,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    engine: EntitlementEngine = Depends(get_engine),
):
    request = request or DemoStartRequest()
    categories = (
        [pricing.validate_category(value) for value in request.eligible_categories]
        if request.eligible_categories is not None
        else None
    )
    await ensure_user(db, auth.user_id, auth.email)
    if not await claim_demo_mode(db, auth.user_id):
        raise HTTPException(status_code=409, detail="Demo mode has already been used for this account.")

    demo = await engine.demo.start(
        request.duration_minutes,
        request.token_allowance,
        categories,
        user_id=auth.user_id,
    )
    logger.info(f"Granted demo session {demo.session_id} to user {auth.user_id}")
    return demo.to_dict()


@router.get("/{session_id}")
async def get_demo(
    session_id: str,
    auth: AuthContext = Depends(get_auth_context),
    engine: EntitlementEngine = Depends(get_engine),
):
    demo = await _owned_session(engine, session_id, auth.user_id)
    return demo.to_dict()


@router.post("/{session_id}/extend")
async def extend_demo(
    session_id: str,
    request: DemoExtendRequest,
    auth: AuthContext = Depends(get_auth_context),
    engine: EntitlementEngine = Depends(get_engine),
):
    await _owned_session(engine, session_id, auth.user_id)
    demo = await engine.demo.extend_session(session_id, request.minutes)
    if demo is None:
        raise HTTPException(status_code=404, detail="Demo session not found.")
    return demo.to_dict()
