"""Social engagement rewards: earned tokens for one-time social tasks.

Each (platform, action) pair pays out once per user. The claim row is
written first so a repeat submission collides on its unique constraint
before any tokens move; the `earned` credit then goes through the spend
executor like every other ledger write.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.social_engagement import SocialEngagement
from services.errors import EngagementAlreadyClaimed, EntitlementError, InvalidEngagement
from services.ledger import TransactionKind
from services.pricing import TokenCategory
from services.spend import SpendExecutor, SpendReceipt

logger = logging.getLogger(__name__)

SOCIAL_PLATFORMS = ("twitter", "facebook", "instagram", "linkedin", "tiktok", "youtube")
SOCIAL_ACTIONS = ("follow", "share", "like", "comment", "post", "subscribe")

SOCIAL_REWARDS: Dict[str, Dict[str, int]] = {
    "twitter": {"follow": 10, "share": 15, "like": 5, "comment": 8},
    "facebook": {"follow": 10, "like": 5, "share": 12, "comment": 8},
    "instagram": {"follow": 10, "like": 5, "comment": 8},
    "linkedin": {"follow": 15, "share": 20, "like": 10, "comment": 12},
    "tiktok": {"follow": 15, "like": 10, "share": 18, "comment": 10},
    "youtube": {"subscribe": 20, "like": 8, "comment": 10},
}
# Paid for valid pairs the table does not list, e.g. ("youtube", "share").
DEFAULT_SOCIAL_REWARD = 5
REWARD_CATEGORY = TokenCategory.VOICE_CLONING


@dataclass(frozen=True)
class SocialTask:
    platform: str
    action: str
    description: str
    verification_url: Optional[str] = None

    @property
    def tokens(self) -> int:
        return reward_for(self.platform, self.action)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "platform": self.platform,
            "action": self.action,
            "tokens": self.tokens,
            "description": self.description,
            "verification_url": self.verification_url,
        }


SOCIAL_TASKS: List[SocialTask] = [
    SocialTask("twitter", "follow", "Follow our Twitter account", "https://twitter.com/aiaudiostudio"),
    SocialTask("twitter", "share", "Share our product on Twitter"),
    SocialTask("facebook", "like", "Like our Facebook page", "https://facebook.com/aiaudiostudio"),
    SocialTask("instagram", "follow", "Follow our Instagram account", "https://instagram.com/aiaudiostudio"),
    SocialTask("youtube", "subscribe", "Subscribe to our YouTube channel", "https://youtube.com/@aiaudiostudio"),
]


def validate_engagement(platform: Any, action: Any) -> Tuple[str, str]:
    normalized_platform = str(platform or "").strip().lower()
    normalized_action = str(action or "").strip().lower()
    if normalized_platform not in SOCIAL_PLATFORMS:
        raise InvalidEngagement(f"Unsupported platform {platform!r}. Expected one of: {', '.join(SOCIAL_PLATFORMS)}")
    if normalized_action not in SOCIAL_ACTIONS:
        raise InvalidEngagement(f"Unsupported action {action!r}. Expected one of: {', '.join(SOCIAL_ACTIONS)}")
    return normalized_platform, normalized_action


def reward_for(platform: str, action: str) -> int:
    return SOCIAL_REWARDS.get(platform, {}).get(action, DEFAULT_SOCIAL_REWARD)


def serialize_engagement(row: SocialEngagement) -> Dict[str, Any]:
    return {
        "id": row.id,
        "platform": row.platform,
        "action": row.action,
        "tokens_earned": row.tokens_earned,
        "verification_url": row.verification_url,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


async def completed_engagements(db: AsyncSession, user_id: str) -> List[SocialEngagement]:
    result = await db.execute(
        select(SocialEngagement)
        .where(SocialEngagement.user_id == user_id)
        .order_by(SocialEngagement.created_at.desc())
    )
    return list(result.scalars().all())


async def engagement_overview(db: AsyncSession, user_id: str) -> Dict[str, Any]:
    """Tasks the user can still claim, plus the ones already rewarded."""
    completed = await completed_engagements(db, user_id)
    done = {(row.platform, row.action) for row in completed}
    return {
        "available_tasks": [task.to_dict() for task in SOCIAL_TASKS if (task.platform, task.action) not in done],
        "completed_engagements": [serialize_engagement(row) for row in completed],
    }


async def claim_engagement(
    db: AsyncSession,
    executor: SpendExecutor,
    user_id: str,
    platform: Any,
    action: Any,
    verification_url: Optional[str] = None,
) -> Tuple[Dict[str, Any], SpendReceipt]:
    """Record the task and credit its reward. Raises EngagementAlreadyClaimed on a repeat."""
    platform, action = validate_engagement(platform, action)
    tokens = reward_for(platform, action)

    existing = await db.execute(
        select(SocialEngagement.id).where(
            SocialEngagement.user_id == user_id,
            SocialEngagement.platform == platform,
            SocialEngagement.action == action,
        )
    )
    if existing.scalar_one_or_none() is not None:
        raise EngagementAlreadyClaimed(f"Task {platform}/{action} already completed.")

    engagement = SocialEngagement(
        user_id=user_id,
        platform=platform,
        action=action,
        tokens_earned=tokens,
        verification_url=verification_url,
        created_at=datetime.now(timezone.utc),
    )
    db.add(engagement)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise EngagementAlreadyClaimed(f"Task {platform}/{action} already completed.") from exc
    # A retried credit rolls the session back and expires `engagement`.
    record = serialize_engagement(engagement)
    engagement_id = record["id"]

    try:
        receipt = await executor.credit(
            db,
            user_id,
            TransactionKind.EARNED,
            tokens,
            REWARD_CATEGORY,
            f"Social media engagement: {platform} {action}",
            {"engagement_id": engagement_id, "platform": platform, "action": action},
        )
    except EntitlementError:
        # Release the claim so the user can resubmit once the ledger recovers.
        try:
            await db.execute(delete(SocialEngagement).where(SocialEngagement.id == engagement_id))
            await db.commit()
        except SQLAlchemyError as cleanup_exc:
            logger.error(f"Could not release engagement {engagement_id} for user {user_id}: {cleanup_exc}")
        raise

    logger.info(f"Social reward: user={user_id} task={platform}/{action} tokens={tokens}")
    return record, receipt
