"""SocialEngagement model: one rewarded social task per user."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class SocialEngagement(Base):
    """A completed (platform, action) task and the tokens it earned."""

    __tablename__ = "social_engagements"
    __table_args__ = (
        UniqueConstraint("user_id", "platform", "action", name="uq_social_engagements_user_task"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    platform = Column(String, nullable=False)
    action = Column(String, nullable=False)
    tokens_earned = Column(Integer, nullable=False)
    verification_url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="social_engagements")
