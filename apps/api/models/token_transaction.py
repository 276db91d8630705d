"""TokenTransaction model: the append-only token ledger."""

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class TokenTransaction(Base):
    """Immutable ledger entry. Rows are only ever inserted."""

    __tablename__ = "token_transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "sequence", name="uq_token_transactions_user_sequence"),
        Index("ix_token_transactions_user_created", "user_id", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    # Per-user append position; the unique constraint turns racing appends into conflicts.
    sequence = Column(Integer, nullable=False)
    kind = Column(String, nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    category = Column(String, nullable=False, index=True)
    description = Column(String, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="token_transactions")
