"""Append-only token ledger store.

Every balance in the system is derived from the rows this module writes.
Rows are inserted with a per-user `sequence`; the unique (user_id, sequence)
constraint makes two writers that read the same ledger position collide
instead of both succeeding. Nothing here issues UPDATE or DELETE against
`token_transactions`.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
import uuid

from sqlalchemy import case, func
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.token_transaction import TokenTransaction
from services.errors import LedgerConflict, LedgerUnavailable, LedgerWriteRejected
from services.pricing import TokenCategory

logger = logging.getLogger(__name__)


class TransactionKind(str, Enum):
    EARNED = "earned"
    SPENT = "spent"
    PURCHASED = "purchased"
    BONUS = "bonus"
    REFUND = "refund"


CREDIT_KINDS = frozenset({TransactionKind.EARNED, TransactionKind.PURCHASED, TransactionKind.BONUS})
# Refund is summed into `used`, matching how balances have always been reported.
DEBIT_KINDS = frozenset({TransactionKind.SPENT, TransactionKind.REFUND})
EXTERNAL_KINDS = frozenset(
    {TransactionKind.EARNED, TransactionKind.PURCHASED, TransactionKind.BONUS, TransactionKind.REFUND}
)

_CREDIT_VALUES = sorted(kind.value for kind in CREDIT_KINDS)
_DEBIT_VALUES = sorted(kind.value for kind in DEBIT_KINDS)


SEQUENCE_CONSTRAINT = "uq_token_transactions_user_sequence"


def is_sequence_collision(exc: IntegrityError) -> bool:
    """True when the violated constraint is the per-user sequence slot."""
    message = str(exc.orig)
    # PostgreSQL names the constraint; SQLite lists its columns instead.
    return SEQUENCE_CONSTRAINT in message or (
        "token_transactions.user_id" in message and "token_transactions.sequence" in message
    )


async def _rollback_quietly(db: AsyncSession) -> None:
    try:
        await db.rollback()
    except (SQLAlchemyError, OSError) as exc:
        logger.warning(f"Ledger session rollback failed: {exc}")


@asynccontextmanager
async def ledger_errors(db: AsyncSession, operation: str) -> AsyncIterator[None]:
    """Translate driver failures into ledger errors and leave the session usable."""
    try:
        yield
    except IntegrityError as exc:
        await _rollback_quietly(db)
        if is_sequence_collision(exc):
            raise LedgerConflict(f"Concurrent ledger write detected during {operation}.") from exc
        logger.error(f"Ledger rejected row during {operation}: {exc.orig}")
        raise LedgerWriteRejected(f"Token ledger rejected the entry during {operation}.") from exc
    except (DBAPIError, OSError) as exc:
        await _rollback_quietly(db)
        logger.error(f"Ledger unavailable during {operation}: {exc}")
        raise LedgerUnavailable(f"Token ledger unavailable during {operation}.") from exc


def _sums():
    total = func.coalesce(
        func.sum(case((TokenTransaction.kind.in_(_CREDIT_VALUES), TokenTransaction.amount), else_=0)),
        0,
    )
    used = func.coalesce(
        func.sum(case((TokenTransaction.kind.in_(_DEBIT_VALUES), TokenTransaction.amount), else_=0)),
        0,
    )
    return total, used


class LedgerStore:
    """SQL-backed append-only store for `TokenTransaction` rows."""

    async def append(
        self,
        db: AsyncSession,
        *,
        user_id: str,
        sequence: int,
        kind: TransactionKind,
        amount: int,
        category: TokenCategory,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TokenTransaction:
        """Insert one row at `sequence` and commit. Raises LedgerConflict if the slot is taken."""
        row = TokenTransaction(
            id=str(uuid.uuid4()),
            user_id=user_id,
            sequence=int(sequence),
            kind=TransactionKind(kind).value,
            amount=int(amount),
            category=TokenCategory(category).value,
            description=description,
            metadata_json=dict(metadata) if metadata else None,
            created_at=datetime.now(timezone.utc),
        )
        async with ledger_errors(db, "append"):
            db.add(row)
            await db.commit()
        return row

    async def aggregate(self, db: AsyncSession, user_id: str, *, after_sequence: int = 0) -> Tuple[int, int, int]:
        """Return (total, used, highest sequence) over rows after `after_sequence` in one statement."""
        total, used = _sums()
        stmt = select(
            total,
            used,
            func.coalesce(func.max(TokenTransaction.sequence), 0),
        ).where(
            TokenTransaction.user_id == user_id,
            TokenTransaction.sequence > int(after_sequence),
        )
        async with ledger_errors(db, "balance read"):
            result = await db.execute(stmt)
            row = result.one()
        return int(row[0] or 0), int(row[1] or 0), int(row[2] or 0)

    async def aggregate_by_category(self, db: AsyncSession, user_id: str) -> List[Tuple[str, int, int, int]]:
        """Return (category, total, used, highest sequence) rows for the user."""
        total, used = _sums()
        stmt = (
            select(
                TokenTransaction.category,
                total,
                used,
                func.coalesce(func.max(TokenTransaction.sequence), 0),
            )
            .where(TokenTransaction.user_id == user_id)
            .group_by(TokenTransaction.category)
        )
        async with ledger_errors(db, "category balance read"):
            result = await db.execute(stmt)
            rows = result.all()
        return [(str(row[0]), int(row[1] or 0), int(row[2] or 0), int(row[3] or 0)) for row in rows]

    async def list_transactions(
        self,
        db: AsyncSession,
        user_id: str,
        *,
        kind: Optional[TransactionKind] = None,
        category: Optional[TokenCategory] = None,
        since: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[TokenTransaction], int]:
        """Newest-first page of a user's ledger plus the total matching count."""
        filters = [TokenTransaction.user_id == user_id]
        if kind is not None:
            filters.append(TokenTransaction.kind == TransactionKind(kind).value)
        if category is not None:
            filters.append(TokenTransaction.category == TokenCategory(category).value)
        if since is not None:
            filters.append(TokenTransaction.created_at >= since)

        page = max(int(page), 1)
        limit = max(min(int(limit), 100), 1)
        async with ledger_errors(db, "transaction listing"):
            count_result = await db.execute(select(func.count(TokenTransaction.id)).where(*filters))
            total_count = int(count_result.scalar() or 0)
            result = await db.execute(
                select(TokenTransaction)
                .where(*filters)
                .order_by(TokenTransaction.sequence.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            rows = list(result.scalars().all())
        return rows, total_count

    async def replay(
        self, db: AsyncSession, user_id: str, *, since: Optional[datetime] = None
    ) -> List[TokenTransaction]:
        """Full ledger for a user in append order, optionally from `since` onward."""
        stmt = select(TokenTransaction).where(TokenTransaction.user_id == user_id)
        if since is not None:
            stmt = stmt.where(TokenTransaction.created_at >= since)
        async with ledger_errors(db, "ledger replay"):
            result = await db.execute(stmt.order_by(TokenTransaction.sequence.asc()))
            return list(result.scalars().all())


def serialize_transaction(row: TokenTransaction) -> Dict[str, Any]:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "sequence": row.sequence,
        "kind": row.kind,
        "amount": row.amount,
        "category": row.category,
        "description": row.description,
        "metadata": row.metadata_json or {},
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }
