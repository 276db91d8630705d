"""Balance aggregation over the token ledger."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from services.ledger import CREDIT_KINDS, DEBIT_KINDS, LedgerStore, TransactionKind
from services.pricing import TokenCategory


@dataclass(frozen=True)
class TokenBalance:
    total: int = 0
    used: int = 0
    # Highest ledger sequence folded into this balance.
    watermark: int = 0

    @property
    def available(self) -> int:
        return self.total - self.used

    @property
    def display_available(self) -> int:
        return max(self.available, 0)

    def merge(self, other: "TokenBalance") -> "TokenBalance":
        return TokenBalance(
            total=self.total + other.total,
            used=self.used + other.used,
            watermark=max(self.watermark, other.watermark),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "used": self.used,
            "available": self.display_available,
        }


def fold_transactions(transactions: Iterable[Any]) -> TokenBalance:
    """Fold ledger records (anything with kind/amount/sequence) into a balance."""
    total = 0
    used = 0
    watermark = 0
    for transaction in transactions:
        kind = TransactionKind(transaction.kind)
        amount = int(transaction.amount)
        if kind in CREDIT_KINDS:
            total += amount
        elif kind in DEBIT_KINDS:
            used += amount
        watermark = max(watermark, int(getattr(transaction, "sequence", 0) or 0))
    return TokenBalance(total=total, used=used, watermark=watermark)


def fold_by_category(transactions: Iterable[Any]) -> Dict[TokenCategory, TokenBalance]:
    grouped: Dict[TokenCategory, list] = {}
    for transaction in transactions:
        grouped.setdefault(TokenCategory(transaction.category), []).append(transaction)
    return {category: fold_transactions(rows) for category, rows in grouped.items()}


class BalanceCheckpointStore:
    """Per-user folded balances, keyed by user id.

    A checkpoint only ever moves forward: ledger rows are immutable and
    sequences are unique per user, so folding the rows past a checkpoint's
    watermark reproduces a full recomputation exactly.
    """

    def __init__(self) -> None:
        self._checkpoints: Dict[str, TokenBalance] = {}

    def get(self, user_id: str) -> Optional[TokenBalance]:
        return self._checkpoints.get(user_id)

    def advance(self, user_id: str, balance: TokenBalance) -> None:
        current = self._checkpoints.get(user_id)
        if current is None or balance.watermark >= current.watermark:
            self._checkpoints[user_id] = balance

    def replace(self, user_id: str, balance: TokenBalance) -> None:
        self._checkpoints[user_id] = balance

    def discard(self, user_id: str) -> None:
        self._checkpoints.pop(user_id, None)

    def clear(self) -> None:
        self._checkpoints.clear()


class BalanceAggregator:
    """Derives balances from the ledger. Read-only."""

    def __init__(self, ledger: LedgerStore, checkpoints: Optional[BalanceCheckpointStore] = None) -> None:
        self.ledger = ledger
        self.checkpoints = checkpoints

    async def balance(self, db: AsyncSession, user_id: str) -> TokenBalance:
        base = self.checkpoints.get(user_id) if self.checkpoints is not None else None
        after = base.watermark if base is not None else 0

        total, used, watermark = await self.ledger.aggregate(db, user_id, after_sequence=after)
        delta = TokenBalance(total=total, used=used, watermark=watermark)
        result = base.merge(delta) if base is not None else delta

        if self.checkpoints is not None:
            self.checkpoints.advance(user_id, result)
        return result

    async def balance_by_category(self, db: AsyncSession, user_id: str) -> Dict[TokenCategory, TokenBalance]:
        rows = await self.ledger.aggregate_by_category(db, user_id)
        breakdown: Dict[TokenCategory, TokenBalance] = {}
        for category, total, used, watermark in rows:
            breakdown[TokenCategory(category)] = TokenBalance(total=total, used=used, watermark=watermark)
        return breakdown

    async def reconcile(self, db: AsyncSession, user_id: str) -> TokenBalance:
        """Recompute from the full ledger and reset the user's checkpoint."""
        total, used, watermark = await self.ledger.aggregate(db, user_id)
        result = TokenBalance(total=total, used=used, watermark=watermark)
        if self.checkpoints is not None:
            self.checkpoints.replace(user_id, result)
        return result
