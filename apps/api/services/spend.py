"""Spend executor: serialized check-then-append against the token ledger.

Within a process, every write for a user runs under that user's
`asyncio.Lock`. Across processes, each append claims the ledger position
right after the balance it was checked against; a writer that lost the
position gets `LedgerConflict`, re-reads the balance, and re-checks funds.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from services.balance import BalanceAggregator, TokenBalance
from services.errors import (
    InsufficientFunds,
    InvalidAmount,
    InvalidTransactionKind,
    LedgerConflict,
    LedgerUnavailable,
)
from services.ledger import EXTERNAL_KINDS, LedgerStore, TransactionKind
from services.pricing import TokenCategory, validate_category

logger = logging.getLogger(__name__)


class UserLockRegistry:
    """One asyncio.Lock per user id; locks disappear once nobody holds or awaits them."""

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock


@dataclass(frozen=True)
class SpendReceipt:
    transaction_id: str
    amount: int
    balance: TokenBalance


def _positive_amount(amount: Any) -> int:
    if isinstance(amount, bool):
        raise InvalidAmount("amount must be a positive integer")
    try:
        value = int(amount)
    except (TypeError, ValueError) as exc:
        raise InvalidAmount("amount must be a positive integer") from exc
    if value != amount or value <= 0:
        raise InvalidAmount("amount must be a positive integer")
    return value


class SpendExecutor:
    def __init__(
        self,
        ledger: LedgerStore,
        aggregator: BalanceAggregator,
        locks: Optional[UserLockRegistry] = None,
        *,
        max_attempts: int = 3,
        backoff_ms: int = 25,
    ) -> None:
        self.ledger = ledger
        self.aggregator = aggregator
        self.locks = locks or UserLockRegistry()
        self.max_attempts = max(int(max_attempts), 1)
        self.backoff_seconds = max(int(backoff_ms), 0) / 1000.0

    async def spend(
        self,
        db: AsyncSession,
        user_id: str,
        category: Any,
        amount: Any,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TokenBalance:
        receipt = await self.execute(db, user_id, category, amount, description, metadata)
        return receipt.balance

    async def execute(
        self,
        db: AsyncSession,
        user_id: str,
        category: Any,
        amount: Any,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SpendReceipt:
        """Append one `spent` row if the balance covers it; raise InsufficientFunds otherwise."""
        debit = _positive_amount(amount)
        token_category = validate_category(category)
        return await self._append(
            db,
            user_id,
            kind=TransactionKind.SPENT,
            amount=debit,
            category=token_category,
            description=description,
            metadata=metadata,
            require_funds=True,
        )

    async def credit(
        self,
        db: AsyncSession,
        user_id: str,
        kind: Any,
        amount: Any,
        category: Any,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SpendReceipt:
        """Append an externally originated entry (earned, purchased, bonus, refund)."""
        try:
            entry_kind = TransactionKind(kind)
        except ValueError as exc:
            raise InvalidTransactionKind(f"Unsupported transaction kind: {kind!r}") from exc
        if entry_kind not in EXTERNAL_KINDS:
            raise InvalidTransactionKind(f"Transaction kind {entry_kind.value!r} cannot be credited externally")
        value = _positive_amount(amount)
        token_category = validate_category(category)
        return await self._append(
            db,
            user_id,
            kind=entry_kind,
            amount=value,
            category=token_category,
            description=description,
            metadata=metadata,
            require_funds=False,
        )

    async def _append(
        self,
        db: AsyncSession,
        user_id: str,
        *,
        kind: TransactionKind,
        amount: int,
        category: TokenCategory,
        description: str,
        metadata: Optional[Dict[str, Any]],
        require_funds: bool,
    ) -> SpendReceipt:
        async with self.locks.lock_for(user_id):
            attempt = 0
            while True:
                attempt += 1
                try:
                    current = await self.aggregator.balance(db, user_id)
                    if require_funds and current.available < amount:
                        raise InsufficientFunds(required=amount, available=current.available)
                    row = await self.ledger.append(
                        db,
                        user_id=user_id,
                        sequence=current.watermark + 1,
                        kind=kind,
                        amount=amount,
                        category=category,
                        description=description,
                        metadata=metadata,
                    )
                    break
                except (LedgerConflict, LedgerUnavailable) as exc:
                    if attempt >= self.max_attempts:
                        logger.error(
                            f"Ledger {kind.value} for user {user_id} failed after {attempt} attempts: {exc}"
                        )
                        raise
                    logger.warning(
                        f"Ledger {kind.value} for user {user_id} hit {exc.code} "
                        f"(attempt {attempt}/{self.max_attempts}); retrying"
                    )
                    if self.aggregator.checkpoints is not None:
                        self.aggregator.checkpoints.discard(user_id)
                    await asyncio.sleep(self.backoff_seconds * attempt)

            balance = await self._read_after_append(db, user_id)

        logger.info(
            f"Ledger {kind.value}: user={user_id} category={category.value} amount={amount} "
            f"available={balance.available}"
        )
        return SpendReceipt(transaction_id=row.id, amount=amount, balance=balance)

    async def _read_after_append(self, db: AsyncSession, user_id: str) -> TokenBalance:
        # The row is committed; only the read is retried.
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.aggregator.balance(db, user_id)
            except LedgerUnavailable:
                if attempt >= self.max_attempts:
                    raise
                await asyncio.sleep(self.backoff_seconds * attempt)
