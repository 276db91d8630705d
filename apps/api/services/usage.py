"""Usage metrics derived from spent ledger entries."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

from services.ledger import TransactionKind
from services.subscriptions import UserSubscriptionContext
from services.upgrade import utilization

USAGE_PERIODS = {
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "all": None,
}


def period_start(period: str, now: Optional[datetime] = None) -> Optional[datetime]:
    if period not in USAGE_PERIODS:
        raise ValueError(f"Unsupported usage period: {period!r}")
    window = USAGE_PERIODS[period]
    if window is None:
        return None
    return (now or datetime.now(timezone.utc)) - window


def usage_metrics(transactions: Iterable[Any], context: UserSubscriptionContext) -> Dict[str, Any]:
    tokens_by_category: Dict[str, int] = {}
    jobs_completed = 0
    for transaction in transactions:
        if transaction.kind != TransactionKind.SPENT.value:
            continue
        jobs_completed += 1
        tokens_by_category[transaction.category] = tokens_by_category.get(transaction.category, 0) + int(
            transaction.amount
        )

    most_used = max(tokens_by_category, key=tokens_by_category.get) if tokens_by_category else None
    return {
        "total_tokens_used": sum(tokens_by_category.values()),
        "tokens_by_category": tokens_by_category,
        "jobs_completed": jobs_completed,
        "most_used_category": most_used,
        "subscription_utilization": round(utilization(context), 2),
    }
