"""Demo mode: a time-boxed token allowance that never touches the ledger.

A `DemoMode` value is immutable; every operation returns a new one. The
`DemoSessionStore` owns the session_id -> DemoMode map and applies updates
under its own lock. Time only moves through `tick`, which the application
drives from a clock loop, never from request volume.
"""

from __future__ import annotations

import asyncio
import logging
import math
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from services.errors import InvalidAmount
from services.pricing import TokenCategory, validate_category

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DemoRestrictions:
    max_file_size_mb: int = 10
    max_processing_seconds: int = 300
    watermark_output: bool = True
    limited_models: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_file_size_mb": self.max_file_size_mb,
            "max_processing_seconds": self.max_processing_seconds,
            "watermark_output": self.watermark_output,
            "limited_models": self.limited_models,
        }


@dataclass(frozen=True)
class DemoMode:
    session_id: str
    active: bool
    # Seconds, so clock ticks shorter than a minute are not rounded away.
    remaining_seconds: int
    token_allowance: int
    eligible_categories: FrozenSet[TokenCategory] = field(default_factory=lambda: frozenset(TokenCategory))
    restrictions: DemoRestrictions = field(default_factory=DemoRestrictions)
    user_id: Optional[str] = None

    @property
    def remaining_minutes(self) -> int:
        return math.ceil(self.remaining_seconds / 60)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "active": DemoModeController.is_active(self),
            "remaining_minutes": self.remaining_minutes,
            "remaining_seconds": self.remaining_seconds,
            "token_allowance": self.token_allowance,
            "eligible_categories": sorted(category.value for category in self.eligible_categories),
            "restrictions": self.restrictions.to_dict(),
        }


@dataclass(frozen=True)
class PricingContext:
    """How a request is priced: against the ledger, or against a demo allowance."""

    mode: str = "ledger"
    demo_session_id: Optional[str] = None

    @classmethod
    def ledger(cls) -> "PricingContext":
        return cls()

    @classmethod
    def demo(cls, demo: DemoMode) -> "PricingContext":
        return cls(mode="demo", demo_session_id=demo.session_id)

    @property
    def is_demo(self) -> bool:
        return self.mode == "demo" and self.demo_session_id is not None


class DemoSessionStore:
    """In-process map of demo sessions. Swap for a shared cache without changing callers."""

    def __init__(self) -> None:
        self._sessions: Dict[str, DemoMode] = {}
        self._lock = asyncio.Lock()

    async def get(self, session_id: str) -> Optional[DemoMode]:
        return self._sessions.get(session_id)

    async def put(self, demo: DemoMode) -> DemoMode:
        async with self._lock:
            self._sessions[demo.session_id] = demo
        return demo

    async def update(
        self, session_id: str, change: Callable[[DemoMode], Optional[DemoMode]]
    ) -> Optional[DemoMode]:
        """Apply `change` atomically. Returning None from `change` leaves the session untouched."""
        async with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                return None
            updated = change(current)
            if updated is not None:
                self._sessions[session_id] = updated
            return updated

    async def update_all(self, change: Callable[[DemoMode], DemoMode]) -> List[DemoMode]:
        async with self._lock:
            for session_id, demo in list(self._sessions.items()):
                self._sessions[session_id] = change(demo)
            return list(self._sessions.values())

    async def purge(self, predicate: Callable[[DemoMode], bool]) -> int:
        async with self._lock:
            doomed = [session_id for session_id, demo in self._sessions.items() if predicate(demo)]
            for session_id in doomed:
                del self._sessions[session_id]
            return len(doomed)

    def __len__(self) -> int:
        return len(self._sessions)


class DemoModeController:
    def __init__(
        self,
        store: Optional[DemoSessionStore] = None,
        *,
        default_duration_minutes: int = 30,
        default_token_allowance: int = 100,
    ) -> None:
        self.store = store or DemoSessionStore()
        self.default_duration_minutes = default_duration_minutes
        self.default_token_allowance = default_token_allowance

    async def start(
        self,
        duration_minutes: Optional[int] = None,
        token_allowance: Optional[int] = None,
        eligible_categories: Optional[Iterable[Any]] = None,
        *,
        user_id: Optional[str] = None,
        restrictions: Optional[DemoRestrictions] = None,
    ) -> DemoMode:
        minutes = self.default_duration_minutes if duration_minutes is None else int(duration_minutes)
        allowance = self.default_token_allowance if token_allowance is None else int(token_allowance)
        if minutes <= 0:
            raise InvalidAmount("duration_minutes must be positive")
        if allowance < 0:
            raise InvalidAmount("token_allowance must not be negative")
        categories = (
            frozenset(validate_category(value) for value in eligible_categories)
            if eligible_categories is not None
            else frozenset(TokenCategory)
        )
        demo = DemoMode(
            session_id=uuid.uuid4().hex,
            active=True,
            remaining_seconds=minutes * 60,
            token_allowance=allowance,
            eligible_categories=categories,
            restrictions=restrictions or DemoRestrictions(),
            user_id=user_id,
        )
        await self.store.put(demo)
        logger.info(f"Demo session {demo.session_id} started: {minutes} min, {allowance} tokens")
        return demo

    @staticmethod
    def is_active(demo: Optional[DemoMode]) -> bool:
        return demo is not None and demo.active and demo.remaining_seconds > 0

    @staticmethod
    def decrement_allowance(demo: DemoMode, amount: int) -> DemoMode:
        if int(amount) <= 0:
            raise InvalidAmount("demo allowance decrement must be positive")
        return replace(demo, token_allowance=max(demo.token_allowance - int(amount), 0))

    @staticmethod
    def tick(demo: DemoMode, elapsed_minutes: int = 1, *, elapsed_seconds: Optional[int] = None) -> DemoMode:
        """Advance the demo clock by `elapsed_seconds` when given, otherwise by whole minutes."""
        elapsed = elapsed_seconds if elapsed_seconds is not None else int(elapsed_minutes) * 60
        remaining = max(demo.remaining_seconds - max(int(elapsed), 0), 0)
        return replace(demo, remaining_seconds=remaining, active=demo.active and remaining > 0)

    @staticmethod
    def extend(demo: DemoMode, minutes: int) -> DemoMode:
        if int(minutes) <= 0:
            raise InvalidAmount("extension must be positive")
        return replace(demo, remaining_seconds=demo.remaining_seconds + int(minutes) * 60, active=True)

    @staticmethod
    def permits(
        demo: DemoMode,
        category: TokenCategory,
        *,
        file_size_mb: Optional[float] = None,
        processing_seconds: Optional[float] = None,
    ) -> bool:
        if not DemoModeController.is_active(demo) or category not in demo.eligible_categories:
            return False
        if file_size_mb is not None and file_size_mb > demo.restrictions.max_file_size_mb:
            return False
        if processing_seconds is not None and processing_seconds > demo.restrictions.max_processing_seconds:
            return False
        return True

    @staticmethod
    def pricing_context(demo: Optional[DemoMode]) -> PricingContext:
        if DemoModeController.is_active(demo):
            return PricingContext.demo(demo)
        return PricingContext.ledger()

    async def get(self, session_id: str) -> Optional[DemoMode]:
        return await self.store.get(session_id)

    async def consume(
        self,
        session_id: str,
        category: TokenCategory,
        cost: int,
        *,
        file_size_mb: Optional[float] = None,
        processing_seconds: Optional[float] = None,
    ) -> Optional[DemoMode]:
        """Charge `cost` to the demo allowance, or return None if the demo cannot absorb it."""

        def _charge(demo: DemoMode) -> Optional[DemoMode]:
            if not self.permits(
                demo, category, file_size_mb=file_size_mb, processing_seconds=processing_seconds
            ):
                return None
            if cost <= 0:
                return demo
            if demo.token_allowance < cost:
                return None
            return self.decrement_allowance(demo, cost)

        return await self.store.update(session_id, _charge)

    async def extend_session(self, session_id: str, minutes: int) -> Optional[DemoMode]:
        return await self.store.update(session_id, lambda demo: self.extend(demo, minutes))

    async def tick_all(self, elapsed_minutes: int = 1, *, elapsed_seconds: Optional[int] = None) -> int:
        """Advance every session's clock and drop the expired ones. Returns the number dropped."""
        await self.store.update_all(
            lambda demo: self.tick(demo, elapsed_minutes, elapsed_seconds=elapsed_seconds)
        )
        expired = await self.store.purge(lambda demo: not self.is_active(demo))
        if expired:
            logger.info(f"Expired {expired} demo session(s)")
        return expired
