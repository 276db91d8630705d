import asyncio

import pytest

from services.demo_mode import DemoModeController, PricingContext
from services.engine import EntitlementEngine
from services.entitlements import Approved, Denied, UsageRequest
from services.errors import InvalidAmount, InvalidCategory, LedgerUnavailable
from services.ledger import LedgerStore, TransactionKind
from services.pricing import TokenCategory, free_plan
from services.subscriptions import UserSubscriptionContext


USER_ID = "entitled-user"


class UnreadableLedgerStore(LedgerStore):
    def __init__(self):
        self.reads = 0

    async def aggregate(self, db, user_id, *, after_sequence=0):
        self.reads += 1
        raise LedgerUnavailable("ledger offline")


def _free_context(balance=None):
    return UserSubscriptionContext(user_id=USER_ID, plan=free_plan(), status="active", balance=balance)


async def _fund(engine, session, amount, category=TokenCategory.VOICE_CLONING):
    await engine.credit(session, USER_ID, TransactionKind.PURCHASED, amount, category, "seed")


@pytest.mark.asyncio
async def test_free_tier_request_is_approved_and_charged(session_maker):
    engine = EntitlementEngine(backoff_ms=0)
    async with session_maker() as session:
        await _fund(engine, session, 50)

        decision = await engine.authorize(session, _free_context(), UsageRequest(category="voice-cloning"))

        assert isinstance(decision, Approved)
        assert (decision.cost, decision.charged_to_ledger, decision.available) == (15, 15, 35)
        assert decision.transaction_id
        assert (await engine.balance(session, USER_ID)).available == 35


@pytest.mark.asyncio
async def test_short_balance_is_denied_with_upgrade_suggestion(session_maker):
    engine = EntitlementEngine(backoff_ms=0)
    async with session_maker() as session:
        await _fund(engine, session, 50)
        await engine.spend(session, USER_ID, TokenCategory.VIDEO_GENERATION, 45)

        decision = await engine.authorize(session, _free_context(), UsageRequest(category=TokenCategory.VOICE_CLONING))

        assert isinstance(decision, Denied)
        assert (decision.reason, decision.required, decision.available) == ("insufficient_funds", 15, 5)
        assert len(await engine.ledger.replay(session, USER_ID)) == 2

        balance = await engine.balance(session, USER_ID)
        suggestion = engine.suggest_upgrade(_free_context(balance))
        assert suggestion.tier.value == "basic"


@pytest.mark.asyncio
async def test_concurrent_authorizations_match_a_serial_order(session_maker):
    engine = EntitlementEngine(backoff_ms=0)
    async with session_maker() as session:
        await _fund(engine, session, 40)

    async def attempt():
        async with session_maker() as session:
            return await engine.authorize(session, _free_context(), UsageRequest(category="video_generation"))

    decisions = await asyncio.gather(attempt(), attempt())

    approved = [decision for decision in decisions if isinstance(decision, Approved)]
    denied = [decision for decision in decisions if isinstance(decision, Denied)]
    assert len(approved) == 1 and len(denied) == 1
    assert approved[0].available == 10
    assert denied[0].required == 30
    assert denied[0].available in (10, 40)
    async with session_maker() as session:
        assert (await engine.balance(session, USER_ID)).available == 10


@pytest.mark.asyncio
async def test_demo_pricing_leaves_ledger_untouched_until_expiry(session_maker):
    engine = EntitlementEngine(backoff_ms=0)
    async with session_maker() as session:
        await _fund(engine, session, 100)
        demo = await engine.demo.start(duration_minutes=1, token_allowance=100, user_id=USER_ID)
        request = UsageRequest(category=TokenCategory.STEM_SEPARATION, quantity=5)
        context = UserSubscriptionContext(user_id=USER_ID, plan=None, status="inactive")

        decision = await engine.authorize(session, context, request, engine.demo.pricing_context(demo))

        assert isinstance(decision, Approved)
        assert (decision.cost, decision.charged_to_ledger, decision.demo_allowance_remaining) == (25, 0, 75)
        assert len(await engine.ledger.replay(session, USER_ID)) == 1

        await engine.demo.tick_all()
        expired = await engine.demo.get(demo.session_id)
        decision = await engine.authorize(session, context, request, DemoModeController.pricing_context(expired))

        assert isinstance(decision, Approved)
        assert decision.charged_to_ledger == 25
        assert (await engine.balance(session, USER_ID)).available == 75


@pytest.mark.asyncio
async def test_demo_that_cannot_cover_cost_falls_through_to_ledger(session_maker):
    engine = EntitlementEngine(backoff_ms=0)
    async with session_maker() as session:
        await _fund(engine, session, 40)
        demo = await engine.demo.start(token_allowance=10, user_id=USER_ID)

        decision = await engine.authorize(
            session,
            _free_context(),
            UsageRequest(category=TokenCategory.VOICE_CLONING),
            PricingContext.demo(demo),
        )

        assert decision.charged_to_ledger == 15
        assert (await engine.demo.get(demo.session_id)).token_allowance == 10


@pytest.mark.asyncio
async def test_demo_restrictions_route_large_jobs_to_ledger(session_maker):
    engine = EntitlementEngine(backoff_ms=0)
    async with session_maker() as session:
        demo = await engine.demo.start(token_allowance=100, user_id=USER_ID)

        decision = await engine.authorize(
            session,
            _free_context(),
            UsageRequest(category=TokenCategory.VOICE_CLEANING, file_size_mb=500),
            PricingContext.demo(demo),
        )

        assert isinstance(decision, Denied)
        assert (decision.required, decision.available) == (5, 0)
        assert (await engine.demo.get(demo.session_id)).token_allowance == 100


@pytest.mark.asyncio
async def test_invalid_requests_raise_before_touching_the_ledger(session_maker):
    engine = EntitlementEngine(backoff_ms=0)
    async with session_maker() as session:
        with pytest.raises(InvalidCategory):
            await engine.authorize(session, _free_context(), UsageRequest(category="levitation"))
        with pytest.raises(InvalidAmount):
            await engine.authorize(session, _free_context(), UsageRequest(category="voice_cloning", quantity=0))
        assert await engine.ledger.replay(session, USER_ID) == []


@pytest.mark.asyncio
async def test_default_costs_apply_without_a_plan(session_maker):
    engine = EntitlementEngine(backoff_ms=0)
    async with session_maker() as session:
        await _fund(engine, session, 100)
        context = UserSubscriptionContext(user_id=USER_ID, plan=None, status="cancelled")

        decision = await engine.authorize(session, context, UsageRequest(category=TokenCategory.VOICE_CLONING, quantity=2))

        assert decision.cost == 20


@pytest.mark.asyncio
async def test_demo_approval_does_not_read_the_ledger(session_maker):
    ledger = UnreadableLedgerStore()
    engine = EntitlementEngine(ledger=ledger, backoff_ms=0)
    demo = await engine.demo.start(token_allowance=100, user_id=USER_ID)
    context = UserSubscriptionContext(user_id=USER_ID, plan=None, status="inactive")
    request = UsageRequest(category=TokenCategory.STEM_SEPARATION, quantity=5)

    async with session_maker() as session:
        decision = await engine.authorize(session, context, request, PricingContext.demo(demo))

        assert isinstance(decision, Approved)
        assert (decision.charged_to_ledger, decision.demo_allowance_remaining) == (0, 75)
        assert decision.available is None
        assert decision.to_dict()["remaining_balance"] is None
        assert ledger.reads == 0

        # Once the demo cannot cover the cost, the ledger read happens and its failure surfaces.
        with pytest.raises(LedgerUnavailable):
            await engine.authorize(
                session,
                context,
                UsageRequest(category=TokenCategory.VIDEO_GENERATION, quantity=5),
                PricingContext.demo(demo),
            )
        assert ledger.reads == 1
