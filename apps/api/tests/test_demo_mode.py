import asyncio
from types import SimpleNamespace

import pytest

from services.demo_mode import DemoModeController, DemoRestrictions, PricingContext
from services.errors import InvalidAmount, InvalidCategory
from services.pricing import TokenCategory


@pytest.mark.asyncio
async def test_start_uses_defaults_and_stores_session():
    controller = DemoModeController(default_duration_minutes=30, default_token_allowance=100)
    demo = await controller.start(user_id="demo-user")

    assert controller.is_active(demo)
    assert (demo.remaining_minutes, demo.token_allowance) == (30, 100)
    assert demo.eligible_categories == frozenset(TokenCategory)
    assert await controller.get(demo.session_id) == demo
    assert demo.to_dict()["restrictions"]["watermark_output"] is True


@pytest.mark.asyncio
async def test_start_validates_inputs():
    controller = DemoModeController()
    with pytest.raises(InvalidAmount):
        await controller.start(duration_minutes=0)
    with pytest.raises(InvalidCategory):
        await controller.start(eligible_categories=["mind_reading"])
    assert len(controller.store) == 0


@pytest.mark.asyncio
async def test_decrement_never_goes_below_zero():
    demo = await DemoModeController().start(token_allowance=10)

    assert DemoModeController.decrement_allowance(demo, 4).token_allowance == 6
    assert DemoModeController.decrement_allowance(demo, 25).token_allowance == 0
    with pytest.raises(InvalidAmount):
        DemoModeController.decrement_allowance(demo, 0)


@pytest.mark.asyncio
async def test_tick_expires_and_extend_revives():
    demo = await DemoModeController().start(duration_minutes=2)

    once = DemoModeController.tick(demo)
    assert once.remaining_minutes == 1 and DemoModeController.is_active(once)

    expired = DemoModeController.tick(once, elapsed_minutes=5)
    assert expired.remaining_minutes == 0
    assert not DemoModeController.is_active(expired)
    assert DemoModeController.pricing_context(expired) == PricingContext.ledger()

    revived = DemoModeController.extend(expired, 10)
    assert DemoModeController.is_active(revived)
    assert revived.remaining_minutes == 10


@pytest.mark.asyncio
async def test_consume_respects_eligibility_restrictions_and_allowance():
    controller = DemoModeController()
    demo = await controller.start(
        token_allowance=20,
        eligible_categories=[TokenCategory.VOICE_CLONING],
        restrictions=DemoRestrictions(max_file_size_mb=10, max_processing_seconds=300),
    )

    assert await controller.consume(demo.session_id, TokenCategory.VIDEO_GENERATION, 5) is None
    assert await controller.consume(demo.session_id, TokenCategory.VOICE_CLONING, 5, file_size_mb=50) is None
    assert await controller.consume(demo.session_id, TokenCategory.VOICE_CLONING, 5, processing_seconds=900) is None
    assert await controller.consume(demo.session_id, TokenCategory.VOICE_CLONING, 25) is None

    charged = await controller.consume(demo.session_id, TokenCategory.VOICE_CLONING, 15)
    assert charged.token_allowance == 5
    assert (await controller.get(demo.session_id)).token_allowance == 5
    assert await controller.consume("unknown-session", TokenCategory.VOICE_CLONING, 1) is None


@pytest.mark.asyncio
async def test_tick_all_purges_expired_sessions():
    controller = DemoModeController()
    short = await controller.start(duration_minutes=1)
    long = await controller.start(duration_minutes=10)

    expired = await controller.tick_all()

    assert expired == 1
    assert await controller.get(short.session_id) is None
    assert (await controller.get(long.session_id)).remaining_minutes == 9
    assert (await controller.extend_session(long.session_id, 5)).remaining_minutes == 14


@pytest.mark.asyncio
async def test_sub_minute_ticks_accumulate():
    controller = DemoModeController()
    demo = await controller.start(duration_minutes=2)

    for _ in range(3):
        assert await controller.tick_all(elapsed_seconds=30) == 0

    current = await controller.get(demo.session_id)
    assert current.remaining_seconds == 30
    assert current.remaining_minutes == 1
    assert controller.is_active(current)

    assert await controller.tick_all(elapsed_seconds=30) == 1
    assert await controller.get(demo.session_id) is None


@pytest.mark.asyncio
async def test_clock_loop_decays_by_configured_seconds(monkeypatch):
    import main
    from config import settings
    from services.engine import EntitlementEngine

    engine = EntitlementEngine(backoff_ms=0)
    demo = await engine.demo.start(duration_minutes=2)
    sleeps = []

    async def fake_sleep(seconds):
        if len(sleeps) == 3:
            raise asyncio.CancelledError()
        sleeps.append(seconds)

    monkeypatch.setattr(settings, "DEMO_CLOCK_INTERVAL_SECONDS", 30)
    monkeypatch.setattr(main, "asyncio", SimpleNamespace(sleep=fake_sleep))

    with pytest.raises(asyncio.CancelledError):
        await main._periodic_demo_clock(engine)

    assert sleeps == [30, 30, 30]
    assert (await engine.demo.get(demo.session_id)).remaining_seconds == 30
