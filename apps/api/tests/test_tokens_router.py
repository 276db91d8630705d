import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from database import get_db
from main import app
from services.engine import EntitlementEngine
from services.errors import LedgerUnavailable
from services.ledger import LedgerStore
from services.session_token import create_session_token


TEST_USER_ID = "tokens-router-user"
TEST_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(TEST_USER_ID)['token']}"}


@pytest_asyncio.fixture
async def integration_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)


async def _credit(client, amount, kind="earned", category="voice_cloning"):
    resp = await client.post(
        "/billing/credit",
        json={"kind": kind, "amount": amount, "category": category},
        headers=TEST_AUTH_HEADER,
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


@pytest.mark.asyncio
async def test_requests_without_session_token_are_rejected(integration_client):
    resp = await integration_client.get("/tokens/balance")
    assert resp.status_code == 401

    resp = await integration_client.get("/tokens/balance", headers={"Authorization": "Bearer not-a-token"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_authorize_charges_free_tier_cost(integration_client):
    await _credit(integration_client, 50)

    resp = await integration_client.post(
        "/tokens/authorize",
        json={"category": "voice-cloning", "quantity": 1},
        headers=TEST_AUTH_HEADER,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["approved"] is True
    assert (body["cost"], body["tokens_deducted"], body["remaining_balance"]) == (15, 15, 35)

    balance = (await integration_client.get("/tokens/balance", headers=TEST_AUTH_HEADER)).json()
    assert balance == {"total": 50, "used": 15, "available": 35}


@pytest.mark.asyncio
async def test_denial_returns_402_with_upgrade_suggestion(integration_client):
    await _credit(integration_client, 50)
    for _ in range(3):
        resp = await integration_client.post(
            "/tokens/authorize",
            json={"category": "voice_cloning"},
            headers=TEST_AUTH_HEADER,
        )
        assert resp.status_code == 200

    resp = await integration_client.post(
        "/tokens/authorize",
        json={"category": "voice_cloning"},
        headers=TEST_AUTH_HEADER,
    )
    assert resp.status_code == 402
    detail = resp.json()["detail"]
    assert detail["error_code"] == "insufficient_funds"
    assert (detail["required"], detail["available"]) == (15, 5)
    assert detail["suggested_upgrade"]["id"] == "basic-monthly"


@pytest.mark.asyncio
async def test_authorize_rejects_unknown_category(integration_client):
    resp = await integration_client.post(
        "/tokens/authorize",
        json={"category": "time_travel"},
        headers=TEST_AUTH_HEADER,
    )
    assert resp.status_code == 422
    assert resp.json()["detail"]["error_code"] == "invalid_category"


@pytest.mark.asyncio
async def test_authorize_with_unknown_demo_session_is_404(integration_client):
    resp = await integration_client.post(
        "/tokens/authorize",
        json={"category": "voice_cloning", "demo_session_id": "missing"},
        headers=TEST_AUTH_HEADER,
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_transactions_are_paginated_newest_first(integration_client):
    await _credit(integration_client, 100)
    for category in ("voice_cleaning", "voice_changing", "stem_separation"):
        resp = await integration_client.post(
            "/tokens/authorize",
            json={"category": category},
            headers=TEST_AUTH_HEADER,
        )
        assert resp.status_code == 200

    resp = await integration_client.get("/tokens/transactions?page=1&limit=2", headers=TEST_AUTH_HEADER)
    assert resp.status_code == 200
    body = resp.json()
    assert [row["category"] for row in body["transactions"]] == ["stem_separation", "voice_changing"]
    assert body["pagination"] == {"page": 1, "limit": 2, "total": 4, "total_pages": 2}

    resp = await integration_client.get("/tokens/transactions?kind=earned", headers=TEST_AUTH_HEADER)
    assert [row["amount"] for row in resp.json()["transactions"]] == [100]

    resp = await integration_client.get("/tokens/transactions?category=voice-changing", headers=TEST_AUTH_HEADER)
    assert resp.json()["pagination"]["total"] == 1


@pytest.mark.asyncio
async def test_balance_by_category_and_costs(integration_client):
    await _credit(integration_client, 60, category="video_generation")
    await integration_client.post(
        "/tokens/authorize",
        json={"category": "video_generation"},
        headers=TEST_AUTH_HEADER,
    )

    breakdown = (await integration_client.get("/tokens/balance/by-category", headers=TEST_AUTH_HEADER)).json()
    assert breakdown == {"video_generation": {"total": 60, "used": 30, "available": 30}}

    costs = (await integration_client.get("/tokens/costs", headers=TEST_AUTH_HEADER)).json()
    assert costs["tier"] == "free"
    assert costs["costs"]["video_generation"] == 30


@pytest.mark.asyncio
async def test_usage_metrics_for_period(integration_client):
    await _credit(integration_client, 100)
    for category in ("video_generation", "voice_cloning"):
        await integration_client.post(
            "/tokens/authorize",
            json={"category": category},
            headers=TEST_AUTH_HEADER,
        )

    resp = await integration_client.get("/tokens/usage?period=7d", headers=TEST_AUTH_HEADER)
    assert resp.status_code == 200
    body = resp.json()
    assert body["period"] == "7d"
    assert body["total_tokens_used"] == 45
    assert body["jobs_completed"] == 2
    assert body["most_used_category"] == "video_generation"
    assert body["subscription_utilization"] == 90.0

    resp = await integration_client.get("/tokens/usage?period=forever", headers=TEST_AUTH_HEADER)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_ledger_outage_maps_to_503(integration_client):
    class OfflineLedgerStore(LedgerStore):
        async def aggregate(self, db, user_id, *, after_sequence=0):
            raise LedgerUnavailable("Token ledger unavailable during balance read.")

    app.state.engine = EntitlementEngine(ledger=OfflineLedgerStore(), backoff_ms=0)

    resp = await integration_client.get("/tokens/balance", headers=TEST_AUTH_HEADER)
    assert resp.status_code == 503
    assert resp.json()["detail"]["error_code"] == "ledger_unavailable"

    resp = await integration_client.post(
        "/tokens/authorize",
        json={"category": "voice_cloning"},
        headers=TEST_AUTH_HEADER,
    )
    assert resp.status_code == 503
    assert resp.json()["detail"]["error_code"] == "ledger_unavailable"


@pytest.mark.asyncio
async def test_social_engagement_credits_earned_tokens_once(integration_client):
    resp = await integration_client.post(
        "/tokens/social-engagement",
        json={"platform": "linkedin", "action": "share", "verification_url": "https://linkedin.com/posts/1"},
        headers=TEST_AUTH_HEADER,
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["tokens_earned"] == 20
    assert body["balance"] == {"total": 20, "used": 0, "available": 20}
    assert body["engagement"]["platform"] == "linkedin"

    again = await integration_client.post(
        "/tokens/social-engagement",
        json={"platform": "linkedin", "action": "share"},
        headers=TEST_AUTH_HEADER,
    )
    assert again.status_code == 409
    assert again.json()["detail"]["error_code"] == "engagement_already_claimed"

    txns = (await integration_client.get("/tokens/transactions", headers=TEST_AUTH_HEADER)).json()["transactions"]
    assert [(row["kind"], row["amount"], row["category"]) for row in txns] == [("earned", 20, "voice_cloning")]
    assert txns[0]["metadata"]["engagement_id"] == body["engagement"]["id"]


@pytest.mark.asyncio
async def test_social_engagement_validation_and_task_list(integration_client):
    resp = await integration_client.post(
        "/tokens/social-engagement",
        json={"platform": "myspace", "action": "follow"},
        headers=TEST_AUTH_HEADER,
    )
    assert resp.status_code == 422
    assert resp.json()["detail"]["error_code"] == "invalid_engagement"

    resp = await integration_client.post(
        "/tokens/social-engagement",
        json={"platform": "twitter", "action": "retweet"},
        headers=TEST_AUTH_HEADER,
    )
    assert resp.status_code == 422

    # A valid pair missing from the reward table pays the flat fallback.
    resp = await integration_client.post(
        "/tokens/social-engagement",
        json={"platform": "instagram", "action": "post"},
        headers=TEST_AUTH_HEADER,
    )
    assert resp.json()["tokens_earned"] == 5

    await integration_client.post(
        "/tokens/social-engagement",
        json={"platform": "youtube", "action": "subscribe"},
        headers=TEST_AUTH_HEADER,
    )
    overview = (await integration_client.get("/tokens/social-engagements", headers=TEST_AUTH_HEADER)).json()
    available = [(task["platform"], task["action"]) for task in overview["available_tasks"]]
    assert ("youtube", "subscribe") not in available
    assert ("twitter", "follow") in available
    assert {(row["platform"], row["action"]) for row in overview["completed_engagements"]} == {
        ("instagram", "post"),
        ("youtube", "subscribe"),
    }


@pytest.mark.asyncio
async def test_failed_reward_credit_releases_the_claim(integration_client):
    class OfflineLedgerStore(LedgerStore):
        async def append(self, db, **fields):
            raise LedgerUnavailable("connection refused")

    app.state.engine = EntitlementEngine(ledger=OfflineLedgerStore(), max_attempts=1, backoff_ms=0)
    resp = await integration_client.post(
        "/tokens/social-engagement",
        json={"platform": "tiktok", "action": "follow"},
        headers=TEST_AUTH_HEADER,
    )
    assert resp.status_code == 503

    app.state.engine = None
    resp = await integration_client.post(
        "/tokens/social-engagement",
        json={"platform": "tiktok", "action": "follow"},
        headers=TEST_AUTH_HEADER,
    )
    assert resp.status_code == 200
    assert resp.json()["tokens_earned"] == 15
