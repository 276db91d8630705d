from services.balance import TokenBalance
from services.pricing import SUBSCRIPTION_PLANS, get_plan_by_id
from services.subscriptions import UserSubscriptionContext
from services.upgrade import UpgradeAdvisor, utilization


def _context(plan_id, used):
    return UserSubscriptionContext(
        user_id="upgrade-user",
        plan=get_plan_by_id(plan_id),
        status="active",
        balance=TokenBalance(total=used, used=used),
    )


def test_utilization_is_clamped_and_zero_without_plan():
    assert utilization(_context("basic-monthly", 250)) == 50.0
    assert utilization(_context("free-monthly", 500)) == 100.0
    assert utilization(_context(None, 500)) == 0.0


def test_suggests_next_tier_at_threshold():
    advisor = UpgradeAdvisor()

    assert advisor.suggest(_context("free-monthly", 39), SUBSCRIPTION_PLANS) is None
    assert advisor.suggest(_context("free-monthly", 40), SUBSCRIPTION_PLANS).id == "basic-monthly"
    assert advisor.suggest(_context("basic-monthly", 450), SUBSCRIPTION_PLANS).id == "premium-monthly"


def test_prefers_same_billing_cycle():
    suggestion = UpgradeAdvisor().suggest(_context("basic-quarterly", 1200), SUBSCRIPTION_PLANS)
    assert suggestion.id == "premium-quarterly"


def test_no_suggestion_at_top_tier_or_without_plan():
    advisor = UpgradeAdvisor()
    assert advisor.suggest(_context("premium-monthly", 5000), SUBSCRIPTION_PLANS) is None
    assert advisor.suggest(_context(None, 5000), SUBSCRIPTION_PLANS) is None


def test_threshold_is_configurable():
    advisor = UpgradeAdvisor(threshold=50)
    assert advisor.suggest(_context("free-monthly", 25), SUBSCRIPTION_PLANS).id == "basic-monthly"
