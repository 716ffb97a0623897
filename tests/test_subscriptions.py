"""check-subscription reconciliation against a fake Stripe."""

from datetime import datetime, timezone

from app.models.credit_transaction import CreditTransaction
from app.services import credits as credits_service
from app.services.subscriptions import check_subscription, format_timestamp

from tests.conftest import PRO_YEARLY, STUDIO_MONTHLY


async def test_no_customer_is_free(identity, billing):
    status = await check_subscription(identity, billing)
    body = status.to_response()
    assert body["subscribed"] is False
    assert body["plan"] == "free"
    assert body["monthlyCredits"] == 40
    assert body["billingCycle"] is None
    assert body["subscriptionEnd"] is None
    record = await credits_service.get_record(identity.user_id)
    assert record.email == identity.email
    assert record.subscription_status == "free"


async def test_no_customer_reports_allotment_after_spending(identity, billing):
    await credits_service.deduct_credits(identity.user_id, 10)
    status = await check_subscription(identity, billing)
    assert status.monthly_credits == 40
    assert status.credit_balance == 30


async def test_spent_free_user_is_not_refilled_by_reconcile(identity, billing):
    await credits_service.deduct_credits(identity.user_id, 40)
    for _ in range(3):
        status = await check_subscription(identity, billing)
        assert status.monthly_credits == 40
        assert status.credit_balance == 0
    record = await credits_service.get_record(identity.user_id)
    assert record.credit_balance == 0
    entries = await CreditTransaction.find(CreditTransaction.user_id == identity.user_id).to_list()
    assert [(e.amount, e.balance_after) for e in entries] == [(-40, 0)]


async def test_losing_subscription_keeps_spendable_balance(identity, billing):
    customer_id = billing.add_customer(identity.email)
    await credits_service.add_credits(identity.user_id, 700, "subscription_reset")
    await credits_service.update_record(identity.user_id, lambda _: {"subscription_plan": "pro"})
    status = await check_subscription(identity, billing)
    assert status.monthly_credits == 40
    assert status.credit_balance == 700
    assert (await credits_service.get_record(identity.user_id)).stripe_customer_id == customer_id


async def test_customer_without_active_subscription_reverts_to_free(identity, billing):
    customer_id = billing.add_customer(identity.email)
    await credits_service.update_record(
        identity.user_id, lambda _: {"subscription_plan": "pro", "subscription_status": "active", "monthly_credits": 700}
    )
    status = await check_subscription(identity, billing)
    assert status.subscribed is False
    assert status.plan == "free"
    assert status.monthly_credits == 40
    record = await credits_service.get_record(identity.user_id)
    assert record.stripe_customer_id == customer_id
    assert record.subscription_plan == "free"
    assert record.subscription_ends_at is None
    assert record.credit_balance == 40


async def test_active_subscription_sets_plan_columns(identity, billing):
    customer_id = billing.add_customer(identity.email)
    period_end = datetime(2027, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    billing.add_subscription(customer_id, STUDIO_MONTHLY, period_end=period_end)
    status = await check_subscription(identity, billing)
    body = status.to_response()
    assert body["subscribed"] is True
    assert body["plan"] == "studio"
    assert body["billingCycle"] == "monthly"
    assert body["subscriptionEnd"] == "2027-01-02T03:04:05.000Z"
    assert body["monthlyCredits"] == 1800
    record = await credits_service.get_record(identity.user_id)
    assert record.subscription_status == "active"
    assert record.stripe_customer_id == customer_id


async def test_unknown_price_resolves_to_pro(identity, billing):
    customer_id = billing.add_customer(identity.email)
    billing.add_subscription(customer_id, "price_legacy_unknown")
    status = await check_subscription(identity, billing)
    assert status.plan == "pro"
    assert status.billing_cycle is None
    assert status.monthly_credits == 700
    assert status.credit_balance == 40
    record = await credits_service.get_record(identity.user_id)
    assert record.subscription_plan == "pro"


async def test_reconcile_is_idempotent(identity, billing):
    customer_id = billing.add_customer(identity.email)
    billing.add_subscription(customer_id, PRO_YEARLY)
    first = await check_subscription(identity, billing)
    version = (await credits_service.get_record(identity.user_id)).version
    second = await check_subscription(identity, billing)
    assert first == second
    assert (await credits_service.get_record(identity.user_id)).version == version
    assert await CreditTransaction.find(CreditTransaction.user_id == identity.user_id).count() == 0


def test_format_timestamp():
    assert format_timestamp(None) is None
    assert format_timestamp(datetime(2026, 5, 1, 9, 30, 0, 123456)) == "2026-05-01T09:30:00.123Z"
