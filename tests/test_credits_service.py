"""Unit tests for the credit ledger (in-memory MongoDB)."""

import asyncio

import pytest

from app.core.exceptions import InsufficientCreditsError, InvalidRequestError
from app.models.credit_transaction import CreditTransaction
from app.services import credits as credits_service


async def test_new_record_gets_free_allotment():
    record = await credits_service.get_or_create_record("user-a", "a@example.com")
    assert record.monthly_credits == 40
    assert record.extra_credits == 0
    assert record.credit_balance == 40
    assert record.subscription_plan == "free"
    again = await credits_service.get_or_create_record("user-a")
    assert again.id == record.id


async def test_deduct_spends_exact_amount_and_logs_once():
    entry, balance_after = await credits_service.deduct_credits("user-a", 15, "Research task")
    assert balance_after == 25
    assert entry.amount == -15
    assert entry.type == "usage"
    assert entry.balance_after == 25
    record = await credits_service.get_record("user-a")
    assert record.credit_balance == 25
    assert await CreditTransaction.find(CreditTransaction.user_id == "user-a").count() == 1


async def test_deduct_insufficient_changes_nothing():
    await credits_service.get_or_create_record("user-a")
    with pytest.raises(InsufficientCreditsError) as exc:
        await credits_service.deduct_credits("user-a", 41)
    assert exc.value.status_code == 402
    record = await credits_service.get_record("user-a")
    assert record.credit_balance == 40
    assert record.version == 0
    assert await CreditTransaction.find(CreditTransaction.user_id == "user-a").count() == 0


async def test_deduct_uses_monthly_before_extra():
    await credits_service.add_credits("user-a", 100, "purchase")
    _, balance_after = await credits_service.deduct_credits("user-a", 50)
    record = await credits_service.get_record("user-a")
    assert balance_after == 90
    assert record.monthly_credits == 40
    assert record.extra_credits == 90
    assert record.extra_credits <= record.credit_balance


@pytest.mark.parametrize("amount", [0, -3, 2.5, "7", True, None])
async def test_deduct_rejects_invalid_amounts(amount):
    with pytest.raises(InvalidRequestError):
        await credits_service.deduct_credits("user-a", amount)


async def test_missing_user_id_is_rejected():
    with pytest.raises(InvalidRequestError):
        await credits_service.deduct_credits("", 1)
    with pytest.raises(InvalidRequestError):
        await credits_service.add_credits("  ", 1, "bonus")


async def test_concurrent_deductions_never_overdraw():
    await credits_service.deduct_credits("user-a", 30)
    results = await asyncio.gather(
        credits_service.deduct_credits("user-a", 6),
        credits_service.deduct_credits("user-a", 6),
        return_exceptions=True,
    )
    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, InsufficientCreditsError)]
    assert len(successes) == 1
    assert len(failures) == 1
    record = await credits_service.get_record("user-a")
    assert record.credit_balance == 4
    assert successes[0][1] == 4


async def test_add_credit_types():
    _, balance = await credits_service.add_credits("user-a", 700, "subscription_reset", "pro activated")
    assert balance == 700
    _, balance = await credits_service.add_credits("user-a", 1100, "grant")
    assert balance == 1800
    _, balance = await credits_service.add_credits("user-a", 1000, "purchase")
    record = await credits_service.get_record("user-a")
    assert balance == 2800
    assert (record.monthly_credits, record.extra_credits) == (700, 1000)


async def test_add_credits_rejects_usage_and_unknown_types():
    with pytest.raises(InvalidRequestError):
        await credits_service.add_credits("user-a", 5, "usage")
    with pytest.raises(InvalidRequestError):
        await credits_service.add_credits("user-a", 5, "gift")
    with pytest.raises(InvalidRequestError):
        await credits_service.add_credits("user-a", -5, "bonus")


async def test_add_credits_idempotency():
    entry, balance_after = await credits_service.add_credits(
        "user-a", 100, "bonus", idempotency_key="test-key-1"
    )
    assert entry.amount == 100
    assert balance_after == 140
    # Idempotency: same key should not double-apply
    entry2, balance2 = await credits_service.add_credits("user-a", 100, "bonus", idempotency_key="test-key-1")
    assert balance2 == 140
    assert entry.id == entry2.id


async def test_list_transactions_newest_first():
    for amount in (1, 2, 3):
        await credits_service.deduct_credits("user-a", amount)
    entries, total = await credits_service.list_transactions("user-a", limit=2, offset=0)
    assert total == 3
    assert [e.amount for e in entries] == [-3, -2]
    entries, _ = await credits_service.list_transactions("user-a", limit=2, offset=2)
    assert [e.amount for e in entries] == [-1]


async def test_update_record_skips_unchanged_writes():
    record = await credits_service.update_record("user-a", lambda _: {"subscription_plan": "pro"})
    assert record.version == 1
    again = await credits_service.update_record("user-a", lambda _: {"subscription_plan": "pro"})
    assert again.version == 1


async def test_monthly_allotment_is_not_spent_down():
    await credits_service.deduct_credits("user-a", 40)
    record = await credits_service.get_record("user-a")
    assert record.credit_balance == 0
    assert record.monthly_credits == 40


async def test_reset_keeps_purchased_credits():
    await credits_service.add_credits("user-a", 1000, "purchase")
    await credits_service.deduct_credits("user-a", 30)
    _, balance = await credits_service.add_credits("user-a", 700, "subscription_reset")
    record = await credits_service.get_record("user-a")
    assert balance == 1700
    assert (record.monthly_credits, record.extra_credits, record.credit_balance) == (700, 1000, 1700)


async def test_update_record_refuses_balance_fields():
    with pytest.raises(ValueError):
        await credits_service.update_record("user-a", lambda _: {"credit_balance": 999})
    with pytest.raises(ValueError):
        await credits_service.update_record("user-a", lambda _: {"extra_credits": 5})
    record = await credits_service.get_record("user-a")
    assert record.credit_balance == 40


async def test_also_set_lands_in_the_same_write():
    entry, balance = await credits_service.add_credits(
        "user-a",
        1000,
        "purchase",
        idempotency_key="refill-1",
        also_set=lambda r: {"refills_this_month": r.refills_this_month + 1},
    )
    record = await credits_service.get_record("user-a")
    assert record.refills_this_month == 1
    assert record.version == 1
    assert entry.balance_after == balance == 1040

    # Replaying the key applies neither the credits nor the extra columns
    await credits_service.add_credits(
        "user-a",
        1000,
        "purchase",
        idempotency_key="refill-1",
        also_set=lambda r: {"refills_this_month": r.refills_this_month + 1},
    )
    record = await credits_service.get_record("user-a")
    assert record.refills_this_month == 1
    assert record.credit_balance == 1040


async def test_transaction_log_replays_to_balance():
    await credits_service.deduct_credits("user-a", 15)
    await credits_service.add_credits("user-a", 200, "purchase")
    await credits_service.deduct_credits("user-a", 100)
    entries, _ = await credits_service.list_transactions("user-a", limit=10, offset=0)
    record = await credits_service.get_record("user-a")
    assert entries[0].balance_after == record.credit_balance
    running = 40
    for entry in reversed(entries):
        running += entry.amount
        assert running == entry.balance_after
