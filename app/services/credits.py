"""Credits ledger and atomic balance updates.

Every write to a UserCredits record is a compare-and-set on its `version`, so
concurrent callers for the same user never lose updates: the loser re-reads and
tries again. `add_credits` and `deduct_credits` are the only paths that move
`credit_balance` / `extra_credits`, always together with a CreditTransaction row.
`monthly_credits` is the plan allotment and is written like any other plan column.
"""

from datetime import datetime, timezone
from typing import Any, Callable

from pymongo.errors import DuplicateKeyError

from app.core.exceptions import InsufficientCreditsError, InvalidRequestError, ProviderError
from app.core.logging import get_logger
from app.models.credit_transaction import TRANSACTION_TYPES, CreditTransaction
from app.models.user_credits import UserCredits, utcnow
from app.services.plans import FREE, FREE_PLAN

log = get_logger(__name__)

MAX_WRITE_ATTEMPTS = 8
LEDGER_FIELDS = ("credit_balance", "extra_credits")

ChangeBuilder = Callable[[UserCredits], dict[str, Any] | None]


def _require_user_id(user_id: str | None) -> str:
    if not user_id or not str(user_id).strip():
        raise InvalidRequestError("user_id is required")
    return str(user_id)


def _require_amount(amount: Any, allow_zero: bool) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidRequestError("Amount must be an integer", details={"amount": amount})
    if amount < 0 or (amount == 0 and not allow_zero):
        raise InvalidRequestError("Amount must be positive", details={"amount": amount})
    return amount


def _as_utc(value: datetime) -> datetime:
    # Mongo hands datetimes back naive; they are always stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _same(current: Any, wanted: Any) -> bool:
    if isinstance(current, datetime) and isinstance(wanted, datetime):
        return _as_utc(current) == _as_utc(wanted)
    return current == wanted


def _plain_changes(build_changes: ChangeBuilder | None, record: UserCredits) -> dict[str, Any]:
    changes = dict((build_changes(record) if build_changes else None) or {})
    touched = [k for k in LEDGER_FIELDS if k in changes]
    if touched:
        raise ValueError(f"{', '.join(touched)} can only change through the ledger")
    return changes


def split_usage(balance: int, extra: int, amount: int) -> tuple[int, int]:
    """
    Spend `amount` from the balance, monthly credits first, purchased extras last.
    Returns (balance, extra) after spending; extra never exceeds the balance.
    """
    balance_after = balance - amount
    return balance_after, max(0, min(extra, balance_after))


async def get_record(user_id: str) -> UserCredits | None:
    return await UserCredits.find_one(UserCredits.user_id == user_id)


async def get_or_create_record(user_id: str, email: str | None = None) -> UserCredits:
    """Return the user's record, creating it with free-tier defaults on first touch."""
    user_id = _require_user_id(user_id)
    record = await get_record(user_id)
    if record:
        return record
    record = UserCredits(
        user_id=user_id,
        email=email,
        monthly_credits=FREE_PLAN.monthly_credits,
        credit_balance=FREE_PLAN.monthly_credits,
        subscription_plan=FREE,
        subscription_status=FREE,
    )
    try:
        await record.insert()
    except DuplicateKeyError:
        # Another request created it first
        return await get_record(user_id)
    log.info("credit_record", step="created", user_id=user_id)
    return record


async def compare_and_set(record: UserCredits, changes: dict[str, Any]) -> bool:
    """Apply `changes` only if nobody wrote the record since it was read."""
    changes = dict(changes)
    changes["updated_at"] = utcnow()
    result = await UserCredits.get_motor_collection().update_one(
        {"_id": record.id, "version": record.version},
        {"$set": changes, "$inc": {"version": 1}},
    )
    return result.matched_count == 1


async def update_record(
    user_id: str,
    build_changes: ChangeBuilder,
    email: str | None = None,
) -> UserCredits:
    """
    Read-modify-write the plan/subscription columns without losing concurrent updates.
    `build_changes` receives the freshly read record and returns the fields to set
    (or None for no change). Balance fields are refused; use the ledger procedures.
    Returns the record as stored after the write.
    """
    for _ in range(MAX_WRITE_ATTEMPTS):
        record = await get_or_create_record(user_id, email)
        changes = _plain_changes(build_changes, record)
        if not changes or all(_same(getattr(record, k), v) for k, v in changes.items()):
            return record
        if await compare_and_set(record, changes):
            return await get_record(record.user_id)
    raise ProviderError("Credit record is busy, please retry", details={"user_id": user_id})


async def _append_transaction(
    before: UserCredits,
    changed: dict[str, Any],
    amount: int,
    type_: str,
    description: str | None,
    balance_after: int,
    idempotency_key: str | None = None,
) -> CreditTransaction:
    entry = CreditTransaction(
        user_id=before.user_id,
        amount=amount,
        type=type_,
        description=description,
        balance_after=balance_after,
        idempotency_key=idempotency_key,
    )
    try:
        await entry.insert()
    except Exception:
        # Undo the record write so the record and the log stay in step
        restored = await UserCredits.get_motor_collection().update_one(
            {"_id": before.id, "version": before.version + 1},
            {"$set": {k: getattr(before, k) for k in changed}, "$inc": {"version": 1}},
        )
        log.error(
            "credit_transaction",
            step="insert_failed",
            user_id=before.user_id,
            amount=amount,
            reverted=restored.matched_count == 1,
        )
        raise
    return entry


async def deduct_credits(
    user_id: str,
    amount: int,
    description: str | None = "AI usage",
) -> tuple[CreditTransaction, int]:
    """
    Atomically spend `amount` credits (monthly first, then extra).
    Raises InsufficientCreditsError without touching anything if the balance is short.
    Returns (usage_transaction, balance_after).
    """
    user_id = _require_user_id(user_id)
    amount = _require_amount(amount, allow_zero=False)
    for _ in range(MAX_WRITE_ATTEMPTS):
        record = await get_or_create_record(user_id)
        if record.credit_balance < amount:
            log.info("deduct_credits", step="insufficient", user_id=user_id, amount=amount, balance=record.credit_balance)
            raise InsufficientCreditsError(details={"balance": record.credit_balance, "required": amount})
        balance_after, extra = split_usage(record.credit_balance, record.extra_credits, amount)
        changes = {"credit_balance": balance_after, "extra_credits": extra}
        if await compare_and_set(record, changes):
            entry = await _append_transaction(record, changes, -amount, "usage", description, balance_after)
            log.info("deduct_credits", step="applied", user_id=user_id, amount=amount, balance_after=balance_after)
            return entry, balance_after
    raise ProviderError("Credit record is busy, please retry", details={"user_id": user_id})


def _credit_changes(record: UserCredits, amount: int, type_: str) -> dict[str, int]:
    if type_ == "subscription_reset":
        # New cycle: unused monthly credits lapse, purchased extras carry over
        return {"monthly_credits": amount, "credit_balance": amount + record.extra_credits}
    if type_ == "grant":
        return {"credit_balance": record.credit_balance + amount}
    return {
        "extra_credits": record.extra_credits + amount,
        "credit_balance": record.credit_balance + amount,
    }


async def add_credits(
    user_id: str,
    amount: int,
    type_: str,
    description: str | None = None,
    idempotency_key: str | None = None,
    also_set: ChangeBuilder | None = None,
) -> tuple[CreditTransaction, int]:
    """
    Atomically credit the user and append one transaction of `type_`.
    subscription_reset sets the monthly allotment and refills the balance to it
    (plus extras), grant tops up the balance, and purchase/refund/bonus go to
    extra credits.
    `also_set` returns plan columns written in the same compare-and-set.
    Idempotency: if idempotency_key was already applied, return that entry and do not double-apply.
    """
    user_id = _require_user_id(user_id)
    amount = _require_amount(amount, allow_zero=True)
    if type_ not in TRANSACTION_TYPES or type_ == "usage":
        raise InvalidRequestError(f"Invalid credit type: {type_}")
    if idempotency_key:
        existing = await CreditTransaction.find_one(
            CreditTransaction.user_id == user_id,
            CreditTransaction.idempotency_key == idempotency_key,
        )
        if existing:
            record = await get_or_create_record(user_id)
            return existing, record.credit_balance

    for _ in range(MAX_WRITE_ATTEMPTS):
        record = await get_or_create_record(user_id)
        changes = {**_plain_changes(also_set, record), **_credit_changes(record, amount, type_)}
        if await compare_and_set(record, changes):
            balance_after = changes["credit_balance"]
            entry = await _append_transaction(
                record, changes, amount, type_, description, balance_after, idempotency_key
            )
            log.info("add_credits", step="applied", user_id=user_id, amount=amount, type=type_, balance_after=balance_after)
            return entry, balance_after
    raise ProviderError("Credit record is busy, please retry", details={"user_id": user_id})


async def list_transactions(user_id: str, limit: int, offset: int) -> tuple[list[CreditTransaction], int]:
    """Return (entries newest first, total count)."""
    query = CreditTransaction.find(CreditTransaction.user_id == user_id)
    total = await query.count()
    entries = (
        await CreditTransaction.find(CreditTransaction.user_id == user_id)
        .sort([("created_at", -1), ("_id", -1)])
        .skip(offset)
        .limit(limit)
        .to_list()
    )
    return entries, total
