"""Reconcile the caller's Stripe subscription into their credit record (check-subscription)."""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from app.core.logging import get_logger
from app.deps import Identity
from app.models.user_credits import UserCredits
from app.services import credits as credits_service
from app.services.billing import StripeBilling
from app.services.plans import FREE, FREE_PLAN, resolve_price

log = get_logger(__name__)


class SubscriptionStatus(BaseModel):
    """Reconciler output, serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    subscribed: bool = False
    plan: str = FREE
    billing_cycle: str | None = None
    subscription_end: str | None = None
    monthly_credits: int = 0
    extra_credits: int = 0
    credit_balance: int = 0
    refills_this_month: int = 0

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def format_timestamp(value: datetime | None) -> str | None:
    """UTC, millisecond precision, `Z` suffix (the format browsers produce)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _status(
    record: UserCredits,
    subscribed: bool,
    plan: str,
    billing_cycle: str | None,
    ends_at: datetime | None,
) -> SubscriptionStatus:
    return SubscriptionStatus(
        subscribed=subscribed,
        plan=plan,
        billing_cycle=billing_cycle,
        subscription_end=format_timestamp(ends_at),
        monthly_credits=record.monthly_credits,
        extra_credits=record.extra_credits,
        credit_balance=record.credit_balance,
        refills_this_month=record.refills_this_month,
    )


async def check_subscription(identity: Identity, billing: StripeBilling) -> SubscriptionStatus:
    """
    Resolve the caller's Stripe state and persist plan/status columns.
    Never moves credits through the ledger, so repeated calls are idempotent.
    """
    log.info("check_subscription", step="started", user_id=identity.user_id)

    customer_id = await billing.find_customer_id(identity.email)
    if customer_id is None:
        log.info("check_subscription", step="no_customer", user_id=identity.user_id)

        def free_defaults(record: UserCredits) -> dict[str, Any]:
            changes: dict[str, Any] = {"email": identity.email}
            # Only seed an unset allotment; the balance is never touched here
            if not record.monthly_credits:
                changes.update(
                    monthly_credits=FREE_PLAN.monthly_credits,
                    subscription_plan=FREE,
                    subscription_status=FREE,
                )
            return changes

        record = await credits_service.update_record(identity.user_id, free_defaults, email=identity.email)
        return _status(record, subscribed=False, plan=FREE, billing_cycle=None, ends_at=None)

    log.info("check_subscription", step="customer_found", customer_id=customer_id)
    subscription = await billing.get_active_subscription(customer_id)

    if subscription is None:
        log.info("check_subscription", step="no_active_subscription", customer_id=customer_id)
        record = await credits_service.update_record(
            identity.user_id,
            lambda _: {
                "email": identity.email,
                "subscription_plan": FREE,
                "billing_cycle": None,
                "subscription_status": FREE,
                "subscription_ends_at": None,
                "stripe_customer_id": customer_id,
                "monthly_credits": FREE_PLAN.monthly_credits,
            },
            email=identity.email,
        )
        return _status(record, subscribed=False, plan=FREE, billing_cycle=None, ends_at=None)

    plan = resolve_price(subscription.price_id)
    log.info(
        "check_subscription",
        step="active_subscription",
        subscription_id=subscription.id,
        price_id=subscription.price_id,
        plan=plan.plan,
    )
    record = await credits_service.update_record(
        identity.user_id,
        lambda _: {
            "email": identity.email,
            "subscription_plan": plan.plan,
            "billing_cycle": plan.billing_cycle,
            "monthly_credits": plan.monthly_credits,
            "subscription_status": "active",
            "subscription_ends_at": subscription.current_period_end,
            "stripe_customer_id": customer_id,
        },
        email=identity.email,
    )
    return _status(
        record,
        subscribed=True,
        plan=plan.plan,
        billing_cycle=plan.billing_cycle,
        ends_at=subscription.current_period_end,
    )
