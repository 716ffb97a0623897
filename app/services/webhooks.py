"""Stripe webhook: verify, dedupe by event id, then apply plan changes and credit grants.

Credit grants carry the event id as ledger idempotency key, and the event is only
marked processed once its handler finished, so a Stripe retry after a failure is
safe to replay.
"""

from typing import Any, Awaitable, Callable

from pymongo.errors import DuplicateKeyError

from app.core.logging import get_logger
from app.models.user_credits import UserCredits
from app.models.webhook_event import WebhookEvent
from app.services import credits as credits_service
from app.services.billing import StripeBilling, SubscriptionInfo, metadata_dict, value
from app.services.plans import FREE, FREE_PLAN, PRICES, monthly_credits_for, resolve_price

log = get_logger(__name__)

Handler = Callable[[Any, str, StripeBilling], Awaitable[str | None]]


def _key(event_id: str) -> str:
    return f"stripe:{event_id}"


async def find_user(
    user_id: str | None = None,
    customer_id: str | None = None,
    email: str | None = None,
) -> UserCredits | None:
    """
    Locate the record by metadata user id, then Stripe customer id, then email.
    A user id from our own checkout metadata is trusted, so its record is created if missing.
    """
    if user_id:
        return await credits_service.get_or_create_record(user_id, email)
    if customer_id:
        record = await UserCredits.find_one(UserCredits.stripe_customer_id == customer_id)
        if record:
            return record
    if email:
        return await UserCredits.find_one(UserCredits.email == email)
    return None


async def _subscription_owner(subscription: Any, billing: StripeBilling) -> UserCredits | None:
    customer_id = value(subscription, "customer")
    record = await find_user(user_id=metadata_dict(subscription).get("user_id"), customer_id=customer_id)
    if record is None and customer_id:
        record = await find_user(email=await billing.get_customer_email(customer_id))
    return record


async def _checkout_completed(session: Any, event_id: str, billing: StripeBilling) -> str | None:
    metadata = metadata_dict(session)
    email = value(session, "customer_email") or value(value(session, "customer_details"), "email")
    customer_id = value(session, "customer")
    record = await find_user(user_id=metadata.get("user_id"), customer_id=customer_id, email=email)
    if record is None:
        log.warning("stripe_webhook", step="user_not_found", event_id=event_id, email=email)
        return None

    mode = value(session, "mode")
    if mode == "subscription":
        subscription = await billing.retrieve_subscription(value(session, "subscription"))
        plan = resolve_price(subscription.price_id)
        log.info(
            "stripe_webhook",
            step="subscription_checkout",
            subscription_id=subscription.id,
            price_id=subscription.price_id,
            plan=plan.plan,
        )
        changes = {
            "subscription_plan": plan.plan,
            "billing_cycle": plan.billing_cycle or metadata.get("billing_cycle") or "monthly",
            "subscription_status": "active",
            "subscription_ends_at": subscription.current_period_end,
            "refills_this_month": 0,
        }
        if customer_id:
            changes["stripe_customer_id"] = customer_id
        await credits_service.add_credits(
            record.user_id,
            plan.monthly_credits,
            "subscription_reset",
            f"{plan.plan} subscription activated",
            idempotency_key=_key(event_id),
            also_set=lambda _: changes,
        )
    elif mode == "payment" and metadata.get("type") == "credit_refill":
        credits = int(metadata.get("credits") or 0)
        log.info("stripe_webhook", step="credit_refill", credits=credits)
        if credits > 0:
            # The refill counter moves in the same write as the credits
            await credits_service.add_credits(
                record.user_id,
                credits,
                "purchase",
                f"Credit refill - {credits} credits",
                idempotency_key=_key(event_id),
                also_set=lambda r: {"refills_this_month": r.refills_this_month + 1},
            )
    return record.user_id


def _invoice_price_id(invoice: Any) -> str | None:
    lines = value(value(invoice, "lines"), "data") or []
    if not lines:
        return None
    line = lines[0]
    price_id = value(value(line, "price"), "id")
    if price_id is None:
        # newer API versions nest it under pricing.price_details
        price_id = value(value(value(line, "pricing"), "price_details"), "price")
    return price_id


def _invoice_subscription_id(invoice: Any) -> str | None:
    subscription_id = value(invoice, "subscription")
    if subscription_id is None:
        subscription_id = value(value(value(invoice, "parent"), "subscription_details"), "subscription")
    if subscription_id is not None and not isinstance(subscription_id, str):
        subscription_id = value(subscription_id, "id")
    return subscription_id


async def _invoice_paid(invoice: Any, event_id: str, billing: StripeBilling) -> str | None:
    record = await find_user(customer_id=value(invoice, "customer"), email=value(invoice, "customer_email"))
    if record is None:
        return None
    if value(invoice, "billing_reason") != "subscription_cycle":
        return record.user_id

    price_id = _invoice_price_id(invoice)
    plan = resolve_price(price_id)
    credits = plan.monthly_credits
    log.info("stripe_webhook", step="subscription_renewal", price_id=price_id, credits=credits)

    changes: dict[str, Any] = {"subscription_status": "active", "refills_this_month": 0}
    subscription_id = _invoice_subscription_id(invoice)
    if subscription_id:
        subscription = await billing.retrieve_subscription(subscription_id)
        changes["subscription_ends_at"] = subscription.current_period_end
    await credits_service.add_credits(
        record.user_id,
        credits,
        "subscription_reset",
        f"{plan.plan} renewal - monthly credits reset",
        idempotency_key=_key(event_id),
        also_set=lambda _: changes,
    )
    return record.user_id


async def _invoice_payment_failed(invoice: Any, event_id: str, billing: StripeBilling) -> str | None:
    log.info(
        "stripe_webhook",
        step="invoice_payment_failed",
        invoice_id=value(invoice, "id"),
        attempt_count=value(invoice, "attempt_count"),
    )
    record = await find_user(customer_id=value(invoice, "customer"), email=value(invoice, "customer_email"))
    if record is None:
        return None
    await credits_service.update_record(record.user_id, lambda _: {"subscription_status": "past_due"})
    return record.user_id


async def _subscription_created(subscription: Any, event_id: str, billing: StripeBilling) -> str | None:
    record = await _subscription_owner(subscription, billing)
    if record is None:
        log.warning("stripe_webhook", step="user_not_found", event_id=event_id)
        return None
    info = SubscriptionInfo.from_stripe(subscription)
    plan = resolve_price(info.price_id)
    changes = {
        "subscription_plan": plan.plan,
        "billing_cycle": plan.billing_cycle or "monthly",
        "subscription_status": info.status,
        "stripe_customer_id": value(subscription, "customer"),
        "subscription_ends_at": info.current_period_end,
        "refills_this_month": 0,
    }
    await credits_service.add_credits(
        record.user_id,
        plan.monthly_credits,
        "subscription_reset",
        f"{plan.plan} subscription started",
        idempotency_key=_key(event_id),
        also_set=lambda _: changes,
    )
    return record.user_id


async def _subscription_updated(subscription: Any, event_id: str, billing: StripeBilling) -> str | None:
    record = await _subscription_owner(subscription, billing)
    if record is None:
        return None
    info = SubscriptionInfo.from_stripe(subscription)
    new_plan = PRICES.get(info.price_id or "")
    previous_plan = record.subscription_plan
    log.info(
        "stripe_webhook",
        step="subscription_updated",
        subscription_id=info.id,
        status=info.status,
        previous_plan=previous_plan,
        new_plan=new_plan.plan if new_plan else None,
        cancel_at_period_end=info.cancel_at_period_end,
    )

    changes: dict[str, Any] = {
        "subscription_status": "canceling" if info.cancel_at_period_end else info.status,
        "subscription_ends_at": info.current_period_end,
    }
    upgrade_credits = 0
    if new_plan and new_plan.plan != previous_plan:
        changes["subscription_plan"] = new_plan.plan
        changes["billing_cycle"] = new_plan.billing_cycle
        changes["monthly_credits"] = new_plan.monthly_credits
        upgrade_credits = new_plan.monthly_credits - monthly_credits_for(previous_plan)

    if upgrade_credits > 0:
        await credits_service.add_credits(
            record.user_id,
            upgrade_credits,
            "grant",
            f"Plan upgrade to {new_plan.plan} - {upgrade_credits} additional credits",
            idempotency_key=_key(event_id),
            also_set=lambda _: changes,
        )
    else:
        await credits_service.update_record(record.user_id, lambda _: changes)
    return record.user_id


async def _subscription_deleted(subscription: Any, event_id: str, billing: StripeBilling) -> str | None:
    record = await _subscription_owner(subscription, billing)
    if record is None:
        return None
    log.info("stripe_webhook", step="subscription_deleted", subscription_id=value(subscription, "id"))
    await credits_service.update_record(
        record.user_id,
        lambda _: {
            "subscription_plan": FREE,
            "billing_cycle": None,
            "subscription_status": FREE,
            "monthly_credits": FREE_PLAN.monthly_credits,
            "subscription_ends_at": None,
            "refills_this_month": 0,
        },
    )
    return record.user_id


async def _customer_created(customer: Any, event_id: str, billing: StripeBilling) -> str | None:
    email = value(customer, "email")
    record = await find_user(email=email) if email else None
    if record is None:
        return None
    await credits_service.update_record(record.user_id, lambda _: {"stripe_customer_id": value(customer, "id")})
    log.info("stripe_webhook", step="customer_linked", user_id=record.user_id)
    return record.user_id


HANDLERS: dict[str, Handler] = {
    "checkout.session.completed": _checkout_completed,
    "invoice.paid": _invoice_paid,
    "invoice.payment_failed": _invoice_payment_failed,
    "customer.subscription.created": _subscription_created,
    "customer.subscription.updated": _subscription_updated,
    "customer.subscription.deleted": _subscription_deleted,
    "customer.created": _customer_created,
}


async def handle_webhook(payload: bytes, signature: str | None, billing: StripeBilling) -> dict[str, Any]:
    event = billing.construct_event(payload, signature)
    event_id = value(event, "id")
    event_type = value(event, "type")
    log.info("stripe_webhook", step="verified", event_id=event_id, event_type=event_type)

    if await WebhookEvent.find_one(WebhookEvent.event_id == event_id):
        log.info("stripe_webhook", step="duplicate", event_id=event_id)
        return {"received": True, "duplicate": True}

    handler = HANDLERS.get(event_type)
    user_id = None
    if handler is None:
        log.info("stripe_webhook", step="unhandled_event", event_type=event_type)
    else:
        user_id = await handler(value(value(event, "data"), "object"), event_id, billing)

    try:
        await WebhookEvent(event_id=event_id, event_type=event_type, user_id=user_id).insert()
    except DuplicateKeyError:
        log.info("stripe_webhook", step="processed_concurrently", event_id=event_id)
    return {"received": True}
