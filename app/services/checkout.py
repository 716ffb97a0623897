"""Stripe Checkout / portal session creation. Credits are granted later by the webhook."""

from app.core.exceptions import InvalidRequestError, RefillLimitReachedError
from app.core.logging import get_logger
from app.deps import Identity
from app.services import credits as credits_service
from app.services.billing import StripeBilling
from app.services.plans import SUBSCRIBED_STATUSES, can_refill, checkout_price, max_refills, refill_pack_for

log = get_logger(__name__)


async def _customer_for(identity: Identity, billing: StripeBilling) -> str | None:
    record = await credits_service.get_record(identity.user_id)
    if record and record.stripe_customer_id:
        return record.stripe_customer_id
    return await billing.find_customer_id(identity.email)


def _customer_params(customer_id: str | None, email: str) -> dict[str, str]:
    if customer_id:
        return {"customer": customer_id}
    return {"customer_email": email}


async def create_checkout(
    identity: Identity,
    plan: str | None,
    billing_cycle: str | None,
    billing: StripeBilling,
    origin: str,
) -> str:
    """Start a subscription checkout for pro/studio; returns the Stripe-hosted URL."""
    price = checkout_price(plan, billing_cycle)
    log.info("create_checkout", step="plan_selected", plan=plan, billing_cycle=billing_cycle, price_id=price.price_id)

    customer_id = await _customer_for(identity, billing)
    metadata = {
        "user_id": identity.user_id,
        "plan": price.plan,
        "billing_cycle": price.billing_cycle,
        "monthly_credits": str(price.monthly_credits),
    }
    url = await billing.create_checkout_session(
        mode="subscription",
        line_items=[{"price": price.price_id, "quantity": 1}],
        success_url=f"{origin}/dashboard?checkout=success&plan={price.plan}",
        cancel_url=f"{origin}/pricing?checkout=canceled",
        metadata=metadata,
        subscription_data={"metadata": metadata},
        **_customer_params(customer_id, identity.email),
    )
    log.info("create_checkout", step="session_created", plan=price.plan, existing_customer=bool(customer_id))
    return url


async def purchase_credits(
    identity: Identity,
    pack_id: str | None,
    billing: StripeBilling,
    origin: str,
) -> str:
    """Start a one-off refill checkout; only paid plans under their monthly refill cap may buy."""
    record = await credits_service.get_or_create_record(identity.user_id, identity.email)
    plan = record.subscription_plan
    subscribed = record.subscription_status in SUBSCRIBED_STATUSES
    if not can_refill(subscribed, plan, record.refills_this_month):
        cap = max_refills(plan)
        log.info(
            "purchase_credits",
            step="refill_limit_reached",
            plan=plan,
            refills_this_month=record.refills_this_month,
            max_refills=cap,
        )
        raise RefillLimitReachedError(
            f"You've reached your monthly refill limit ({cap or 0} per month for {plan} plan)",
            details={"plan": plan, "refills_this_month": record.refills_this_month, "max_refills": cap},
        )

    pack = refill_pack_for(pack_id, plan)
    customer_id = record.stripe_customer_id or await billing.find_customer_id(identity.email)
    url = await billing.create_checkout_session(
        mode="payment",
        line_items=[{"price": pack.price_id, "quantity": 1}],
        success_url=f"{origin}/pricing?credits=success&amount={pack.credits}",
        cancel_url=f"{origin}/pricing?credits=canceled",
        metadata={
            "user_id": identity.user_id,
            "credits": str(pack.credits),
            "type": "credit_refill",
            "plan": plan,
            "pack_id": pack.pack_id,
        },
        **_customer_params(customer_id, identity.email),
    )
    log.info("purchase_credits", step="session_created", pack_id=pack.pack_id, credits=pack.credits)
    return url


async def create_portal_session(identity: Identity, billing: StripeBilling, origin: str) -> str:
    """Stripe customer portal for managing or cancelling the subscription."""
    customer_id = await _customer_for(identity, billing)
    if not customer_id:
        raise InvalidRequestError("No billing account found. Please subscribe to a plan first.")
    url = await billing.create_portal_session(customer_id, return_url=f"{origin}/dashboard")
    log.info("customer_portal", step="session_created", customer_id=customer_id)
    return url
