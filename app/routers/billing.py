from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field

from app.deps import Identity, get_billing, get_current_identity, get_return_origin
from app.services import checkout as checkout_service
from app.services import subscriptions as subscriptions_service
from app.services import webhooks as webhooks_service
from app.services.billing import StripeBilling

router = APIRouter()


class CreateCheckoutRequest(BaseModel):
    plan: str | None = None
    billing_cycle: str | None = Field(None, alias="billingCycle")


class PurchaseCreditsRequest(BaseModel):
    pack_id: str | None = Field(None, alias="packId")


@router.api_route("/check-subscription", methods=["GET", "POST"])
async def check_subscription(
    identity: Identity = Depends(get_current_identity),
    billing: StripeBilling = Depends(get_billing),
):
    """Reconcile the caller's Stripe subscription into their credit record."""
    status = await subscriptions_service.check_subscription(identity, billing)
    return status.to_response()


@router.post("/create-checkout")
async def create_checkout(
    body: CreateCheckoutRequest,
    identity: Identity = Depends(get_current_identity),
    billing: StripeBilling = Depends(get_billing),
    origin: str = Depends(get_return_origin),
):
    url = await checkout_service.create_checkout(identity, body.plan, body.billing_cycle, billing, origin)
    return {"url": url}


@router.post("/purchase-credits")
async def purchase_credits(
    body: PurchaseCreditsRequest,
    identity: Identity = Depends(get_current_identity),
    billing: StripeBilling = Depends(get_billing),
    origin: str = Depends(get_return_origin),
):
    """One-off credit refill checkout, subject to the plan's monthly refill cap."""
    url = await checkout_service.purchase_credits(identity, body.pack_id, billing, origin)
    return {"url": url}


@router.post("/customer-portal")
async def customer_portal(
    identity: Identity = Depends(get_current_identity),
    billing: StripeBilling = Depends(get_billing),
    origin: str = Depends(get_return_origin),
):
    url = await checkout_service.create_portal_session(identity, billing, origin)
    return {"url": url}


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    billing: StripeBilling = Depends(get_billing),
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
):
    """Stripe webhook: plan changes and credit grants (idempotent per event id)."""
    body = await request.body()
    return await webhooks_service.handle_webhook(body, stripe_signature, billing)
