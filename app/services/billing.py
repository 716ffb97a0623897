"""Stripe access behind a small async surface.

SDK calls are blocking, so each one runs in a worker thread under a bounded
timeout. Provider failures and timeouts surface as ProviderError; nothing here
touches the credit ledger.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import stripe

from app.core.exceptions import InvalidRequestError, ProviderError
from app.core.logging import get_logger

log = get_logger(__name__)

_RETRYABLE_STRIPE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def value(obj: Any, attr: str) -> Any:
    """Read a field from a Stripe object or a plain dict."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(attr)
    # Item access first: `items` collides with a method name on Stripe objects
    try:
        return obj[attr]
    except (KeyError, TypeError, IndexError, AttributeError):
        return getattr(obj, attr, None)


def metadata_dict(obj: Any) -> dict[str, Any]:
    metadata = value(obj, "metadata")
    if metadata is None:
        return {}
    if isinstance(metadata, dict):
        return dict(metadata)
    to_dict = getattr(metadata, "to_dict", None)
    if callable(to_dict):
        return dict(to_dict())
    return {}


def period_end(subscription: Any) -> datetime | None:
    """Current period end; newer API versions carry it on the subscription item."""
    ts = None
    items = value(value(subscription, "items"), "data") or []
    if items:
        ts = value(items[0], "current_period_end")
    if ts is None:
        ts = value(subscription, "current_period_end")
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


def first_price_id(subscription: Any) -> str | None:
    items = value(value(subscription, "items"), "data") or []
    if not items:
        return None
    return value(value(items[0], "price"), "id")


@dataclass(frozen=True)
class SubscriptionInfo:
    id: str
    status: str
    price_id: str | None
    current_period_end: datetime | None
    cancel_at_period_end: bool = False

    @classmethod
    def from_stripe(cls, subscription: Any) -> "SubscriptionInfo":
        return cls(
            id=value(subscription, "id"),
            status=value(subscription, "status") or "",
            price_id=first_price_id(subscription),
            current_period_end=period_end(subscription),
            cancel_at_period_end=bool(value(subscription, "cancel_at_period_end")),
        )


class StripeBilling:
    """Billing provider backed by the Stripe SDK."""

    def __init__(self, api_key: str, webhook_secret: str = "", timeout_seconds: float = 10.0):
        if not api_key:
            raise ProviderError("STRIPE_SECRET_KEY is not set", retryable=False)
        stripe.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout_seconds = timeout_seconds

    async def _call(self, step: str, fn: Callable[..., Any], **params: Any) -> Any:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, **params), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            log.warning("stripe_call", step=step, error="timeout", timeout_seconds=self.timeout_seconds)
            raise ProviderError("Billing provider timed out, please try again", retryable=True, details={"step": step})
        except stripe.StripeError as e:
            retryable = isinstance(e, _RETRYABLE_STRIPE_ERRORS)
            log.warning("stripe_call", step=step, error=type(e).__name__, message=str(e), retryable=retryable)
            raise ProviderError(
                getattr(e, "user_message", None) or "Billing provider error",
                retryable=retryable,
                details={"step": step},
            ) from e

    async def find_customer_id(self, email: str) -> str | None:
        customers = await self._call("list_customers", stripe.Customer.list, email=email, limit=1)
        data = value(customers, "data") or []
        return value(data[0], "id") if data else None

    async def get_customer_email(self, customer_id: str) -> str | None:
        customer = await self._call("retrieve_customer", stripe.Customer.retrieve, id=customer_id)
        if value(customer, "deleted"):
            return None
        return value(customer, "email")

    async def get_active_subscription(self, customer_id: str) -> SubscriptionInfo | None:
        subscriptions = await self._call(
            "list_subscriptions", stripe.Subscription.list, customer=customer_id, status="active", limit=1
        )
        data = value(subscriptions, "data") or []
        return SubscriptionInfo.from_stripe(data[0]) if data else None

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionInfo:
        subscription = await self._call("retrieve_subscription", stripe.Subscription.retrieve, id=subscription_id)
        return SubscriptionInfo.from_stripe(subscription)

    async def create_checkout_session(self, **params: Any) -> str:
        session = await self._call("create_checkout_session", stripe.checkout.Session.create, **params)
        log.info("stripe_call", step="checkout_session_created", session_id=value(session, "id"))
        return value(session, "url")

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        session = await self._call(
            "create_portal_session", stripe.billing_portal.Session.create, customer=customer_id, return_url=return_url
        )
        return value(session, "url")

    def construct_event(self, payload: bytes, signature: str | None) -> Any:
        if not self.webhook_secret:
            raise ProviderError("STRIPE_WEBHOOK_SECRET is not set", retryable=False)
        if not signature:
            raise InvalidRequestError("No signature")
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            log.warning("stripe_webhook", step="signature_invalid", message=str(e))
            raise InvalidRequestError("Invalid signature") from e
