"""Per-login subscription state for API consumers.

A `SubscriptionSession` is created at login and closed at logout. It caches the
last check-subscription response, polls it on an interval while started, and
wraps the checkout, refill and portal calls.
"""

import asyncio
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
from pydantic import ValidationError

from app.core.config import get_settings
from app.core.exceptions import AppError, UnauthenticatedError, error_from_payload
from app.core.logging import get_logger
from app.services.plans import FREE, max_refills
from app.services.subscriptions import SubscriptionStatus

log = get_logger(__name__)

RETURN_PARAMS = ("checkout", "credits", "amount", "plan")


@dataclass(frozen=True)
class ReturnNotice:
    title: str
    description: str
    url: str


class SubscriptionSession:
    def __init__(
        self,
        base_url: str,
        access_token: str,
        poll_interval: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        if not access_token:
            raise UnauthenticatedError("Please sign in")
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.poll_interval = poll_interval or get_settings().subscription_poll_seconds
        self.state = SubscriptionStatus()
        self.loading = True
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=30.0)
        self._poll_task: asyncio.Task | None = None

    async def __aenter__(self) -> "SubscriptionSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _request(self, method: str, path: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        response = await self._http.request(
            method,
            f"{self.base_url}{path}",
            json=json,
            headers={"Authorization": f"Bearer {self.access_token}"},
        )
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if response.is_error:
            raise error_from_payload(response.status_code, payload)
        if not isinstance(payload, dict):
            raise AppError("Unexpected response", status_code=response.status_code)
        return payload

    async def refresh(self) -> SubscriptionStatus:
        """Re-run check-subscription and replace the cached state."""
        try:
            payload = await self._request("POST", "/v1/billing/check-subscription")
            self.state = SubscriptionStatus.model_validate(payload)
        except ValidationError as e:
            raise AppError("Unexpected subscription response", details={"errors": e.errors(include_url=False)}) from e
        finally:
            self.loading = False
        log.info("subscription_session", step="refreshed", plan=self.state.plan, subscribed=self.state.subscribed)
        return self.state

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.refresh()
            except (AppError, httpx.HTTPError) as e:
                # Keep the last known state; next tick tries again
                log.warning("subscription_session", step="poll_failed", error=str(e))

    async def start(self) -> SubscriptionStatus:
        state = await self.refresh()
        if self._poll_task is None:
            self._poll_task = asyncio.create_task(self._poll())
        return state

    async def close(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        if self._owns_client:
            await self._http.aclose()

    def can_refill(self) -> bool:
        if not self.state.subscribed or self.state.plan == FREE:
            return False
        cap = max_refills(self.state.plan)
        return cap is None or self.state.refills_this_month < cap

    def has_credits_for(self, cost: int) -> bool:
        return self.state.credit_balance >= cost

    async def handle_return(self, url: str) -> ReturnNotice | None:
        """
        Recognise the page Stripe sent the browser back to. On a success marker,
        refresh immediately and return the notice plus the URL without the
        marker params, so a reload does not show it again.
        """
        parts = urlsplit(url)
        params = dict(parse_qsl(parts.query))
        if params.get("checkout") == "success":
            title = "Subscription activated!"
            description = "Welcome to your new plan. Your credits have been added."
        elif params.get("credits") == "success" and params.get("amount"):
            title = "Credits purchased!"
            description = f"{params['amount']} credits have been added to your account."
        else:
            return None

        kept = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in RETURN_PARAMS]
        clean_url = urlunsplit(parts._replace(query=urlencode(kept)))
        await self.refresh()
        return ReturnNotice(title=title, description=description, url=clean_url)

    async def create_checkout(self, plan: str, billing_cycle: str) -> str:
        payload = await self._request(
            "POST", "/v1/billing/create-checkout", json={"plan": plan, "billingCycle": billing_cycle}
        )
        return payload["url"]

    async def purchase_credits(self, pack_id: str) -> str:
        payload = await self._request("POST", "/v1/billing/purchase-credits", json={"packId": pack_id})
        return payload["url"]

    async def open_customer_portal(self) -> str:
        payload = await self._request("POST", "/v1/billing/customer-portal")
        return payload["url"]
