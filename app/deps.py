"""Shared FastAPI dependencies."""

import re
from functools import lru_cache

from fastapi import Request
from pydantic import BaseModel

from app.core.config import get_settings
from app.core.exceptions import UnauthenticatedError
from app.core.logging import bind_user_id
from app.core.security import load_access_token, parse_bearer
from app.services.billing import StripeBilling


class Identity(BaseModel):
    """Authenticated caller as vouched for by the auth platform."""

    user_id: str
    email: str


async def get_current_identity(request: Request) -> Identity:
    """Dependency: verify the bearer token and return the caller."""
    token = parse_bearer(request.headers.get("Authorization"))
    if not token:
        raise UnauthenticatedError("No authorization header provided")
    payload = load_access_token(token)
    if not payload:
        raise UnauthenticatedError("Invalid or expired token")
    user_id = payload.get("user_id")
    email = payload.get("email")
    if not user_id or not email:
        raise UnauthenticatedError("User not authenticated or email not available")
    bind_user_id(user_id)
    return Identity(user_id=user_id, email=email)


@lru_cache
def _stripe_billing() -> StripeBilling:
    settings = get_settings()
    return StripeBilling(
        settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        timeout_seconds=settings.stripe_timeout_seconds,
    )


def get_billing() -> StripeBilling:
    """Dependency: the billing provider (overridden in tests)."""
    return _stripe_billing()


def get_return_origin(request: Request) -> str:
    """Origin to send the browser back to after Stripe; only allow-listed callers are trusted."""
    settings = get_settings()
    origin = request.headers.get("origin") or ""
    if origin in settings.cors_origins:
        return origin
    if origin and settings.cors_origin_regex and re.fullmatch(settings.cors_origin_regex, origin):
        return origin
    return settings.frontend_url
