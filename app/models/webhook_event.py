from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field

from app.models.user_credits import utcnow


class WebhookEvent(Document):
    """Stripe event ids already handled, so redeliveries are ignored."""

    event_id: Indexed(str, unique=True)
    event_type: str
    user_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "stripe_webhook_events"
