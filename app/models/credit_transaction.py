from datetime import datetime

from beanie import Document
from pydantic import Field

from app.models.user_credits import utcnow

TRANSACTION_TYPES = ("usage", "grant", "purchase", "refund", "subscription_reset", "bonus")


class CreditTransaction(Document):
    """Append-only audit row written by every ledger mutation."""

    user_id: str
    amount: int  # positive = credit, negative = debit
    type: str
    description: str | None = None
    balance_after: int
    idempotency_key: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "credit_transactions"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("user_id", 1), ("idempotency_key", 1)],
        ]
