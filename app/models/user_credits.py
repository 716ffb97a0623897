from datetime import datetime, timezone

from beanie import Document, Indexed
from pydantic import Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserCredits(Document):
    """Per-user credit and subscription state. monthly_credits is the plan allotment; credit_balance is what can be spent."""

    user_id: Indexed(str, unique=True)
    email: Indexed(str) | None = None
    monthly_credits: int = 0
    extra_credits: int = 0  # purchased credits still unspent, never above credit_balance
    credit_balance: int = 0
    subscription_plan: str = "free"  # free | pro | studio | starter | professional | enterprise
    billing_cycle: str | None = None  # monthly | yearly
    subscription_status: str = "free"  # free | active | canceling | past_due | ...
    subscription_ends_at: datetime | None = None
    refills_this_month: int = 0
    stripe_customer_id: str | None = None
    version: int = 0  # compare-and-set counter, bumped on every write
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "users"
        indexes = [[("stripe_customer_id", 1)]]
