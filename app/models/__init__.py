from app.models.user_credits import UserCredits
from app.models.credit_transaction import CreditTransaction
from app.models.webhook_event import WebhookEvent

__all__ = [
    "UserCredits",
    "CreditTransaction",
    "WebhookEvent",
]
