import json
import os
import uuid
from datetime import datetime, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Use in-memory DB and a fixed signing key
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB_NAME", "mcleuker_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")

PRO_MONTHLY = "price_1St8PXB0LQyHc0cSUfR0Sz7u"
PRO_YEARLY = "price_1St8PnB0LQyHc0cSxyKT7KkJ"
STUDIO_MONTHLY = "price_1St8QuB0LQyHc0cSHex3exfz"
VALID_SIGNATURE = "t=1,v1=valid"


class FakeBilling:
    """In-memory stand-in for StripeBilling with the same async surface."""

    def __init__(self):
        self.customers: dict[str, str] = {}
        self.subscriptions: dict[str, dict] = {}
        self.checkout_sessions: list[dict] = []
        self.portal_sessions: list[dict] = []

    def add_customer(self, email: str, customer_id: str = "cus_1") -> str:
        self.customers[email] = customer_id
        return customer_id

    def add_subscription(
        self,
        customer_id: str,
        price_id: str,
        subscription_id: str = "sub_1",
        status: str = "active",
        period_end: datetime | None = None,
    ) -> dict:
        period_end = period_end or datetime(2026, 11, 18, 12, 0, tzinfo=timezone.utc)
        subscription = {
            "id": subscription_id,
            "customer": customer_id,
            "status": status,
            "cancel_at_period_end": False,
            "metadata": {},
            "items": {"data": [{"price": {"id": price_id}, "current_period_end": int(period_end.timestamp())}]},
        }
        self.subscriptions[subscription_id] = subscription
        return subscription

    async def find_customer_id(self, email):
        return self.customers.get(email)

    async def get_customer_email(self, customer_id):
        for email, cid in self.customers.items():
            if cid == customer_id:
                return email
        return None

    async def get_active_subscription(self, customer_id):
        from app.services.billing import SubscriptionInfo

        for subscription in self.subscriptions.values():
            if subscription["customer"] == customer_id and subscription["status"] == "active":
                return SubscriptionInfo.from_stripe(subscription)
        return None

    async def retrieve_subscription(self, subscription_id):
        from app.services.billing import SubscriptionInfo

        return SubscriptionInfo.from_stripe(self.subscriptions[subscription_id])

    async def create_checkout_session(self, **params):
        self.checkout_sessions.append(params)
        return f"https://checkout.stripe.test/c/{len(self.checkout_sessions)}"

    async def create_portal_session(self, customer_id, return_url):
        self.portal_sessions.append({"customer": customer_id, "return_url": return_url})
        return f"https://billing.stripe.test/p/{customer_id}"

    def construct_event(self, payload, signature):
        from app.core.exceptions import InvalidRequestError

        if not signature:
            raise InvalidRequestError("No signature")
        if signature != VALID_SIGNATURE:
            raise InvalidRequestError("Invalid signature")
        return json.loads(payload)


def make_event(event_type: str, obj: dict, event_id: str | None = None) -> bytes:
    return json.dumps(
        {"id": event_id or f"evt_{uuid.uuid4().hex[:12]}", "type": event_type, "data": {"object": obj}}
    ).encode()


@pytest_asyncio.fixture(autouse=True)
async def db():
    from mongomock_motor import AsyncMongoMockClient

    from app.db.init import init_db

    database = AsyncMongoMockClient()[f"mcleuker_test_{uuid.uuid4().hex}"]
    await init_db(database=database)
    yield database


@pytest.fixture
def billing() -> FakeBilling:
    return FakeBilling()


@pytest.fixture
def identity():
    from app.deps import Identity

    return Identity(user_id="user-1", email="ada@example.com")


@pytest.fixture
def auth_headers():
    from app.core.security import create_access_token

    def _headers(user_id: str = "user-1", email: str = "ada@example.com") -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user_id, email)}"}

    return _headers


@pytest_asyncio.fixture
async def client(billing) -> AsyncGenerator[AsyncClient, None]:
    from app.deps import get_billing
    from app.main import app

    app.dependency_overrides[get_billing] = lambda: billing
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
