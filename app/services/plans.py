"""Plan catalog: Stripe price ids -> plan, billing cycle and monthly credits.

Keep the price ids in lockstep with the Stripe dashboard. Unknown prices on an
active subscription degrade to DEFAULT_PAID_PLAN instead of failing.
"""

from dataclasses import dataclass

from app.core.exceptions import InvalidRequestError
from app.core.logging import get_logger

log = get_logger(__name__)

FREE = "free"
PURCHASABLE_PLANS = ("pro", "studio")
BILLING_CYCLES = ("monthly", "yearly")
SUBSCRIBED_STATUSES = ("active", "canceling")


@dataclass(frozen=True)
class PlanPrice:
    price_id: str | None
    plan: str
    billing_cycle: str | None
    monthly_credits: int


@dataclass(frozen=True)
class RefillPack:
    pack_id: str
    price_id: str
    credits: int
    plans: tuple[str, ...]


FREE_PLAN = PlanPrice(price_id=None, plan=FREE, billing_cycle=None, monthly_credits=40)
DEFAULT_PAID_PLAN = PlanPrice(price_id=None, plan="pro", billing_cycle=None, monthly_credits=700)

PRICES: dict[str, PlanPrice] = {
    p.price_id: p
    for p in (
        PlanPrice("price_1St8PXB0LQyHc0cSUfR0Sz7u", "pro", "monthly", 700),
        PlanPrice("price_1St8PnB0LQyHc0cSxyKT7KkJ", "pro", "yearly", 700),
        PlanPrice("price_1St8QuB0LQyHc0cSHex3exfz", "studio", "monthly", 1800),
        PlanPrice("price_1St8R4B0LQyHc0cS3NOO4aXq", "studio", "yearly", 1800),
    )
}

# None = unlimited
MAX_REFILLS_PER_MONTH: dict[str, int | None] = {
    FREE: 0,
    "pro": 1,
    "studio": 2,
    # legacy plans
    "starter": 2,
    "professional": 3,
    "enterprise": None,
}

REFILL_PACKS: dict[str, RefillPack] = {
    "refill_pro": RefillPack(
        "refill_pro", "price_1St8RQB0LQyHc0cSaXgacgo8", 1000, ("pro", "starter", "professional")
    ),
    "refill_studio": RefillPack(
        "refill_studio", "price_1St8hdB0LQyHc0cSBbGILcsV", 1000, ("studio", "enterprise")
    ),
}
REFILL_ALIAS = "refill"


def resolve_price(price_id: str | None) -> PlanPrice:
    """Map an active subscription's price to a plan, falling back to the default paid plan."""
    plan = PRICES.get(price_id or "")
    if plan is None:
        log.warning("plan_catalog", step="unknown_price_id", price_id=price_id, fallback=DEFAULT_PAID_PLAN.plan)
        return DEFAULT_PAID_PLAN
    return plan


def monthly_credits_for(plan: str | None) -> int:
    """Allotment of the current (non-legacy) tier; legacy or unknown plans count as free."""
    for p in PRICES.values():
        if p.plan == plan:
            return p.monthly_credits
    return FREE_PLAN.monthly_credits


def checkout_price(plan: str | None, billing_cycle: str | None) -> PlanPrice:
    if plan not in PURCHASABLE_PLANS:
        raise InvalidRequestError("Invalid plan selected. Choose Pro or Studio.", details={"plan": plan})
    if billing_cycle not in BILLING_CYCLES:
        raise InvalidRequestError("Invalid billing cycle", details={"billing_cycle": billing_cycle})
    for p in PRICES.values():
        if p.plan == plan and p.billing_cycle == billing_cycle:
            return p
    raise InvalidRequestError("Plan is not available for checkout", details={"plan": plan})


def max_refills(plan: str | None) -> int | None:
    return MAX_REFILLS_PER_MONTH.get(plan or FREE, 0)


def can_refill(subscribed: bool, plan: str | None, refills_this_month: int) -> bool:
    if not subscribed or not plan or plan == FREE:
        return False
    cap = max_refills(plan)
    return cap is None or refills_this_month < cap


def refill_pack_for(pack_id: str | None, plan: str) -> RefillPack:
    """Resolve the requested pack; `refill` picks the pack belonging to the caller's plan."""
    if pack_id == REFILL_ALIAS:
        for pack in REFILL_PACKS.values():
            if plan in pack.plans:
                return pack
    pack = REFILL_PACKS.get(pack_id or "")
    if pack is None or plan not in pack.plans:
        raise InvalidRequestError("Unknown credit pack for this plan", details={"pack_id": pack_id, "plan": plan})
    return pack
