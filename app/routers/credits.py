from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from app.core.pagination import Page, clamp_page
from app.deps import Identity, get_current_identity
from app.services import credits as credits_service

router = APIRouter()


class DeductRequest(BaseModel):
    amount: Any = None
    description: str | None = None


@router.get("/balance")
async def credits_balance(identity: Identity = Depends(get_current_identity)):
    """Return current credit balance."""
    record = await credits_service.get_or_create_record(identity.user_id, identity.email)
    return {
        "balance": record.credit_balance,
        "monthlyCredits": record.monthly_credits,
        "extraCredits": record.extra_credits,
    }


@router.get("/transactions", response_model=Page[dict])
async def credits_transactions(
    identity: Identity = Depends(get_current_identity),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return credit transactions for current user (newest first)."""
    limit, offset = clamp_page(limit, offset)
    entries, total = await credits_service.list_transactions(identity.user_id, limit, offset)
    items = [
        {
            "id": str(e.id),
            "amount": e.amount,
            "type": e.type,
            "description": e.description,
            "balanceAfter": e.balance_after,
            "createdAt": e.created_at.isoformat(),
        }
        for e in entries
    ]
    return Page(items=items, limit=limit, offset=offset, total=total)


@router.post("/deduct")
async def credits_deduct(body: DeductRequest, identity: Identity = Depends(get_current_identity)):
    """Spend credits for an AI operation; 402 when the balance is short."""
    _, balance_after = await credits_service.deduct_credits(
        identity.user_id, body.amount, body.description or "AI usage"
    )
    return {"success": True, "newBalance": balance_after}
