"""
Amora — admin.py
─────────────────────────────────────────────────────────────────
Admin endpoints. Bearer token with role=admin required.

  POST /api/admin/users/{user_id}/coins     {amount, note}  → manual coin credit
  POST /api/admin/users/{user_id}/premium   {is_premium}    → toggle premium
  GET  /api/admin/users/{user_id}/coins                     → balance + ledger

All actions are logged with the acting admin id.
─────────────────────────────────────────────────────────────────
"""

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from amora.core.errors import ValidationError
from amora.core.security import Principal, require_admin
from amora.users import private_profile

logger = logging.getLogger("amora.admin")

router = APIRouter(prefix="/api/admin", tags=["admin"])


class CreditRequest(BaseModel):
    amount: int
    note:   str = ""

class PremiumRequest(BaseModel):
    is_premium: bool


@router.post("/users/{user_id}/coins")
async def credit_coins(
    user_id:   str,
    body:      CreditRequest,
    request:   Request,
    principal: Principal = Depends(require_admin),
):
    if body.amount <= 0:
        raise ValidationError("amount must be positive")

    # 404 before touching the ledger
    await request.app.state.users.get_user(user_id)
    balance = await request.app.state.wallet.admin_credit(
        user_id, body.amount, body.note.strip() or "manual", principal.user_id
    )
    logger.info(f"Admin {principal.user_id} credited {body.amount} coins to {user_id}")
    return {"user_id": user_id, "credited": body.amount, "coins": balance}


@router.get("/users/{user_id}/coins")
async def coin_history(user_id: str, request: Request, principal: Principal = Depends(require_admin)):
    wallet = request.app.state.wallet
    return {
        "user_id": user_id,
        "coins":   await wallet.get_balance(user_id),
        "ledger":  [asdict(e) for e in await wallet.get_ledger(user_id)],
    }


@router.post("/users/{user_id}/premium")
async def set_premium(
    user_id:   str,
    body:      PremiumRequest,
    request:   Request,
    principal: Principal = Depends(require_admin),
):
    user = await request.app.state.users.set_premium(user_id, body.is_premium)
    logger.info(f"Admin {principal.user_id} set premium={body.is_premium} for {user_id}")
    return private_profile(user)
