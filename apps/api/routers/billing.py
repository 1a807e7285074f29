"""Billing router: credit balance and the payment-completion webhook."""

from __future__ import annotations

import logging
import secrets
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import require_webhook_secret
from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from services.credits import complete_purchase, ensure_user_profile, get_credit_summary, record_purchase

router = APIRouter()
logger = logging.getLogger(__name__)


class PaymentCompletedEvent(BaseModel):
    payment_reference: str = Field(min_length=1, max_length=255)
    user_id: str = Field(min_length=1)
    credits: int = Field(ge=1, le=10000)
    amount: int = Field(ge=0)
    status: Literal["succeeded", "failed"] = "succeeded"
    email: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


def _verify_webhook_secret(supplied: Optional[str]) -> None:
    try:
        expected = require_webhook_secret()
    except ValueError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if not supplied or not secrets.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid webhook secret.")


@router.get("/credits")
async def credits_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    await ensure_user_profile(scoped_user_id, db, email=auth.email)
    return await get_credit_summary(scoped_user_id, db)


@router.post("/webhook")
async def payment_webhook(
    event: PaymentCompletedEvent,
    x_webhook_secret: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    """Record a purchase and grant its credits once per payment reference."""
    _verify_webhook_secret(x_webhook_secret)

    await ensure_user_profile(event.user_id, db, email=event.email)
    purchase = await record_purchase(
        event.user_id,
        db,
        payment_reference=event.payment_reference,
        amount=event.amount,
        credits=event.credits,
        metadata=event.metadata,
    )
    if purchase.user_id != event.user_id:
        logger.error(
            "Payment %s replayed for a different user (%s != %s)",
            event.payment_reference,
            event.user_id,
            purchase.user_id,
        )
        raise HTTPException(status_code=409, detail="payment_reference already belongs to another user.")

    completion = await complete_purchase(
        db,
        payment_reference=event.payment_reference,
        succeeded=event.status == "succeeded",
    )
    return {
        "received": True,
        "payment_reference": completion.payment_reference,
        "status": completion.status,
        "credits_granted": completion.credits_granted,
        "already_processed": completion.already_processed,
        "balance_after": completion.new_balance,
    }
