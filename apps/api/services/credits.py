"""Credit ledger: atomic balance mutations and purchase reconciliation.

Every balance change is a single conditional ``UPDATE ... RETURNING`` so that
concurrent requests are serialized by the database row lock and the
``credits >= 0`` check constraint is never violated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.purchase import Purchase
from models.user import User
from models.user_profile import UserProfile
from services.ledger_types import (
    ConsumeOutcome,
    CreditConsumed,
    CreditRefunded,
    CreditsAdded,
    InsufficientCredits,
    LedgerStoreError,
)

logger = logging.getLogger(__name__)


CREDIT_PURPOSES = ("adventure", "expansion")

# Every purpose is charged exactly one credit.
CREDIT_COST = 1


def credit_costs() -> Dict[str, int]:
    return {purpose: CREDIT_COST for purpose in CREDIT_PURPOSES}


def require_known_purpose(purpose: str) -> str:
    if purpose not in CREDIT_PURPOSES:
        raise ValueError(f"Unknown credit purpose: {purpose}")
    return purpose


@dataclass(frozen=True)
class PurchaseCompletion:
    payment_reference: str
    status: str
    credits_granted: int
    new_balance: Optional[int]
    already_processed: bool


async def _store_failure(db: AsyncSession, *, operation: str, subject_id: Optional[str]) -> LedgerStoreError:
    await db.rollback()
    logger.exception("Credit store failure during %s for %s", operation, subject_id)
    return LedgerStoreError(
        f"Credit store unavailable during {operation}",
        operation=operation,
        subject_id=subject_id,
    )


async def get_credit_balance(user_id: str, db: AsyncSession) -> int:
    try:
        result = await db.execute(select(UserProfile.credits).where(UserProfile.id == user_id))
    except SQLAlchemyError as exc:
        raise await _store_failure(db, operation="get_balance", subject_id=user_id) from exc
    return int(result.scalar_one_or_none() or 0)


def _placeholder_email(user_id: str) -> str:
    return f"{user_id}@local.invalid"


async def _create_user_profile(user_id: str, db: AsyncSession, email: str) -> UserProfile:
    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if user is None:
        db.add(User(id=user_id, email=email))
        await db.flush()

    profile = (await db.execute(select(UserProfile).where(UserProfile.id == user_id))).scalar_one_or_none()
    if profile is not None:
        await db.commit()
        return profile

    profile = UserProfile(
        id=user_id,
        credits=max(int(settings.DEFAULT_SIGNUP_CREDITS), 0),
        total_purchased=0,
    )
    db.add(profile)
    await db.commit()
    return profile


async def ensure_user_profile(user_id: str, db: AsyncSession, *, email: Optional[str] = None) -> UserProfile:
    """Create the account and its balance row on first use.

    A concurrent request may create the same rows first, and ``email`` may
    already belong to a different account. Both surface as ``IntegrityError``;
    the second case falls back to a placeholder address so the balance row
    can still be created.
    """
    try:
        try:
            return await _create_user_profile(user_id, db, email or _placeholder_email(user_id))
        except IntegrityError:
            await db.rollback()

        result = await db.execute(select(UserProfile).where(UserProfile.id == user_id))
        profile = result.scalar_one_or_none()
        if profile is not None:
            return profile

        logger.warning("Email for user %s already belongs to another account; using a placeholder", user_id)
        return await _create_user_profile(user_id, db, _placeholder_email(user_id))
    except SQLAlchemyError as exc:
        raise await _store_failure(db, operation="ensure_profile", subject_id=user_id) from exc


async def consume_credit(
    user_id: str,
    db: AsyncSession,
    *,
    purpose: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> ConsumeOutcome:
    """Take exactly one credit, or report the live balance when none is left."""
    require_known_purpose(purpose)
    try:
        result = await db.execute(
            update(UserProfile)
            .where(UserProfile.id == user_id, UserProfile.credits >= 1)
            .values(credits=UserProfile.credits - 1)
            .returning(UserProfile.credits)
            .execution_options(synchronize_session=False)
        )
        remaining = result.scalar_one_or_none()
        if remaining is None:
            balance = await get_credit_balance(user_id, db)
            await db.rollback()
            logger.info("Insufficient credits for %s: user=%s balance=%s", purpose, user_id, balance)
            return InsufficientCredits(purpose=purpose, balance=balance)
        await db.commit()
    except SQLAlchemyError as exc:
        raise await _store_failure(db, operation="consume", subject_id=user_id) from exc

    logger.info(
        "Consumed credit: user=%s purpose=%s remaining=%s metadata=%s",
        user_id,
        purpose,
        remaining,
        metadata or {},
    )
    return CreditConsumed(purpose=purpose, remaining_credits=int(remaining))


async def refund_credit(
    user_id: str,
    db: AsyncSession,
    *,
    purpose: str,
    reason: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> CreditRefunded:
    """Return one credit. Callers guarantee at most one refund per consumed credit."""
    try:
        result = await db.execute(
            update(UserProfile)
            .where(UserProfile.id == user_id)
            .values(credits=UserProfile.credits + 1)
            .returning(UserProfile.credits)
            .execution_options(synchronize_session=False)
        )
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            await db.rollback()
            raise LedgerStoreError(
                f"No credit profile for user {user_id}",
                operation="refund",
                subject_id=user_id,
            )
        await db.commit()
    except SQLAlchemyError as exc:
        raise await _store_failure(db, operation="refund", subject_id=user_id) from exc

    logger.info(
        "Refunded credit: user=%s purpose=%s reason=%s balance=%s metadata=%s",
        user_id,
        purpose,
        reason,
        new_balance,
        metadata or {},
    )
    return CreditRefunded(purpose=purpose, reason=reason, new_balance=int(new_balance))


async def _apply_credit_grant(user_id: str, db: AsyncSession, amount: int) -> Tuple[int, int]:
    result = await db.execute(
        update(UserProfile)
        .where(UserProfile.id == user_id)
        .values(
            credits=UserProfile.credits + amount,
            total_purchased=UserProfile.total_purchased + amount,
        )
        .returning(UserProfile.credits, UserProfile.total_purchased)
        .execution_options(synchronize_session=False)
    )
    row = result.one_or_none()
    if row is None:
        raise LedgerStoreError(
            f"No credit profile for user {user_id}",
            operation="add_credits",
            subject_id=user_id,
        )
    return int(row[0]), int(row[1])


async def add_credits(user_id: str, db: AsyncSession, *, amount: int) -> CreditsAdded:
    """Grant purchased credits. The payment collaborator owns idempotency."""
    grant = int(amount)
    if grant <= 0:
        raise ValueError("amount must be greater than 0")
    try:
        new_balance, total_purchased = await _apply_credit_grant(user_id, db, grant)
        await db.commit()
    except LedgerStoreError:
        await db.rollback()
        raise
    except SQLAlchemyError as exc:
        raise await _store_failure(db, operation="add_credits", subject_id=user_id) from exc

    logger.info("Added %s credits: user=%s balance=%s", grant, user_id, new_balance)
    return CreditsAdded(amount=grant, new_balance=new_balance, total_purchased=total_purchased)


async def record_purchase(
    user_id: str,
    db: AsyncSession,
    *,
    payment_reference: str,
    amount: int,
    credits: int,
    metadata: Optional[Dict[str, Any]] = None,
) -> Purchase:
    """Insert a pending purchase; repeated deliveries return the existing row."""
    if int(credits) <= 0:
        raise ValueError("credits must be greater than 0")
    try:
        existing = await db.execute(select(Purchase).where(Purchase.payment_reference == payment_reference))
        purchase = existing.scalar_one_or_none()
        if purchase is not None:
            return purchase

        purchase = Purchase(
            user_id=user_id,
            payment_reference=payment_reference,
            amount=int(amount),
            credits=int(credits),
            status="pending",
            metadata_json=metadata or {},
        )
        db.add(purchase)
        await db.commit()
        return purchase
    except IntegrityError:
        await db.rollback()
        result = await db.execute(select(Purchase).where(Purchase.payment_reference == payment_reference))
        return result.scalar_one()
    except SQLAlchemyError as exc:
        raise await _store_failure(db, operation="record_purchase", subject_id=user_id) from exc


async def complete_purchase(
    db: AsyncSession,
    *,
    payment_reference: str,
    succeeded: bool,
) -> PurchaseCompletion:
    """Move a pending purchase to its final status, granting credits on success.

    The status transition and the credit grant commit together, and only the
    request that wins the ``pending`` transition grants anything.
    """
    final_status = "succeeded" if succeeded else "failed"
    try:
        result = await db.execute(
            update(Purchase)
            .where(Purchase.payment_reference == payment_reference, Purchase.status == "pending")
            .values(status=final_status)
            .returning(Purchase.user_id, Purchase.credits)
            .execution_options(synchronize_session=False)
        )
        row = result.one_or_none()
        if row is None:
            await db.rollback()
            current = await db.execute(
                select(Purchase.status).where(Purchase.payment_reference == payment_reference)
            )
            status = current.scalar_one_or_none()
            if status is None:
                raise LookupError(f"Unknown payment reference: {payment_reference}")
            logger.info("Purchase %s already processed (status=%s)", payment_reference, status)
            return PurchaseCompletion(
                payment_reference=payment_reference,
                status=status,
                credits_granted=0,
                new_balance=None,
                already_processed=True,
            )

        user_id, credits = row[0], int(row[1])
        new_balance: Optional[int] = None
        if succeeded:
            new_balance, _total = await _apply_credit_grant(user_id, db, credits)
        await db.commit()
    except LedgerStoreError:
        await db.rollback()
        raise
    except SQLAlchemyError as exc:
        raise await _store_failure(db, operation="complete_purchase", subject_id=payment_reference) from exc

    logger.info(
        "Purchase %s -> %s: user=%s credits=%s",
        payment_reference,
        final_status,
        user_id,
        credits if succeeded else 0,
    )
    return PurchaseCompletion(
        payment_reference=payment_reference,
        status=final_status,
        credits_granted=credits if succeeded else 0,
        new_balance=new_balance,
        already_processed=False,
    )


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    try:
        profile_result = await db.execute(select(UserProfile).where(UserProfile.id == user_id))
        profile = profile_result.scalar_one_or_none()
        purchases_result = await db.execute(
            select(Purchase)
            .where(Purchase.user_id == user_id)
            .order_by(Purchase.created_at.desc())
            .limit(30)
        )
        purchases = purchases_result.scalars().all()
    except SQLAlchemyError as exc:
        raise await _store_failure(db, operation="get_summary", subject_id=user_id) from exc
    return {
        "balance": int(profile.credits) if profile else 0,
        "total_purchased": int(profile.total_purchased) if profile else 0,
        "costs": credit_costs(),
        "recent_purchases": [
            {
                "id": purchase.id,
                "payment_reference": purchase.payment_reference,
                "credits": purchase.credits,
                "amount": purchase.amount,
                "status": purchase.status,
                "created_at": purchase.created_at.isoformat() if purchase.created_at else None,
            }
            for purchase in purchases
        ],
    }
