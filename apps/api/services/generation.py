"""Generation workflows wrapping the external generator with ledger bookkeeping.

Paid generation:   IDLE -> RESERVED -> COMPLETED | REFUNDED   (IDLE -> REJECTED when out of credits)
Regeneration:      IDLE -> CHECKED  -> COMPLETED | REJECTED   (IDLE -> REJECTED when over the limit)

A credit is reserved before the generator runs and refunded only from
RESERVED, exactly once. A regeneration counter is incremented only after the
generator succeeds, so a failed regeneration has nothing to compensate.
Every ledger step runs in its own short session; nothing holds a transaction
open across the generator call.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Dict, FrozenSet, List, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from database import async_session_maker
from services.credits import consume_credit, refund_credit
from services.ledger_types import (
    ConsumeOutcome,
    CreditRefunded,
    GenerationFailed,
    InsufficientCredits,
    LedgerStoreError,
    LimitExceeded,
    RegenerationNotAllowed,
    RegenerationPhase,
    WorkflowResult,
)
from services.regeneration import (
    check_regeneration_limit,
    get_adventure_phase,
    increment_regeneration_counter,
    regeneration_limit,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SessionMaker = async_sessionmaker[AsyncSession]


class PaidGenerationState(str, Enum):
    IDLE = "idle"
    RESERVED = "reserved"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    REJECTED = "rejected"


class RegenerationState(str, Enum):
    IDLE = "idle"
    CHECKED = "checked"
    COMPLETED = "completed"
    REJECTED = "rejected"


class InvalidTransition(RuntimeError):
    """Raised when a workflow attempts a step its current state does not allow."""


class _Attempt:
    transitions: ClassVar[Dict[Enum, FrozenSet[Enum]]] = {}

    def __init__(self, initial: Enum) -> None:
        self.state = initial
        self.history: List[Enum] = [initial]

    def _advance(self, target: Enum) -> None:
        if target not in self.transitions.get(self.state, frozenset()):
            raise InvalidTransition(f"{type(self).__name__}: {self.state.value} -> {target.value} is not allowed")
        self.state = target
        self.history.append(target)


class PaidGenerationAttempt(_Attempt):
    """One credit reservation and its single possible refund."""

    transitions = {
        PaidGenerationState.IDLE: frozenset({PaidGenerationState.RESERVED, PaidGenerationState.REJECTED}),
        PaidGenerationState.RESERVED: frozenset({PaidGenerationState.COMPLETED, PaidGenerationState.REFUNDED}),
    }

    def __init__(self, user_id: str, purpose: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(PaidGenerationState.IDLE)
        self.user_id = user_id
        self.purpose = purpose
        self.metadata = dict(metadata or {})

    async def reserve(self, db: AsyncSession) -> ConsumeOutcome:
        if self.state is not PaidGenerationState.IDLE:
            raise InvalidTransition(f"Cannot reserve from {self.state.value}")
        outcome = await consume_credit(self.user_id, db, purpose=self.purpose, metadata=self.metadata)
        if isinstance(outcome, InsufficientCredits):
            self._advance(PaidGenerationState.REJECTED)
        else:
            self._advance(PaidGenerationState.RESERVED)
        return outcome

    def complete(self) -> None:
        self._advance(PaidGenerationState.COMPLETED)

    async def refund(self, db: AsyncSession, *, reason: str) -> CreditRefunded:
        # The transition is taken before the store call so a failed refund
        # can never be attempted a second time from this attempt.
        self._advance(PaidGenerationState.REFUNDED)
        try:
            return await refund_credit(
                self.user_id,
                db,
                purpose=self.purpose,
                reason=reason,
                metadata=self.metadata,
            )
        except LedgerStoreError:
            logger.error(
                "Refund failed, credit stuck as consumed: user=%s purpose=%s reason=%s metadata=%s",
                self.user_id,
                self.purpose,
                reason,
                self.metadata,
            )
            raise


class RegenerationAttempt(_Attempt):
    transitions = {
        RegenerationState.IDLE: frozenset({RegenerationState.CHECKED, RegenerationState.REJECTED}),
        RegenerationState.CHECKED: frozenset({RegenerationState.COMPLETED, RegenerationState.REJECTED}),
    }

    def __init__(self, adventure_id: str) -> None:
        super().__init__(RegenerationState.IDLE)
        self.adventure_id = adventure_id
        self.phase: Optional[RegenerationPhase] = None

    def checked(self, phase: RegenerationPhase) -> None:
        self._advance(RegenerationState.CHECKED)
        self.phase = phase

    def reject(self) -> None:
        self._advance(RegenerationState.REJECTED)

    def complete(self) -> None:
        self._advance(RegenerationState.COMPLETED)


def _failure_reason(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "Generation timed out"
    text = str(exc).strip()
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


async def _call_generator(generate: Callable[[], Awaitable[T]]) -> T:
    timeout = max(int(settings.GENERATION_TIMEOUT_SECONDS), 1)
    return await asyncio.wait_for(generate(), timeout=timeout)


async def _refund(attempt: PaidGenerationAttempt, session_maker: SessionMaker, reason: str) -> CreditRefunded:
    async with session_maker() as db:
        return await attempt.refund(db, reason=reason)


async def run_paid_generation(
    user_id: str,
    *,
    purpose: str,
    generate: Callable[[], Awaitable[T]],
    persist: Optional[Callable[[T], Awaitable[Any]]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    session_maker: Optional[SessionMaker] = None,
) -> WorkflowResult[T]:
    """Charge one credit, run the generator, and refund the credit if anything after the charge fails."""
    session_maker = session_maker or async_session_maker
    attempt = PaidGenerationAttempt(user_id, purpose, metadata)

    async with session_maker() as db:
        reservation = await attempt.reserve(db)
    if isinstance(reservation, InsufficientCredits):
        return WorkflowResult(
            state=attempt.state.value,
            rejection=reservation,
            details={"balance": reservation.balance},
        )

    try:
        payload = await _call_generator(generate)
        persisted = await persist(payload) if persist is not None else None
    except asyncio.CancelledError:
        logger.warning("Paid generation cancelled after reservation: user=%s purpose=%s", user_id, purpose)
        await asyncio.shield(_refund(attempt, session_maker, "cancelled"))
        raise
    except Exception as exc:
        reason = _failure_reason(exc)
        logger.warning("Paid generation failed: user=%s purpose=%s reason=%s", user_id, purpose, reason)
        refund = await asyncio.shield(_refund(attempt, session_maker, reason))
        return WorkflowResult(
            state=attempt.state.value,
            rejection=GenerationFailed(reason=reason, refunded=True),
            details={"balance": refund.new_balance},
        )

    attempt.complete()
    details: Dict[str, Any] = {"remaining_credits": reservation.remaining_credits}
    if persisted is not None:
        details["persisted"] = persisted
    return WorkflowResult(state=attempt.state.value, payload=payload, details=details)


async def run_regeneration(
    adventure_id: str,
    *,
    generate: Callable[[RegenerationPhase], Awaitable[T]],
    persist: Optional[Callable[[T], Awaitable[Any]]] = None,
    session_maker: Optional[SessionMaker] = None,
) -> WorkflowResult[T]:
    """Regenerate part of an adventure against the counter of its current phase."""
    session_maker = session_maker or async_session_maker
    attempt = RegenerationAttempt(adventure_id)

    async with session_maker() as db:
        phase = await get_adventure_phase(adventure_id, db)
        if isinstance(phase, RegenerationNotAllowed):
            attempt.reject()
            return WorkflowResult(state=attempt.state.value, rejection=phase)
        check = await check_regeneration_limit(adventure_id, phase, db)

    if isinstance(check, LimitExceeded):
        attempt.reject()
        return WorkflowResult(
            state=attempt.state.value,
            rejection=check,
            details={"phase": phase.value, "used": check.used, "limit": check.limit},
        )
    attempt.checked(phase)

    try:
        payload = await _call_generator(lambda: generate(phase))
    except Exception as exc:
        reason = _failure_reason(exc)
        logger.warning(
            "Regeneration failed: adventure=%s phase=%s reason=%s",
            adventure_id,
            phase.value,
            reason,
        )
        attempt.reject()
        return WorkflowResult(
            state=attempt.state.value,
            rejection=GenerationFailed(reason=reason),
            details={"phase": phase.value, "used": check.used, "limit": check.limit},
        )

    async with session_maker() as db:
        new_count = await increment_regeneration_counter(adventure_id, phase, db)
    persisted = await persist(payload) if persist is not None else None
    attempt.complete()

    limit = regeneration_limit(phase)
    details: Dict[str, Any] = {
        "phase": phase.value,
        "used": new_count,
        "limit": limit,
        "remaining": max(limit - new_count, 0),
    }
    if persisted is not None:
        details["persisted"] = persisted
    return WorkflowResult(state=attempt.state.value, payload=payload, details=details)
