"""Regeneration limits for scaffold and expansion work on an adventure.

Business model:
- Scaffold regenerations (adventure in ``draft``): 10 per adventure, free.
- Expansion regenerations (adventure in ``ready``): 20 per adventure, free.

``check_regeneration_limit`` and ``increment_regeneration_counter`` are separate
calls, each atomic on its own. The generation call runs between them and must
not hold a row lock, so two requests racing at ``used == limit - 1`` can both
pass the check and both increment. The counter can therefore overshoot the
limit by at most (concurrent requests - 1). The increment itself is a single
``UPDATE ... SET col = col + 1`` and never loses an update.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Union

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.adventure import Adventure
from services.ledger_types import (
    AdventureNotFoundError,
    LedgerStoreError,
    LimitCheckPassed,
    LimitExceeded,
    LimitOutcome,
    RegenerationCounts,
    RegenerationNotAllowed,
    RegenerationPhase,
)

logger = logging.getLogger(__name__)

_PHASE_BY_STATE = {
    "draft": RegenerationPhase.SCAFFOLD,
    "ready": RegenerationPhase.EXPANSION,
}

_COUNTER_COLUMNS = {
    RegenerationPhase.SCAFFOLD: Adventure.scaffold_regenerations_used,
    RegenerationPhase.EXPANSION: Adventure.expansion_regenerations_used,
}

REGENERATION_LIMIT_MESSAGES = {
    RegenerationPhase.SCAFFOLD: (
        "Scaffold regeneration limit reached ({limit} maximum). "
        "Consider starting a new adventure or manually editing the structure."
    ),
    RegenerationPhase.EXPANSION: (
        "Expansion regeneration limit reached ({limit} maximum). "
        "Consider locking components you're satisfied with."
    ),
}


def regeneration_limit(phase: RegenerationPhase) -> int:
    if phase is RegenerationPhase.SCAFFOLD:
        return max(int(settings.SCAFFOLD_REGENERATION_LIMIT), 0)
    return max(int(settings.EXPANSION_REGENERATION_LIMIT), 0)


def regeneration_limits() -> Dict[str, int]:
    return {phase.value: regeneration_limit(phase) for phase in RegenerationPhase}


def phase_for_state(state: Optional[str]) -> Optional[RegenerationPhase]:
    """Map an adventure lifecycle state to the counter its regenerations use."""
    return _PHASE_BY_STATE.get(str(state or "").strip().lower())


def limit_exceeded_message(outcome: LimitExceeded) -> str:
    return f"{REGENERATION_LIMIT_MESSAGES[outcome.phase].format(limit=outcome.limit)} ({outcome.message})"


async def _read_counter(adventure_id: str, phase: RegenerationPhase, db: AsyncSession) -> int:
    column = _COUNTER_COLUMNS[phase]
    try:
        result = await db.execute(select(column).where(Adventure.id == adventure_id))
        used = result.scalar_one_or_none()
    except SQLAlchemyError as exc:
        logger.exception("Counter read failed for adventure %s", adventure_id)
        raise LedgerStoreError(
            "Regeneration store unavailable",
            operation="check_limit",
            subject_id=adventure_id,
        ) from exc
    if used is None:
        raise AdventureNotFoundError(adventure_id)
    return int(used)


async def get_adventure_phase(
    adventure_id: str,
    db: AsyncSession,
) -> Union[RegenerationPhase, RegenerationNotAllowed]:
    """Read the adventure's state and resolve which counter applies right now."""
    try:
        result = await db.execute(select(Adventure.state).where(Adventure.id == adventure_id))
        state = result.scalar_one_or_none()
    except SQLAlchemyError as exc:
        logger.exception("Phase lookup failed for adventure %s", adventure_id)
        raise LedgerStoreError(
            "Regeneration store unavailable",
            operation="phase_lookup",
            subject_id=adventure_id,
        ) from exc
    if state is None:
        raise AdventureNotFoundError(adventure_id)

    phase = phase_for_state(state)
    if phase is None:
        return RegenerationNotAllowed(state=str(state))
    return phase


async def check_regeneration_limit(
    adventure_id: str,
    phase: RegenerationPhase,
    db: AsyncSession,
) -> LimitOutcome:
    """Read-only check of the phase counter against its limit."""
    used = await _read_counter(adventure_id, phase, db)
    limit = regeneration_limit(phase)
    if used >= limit:
        logger.info(
            "Regeneration limit reached: adventure=%s phase=%s used=%s limit=%s",
            adventure_id,
            phase.value,
            used,
            limit,
        )
        return LimitExceeded(phase=phase, used=used, limit=limit)
    return LimitCheckPassed(phase=phase, used=used, limit=limit)


async def increment_regeneration_counter(
    adventure_id: str,
    phase: RegenerationPhase,
    db: AsyncSession,
) -> int:
    """Add one to the phase counter and return the new value."""
    column = _COUNTER_COLUMNS[phase]
    try:
        result = await db.execute(
            update(Adventure)
            .where(Adventure.id == adventure_id)
            .values({column: column + 1})
            .returning(column)
            .execution_options(synchronize_session=False)
        )
        new_count = result.scalar_one_or_none()
        if new_count is None:
            await db.rollback()
            raise LedgerStoreError(
                f"Adventure {adventure_id} disappeared before its counter could be incremented",
                operation="increment_counter",
                subject_id=adventure_id,
            )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Counter increment failed for adventure %s", adventure_id)
        raise LedgerStoreError(
            "Regeneration store unavailable",
            operation="increment_counter",
            subject_id=adventure_id,
        ) from exc

    limit = regeneration_limit(phase)
    if new_count > limit:
        logger.warning(
            "Regeneration counter overshoot: adventure=%s phase=%s count=%s limit=%s",
            adventure_id,
            phase.value,
            new_count,
            limit,
        )
    return int(new_count)


async def get_regeneration_counts(adventure_id: str, db: AsyncSession) -> RegenerationCounts:
    """Usage and remaining regenerations for display; never used for authorization."""
    try:
        result = await db.execute(
            select(
                Adventure.scaffold_regenerations_used,
                Adventure.expansion_regenerations_used,
            ).where(Adventure.id == adventure_id)
        )
        row = result.one_or_none()
    except SQLAlchemyError as exc:
        logger.exception("Counter read failed for adventure %s", adventure_id)
        raise LedgerStoreError(
            "Regeneration store unavailable",
            operation="get_counts",
            subject_id=adventure_id,
        ) from exc
    if row is None:
        raise AdventureNotFoundError(adventure_id)

    scaffold_used = int(row[0] or 0)
    expansion_used = int(row[1] or 0)
    return RegenerationCounts(
        scaffold_used=scaffold_used,
        scaffold_remaining=max(regeneration_limit(RegenerationPhase.SCAFFOLD) - scaffold_used, 0),
        expansion_used=expansion_used,
        expansion_remaining=max(regeneration_limit(RegenerationPhase.EXPANSION) - expansion_used, 0),
    )
