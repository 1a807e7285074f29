"""Adventures router: paid generation, free regenerations and lifecycle state."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from database import get_db, get_session_maker
from models.adventure import Adventure
from routers.auth_scope import AuthContext, get_auth_context, load_owned_adventure
from routers.rate_limit import rate_limit
from services.credits import ensure_user_profile
from services.generation import run_paid_generation, run_regeneration
from services.generator import expand_movement, generate_adventure_scaffold, regenerate_movement
from services.ledger_types import (
    GenerationFailed,
    InsufficientCredits,
    LimitExceeded,
    RegenerationNotAllowed,
    RegenerationPhase,
    WorkflowResult,
)
from services.regeneration import (
    get_regeneration_counts,
    limit_exceeded_message,
    regeneration_limits,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class GenerateAdventureRequest(BaseModel):
    frame: str = Field(min_length=1, max_length=100)
    focus: str = Field(min_length=1, max_length=200)
    party_size: int = Field(default=4, ge=1, le=8)
    party_level: int = Field(default=1, ge=1, le=10)
    num_scenes: int = Field(default=3, ge=1, le=8)
    difficulty: Literal["easier", "standard", "harder"] = "standard"


class RegenerateMovementRequest(BaseModel):
    movement_id: str
    instructions: Optional[str] = Field(default=None, max_length=2000)


class ExpandMovementRequest(BaseModel):
    instructions: Optional[str] = Field(default=None, max_length=2000)


class MovementConfirmationRequest(BaseModel):
    confirmed: bool = True


class AdventureStateRequest(BaseModel):
    state: Literal["draft", "ready", "archived"]


def _serialize_adventure(adventure: Adventure) -> Dict[str, Any]:
    return {
        "id": adventure.id,
        "title": adventure.title,
        "frame": adventure.frame,
        "focus": adventure.focus,
        "state": adventure.state,
        "config": adventure.config_json or {},
        "movements": list(adventure.movements_json or []),
        "scaffold_regenerations_used": int(adventure.scaffold_regenerations_used or 0),
        "expansion_regenerations_used": int(adventure.expansion_regenerations_used or 0),
        "created_at": adventure.created_at.isoformat() if adventure.created_at else None,
    }


def _rejection_response(result: WorkflowResult) -> HTTPException:
    rejection = result.rejection
    if isinstance(rejection, InsufficientCredits):
        return HTTPException(
            status_code=402,
            detail={
                "code": "insufficient_credits",
                "message": rejection.message,
                "purpose": rejection.purpose,
                "balance": rejection.balance,
            },
        )
    if isinstance(rejection, LimitExceeded):
        return HTTPException(
            status_code=429,
            detail={
                "code": "regeneration_limit_exceeded",
                "message": limit_exceeded_message(rejection),
                "phase": rejection.phase.value,
                "used": rejection.used,
                "limit": rejection.limit,
            },
        )
    if isinstance(rejection, RegenerationNotAllowed):
        return HTTPException(
            status_code=409,
            detail={"code": "regeneration_not_allowed", "message": rejection.message, "state": rejection.state},
        )
    if isinstance(rejection, GenerationFailed):
        return HTTPException(
            status_code=502,
            detail={
                "code": "generation_failed",
                "message": "Adventure generation failed. No credit or regeneration was used.",
                "reason": rejection.reason,
                "refunded": rejection.refunded,
                **{key: value for key, value in result.details.items() if key in {"balance", "phase", "used", "limit"}},
            },
        )
    return HTTPException(status_code=500, detail="Unexpected workflow outcome.")


def _replace_movement(movements: List[Dict[str, Any]], replacement: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [replacement if item.get("id") == replacement.get("id") else item for item in movements]


@router.post("/generate")
async def generate_adventure(
    request: GenerateAdventureRequest,
    _rate_limit: None = Depends(rate_limit("adventure_generate", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    session_maker: async_sessionmaker = Depends(get_session_maker),
):
    await ensure_user_profile(auth.user_id, db, email=auth.email)
    adventure_id = str(uuid.uuid4())
    params = request.model_dump()

    async def _generate() -> Dict[str, Any]:
        return await generate_adventure_scaffold(params)

    async def _persist(scaffold: Dict[str, Any]) -> str:
        async with session_maker() as session:
            session.add(
                Adventure(
                    id=adventure_id,
                    user_id=auth.user_id,
                    title=scaffold["title"],
                    frame=request.frame,
                    focus=request.focus,
                    state="draft",
                    config_json=params,
                    movements_json=scaffold["movements"],
                )
            )
            await session.commit()
        return adventure_id

    # Shielded so a client disconnect cannot strand a reserved credit.
    result = await asyncio.shield(
        run_paid_generation(
            auth.user_id,
            purpose="adventure",
            generate=_generate,
            persist=_persist,
            metadata={"adventure_id": adventure_id},
            session_maker=session_maker,
        )
    )
    if not result.ok:
        raise _rejection_response(result)

    return {
        "adventure_id": adventure_id,
        "title": result.payload["title"],
        "state": "draft",
        "movements": result.payload["movements"],
        "credits": {"remaining": result.details["remaining_credits"]},
    }


@router.get("/{adventure_id}")
async def get_adventure(
    adventure_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    adventure = await load_owned_adventure(adventure_id, auth, db)
    return _serialize_adventure(adventure)


@router.post("/{adventure_id}/regenerate")
async def regenerate_adventure_movement(
    adventure_id: str,
    request: RegenerateMovementRequest,
    _rate_limit: None = Depends(rate_limit("adventure_regenerate", limit=120, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    session_maker: async_sessionmaker = Depends(get_session_maker),
):
    adventure = await load_owned_adventure(adventure_id, auth, db)
    movements = list(adventure.movements_json or [])
    target = next((item for item in movements if item.get("id") == request.movement_id), None)
    if target is None:
        raise HTTPException(status_code=404, detail="Movement not found.")
    if target.get("confirmed"):
        raise HTTPException(
            status_code=409,
            detail={"code": "movement_locked", "message": "Unconfirm this movement before regenerating it."},
        )

    snapshot = {
        "title": adventure.title,
        "frame": adventure.frame,
        "focus": adventure.focus,
        "movements": movements,
    }
    # Release the read transaction before the generator runs.
    await db.rollback()

    async def _generate(phase: RegenerationPhase) -> Dict[str, Any]:
        return await regenerate_movement(snapshot, request.movement_id, phase, request.instructions)

    async def _persist(movement: Dict[str, Any]) -> None:
        async with session_maker() as session:
            current = (
                await session.execute(select(Adventure).where(Adventure.id == adventure_id))
            ).scalar_one()
            current.movements_json = _replace_movement(list(current.movements_json or []), movement)
            await session.commit()

    result = await asyncio.shield(
        run_regeneration(
            adventure_id,
            generate=_generate,
            persist=_persist,
            session_maker=session_maker,
        )
    )
    if not result.ok:
        raise _rejection_response(result)

    return {
        "adventure_id": adventure_id,
        "movement": result.payload,
        "regenerations": {
            "phase": result.details["phase"],
            "used": result.details["used"],
            "limit": result.details["limit"],
            "remaining": result.details["remaining"],
        },
    }


@router.post("/{adventure_id}/movements/{movement_id}/expand")
async def expand_adventure_movement(
    adventure_id: str,
    movement_id: str,
    request: ExpandMovementRequest,
    _rate_limit: None = Depends(rate_limit("movement_expand", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    session_maker: async_sessionmaker = Depends(get_session_maker),
):
    """Charge one expansion credit to write the full scene for a movement."""
    adventure = await load_owned_adventure(adventure_id, auth, db)
    if adventure.state != "ready":
        raise HTTPException(
            status_code=409,
            detail={
                "code": "expansion_not_allowed",
                "message": "Only adventures marked ready can be expanded.",
                "state": adventure.state,
            },
        )
    movements = list(adventure.movements_json or [])
    if not any(item.get("id") == movement_id for item in movements):
        raise HTTPException(status_code=404, detail="Movement not found.")

    snapshot = {
        "title": adventure.title,
        "frame": adventure.frame,
        "focus": adventure.focus,
        "movements": movements,
    }
    await ensure_user_profile(auth.user_id, db, email=auth.email)

    async def _generate() -> Dict[str, Any]:
        return await expand_movement(snapshot, movement_id, request.instructions)

    async def _persist(movement: Dict[str, Any]) -> None:
        async with session_maker() as session:
            current = (
                await session.execute(select(Adventure).where(Adventure.id == adventure_id))
            ).scalar_one()
            current.movements_json = _replace_movement(list(current.movements_json or []), movement)
            await session.commit()

    result = await asyncio.shield(
        run_paid_generation(
            auth.user_id,
            purpose="expansion",
            generate=_generate,
            persist=_persist,
            metadata={"adventure_id": adventure_id, "movement_id": movement_id},
            session_maker=session_maker,
        )
    )
    if not result.ok:
        raise _rejection_response(result)

    return {
        "adventure_id": adventure_id,
        "movement": result.payload,
        "credits": {"remaining": result.details["remaining_credits"]},
    }


@router.get("/{adventure_id}/regenerations")
async def regeneration_counts(
    adventure_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await load_owned_adventure(adventure_id, auth, db)
    counts = await get_regeneration_counts(adventure_id, db)
    return {**counts.as_dict(), "limits": regeneration_limits()}


@router.post("/{adventure_id}/movements/{movement_id}/confirm")
async def confirm_movement(
    adventure_id: str,
    movement_id: str,
    request: MovementConfirmationRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    adventure = await load_owned_adventure(adventure_id, auth, db)
    movements = list(adventure.movements_json or [])
    target = next((item for item in movements if item.get("id") == movement_id), None)
    if target is None:
        raise HTTPException(status_code=404, detail="Movement not found.")

    adventure.movements_json = _replace_movement(movements, {**target, "confirmed": request.confirmed})
    await db.commit()
    return {"adventure_id": adventure_id, "movement_id": movement_id, "confirmed": request.confirmed}


@router.patch("/{adventure_id}/state")
async def update_adventure_state(
    adventure_id: str,
    request: AdventureStateRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    adventure = await load_owned_adventure(adventure_id, auth, db)
    if request.state == "ready":
        movements = list(adventure.movements_json or [])
        unconfirmed = [item.get("id") for item in movements if not item.get("confirmed")]
        if unconfirmed:
            raise HTTPException(
                status_code=422,
                detail={
                    "code": "movements_unconfirmed",
                    "message": "Confirm every movement before marking the adventure ready.",
                    "unconfirmed": unconfirmed,
                },
            )

    adventure.state = request.state
    await db.commit()
    logger.info("Adventure %s moved to state %s", adventure_id, request.state)
    return {"adventure_id": adventure_id, "state": adventure.state}
