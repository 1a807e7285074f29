"""Adventure content generation through OpenAI, with a deterministic offline mode."""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError

from config import settings
from services.ledger_types import RegenerationPhase

logger = logging.getLogger(__name__)

MOVEMENT_TYPES = ("combat", "exploration", "social", "puzzle")


class GenerationError(RuntimeError):
    """Raised when the generation provider fails or returns unusable content."""


def get_openai_client(api_key: str) -> Optional[AsyncOpenAI]:
    """Get OpenAI client, handling placeholders."""
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    return AsyncOpenAI(api_key=api_key)


def _safe_text(value: Any) -> str:
    return str(value or "").strip()


def _normalize_movement(raw: Any, index: int, fallback_type: str = "exploration") -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise GenerationError(f"Movement {index} is not an object")
    title = _safe_text(raw.get("title"))
    content = _safe_text(raw.get("content"))
    if not title or not content:
        raise GenerationError(f"Movement {index} is missing title or content")
    movement_type = _safe_text(raw.get("type")).lower()
    return {
        "id": _safe_text(raw.get("id")) or str(uuid.uuid4()),
        "title": title,
        "type": movement_type if movement_type in MOVEMENT_TYPES else fallback_type,
        "content": content,
        "confirmed": False,
    }


def build_mock_scaffold(params: Dict[str, Any]) -> Dict[str, Any]:
    frame = _safe_text(params.get("frame")) or "witherwild"
    focus = _safe_text(params.get("focus")) or "mystery"
    party_size = int(params.get("party_size") or 4)
    count = max(min(int(params.get("num_scenes") or 3), 8), 1)
    movements = [
        {
            "id": str(uuid.uuid4()),
            "title": f"Scene {index + 1}: {focus.title()} in the {frame.title()}",
            "type": MOVEMENT_TYPES[index % len(MOVEMENT_TYPES)],
            "content": (
                f"A {MOVEMENT_TYPES[index % len(MOVEMENT_TYPES)]} scene for {party_size} adventurers "
                f"that advances the {focus} thread."
            ),
            "confirmed": False,
        }
        for index in range(count)
    ]
    return {
        "title": f"The {focus.title()} of {frame.title()}",
        "movements": movements,
        "provider": "deterministic",
    }


def _scaffold_prompt(params: Dict[str, Any]) -> str:
    return (
        "You are a Daggerheart game master designing a one-shot adventure.\n"
        f"Frame: {_safe_text(params.get('frame'))}\n"
        f"Focus: {_safe_text(params.get('focus'))}\n"
        f"Party size: {int(params.get('party_size') or 4)}, party level: {int(params.get('party_level') or 1)}\n"
        f"Number of scenes: {int(params.get('num_scenes') or 3)}\n"
        'Return JSON: {"title": str, "movements": [{"title": str, "type": '
        f"one of {list(MOVEMENT_TYPES)}, \"content\": str}}]}}"
    )


def _movement_prompt(
    adventure: Dict[str, Any],
    movement: Dict[str, Any],
    phase: RegenerationPhase,
    instructions: Optional[str],
) -> str:
    stage = "outline" if phase is RegenerationPhase.SCAFFOLD else "fully expanded scene"
    return (
        f"Rewrite this movement of the adventure '{_safe_text(adventure.get('title'))}' as a {stage}.\n"
        f"Frame: {_safe_text(adventure.get('frame'))}. Focus: {_safe_text(adventure.get('focus'))}.\n"
        f"Current movement: {json.dumps(movement)}\n"
        f"Extra instructions: {_safe_text(instructions) or 'none'}\n"
        'Return JSON: {"title": str, "type": str, "content": str}'
    )


async def _complete_json(client: AsyncOpenAI, prompt: str) -> Dict[str, Any]:
    try:
        response = await client.chat.completions.create(
            model=settings.OPENAI_MODEL,
            messages=[{"role": "user", "content": prompt}],
            response_format={"type": "json_object"},
        )
    except OpenAIError as exc:
        raise GenerationError(f"openai_error: {exc}") from exc
    raw_content = response.choices[0].message.content
    try:
        parsed = json.loads(raw_content or "{}")
    except json.JSONDecodeError as exc:
        raise GenerationError("Provider returned invalid JSON") from exc
    if not isinstance(parsed, dict):
        raise GenerationError("Provider returned a non-object payload")
    return parsed


async def generate_adventure_scaffold(params: Dict[str, Any]) -> Dict[str, Any]:
    """Generate title and movements for a new adventure."""
    client = get_openai_client(settings.OPENAI_API_KEY)
    if client is None:
        return build_mock_scaffold(params)

    parsed = await _complete_json(client, _scaffold_prompt(params))
    raw_movements = parsed.get("movements")
    if not isinstance(raw_movements, list) or not raw_movements:
        raise GenerationError("Provider returned no movements")
    movements: List[Dict[str, Any]] = [
        _normalize_movement(item, index) for index, item in enumerate(raw_movements)
    ]
    return {
        "title": _safe_text(parsed.get("title")) or build_mock_scaffold(params)["title"],
        "movements": movements,
        "provider": "openai",
    }


async def regenerate_movement(
    adventure: Dict[str, Any],
    movement_id: str,
    phase: RegenerationPhase,
    instructions: Optional[str] = None,
) -> Dict[str, Any]:
    """Produce a replacement for one movement of an adventure."""
    movements = adventure.get("movements") or []
    current = next((m for m in movements if isinstance(m, dict) and m.get("id") == movement_id), None)
    if current is None:
        raise GenerationError(f"Movement {movement_id} not found")

    client = get_openai_client(settings.OPENAI_API_KEY)
    if client is None:
        suffix = " (expanded)" if phase is RegenerationPhase.EXPANSION else " (revised)"
        return {
            **current,
            "content": f"{_safe_text(current.get('content'))}{suffix}",
            "confirmed": False,
        }

    parsed = await _complete_json(client, _movement_prompt(adventure, current, phase, instructions))
    movement = _normalize_movement(parsed, 0, fallback_type=_safe_text(current.get("type")) or "exploration")
    movement["id"] = movement_id
    return movement


async def expand_movement(
    adventure: Dict[str, Any],
    movement_id: str,
    instructions: Optional[str] = None,
) -> Dict[str, Any]:
    """Write the full play-ready scene for one movement. This is a paid operation."""
    movements = adventure.get("movements") or []
    current = next((m for m in movements if isinstance(m, dict) and m.get("id") == movement_id), None)
    if current is None:
        raise GenerationError(f"Movement {movement_id} not found")

    client = get_openai_client(settings.OPENAI_API_KEY)
    if client is None:
        notes = _safe_text(instructions) or f"Run this as a {_safe_text(current.get('type')) or 'exploration'} scene."
        return {
            **current,
            "content": f"{_safe_text(current.get('content'))}\n\nGM notes: {notes}",
            "expanded": True,
        }

    parsed = await _complete_json(client, _movement_prompt(adventure, current, RegenerationPhase.EXPANSION, instructions))
    movement = _normalize_movement(parsed, 0, fallback_type=_safe_text(current.get("type")) or "exploration")
    movement.update({"id": movement_id, "confirmed": bool(current.get("confirmed")), "expanded": True})
    return movement
