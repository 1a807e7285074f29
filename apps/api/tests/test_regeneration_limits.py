import asyncio

import pytest

from conftest import create_account, create_adventure, read_adventure
from services.generation import run_regeneration
from services.ledger_types import (
    AdventureNotFoundError,
    LedgerStoreError,
    LimitCheckPassed,
    LimitExceeded,
    RegenerationNotAllowed,
    RegenerationPhase,
)
from services.regeneration import (
    check_regeneration_limit,
    get_adventure_phase,
    get_regeneration_counts,
    increment_regeneration_counter,
    limit_exceeded_message,
    phase_for_state,
    regeneration_limits,
)


USER_ID = "gm-user"


@pytest.mark.asyncio
async def test_scaffold_limit_reached_rejects_without_mutation(session_maker):
    await create_account(session_maker, USER_ID)
    await create_adventure(session_maker, USER_ID, scaffold_used=10)

    async with session_maker() as session:
        outcome = await check_regeneration_limit("adv-1", RegenerationPhase.SCAFFOLD, session)

    assert isinstance(outcome, LimitExceeded)
    assert (outcome.used, outcome.limit) == (10, 10)
    assert outcome.message == "10/10 scaffold regenerations used"
    assert "Scaffold regeneration limit reached (10 maximum)" in limit_exceeded_message(outcome)
    assert (await read_adventure(session_maker, "adv-1")).scaffold_regenerations_used == 10


@pytest.mark.asyncio
async def test_last_scaffold_regeneration_then_rejection(session_maker):
    await create_account(session_maker, USER_ID)
    await create_adventure(session_maker, USER_ID, scaffold_used=9)

    async with session_maker() as session:
        before = await check_regeneration_limit("adv-1", RegenerationPhase.SCAFFOLD, session)
    async with session_maker() as session:
        new_count = await increment_regeneration_counter("adv-1", RegenerationPhase.SCAFFOLD, session)
    async with session_maker() as session:
        after = await check_regeneration_limit("adv-1", RegenerationPhase.SCAFFOLD, session)

    assert isinstance(before, LimitCheckPassed)
    assert before.used == 9
    assert new_count == 10
    assert isinstance(after, LimitExceeded)


@pytest.mark.asyncio
async def test_expansion_counter_reaches_its_own_limit(session_maker):
    await create_account(session_maker, USER_ID)
    await create_adventure(session_maker, USER_ID, state="ready", scaffold_used=3, expansion_used=19)

    async with session_maker() as session:
        passed = await check_regeneration_limit("adv-1", RegenerationPhase.EXPANSION, session)
    async with session_maker() as session:
        await increment_regeneration_counter("adv-1", RegenerationPhase.EXPANSION, session)
    async with session_maker() as session:
        counts = await get_regeneration_counts("adv-1", session)

    assert isinstance(passed, LimitCheckPassed)
    assert passed.limit == 20
    assert counts.expansion_used == 20
    assert counts.expansion_remaining == 0
    assert counts.scaffold_used == 3
    assert counts.scaffold_remaining == 7


@pytest.mark.asyncio
async def test_check_is_read_only(session_maker):
    await create_account(session_maker, USER_ID)
    await create_adventure(session_maker, USER_ID, scaffold_used=4)

    for _ in range(5):
        async with session_maker() as session:
            outcome = await check_regeneration_limit("adv-1", RegenerationPhase.SCAFFOLD, session)
        assert outcome.used == 4

    assert (await read_adventure(session_maker, "adv-1")).scaffold_regenerations_used == 4


def test_phase_follows_adventure_state():
    assert phase_for_state("draft") is RegenerationPhase.SCAFFOLD
    assert phase_for_state("ready") is RegenerationPhase.EXPANSION
    assert phase_for_state("archived") is None
    assert phase_for_state(None) is None
    assert regeneration_limits() == {"scaffold": 10, "expansion": 20}


@pytest.mark.asyncio
async def test_archived_adventure_cannot_regenerate(session_maker):
    await create_account(session_maker, USER_ID)
    await create_adventure(session_maker, USER_ID, state="archived")

    async with session_maker() as session:
        phase = await get_adventure_phase("adv-1", session)

    assert isinstance(phase, RegenerationNotAllowed)
    assert phase.state == "archived"


@pytest.mark.asyncio
async def test_unknown_adventure(session_maker):
    async with session_maker() as session:
        with pytest.raises(AdventureNotFoundError):
            await check_regeneration_limit("missing", RegenerationPhase.SCAFFOLD, session)
        with pytest.raises(AdventureNotFoundError):
            await get_adventure_phase("missing", session)
        with pytest.raises(LedgerStoreError):
            await increment_regeneration_counter("missing", RegenerationPhase.SCAFFOLD, session)


@pytest.mark.asyncio
async def test_concurrent_increments_are_not_lost(session_maker):
    await create_account(session_maker, USER_ID)
    await create_adventure(session_maker, USER_ID, scaffold_used=2)

    async def _increment():
        async with session_maker() as session:
            return await increment_regeneration_counter("adv-1", RegenerationPhase.SCAFFOLD, session)

    results = await asyncio.gather(*[_increment() for _ in range(5)])

    assert sorted(results) == [3, 4, 5, 6, 7]
    assert (await read_adventure(session_maker, "adv-1")).scaffold_regenerations_used == 7


@pytest.mark.asyncio
async def test_racing_regenerations_can_overshoot_by_one(session_maker):
    await create_account(session_maker, USER_ID)
    await create_adventure(session_maker, USER_ID, scaffold_used=9)

    both_checked = asyncio.Event()
    arrivals = []

    async def _generate(phase):
        arrivals.append(phase)
        if len(arrivals) == 2:
            both_checked.set()
        await both_checked.wait()
        return {"phase": phase.value}

    results = await asyncio.gather(
        run_regeneration("adv-1", generate=_generate, session_maker=session_maker),
        run_regeneration("adv-1", generate=_generate, session_maker=session_maker),
    )

    assert all(result.ok for result in results)
    assert sorted(result.details["used"] for result in results) == [10, 11]
    assert all(result.details["remaining"] == 0 for result in results)
    assert (await read_adventure(session_maker, "adv-1")).scaffold_regenerations_used == 11

    late = await run_regeneration("adv-1", generate=_generate, session_maker=session_maker)
    assert isinstance(late.rejection, LimitExceeded)


@pytest.mark.asyncio
async def test_counts_are_stable_between_increments(session_maker):
    await create_account(session_maker, USER_ID)
    await create_adventure(session_maker, USER_ID, scaffold_used=3, expansion_used=5)

    readings = []
    for _ in range(4):
        async with session_maker() as session:
            readings.append(await get_regeneration_counts("adv-1", session))

    assert all(reading == readings[0] for reading in readings)
    stored = await read_adventure(session_maker, "adv-1")
    assert (stored.scaffold_regenerations_used, stored.expansion_regenerations_used) == (3, 5)

    async with session_maker() as session:
        await increment_regeneration_counter("adv-1", RegenerationPhase.EXPANSION, session)
    async with session_maker() as session:
        after = await get_regeneration_counts("adv-1", session)

    assert after.as_dict() == {
        "scaffold_used": 3,
        "scaffold_remaining": 7,
        "expansion_used": 6,
        "expansion_remaining": 14,
    }
    assert after.scaffold_used == readings[0].scaffold_used
