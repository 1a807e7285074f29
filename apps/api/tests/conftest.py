import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base
from main import app
from models.adventure import Adventure
from models.user import User
from models.user_profile import UserProfile
from routers import rate_limit


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def offline_generation(monkeypatch):
    """Never reach the real generation provider from tests."""
    monkeypatch.setattr(settings, "OPENAI_API_KEY", "")


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


async def create_account(maker, user_id: str, credits: int = 0, total_purchased: int = 0) -> None:
    async with maker() as session:
        session.add(User(id=user_id, email=f"{user_id}@example.com"))
        await session.flush()
        session.add(UserProfile(id=user_id, credits=credits, total_purchased=total_purchased))
        await session.commit()


async def create_adventure(
    maker,
    user_id: str,
    *,
    adventure_id: str = "adv-1",
    state: str = "draft",
    scaffold_used: int = 0,
    expansion_used: int = 0,
    movements=None,
) -> str:
    async with maker() as session:
        session.add(
            Adventure(
                id=adventure_id,
                user_id=user_id,
                title="The Hollow Crown",
                frame="witherwild",
                focus="mystery",
                state=state,
                movements_json=movements
                if movements is not None
                else [
                    {"id": "mv-1", "title": "Arrival", "type": "social", "content": "The party arrives.", "confirmed": False},
                    {"id": "mv-2", "title": "The Vault", "type": "combat", "content": "Guardians wake.", "confirmed": False},
                ],
                scaffold_regenerations_used=scaffold_used,
                expansion_regenerations_used=expansion_used,
            )
        )
        await session.commit()
    return adventure_id


async def read_profile(maker, user_id: str) -> UserProfile:
    async with maker() as session:
        return await session.get(UserProfile, user_id)


async def read_adventure(maker, adventure_id: str) -> Adventure:
    async with maker() as session:
        return await session.get(Adventure, adventure_id)
