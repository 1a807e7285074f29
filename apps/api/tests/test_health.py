import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from config import settings
from database import get_db
from main import app


@pytest_asyncio.fixture
async def health_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)


@pytest.mark.asyncio
async def test_health_reports_ledger_and_limits(health_client, monkeypatch):
    monkeypatch.setattr(settings, "REDIS_URL", "redis://127.0.0.1:1")

    response = await health_client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["ledger_store"] == "up"
    assert body["rate_limit_store"].startswith("degraded")
    assert body["generation_provider"] == "deterministic"
    assert body["regeneration_limits"] == {"scaffold": 10, "expansion": 20}


@pytest.mark.asyncio
async def test_readiness_requires_secrets(health_client, monkeypatch):
    monkeypatch.setattr(settings, "JWT_SECRET", "change_me_in_production")
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", "")

    not_ready = await health_client.get("/health/ready")
    assert not_ready.status_code == 503
    assert len(not_ready.json()["problems"]) == 2

    monkeypatch.setattr(settings, "JWT_SECRET", "a-long-enough-signing-secret-for-tests")
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", "whsec_ready")
    ready = await health_client.get("/health/ready")
    assert ready.status_code == 200
    assert (await health_client.get("/health/live")).json() == {"alive": True}
