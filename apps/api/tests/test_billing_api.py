import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.exc import OperationalError
from unittest.mock import AsyncMock, patch

from config import settings
from conftest import create_account, read_profile
from database import get_db
from main import app
from services.session_token import create_session_token


WEBHOOK_SECRET = "whsec_test_secret"


@pytest_asyncio.fixture
async def billing_client(session_maker, monkeypatch):
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", WEBHOOK_SECRET)

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)


def _event(**overrides):
    event = {
        "payment_reference": "pi_001",
        "user_id": "buyer",
        "credits": 5,
        "amount": 499,
        "status": "succeeded",
    }
    event.update(overrides)
    return event


@pytest.mark.asyncio
async def test_webhook_requires_matching_secret(billing_client):
    missing = await billing_client.post("/billing/webhook", json=_event())
    wrong = await billing_client.post("/billing/webhook", json=_event(), headers={"X-Webhook-Secret": "nope"})

    assert missing.status_code == 401
    assert wrong.status_code == 401


@pytest.mark.asyncio
async def test_webhook_unavailable_without_configured_secret(billing_client, monkeypatch):
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", "")

    response = await billing_client.post("/billing/webhook", json=_event(), headers={"X-Webhook-Secret": "anything"})

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_duplicate_delivery_grants_credits_once(billing_client, session_maker):
    await create_account(session_maker, "buyer", credits=1)
    headers = {"X-Webhook-Secret": WEBHOOK_SECRET}

    first = await billing_client.post("/billing/webhook", json=_event(), headers=headers)
    replay = await billing_client.post("/billing/webhook", json=_event(), headers=headers)

    assert first.status_code == 200
    assert first.json()["credits_granted"] == 5
    assert first.json()["balance_after"] == 6
    assert replay.status_code == 200
    assert replay.json()["already_processed"] is True
    assert replay.json()["credits_granted"] == 0

    profile = await read_profile(session_maker, "buyer")
    assert (profile.credits, profile.total_purchased) == (6, 5)


@pytest.mark.asyncio
async def test_payment_reference_cannot_move_between_users(billing_client, session_maker):
    headers = {"X-Webhook-Secret": WEBHOOK_SECRET}
    await billing_client.post("/billing/webhook", json=_event(status="failed"), headers=headers)

    response = await billing_client.post("/billing/webhook", json=_event(user_id="someone-else"), headers=headers)

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_credit_summary_reflects_purchases(billing_client, session_maker):
    await create_account(session_maker, "buyer", credits=0)
    await billing_client.post("/billing/webhook", json=_event(credits=10), headers={"X-Webhook-Secret": WEBHOOK_SECRET})
    token = create_session_token("buyer")["token"]

    response = await billing_client.get("/billing/credits", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    summary = response.json()
    assert summary["balance"] == 10
    assert summary["total_purchased"] == 10
    assert summary["costs"]["adventure"] == 1
    assert summary["recent_purchases"][0]["status"] == "succeeded"

    foreign = await billing_client.get(
        "/billing/credits",
        params={"user_id": "other"},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert foreign.status_code == 403


@pytest.mark.asyncio
async def test_payment_is_granted_when_email_is_used_by_another_account(billing_client, session_maker):
    await create_account(session_maker, "existing", credits=0)

    response = await billing_client.post(
        "/billing/webhook",
        json=_event(email="existing@example.com"),
        headers={"X-Webhook-Secret": WEBHOOK_SECRET},
    )

    assert response.status_code == 200
    assert response.json()["credits_granted"] == 5
    assert (await read_profile(session_maker, "buyer")).credits == 6
    assert (await read_profile(session_maker, "existing")).credits == 0


@pytest.mark.asyncio
async def test_credit_summary_reports_store_outage_as_503(billing_client):
    broken = AsyncMock()
    broken.execute.side_effect = OperationalError("SELECT users", {}, Exception("connection refused"))

    async def broken_get_db():
        yield broken

    app.dependency_overrides[get_db] = broken_get_db
    token = create_session_token("buyer")["token"]

    with patch("routers.billing.ensure_user_profile", new=AsyncMock(return_value=None)):
        response = await billing_client.get("/billing/credits", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "store_unavailable"
