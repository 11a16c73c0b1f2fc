from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from jose import jwt
from sqlalchemy import select

from config import settings
from conftest import auth_headers, seed_user
from models.user import User
from routers.auth_scope import AuthContext, get_current_user

IDENTITY_SECRET = "identity-test-secret-value"


def _identity_token(sub="auth-user", email="auth@example.com", audience="authenticated", secret=IDENTITY_SECRET):
    now = datetime.now(timezone.utc)
    claims = {
        "sub": sub,
        "email": email,
        "aud": audience,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(hours=1)).timestamp()),
        "user_metadata": {"full_name": "Ada Example"},
    }
    return jwt.encode(claims, secret, algorithm="HS256")


@pytest.mark.asyncio
async def test_session_exchange_issues_token_and_creates_user(studio):
    with patch.object(settings, "IDENTITY_JWT_SECRET", IDENTITY_SECRET):
        response = await studio.client.post("/auth/session", json={"access_token": _identity_token()})

    assert response.status_code == 200
    payload = response.json()
    assert payload["user_id"] == "auth-user"
    assert payload["email"] == "auth@example.com"
    assert payload["credits_remaining"] == 0

    me = await studio.client.get(
        "/auth/me",
        headers={"Authorization": f"Bearer {payload['session_token']}"},
    )
    assert me.status_code == 200
    assert me.json() == {
        "user_id": "auth-user",
        "email": "auth@example.com",
        "name": "Ada Example",
        "credits_remaining": 0,
    }


@pytest.mark.asyncio
async def test_session_exchange_rejects_foreign_tokens(studio):
    with patch.object(settings, "IDENTITY_JWT_SECRET", IDENTITY_SECRET):
        wrong_secret = await studio.client.post(
            "/auth/session",
            json={"access_token": _identity_token(secret="some-other-secret")},
        )
        wrong_audience = await studio.client.post(
            "/auth/session",
            json={"access_token": _identity_token(audience="anon")},
        )

    assert wrong_secret.status_code == 401
    assert wrong_audience.status_code == 401


@pytest.mark.asyncio
async def test_me_reports_credit_balance(studio):
    await seed_user(studio.session_maker, "rich-user", balance=7)

    response = await studio.client.get("/auth/me", headers=auth_headers("rich-user"))

    assert response.status_code == 200
    assert response.json()["credits_remaining"] == 7


@pytest.mark.asyncio
async def test_invalid_session_token_is_unauthorized(studio):
    response = await studio.client.get("/auth/me", headers={"Authorization": "Bearer not-a-token"})

    assert response.status_code == 401
    assert response.json()["code"] == "auth_error"


@pytest.mark.asyncio
async def test_pricing_lists_packs_and_models(studio):
    response = await studio.client.get("/billing/packs")

    assert response.status_code == 200
    body = response.json()
    assert {pack["id"] for pack in body["packs"]} == {"pack_10", "pack_25"}
    assert {"model_key": "google/nano-banana", "label": "google/nano-banana (2€)", "amount_cents": 200} in body["models"]


@pytest.mark.asyncio
async def test_pack_checkout_sets_pack_metadata(studio):
    response = await studio.client.post(
        "/billing/packs/checkout",
        headers=auth_headers("pack-user"),
        json={"pack_id": "pack_25"},
    )
    unknown = await studio.client.post(
        "/billing/packs/checkout",
        headers=auth_headers("pack-user"),
        json={"pack_id": "pack_999"},
    )

    assert response.status_code == 200
    assert response.json()["metadata"] == {"credits_pack_size": "25", "pack_id": "pack_25"}
    assert unknown.status_code == 400


@pytest.mark.asyncio
async def test_liveness_and_readiness(studio):
    live = await studio.client.get("/health/live")
    with patch.object(settings, "REPLICATE_API_TOKEN", ""):
        ready = await studio.client.get("/health/ready")

    assert live.json() == {"alive": True}
    assert ready.status_code == 503
    assert "REPLICATE_API_TOKEN" in ready.json()["missing"]


def test_validate_security_settings_rejects_default_secret():
    from config import validate_security_settings

    with patch.object(settings, "JWT_SECRET", "change_me_in_production"):
        with pytest.raises(ValueError):
            validate_security_settings()

    with patch.object(settings, "JWT_SECRET", "x" * 32), patch.object(
        settings, "STRIPE_SECRET_KEY", "sk_live_123"
    ), patch.object(settings, "STRIPE_WEBHOOK_SECRET", ""):
        with pytest.raises(ValueError):
            validate_security_settings()


@pytest.mark.asyncio
async def test_current_user_survives_concurrent_first_insert(session_maker, monkeypatch):
    await seed_user(session_maker, "racing-user")

    async with session_maker() as db:
        real_execute = db.execute
        lookups = []

        async def first_lookup_misses(statement, *args, **kwargs):
            lookups.append(statement)
            if len(lookups) == 1:
                # Simulate a request that looked before the other one committed.
                statement = select(User).where(User.id == "not-yet-created")
            return await real_execute(statement, *args, **kwargs)

        monkeypatch.setattr(db, "execute", first_lookup_misses)
        user = await get_current_user(AuthContext(user_id="racing-user", email="racing-user@example.com"), db)

    assert user.id == "racing-user"
    assert len(lookups) == 2
    async with session_maker() as db:
        users = (await db.execute(select(User).where(User.id == "racing-user"))).scalars().all()
    assert len(users) == 1
