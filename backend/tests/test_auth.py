import secrets
import pytest
from unittest.mock import AsyncMock
from sqlalchemy import select, func
from models import User, RefreshToken, PasswordResetToken, UserRole
from routers.auth.helpers import auth_helpers
from conftest import auth_headers, TEST_PASSWORD


def registration(**overrides):
    payload = {
        "email": "kwame@agro.gh",
        "password": "cocoa-farm-2024",
        "first_name": "Kwame",
        "last_name": "Asante",
        "role": "FARMER",
        "phone_number": "+233201112222",
    }
    payload.update(overrides)
    return payload


@pytest.mark.asyncio
async def test_register_returns_user_and_tokens(client):
    response = await client.post("/api/auth/register", json=registration())

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["data"]["user"]["email"] == "kwame@agro.gh"
    assert body["data"]["user"]["role"] == "FARMER"
    assert body["data"]["user"]["profile"]["first_name"] == "Kwame"
    assert body["data"]["access_token"]
    assert body["data"]["refresh_token"]


@pytest.mark.asyncio
async def test_duplicate_email_is_rejected_without_new_row(client, db_session):
    await client.post("/api/auth/register", json=registration())
    response = await client.post("/api/auth/register", json=registration(email="KWAME@agro.gh"))

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "User already exists"}

    count = await db_session.execute(select(func.count(User.id)))
    assert count.scalar() == 1


@pytest.mark.asyncio
async def test_register_rejects_admin_role(client):
    response = await client.post("/api/auth/register", json=registration(role="ADMIN"))

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert response.json()["error"].startswith("role")


@pytest.mark.asyncio
async def test_validation_error_surfaces_first_field_only(client):
    response = await client.post("/api/auth/register", json=registration(email="not-an-email", password="short"))

    assert response.status_code == 400
    assert response.json()["error"].startswith("email:")


@pytest.mark.asyncio
async def test_login_with_wrong_password_returns_401_and_no_tokens(client, make_user, db_session):
    user = await make_user(email="efua@agro.gh")

    response = await client.post("/api/auth/login", json={"email": "efua@agro.gh", "password": "wrong-password"})

    assert response.status_code == 401
    assert response.json() == {"success": False, "error": "Invalid credentials"}
    tokens = await db_session.execute(select(func.count(RefreshToken.id)).where(RefreshToken.user_id == user.id))
    assert tokens.scalar() == 0


@pytest.mark.asyncio
async def test_login_unknown_email_returns_401(client):
    response = await client.post("/api/auth/login", json={"email": "nobody@agro.gh", "password": TEST_PASSWORD})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_login_succeeds_and_suspended_is_forbidden(client, make_user):
    await make_user(email="yaw@agro.gh")
    await make_user(email="suspended@agro.gh", is_suspended=True)

    ok = await client.post("/api/auth/login", json={"email": "yaw@agro.gh", "password": TEST_PASSWORD})
    assert ok.status_code == 200
    assert ok.json()["data"]["access_token"]

    blocked = await client.post("/api/auth/login", json={"email": "suspended@agro.gh", "password": TEST_PASSWORD})
    assert blocked.status_code == 403


@pytest.mark.asyncio
async def test_refresh_rotates_token(client, make_user):
    await make_user(email="abena@agro.gh")
    login = await client.post("/api/auth/login", json={"email": "abena@agro.gh", "password": TEST_PASSWORD})
    refresh_token = login.json()["data"]["refresh_token"]

    rotated = await client.post("/api/auth/refresh", json={"refresh_token": refresh_token})
    assert rotated.status_code == 200
    assert rotated.json()["data"]["refresh_token"] != refresh_token

    replay = await client.post("/api/auth/refresh", json={"refresh_token": refresh_token})
    assert replay.status_code == 401


@pytest.mark.asyncio
async def test_access_token_cannot_be_used_as_refresh(client, make_user):
    user = await make_user()
    access_token = auth_helpers.create_access_token(user)

    response = await client.post("/api/auth/refresh", json={"refresh_token": access_token})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_logout_revokes_refresh_token(client, make_user):
    await make_user(email="kojo@agro.gh")
    login = await client.post("/api/auth/login", json={"email": "kojo@agro.gh", "password": TEST_PASSWORD})
    refresh_token = login.json()["data"]["refresh_token"]

    response = await client.post("/api/auth/logout", json={"refresh_token": refresh_token})
    assert response.status_code == 200

    again = await client.post("/api/auth/refresh", json={"refresh_token": refresh_token})
    assert again.status_code == 401


@pytest.mark.asyncio
async def test_forgot_password_gives_same_answer_for_unknown_email(client, make_user):
    await make_user(email="akosua@agro.gh")

    known = await client.post("/api/auth/forgot-password", json={"email": "akosua@agro.gh"})
    unknown = await client.post("/api/auth/forgot-password", json={"email": "ghost@agro.gh"})

    assert known.status_code == unknown.status_code == 200
    assert known.json()["message"] == unknown.json()["message"]


@pytest.mark.asyncio
async def test_reset_password_with_stored_token(client, make_user, db_session, monkeypatch):
    user = await make_user(email="esi@agro.gh")
    monkeypatch.setattr(secrets, "token_urlsafe", lambda nbytes=None: "known-reset-token")

    await client.post("/api/auth/forgot-password", json={"email": "esi@agro.gh"})
    response = await client.post(
        "/api/auth/reset-password",
        json={"token": "known-reset-token", "password": "new-password-123"}
    )
    assert response.status_code == 200

    login = await client.post("/api/auth/login", json={"email": "esi@agro.gh", "password": "new-password-123"})
    assert login.status_code == 200

    reuse = await client.post(
        "/api/auth/reset-password",
        json={"token": "known-reset-token", "password": "another-password-1"}
    )
    assert reuse.status_code == 400

    stored = await db_session.execute(select(PasswordResetToken).where(PasswordResetToken.user_id == user.id))
    assert stored.scalar_one().used_at is not None


@pytest.mark.asyncio
async def test_verify_email(client, make_user, db_session):
    user = await make_user()
    token = auth_helpers.create_email_verification_token(user)

    response = await client.post("/api/auth/verify-email", json={"token": token})
    assert response.status_code == 200

    refreshed = await db_session.execute(select(User.is_verified).where(User.id == user.id))
    assert refreshed.scalar() is True

    bad = await client.post("/api/auth/verify-email", json={"token": "garbage"})
    assert bad.status_code == 400


@pytest.mark.asyncio
async def test_google_sign_in_creates_then_links(client, make_user, monkeypatch):
    token_info = {
        "sub": "google-123",
        "email": "adwoa@agro.gh",
        "email_verified": "true",
        "given_name": "Adwoa",
        "family_name": "Owusu",
    }
    monkeypatch.setattr(auth_helpers, "fetch_google_token_info", AsyncMock(return_value=token_info))

    created = await client.post("/api/auth/google", json={"id_token": "token", "role": "supplier"})
    assert created.status_code == 200
    user = created.json()["data"]["user"]
    assert user["role"] == "SUPPLIER"
    assert user["is_verified"] is True
    assert user["has_google"] is True

    again = await client.post("/api/auth/google", json={"id_token": "token"})
    assert again.json()["data"]["user"]["id"] == user["id"]


@pytest.mark.asyncio
async def test_google_sign_in_conflicts_with_other_linked_account(client, make_user, monkeypatch):
    await make_user(email="linked@agro.gh", google_id="google-original")
    monkeypatch.setattr(
        auth_helpers,
        "fetch_google_token_info",
        AsyncMock(return_value={"sub": "google-other", "email": "linked@agro.gh"})
    )

    response = await client.post("/api/auth/google", json={"id_token": "token"})
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_protected_route_requires_token(client, make_user):
    anonymous = await client.get("/api/users/me")
    assert anonymous.status_code == 401
    assert anonymous.json()["success"] is False

    user = await make_user(role=UserRole.FARMER)
    me = await client.get("/api/users/me", headers=auth_headers(user))
    assert me.status_code == 200
    assert me.json()["data"]["id"] == str(user.id)
