import time

import pyotp
import pytest

from conftest import PASSWORD, bearer
from models import AuditAction, AuditLog, User, UserType
from sqlmodel import select


def _login(client, username, password=PASSWORD):
    return client.post("/api/auth/login", json={"username": username, "password": password})


def test_register_then_verify_registration(client, session):
    response = client.post("/api/auth/register", json={
        "username": "newuser",
        "name": "New User",
        "email": "New.User@Example.com",
        "password": PASSWORD,
    })
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["otpAuthUrl"].startswith("otpauth://totp/")

    user = session.get(User, data["userId"])
    assert user.email == "new.user@example.com"
    assert user.user_type == UserType.RECEPTIONIST
    assert not user.two_factor_enabled

    code = pyotp.TOTP(data["secret"]).now()
    verified = client.post("/api/auth/verify-registration-2fa", json={"userId": user.id, "token": code})
    assert verified.status_code == 200
    body = verified.json()["data"]
    assert body["accessToken"] and body["refreshToken"]
    assert body["user"]["twoFactorEnabled"] is True

    again = client.post("/api/auth/verify-registration-2fa", json={"userId": user.id, "token": code})
    assert again.status_code == 400
    assert again.json()["message"] == "Two-factor authentication is already enabled"


def test_register_rejects_duplicate_identity(client, make_user):
    make_user(username="taken", email="taken@example.com")
    response = client.post("/api/auth/register", json={
        "username": "taken",
        "name": "Someone Else",
        "email": "other@example.com",
        "password": PASSWORD,
    })
    assert response.status_code == 409


def test_register_radiologist_requires_license(client):
    response = client.post("/api/auth/register", json={
        "username": "radnolicense",
        "name": "Rad Without License",
        "email": "rad@example.com",
        "password": PASSWORD,
        "role": "radiologist",
    })
    assert response.status_code == 400
    assert response.json()["field"] == "licenseId"


def test_register_validation_errors_list_fields(client):
    response = client.post("/api/auth/register", json={
        "username": "ab",
        "name": "Short Pass",
        "email": "not-an-email",
        "password": "short",
    })
    assert response.status_code == 400
    body = response.json()
    assert body["status"] == "error"
    fields = {error["field"] for error in body["errors"]}
    assert {"username", "email", "password"} <= fields


def test_two_factor_login_window(client, make_user):
    user = make_user(username="twofa")

    response = _login(client, "twofa")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["twoFactorRequired"] is True
    handshake = data["twoFactorToken"]

    totp = pyotp.TOTP(user.two_factor_secret)
    verified = client.post("/api/auth/verify-login-2fa", json={"twoFactorToken": handshake, "token": totp.now()})
    assert verified.status_code == 200
    body = verified.json()["data"]
    assert set(body) == {"accessToken", "refreshToken", "user"}

    one_step_late = totp.at(time.time() - 30)
    assert client.post(
        "/api/auth/verify-login-2fa", json={"twoFactorToken": handshake, "token": one_step_late}
    ).status_code == 200

    three_steps_late = totp.at(time.time() - 90)
    rejected = client.post(
        "/api/auth/verify-login-2fa", json={"twoFactorToken": handshake, "token": three_steps_late}
    )
    assert rejected.status_code == 400
    assert rejected.json()["message"] == "Invalid 2FA token"


def test_login_rejects_bad_credentials_and_inactive(client, make_user):
    make_user(username="active")
    make_user(username="inactive", is_active=False)

    wrong = _login(client, "active", "WrongPassword1")
    assert wrong.status_code == 401
    assert wrong.json()["message"] == "Invalid username or password"

    inactive = _login(client, "inactive")
    assert inactive.status_code == 401
    assert inactive.json()["message"] == "Account is deactivated"


def test_access_token_is_not_a_handshake_token(client, make_user):
    user = make_user(username="misuse")
    access = bearer(user)["Authorization"].split()[1]
    response = client.post("/api/auth/verify-login-2fa", json={"twoFactorToken": access, "token": "123456"})
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid token for this action"


def test_refresh_token_issues_new_pair(client, make_user):
    user = make_user(username="refresher")
    totp = pyotp.TOTP(user.two_factor_secret)
    handshake = _login(client, "refresher").json()["data"]["twoFactorToken"]
    tokens = client.post(
        "/api/auth/verify-login-2fa", json={"twoFactorToken": handshake, "token": totp.now()}
    ).json()["data"]

    refreshed = client.post("/api/auth/refresh-token", json={"refreshToken": tokens["refreshToken"]})
    assert refreshed.status_code == 200
    assert refreshed.json()["data"]["accessToken"]

    # An access token is not accepted as refresh token
    invalid = client.post("/api/auth/refresh-token", json={"refreshToken": tokens["accessToken"]})
    assert invalid.status_code == 401


def test_me_requires_authentication(client, make_user):
    assert client.get("/api/auth/me").status_code == 401

    user = make_user(username="whoami", privileges={"stock": ["view"]})
    response = client.get("/api/auth/me", headers=bearer(user))
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["username"] == "whoami"
    assert "passwordHash" not in data and "twoFactorSecret" not in data
    stock = next(p for p in data["privileges"] if p["module"] == "stock")
    assert stock["operations"] == ["view"]


def test_logout_blacklists_access_token(client, make_user):
    user = make_user(username="leaving")
    headers = bearer(user)
    assert client.post("/api/auth/logout", headers=headers).status_code == 200
    assert client.get("/api/auth/me", headers=headers).status_code == 401


def test_change_password(client, make_user):
    user = make_user(username="changer")
    headers = bearer(user)

    wrong = client.post("/api/auth/change-password", headers=headers, json={
        "currentPassword": "NotMine123", "newPassword": "NewPassword1",
    })
    assert wrong.status_code == 400
    assert wrong.json()["message"] == "Current password is incorrect"

    ok = client.post("/api/auth/change-password", headers=headers, json={
        "currentPassword": PASSWORD, "newPassword": "NewPassword1",
    })
    assert ok.status_code == 200
    assert _login(client, "changer", "NewPassword1").status_code == 200


def test_forgot_and_reset_password(client, make_user, monkeypatch):
    make_user(username="forgetful", email="forgetful@example.com")
    sent = {}

    async def fake_send(to, name, token):
        sent["token"] = token
        return True

    monkeypatch.setattr("routers.auth.send_password_reset_email", fake_send)

    unknown = client.post("/api/auth/forgot-password", json={"email": "nobody@example.com"})
    known = client.post("/api/auth/forgot-password", json={"email": "forgetful@example.com"})
    assert unknown.status_code == known.status_code == 200
    assert unknown.json()["message"] == known.json()["message"]
    assert "token" in sent

    bad = client.post("/api/auth/reset-password", json={"token": "nope", "password": "Another123"})
    assert bad.status_code == 400

    reset = client.post("/api/auth/reset-password", json={"token": sent["token"], "password": "Another123"})
    assert reset.status_code == 200
    assert reset.json()["data"]["accessToken"]
    assert _login(client, "forgetful", "Another123").status_code == 200

    reused = client.post("/api/auth/reset-password", json={"token": sent["token"], "password": "Another456"})
    assert reused.status_code == 400


def test_disable_two_factor_skips_handshake(client, make_user):
    user = make_user(username="no2fa")
    headers = bearer(user)
    code = pyotp.TOTP(user.two_factor_secret).now()

    response = client.post("/api/auth/2fa/disable", headers=headers, json={"password": PASSWORD, "token": code})
    assert response.status_code == 200

    login = _login(client, "no2fa").json()["data"]
    assert login["twoFactorRequired"] is False
    assert login["accessToken"]


def test_enable_two_factor_returns_qr_code(client, make_user):
    user = make_user(username="qr")
    headers = bearer(user)

    response = client.post("/api/auth/2fa/enable", headers=headers, json={"password": PASSWORD})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["qrCode"].startswith("data:image/png;base64,")

    code = pyotp.TOTP(data["secret"]).now()
    assert client.post("/api/auth/2fa/verify", headers=headers, json={"token": code}).status_code == 200


def test_registration_is_audited(client, session):
    response = client.post("/api/auth/register", json={
        "username": "audited",
        "name": "Audited User",
        "email": "audited@example.com",
        "password": PASSWORD,
    })
    user_id = response.json()["data"]["userId"]
    record = session.exec(select(AuditLog).where(AuditLog.entity_id == user_id)).first()
    assert record.action == AuditAction.CREATE
    assert record.entity_kind == "User"
    assert "passwordHash" not in record.changes
