"""End-to-end auth flows through the HTTP API."""

import asyncio
import base64
import os
import random
import uuid
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from authkernel.app import app
from authkernel.service.identity import ExternalIdentity
from authkernel.service.runtime import get_runtime

PASSWORD = "Sup3rSecret!"


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def outbox(client):
    """Capture codes instead of sending them."""
    dispatch = MagicMock()
    get_runtime().delivery.dispatch = dispatch
    return dispatch


def _last_code(outbox) -> str:
    return outbox.call_args.args[2]


def _email() -> str:
    return f"user_{uuid.uuid4().hex[:10]}@example.com"


def _indian_mobile() -> str:
    return str(random.randint(6_000_000_000, 9_999_999_999))


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _anonymous_tokens(client) -> dict:
    resp = client.post("/auth/init", json={"client": "swagger"})
    assert resp.status_code == 200
    return resp.json()["data"]


def _create_user(**fields):
    runtime = get_runtime()
    fields.setdefault("email", _email())
    fields.setdefault("username", f"user_{uuid.uuid4().hex[:8]}")
    user = runtime.store.create_user(**fields)
    runtime.auth.save_password(user.id, PASSWORD)
    return user


def _password_login(client, user):
    return client.post(
        "/auth/login",
        json={"username_email": user.email, "password": PASSWORD, "is_otp_login": False},
    )


class TestScenarios:
    def test_email_signup_then_validate(self, client, outbox):
        anon = _anonymous_tokens(client)
        email = _email()

        resp = client.post("/auth/signup", json={"name": "Ada", "email": email, "terms": "1"})
        assert resp.status_code == 200
        assert resp.json()["data"]["action_required"] == "verify_otp"

        resp = client.post(
            "/auth/signup/verify",
            json={"identifier": email, "otp": _last_code(outbox)},
            headers=_bearer(anon["access_token"]),
        )
        assert resp.status_code == 201
        data = resp.json()["data"]
        user_id = data["user"]["id"]
        assert data["user"]["email"] == email

        resp = client.get("/auth/validate", headers=_bearer(data["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["data"]["user"]["id"] == user_id

        # The anonymous session does not survive the upgrade
        resp = client.post("/auth/refresh", json={"refresh_token": anon["refresh_token"]})
        assert resp.status_code == 401

    def test_phone_code_login_with_one_wrong_attempt(self, client, outbox):
        mobile = _indian_mobile()
        user = _create_user(mobile=mobile, country_code="+91")
        identifier = f"+91{mobile}"

        resp = client.post(
            "/auth/login",
            json={"is_otp_login": True, "phone": mobile, "countryCode": "+91"},
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["action_required"] == "2fa_verify"
        channel, destination, code, purpose = outbox.call_args.args
        assert (channel, destination, purpose) == ("whatsapp", identifier, "login")

        wrong = "00000" if code != "00000" else "11111"
        resp = client.post(
            "/auth/login/verify",
            json={"otp": wrong, "phone": mobile, "countryCode": "+91"},
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"
        assert asyncio.run(get_runtime().otp.attempts(identifier, "login")) == 1

        resp = client.post(
            "/auth/login/verify",
            json={"otp": code, "phone": mobile, "countryCode": "+91"},
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["access_token"]
        assert data["refresh_token"]
        assert data["user"]["id"] == str(user.id)

    def test_suspended_login_succeeds_with_action(self, client):
        user = _create_user(status="suspended")
        resp = _password_login(client, user)
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["action_required"] == "suspended"
        assert data["redirect_to"] == "/auth/suspended"
        assert data["access_token"]


class TestInit:
    def test_android_noop(self, client):
        resp = client.post("/auth/init", json={}, headers={"X-Client": "android"})
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["action"] == "noop"
        assert "access_token" not in data

    def test_attested_init_rejects_replay(self, client):
        body = {
            "keyId": "key-1",
            "attestationObject": base64.b64encode(b"attestation").decode(),
            "clientDataHash": base64.b64encode(b"client-data").decode(),
            "challenge": base64.b64encode(os.urandom(32)).decode(),
            "bundleId": "com.example.app",
        }
        resp = client.post("/auth/init", json=body)
        assert resp.status_code == 200
        assert resp.json()["data"]["app_attest_verified"] is True

        resp = client.post("/auth/init", json=body)
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "challenge already used or invalid"

    def test_attested_init_missing_fields(self, client):
        resp = client.post("/auth/init", json={"keyId": "key-1"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"


class TestSignup:
    def test_invalid_payload_is_400(self, client):
        resp = client.post("/auth/signup", json={"name": "A", "email": "not-an-email"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert isinstance(body["error"]["details"], list)

    def test_bad_indian_mobile_is_400(self, client):
        resp = client.post(
            "/auth/signup",
            json={"name": "Raj", "phone": "12345", "country_code": "+91", "terms": "1"},
        )
        assert resp.status_code == 400

    def test_duplicate_is_409(self, client, outbox):
        user = _create_user()
        resp = client.post("/auth/signup", json={"name": "Dup", "email": user.email, "terms": "1"})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"
        outbox.assert_not_called()

    def test_verify_requires_bearer(self, client):
        resp = client.post("/auth/signup/verify", json={"identifier": _email(), "otp": "12345"})
        assert resp.status_code == 401
        assert resp.json()["error"]["details"]["reason"] == "AuthRequired"


class TestLogin:
    def test_password_login_and_role(self, client):
        user = _create_user(verified=True)
        resp = _password_login(client, user)
        assert resp.status_code == 200
        assert resp.json()["data"]["user"]["role"] == "creator"

    def test_wrong_password_is_401(self, client):
        user = _create_user()
        resp = client.post(
            "/auth/login",
            json={"username_email": user.email, "password": "wrong-pass", "is_otp_login": False},
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["details"]["reason"] == "InvalidCredentials"

    def test_deleted_account_is_403(self, client):
        user = _create_user(status="deleted")
        resp = _password_login(client, user)
        assert resp.status_code == 403
        assert resp.json()["error"]["details"]["reason"] == "AccountDeleted"

    def test_non_boolean_flag_is_400(self, client):
        resp = client.post(
            "/auth/login", json={"username_email": _email(), "is_otp_login": "true"}
        )
        assert resp.status_code == 400


class TestTokens:
    def test_refresh_rotates(self, client):
        user = _create_user()
        tokens = _password_login(client, user).json()["data"]

        resp = client.post("/auth/refresh", json={"refreshToken": tokens["refresh_token"]})
        assert resp.status_code == 200
        rotated = resp.json()["data"]
        assert rotated["refresh_token"] != tokens["refresh_token"]

        resp = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert resp.status_code == 401

    def test_logout_all_revokes_refresh(self, client):
        user = _create_user()
        first = _password_login(client, user).json()["data"]
        second = _password_login(client, user).json()["data"]

        resp = client.post("/auth/logout", headers=_bearer(first["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["data"]["revoked"] == 2

        for tokens in (first, second):
            resp = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
            assert resp.status_code == 401

    def test_logout_single_session(self, client):
        user = _create_user()
        first = _password_login(client, user).json()["data"]
        second = _password_login(client, user).json()["data"]

        resp = client.post(
            "/auth/logout",
            json={"refresh_token": first["refresh_token"]},
            headers=_bearer(first["access_token"]),
        )
        assert resp.json()["data"]["revoked"] == 1
        resp = client.post("/auth/refresh", json={"refresh_token": second["refresh_token"]})
        assert resp.status_code == 200

    def test_validate_rejects_garbage(self, client):
        resp = client.get("/auth/validate", headers=_bearer("not.a.token"))
        assert resp.status_code == 401
        assert resp.json()["error"]["details"]["reason"] == "InvalidToken"

    def test_validate_anonymous(self, client):
        anon = _anonymous_tokens(client)
        resp = client.get("/auth/validate", headers=_bearer(anon["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["data"]["user"]["is_anonymous"] is True


class TestPasswordReset:
    def test_full_reset_flow(self, client, outbox):
        user = _create_user()
        old = _password_login(client, user).json()["data"]

        resp = client.post("/auth/forgot-password/otp", json={"email": user.email})
        assert resp.status_code == 200
        resp = client.post(
            "/auth/forgot-password/verify", json={"email": user.email, "otp": _last_code(outbox)}
        )
        assert resp.status_code == 200
        grant = resp.json()["data"]["reset_token"]

        resp = client.post(
            "/auth/reset-password",
            json={"email": user.email, "new_password": "Fresh-Passw0rd", "reset_token": grant},
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["sessions_revoked"] == 1

        resp = client.post("/auth/refresh", json={"refresh_token": old["refresh_token"]})
        assert resp.status_code == 401
        assert _password_login(client, user).status_code == 401
        resp = client.post(
            "/auth/login",
            json={"username_email": user.email, "password": "Fresh-Passw0rd", "is_otp_login": False},
        )
        assert resp.status_code == 200

    def test_unknown_email_gets_same_response(self, client, outbox):
        known = _create_user()
        known_resp = client.post("/auth/forgot-password/otp", json={"email": known.email})
        unknown_resp = client.post("/auth/forgot-password/otp", json={"email": _email()})
        assert known_resp.status_code == unknown_resp.status_code == 200
        assert known_resp.json()["data"] == unknown_resp.json()["data"]
        assert outbox.call_count == 1

    def test_rate_limited_with_headers(self, client, outbox):
        email = _email()
        for _ in range(3):
            resp = client.post("/auth/forgot-password/otp", json={"email": email})
            assert resp.status_code == 200
        resp = client.post("/auth/forgot-password/otp", json={"email": email})
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert int(resp.headers["Retry-After"]) > 0
        assert resp.headers["X-RateLimit-Limit"] == "3"
        assert resp.headers["X-RateLimit-Remaining"] == "0"


class TestExternalSignIn:
    def test_google(self, client):
        email = f"g_{uuid.uuid4().hex[:8]}@gmail.com"
        get_runtime().identity.register_identity(
            "google", "google-token", ExternalIdentity("google", f"sub-{uuid.uuid4()}", email=email)
        )
        resp = client.post("/auth/google", json={"idToken": "google-token"})
        assert resp.status_code == 200
        assert resp.json()["data"]["user"]["email"] == email

    def test_apple_requires_token_or_code(self, client):
        resp = client.post("/auth/apple", json={"email": _email()})
        assert resp.status_code == 400

    def test_apple_with_email_fallback(self, client):
        email = f"a_{uuid.uuid4().hex[:8]}@icloud.com"
        get_runtime().identity.register_identity(
            "apple", "apple-token", ExternalIdentity("apple", f"sub-{uuid.uuid4()}")
        )
        resp = client.post("/auth/apple", json={"id_token": "apple-token", "email": email})
        assert resp.status_code == 200
        assert resp.json()["data"]["user"]["email"] == email

    def test_apple_body_email_of_existing_account_is_409(self, client):
        victim = _create_user()
        get_runtime().identity.register_identity(
            "apple", "other-token", ExternalIdentity("apple", f"sub-{uuid.uuid4()}")
        )
        resp = client.post("/auth/apple", json={"id_token": "other-token", "email": victim.email})
        assert resp.status_code == 409
        assert "access_token" not in resp.text


class TestMisc:
    def test_suspended_info(self, client):
        resp = client.get("/auth/suspended")
        assert resp.status_code == 200
        assert resp.json()["data"]["action_required"] == "contact_support"

    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    def test_request_id_echoed_in_error(self, client):
        resp = client.get("/auth/validate", headers={"X-Request-ID": "req-12345"})
        assert resp.status_code == 401
        assert resp.headers["X-Request-ID"] == "req-12345"
        assert resp.json()["request_id"] == "req-12345"

    def test_auth_responses_not_cached(self, client):
        resp = client.get("/auth/suspended")
        assert "no-store" in resp.headers["Cache-Control"]
