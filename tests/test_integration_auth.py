"""Integration tests for the HTTP surface.

Covers the complete account lifecycle:
- Registration and duplicate detection
- Email verification through the job processor
- Challenge-response login
- MFA enrollment, login and removal
- Role and permission administration
"""

import asyncio
import time
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from warden import app as app_module
from warden.api.error_handling import register_exception_handlers
from warden.api.routes import require_role
from warden.service import crypto, totp
from warden.service.runtime import get_runtime


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _process_jobs():
    return asyncio.run(get_runtime().job_processor.run_once())


def _latest_code(email):
    runtime = get_runtime()
    identity = runtime.store.get_identity_by_email(email)
    stored = asyncio.run(
        runtime.cache.get_verification_codes(
            identity.id, slots=runtime.settings.verification_code_slots
        )
    )
    return [code for code in stored if code][-1]


def _login(client, username, password, remember_me=False):
    init = client.post("/auth/initLogin", json={"username": username})
    assert init.status_code == 200
    login = init.json()["data"]
    processed = crypto.encrypt_challenge(
        login["challenge"], crypto.hash_password(password, login["salt"]), login["iv"]
    )
    return client.post(
        "/auth/verifyChallenge",
        json={
            "sessionId": login["sessionId"],
            "processedChallenge": processed,
            "rememberMe": remember_me,
        },
    )


def _register_verified(client, name, email, password):
    response = client.post(
        "/auth/register", json={"name": name, "email": email, "password": password}
    )
    assert response.status_code == 201
    _process_jobs()
    confirm = client.post("/auth/verifyEmail", json={"email": email, "code": _latest_code(email)})
    assert confirm.json()["data"]["code"] == "EMAIL_CONFIRMED"
    return response.json()["data"]["user"]


def _token_for(client, name, password):
    response = _login(client, name, password)
    assert response.json()["data"]["code"] == "LOGGED_IN"
    return response.json()["data"]["token"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegistrationFlow:
    def test_register_then_verify_then_login(self, client):
        response = client.post(
            "/auth/register", json={"name": "alice", "email": "a@x.com", "password": "pw1"}
        )
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["code"] == "USER_CREATED"
        assert body["data"]["user"]["emailVerifiedAt"] is None
        assert "password_hash" not in body["data"]["user"]

        first = _login(client, "alice", "pw1")
        assert first.status_code == 200
        assert first.json()["data"] == {"code": "EMAIL_NOT_VERIFIED"}

        assert _process_jobs()["processed"] == 1
        confirm = client.post(
            "/auth/verifyEmail", json={"email": "a@x.com", "code": _latest_code("a@x.com")}
        )
        assert confirm.status_code == 200
        assert confirm.json()["data"]["code"] == "EMAIL_CONFIRMED"

        second = _login(client, "a@x.com", "pw1")
        data = second.json()["data"]
        assert data["code"] == "LOGGED_IN"
        assert data["tokenType"] == "Bearer"
        assert data["user"]["name"] == "alice"

        profile = client.get("/profile", headers=_auth(data["token"]))
        assert profile.status_code == 200
        assert profile.json()["data"]["email"] == "a@x.com"
        assert profile.json()["data"]["effective"] == {"roles": [], "permissions": []}

    def test_duplicate_email_conflicts(self, client):
        client.post("/auth/register", json={"name": "alice", "email": "a@x.com", "password": "pw1"})
        response = client.post(
            "/auth/register", json={"name": "alice2", "email": "A@x.com", "password": "pw2"}
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "USERNAME_ALREADY_TAKEN"

    def test_register_rejects_bad_email(self, client):
        response = client.post(
            "/auth/register", json={"name": "alice", "email": "not-an-email", "password": "pw1"}
        )
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert [item["field"] for item in error["details"]] == ["email"]

    def test_wrong_verification_code(self, client):
        client.post("/auth/register", json={"name": "alice", "email": "a@x.com", "password": "pw1"})
        response = client.post("/auth/verifyEmail", json={"email": "a@x.com", "code": "nope"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "WRONG_VERIFICATION_CODE"

    def test_resend_is_rate_limited_after_all_slots(self, client):
        client.post("/auth/register", json={"name": "alice", "email": "a@x.com", "password": "pw1"})
        _process_jobs()
        for _ in range(2):
            sent = client.post("/auth/sendVerificationEmail", json={"email": "a@x.com"})
            assert sent.json()["data"]["code"] == "VERIFICATION_EMAIL_SENT"
            _process_jobs()
        response = client.post("/auth/sendVerificationEmail", json={"email": "a@x.com"})
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "WAIT_TOO_MANY_ATTEMPTS"

    def test_resend_to_unknown_address_looks_sent(self, client):
        response = client.post("/auth/sendVerificationEmail", json={"email": "ghost@x.com"})
        assert response.status_code == 200
        assert response.json()["data"]["code"] == "VERIFICATION_EMAIL_SENT"


class TestLoginFlow:
    def test_unknown_user_gets_indistinguishable_challenge(self, client):
        _register_verified(client, "alice", "a@x.com", "pw1")
        known = client.post("/auth/initLogin", json={"username": "alice"}).json()["data"]
        unknown = client.post("/auth/initLogin", json={"username": "mallory"}).json()["data"]
        assert set(known) == set(unknown) == {"sessionId", "iv", "challenge", "salt"}
        assert len(unknown["salt"]) == len(known["salt"])

        again = client.post("/auth/initLogin", json={"username": "mallory"}).json()["data"]
        assert again["salt"] == unknown["salt"]

    def test_login_with_mixed_case_email(self, client):
        _register_verified(client, "carol", "Carol@Example.com", "pw1")

        for identifier in ("Carol@Example.com", "carol@example.com", "CAROL@EXAMPLE.COM"):
            response = _login(client, identifier, "pw1")
            assert response.status_code == 200
            assert response.json()["data"]["code"] == "LOGGED_IN"
            assert response.json()["data"]["user"]["email"] == "carol@example.com"

    def test_username_stays_case_sensitive(self, client):
        _register_verified(client, "carol", "c@x.com", "pw1")
        response = _login(client, "Carol", "pw1")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "WRONG_CHALLENGE"

    def test_wrong_password(self, client):
        _register_verified(client, "alice", "a@x.com", "pw1")
        response = _login(client, "alice", "not-the-password")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "WRONG_CHALLENGE"

    def test_session_is_single_use(self, client):
        _register_verified(client, "alice", "a@x.com", "pw1")
        login = client.post("/auth/initLogin", json={"username": "alice"}).json()["data"]
        processed = crypto.encrypt_challenge(
            login["challenge"], crypto.hash_password("pw1", login["salt"]), login["iv"]
        )
        body = {"sessionId": login["sessionId"], "processedChallenge": processed}
        assert client.post("/auth/verifyChallenge", json=body).status_code == 200
        replay = client.post("/auth/verifyChallenge", json=body)
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "WRONG_CHALLENGE"

    def test_profile_requires_token(self, client):
        assert client.get("/profile").status_code == 401
        response = client.get("/profile", headers=_auth("garbage"))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestMfaFlow:
    def _enroll(self, client, token):
        ask = client.post("/auth/askMfaActivation", headers=_auth(token))
        assert ask.status_code == 200
        data = ask.json()["data"]
        assert data["qrCodeUrl"].startswith("data:image/svg+xml;base64,")
        secret = parse_qs(urlparse(data["otpauthUrl"]).query)["secret"][0]
        confirm = client.post(
            "/auth/confirmMfaActivation",
            headers=_auth(token),
            json={"token": totp.generate_totp(secret, time.time())},
        )
        assert confirm.json()["data"]["code"] == "MFA_ACTIVATED"
        return secret

    def test_enroll_login_and_remove(self, client):
        _register_verified(client, "alice", "a@x.com", "pw1")
        token = _token_for(client, "alice", "pw1")
        secret = self._enroll(client, token)

        again = client.post("/auth/askMfaActivation", headers=_auth(token))
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "MFA_ALREADY_ACTIVATED"

        challenge = _login(client, "alice", "pw1").json()["data"]
        assert challenge["code"] == "MFA_REQUIRED"
        assert "token" not in challenge

        verified = client.post(
            "/auth/verifyMfa",
            json={"key": challenge["key"], "token": totp.generate_totp(secret, time.time())},
        )
        assert verified.status_code == 200
        assert verified.json()["data"]["code"] == "LOGGED_IN"
        mfa_token = verified.json()["data"]["token"]

        removed = client.post("/auth/removeMfa", headers=_auth(mfa_token))
        assert removed.json()["data"]["code"] == "MFA_DEACTIVATED"
        assert _login(client, "alice", "pw1").json()["data"]["code"] == "LOGGED_IN"

        twice = client.post("/auth/removeMfa", headers=_auth(mfa_token))
        assert twice.status_code == 409
        assert twice.json()["error"]["code"] == "MFA_ALREADY_DEACTIVATED"

    def test_wrong_activation_token(self, client):
        _register_verified(client, "alice", "a@x.com", "pw1")
        token = _token_for(client, "alice", "pw1")
        client.post("/auth/askMfaActivation", headers=_auth(token))
        response = client.post(
            "/auth/confirmMfaActivation", headers=_auth(token), json={"token": "000000"}
        )
        # One in a million chance the random secret yields 000000 around now
        if response.status_code != 200:
            assert response.status_code == 400
            assert response.json()["error"]["code"] == "MFA_NOT_ACTIVATED"

    def test_mfa_key_is_single_use(self, client):
        _register_verified(client, "alice", "a@x.com", "pw1")
        secret = self._enroll(client, _token_for(client, "alice", "pw1"))
        key = _login(client, "alice", "pw1").json()["data"]["key"]
        code = totp.generate_totp(secret, time.time())
        assert client.post("/auth/verifyMfa", json={"key": key, "token": code}).status_code == 200
        replay = client.post("/auth/verifyMfa", json={"key": key, "token": code})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "WRONG_CHALLENGE"


class TestRoleAdministration:
    @pytest.fixture
    def admin_token(self, client):
        user = _register_verified(client, "root", "root@x.com", "pw-root")
        runtime = get_runtime()
        manage = runtime.store.create_permission(runtime.settings.role_admin_permission)
        runtime.store.add_permission_to_identity(user["id"], manage.id)
        return _token_for(client, "root", "pw-root")

    @pytest.fixture
    def member(self, client):
        user = _register_verified(client, "bob", "bob@x.com", "pw-bob")
        return user, _token_for(client, "bob", "pw-bob")

    def test_non_admin_forbidden(self, client, member):
        _, token = member
        response = client.get("/roles", headers=_auth(token))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_role_lifecycle_and_grants(self, client, admin_token, member):
        user, member_token = member
        headers = _auth(admin_token)

        perm = client.post("/permissions", headers=headers, json={"name": "reports:read"})
        assert perm.status_code == 201
        dup = client.post("/permissions", headers=headers, json={"name": "reports:read"})
        assert dup.status_code == 409

        role = client.post(
            "/roles", headers=headers, json={"name": "analyst", "permissions": ["reports:read"]}
        )
        assert role.status_code == 201
        role_id = role.json()["data"]["id"]
        assert role.json()["data"]["permissions"] == ["reports:read"]

        granted = client.post(
            "/roles/addRoleToUser", headers=headers, json={"userId": user["id"], "roleId": role_id}
        )
        assert granted.status_code == 200
        effective = client.get("/profile", headers=_auth(member_token)).json()["data"]["effective"]
        assert effective == {"roles": ["analyst"], "permissions": ["reports:read"]}

        listing = client.get("/permissions", headers=headers).json()["data"]
        assert {p["name"]: p["roles"] for p in listing}["reports:read"] == ["analyst"]

        renamed = client.put(f"/roles/{role_id}", headers=headers, json={"name": "auditor"})
        assert renamed.json()["data"]["name"] == "auditor"
        effective = client.get("/profile", headers=_auth(member_token)).json()["data"]["effective"]
        assert effective["roles"] == ["auditor"]

        deleted = client.delete(f"/roles/{role_id}", headers=headers)
        assert deleted.json()["data"] == {"id": role_id, "deleted": True}
        effective = client.get("/profile", headers=_auth(member_token)).json()["data"]["effective"]
        assert effective == {"roles": [], "permissions": []}

        assert client.delete(f"/roles/{role_id}", headers=headers).status_code == 404

    def test_direct_permission_grant_and_revoke(self, client, admin_token, member):
        user, member_token = member
        headers = _auth(admin_token)
        perm_id = client.post("/permissions", headers=headers, json={"name": "export"}).json()[
            "data"
        ]["id"]
        body = {"userId": user["id"], "permissionId": perm_id}

        assert client.post("/permissions/addPermissionToUser", headers=headers, json=body).status_code == 200
        profile = client.get("/profile", headers=_auth(member_token)).json()["data"]
        assert profile["effective"]["permissions"] == ["export"]

        client.post("/permissions/removePermissionFromUser", headers=headers, json=body)
        profile = client.get("/profile", headers=_auth(member_token)).json()["data"]
        assert profile["effective"]["permissions"] == []

    def test_grant_to_missing_role(self, client, admin_token, member):
        user, _ = member
        response = client.post(
            "/roles/addRoleToUser", headers=_auth(admin_token), json={"userId": user["id"], "roleId": 999}
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


class TestRoleGuard:
    @pytest.fixture
    def guarded(self):
        app = FastAPI()
        register_exception_handlers(app)

        @app.get("/audit")
        async def audit(principal=Depends(require_role("auditor, admin"))):
            return {"identity_id": principal.identity_id}

        return TestClient(app)

    def test_holder_of_any_listed_role_passes(self, client, guarded):
        user = _register_verified(client, "dana", "dana@x.com", "pw1")
        runtime = get_runtime()
        admin = runtime.store.create_role("admin")
        runtime.store.add_role_to_identity(user["id"], admin.id)

        response = guarded.get("/audit", headers=_auth(_token_for(client, "dana", "pw1")))
        assert response.status_code == 200
        assert response.json() == {"identity_id": user["id"]}

    def test_missing_role_is_forbidden(self, client, guarded):
        _register_verified(client, "erin", "erin@x.com", "pw1")
        response = guarded.get("/audit", headers=_auth(_token_for(client, "erin", "pw1")))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_requires_token(self, guarded):
        response = guarded.get("/audit")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"
