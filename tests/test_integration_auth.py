"""Integration tests for the authentication flow over HTTP.

Covers:
- Login, /me and logout
- Company-enforced MFA with emailed codes and trusted devices
- Session and device management
- Password reset and change
- Company switching
- Error envelopes, rate limits and health
"""

import pytest
from fastapi.testclient import TestClient

from tradegate import app as app_module

PASSWORD = "Sup3rSecret!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _login(client, email="rep@acme.test", password=PASSWORD, **extra):
    return client.post("/v1/auth/login", json={"email": email, "password": password, **extra})


def _auth(sid):
    return {"X-Session-ID": sid}


def _session_id(client, **kwargs):
    response = _login(client, **kwargs)
    assert response.status_code == 200, response.text
    return response.json()["data"]["session_id"]


class TestLogin:
    def test_login_returns_session_and_company(self, client, company, make_user):
        make_user()

        response = _login(client)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["email"] == "rep@acme.test"
        assert data["active_company"]["name"] == "Acme Windows"
        assert data["requires_mfa"] is False
        assert response.cookies.get("sid") == data["session_id"]

    def test_me_returns_user_and_company(self, client, make_user):
        make_user()
        sid = _session_id(client)

        response = client.get("/v1/auth/me", headers=_auth(sid))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["email"] == "rep@acme.test"
        assert data["company"]["name"] == "Acme Windows"
        assert data["can_switch_companies"] is False

    def test_wrong_password_is_401_envelope(self, client, make_user):
        make_user()

        response = client.post(
            "/v1/auth/login",
            json={"email": "rep@acme.test", "password": "nope"},
            headers={"X-Request-ID": "req-login-1"},
        )

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"
        assert body["error"]["details"] == {"login_error": "INVALID_CREDENTIALS"}
        assert body["request_id"] == "req-login-1"
        assert response.headers["X-Request-ID"] == "req-login-1"

    def test_unknown_user_looks_like_wrong_password(self, client):
        response = _login(client, email="ghost@acme.test")

        assert response.status_code == 401
        assert response.json()["error"]["details"]["login_error"] == "INVALID_CREDENTIALS"

    def test_lockout_after_repeated_failures(self, client, make_user):
        make_user()
        for _ in range(5):
            _login(client, password="wrong")

        response = _login(client)

        assert response.status_code == 401
        assert response.json()["error"]["details"]["login_error"] == "ACCOUNT_LOCKED"

    def test_invalid_email_is_rejected_before_lookup(self, client):
        response = _login(client, email="not-an-email")
        assert response.status_code == 422

    def test_invalid_source_is_rejected(self, client, make_user):
        make_user()
        response = _login(client, source="desktop")
        assert response.status_code == 422

    def test_login_rate_limited(self, client, runtime, make_user):
        make_user()
        limit = runtime.settings.login_rate_limit_per_minute
        for _ in range(limit):
            _login(client, password="wrong")

        response = _login(client)

        assert response.status_code == 429
        error = response.json()["error"]
        assert error["code"] == "rate_limited"
        assert error["details"]["retry_after"] >= 0

    def test_logout_ends_session(self, client, make_user):
        make_user()
        sid = _session_id(client)

        assert client.post("/v1/auth/logout", headers=_auth(sid)).status_code == 200

        response = client.get("/v1/auth/me", headers=_auth(sid))
        assert response.status_code == 401

    def test_missing_session_is_401(self, client):
        client.cookies.clear()
        response = client.get("/v1/auth/me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestMfaFlow:
    @pytest.fixture
    def mfa_company(self, runtime, company):
        return runtime.store.update_company(company.id, company.version, {"mfa_required": True})

    def test_company_mfa_gates_the_session(self, client, mfa_company, make_user):
        make_user()

        response = _login(client)
        data = response.json()["data"]
        sid = data["session_id"]

        assert data["requires_mfa"] is True
        assert data["mfa_code"]
        assert data["mfa_code_expires_in"] == 300

        me = client.get("/v1/auth/me", headers=_auth(sid)).json()["data"]
        assert me["requires_mfa"] is True
        assert me["user"] is None

        blocked = client.get("/v1/auth/sessions", headers=_auth(sid))
        assert blocked.status_code == 403
        assert blocked.json()["error"]["code"] == "mfa_required"

        verified = client.post(
            "/v1/auth/mfa/verify", json={"code": data["mfa_code"]}, headers=_auth(sid)
        )
        assert verified.status_code == 200
        assert client.get("/v1/auth/sessions", headers=_auth(sid)).status_code == 200

    def test_wrong_code_is_401(self, client, mfa_company, make_user):
        make_user()
        data = _login(client).json()["data"]
        wrong = "000000" if data["mfa_code"] != "000000" else "111111"

        response = client.post(
            "/v1/auth/mfa/verify", json={"code": wrong}, headers=_auth(data["session_id"])
        )

        assert response.status_code == 401
        assert response.json()["error"]["details"]["mfa_error"] == "mfa_code_invalid"

    def test_resend_replaces_code(self, client, mfa_company, make_user):
        make_user()
        data = _login(client).json()["data"]
        sid = data["session_id"]

        resent = client.post("/v1/auth/mfa/send", headers=_auth(sid)).json()["data"]

        assert resent["expires_in"] == 300
        ok = client.post("/v1/auth/mfa/verify", json={"code": resent["code"]}, headers=_auth(sid))
        assert ok.status_code == 200

    def test_trusted_device_skips_mfa_next_time(self, client, mfa_company, make_user):
        make_user()
        data = _login(client).json()["data"]

        verified = client.post(
            "/v1/auth/mfa/verify",
            json={"code": data["mfa_code"], "trust_device": True},
            headers=_auth(data["session_id"]),
        )
        assert verified.json()["data"]["trusted_device_id"]
        assert verified.cookies.get("device_trust")

        again = _login(client).json()["data"]
        assert again["requires_mfa"] is False

        devices = client.get("/v1/auth/devices", headers=_auth(again["session_id"])).json()
        assert len(devices["data"]["items"]) == 1

    def test_enable_status_and_recovery(self, client, make_user):
        make_user()
        sid = _session_id(client)

        codes = client.post("/v1/auth/mfa/enable", headers=_auth(sid)).json()["data"]
        assert len(codes["recovery_codes"]) == 10

        status = client.get("/v1/auth/mfa/status", headers=_auth(sid))
        # the current session predates MFA and stays verified
        assert status.status_code == 200
        assert status.json()["data"]["enabled"] is True
        assert status.json()["data"]["remaining_recovery_codes"] == 10

        client.cookies.clear()
        fresh = _login(client).json()["data"]
        assert fresh["requires_mfa"] is True

        recovered = client.post(
            "/v1/auth/mfa/recovery",
            json={"code": codes["recovery_codes"][0]},
            headers=_auth(fresh["session_id"]),
        )
        assert recovered.status_code == 200
        assert recovered.json()["data"]["remaining_recovery_codes"] == 9

    def test_regenerate_recovery_codes(self, client, make_user):
        make_user()
        sid = _session_id(client)
        first = client.post("/v1/auth/mfa/enable", headers=_auth(sid)).json()["data"]

        second = client.post("/v1/auth/mfa/recovery-codes", headers=_auth(sid)).json()["data"]

        assert len(second["recovery_codes"]) == 10
        assert not set(first["recovery_codes"]) & set(second["recovery_codes"])

    def test_revoke_trusted_device(self, client, mfa_company, make_user):
        make_user()
        data = _login(client).json()["data"]
        sid = data["session_id"]
        device_id = client.post(
            "/v1/auth/mfa/verify",
            json={"code": data["mfa_code"], "trust_device": True},
            headers=_auth(sid),
        ).json()["data"]["trusted_device_id"]

        assert client.delete(f"/v1/auth/devices/{device_id}", headers=_auth(sid)).status_code == 200

        assert client.get("/v1/auth/devices", headers=_auth(sid)).json()["data"]["items"] == []
        client.cookies.pop("sid", None)
        assert _login(client).json()["data"]["requires_mfa"] is True

    def test_disable_blocked_by_company_policy(self, client, mfa_company, make_user):
        make_user()
        data = _login(client).json()["data"]
        sid = data["session_id"]
        client.post("/v1/auth/mfa/verify", json={"code": data["mfa_code"]}, headers=_auth(sid))
        client.post("/v1/auth/mfa/enable", headers=_auth(sid))

        response = client.post("/v1/auth/mfa/disable", headers=_auth(sid))

        assert response.status_code == 400


class TestSessions:
    def test_lists_sessions_and_revokes_others(self, client, make_user):
        make_user()
        web = _session_id(client)
        client.cookies.clear()
        mobile = _session_id(client, source="mobile")

        listed = client.get("/v1/auth/sessions", headers=_auth(web)).json()["data"]["items"]
        assert {s["sid"] for s in listed} == {web, mobile}
        assert [s["is_current"] for s in listed if s["sid"] == web] == [True]

        revoked = client.delete("/v1/auth/sessions", headers=_auth(web)).json()["data"]
        assert revoked["revoked"] == 1
        assert client.get("/v1/auth/me", headers=_auth(mobile)).status_code == 401

    def test_revoke_single_session(self, client, make_user):
        make_user()
        web = _session_id(client)
        client.cookies.clear()
        api = _session_id(client, source="api")

        response = client.delete(f"/v1/auth/sessions/{api}", headers=_auth(web))

        assert response.status_code == 200
        assert client.get("/v1/auth/me", headers=_auth(api)).status_code == 401

    def test_cannot_revoke_someone_elses_session(self, client, make_user):
        make_user()
        make_user("other@acme.test")
        mine = _session_id(client)
        client.cookies.clear()
        theirs = _session_id(client, email="other@acme.test")

        response = client.delete(f"/v1/auth/sessions/{theirs}", headers=_auth(mine))

        assert response.status_code == 404
        assert client.get("/v1/auth/me", headers=_auth(theirs)).status_code == 200


class TestPasswords:
    def test_reset_flow(self, client, make_user):
        make_user()
        old_sid = _session_id(client)

        requested = client.post("/v1/auth/password/reset/request", json={"email": "rep@acme.test"})
        token = requested.json()["data"]["token"]

        confirmed = client.post(
            "/v1/auth/password/reset/confirm",
            json={"token": token, "new_password": "Fresh-pass42"},
        )

        assert confirmed.status_code == 200
        assert client.get("/v1/auth/me", headers=_auth(old_sid)).status_code == 401
        client.cookies.clear()
        assert _login(client, password="Fresh-pass42").status_code == 200

    def test_reset_request_for_unknown_email_looks_the_same(self, client):
        response = client.post("/v1/auth/password/reset/request", json={"email": "ghost@acme.test"})

        assert response.status_code == 200
        assert "token" not in response.json()["data"]

    def test_bad_reset_token(self, client):
        response = client.post(
            "/v1/auth/password/reset/confirm",
            json={"token": "bogus", "new_password": "Fresh-pass42"},
        )
        assert response.status_code == 400

    def test_change_password(self, client, make_user):
        make_user()
        sid = _session_id(client)

        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": PASSWORD, "new_password": "Changed-pass7"},
            headers=_auth(sid),
        )

        assert response.status_code == 200
        assert client.get("/v1/auth/me", headers=_auth(sid)).status_code == 200

    def test_change_password_policy_failure_lists_errors(self, client, make_user):
        make_user()
        sid = _session_id(client)

        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": PASSWORD, "new_password": "short"},
            headers=_auth(sid),
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
        assert response.json()["error"]["details"]["errors"]


class TestSwitchCompany:
    def test_member_switches_company(self, client, runtime, make_user):
        user = make_user()
        other = runtime.store.create_company("Second Co")
        runtime.store.add_membership(user.id, other.id)
        sid = _session_id(client)

        response = client.post(
            "/v1/auth/switch-company", json={"company_id": other.id}, headers=_auth(sid)
        )

        assert response.status_code == 200
        assert response.json()["data"]["company"]["id"] == other.id
        me = client.get("/v1/auth/me", headers=_auth(sid)).json()["data"]
        assert me["company"]["id"] == other.id
        assert me["can_switch_companies"] is True

    def test_non_member_cannot_switch(self, client, runtime, make_user):
        make_user()
        other = runtime.store.create_company("Second Co")
        sid = _session_id(client)

        response = client.post(
            "/v1/auth/switch-company", json={"company_id": other.id}, headers=_auth(sid)
        )

        assert response.status_code == 403

    def test_company_header_ignored_for_company_users(self, client, runtime, make_user):
        make_user()
        other = runtime.store.create_company("Second Co")
        sid = _session_id(client)

        response = client.get("/v1/auth/me", headers={**_auth(sid), "X-Company-ID": other.id})

        assert response.json()["data"]["company"]["name"] == "Acme Windows"


class TestAppSurface:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["filesystem"]["status"] == "healthy"

    def test_security_headers(self, client):
        response = client.get("/v1/auth/me")

        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]
        assert response.headers["X-Request-ID"]
