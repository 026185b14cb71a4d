"""End-to-end tests through the FastAPI app.

Tests for:
- Session sign-in, replay, expiry and unverified email over HTTP
- Role and ownership checks on user actions
- Rate limiting per client address
- Origin, method and header hardening
"""

import pytest
from fastapi.testclient import TestClient

from descgate.app import app
from descgate.service.authorization import SYSTEM_ACTOR
from descgate.service.products import ProductInfo
from descgate.service.replay_guard import credential_fingerprint
from descgate.service.session_broker import AUTH_COOKIE_NAME, CSRF_COOKIE_NAME
from descgate.storage.common import TOKEN_BLACKLIST, USERS
from descgate.storage.models import UserRecord

from conftest import (
    ADMIN_SUBJECT_ID,
    ORIGIN,
    OTHER_SUBJECT_ID,
    SUBJECT_ID,
    login,
    run,
)


def _auth(client, action, **body):
    return client.post("/v1/auth", json={"action": action, **body})


def _user(client, csrf, action, **body):
    return client.post(
        "/v1/user", json={"action": action, **body}, headers={"X-CSRF-Token": csrf}
    )


def _make_admin(runtime):
    run(runtime.gate.update_user_role(SYSTEM_ACTOR, ADMIN_SUBJECT_ID, "admin"))


class TestSignInScenarios:
    def test_fresh_login(self, client, runtime, mint, clock):
        now = int(clock.now())
        credential = mint(issued_at=now - 10, expires_in=3560, jti="cred-http-1")

        response = _auth(client, "authenticate", idToken=credential)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["csrfToken"]
        assert body["user"]["uid"] == SUBJECT_ID
        cookies = response.headers.get_list("set-cookie")
        assert len(cookies) == 2
        for cookie in cookies:
            assert "samesite=strict" in cookie.lower()
            assert "secure" in cookie.lower()
        assert any(c.startswith(f"{AUTH_COOKIE_NAME}=") and "httponly" in c.lower() for c in cookies)
        fingerprint = credential_fingerprint(jti="cred-http-1")
        assert run(runtime.store.get(TOKEN_BLACKLIST, fingerprint)) is not None
        events = run(runtime.security_log.recent(event_types=["AUTHENTICATION_SUCCESS"]))
        assert events[0].subject_id == SUBJECT_ID

    def test_replay_attempt(self, client, runtime, mint):
        credential = mint()
        assert _auth(client, "authenticate", idToken=credential).status_code == 200

        response = _auth(client, "authenticate", idToken=credential)

        assert response.status_code == 401
        assert response.json() == {"error": "Authentication failed", "failSafe": True}
        assert "set-cookie" not in response.headers
        assert run(runtime.security_log.recent(event_types=["TOKEN_REPLAY_DETECTED"]))

    def test_expired_credential(self, client, runtime, mint, clock):
        credential = mint(issued_at=int(clock.now()) - 100, expires_in=99, jti="cred-expired")

        response = _auth(client, "authenticate", idToken=credential)

        assert response.status_code == 401
        assert response.json()["code"] == "TOKEN_EXPIRED"
        fingerprint = credential_fingerprint(jti="cred-expired")
        assert run(runtime.store.get(TOKEN_BLACKLIST, fingerprint)) is None

    def test_unverified_email(self, client, mint):
        response = _auth(client, "authenticate", idToken=mint(email_verified=False))

        assert response.status_code == 403
        assert response.json()["emailVerified"] is False

    def test_missing_credential(self, client):
        response = _auth(client, "authenticate")

        assert response.status_code == 400
        assert response.json()["code"] == "MISSING_TOKEN"

    def test_unknown_action_is_rejected(self, client):
        response = _auth(client, "format_disk")

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_INPUT"


class TestSessions:
    def test_verify_uses_cookie(self, client, mint):
        csrf = login(client, mint())

        body = _auth(client, "verify").json()

        assert body["csrfToken"] == csrf
        assert body["rotated"] is False

    def test_old_session_is_rotated(self, client, mint, clock):
        csrf = login(client, mint())
        clock.advance(1801)

        response = _auth(client, "verify")

        assert response.status_code == 200
        assert response.json()["rotated"] is True
        assert response.json()["csrfToken"] != csrf
        assert _auth(client, "verify").json()["rotated"] is False

    def test_rotation_survives_a_failing_handler(self, client, mint, clock):
        csrf = login(client, mint())
        old_session = client.cookies.get(AUTH_COOKIE_NAME)
        clock.advance(1801)

        missing = client.post(
            "/v1/products/lookup", json={"barcode": "12345670"}, headers={"X-CSRF-Token": csrf}
        )

        assert missing.status_code == 404
        assert len(missing.headers.get_list("set-cookie")) == 2
        assert client.cookies.get(AUTH_COOKIE_NAME) != old_session
        assert client.cookies.get(CSRF_COOKIE_NAME) != csrf
        verified = _auth(client, "verify")
        assert verified.status_code == 200
        assert verified.json()["rotated"] is False

    def test_refresh_requires_csrf(self, client, mint):
        csrf = login(client, mint())

        denied = _auth(client, "refresh")
        assert denied.status_code == 403
        assert denied.json()["code"] == "CSRF_INVALID"

        refreshed = client.post(
            "/v1/auth", json={"action": "refresh"}, headers={"X-CSRF-Token": csrf}
        )
        assert refreshed.status_code == 200
        assert refreshed.json()["csrfToken"] != csrf

    def test_logout_ends_session(self, client, mint):
        csrf = login(client, mint())

        response = _auth(client, "logout", csrfToken=csrf)

        assert response.status_code == 200
        assert _auth(client, "verify").status_code == 401

    def test_logout_without_session(self, client):
        assert _auth(client, "logout").json() == {"success": True}

    def test_verify_admin(self, client, runtime, mint):
        login(client, mint())
        assert _auth(client, "verify_admin").status_code == 403

        _make_admin(runtime)
        admin_client = TestClient(app, base_url="https://testserver", headers={"Origin": ORIGIN})
        login(admin_client, mint(subject_id=ADMIN_SUBJECT_ID))

        body = _auth(admin_client, "verify_admin").json()
        assert body["isAdmin"] is True
        assert body["role"] == "admin"


class TestUserActions:
    def test_usage_through_session(self, client, mint):
        csrf = login(client, mint())

        response = _user(client, csrf, "get_usage")

        assert response.status_code == 200
        assert response.json()["usage"] == {
            "userId": SUBJECT_ID,
            "subscriptionTier": "free",
            "monthlyUsage": 0,
            "maxUsage": 5,
            "remaining": 5,
            "billingPeriod": "2025-10",
        }

    def test_cookie_requests_need_csrf_header(self, client, mint):
        login(client, mint())

        response = client.post("/v1/user", json={"action": "get_usage"})

        assert response.status_code == 403
        assert response.json()["code"] == "CSRF_INVALID"

    def test_non_admin_role_change_is_denied(self, client, runtime, mint):
        csrf = login(client, mint())

        response = _user(
            client, csrf, "update_user_role", targetUserId=OTHER_SUBJECT_ID, role="admin"
        )

        assert response.status_code == 403
        events = run(runtime.security_log.recent(event_types=["AUTHZ_FAILURE"]))
        assert events[0].attributes["requiredPermission"] == "update_user_role"

    def test_cross_subject_usage_is_denied(self, client, mint):
        csrf = login(client, mint())

        response = _user(client, csrf, "get_usage", userId=OTHER_SUBJECT_ID)

        assert response.status_code == 403

    def test_bearer_credential_is_single_use(self, client, mint):
        credential = mint()
        headers = {"Authorization": f"Bearer {credential}"}

        first = client.post("/v1/user", json={"action": "get_usage"}, headers=headers)
        second = client.post("/v1/user", json={"action": "get_usage"}, headers=headers)

        assert first.status_code == 200
        assert second.status_code == 401

    def test_admin_revokes_sessions(self, client, runtime, mint, clock):
        user_client = TestClient(app, base_url="https://testserver", headers={"Origin": ORIGIN})
        login(user_client, mint())
        _make_admin(runtime)
        csrf = login(client, mint(subject_id=ADMIN_SUBJECT_ID))
        clock.advance(5)

        response = _user(client, csrf, "revoke_sessions", targetUserId=SUBJECT_ID)

        assert response.json() == {"success": True, "revoked": SUBJECT_ID}
        denied = _auth(user_client, "verify")
        assert denied.status_code == 401
        assert denied.json()["code"] == "TOKEN_REVOKED"
        events = run(runtime.security_log.recent(event_types=["SESSIONS_REVOKED"]))
        assert events[0].attributes == {"revokedBy": ADMIN_SUBJECT_ID}
        assert _auth(client, "verify").status_code == 200

    def test_revoking_sessions_needs_admin(self, client, mint):
        csrf = login(client, mint())

        response = _user(client, csrf, "revoke_sessions", targetUserId=OTHER_SUBJECT_ID)

        assert response.status_code == 403

    def test_admin_manages_users(self, client, runtime, mint):
        _make_admin(runtime)
        record = UserRecord(subject_id=SUBJECT_ID, monthly_usage=5, billing_period="2025-10")
        run(runtime.store.set(USERS, SUBJECT_ID, record.to_document()))
        csrf = login(client, mint(subject_id=ADMIN_SUBJECT_ID))

        users = _user(client, csrf, "get_all_users").json()["users"]
        assert {u["userId"] for u in users} == {SUBJECT_ID, ADMIN_SUBJECT_ID}

        reset = _user(client, csrf, "reset_usage", targetUserId=SUBJECT_ID)
        assert reset.json()["usage"]["monthlyUsage"] == 0

        promoted = _user(client, csrf, "update_user_role", targetUserId=SUBJECT_ID, role="admin")
        assert promoted.json()["user"]["role"] == "admin"

        assert _user(client, csrf, "delete_user", targetUserId=ADMIN_SUBJECT_ID).status_code == 403
        deleted = _user(client, csrf, "delete_user", targetUserId=SUBJECT_ID)
        assert deleted.json() == {"success": True, "deleted": SUBJECT_ID}

    def test_invalid_target_is_rejected(self, client, runtime, mint):
        _make_admin(runtime)
        csrf = login(client, mint(subject_id=ADMIN_SUBJECT_ID))

        response = _user(client, csrf, "reset_usage", targetUserId="bad id!")

        assert response.status_code == 400


class TestProducts:
    def test_lookup(self, client, runtime, mint):
        runtime.catalog.add(ProductInfo(barcode="96385074", name="Trail Bottle"))
        csrf = login(client, mint())

        found = client.post(
            "/v1/products/lookup", json={"barcode": "9638-5074"}, headers={"X-CSRF-Token": csrf}
        )
        missing = client.post(
            "/v1/products/lookup", json={"barcode": "12345670"}, headers={"X-CSRF-Token": csrf}
        )
        invalid = client.post(
            "/v1/products/lookup", json={"barcode": "123"}, headers={"X-CSRF-Token": csrf}
        )

        assert found.json()["product"]["name"] == "Trail Bottle"
        assert missing.status_code == 404
        assert invalid.status_code == 400
        assert invalid.json()["code"] == "INVALID_BARCODE"

    def test_describe_meters_free_tier(self, client, mint):
        csrf = login(client, mint())
        payload = {"product": {"name": "Chef Pan", "category": "kitchen"}, "brandTone": "casual"}

        for expected in range(1, 6):
            response = client.post(
                "/v1/products/describe", json=payload, headers={"X-CSRF-Token": csrf}
            )
            assert response.status_code == 200
            assert response.json()["usage"]["currentUsage"] == expected

        blocked = client.post("/v1/products/describe", json=payload, headers={"X-CSRF-Token": csrf})
        assert blocked.status_code == 403
        assert blocked.json()["code"] == "USAGE_LIMIT_REACHED"

    def test_describe_validates_options(self, client, mint):
        csrf = login(client, mint())

        response = client.post(
            "/v1/products/describe",
            json={"product": {"name": "Chef Pan"}, "language": "klingon"},
            headers={"X-CSRF-Token": csrf},
        )

        assert response.status_code == 400


class TestRateLimit:
    def test_thirty_first_call_is_limited(self, client, clock):
        for _ in range(30):
            assert _auth(client, "authenticate", idToken="garbage").status_code == 401

        limited = _auth(client, "authenticate", idToken="garbage")
        assert limited.status_code == 429
        assert int(limited.headers["Retry-After"]) <= 60
        assert limited.json()["code"] == "RATE_LIMITED"

        clock.advance(60)
        assert _auth(client, "authenticate", idToken="garbage").status_code == 401

    def test_remaining_header(self, client):
        response = _auth(client, "verify")

        assert response.headers["X-RateLimit-Remaining"] == "29"


class TestHttpSurface:
    def test_security_headers(self, client):
        response = _auth(client, "verify")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Strict-Transport-Security"].startswith("max-age=31536000")
        assert response.headers["Cache-Control"] == "no-cache, no-store, must-revalidate"
        assert response.headers["Access-Control-Allow-Origin"] == ORIGIN
        assert response.headers["Access-Control-Allow-Credentials"] == "true"

    def test_preflight(self, client):
        response = client.options("/v1/auth")

        assert response.status_code == 204
        assert response.headers["Access-Control-Allow-Methods"] == "OPTIONS, POST"
        assert "X-CSRF-Token" in response.headers["Access-Control-Allow-Headers"]

    def test_method_not_allowed(self, client):
        response = client.get("/v1/auth")

        assert response.status_code == 405
        assert response.headers["Allow"] == "OPTIONS, POST"

    def test_foreign_origin_rejected(self, client, runtime):
        response = client.post(
            "/v1/auth", json={"action": "verify"}, headers={"Origin": "https://evil.example"}
        )

        assert response.status_code == 403
        assert response.json()["code"] == "ORIGIN_NOT_ALLOWED"
        assert "Access-Control-Allow-Origin" not in response.headers
        events = run(runtime.security_log.recent(event_types=["SUSPICIOUS_ACTIVITY"]))
        assert events[0].attributes["activity"] == "ORIGIN_NOT_ALLOWED"

    def test_missing_origin_rejected(self, runtime):
        bare = TestClient(app, base_url="https://testserver")

        assert bare.post("/v1/auth", json={"action": "verify"}).status_code == 403
        health = bare.get("/healthz")
        assert health.status_code == 200
        assert health.json()["status"] == "healthy"
        assert health.json()["checks"]["store"]["type"] == "MemoryStore"

    def test_protected_endpoint_without_credentials(self, client):
        response = client.post("/v1/user", json={"action": "get_usage"})

        assert response.status_code == 401

    def test_unknown_path(self, client):
        response = client.get("/v1/nothing-here")

        assert response.status_code == 404
        assert response.headers["X-Frame-Options"] == "DENY"

    @pytest.mark.parametrize(
        "supplied,echoed",
        [("req-123", True), ("bad id with spaces", False)],
    )
    def test_request_id(self, client, supplied, echoed):
        response = client.get("/healthz", headers={"X-Request-ID": supplied})

        assert (response.headers["X-Request-ID"] == supplied) is echoed
        assert response.headers["X-Request-ID"]
