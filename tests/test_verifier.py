"""Tests for the credential verification pipeline.

Tests for:
- Syntactic and claim validation
- One-time use within the replay window
- Behavioural blocking and compliance checks
- Fail-secure handling of timeouts and record failures
"""

import asyncio
from unittest.mock import AsyncMock

import jwt
import pytest

from descgate.service.errors import (
    AuthExpiredError,
    AuthRevokedError,
    BehavioralAnomalyError,
    ComplianceError,
    EmailNotVerifiedError,
    InternalFailureError,
    OperationTimeoutError,
    ReplayDetectedError,
)
from descgate.service.replay_guard import RecordResult, credential_fingerprint
from descgate.service.verifier import CredentialVerifier
from descgate.storage.common import OBSERVATIONS, TOKEN_BLACKLIST

from conftest import OTHER_SUBJECT_ID, SUBJECT_ID

CLIENT_IP = "203.0.113.7"


def _verifier(runtime, **overrides):
    settings = runtime.settings.model_copy(update=overrides)
    return CredentialVerifier(
        settings,
        runtime.identity_provider,
        runtime.replay_guard,
        runtime.security_log,
        risk_scorer=runtime.risk,
        clock=runtime.clock,
    )


class TestHappyPath:
    async def test_valid_credential_is_consumed(self, runtime, mint):
        credential = mint(jti="cred-1")

        result = await runtime.verifier.verify(credential, CLIENT_IP, "pytest")

        assert result.valid
        assert result.status_code == 200
        identity = result.raise_for_failure()
        assert identity.subject_id == SUBJECT_ID
        assert identity.email == "buyer@example.com"
        assert identity.security_level == "HIGH"
        fingerprint = credential_fingerprint(jti="cred-1")
        assert await runtime.store.get(TOKEN_BLACKLIST, fingerprint) is not None
        events = await runtime.security_log.recent(event_types=["AUTHENTICATION_SUCCESS"])
        assert events[0].subject_id == SUBJECT_ID

    async def test_fingerprint_without_jti_uses_issue_time(self, runtime, mint, clock):
        credential = mint(jti=False)

        result = await runtime.verifier.verify(credential, CLIENT_IP)

        expected = credential_fingerprint(issued_at=int(clock.now()), subject_id=SUBJECT_ID)
        assert result.fingerprint == expected


class TestReplay:
    async def test_second_use_is_rejected(self, runtime, mint):
        credential = mint()
        assert (await runtime.verifier.verify(credential, CLIENT_IP)).valid

        replay = await runtime.verifier.verify(credential, CLIENT_IP)

        assert not replay.valid
        assert replay.status_code == 401
        assert replay.risk == "CRITICAL"
        assert isinstance(replay.error, ReplayDetectedError)
        assert replay.error.fail_safe

    async def test_concurrent_verifications_yield_one_success(self, runtime, mint):
        credential = mint()

        results = await asyncio.gather(
            *(runtime.verifier.verify(credential, CLIENT_IP) for _ in range(5))
        )

        assert sum(1 for r in results if r.valid) == 1

    async def test_record_failure_fails_secure(self, runtime, mint):
        runtime.replay_guard.record = AsyncMock(return_value=RecordResult(False, "SYSTEM_ERROR"))

        result = await runtime.verifier.verify(mint(), CLIENT_IP)

        assert not result.valid
        assert result.status_code == 401
        assert result.error.fail_safe

    async def test_lock_contention_fails_secure(self, runtime, mint):
        credential = mint(jti="cred-locked")
        fingerprint = credential_fingerprint(jti="cred-locked")
        assert await runtime.locks.acquire(f"token_check:{fingerprint}")

        result = await runtime.verifier.verify(credential, CLIENT_IP)

        assert not result.valid
        assert result.status_code == 401
        assert await runtime.store.get(TOKEN_BLACKLIST, fingerprint) is None


class TestSyntax:
    @pytest.mark.parametrize("raw", ["", "   ", None, 42, "x" * 9000, "a!b.c.d"])
    async def test_malformed_input(self, runtime, raw):
        result = await runtime.verifier.verify(raw, CLIENT_IP)

        assert result.status_code == 401
        assert result.error.error_code == "INVALID_TOKEN_FORMAT"
        assert result.risk == "HIGH"

    async def test_format_failures_are_logged_as_validation_failures(self, runtime):
        await runtime.verifier.verify("a!b.c.d", CLIENT_IP, endpoint="/v1/auth")

        events = await runtime.security_log.recent(event_types=["TOKEN_VALIDATION_FAILURE"])
        assert [(e.attributes["reason"], e.client_ip, e.endpoint) for e in events] == [
            ("INVALID_TOKEN_FORMAT", CLIENT_IP, "/v1/auth")
        ]
        assert await runtime.security_log.recent(event_types=["AUTHENTICATION_FAILURE"])

    async def test_missing_required_claim(self, runtime, clock):
        token = jwt.encode(
            {"sub": SUBJECT_ID, "aud": "descgate-test", "exp": int(clock.now()) + 60},
            "x" * 64,
            algorithm="HS256",
        )

        result = await runtime.verifier.verify(token, CLIENT_IP)

        assert result.error.error_code == "INVALID_TOKEN_FORMAT"

    async def test_expired_credential(self, runtime, mint, clock):
        credential = mint(issued_at=int(clock.now()) - 100, expires_in=99)

        result = await runtime.verifier.verify(credential, CLIENT_IP)

        assert isinstance(result.error, AuthExpiredError)
        assert result.error.error_code == "TOKEN_EXPIRED"

    async def test_non_jwt_string_is_left_to_provider(self, runtime):
        result = await runtime.verifier.verify("opaque-credential", CLIENT_IP)

        assert result.status_code == 401
        assert result.error.error_code == "INVALID_TOKEN"


class TestClaims:
    async def test_bad_signature(self, runtime, mint):
        result = await runtime.verifier.verify(mint(secret="y" * 64), CLIENT_IP)

        assert result.error.error_code == "INVALID_TOKEN"

    async def test_wrong_issuer(self, runtime, mint):
        result = await runtime.verifier.verify(mint(issuer="https://evil.example/x"), CLIENT_IP)

        assert result.error.error_code == "INVALID_TOKEN"

    async def test_wrong_audience(self, runtime, mint):
        result = await runtime.verifier.verify(mint(audience="another-project"), CLIENT_IP)

        assert result.status_code == 401
        assert result.error.error_code == "INVALID_TOKEN"

    async def test_unverified_email(self, runtime, mint):
        result = await runtime.verifier.verify(mint(email_verified=False), CLIENT_IP)

        assert result.status_code == 403
        assert isinstance(result.error, EmailNotVerifiedError)
        assert result.error.extra == {"emailVerified": False}
        assert not await runtime.security_log.recent(event_types=["TOKEN_VALIDATION_FAILURE"])

    async def test_missing_email(self, runtime, mint):
        result = await runtime.verifier.verify(mint(email=None), CLIENT_IP)

        assert result.status_code == 401

    async def test_invalid_subject_format(self, runtime, mint):
        result = await runtime.verifier.verify(mint(subject_id="short"), CLIENT_IP)

        assert result.error.error_code == "INVALID_TOKEN"

    async def test_credential_older_than_an_hour(self, runtime, mint, clock):
        credential = mint(issued_at=int(clock.now()) - 3700, expires_in=3800)

        result = await runtime.verifier.verify(credential, CLIENT_IP)

        assert isinstance(result.error, AuthExpiredError)

    async def test_sign_in_older_than_a_day(self, runtime, mint, clock):
        credential = mint(auth_time=int(clock.now()) - 25 * 3600)

        result = await runtime.verifier.verify(credential, CLIENT_IP)

        assert isinstance(result.error, AuthExpiredError)

    async def test_issued_in_the_future(self, runtime, mint, clock):
        credential = mint(issued_at=int(clock.now()) + 600)

        result = await runtime.verifier.verify(credential, CLIENT_IP)

        assert result.status_code == 401
        assert result.error.error_code == "INVALID_TOKEN"

    async def test_revoked_subject(self, runtime, mint, clock):
        await runtime.identity_provider.revoke_sessions(SUBJECT_ID)
        credential = mint(auth_time=int(clock.now()) - 10)

        result = await runtime.verifier.verify(credential, CLIENT_IP)

        assert isinstance(result.error, AuthRevokedError)
        assert result.error.error_code == "TOKEN_REVOKED"

    async def test_failed_checks_leave_no_blacklist_entry(self, runtime, mint):
        credential = mint(email_verified=False, jti="cred-unverified")

        await runtime.verifier.verify(credential, CLIENT_IP)

        fingerprint = credential_fingerprint(jti="cred-unverified")
        assert await runtime.store.get(TOKEN_BLACKLIST, fingerprint) is None


class TestRiskAndCompliance:
    async def test_behavioral_anomaly_blocks(self, runtime, mint, clock):
        for i in range(11):
            await runtime.store.append(
                OBSERVATIONS,
                {"subject_id": SUBJECT_ID, "client_ip": "198.51.100.1", "timestamp": clock.now_ms() - i},
                partition=SUBJECT_ID,
            )

        result = await runtime.verifier.verify(mint(), CLIENT_IP)

        assert result.status_code == 403
        assert isinstance(result.error, BehavioralAnomalyError)
        events = await runtime.security_log.recent(event_types=["SUSPICIOUS_ACTIVITY"])
        assert events[0].attributes["activity"] == "behavioral_anomaly"

    async def test_other_subjects_history_is_separate(self, runtime, mint, clock):
        for i in range(11):
            await runtime.store.append(
                OBSERVATIONS,
                {"subject_id": OTHER_SUBJECT_ID, "client_ip": "198.51.100.1", "timestamp": clock.now_ms() - i},
                partition=OTHER_SUBJECT_ID,
            )

        assert (await runtime.verifier.verify(mint(), CLIENT_IP)).valid

    async def test_strong_authentication_required(self, runtime, mint):
        verifier = _verifier(runtime, require_strong_authentication=True)
        credential = mint(firebase={"sign_in_provider": "password"})

        result = await verifier.verify(credential, CLIENT_IP)

        assert isinstance(result.error, ComplianceError)
        assert result.error.error_code == "STRONG_AUTH_REQUIRED"

    async def test_mfa_claim_satisfies_strong_authentication(self, runtime, mint):
        verifier = _verifier(runtime, require_strong_authentication=True)
        credential = mint(firebase={"sign_in_provider": "password"}, mfa_enabled=True)

        assert (await verifier.verify(credential, CLIENT_IP)).valid

    async def test_restricted_session_age(self, runtime, mint, clock):
        credential = mint(auth_time=int(clock.now()) - 20 * 60, requires_pci_session=True)

        result = await runtime.verifier.verify(credential, CLIENT_IP)

        assert isinstance(result.error, AuthExpiredError)

    async def test_country_outside_allow_list(self, runtime, mint):
        verifier = _verifier(runtime, allowed_countries=["US", "CA"])

        blocked = await verifier.verify(mint(), CLIENT_IP, country="DE")
        allowed = await verifier.verify(mint(), CLIENT_IP, country="us")

        assert blocked.error.error_code == "REGION_NOT_ALLOWED"
        assert allowed.valid


class TestFailSecure:
    async def test_timeout_returns_408(self, runtime, mint):
        async def slow_verify(*args, **kwargs):
            await asyncio.sleep(1)

        runtime.identity_provider.verify = AsyncMock(side_effect=slow_verify)
        runtime.verifier.operation_timeout = 0.01

        result = await runtime.verifier.verify(mint(), CLIENT_IP)

        assert result.status_code == 408
        assert result.risk == "CRITICAL"
        assert isinstance(result.error, OperationTimeoutError)
        assert runtime.verifier.metrics.timeouts == 1

    async def test_unexpected_error_is_rejected(self, runtime, mint):
        runtime.identity_provider.verify = AsyncMock(side_effect=RuntimeError("kaboom"))

        result = await runtime.verifier.verify(mint(), CLIENT_IP)

        assert not result.valid
        assert result.status_code == 500
        assert isinstance(result.error, InternalFailureError)
        assert result.error.fail_safe

    async def test_raise_for_failure_raises_the_error(self, runtime):
        result = await runtime.verifier.verify("", CLIENT_IP)

        with pytest.raises(type(result.error)):
            result.raise_for_failure()


class TestMetrics:
    async def test_health_check_includes_metrics(self, runtime, mint):
        await runtime.verifier.verify(mint(), CLIENT_IP)
        await runtime.verifier.verify("", CLIENT_IP)

        health = await runtime.verifier.health_check()

        assert health["status"] == "healthy"
        assert health["metrics"]["requests"] == 2
        assert health["metrics"]["successes"] == 1
        assert health["metrics"]["errorRate"] == 0.5
