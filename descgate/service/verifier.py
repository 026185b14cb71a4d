"""Credential verification pipeline.

``CredentialVerifier.verify`` runs the full one-time-use pipeline for a
primary credential: syntactic checks, identity-provider verification, claim
policy, replay check, behavioural risk, and finally recording the
credential as consumed. Success is only ever returned after the record step
succeeded. The whole pipeline runs under a hard time budget.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from descgate.config import Settings
from descgate.logging import get_logger
from descgate.service.clock import Clock, system_clock
from descgate.service.errors import (
    AuthExpiredError,
    AuthRequiredError,
    AuthRevokedError,
    BehavioralAnomalyError,
    ComplianceError,
    EmailNotVerifiedError,
    InternalFailureError,
    OperationTimeoutError,
    ReplayDetectedError,
    ServiceError,
)
from descgate.service.identity import (
    CredentialExpired,
    CredentialInvalid,
    CredentialRevoked,
    EmailNotVerified,
    Identity,
    IdentityProvider,
    IdentityProviderUnavailable,
)
from descgate.service.replay_guard import ReplayGuard, credential_fingerprint
from descgate.service.risk import RiskAssessment, RiskScorer, security_level_for
from descgate.service.security_log import SecurityLogger

logger = get_logger(__name__)

MAX_CREDENTIAL_LENGTH = 8192
PCI_SESSION_MAX_AGE_SECONDS = 15 * 60
CLOCK_SKEW_LEEWAY_SECONDS = 120

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_-]+={0,2}$")
_SUBJECT_RE = re.compile(r"^[A-Za-z0-9_-]{10,128}$")
_REQUIRED_CLAIMS = ("iss", "aud", "exp", "iat")
# Rejections about the credential itself rather than the subject or policy
_VALIDATION_REASONS = frozenset({"INVALID_TOKEN_FORMAT", "INVALID_TOKEN", "TOKEN_EXPIRED", "TOKEN_REVOKED"})


@dataclass
class VerificationResult:
    valid: bool
    status_code: int
    risk: str
    identity: Optional[Identity] = None
    error: Optional[ServiceError] = None
    fingerprint: Optional[str] = None
    assessment: Optional[RiskAssessment] = None

    def raise_for_failure(self) -> Identity:
        if not self.valid or self.identity is None:
            raise self.error or AuthRequiredError("verification failed")
        return self.identity


class _Rejected(Exception):
    """Internal short-circuit carrying the failure to report."""

    def __init__(self, error: ServiceError, risk: str, reason: str) -> None:
        super().__init__(error.message)
        self.error = error
        self.risk = risk
        self.reason = reason


@dataclass
class _Metrics:
    requests: int = 0
    successes: int = 0
    failures: int = 0
    timeouts: int = 0
    total_ms: float = 0.0

    def snapshot(self) -> Dict[str, Any]:
        return {
            "requests": self.requests,
            "successes": self.successes,
            "failures": self.failures,
            "timeouts": self.timeouts,
            "averageResponseMs": round(self.total_ms / self.requests, 2) if self.requests else 0.0,
            "errorRate": round(self.failures / self.requests, 4) if self.requests else 0.0,
        }


def _b64url_json(segment: str) -> Dict[str, Any]:
    padded = segment + "=" * (-len(segment) % 4)
    value = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    if not isinstance(value, dict):
        raise ValueError("segment is not a JSON object")
    return value


class CredentialVerifier:
    def __init__(
        self,
        settings: Settings,
        identity_provider: IdentityProvider,
        replay_guard: ReplayGuard,
        security_log: SecurityLogger,
        *,
        risk_scorer: Optional[RiskScorer] = None,
        clock: Clock = system_clock,
    ) -> None:
        self.settings = settings
        self.identity_provider = identity_provider
        self.replay_guard = replay_guard
        self.security_log = security_log
        self.risk_scorer = risk_scorer
        self.clock = clock
        self.operation_timeout = settings.operation_timeout_seconds
        self.metrics = _Metrics()

    async def verify(
        self,
        raw_credential: Any,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        *,
        country: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> VerificationResult:
        started = self.clock.monotonic()
        self.metrics.requests += 1
        try:
            result = await asyncio.wait_for(
                self._run(raw_credential, client_ip, user_agent, country),
                timeout=self.operation_timeout,
            )
        except _Rejected as rejected:
            result = VerificationResult(
                valid=False,
                status_code=rejected.error.status_code,
                risk=rejected.risk,
                error=rejected.error,
            )
            if rejected.reason in _VALIDATION_REASONS:
                await self.security_log.log_token_validation_failure(
                    rejected.reason, client_ip=client_ip, endpoint=endpoint
                )
            await self.security_log.log_auth_failure(
                rejected.reason,
                subject_id=rejected.error.detail.get("subject_id"),
                client_ip=client_ip,
                endpoint=endpoint,
                risk=rejected.risk,
                statusCode=rejected.error.status_code,
            )
        except asyncio.TimeoutError:
            self.metrics.timeouts += 1
            error = OperationTimeoutError(
                "credential verification exceeded its time budget",
                detail={"budget_seconds": self.operation_timeout},
            )
            result = VerificationResult(False, 408, "CRITICAL", error=error)
            await self.security_log.emit(
                "VERIFICATION_TIMEOUT",
                "ERROR",
                client_ip=client_ip,
                endpoint=endpoint,
                attributes={"budgetSeconds": self.operation_timeout},
            )
        except Exception as exc:
            logger.error(
                "credential_verification_error",
                error=str(exc),
                error_type=type(exc).__name__,
                client_ip=client_ip,
            )
            error = InternalFailureError(
                "credential verification failed unexpectedly",
                fail_safe=True,
                detail={"error_type": type(exc).__name__},
            )
            result = VerificationResult(False, 500, "CRITICAL", error=error)

        self.metrics.total_ms += (self.clock.monotonic() - started) * 1000
        if result.valid:
            self.metrics.successes += 1
        else:
            self.metrics.failures += 1
        return result

    async def _run(
        self,
        raw_credential: Any,
        client_ip: Optional[str],
        user_agent: Optional[str],
        country: Optional[str],
    ) -> VerificationResult:
        now = self.clock.now()
        self._check_syntax(raw_credential, now)
        identity = await self._verify_with_provider(raw_credential)
        self._check_claims(identity, now, country)

        fingerprint = credential_fingerprint(
            jti=identity.jti, issued_at=identity.issued_at, subject_id=identity.subject_id
        )
        detail = {"subject_id": identity.subject_id}

        check = await self.replay_guard.check(fingerprint, identity.subject_id, client_ip)
        if check.blacklisted:
            if check.reason == "TOKEN_REPLAY_DETECTED":
                raise _Rejected(
                    ReplayDetectedError("credential replay detected", detail=detail),
                    "CRITICAL",
                    "TOKEN_REPLAY",
                )
            raise _Rejected(
                AuthRequiredError(
                    "replay check could not be completed",
                    fail_safe=True,
                    detail={**detail, "reason": check.reason},
                ),
                check.risk,
                check.reason,
            )

        assessment = check.assessment
        if assessment is None and self.risk_scorer is not None:
            assessment = await self.risk_scorer.score(
                identity.subject_id, client_ip, fingerprint
            )
        if assessment is not None and assessment.blocked:
            await self.security_log.log_suspicious_activity(
                "behavioral_anomaly",
                subject_id=identity.subject_id,
                client_ip=client_ip,
                factors=assessment.factors,
                score=round(assessment.score, 3),
                userAgent=user_agent,
            )
            raise _Rejected(
                BehavioralAnomalyError("risk scorer recommended block", detail=detail),
                "HIGH",
                "BEHAVIORAL_ANOMALY",
            )

        recorded = await self.replay_guard.record(fingerprint, identity.subject_id)
        if not recorded.recorded:
            error_cls = (
                ReplayDetectedError if recorded.reason == "ALREADY_CONSUMED" else AuthRequiredError
            )
            raise _Rejected(
                error_cls(
                    "credential could not be recorded as consumed",
                    fail_safe=True,
                    detail={**detail, "reason": recorded.reason},
                ),
                "CRITICAL",
                recorded.reason or "RECORD_FAILED",
            )

        risk_level = assessment.level if assessment is not None else None
        identity = identity.with_security_level(security_level_for(risk_level))
        await self.security_log.log_auth_success(
            identity.subject_id,
            client_ip,
            securityLevel=identity.security_level,
            signInMethod=identity.sign_in_method,
            userAgent=user_agent,
        )
        return VerificationResult(
            valid=True,
            status_code=200,
            risk=risk_level or "LOW",
            identity=identity,
            fingerprint=fingerprint,
            assessment=assessment,
        )

    def _check_syntax(self, raw_credential: Any, now: float) -> None:
        def reject(reason: str) -> _Rejected:
            return _Rejected(
                AuthRequiredError(
                    f"credential failed syntactic validation: {reason}",
                    error_code="INVALID_TOKEN_FORMAT",
                ),
                "HIGH",
                "INVALID_TOKEN_FORMAT",
            )

        if not isinstance(raw_credential, str) or not raw_credential.strip():
            raise reject("empty")
        if len(raw_credential) > MAX_CREDENTIAL_LENGTH:
            raise reject("too long")
        if raw_credential.count(".") != 2:
            return

        segments = raw_credential.split(".")
        if not all(_SEGMENT_RE.match(segment) for segment in segments):
            raise reject("segments are not base64url")
        try:
            payload = _b64url_json(segments[1])
        except (ValueError, binascii.Error, UnicodeDecodeError):
            raise reject("payload is not JSON")
        missing = [claim for claim in _REQUIRED_CLAIMS if claim not in payload]
        if missing:
            raise reject(f"missing claims {missing}")
        try:
            exp = float(payload["exp"])
        except (TypeError, ValueError):
            raise reject("exp is not numeric")
        if exp <= now:
            raise _Rejected(
                AuthExpiredError("credential expired", detail={"exp": exp}),
                "MEDIUM",
                "TOKEN_EXPIRED",
            )

    async def _verify_with_provider(self, raw_credential: str) -> Identity:
        try:
            return await self.identity_provider.verify(raw_credential, check_revoked=True)
        except CredentialExpired as exc:
            raise _Rejected(AuthExpiredError(exc.message), "MEDIUM", "TOKEN_EXPIRED")
        except CredentialRevoked as exc:
            raise _Rejected(AuthRevokedError(exc.message), "HIGH", "TOKEN_REVOKED")
        except EmailNotVerified as exc:
            raise _Rejected(EmailNotVerifiedError(exc.message), "MEDIUM", "EMAIL_NOT_VERIFIED")
        except CredentialInvalid as exc:
            raise _Rejected(
                AuthRequiredError(exc.message, error_code="INVALID_TOKEN", detail=exc.detail),
                "HIGH",
                "INVALID_TOKEN",
            )
        except IdentityProviderUnavailable as exc:
            raise _Rejected(
                InternalFailureError(exc.message, fail_safe=True, detail=exc.detail),
                "CRITICAL",
                "IDP_UNAVAILABLE",
            )

    def _check_claims(self, identity: Identity, now: float, country: Optional[str]) -> None:
        detail = {"subject_id": identity.subject_id}

        if not identity.subject_id or not identity.email:
            raise _Rejected(
                AuthRequiredError("subject or email missing", error_code="INVALID_TOKEN", detail=detail),
                "HIGH",
                "MISSING_CLAIMS",
            )
        if not _SUBJECT_RE.match(identity.subject_id):
            raise _Rejected(
                AuthRequiredError("subject id has an invalid format", error_code="INVALID_TOKEN"),
                "HIGH",
                "INVALID_SUBJECT",
            )
        if identity.audience != self.settings.idp_project_id:
            raise _Rejected(
                AuthRequiredError(
                    "audience does not match project", error_code="INVALID_TOKEN", detail=detail
                ),
                "HIGH",
                "INVALID_AUDIENCE",
            )
        if not identity.email_verified:
            raise _Rejected(
                EmailNotVerifiedError("email address not verified", detail=detail),
                "MEDIUM",
                "EMAIL_NOT_VERIFIED",
            )
        if identity.issued_at > now + CLOCK_SKEW_LEEWAY_SECONDS:
            raise _Rejected(
                AuthRequiredError("credential issued in the future", error_code="INVALID_TOKEN", detail=detail),
                "HIGH",
                "FUTURE_ISSUED_AT",
            )
        if now - identity.auth_time > self.settings.max_session_age_seconds:
            raise _Rejected(
                AuthExpiredError("sign-in session too old", detail=detail),
                "MEDIUM",
                "SESSION_TOO_OLD",
            )
        if now - identity.issued_at > self.settings.max_credential_age_seconds:
            raise _Rejected(
                AuthExpiredError("credential too old", detail=detail),
                "MEDIUM",
                "CREDENTIAL_TOO_OLD",
            )

        claims = identity.custom_claims
        if self.settings.require_strong_authentication:
            if identity.sign_in_method == "password" and not claims.get("mfa_enabled"):
                raise _Rejected(
                    ComplianceError(
                        "strong authentication required", error_code="STRONG_AUTH_REQUIRED", detail=detail
                    ),
                    "HIGH",
                    "STRONG_AUTH_REQUIRED",
                )
        if claims.get("requires_pci_session") and now - identity.auth_time > PCI_SESSION_MAX_AGE_SECONDS:
            raise _Rejected(
                AuthExpiredError("restricted session exceeded its maximum age", detail=detail),
                "MEDIUM",
                "PCI_SESSION_EXPIRED",
            )

        allowed = self.settings.allowed_countries
        if allowed and country and country.upper() not in allowed:
            raise _Rejected(
                ComplianceError(
                    "request from a region outside the allow-list",
                    error_code="REGION_NOT_ALLOWED",
                    detail={**detail, "country": country},
                ),
                "HIGH",
                "REGION_NOT_ALLOWED",
            )

    async def health_check(self) -> Dict[str, Any]:
        guard = await self.replay_guard.health_check()
        return {
            "status": guard["status"],
            "replayGuard": guard,
            "metrics": self.metrics.snapshot(),
        }
