"""Cross-domain session cookies.

After a primary credential passes the verifier, the broker mints a signed
session token and a CSRF nonce and hands both back as cookies scoped to the
parent domain, so sibling subdomains share the sign-in without presenting
the primary credential again. The token is
``base64url(header).base64url(payload).base64url(HMAC-SHA256)`` keyed by
``SESSION_SIGNING_KEY``.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from descgate.config import Settings
from descgate.logging import get_logger
from descgate.service.clock import Clock, system_clock, token_urlsafe
from descgate.service.errors import (
    AuthExpiredError,
    AuthRequiredError,
    AuthRevokedError,
    EmailNotVerifiedError,
    InvalidInputError,
    PermissionDeniedError,
)
from descgate.service.identity import Identity
from descgate.service.security_log import SecurityLogger
from descgate.service.verifier import CredentialVerifier
from descgate.storage.common import REVOKED_SESSIONS, DocumentStore

logger = get_logger(__name__)

SESSION_TOKEN_TYPE = "descgate-session"
AUTH_COOKIE_NAME = "descgate_session"
CSRF_COOKIE_NAME = "descgate_csrf"
CSRF_HEADER_NAME = "X-CSRF-Token"


@dataclass
class CookieSetting:
    name: str
    value: str
    max_age: int
    http_only: bool
    domain: Optional[str] = None
    path: str = "/"
    secure: bool = True
    samesite: str = "strict"


@dataclass
class SessionClaims:
    subject_id: str
    email: Optional[str]
    email_verified: bool
    issued_at: int
    expires_at: int
    auth_time: int
    csrf_nonce: str
    session_id: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "sub": self.subject_id,
            "email": self.email,
            "email_verified": self.email_verified,
            "iat": self.issued_at,
            "exp": self.expires_at,
            "auth_time": self.auth_time,
            "csrf": self.csrf_nonce,
            "sid": self.session_id,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SessionClaims":
        return cls(
            subject_id=str(payload["sub"]),
            email=payload.get("email"),
            email_verified=payload.get("email_verified") is True,
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
            auth_time=int(payload.get("auth_time") or payload["iat"]),
            csrf_nonce=str(payload["csrf"]),
            session_id=str(payload["sid"]),
        )

    def to_identity(self, audience: str) -> Identity:
        return Identity(
            subject_id=self.subject_id,
            email=self.email,
            email_verified=self.email_verified,
            auth_time=self.auth_time,
            issued_at=self.issued_at,
            expires_at=self.expires_at,
            audience=audience,
            sign_in_method="session",
            jti=self.session_id,
            security_level="MEDIUM",
        )


@dataclass
class SessionGrant:
    token: str
    claims: SessionClaims
    cookies: List[CookieSetting] = field(default_factory=list)

    @property
    def csrf_token(self) -> str:
        return self.claims.csrf_nonce


@dataclass
class SessionVerification:
    claims: SessionClaims
    identity: Identity
    rotated: Optional[SessionGrant] = None


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _decode_segment(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def session_fingerprint(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SessionBroker:
    def __init__(
        self,
        settings: Settings,
        verifier: CredentialVerifier,
        security_log: SecurityLogger,
        store: DocumentStore,
        *,
        clock: Clock = system_clock,
    ) -> None:
        self.settings = settings
        self.verifier = verifier
        self.security_log = security_log
        self.store = store
        self.clock = clock
        self.session_ttl = settings.session_ttl_seconds
        self.rotation_after = settings.session_rotation_seconds
        # Most recent successful verify per subject, this process only
        self.last_auth: Dict[str, float] = {}

    # -- token codec ----------------------------------------------------------

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(
                self.settings.session_signing_key.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def encode(self, claims: SessionClaims) -> str:
        header = {"alg": "HS256", "typ": SESSION_TOKEN_TYPE}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(claims.to_payload(), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: Optional[str]) -> SessionClaims:
        """Check signature and structure; expiry is left to the caller."""
        if not token or not isinstance(token, str):
            raise AuthRequiredError("session cookie missing", error_code="SESSION_REQUIRED")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise AuthRequiredError("malformed session token", error_code="INVALID_SESSION")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("session_header_decode_failed")
            raise AuthRequiredError("malformed session header", error_code="INVALID_SESSION")
        # Pin algorithm and type to prevent confusion with other HMAC tokens
        if header.get("alg") != "HS256" or header.get("typ") != SESSION_TOKEN_TYPE:
            logger.warning("session_invalid_header", alg=header.get("alg"), typ=header.get("typ"))
            raise AuthRequiredError("unexpected session header", error_code="INVALID_SESSION")

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise AuthRequiredError("session signature mismatch", error_code="INVALID_SESSION")
        try:
            return SessionClaims.from_payload(json.loads(_decode_segment(payload_b64)))
        except (ValueError, TypeError, KeyError) as exc:
            logger.warning("session_payload_decode_failed", error=str(exc))
            raise AuthRequiredError("malformed session payload", error_code="INVALID_SESSION")

    # -- cookies ----------------------------------------------------------------

    def _cookies(self, token: str, csrf_nonce: str, max_age: int) -> List[CookieSetting]:
        domain = self.settings.cookie_domain
        return [
            CookieSetting(AUTH_COOKIE_NAME, token, max_age, http_only=True, domain=domain),
            CookieSetting(CSRF_COOKIE_NAME, csrf_nonce, max_age, http_only=False, domain=domain),
        ]

    def clear_cookies(self) -> List[CookieSetting]:
        return self._cookies("", "", 0)

    def issue(self, identity: Identity) -> SessionGrant:
        now = int(self.clock.now())
        claims = SessionClaims(
            subject_id=identity.subject_id,
            email=identity.email,
            email_verified=identity.email_verified,
            issued_at=now,
            expires_at=now + self.session_ttl,
            auth_time=identity.auth_time or now,
            csrf_nonce=token_urlsafe(32),
            session_id=token_urlsafe(16),
        )
        token = self.encode(claims)
        return SessionGrant(token, claims, self._cookies(token, claims.csrf_nonce, self.session_ttl))

    # -- actions ----------------------------------------------------------------

    async def authenticate(
        self,
        id_token: Optional[str],
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        country: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> SessionGrant:
        if not id_token:
            raise InvalidInputError("primary credential missing", error_code="MISSING_TOKEN")
        result = await self.verifier.verify(
            id_token, client_ip, user_agent, country=country, endpoint=endpoint
        )
        identity = result.raise_for_failure()
        grant = self.issue(identity)
        self.last_auth[identity.subject_id] = self.clock.now()
        await self.security_log.emit(
            "SESSION_ISSUED",
            "INFO",
            subject_id=identity.subject_id,
            client_ip=client_ip,
            endpoint=endpoint,
            attributes={"expiresAt": grant.claims.expires_at},
        )
        return grant

    async def _is_revoked(self, token: str, claims: SessionClaims) -> bool:
        if await self.store.get(REVOKED_SESSIONS, session_fingerprint(token)) is not None:
            return True
        # Subject-wide revocation covers sessions signed in before the cut-off
        valid_after = await self.verifier.identity_provider.revoked_before(claims.subject_id)
        return valid_after is not None and claims.auth_time < valid_after

    async def _revoke(self, token: str, claims: SessionClaims) -> None:
        remaining = claims.expires_at - self.clock.now()
        if remaining <= 0:
            return
        await self.store.set(
            REVOKED_SESSIONS,
            session_fingerprint(token),
            {
                "subject_id": claims.subject_id,
                "revoked_at": self.clock.now_ms(),
                "expires_at": claims.expires_at,
            },
            ttl_seconds=remaining,
        )

    async def verify(self, token: Optional[str], *, rotate: bool = True) -> SessionVerification:
        claims = self.decode(token)
        now = self.clock.now()
        if claims.expires_at <= now:
            raise AuthExpiredError("session expired", detail={"subject_id": claims.subject_id})
        if not claims.email_verified:
            raise EmailNotVerifiedError(detail={"subject_id": claims.subject_id})
        # SECURITY: an unreadable revocation list means the session is treated as revoked
        try:
            revoked = await self._is_revoked(token, claims)
        except Exception as exc:
            logger.error("session_revocation_check_failed", error=str(exc))
            raise AuthRequiredError(
                "session revocation state unavailable", fail_safe=True
            ) from exc
        if revoked:
            raise AuthRevokedError("session revoked", detail={"subject_id": claims.subject_id})

        self.last_auth[claims.subject_id] = now
        rotated = None
        if rotate and now - claims.issued_at > self.rotation_after:
            rotated = await self._rotate(token, claims)
        active = rotated.claims if rotated else claims
        return SessionVerification(
            claims=active,
            identity=active.to_identity(self.settings.idp_project_id),
            rotated=rotated,
        )

    async def _rotate(self, token: str, claims: SessionClaims) -> SessionGrant:
        now = int(self.clock.now())
        fresh = SessionClaims(
            subject_id=claims.subject_id,
            email=claims.email,
            email_verified=claims.email_verified,
            issued_at=now,
            expires_at=now + self.session_ttl,
            auth_time=claims.auth_time,
            csrf_nonce=token_urlsafe(32),
            session_id=token_urlsafe(16),
        )
        new_token = self.encode(fresh)
        await self._revoke(token, claims)
        logger.info("session_rotated", subject_id=claims.subject_id)
        return SessionGrant(new_token, fresh, self._cookies(new_token, fresh.csrf_nonce, self.session_ttl))

    def check_csrf(
        self, claims: SessionClaims, cookie_value: Optional[str], presented: Optional[str]
    ) -> None:
        if not cookie_value or not presented:
            raise PermissionDeniedError("csrf token missing", error_code="CSRF_INVALID")
        if not hmac.compare_digest(cookie_value, presented) or not hmac.compare_digest(
            presented, claims.csrf_nonce
        ):
            raise PermissionDeniedError("csrf token mismatch", error_code="CSRF_INVALID")

    async def refresh(
        self, token: Optional[str], cookie_csrf: Optional[str], presented_csrf: Optional[str]
    ) -> SessionGrant:
        verification = await self.verify(token, rotate=False)
        self.check_csrf(verification.claims, cookie_csrf, presented_csrf)
        return await self._rotate(token, verification.claims)

    async def logout(
        self,
        token: Optional[str],
        cookie_csrf: Optional[str],
        presented_csrf: Optional[str],
        *,
        client_ip: Optional[str] = None,
    ) -> List[CookieSetting]:
        claims = self.decode(token)
        if claims.expires_at > self.clock.now():
            self.check_csrf(claims, cookie_csrf, presented_csrf)
            await self._revoke(token, claims)
        self.last_auth.pop(claims.subject_id, None)
        await self.security_log.emit(
            "SESSION_LOGOUT", "INFO", subject_id=claims.subject_id, client_ip=client_ip
        )
        return self.clear_cookies()
