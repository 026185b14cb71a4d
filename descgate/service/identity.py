"""Identity-provider adapter.

Verifies primary credentials (JWT ID tokens issued by the external identity
provider) and turns their claims into an :class:`Identity`. Signature and
issuer are checked here; freshness, audience and email checks belong to the
credential verifier, which owns the policy.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Protocol

import httpx
import jwt
from jwt import PyJWKClient, PyJWKClientConnectionError, PyJWKClientError

from descgate.config import IdpMode, Settings
from descgate.logging import get_logger
from descgate.service.clock import Clock, system_clock
from descgate.storage.common import REVOCATIONS, DocumentStore

logger = get_logger(__name__)

JWKS_FETCH_TIMEOUT_SECONDS = 5

# Claims that carry identity-provider metadata rather than custom claims
_STANDARD_CLAIMS = frozenset({
    "iss", "aud", "sub", "exp", "iat", "nbf", "jti", "auth_time", "user_id",
    "email", "email_verified", "firebase", "name", "picture", "phone_number",
})


class IdentityProviderError(Exception):
    """Base class for identity-provider failures."""

    reason = "INVALID_TOKEN"

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class CredentialInvalid(IdentityProviderError):
    reason = "INVALID_TOKEN"


class CredentialExpired(IdentityProviderError):
    reason = "TOKEN_EXPIRED"


class CredentialRevoked(IdentityProviderError):
    reason = "TOKEN_REVOKED"


class EmailNotVerified(IdentityProviderError):
    reason = "EMAIL_NOT_VERIFIED"


class IdentityProviderUnavailable(IdentityProviderError):
    reason = "IDP_UNAVAILABLE"


@dataclass(frozen=True)
class Identity:
    """Decoded identity for one verified credential."""

    subject_id: str
    email: Optional[str]
    email_verified: bool
    auth_time: int
    issued_at: int
    expires_at: int
    audience: str
    issuer: Optional[str] = None
    sign_in_method: Optional[str] = None
    jti: Optional[str] = None
    custom_claims: Dict[str, Any] = field(default_factory=dict)
    security_level: Optional[str] = None

    def with_security_level(self, level: str) -> "Identity":
        return replace(self, security_level=level)


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def identity_from_claims(claims: Dict[str, Any]) -> Identity:
    aud = claims.get("aud")
    if isinstance(aud, (list, tuple)):
        aud = aud[0] if aud else ""
    provider_info = claims.get("firebase") if isinstance(claims.get("firebase"), dict) else {}
    custom = {
        key: value
        for key, value in claims.items()
        if key not in _STANDARD_CLAIMS and isinstance(value, (str, int, float, bool))
    }
    issued_at = _as_int(claims.get("iat"))
    return Identity(
        subject_id=str(claims.get("sub") or claims.get("user_id") or ""),
        email=claims.get("email"),
        email_verified=claims.get("email_verified") is True,
        auth_time=_as_int(claims.get("auth_time"), issued_at),
        issued_at=issued_at,
        expires_at=_as_int(claims.get("exp")),
        audience=str(aud or ""),
        issuer=claims.get("iss"),
        sign_in_method=provider_info.get("sign_in_provider") or claims.get("sign_in_provider"),
        jti=claims.get("jti"),
        custom_claims=custom,
    )


class IdentityProvider(Protocol):
    async def verify(self, raw_credential: str, *, check_revoked: bool = True) -> Identity: ...

    async def revoke_sessions(self, subject_id: str) -> None: ...

    async def revoked_before(self, subject_id: str) -> Optional[int]: ...


@dataclass
class _CachedJWKS:
    """Cached JWKS client with expiration tracking."""

    client: PyJWKClient
    fetched_at: float
    ttl: float

    @property
    def is_expired(self) -> bool:
        return time.monotonic() - self.fetched_at > self.ttl


class JWTIdentityProvider:
    """Verifies identity-provider ID tokens with PyJWT.

    In ``jwks`` mode the RS256 signing keys come from the provider's JWKS
    endpoint; in ``shared_secret`` mode (development and tests) tokens are
    HS256 with ``IDP_SHARED_SECRET``. Revocation is a per-subject
    ``valid_after`` timestamp: credentials authenticated before it are
    rejected.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[DocumentStore] = None,
        *,
        clock: Clock = system_clock,
    ) -> None:
        self.settings = settings
        self.store = store
        self.clock = clock
        self.mode = IdpMode(settings.idp_mode)
        self._jwks_cache: _CachedJWKS | None = None
        if self.mode == IdpMode.SHARED_SECRET and not settings.idp_shared_secret:
            raise RuntimeError("IDP_SHARED_SECRET is required when IDP_MODE=shared_secret")

    async def ensure_jwks_available(self) -> None:
        """Async reachability check for the JWKS endpoint."""
        if self._jwks_cache is not None and not self._jwks_cache.is_expired:
            return
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(JWKS_FETCH_TIMEOUT_SECONDS, connect=JWKS_FETCH_TIMEOUT_SECONDS)
            ) as client:
                response = await client.get(self.settings.idp_jwks_url, follow_redirects=True)
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise IdentityProviderUnavailable("jwks fetch timed out") from exc
        except httpx.HTTPStatusError as exc:
            raise IdentityProviderUnavailable(
                "jwks endpoint returned an error", {"status": exc.response.status_code}
            ) from exc
        except httpx.RequestError as exc:
            raise IdentityProviderUnavailable(
                "jwks endpoint unreachable", {"error_type": type(exc).__name__}
            ) from exc

    def _get_jwks_client(self) -> PyJWKClient:
        if self._jwks_cache is not None and not self._jwks_cache.is_expired:
            return self._jwks_cache.client
        client = PyJWKClient(
            self.settings.idp_jwks_url,
            cache_keys=True,
            lifespan=self.settings.idp_jwks_cache_seconds,
            timeout=JWKS_FETCH_TIMEOUT_SECONDS,
        )
        self._jwks_cache = _CachedJWKS(
            client=client,
            fetched_at=time.monotonic(),
            ttl=self.settings.idp_jwks_cache_seconds,
        )
        return client

    async def _signing_key(self, raw_credential: str) -> tuple[Any, list[str]]:
        if self.mode == IdpMode.SHARED_SECRET:
            return self.settings.idp_shared_secret, ["HS256"]
        await self.ensure_jwks_available()
        try:
            jwk = await asyncio.to_thread(
                self._get_jwks_client().get_signing_key_from_jwt, raw_credential
            )
        except PyJWKClientConnectionError as exc:
            raise IdentityProviderUnavailable("jwks fetch failed") from exc
        except PyJWKClientError as exc:
            raise CredentialInvalid("no matching signing key", {"error": str(exc)}) from exc
        except jwt.DecodeError as exc:
            raise CredentialInvalid("malformed credential header") from exc
        return jwk.key, ["RS256"]

    def _decode(self, raw_credential: str, key: Any, algorithms: list[str]) -> Dict[str, Any]:
        try:
            return jwt.decode(
                raw_credential,
                key,
                algorithms=algorithms,
                issuer=self.settings.idp_issuer,
                options={
                    "require": ["exp", "iat", "sub", "iss", "aud"],
                    # Expiry, issue time and audience are evaluated against the
                    # injected clock and project id by the verifier below
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_aud": False,
                    "verify_iss": True,
                },
            )
        except jwt.InvalidIssuerError as exc:
            raise CredentialInvalid("issuer mismatch") from exc
        except jwt.InvalidSignatureError as exc:
            raise CredentialInvalid("signature is invalid") from exc
        except jwt.MissingRequiredClaimError as exc:
            raise CredentialInvalid("required claim missing", {"claim": exc.claim}) from exc
        except jwt.DecodeError as exc:
            raise CredentialInvalid("credential could not be decoded") from exc
        except jwt.PyJWTError as exc:
            raise CredentialInvalid("credential validation error", {"error_type": type(exc).__name__}) from exc

    async def verify(self, raw_credential: str, *, check_revoked: bool = True) -> Identity:
        key, algorithms = await self._signing_key(raw_credential)
        claims = self._decode(raw_credential, key, algorithms)
        identity = identity_from_claims(claims)
        if not identity.subject_id:
            raise CredentialInvalid("subject missing")
        if identity.expires_at <= self.clock.now():
            raise CredentialExpired("credential expired", {"exp": identity.expires_at})
        if check_revoked:
            await self._check_revoked(identity)
        return identity

    async def revoked_before(self, subject_id: str) -> Optional[int]:
        """Revocation cut-off for ``subject_id``; sign-ins before it are invalid."""
        if self.store is None:
            return None
        record = await self.store.get(REVOCATIONS, subject_id)
        if not record:
            return None
        return _as_int(record.get("valid_after"))

    async def _check_revoked(self, identity: Identity) -> None:
        valid_after = await self.revoked_before(identity.subject_id)
        if valid_after is not None and identity.auth_time < valid_after:
            raise CredentialRevoked(
                "credential issued before revocation", {"valid_after": valid_after}
            )

    async def revoke_sessions(self, subject_id: str) -> None:
        """Invalidate every credential authenticated before now."""
        if self.store is None:
            raise RuntimeError("revocation requires a document store")
        await self.store.set(
            REVOCATIONS,
            subject_id,
            {"subject_id": subject_id, "valid_after": int(self.clock.now())},
        )
        logger.info("identity_sessions_revoked", subject_id=subject_id)
