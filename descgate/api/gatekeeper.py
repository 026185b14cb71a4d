"""Per-request access pipeline.

The HTTP middleware handles origin checks, CORS preflight, the method
allow-list, rate limiting and the hardened response headers for every
declared endpoint. Credential and session verification, CSRF and
authorization run as route dependencies (``get_principal``), because they
need the parsed route and must be able to set rotated session cookies.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, Optional

from fastapi import Request, Response

from descgate.logging import get_logger
from descgate.service.errors import (
    AuthRequiredError,
    MethodNotAllowedError,
    PermissionDeniedError,
    RateLimitedError,
)
from descgate.service.identity import Identity
from descgate.service.runtime import check_rate_limit, get_runtime
from descgate.service.session_broker import (
    AUTH_COOKIE_NAME,
    CSRF_COOKIE_NAME,
    CSRF_HEADER_NAME,
    CookieSetting,
)

logger = get_logger(__name__)

ALLOWED_REQUEST_HEADERS = "Content-Type, Authorization, X-CSRF-Token, X-Request-ID"
PREFLIGHT_MAX_AGE = "3600"
STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}
NO_CACHE = "no-cache, no-store, must-revalidate"


@dataclass(frozen=True)
class EndpointPolicy:
    path: str
    methods: FrozenSet[str]
    access: str = "auth"
    operation: Optional[str] = None
    # Server-to-server callers (no Origin header) are admitted only here
    allow_without_origin: bool = False
    rate_limited: bool = True


def _policy(path: str, methods: Iterable[str], **kwargs) -> EndpointPolicy:
    return EndpointPolicy(path, frozenset(m.upper() for m in methods) | {"OPTIONS"}, **kwargs)


ENDPOINT_POLICIES: Dict[str, EndpointPolicy] = {
    policy.path: policy
    for policy in (
        _policy("/v1/auth", ["POST"], access="public"),
        _policy("/v1/user", ["POST"], access="auth"),
        _policy("/v1/products/lookup", ["POST"], access="auth", operation="lookup_product"),
        _policy(
            "/v1/products/describe", ["POST"], access="auth", operation="generate_description"
        ),
        _policy(
            "/healthz", ["GET"], access="public", allow_without_origin=True, rate_limited=False
        ),
    )
}


def policy_for(path: str) -> Optional[EndpointPolicy]:
    return ENDPOINT_POLICIES.get(path.rstrip("/") or "/")


def client_ip(request: Request) -> str:
    """Resolve the caller address: X-Forwarded-For first hop, X-Real-IP, Client-IP, peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for header in ("x-real-ip", "client-ip"):
        value = request.headers.get(header)
        if value and value.strip():
            return value.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def request_country(request: Request) -> Optional[str]:
    value = request.headers.get("cf-ipcountry") or request.headers.get("x-country-code")
    return value.strip().upper() if value and value.strip() else None


def _cors_headers(origin: str) -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Credentials": "true",
        "Vary": "Origin",
    }


def _apply_headers(response: Response, request: Request, origin: Optional[str]) -> Response:
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers["Cache-Control"] = NO_CACHE
    if origin:
        for name, value in _cors_headers(origin).items():
            response.headers[name] = value
    return response


async def gatekeeper_middleware(request: Request, call_next):
    from descgate.api.error_handling import respond_with_error

    policy = policy_for(request.url.path)
    if policy is None:
        # Undeclared paths fall through to the router (404) with hardened headers
        return _apply_headers(await call_next(request), request, None)

    runtime = get_runtime()
    origin = request.headers.get("origin")
    ip = client_ip(request)
    allowed_origin = origin if origin and origin in runtime.settings.allowed_origins else None

    async def reject(exc: Exception) -> Response:
        response = await respond_with_error(request, exc)
        return _apply_headers(response, request, allowed_origin)

    if origin and allowed_origin is None:
        await runtime.security_log.log_suspicious_activity(
            "ORIGIN_NOT_ALLOWED", client_ip=ip, endpoint=policy.path, origin=origin[:200]
        )
        return await reject(
            PermissionDeniedError("origin not allowed", error_code="ORIGIN_NOT_ALLOWED")
        )
    if not origin and not policy.allow_without_origin:
        return await reject(
            PermissionDeniedError("origin header required", error_code="ORIGIN_NOT_ALLOWED")
        )

    method = request.method.upper()
    if method == "OPTIONS":
        response = Response(status_code=204)
        response.headers["Access-Control-Allow-Methods"] = ", ".join(sorted(policy.methods))
        response.headers["Access-Control-Allow-Headers"] = ALLOWED_REQUEST_HEADERS
        response.headers["Access-Control-Max-Age"] = PREFLIGHT_MAX_AGE
        return _apply_headers(response, request, allowed_origin)
    if method not in policy.methods:
        return await reject(
            MethodNotAllowedError(
                f"{method} not allowed on {policy.path}",
                headers={"Allow": ", ".join(sorted(policy.methods))},
            )
        )

    remaining: Optional[int] = None
    if policy.rate_limited:
        allowed, remaining, retry_after = await check_rate_limit(
            runtime.store,
            f"ip:{ip}",
            runtime.settings.rate_limit_per_minute,
            clock=runtime.clock,
        )
        if not allowed:
            await runtime.security_log.log_rate_limit_exceeded(
                f"ip:{ip}", client_ip=ip, endpoint=policy.path,
                limit=runtime.settings.rate_limit_per_minute,
            )
            response = await reject(RateLimitedError("rate limit exceeded", retry_after=retry_after))
            response.headers["X-RateLimit-Remaining"] = "0"
            return response

    if policy.access != "public" and not (
        request.headers.get("authorization") or request.cookies.get(AUTH_COOKIE_NAME)
    ):
        return await reject(AuthRequiredError("no credential presented"))

    response = await call_next(request)
    if remaining is not None:
        response.headers["X-RateLimit-Remaining"] = str(remaining)
    return _apply_headers(response, request, allowed_origin)


# -- route dependencies -----------------------------------------------------


@dataclass
class Principal:
    identity: Identity
    via: str
    client_ip: str

    @property
    def subject_id(self) -> str:
        return self.identity.subject_id


def set_cookies(response: Response, cookies: Iterable[CookieSetting]) -> None:
    for cookie in cookies:
        response.set_cookie(
            cookie.name,
            cookie.value,
            max_age=cookie.max_age,
            path=cookie.path,
            domain=cookie.domain,
            secure=cookie.secure,
            httponly=cookie.http_only,
            samesite=cookie.samesite,
        )


def set_rotated_cookies(
    request: Request, response: Response, cookies: Iterable[CookieSetting]
) -> None:
    """Set rotated session cookies and keep them for an error response.

    Rotation revokes the presented token, so a handler that fails afterwards
    must still hand the replacement cookies back to the client.
    """
    cookies = list(cookies)
    set_cookies(response, cookies)
    request.state.rotated_cookies = cookies


def check_csrf_cookie(request: Request) -> None:
    header_value = request.headers.get(CSRF_HEADER_NAME)
    cookie_value = request.cookies.get(CSRF_COOKIE_NAME)
    if not header_value or not cookie_value or not hmac.compare_digest(header_value, cookie_value):
        raise PermissionDeniedError("csrf check failed", error_code="CSRF_INVALID")


def bearer_credential(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def get_principal(request: Request, response: Response) -> Principal:
    """Authenticate the caller by bearer credential or by session cookie."""

    runtime = get_runtime()
    ip = client_ip(request)
    bearer = bearer_credential(request.headers.get("authorization"))
    if bearer:
        result = await runtime.verifier.verify(
            bearer,
            ip,
            request.headers.get("user-agent"),
            country=request_country(request),
            endpoint=request.url.path,
        )
        return Principal(result.raise_for_failure(), "bearer", ip)

    session_token = request.cookies.get(AUTH_COOKIE_NAME)
    if not session_token:
        raise AuthRequiredError("no credential presented")
    if request.method.upper() in STATE_CHANGING_METHODS:
        check_csrf_cookie(request)
    verification = await runtime.sessions.verify(session_token)
    if verification.rotated is not None:
        set_rotated_cookies(request, response, verification.rotated.cookies)
    return Principal(verification.identity, "session", ip)
