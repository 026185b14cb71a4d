from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from descgate.api.gatekeeper import (
    Principal,
    bearer_credential,
    client_ip,
    get_principal,
    policy_for,
    request_country,
    set_cookies,
    set_rotated_cookies,
)
from descgate.api.schemas import (
    AuthRequest,
    BarcodeLookupRequest,
    DescribeRequest,
    UserRequest,
)
from descgate.logging import get_logger
from descgate.service.authorization import (
    record_view,
    usage_summary,
    validate_subject_id,
)
from descgate.service.errors import InvalidInputError
from descgate.service.products import DescriptionRequest
from descgate.service.runtime import get_runtime
from descgate.service.session_broker import (
    AUTH_COOKIE_NAME,
    CSRF_COOKIE_NAME,
    SessionClaims,
)
from descgate.storage.models import UserRecord

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _session_body(claims: SessionClaims, **extra: Any) -> Dict[str, Any]:
    return {
        "success": True,
        "user": {
            "uid": claims.subject_id,
            "email": claims.email,
            "emailVerified": claims.email_verified,
        },
        "csrfToken": claims.csrf_nonce,
        "sessionInfo": {"authTime": claims.auth_time, "validUntil": claims.expires_at},
        **extra,
    }


@router.post("/auth", tags=["auth"])
async def auth_action(
    body: AuthRequest,
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
    x_csrf_token: Optional[str] = Header(None, alias="X-CSRF-Token"),
):
    """Cross-domain session actions.

    ``authenticate`` exchanges a fresh identity-provider credential for session
    cookies; ``verify`` and ``verify_admin`` check the session cookie (rotating
    it when old enough); ``refresh`` and ``logout`` are CSRF-protected.
    """
    runtime = get_runtime()
    ip = client_ip(request)
    session_token = request.cookies.get(AUTH_COOKIE_NAME)
    cookie_csrf = request.cookies.get(CSRF_COOKIE_NAME)
    presented_csrf = x_csrf_token or body.csrf_token

    if body.action == "authenticate":
        grant = await runtime.sessions.authenticate(
            body.id_token or bearer_credential(authorization),
            client_ip=ip,
            user_agent=request.headers.get("user-agent"),
            country=request_country(request),
            endpoint=request.url.path,
        )
        await runtime.gate.load_user(grant.claims.to_identity(runtime.settings.idp_project_id))
        set_cookies(response, grant.cookies)
        return _session_body(grant.claims)

    if body.action == "logout":
        if not session_token:
            set_cookies(response, runtime.sessions.clear_cookies())
            return {"success": True}
        cookies = await runtime.sessions.logout(
            session_token, cookie_csrf, presented_csrf, client_ip=ip
        )
        set_cookies(response, cookies)
        return {"success": True}

    if body.action == "refresh":
        grant = await runtime.sessions.refresh(session_token, cookie_csrf, presented_csrf)
        set_cookies(response, grant.cookies)
        return _session_body(grant.claims, rotated=True)

    verification = await runtime.sessions.verify(session_token)
    if verification.rotated is not None:
        set_rotated_cookies(request, response, verification.rotated.cookies)
    extra: Dict[str, Any] = {"rotated": verification.rotated is not None}
    if body.action == "verify_admin":
        record = await runtime.gate.authorize(
            verification.identity, "verify_admin", client_ip=ip, endpoint=request.url.path
        )
        extra.update(role=record.role, isAdmin=True)
    return _session_body(verification.claims, **extra)


def _target(value: Optional[str], *, required: bool = False) -> Optional[str]:
    if value is None:
        if required:
            raise InvalidInputError("target user id is required", error_code="INVALID_INPUT")
        return None
    return validate_subject_id(value)


@router.post("/user", tags=["users"])
async def user_action(
    body: UserRequest,
    request: Request,
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    gate = runtime.gate
    identity = principal.identity
    endpoint = request.url.path

    async def authorize(target: Optional[str] = None) -> UserRecord:
        return await gate.authorize(
            identity, body.action, target, client_ip=principal.client_ip, endpoint=endpoint
        )

    if body.action == "get_usage":
        target = _target(body.user_id) or identity.subject_id
        record = await authorize(target)
        if target != identity.subject_id:
            record = await gate.get_record(target)
        return {"success": True, "usage": usage_summary(record).to_dict()}

    if body.action == "increment_usage":
        target = _target(body.user_id) or identity.subject_id
        await authorize(target)
        record = await gate.increment_usage(target, body.amount)
        return {"success": True, "usage": usage_summary(record).to_dict()}

    if body.action == "create_user":
        await authorize(_target(body.user_id) or identity.subject_id)
        record, created = await gate.create_user(identity, body.email)
        return {"success": True, "created": created, "user": record_view(record)}

    if body.action == "reset_usage":
        target = _target(body.target_user_id or body.user_id, required=True)
        actor = await authorize(target)
        record = await gate.reset_usage(actor.subject_id, target)
        return {"success": True, "usage": usage_summary(record).to_dict()}

    if body.action == "get_all_users":
        await authorize()
        users = await gate.list_users()
        return {"success": True, "users": [record_view(user) for user in users]}

    if body.action == "update_user_role":
        target = _target(body.target_user_id, required=True)
        if not body.role:
            raise InvalidInputError("role is required")
        actor = await authorize(target)
        record = await gate.update_user_role(actor, target, body.role)
        return {"success": True, "user": record_view(record)}

    if body.action == "revoke_sessions":
        target = _target(body.target_user_id, required=True)
        actor = await authorize(target)
        await runtime.identity_provider.revoke_sessions(target)
        await runtime.security_log.emit(
            "SESSIONS_REVOKED",
            "WARN",
            subject_id=target,
            client_ip=principal.client_ip,
            endpoint=endpoint,
            attributes={"revokedBy": actor.subject_id},
        )
        return {"success": True, "revoked": target}

    # delete_user
    target = _target(body.target_user_id, required=True)
    actor = await authorize(target)
    await gate.delete_user(actor.subject_id, target)
    return {"success": True, "deleted": target}


async def _authorize_endpoint(request: Request, principal: Principal) -> UserRecord:
    runtime = get_runtime()
    policy = policy_for(request.url.path)
    record = await runtime.gate.authorize(
        principal.identity,
        policy.operation,
        client_ip=principal.client_ip,
        endpoint=request.url.path,
    )
    return runtime.gate.require_active(record)


@router.post("/products/lookup", tags=["products"])
async def lookup_product(
    body: BarcodeLookupRequest,
    request: Request,
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    await _authorize_endpoint(request, principal)
    product = await runtime.catalog.lookup(body.barcode)
    await runtime.security_log.log_operation_success(
        "lookup_product", principal.subject_id, barcode=product.barcode
    )
    return {"success": True, "product": product.to_dict()}


@router.post("/products/describe", tags=["products"])
async def describe_product(
    body: DescribeRequest,
    request: Request,
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    await _authorize_endpoint(request, principal)
    await runtime.gate.check_subscription(principal.identity)
    description = await runtime.generator.generate(
        DescriptionRequest(
            product=body.product,
            language=body.language,
            brand_tone=body.brand_tone,
            length=body.description_length,
            target_audience=body.target_audience,
            key_features=body.key_features,
        )
    )
    # Charged only after the generator succeeded
    record = await runtime.gate.increment_usage(principal.subject_id)
    await runtime.security_log.log_operation_success(
        "generate_description", principal.subject_id, language=body.language
    )
    return {
        "success": True,
        "description": description,
        "usage": {
            "currentUsage": record.monthly_usage,
            "maxUsage": record.max_usage,
            "subscriptionType": record.subscription_tier,
        },
    }
