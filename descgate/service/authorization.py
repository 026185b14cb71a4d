from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from descgate.config import Settings
from descgate.logging import get_logger
from descgate.service.clock import Clock, billing_period, system_clock
from descgate.service.error_responder import ErrorResponder
from descgate.service.errors import (
    InvalidInputError,
    NotFoundError,
    PermissionDeniedError,
    UsageExceededError,
)
from descgate.service.identity import Identity
from descgate.service.security_log import SecurityLogger
from descgate.storage.common import USERS, DocumentStore, Transaction
from descgate.storage.models import UserRecord

logger = get_logger(__name__)

ROLE_RANK = {"user": 0, "admin": 1, "system": 2}
ADMIN_RANK = ROLE_RANK["admin"]
SYSTEM_ACTOR = "system"

DEFAULT_OPERATION_PERMISSIONS: Dict[str, List[str]] = {
    "get_usage": ["user", "admin"],
    "increment_usage": ["user", "admin"],
    "create_user": ["user", "admin"],
    "reset_usage": ["admin"],
    "get_all_users": ["admin"],
    "update_user_role": ["admin"],
    "delete_user": ["admin"],
    "revoke_sessions": ["admin"],
    "verify_admin": ["admin"],
    "lookup_product": ["user", "admin"],
    "generate_description": ["user", "admin"],
}

SUBSCRIPTION_TIERS = ("free", "starter", "professional", "enterprise")

EMAIL_RE = re.compile(r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+@[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)+$")
MAX_EMAIL_LENGTH = 320
SUBJECT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{10,128}$")


def normalize_role(role: Any) -> str:
    value = str(role or "").strip().lower()
    if value not in ROLE_RANK:
        raise InvalidInputError(f"unknown role {role!r}", detail={"role": str(role)[:32]})
    return value


def validate_subject_id(subject_id: Any) -> str:
    if not isinstance(subject_id, str) or not SUBJECT_ID_RE.match(subject_id):
        raise InvalidInputError("invalid subject id")
    return subject_id


def validate_email(email: Any) -> str:
    if not isinstance(email, str) or len(email) > MAX_EMAIL_LENGTH or not EMAIL_RE.match(email):
        raise InvalidInputError("invalid email address")
    return email


@dataclass
class UsageSummary:
    subject_id: str
    subscription_tier: str
    monthly_usage: int
    max_usage: Optional[int]
    billing_period: str

    @property
    def remaining(self) -> Optional[int]:
        if self.max_usage is None:
            return None
        return max(0, self.max_usage - self.monthly_usage)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.subject_id,
            "subscriptionTier": self.subscription_tier,
            "monthlyUsage": self.monthly_usage,
            "maxUsage": self.max_usage,
            "remaining": self.remaining,
            "billingPeriod": self.billing_period,
        }


def usage_summary(record: UserRecord) -> UsageSummary:
    return UsageSummary(
        subject_id=record.subject_id,
        subscription_tier=record.subscription_tier,
        monthly_usage=record.monthly_usage,
        max_usage=record.max_usage,
        billing_period=record.billing_period,
    )


class AuthorizationGate:
    """Role checks, the operation permission table and usage metering.

    User records are created on first authenticated access with the most
    restrictive defaults. Every mutation of a record goes through a store
    transaction so concurrent increments never lose updates.
    """

    def __init__(
        self,
        store: DocumentStore,
        security_log: SecurityLogger,
        settings: Settings,
        *,
        clock: Clock = system_clock,
        responder: Optional[ErrorResponder] = None,
    ) -> None:
        self.store = store
        self.security_log = security_log
        self.settings = settings
        self.clock = clock
        self.responder = responder
        self.tier_limits = dict(settings.tier_limits)
        self.permissions = {
            **DEFAULT_OPERATION_PERMISSIONS,
            **{k: [normalize_role(r) for r in v] for k, v in settings.operation_permissions.items()},
        }

    # -- permission table ---------------------------------------------------

    def required_rank(self, operation: str) -> Optional[int]:
        roles = self.permissions.get(operation)
        if not roles:
            return None
        return min(ROLE_RANK[role] for role in roles)

    def permissions_for(self, role: str) -> List[str]:
        rank = ROLE_RANK.get(role, 0)
        return sorted(op for op in self.permissions if (self.required_rank(op) or 0) <= rank)

    # -- records ------------------------------------------------------------

    def _current_period(self) -> str:
        return billing_period(self.clock.utcnow())

    def _default_record(self, subject_id: str, email: Optional[str], actor: Optional[str]) -> UserRecord:
        now_ms = self.clock.now_ms()
        return UserRecord(
            subject_id=subject_id,
            email=email,
            role="user",
            subscription_tier="free",
            monthly_usage=0,
            max_usage=self.tier_limits.get("free", 5),
            billing_period=self._current_period(),
            status="active",
            created_at=now_ms,
            last_active_at=now_ms,
            created_by=actor or subject_id,
        )

    def _rollover(self, record: UserRecord) -> bool:
        current = self._current_period()
        if record.billing_period == current:
            return False
        # Free-tier usage is a lifetime trial allowance; paid tiers reset monthly
        if record.subscription_tier != "free":
            record.monthly_usage = 0
        record.billing_period = current
        return True

    def _apply_role_claim(self, record: UserRecord, identity: Identity) -> UserRecord:
        if not self.settings.trust_role_claims:
            return record
        claimed = identity.custom_claims.get("role")
        if isinstance(claimed, str) and claimed.lower() in ROLE_RANK:
            record.role = claimed.lower()
        return record

    async def _with_recovery(self, operation: str, func):
        if self.responder is None:
            return await func()
        return await self.responder.call_with_recovery(operation, func)

    async def load_user(self, identity: Identity) -> UserRecord:
        """Load (or create on first access) the record for an authenticated identity."""

        async def _load(txn: Transaction) -> UserRecord:
            document = await txn.get(USERS, identity.subject_id)
            if document is None:
                record = self._default_record(identity.subject_id, identity.email, None)
                logger.info("user_record_created", subject_id=identity.subject_id)
            else:
                record = UserRecord.from_document(document)
                self._rollover(record)
            record.last_active_at = self.clock.now_ms()
            if identity.email and not record.email:
                record.email = identity.email
            txn.set(USERS, identity.subject_id, record.to_document())
            return record

        record = await self._with_recovery(
            "users.load", lambda: self.store.run_transaction(_load)
        )
        return self._apply_role_claim(record, identity)

    async def get_record(self, subject_id: str) -> UserRecord:
        document = await self._with_recovery(
            "users.get", lambda: self.store.get(USERS, subject_id)
        )
        if document is None:
            raise NotFoundError("user record not found", detail={"subject_id": subject_id})
        return UserRecord.from_document(document)

    # -- authorization ------------------------------------------------------

    async def _deny(
        self,
        record: UserRecord,
        operation: str,
        reason: str,
        *,
        client_ip: Optional[str],
        endpoint: Optional[str],
        target_subject: Optional[str] = None,
    ) -> PermissionDeniedError:
        await self.security_log.log_authz_failure(
            record.subject_id,
            operation,
            self.permissions_for(record.role),
            client_ip=client_ip,
            endpoint=endpoint,
            role=record.role,
            reason=reason,
            targetUserId=target_subject,
        )
        required = self.required_rank(operation)
        if required is not None and required >= ADMIN_RANK and ROLE_RANK.get(record.role, 0) < ADMIN_RANK:
            await self.security_log.log_unauthorized_admin_access(
                record.subject_id, operation, role=record.role, client_ip=client_ip
            )
        return PermissionDeniedError(
            f"{operation} denied: {reason}",
            detail={"subject_id": record.subject_id, "operation": operation, "reason": reason},
        )

    async def authorize(
        self,
        identity: Identity,
        operation: str,
        target_subject: Optional[str] = None,
        *,
        client_ip: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> UserRecord:
        record = await self.load_user(identity)
        rank = ROLE_RANK.get(record.role, 0)
        required = self.required_rank(operation)

        if required is None:
            raise await self._deny(
                record, operation, "unknown operation", client_ip=client_ip, endpoint=endpoint
            )
        if rank < required:
            raise await self._deny(
                record, operation, "insufficient role", client_ip=client_ip, endpoint=endpoint
            )

        targets_other = target_subject is not None and target_subject != identity.subject_id
        if targets_other and rank < ADMIN_RANK:
            raise await self._deny(
                record, operation, "cross-subject access",
                client_ip=client_ip, endpoint=endpoint, target_subject=target_subject,
            )
        if operation == "create_user" and targets_other:
            raise await self._deny(
                record, operation, "subject mismatch",
                client_ip=client_ip, endpoint=endpoint, target_subject=target_subject,
            )
        if operation in ("delete_user", "reset_usage") and not targets_other:
            raise await self._deny(
                record, operation, "operation not permitted on own record",
                client_ip=client_ip, endpoint=endpoint, target_subject=target_subject,
            )

        if required >= ADMIN_RANK:
            await self.security_log.log_admin_access(
                record.subject_id, operation, targetUserId=target_subject, client_ip=client_ip
            )
        return record

    # -- subscription and usage --------------------------------------------

    def require_active(self, record: UserRecord) -> UserRecord:
        if record.status != "active":
            raise PermissionDeniedError(
                "account is not active",
                error_code="ACCOUNT_INACTIVE",
                detail={"subject_id": record.subject_id, "status": record.status},
            )
        return record

    async def check_subscription(self, identity: Identity) -> UserRecord:
        """Reject metered work when the subject has no headroom left."""
        record = await self.load_user(identity)
        if record.at_limit():
            await self.security_log.log_subscription_failure(
                record.subject_id, record.subscription_tier, record.monthly_usage, record.max_usage
            )
            status = 403 if record.subscription_tier == "free" else 429
            raise UsageExceededError(
                "usage limit reached",
                status_code=status,
                detail={
                    "subject_id": record.subject_id,
                    "tier": record.subscription_tier,
                    "usage": record.monthly_usage,
                },
            )
        return record

    async def increment_usage(self, subject_id: str, amount: int = 1) -> UserRecord:
        """Atomically add ``amount`` to the monthly counter, refusing to pass the cap."""

        async def _increment(txn: Transaction) -> UserRecord:
            document = await txn.get(USERS, subject_id)
            if document is None:
                raise NotFoundError("user record not found", detail={"subject_id": subject_id})
            record = UserRecord.from_document(document)
            self._rollover(record)
            new_usage = record.monthly_usage + amount
            if record.max_usage is not None and new_usage > record.max_usage and record.subscription_tier != "enterprise":
                raise UsageExceededError(
                    "usage increment would exceed the plan limit",
                    detail={"subject_id": subject_id, "usage": record.monthly_usage},
                )
            record.monthly_usage = new_usage
            record.last_active_at = self.clock.now_ms()
            txn.set(USERS, subject_id, record.to_document())
            return record

        record = await self.store.run_transaction(_increment)
        logger.info(
            "usage_incremented",
            subject_id=subject_id,
            monthly_usage=record.monthly_usage,
            max_usage=record.max_usage,
        )
        return record

    async def reset_usage(self, actor_id: str, target_subject: str) -> UserRecord:
        async def _reset(txn: Transaction) -> UserRecord:
            document = await txn.get(USERS, target_subject)
            if document is None:
                raise NotFoundError("user record not found", detail={"subject_id": target_subject})
            record = UserRecord.from_document(document)
            record.monthly_usage = 0
            record.billing_period = self._current_period()
            record.updated_by = actor_id
            txn.set(USERS, target_subject, record.to_document())
            return record

        record = await self.store.run_transaction(_reset)
        await self.security_log.emit(
            "USAGE_RESET", "INFO", subject_id=target_subject, attributes={"actor": actor_id}
        )
        return record

    # -- user management ----------------------------------------------------

    async def create_user(self, identity: Identity, email: Optional[str] = None) -> tuple[UserRecord, bool]:
        email = validate_email(email or identity.email)

        async def _create(txn: Transaction) -> tuple[UserRecord, bool]:
            document = await txn.get(USERS, identity.subject_id)
            if document is not None:
                return UserRecord.from_document(document), False
            record = self._default_record(identity.subject_id, email, identity.subject_id)
            txn.set(USERS, identity.subject_id, record.to_document())
            return record, True

        record, created = await self.store.run_transaction(_create)
        if created:
            await self.security_log.log_operation_success("create_user", identity.subject_id)
        return record, created

    async def list_users(self, limit: int = 100) -> List[UserRecord]:
        documents = await self._with_recovery(
            "users.list", lambda: self.store.list(USERS, limit=limit)
        )
        return [UserRecord.from_document(doc) for doc in documents]

    async def update_user_role(
        self, actor: UserRecord | str, target_subject: str, role: Any
    ) -> UserRecord:
        new_role = normalize_role(role)
        if isinstance(actor, UserRecord):
            actor_id, actor_rank = actor.subject_id, ROLE_RANK.get(actor.role, 0)
        else:
            actor_id, actor_rank = actor, ROLE_RANK["system"] if actor == SYSTEM_ACTOR else 0
        if ROLE_RANK[new_role] > actor_rank:
            await self.security_log.log_admin_validation_error(
                actor_id, "role grant exceeds actor role", requestedRole=new_role
            )
            raise PermissionDeniedError(
                "cannot grant a role above the actor's own",
                detail={"actor": actor_id, "role": new_role},
            )

        async def _update(txn: Transaction) -> tuple[UserRecord, str]:
            document = await txn.get(USERS, target_subject)
            if document is None:
                if actor_id != SYSTEM_ACTOR:
                    raise NotFoundError("user record not found", detail={"subject_id": target_subject})
                record = self._default_record(target_subject, None, SYSTEM_ACTOR)
            else:
                record = UserRecord.from_document(document)
            previous = record.role
            record.role = new_role
            record.updated_by = actor_id
            record.role_updated_at = self.clock.now_ms()
            txn.set(USERS, target_subject, record.to_document())
            return record, previous

        record, previous = await self.store.run_transaction(_update)
        await self.security_log.emit(
            "ROLE_CHANGED",
            "WARN",
            subject_id=target_subject,
            attributes={"actor": actor_id, "oldRole": previous, "newRole": new_role},
        )
        return record

    async def delete_user(self, actor_id: str, target_subject: str) -> None:
        if actor_id == target_subject:
            raise PermissionDeniedError("a principal cannot delete its own record")

        async def _delete(txn: Transaction) -> None:
            document = await txn.get(USERS, target_subject)
            if document is None:
                raise NotFoundError("user record not found", detail={"subject_id": target_subject})
            txn.delete(USERS, target_subject)

        await self.store.run_transaction(_delete)
        await self.security_log.emit(
            "USER_DELETED", "WARN", subject_id=target_subject, attributes={"actor": actor_id}
        )


def record_view(record: UserRecord) -> Dict[str, Any]:
    return {
        "userId": record.subject_id,
        "email": record.email,
        "role": record.role,
        "subscriptionTier": record.subscription_tier,
        "monthlyUsage": record.monthly_usage,
        "maxUsage": record.max_usage,
        "billingPeriod": record.billing_period,
        "status": record.status,
    }
