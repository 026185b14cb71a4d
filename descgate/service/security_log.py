"""Security event sink.

Events are emitted through structlog at a level derived from their severity
and appended best-effort to the ``security_events`` collection. Persistence
problems are logged and swallowed: the event stream must never be the reason
a request fails.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from descgate.logging import get_correlation_id, get_logger, sanitize_attributes
from descgate.service.clock import Clock, system_clock, token_hex
from descgate.storage.common import SECURITY_EVENTS, DocumentStore
from descgate.storage.models import SecurityEvent

logger = get_logger(__name__)

LEVELS = ("DEBUG", "INFO", "WARN", "ERROR", "CRITICAL")
_LEVEL_RANK = {name: rank for rank, name in enumerate(LEVELS)}
_LEVEL_ALIASES = {"WARNING": "WARN", "FATAL": "CRITICAL"}


def normalize_level(level: str) -> str:
    upper = (level or "INFO").upper()
    upper = _LEVEL_ALIASES.get(upper, upper)
    return upper if upper in _LEVEL_RANK else "INFO"


class SecurityLogger:
    """Append-only security event emitter with level filtering."""

    def __init__(
        self,
        store: Optional[DocumentStore],
        *,
        clock: Clock = system_clock,
        min_level: str = "INFO",
    ) -> None:
        self.store = store
        self.clock = clock
        self.min_level = normalize_level(min_level)
        self.logger = logger

    def enabled_for(self, level: str) -> bool:
        return _LEVEL_RANK[normalize_level(level)] >= _LEVEL_RANK[self.min_level]

    def _new_event_id(self) -> str:
        return f"EVT_{self.clock.now_ms()}_{token_hex(4).upper()}"

    async def emit(
        self,
        event_type: str,
        level: str = "INFO",
        *,
        subject_id: Optional[str] = None,
        client_ip: Optional[str] = None,
        endpoint: Optional[str] = None,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> Optional[SecurityEvent]:
        level = normalize_level(level)
        if not self.enabled_for(level):
            return None

        event = SecurityEvent(
            id=self._new_event_id(),
            timestamp=self.clock.now_ms(),
            level=level,
            event_type=event_type,
            subject_id=subject_id,
            client_ip=client_ip,
            endpoint=endpoint,
            attributes=sanitize_attributes(attributes or {}),
            correlation_id=get_correlation_id(),
        )

        log_fn = {
            "DEBUG": self.logger.debug,
            "INFO": self.logger.info,
            "WARN": self.logger.warning,
            "ERROR": self.logger.error,
            "CRITICAL": self.logger.critical,
        }[level]
        log_fn(
            "security_event",
            event_id=event.id,
            event_type=event_type,
            security_level=level,
            subject_id=subject_id,
            client_ip=client_ip,
            endpoint=endpoint,
            attributes=event.attributes,
        )

        if self.store is not None:
            try:
                await self.store.append(SECURITY_EVENTS, event.to_document())
            except Exception as exc:
                self.logger.warning(
                    "security_event_persist_failed",
                    event_id=event.id,
                    event_type=event_type,
                    error=str(exc),
                )
        return event

    async def recent(
        self, *, event_types: Optional[Iterable[str]] = None, limit: int = 100
    ) -> List[SecurityEvent]:
        """Most recent persisted events, newest first."""
        if self.store is None:
            return []
        wanted = set(event_types) if event_types else None
        documents = await self.store.recent(SECURITY_EVENTS, limit=limit if wanted is None else limit * 10)
        events = [SecurityEvent.from_document(doc) for doc in documents]
        if wanted is not None:
            events = [event for event in events if event.event_type in wanted]
        return events[:limit]

    # Convenience emitters for the common event types

    async def log_auth_success(
        self, subject_id: str, client_ip: Optional[str] = None, **attributes: Any
    ) -> Optional[SecurityEvent]:
        return await self.emit(
            "AUTHENTICATION_SUCCESS", "INFO",
            subject_id=subject_id, client_ip=client_ip, attributes=attributes,
        )

    async def log_auth_failure(
        self,
        reason: str,
        *,
        subject_id: Optional[str] = None,
        client_ip: Optional[str] = None,
        **attributes: Any,
    ) -> Optional[SecurityEvent]:
        return await self.emit(
            "AUTHENTICATION_FAILURE", "WARN",
            subject_id=subject_id, client_ip=client_ip,
            attributes={"reason": reason, **attributes},
        )

    async def log_authz_failure(
        self,
        subject_id: Optional[str],
        required_permission: str,
        current_permissions: Iterable[str] = (),
        *,
        client_ip: Optional[str] = None,
        endpoint: Optional[str] = None,
        **attributes: Any,
    ) -> Optional[SecurityEvent]:
        return await self.emit(
            "AUTHZ_FAILURE", "WARN",
            subject_id=subject_id, client_ip=client_ip, endpoint=endpoint,
            attributes={
                "requiredPermission": required_permission,
                "currentPermissions": list(current_permissions),
                **attributes,
            },
        )

    async def log_subscription_failure(
        self, subject_id: str, tier: str, usage: int, limit: Optional[int], **attributes: Any
    ) -> Optional[SecurityEvent]:
        return await self.emit(
            "SUBSCRIPTION_FAILURE", "WARN",
            subject_id=subject_id,
            attributes={"tier": tier, "usage": usage, "limit": limit, **attributes},
        )

    async def log_rate_limit_exceeded(
        self, client_key: str, *, client_ip: Optional[str] = None, endpoint: Optional[str] = None,
        **attributes: Any,
    ) -> Optional[SecurityEvent]:
        return await self.emit(
            "RATE_LIMIT_EXCEEDED", "WARN",
            client_ip=client_ip, endpoint=endpoint,
            attributes={"clientKey": client_key, **attributes},
        )

    async def log_suspicious_activity(
        self,
        activity: str,
        *,
        subject_id: Optional[str] = None,
        client_ip: Optional[str] = None,
        **attributes: Any,
    ) -> Optional[SecurityEvent]:
        return await self.emit(
            "SUSPICIOUS_ACTIVITY", "CRITICAL",
            subject_id=subject_id, client_ip=client_ip,
            attributes={"activity": activity, **attributes},
        )

    async def log_token_validation_failure(
        self, reason: str, *, client_ip: Optional[str] = None, endpoint: Optional[str] = None,
        **attributes: Any,
    ) -> Optional[SecurityEvent]:
        return await self.emit(
            "TOKEN_VALIDATION_FAILURE", "WARN",
            client_ip=client_ip, endpoint=endpoint, attributes={"reason": reason, **attributes},
        )

    async def log_operation_success(
        self, operation: str, subject_id: Optional[str] = None, **attributes: Any
    ) -> Optional[SecurityEvent]:
        return await self.emit(
            "OPERATION_SUCCESS", "DEBUG",
            subject_id=subject_id, attributes={"operation": operation, **attributes},
        )

    async def log_operation_failure(
        self, operation: str, error: str, subject_id: Optional[str] = None, **attributes: Any
    ) -> Optional[SecurityEvent]:
        return await self.emit(
            "OPERATION_FAILURE", "ERROR",
            subject_id=subject_id,
            attributes={"operation": operation, "error": error, **attributes},
        )

    async def log_unauthorized_admin_access(
        self, subject_id: Optional[str], operation: str, **attributes: Any
    ) -> Optional[SecurityEvent]:
        return await self.emit(
            "UNAUTHORIZED_ADMIN_ACCESS", "CRITICAL",
            subject_id=subject_id, attributes={"operation": operation, **attributes},
        )

    async def log_admin_access(
        self, subject_id: str, operation: str, **attributes: Any
    ) -> Optional[SecurityEvent]:
        return await self.emit(
            "ADMIN_ACCESS_SUCCESS", "INFO",
            subject_id=subject_id, attributes={"operation": operation, **attributes},
        )

    async def log_admin_validation_error(
        self, subject_id: Optional[str], error: str, **attributes: Any
    ) -> Optional[SecurityEvent]:
        return await self.emit(
            "ADMIN_VALIDATION_ERROR", "ERROR",
            subject_id=subject_id, attributes={"error": error, **attributes},
        )

    async def log_config_issue(self, issue: str, **attributes: Any) -> Optional[SecurityEvent]:
        return await self.emit("CONFIG_ISSUE", "WARN", attributes={"issue": issue, **attributes})

    async def log_environment_check(
        self, checks: Dict[str, bool], **attributes: Any
    ) -> Optional[SecurityEvent]:
        level = "INFO" if all(checks.values()) else "WARN"
        return await self.emit(
            "ENVIRONMENT_CHECK", level, attributes={"checks": checks, **attributes}
        )
