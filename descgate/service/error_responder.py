"""Fault classification and the sanitized error surface.

Every exception that reaches the HTTP layer is turned into an
:class:`ErrorReport` here. Components raise rich internal faults; only this
module decides what a client gets to see. The report carries a stable JSON
body ``{"error", "code"?, "failSafe"?, "errorId"?}`` plus any recovery
headers, and the fault is logged (and persisted to ``error_log``) under a
generated error id.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from descgate.logging import (
    GENERIC_ERROR_MESSAGE,
    get_logger,
    sanitize_attributes,
    sanitize_error_message,
)
from descgate.service.clock import Clock, system_clock, token_hex
from descgate.service.errors import (
    CircuitOpenError,
    ConflictError,
    ErrorCategory,
    InternalFailureError,
    OperationTimeoutError,
    ServiceError,
)
from descgate.service.identity import IdentityProviderUnavailable
from descgate.service.resilience import (
    DEFAULT_RETRY_POLICY,
    CircuitBreaker,
    RetryPolicy,
    retry_async,
)
from descgate.service.security_log import SecurityLogger
from descgate.storage.common import ERROR_LOG, DocumentStore
from descgate.storage.errors import StoreUnavailable, TransactionConflict

logger = get_logger(__name__)

SLOW_RESPONSE_MS = 5000

_SECURITY_KEYWORDS = (
    "auth", "token", "replay", "blacklist", "unauthorized", "forbidden", "security", "violation",
)
_PERFORMANCE_KEYWORDS = ("timeout", "timed out", "slow", "performance", "latency")
_COMPLIANCE_KEYWORDS = ("pci", "compliance", "gdpr", "regulation", "audit")
_NETWORK_KEYWORDS = (
    "network", "connection", "dns", "socket", "econnrefused", "etimedout", "unreachable",
)

_CRITICAL_SECURITY_KINDS = frozenset({"ReplayDetected", "BehavioralAnomaly"})


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INFO = "INFO"


class AuditCategory(str, Enum):
    """Audit-trail grouping attached to every classified fault."""

    AUTH_FAILURE = "AUTH_FAILURE"
    DATA_ACCESS = "DATA_ACCESS"
    SYSTEM_CHANGE = "SYSTEM_CHANGE"
    SECURITY_VIOLATION = "SECURITY_VIOLATION"
    COMPLIANCE_CHECK = "COMPLIANCE_CHECK"


class Strategy(str, Enum):
    RETRY = "RETRY"
    FAIL_SECURE = "FAIL_SECURE"
    CIRCUIT_BREAK = "CIRCUIT_BREAK"
    GENERIC_RESPONSE = "GENERIC_RESPONSE"


@dataclass
class Classification:
    type: ErrorCategory
    severity: Severity
    category: AuditCategory
    risk_level: str
    requires_immediate_action: bool


@dataclass
class ErrorReport:
    error_id: str
    classification: Classification
    strategy: Strategy
    status_code: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)


def _matches(text: str, keywords: tuple[str, ...]) -> bool:
    return any(keyword in text for keyword in keywords)


class ErrorResponder:
    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        security_log: Optional[SecurityLogger] = None,
        *,
        clock: Clock = system_clock,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        breaker_threshold: int = 5,
        breaker_open_seconds: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.security_log = security_log
        self.clock = clock
        self.retry_policy = retry_policy
        self.breaker_threshold = breaker_threshold
        self.breaker_open_seconds = breaker_open_seconds
        self._sleep = sleep
        self._breakers: Dict[str, CircuitBreaker] = {}

    # -- classification -------------------------------------------------

    def _error_type(self, exc: BaseException) -> ErrorCategory:
        if isinstance(exc, ServiceError):
            return exc.category
        if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
            return ErrorCategory.PERFORMANCE
        if isinstance(exc, (StoreUnavailable, IdentityProviderUnavailable, ConnectionError)):
            return ErrorCategory.NETWORK
        text = f"{type(exc).__name__} {exc}".lower()
        if _matches(text, _COMPLIANCE_KEYWORDS):
            return ErrorCategory.COMPLIANCE
        if _matches(text, _SECURITY_KEYWORDS):
            return ErrorCategory.SECURITY
        if _matches(text, _PERFORMANCE_KEYWORDS):
            return ErrorCategory.PERFORMANCE
        if _matches(text, _NETWORK_KEYWORDS):
            return ErrorCategory.NETWORK
        return ErrorCategory.SYSTEM

    def classify(
        self, exc: BaseException, context: Optional[Mapping[str, Any]] = None
    ) -> Classification:
        context = context or {}
        error_type = self._error_type(exc)
        kind = getattr(exc, "kind", None)
        text = str(exc).lower()

        if error_type == ErrorCategory.SECURITY:
            critical = kind in _CRITICAL_SECURITY_KINDS or _matches(text, ("replay", "blacklist"))
            severity = Severity.CRITICAL if critical else Severity.HIGH
            category = (
                AuditCategory.SECURITY_VIOLATION
                if critical or kind == "PermissionDenied"
                else AuditCategory.AUTH_FAILURE
            )
        elif error_type == ErrorCategory.PERFORMANCE:
            slow = int(context.get("response_time_ms") or 0) > SLOW_RESPONSE_MS
            severity = Severity.HIGH if slow else Severity.MEDIUM
            category = AuditCategory.SYSTEM_CHANGE
        elif error_type == ErrorCategory.COMPLIANCE:
            severity = Severity.HIGH
            category = AuditCategory.COMPLIANCE_CHECK
        elif error_type == ErrorCategory.NETWORK:
            severity = Severity.MEDIUM
            category = AuditCategory.SYSTEM_CHANGE
        else:
            client_fault = isinstance(exc, ServiceError) and exc.status_code < 500
            severity = Severity.LOW if client_fault else Severity.MEDIUM
            category = AuditCategory.DATA_ACCESS if client_fault else AuditCategory.SYSTEM_CHANGE

        override = context.get("severity")
        if override in Severity.__members__:
            severity = Severity(override)

        risk_level = {
            Severity.CRITICAL: "CRITICAL",
            Severity.HIGH: "HIGH",
            Severity.MEDIUM: "MEDIUM",
        }.get(severity, "LOW")
        return Classification(
            type=error_type,
            severity=severity,
            category=category,
            risk_level=risk_level,
            requires_immediate_action=severity == Severity.CRITICAL,
        )

    def strategy_for(
        self,
        exc: BaseException,
        classification: Classification,
        context: Optional[Mapping[str, Any]] = None,
    ) -> Strategy:
        context = context or {}
        if isinstance(exc, CircuitOpenError):
            return Strategy.CIRCUIT_BREAK
        if classification.type in (ErrorCategory.SECURITY, ErrorCategory.COMPLIANCE):
            return Strategy.FAIL_SECURE
        if classification.type in (ErrorCategory.PERFORMANCE, ErrorCategory.NETWORK):
            return Strategy.RETRY
        if context.get("auth_adjacent"):
            return Strategy.FAIL_SECURE
        return Strategy.GENERIC_RESPONSE

    # -- reporting ------------------------------------------------------

    def new_error_id(self) -> str:
        return f"ERR_{self.clock.now_ms()}_{token_hex(4).upper()}"

    def _wire_fault(self, exc: BaseException, classification: Classification) -> ServiceError:
        if isinstance(exc, ServiceError):
            return exc
        if isinstance(exc, TransactionConflict):
            return ConflictError("store transaction kept conflicting")
        if classification.type == ErrorCategory.PERFORMANCE:
            return OperationTimeoutError(str(exc))
        return InternalFailureError(str(exc))

    async def handle(
        self, exc: BaseException, context: Optional[Mapping[str, Any]] = None
    ) -> ErrorReport:
        context = dict(context or {})
        classification = self.classify(exc, context)
        strategy = self.strategy_for(exc, classification, context)
        fault = self._wire_fault(exc, classification)
        error_id = self.new_error_id()

        fail_safe = fault.fail_safe or (
            strategy == Strategy.FAIL_SECURE and fault.status_code >= 500
        )
        message = sanitize_error_message(fault.public_message) if fault.public_message else GENERIC_ERROR_MESSAGE
        body: Dict[str, Any] = {"error": message}
        if fault.error_code:
            body["code"] = fault.error_code
        if fail_safe:
            body["failSafe"] = True
        if fault.status_code >= 500:
            body["errorId"] = error_id
        for key, value in fault.extra.items():
            body.setdefault(key, value)

        safe_context = sanitize_attributes(context)
        log_fn = (
            logger.error
            if fault.status_code >= 500 or classification.severity == Severity.CRITICAL
            else logger.warning
        )
        log_fn(
            "error_handled",
            error_id=error_id,
            error_type=type(exc).__name__,
            error_kind=fault.kind,
            classification=classification.type.value,
            severity=classification.severity.value,
            strategy=strategy.value,
            status_code=fault.status_code,
            message=str(exc)[:500],
            detail=sanitize_attributes(getattr(exc, "detail", None) or {}),
            context=safe_context,
        )
        if classification.requires_immediate_action:
            logger.critical(
                "security_alert",
                error_id=error_id,
                error_kind=fault.kind,
                endpoint=context.get("endpoint"),
                client_ip=context.get("client_ip"),
            )

        await self._persist(error_id, exc, fault, classification, strategy, safe_context)
        if classification.type == ErrorCategory.SECURITY and self.security_log is not None:
            await self.security_log.emit(
                "SECURITY_ERROR",
                "CRITICAL" if classification.severity == Severity.CRITICAL else "ERROR",
                subject_id=context.get("subject_id"),
                client_ip=context.get("client_ip"),
                endpoint=context.get("endpoint"),
                attributes={
                    "errorId": error_id,
                    "kind": fault.kind,
                    "severity": classification.severity.value,
                    "statusCode": fault.status_code,
                },
            )

        return ErrorReport(
            error_id=error_id,
            classification=classification,
            strategy=strategy,
            status_code=fault.status_code,
            body=body,
            headers=dict(fault.headers),
        )

    async def _persist(
        self,
        error_id: str,
        exc: BaseException,
        fault: ServiceError,
        classification: Classification,
        strategy: Strategy,
        context: Dict[str, Any],
    ) -> None:
        if self.store is None:
            return
        record = {
            "id": error_id,
            "timestamp": self.clock.now_ms(),
            "type": classification.type.value,
            "severity": classification.severity.value,
            "category": classification.category.value,
            "strategy": strategy.value,
            "kind": fault.kind,
            "status_code": fault.status_code,
            "error_type": type(exc).__name__,
            "message": sanitize_attributes({"message": str(exc)})["message"],
            "context": context,
        }
        try:
            await self.store.append(ERROR_LOG, record)
        except Exception as persist_exc:
            logger.warning(
                "error_log_persist_failed", error_id=error_id, error=str(persist_exc)
            )

    # -- recovery -------------------------------------------------------

    def breaker(self, operation: str) -> CircuitBreaker:
        breaker = self._breakers.get(operation)
        if breaker is None:
            breaker = CircuitBreaker(
                operation,
                failure_threshold=self.breaker_threshold,
                open_seconds=self.breaker_open_seconds,
                clock=self.clock,
            )
            self._breakers[operation] = breaker
        return breaker

    def _retryable(self, exc: Exception) -> bool:
        return self._error_type(exc) in (ErrorCategory.PERFORMANCE, ErrorCategory.NETWORK)

    async def call_with_recovery(
        self,
        operation: str,
        func: Callable[[], Awaitable[Any]],
        *,
        policy: Optional[RetryPolicy] = None,
    ) -> Any:
        """Run ``func`` with retry for transient faults and a per-operation breaker.

        SECURITY, COMPLIANCE and SYSTEM faults propagate on first occurrence.
        When retries of a transient fault are exhausted the breaker opens and
        later calls fail with :class:`CircuitOpenError` until it half-opens.
        """
        breaker = self.breaker(operation)
        breaker.before_call()
        try:
            result = await retry_async(
                func,
                policy=policy or self.retry_policy,
                retryable=self._retryable,
                sleep=self._sleep,
                operation=operation,
            )
        except Exception as exc:
            if self._retryable(exc):
                breaker.trip()
                if self.security_log is not None:
                    await self.security_log.log_operation_failure(
                        operation, type(exc).__name__, breaker=breaker.state
                    )
            elif self._error_type(exc) == ErrorCategory.SYSTEM and not (
                isinstance(exc, ServiceError) and exc.status_code < 500
            ):
                breaker.record_failure()
            raise
        breaker.record_success()
        return result
