"""One-time-use enforcement for primary credentials.

Consumed credentials are remembered by fingerprint (SHA-256 of ``jti``, or of
``iat`` and ``sub`` when the credential carries no ``jti``) for the replay
window. ``check`` and ``record`` each run under their own fingerprint-scoped
lock; ``record`` is additionally a conditional write, so of several
concurrent consumers that all passed ``check`` only one can record.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from descgate.logging import get_logger
from descgate.service.clock import Clock, system_clock
from descgate.service.locks import LockManager
from descgate.service.risk import RiskAssessment, RiskScorer
from descgate.service.security_log import SecurityLogger
from descgate.storage.common import TOKEN_BLACKLIST, DocumentStore, Transaction
from descgate.storage.models import BlacklistEntry

logger = get_logger(__name__)

DEFAULT_REPLAY_WINDOW_SECONDS = 300
SLOW_OPERATION_SECONDS = 5.0
# Store-level expiry lags the logical expiry so stale entries are removed on access
STORE_TTL_GRACE_SECONDS = 60


def credential_fingerprint(
    *, jti: Optional[str] = None, issued_at: Optional[int] = None, subject_id: Optional[str] = None
) -> str:
    if jti:
        material = f"jti:{jti}"
    elif issued_at is not None and subject_id:
        material = f"{issued_at}:{subject_id}"
    else:
        raise ValueError("fingerprint requires jti or issued_at and subject_id")
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


@dataclass
class ReplayCheck:
    blacklisted: bool
    reason: str
    risk: str
    since: Optional[int] = None
    assessment: Optional[RiskAssessment] = None


@dataclass
class RecordResult:
    recorded: bool
    reason: Optional[str] = None
    entry: Optional[BlacklistEntry] = None


@dataclass
class _GuardMetrics:
    checks: int = 0
    records: int = 0
    replays_detected: int = 0
    lock_failures: int = 0
    errors: int = 0
    total_check_ms: float = 0.0

    def snapshot(self) -> Dict[str, Any]:
        avg = self.total_check_ms / self.checks if self.checks else 0.0
        return {
            "checks": self.checks,
            "records": self.records,
            "replaysDetected": self.replays_detected,
            "lockFailures": self.lock_failures,
            "errors": self.errors,
            "averageCheckMs": round(avg, 2),
        }


class ReplayGuard:
    def __init__(
        self,
        store: DocumentStore,
        locks: LockManager,
        security_log: SecurityLogger,
        *,
        risk_scorer: Optional[RiskScorer] = None,
        clock: Clock = system_clock,
        replay_window_seconds: int = DEFAULT_REPLAY_WINDOW_SECONDS,
        slow_threshold: float = SLOW_OPERATION_SECONDS,
    ) -> None:
        self.store = store
        self.locks = locks
        self.security_log = security_log
        self.risk_scorer = risk_scorer
        self.clock = clock
        self.replay_window_seconds = replay_window_seconds
        self.slow_threshold = slow_threshold
        self.metrics = _GuardMetrics()

    @property
    def replay_window_ms(self) -> int:
        return int(self.replay_window_seconds * 1000)

    def _expired(self, entry: BlacklistEntry, now_ms: int) -> bool:
        return not entry.is_live(now_ms) or now_ms - entry.blacklisted_at > self.replay_window_ms

    async def _warn_if_slow(self, operation: str, started: float, fingerprint: str) -> float:
        elapsed = self.clock.monotonic() - started
        if elapsed > self.slow_threshold:
            await self.security_log.emit(
                "PERFORMANCE_WARNING",
                "WARN",
                attributes={
                    "operation": operation,
                    "fingerprintPrefix": fingerprint[:8],
                    "elapsedMs": int(elapsed * 1000),
                },
            )
        return elapsed

    async def check(
        self,
        fingerprint: str,
        subject_id: Optional[str] = None,
        client_ip: Optional[str] = None,
        *,
        score_risk: bool = True,
    ) -> ReplayCheck:
        started = self.clock.monotonic()
        self.metrics.checks += 1
        lock_id = f"token_check:{fingerprint}"

        try:
            async with self.locks.hold(lock_id) as acquisition:
                if not acquisition:
                    self.metrics.lock_failures += 1
                    result = ReplayCheck(True, "LOCK_ACQUISITION_FAILED", "HIGH")
                else:
                    result = await self._inspect(fingerprint, subject_id, client_ip)
        except Exception as exc:
            self.metrics.errors += 1
            logger.error(
                "replay_check_failed",
                fingerprint_prefix=fingerprint[:8],
                error=str(exc),
                error_type=type(exc).__name__,
            )
            result = ReplayCheck(True, "SYSTEM_ERROR", "CRITICAL")

        # Scoring runs after the check lock is released
        if not result.blacklisted and score_risk and self.risk_scorer is not None:
            assessment = await self.risk_scorer.score(subject_id, client_ip, fingerprint)
            result.assessment = assessment
            result.risk = assessment.level

        elapsed = await self._warn_if_slow("replay_check", started, fingerprint)
        self.metrics.total_check_ms += elapsed * 1000
        return result

    async def _inspect(
        self, fingerprint: str, subject_id: Optional[str], client_ip: Optional[str]
    ) -> ReplayCheck:
        now_ms = self.clock.now_ms()

        async def _read(txn: Transaction) -> Tuple[Optional[BlacklistEntry], bool]:
            document = await txn.get(TOKEN_BLACKLIST, fingerprint)
            if document is None:
                return None, False
            entry = BlacklistEntry.from_document(document)
            if self._expired(entry, now_ms):
                txn.delete(TOKEN_BLACKLIST, fingerprint)
                return entry, True
            return entry, False

        entry, removed = await self.store.run_transaction(_read)
        if entry is None:
            return ReplayCheck(False, "NOT_BLACKLISTED", "LOW")
        if removed:
            logger.info(
                "expired_token_removed",
                fingerprint_prefix=fingerprint[:8],
                blacklisted_at=entry.blacklisted_at,
            )
            return ReplayCheck(False, "TOKEN_EXPIRED_AND_REMOVED", "LOW")

        self.metrics.replays_detected += 1
        await self.security_log.emit(
            "TOKEN_REPLAY_DETECTED",
            "CRITICAL",
            subject_id=subject_id or entry.subject_id,
            client_ip=client_ip,
            attributes={
                "fingerprintPrefix": fingerprint[:8],
                "blacklistedAt": entry.blacklisted_at,
                "originalReason": entry.reason,
                "issuingNode": entry.issuing_node_id,
            },
        )
        return ReplayCheck(True, "TOKEN_REPLAY_DETECTED", "CRITICAL", since=entry.blacklisted_at)

    async def record(
        self,
        fingerprint: str,
        subject_id: Optional[str],
        reason: str = "TOKEN_CONSUMED",
    ) -> RecordResult:
        started = self.clock.monotonic()
        lock_id = f"token_blacklist:{fingerprint}"
        try:
            async with self.locks.hold(lock_id) as acquisition:
                if not acquisition:
                    self.metrics.lock_failures += 1
                    return RecordResult(False, "LOCK_ACQUISITION_FAILED")
                result = await self._insert(fingerprint, subject_id, reason)
        except Exception as exc:
            self.metrics.errors += 1
            logger.error(
                "replay_record_failed",
                fingerprint_prefix=fingerprint[:8],
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return RecordResult(False, "SYSTEM_ERROR")
        finally:
            await self._warn_if_slow("replay_record", started, fingerprint)

        if result.recorded:
            self.metrics.records += 1
        return result

    async def _insert(
        self, fingerprint: str, subject_id: Optional[str], reason: str
    ) -> RecordResult:
        now_ms = self.clock.now_ms()
        entry = BlacklistEntry(
            fingerprint=fingerprint,
            blacklisted_at=now_ms,
            expires_at=now_ms + self.replay_window_ms,
            subject_id=subject_id,
            reason=reason,
            issuing_node_id=self.locks.node_id,
        )

        async def _write(txn: Transaction) -> bool:
            current = await txn.get(TOKEN_BLACKLIST, fingerprint)
            if current is not None and not self._expired(
                BlacklistEntry.from_document(current), now_ms
            ):
                return False
            txn.set(
                TOKEN_BLACKLIST,
                fingerprint,
                entry.to_document(),
                ttl_seconds=self.replay_window_seconds + STORE_TTL_GRACE_SECONDS,
            )
            return True

        if not await self.store.run_transaction(_write):
            self.metrics.replays_detected += 1
            logger.warning(
                "replay_record_conflict",
                fingerprint_prefix=fingerprint[:8],
                subject_id=subject_id,
            )
            return RecordResult(False, "ALREADY_CONSUMED")
        return RecordResult(True, entry=entry)

    async def health_check(self) -> Dict[str, Any]:
        health_key = f"health_check:{self.locks.node_id}"
        store_ok = False
        lock_ok = False
        try:
            store_ok = await self.store.ping()
            acquisition = await self.locks.acquire(health_key, ttl=1.0)
            lock_ok = acquisition.acquired
            if acquisition:
                await self.locks.release(health_key, acquisition.nonce)
        except Exception as exc:
            logger.warning("replay_guard_health_check_failed", error=str(exc))
        return {
            "status": "healthy" if store_ok and lock_ok else "unhealthy",
            "store": store_ok,
            "locks": lock_ok,
            "replayWindowSeconds": self.replay_window_seconds,
            "nodeId": self.locks.node_id,
            "metrics": self.metrics.snapshot(),
        }
