from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from descgate.logging import get_logger
from descgate.service.clock import Clock, new_node_id, system_clock, token_hex
from descgate.service.security_log import SecurityLogger
from descgate.storage.common import LOCKS, DocumentStore, Transaction
from descgate.storage.models import DistributedLock

logger = get_logger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 5.0
SLOW_ACQUISITION_SECONDS = 5.0


@dataclass
class LockAcquisition:
    acquired: bool
    lock_id: str
    nonce: Optional[str] = None
    expires_at: Optional[int] = None
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.acquired


class LockManager:
    """Short-lived named locks stored in the document store.

    Acquisition is a single transaction: read the current holder, write a
    fresh nonce when the slot is free or expired, and read it back inside
    the same transaction. A second read after commit confirms the nonce
    survived. There is no internal waiting; callers decide what a failed
    acquisition means (the verification pipeline treats it as fatal).
    """

    def __init__(
        self,
        store: DocumentStore,
        security_log: Optional[SecurityLogger] = None,
        *,
        clock: Clock = system_clock,
        node_id: Optional[str] = None,
        default_ttl: float = DEFAULT_LOCK_TTL_SECONDS,
        slow_threshold: float = SLOW_ACQUISITION_SECONDS,
    ) -> None:
        self.store = store
        self.security_log = security_log
        self.clock = clock
        self.node_id = node_id or new_node_id()
        self.default_ttl = default_ttl
        self.slow_threshold = slow_threshold
        self.logger = logger

    async def acquire(self, lock_id: str, ttl: Optional[float] = None) -> LockAcquisition:
        ttl_seconds = ttl if ttl and ttl > 0 else self.default_ttl
        nonce = token_hex(16)
        started = self.clock.monotonic()

        async def _attempt(txn: Transaction) -> LockAcquisition:
            now_ms = self.clock.now_ms()
            current = await txn.get(LOCKS, lock_id)
            if current is not None:
                existing = DistributedLock.from_document(current)
                if existing.is_live(now_ms):
                    reason = (
                        "HELD_BY_THIS_NODE"
                        if existing.holder_node_id == self.node_id
                        else "HELD_BY_OTHER_NODE"
                    )
                    return LockAcquisition(False, lock_id, reason=reason)
            record = DistributedLock(
                lock_id=lock_id,
                acquired_at=now_ms,
                expires_at=now_ms + int(ttl_seconds * 1000),
                holder_node_id=self.node_id,
                nonce=nonce,
            )
            txn.set(LOCKS, lock_id, record.to_document(), ttl_seconds=ttl_seconds)
            observed = await txn.get(LOCKS, lock_id)
            if observed is None or observed.get("nonce") != nonce:
                return LockAcquisition(False, lock_id, reason="NONCE_MISMATCH")
            return LockAcquisition(True, lock_id, nonce=nonce, expires_at=record.expires_at)

        try:
            result = await self.store.run_transaction(_attempt)
            if result.acquired:
                committed = await self.store.get(LOCKS, lock_id)
                if committed is None or committed.get("nonce") != nonce:
                    result = LockAcquisition(False, lock_id, reason="VERIFICATION_FAILED")
        except Exception as exc:
            self.logger.warning(
                "lock_acquire_failed",
                lock_id=lock_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            result = LockAcquisition(False, lock_id, reason="STORE_ERROR")

        elapsed = self.clock.monotonic() - started
        if elapsed > self.slow_threshold and self.security_log is not None:
            await self.security_log.emit(
                "PERFORMANCE_WARNING",
                "WARN",
                attributes={
                    "operation": "lock_acquire",
                    "lockId": lock_id,
                    "elapsedMs": int(elapsed * 1000),
                },
            )
        if not result.acquired:
            self.logger.info("lock_not_acquired", lock_id=lock_id, reason=result.reason)
        return result

    async def release(self, lock_id: str, nonce: Optional[str] = None) -> None:
        """Best-effort release; errors are logged and never raised.

        When ``nonce`` is given the lock is only removed if it is still the
        one this caller acquired.
        """
        try:
            if nonce is None:
                await self.store.delete(LOCKS, lock_id)
                return

            async def _release(txn: Transaction) -> None:
                current = await txn.get(LOCKS, lock_id)
                if current is not None and current.get("nonce") == nonce:
                    txn.delete(LOCKS, lock_id)

            await self.store.run_transaction(_release)
        except Exception as exc:
            self.logger.warning("lock_release_failed", lock_id=lock_id, error=str(exc))

    @asynccontextmanager
    async def hold(self, lock_id: str, ttl: Optional[float] = None) -> AsyncIterator[LockAcquisition]:
        acquisition = await self.acquire(lock_id, ttl)
        try:
            yield acquisition
        finally:
            if acquisition.acquired:
                await self.release(lock_id, acquisition.nonce)
