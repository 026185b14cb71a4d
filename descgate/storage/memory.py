from __future__ import annotations

import copy
import threading
from typing import Any, Dict, List, Optional, Tuple

from descgate.logging import get_logger
from descgate.service.clock import Clock, system_clock
from descgate.storage.common import (
    MAX_TRANSACTION_ATTEMPTS,
    TransactionBody,
    T,
    new_document_id,
    stream_timestamp,
)
from descgate.storage.errors import TransactionConflict

_Key = Tuple[str, str]
_DELETED = object()


class _MemoryTransaction:
    def __init__(self, store: "MemoryStore") -> None:
        self._store = store
        self.read_versions: Dict[_Key, int] = {}
        self.writes: Dict[_Key, Any] = {}

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        slot = (collection, key)
        if slot in self.writes:
            pending = self.writes[slot]
            return None if pending is _DELETED else copy.deepcopy(pending[0])
        with self._store._data_lock:
            self.read_versions.setdefault(slot, self._store._versions.get(slot, 0))
            return self._store._read(slot)

    def set(
        self,
        collection: str,
        key: str,
        document: Dict[str, Any],
        *,
        ttl_seconds: Optional[float] = None,
    ) -> None:
        self.writes[(collection, key)] = (copy.deepcopy(document), ttl_seconds)

    def delete(self, collection: str, key: str) -> None:
        self.writes[(collection, key)] = _DELETED


class MemoryStore:
    """In-process document store used for tests and single-instance development.

    Documents carry a version counter; transactions record the version of
    every key they read and commit only if none changed in the meantime.
    """

    def __init__(self, *, clock: Clock = system_clock) -> None:
        self.logger = get_logger(__name__)
        self.clock = clock
        self._documents: Dict[_Key, Dict[str, Any]] = {}
        self._expiry: Dict[_Key, float] = {}
        self._versions: Dict[_Key, int] = {}
        self._streams: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
        # RLock for all data operations; transactions re-enter it on commit
        self._data_lock = threading.RLock()

    def _read(self, slot: _Key) -> Optional[Dict[str, Any]]:
        expires_at = self._expiry.get(slot)
        if expires_at is not None and expires_at <= self.clock.now():
            self._documents.pop(slot, None)
            self._expiry.pop(slot, None)
            return None
        document = self._documents.get(slot)
        return copy.deepcopy(document) if document is not None else None

    def _write(self, slot: _Key, document: Dict[str, Any], ttl_seconds: Optional[float]) -> None:
        self._documents[slot] = copy.deepcopy(document)
        if ttl_seconds is not None:
            self._expiry[slot] = self.clock.now() + max(0.0, float(ttl_seconds))
        else:
            self._expiry.pop(slot, None)
        self._versions[slot] = self._versions.get(slot, 0) + 1

    def _remove(self, slot: _Key) -> None:
        self._documents.pop(slot, None)
        self._expiry.pop(slot, None)
        self._versions[slot] = self._versions.get(slot, 0) + 1

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        with self._data_lock:
            return self._read((collection, key))

    async def set(
        self,
        collection: str,
        key: str,
        document: Dict[str, Any],
        *,
        ttl_seconds: Optional[float] = None,
    ) -> None:
        with self._data_lock:
            self._write((collection, key), document, ttl_seconds)

    async def delete(self, collection: str, key: str) -> None:
        with self._data_lock:
            self._remove((collection, key))

    async def list(self, collection: str, *, limit: int = 100) -> List[Dict[str, Any]]:
        with self._data_lock:
            results: List[Dict[str, Any]] = []
            for slot in sorted(k for k in list(self._documents) if k[0] == collection):
                document = self._read(slot)
                if document is not None:
                    results.append(document)
                if len(results) >= limit:
                    break
            return results

    async def append(
        self,
        collection: str,
        document: Dict[str, Any],
        *,
        partition: Optional[str] = None,
    ) -> str:
        doc_id = document.get("id") or new_document_id()
        stored = {**copy.deepcopy(document), "id": doc_id}
        with self._data_lock:
            self._streams.setdefault((collection, partition or "_all"), []).append(stored)
        return doc_id

    async def recent(
        self,
        collection: str,
        *,
        partition: Optional[str] = None,
        since_ms: Optional[int] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        with self._data_lock:
            stream = list(self._streams.get((collection, partition or "_all"), []))
        if since_ms is not None:
            stream = [doc for doc in stream if stream_timestamp(doc) >= since_ms]
        # Newest first; ties keep reverse insertion order
        stream.reverse()
        stream.sort(key=stream_timestamp, reverse=True)
        return copy.deepcopy(stream[: max(0, limit)])

    async def trim(
        self, collection: str, *, partition: Optional[str] = None, before_ms: int
    ) -> int:
        with self._data_lock:
            stream = self._streams.get((collection, partition or "_all"), [])
            kept = [doc for doc in stream if stream_timestamp(doc) >= before_ms]
            removed = len(stream) - len(kept)
            if removed:
                self._streams[(collection, partition or "_all")] = kept
            return removed

    async def run_transaction(self, body: TransactionBody[T]) -> T:
        for attempt in range(1, MAX_TRANSACTION_ATTEMPTS + 1):
            txn = _MemoryTransaction(self)
            result = await body(txn)
            with self._data_lock:
                stale = [
                    slot
                    for slot, version in txn.read_versions.items()
                    if self._versions.get(slot, 0) != version
                ]
                if not stale:
                    for slot, pending in txn.writes.items():
                        if pending is _DELETED:
                            self._remove(slot)
                        else:
                            self._write(slot, pending[0], pending[1])
                    return result
            self.logger.debug(
                "transaction_conflict_retry",
                attempt=attempt,
                keys=[f"{c}/{k}" for c, k in stale],
            )
        raise TransactionConflict(
            "transaction aborted after repeated conflicts",
            {"attempts": MAX_TRANSACTION_ATTEMPTS},
        )

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    def clear(self) -> None:
        with self._data_lock:
            self._documents.clear()
            self._expiry.clear()
            self._versions.clear()
            self._streams.clear()
