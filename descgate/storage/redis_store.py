from __future__ import annotations

import math
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from descgate.logging import get_logger
from descgate.storage.common import (
    MAX_TRANSACTION_ATTEMPTS,
    TransactionBody,
    T,
    decode_document,
    encode_document,
    new_document_id,
    stream_timestamp,
)
from descgate.storage.errors import StoreUnavailable, TransactionConflict

logger = get_logger(__name__)

_DELETED = object()


class _RedisTransaction:
    """WATCH-based transaction: keys are watched as they are read."""

    def __init__(self, store: "RedisStore", pipe) -> None:
        self._store = store
        self._pipe = pipe
        self._watched: set[str] = set()
        self.writes: Dict[str, Any] = {}

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        redis_key = self._store._doc_key(collection, key)
        if redis_key in self.writes:
            pending = self.writes[redis_key]
            return None if pending is _DELETED else dict(pending[0])
        if redis_key not in self._watched:
            await self._pipe.watch(redis_key)
            self._watched.add(redis_key)
        return decode_document(await self._pipe.get(redis_key))

    def set(
        self,
        collection: str,
        key: str,
        document: Dict[str, Any],
        *,
        ttl_seconds: Optional[float] = None,
    ) -> None:
        self.writes[self._store._doc_key(collection, key)] = (dict(document), ttl_seconds)

    def delete(self, collection: str, key: str) -> None:
        self.writes[self._store._doc_key(collection, key)] = _DELETED


class RedisStore:
    """Document store on Redis.

    Documents are JSON strings under ``<prefix>:<collection>:<key>``; streams
    are sorted sets scored by the document ``timestamp`` (epoch ms).
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        prefix: str = "descgate",
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _doc_key(self, collection: str, key: str) -> str:
        return f"{self.prefix}:{collection}:{key}"

    def _stream_key(self, collection: str, partition: Optional[str]) -> str:
        return f"{self.prefix}:stream:{collection}:{partition or '_all'}"

    @staticmethod
    def _ttl_ms(ttl_seconds: Optional[float]) -> Optional[int]:
        if ttl_seconds is None:
            return None
        # Redis rejects zero or negative expiries
        return max(1, int(math.ceil(float(ttl_seconds) * 1000)))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the store is used."""
        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        try:
            return decode_document(await self.client.get(self._doc_key(collection, key)))
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable("store read failed", {"collection": collection}) from exc

    async def set(
        self,
        collection: str,
        key: str,
        document: Dict[str, Any],
        *,
        ttl_seconds: Optional[float] = None,
    ) -> None:
        try:
            await self.client.set(
                self._doc_key(collection, key),
                encode_document(document),
                px=self._ttl_ms(ttl_seconds),
            )
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable("store write failed", {"collection": collection}) from exc

    async def delete(self, collection: str, key: str) -> None:
        try:
            await self.client.delete(self._doc_key(collection, key))
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable("store delete failed", {"collection": collection}) from exc

    async def list(self, collection: str, *, limit: int = 100) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        pattern = f"{self.prefix}:{collection}:*"
        try:
            keys = sorted([key async for key in self.client.scan_iter(match=pattern, count=200)])
            for redis_key in keys[:limit]:
                document = decode_document(await self.client.get(redis_key))
                if document is not None:
                    results.append(document)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable("store scan failed", {"collection": collection}) from exc
        return results

    async def append(
        self,
        collection: str,
        document: Dict[str, Any],
        *,
        partition: Optional[str] = None,
    ) -> str:
        doc_id = document.get("id") or new_document_id()
        stored = {**document, "id": doc_id}
        try:
            await self.client.zadd(
                self._stream_key(collection, partition),
                {encode_document(stored): stream_timestamp(stored)},
            )
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable("store append failed", {"collection": collection}) from exc
        return doc_id

    async def recent(
        self,
        collection: str,
        *,
        partition: Optional[str] = None,
        since_ms: Optional[int] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        try:
            members = await self.client.zrevrangebyscore(
                self._stream_key(collection, partition),
                "+inf",
                since_ms if since_ms is not None else "-inf",
                start=0,
                num=max(0, limit),
            )
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable("store range read failed", {"collection": collection}) from exc
        return [doc for doc in (decode_document(member) for member in members) if doc is not None]

    async def trim(
        self, collection: str, *, partition: Optional[str] = None, before_ms: int
    ) -> int:
        try:
            return int(
                await self.client.zremrangebyscore(
                    self._stream_key(collection, partition), "-inf", f"({before_ms}"
                )
            )
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable("store trim failed", {"collection": collection}) from exc

    async def run_transaction(self, body: TransactionBody[T]) -> T:
        for attempt in range(1, MAX_TRANSACTION_ATTEMPTS + 1):
            try:
                async with self.client.pipeline(transaction=True) as pipe:
                    txn = _RedisTransaction(self, pipe)
                    result = await body(txn)
                    pipe.multi()
                    for redis_key, pending in txn.writes.items():
                        if pending is _DELETED:
                            pipe.delete(redis_key)
                        else:
                            pipe.set(
                                redis_key,
                                encode_document(pending[0]),
                                px=self._ttl_ms(pending[1]),
                            )
                    await pipe.execute()
                    return result
            except WatchError:
                logger.debug("transaction_conflict_retry", attempt=attempt)
                continue
            except (RedisConnectionError, RedisTimeoutError) as exc:
                raise StoreUnavailable("store transaction failed") from exc
        raise TransactionConflict(
            "transaction aborted after repeated conflicts",
            {"attempts": MAX_TRANSACTION_ATTEMPTS},
        )

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except (RedisConnectionError, RedisTimeoutError):
            return False

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
