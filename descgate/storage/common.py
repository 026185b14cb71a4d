"""Contracts and helpers shared between the memory and redis document stores.

Both backends expose the same async document API: keyed JSON documents
grouped in collections, optional per-document TTL, append-only partitioned
streams ordered by a ``timestamp`` field (epoch milliseconds), and
single-round optimistic transactions.
"""

from __future__ import annotations

import json
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar

T = TypeVar("T")

# Collections
USERS = "users"
TOKEN_BLACKLIST = "token_blacklist"
LOCKS = "locks"
OBSERVATIONS = "observations"
SECURITY_EVENTS = "security_events"
RATE_LIMITS = "rate_limits"
REVOCATIONS = "revocations"
REVOKED_SESSIONS = "revoked_sessions"
ERROR_LOG = "error_log"

# Optimistic transactions retry this many times before giving up
MAX_TRANSACTION_ATTEMPTS = 5


class Transaction(Protocol):
    """Read-your-writes view handed to a transaction body.

    Reads are tracked; if any key read (or written) inside the body is changed
    by another writer before commit, the whole body is re-run.
    """

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]: ...

    def set(
        self,
        collection: str,
        key: str,
        document: Dict[str, Any],
        *,
        ttl_seconds: Optional[float] = None,
    ) -> None: ...

    def delete(self, collection: str, key: str) -> None: ...


TransactionBody = Callable[[Transaction], Awaitable[T]]


class DocumentStore(Protocol):
    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]: ...

    async def set(
        self,
        collection: str,
        key: str,
        document: Dict[str, Any],
        *,
        ttl_seconds: Optional[float] = None,
    ) -> None: ...

    async def delete(self, collection: str, key: str) -> None: ...

    async def list(self, collection: str, *, limit: int = 100) -> List[Dict[str, Any]]: ...

    async def append(
        self,
        collection: str,
        document: Dict[str, Any],
        *,
        partition: Optional[str] = None,
    ) -> str: ...

    async def recent(
        self,
        collection: str,
        *,
        partition: Optional[str] = None,
        since_ms: Optional[int] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]: ...

    async def trim(
        self, collection: str, *, partition: Optional[str] = None, before_ms: int
    ) -> int: ...

    async def run_transaction(self, body: TransactionBody[T]) -> T: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


def new_document_id() -> str:
    return uuid.uuid4().hex


def encode_document(document: Dict[str, Any]) -> str:
    """Serialize a document; keys are sorted so equal documents encode equally."""
    return json.dumps(document, sort_keys=True, separators=(",", ":"), default=str)


def decode_document(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        # Corrupted record - treat as not found
        return None
    return value if isinstance(value, dict) else None


def stream_timestamp(document: Dict[str, Any]) -> int:
    try:
        return int(document.get("timestamp") or 0)
    except (TypeError, ValueError):
        return 0
