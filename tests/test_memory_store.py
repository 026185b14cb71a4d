"""Unit tests for the in-memory document store.

Tests for:
- Keyed documents with TTL
- Partitioned append-only streams
- Optimistic transactions and conflict retry
"""

import pytest

from descgate.service.clock import FrozenClock
from descgate.storage.common import MAX_TRANSACTION_ATTEMPTS, decode_document, encode_document
from descgate.storage.errors import TransactionConflict
from descgate.storage.memory import MemoryStore


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


class TestDocuments:
    async def test_set_get_delete(self, store):
        await store.set("users", "u1", {"role": "user"})
        assert await store.get("users", "u1") == {"role": "user"}

        await store.delete("users", "u1")
        assert await store.get("users", "u1") is None

    async def test_returned_documents_are_copies(self, store):
        await store.set("users", "u1", {"tags": ["a"]})
        doc = await store.get("users", "u1")
        doc["tags"].append("b")

        assert await store.get("users", "u1") == {"tags": ["a"]}

    async def test_ttl_expires_document(self, store, clock):
        await store.set("locks", "l1", {"nonce": "x"}, ttl_seconds=5)
        clock.advance(4.9)
        assert await store.get("locks", "l1") is not None

        clock.advance(0.2)
        assert await store.get("locks", "l1") is None

    async def test_list_is_sorted_and_limited(self, store):
        for key in ("c", "a", "b"):
            await store.set("users", key, {"k": key})
        await store.set("other", "z", {"k": "z"})

        docs = await store.list("users", limit=2)
        assert [d["k"] for d in docs] == ["a", "b"]


class TestStreams:
    async def test_recent_is_newest_first_with_since_filter(self, store):
        for ts in (100, 300, 200):
            await store.append("observations", {"timestamp": ts}, partition="s1")
        await store.append("observations", {"timestamp": 999}, partition="s2")

        docs = await store.recent("observations", partition="s1", since_ms=150)
        assert [d["timestamp"] for d in docs] == [300, 200]
        assert all("id" in d for d in docs)

    async def test_trim_drops_old_entries(self, store):
        for ts in (100, 200, 300):
            await store.append("observations", {"timestamp": ts}, partition="s1")

        removed = await store.trim("observations", partition="s1", before_ms=250)

        assert removed == 2
        assert [d["timestamp"] for d in await store.recent("observations", partition="s1")] == [300]

    async def test_clear_empties_everything(self, store):
        await store.set("users", "u1", {})
        await store.append("security_events", {"timestamp": 1})
        store.clear()

        assert await store.get("users", "u1") is None
        assert await store.recent("security_events") == []


class TestTransactions:
    async def test_read_your_writes(self, store):
        async def body(txn):
            txn.set("users", "u1", {"count": 1})
            return await txn.get("users", "u1")

        assert await store.run_transaction(body) == {"count": 1}
        assert await store.get("users", "u1") == {"count": 1}

    async def test_conflicting_write_reruns_body(self, store):
        await store.set("users", "u1", {"count": 0})
        attempts = []

        async def body(txn):
            doc = await txn.get("users", "u1")
            if not attempts:
                # Concurrent writer lands between read and commit
                await store.set("users", "u1", {"count": 10})
            attempts.append(doc["count"])
            txn.set("users", "u1", {"count": doc["count"] + 1})

        await store.run_transaction(body)

        assert attempts == [0, 10]
        assert await store.get("users", "u1") == {"count": 11}

    async def test_gives_up_after_repeated_conflicts(self, store):
        await store.set("users", "u1", {"count": 0})
        calls = []

        async def body(txn):
            calls.append(1)
            await txn.get("users", "u1")
            await store.set("users", "u1", {"count": len(calls)})

        with pytest.raises(TransactionConflict):
            await store.run_transaction(body)
        assert len(calls) == MAX_TRANSACTION_ATTEMPTS

    async def test_delete_inside_transaction(self, store):
        await store.set("users", "u1", {"count": 0})

        async def body(txn):
            txn.delete("users", "u1")
            return await txn.get("users", "u1")

        assert await store.run_transaction(body) is None
        assert await store.get("users", "u1") is None


class TestCodec:
    def test_encode_is_stable(self):
        assert encode_document({"b": 1, "a": 2}) == encode_document({"a": 2, "b": 1})

    def test_decode_tolerates_corruption(self):
        assert decode_document("{not json") is None
        assert decode_document("[1, 2]") is None
        assert decode_document(None) is None


def test_frozen_clock_keeps_monotonic_in_step():
    clock = FrozenClock(1000)
    clock.advance(2.5)
    clock.set(1010)

    assert clock.now() == 1010
    assert clock.monotonic() == 10
