"""Tests for one-time credential enforcement."""

import hashlib
from unittest.mock import AsyncMock

import pytest

from descgate.service.locks import LockManager
from descgate.service.replay_guard import ReplayGuard, credential_fingerprint
from descgate.service.risk import RiskScorer
from descgate.service.security_log import SecurityLogger
from descgate.storage.common import TOKEN_BLACKLIST
from descgate.storage.errors import StoreUnavailable
from descgate.storage.memory import MemoryStore

FINGERPRINT = hashlib.sha256(b"jti:abc").hexdigest()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def security_log(store, clock):
    return SecurityLogger(store, clock=clock)


@pytest.fixture
def locks(store, security_log, clock):
    return LockManager(store, security_log, clock=clock, node_id="node-a")


@pytest.fixture
def guard(store, locks, security_log, clock):
    return ReplayGuard(store, locks, security_log, clock=clock, replay_window_seconds=300)


class TestFingerprint:
    def test_prefers_jti(self):
        assert credential_fingerprint(jti="abc", issued_at=1, subject_id="s") == FINGERPRINT

    def test_falls_back_to_issued_at_and_subject(self):
        expected = hashlib.sha256(b"1700000000:user_abcdef1234").hexdigest()
        assert credential_fingerprint(issued_at=1700000000, subject_id="user_abcdef1234") == expected

    def test_requires_some_identifier(self):
        with pytest.raises(ValueError):
            credential_fingerprint(subject_id="user_abcdef1234")


class TestCheck:
    async def test_unknown_fingerprint_is_not_blacklisted(self, guard):
        result = await guard.check(FINGERPRINT, "user_abcdef1234", "10.0.0.1")

        assert not result.blacklisted
        assert result.reason == "NOT_BLACKLISTED"
        assert result.risk == "LOW"

    async def test_check_after_record_detects_replay(self, guard, security_log, clock):
        recorded = await guard.record(FINGERPRINT, "user_abcdef1234")
        assert recorded.recorded

        clock.advance(299)
        result = await guard.check(FINGERPRINT, "user_abcdef1234", "10.0.0.1")

        assert result.blacklisted
        assert result.reason == "TOKEN_REPLAY_DETECTED"
        assert result.risk == "CRITICAL"
        assert result.since == recorded.entry.blacklisted_at
        events = await security_log.recent(event_types=["TOKEN_REPLAY_DETECTED"])
        assert events and events[0].level == "CRITICAL"

    async def test_entry_past_window_is_removed(self, guard, store, clock):
        await guard.record(FINGERPRINT, "user_abcdef1234")
        clock.advance(301)

        result = await guard.check(FINGERPRINT)

        assert not result.blacklisted
        assert result.reason == "TOKEN_EXPIRED_AND_REMOVED"
        assert await store.get(TOKEN_BLACKLIST, FINGERPRINT) is None

    async def test_held_check_lock_fails_secure(self, guard, locks):
        assert await locks.acquire(f"token_check:{FINGERPRINT}")

        result = await guard.check(FINGERPRINT)

        assert result.blacklisted
        assert result.reason == "LOCK_ACQUISITION_FAILED"
        assert guard.metrics.lock_failures == 1

    async def test_store_failure_fails_secure(self, guard, store):
        store.get = AsyncMock(side_effect=StoreUnavailable("down"))
        store.run_transaction = AsyncMock(side_effect=StoreUnavailable("down"))

        result = await guard.check(FINGERPRINT)

        assert result.blacklisted

    async def test_risk_is_scored_when_not_blacklisted(self, store, locks, security_log, clock):
        guard = ReplayGuard(
            store, locks, security_log, risk_scorer=RiskScorer(store, clock=clock), clock=clock
        )

        result = await guard.check(FINGERPRINT, "user_abcdef1234", "10.0.0.1")

        assert result.assessment is not None
        assert result.assessment.factors == ["NO_HISTORICAL_DATA"]
        assert result.risk == "LOW"


class TestRecord:
    async def test_entry_carries_window_and_node(self, guard, store, clock):
        result = await guard.record(FINGERPRINT, "user_abcdef1234")

        document = await store.get(TOKEN_BLACKLIST, FINGERPRINT)
        assert document["expires_at"] - document["blacklisted_at"] == 300_000
        assert document["issuing_node_id"] == "node-a"
        assert document["reason"] == "TOKEN_CONSUMED"
        assert result.entry.subject_id == "user_abcdef1234"

    async def test_second_record_is_refused(self, guard):
        assert (await guard.record(FINGERPRINT, "user_abcdef1234")).recorded

        second = await guard.record(FINGERPRINT, "user_abcdef1234")

        assert not second.recorded
        assert second.reason == "ALREADY_CONSUMED"

    async def test_held_record_lock_refuses(self, guard, locks):
        assert await locks.acquire(f"token_blacklist:{FINGERPRINT}")

        result = await guard.record(FINGERPRINT, "user_abcdef1234")

        assert not result.recorded
        assert result.reason == "LOCK_ACQUISITION_FAILED"

    async def test_record_after_window_succeeds_again(self, guard, clock):
        await guard.record(FINGERPRINT, "user_abcdef1234")
        clock.advance(301)

        assert (await guard.record(FINGERPRINT, "user_abcdef1234")).recorded


class TestHealth:
    async def test_health_check_reports_components(self, guard):
        health = await guard.health_check()

        assert health["status"] == "healthy"
        assert health["store"] is True
        assert health["locks"] is True
        assert health["replayWindowSeconds"] == 300
        assert health["nodeId"] == "node-a"
