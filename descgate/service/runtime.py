from __future__ import annotations

import asyncio
import math
import threading
from typing import Optional, Tuple
from urllib.parse import urlparse, urlunparse

from descgate.config import Settings, get_settings, reset_settings_cache
from descgate.logging import get_logger
from descgate.service.authorization import AuthorizationGate
from descgate.service.clock import Clock, system_clock
from descgate.service.error_responder import ErrorResponder
from descgate.service.identity import JWTIdentityProvider
from descgate.service.locks import LockManager
from descgate.service.products import InMemoryProductCatalog, TemplateDescriptionGenerator
from descgate.service.replay_guard import ReplayGuard
from descgate.service.risk import RiskScorer
from descgate.service.security_log import SecurityLogger
from descgate.service.session_broker import SessionBroker
from descgate.service.verifier import CredentialVerifier
from descgate.storage.common import RATE_LIMITS, DocumentStore, Transaction
from descgate.storage.memory import MemoryStore
from descgate.storage.models import RateLimitBucket
from descgate.storage.redis_store import RedisStore

logger = get_logger(__name__)

RATE_LIMIT_WINDOW_SECONDS = 60


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


def _build_store(settings: Settings, clock: Clock) -> DocumentStore:
    if settings.use_memory_store:
        logger.info("runtime_store_initialized", store_type="memory")
        return MemoryStore(clock=clock)

    redis_error: Exception | None = None
    try:
        store = RedisStore(settings.redis_url, socket_timeout=settings.operation_timeout_seconds)
        store.verify_connection()
        logger.info("runtime_store_initialized", store_type="redis")
        return store
    except Exception as exc:
        redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for replay protection, locks and rate limits across replicas; "
            "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error),
        message=(
            f"Running without Redis under {fallback_mode}; replay protection and rate limits "
            "hold for this process only."
        ),
        mode=fallback_mode,
    )
    return MemoryStore(clock=clock)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        store: Optional[DocumentStore] = None,
        clock: Clock = system_clock,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            idp_mode=self.settings.idp_mode.value,
        )

        self.store = store if store is not None else _build_store(self.settings, clock)
        self.security_log = SecurityLogger(
            self.store, clock=clock, min_level=self.settings.security_log_level
        )
        self.locks = LockManager(
            self.store,
            self.security_log,
            clock=clock,
            default_ttl=self.settings.lock_ttl_seconds,
            slow_threshold=self.settings.operation_timeout_seconds,
        )
        self.risk = RiskScorer(self.store, clock=clock)
        self.replay_guard = ReplayGuard(
            self.store,
            self.locks,
            self.security_log,
            risk_scorer=self.risk,
            clock=clock,
            replay_window_seconds=self.settings.replay_window_seconds,
            slow_threshold=self.settings.operation_timeout_seconds,
        )
        self.identity_provider = JWTIdentityProvider(self.settings, self.store, clock=clock)
        self.verifier = CredentialVerifier(
            self.settings,
            self.identity_provider,
            self.replay_guard,
            self.security_log,
            risk_scorer=self.risk,
            clock=clock,
        )
        self.responder = ErrorResponder(self.store, self.security_log, clock=clock)
        self.gate = AuthorizationGate(
            self.store, self.security_log, self.settings, clock=clock, responder=self.responder
        )
        self.sessions = SessionBroker(
            self.settings, self.verifier, self.security_log, self.store, clock=clock
        )
        self.catalog = InMemoryProductCatalog()
        self.generator = TemplateDescriptionGenerator()

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            replay_window_seconds=self.settings.replay_window_seconds,
            rate_limit_per_minute=self.settings.rate_limit_per_minute,
            allowed_origins=len(self.settings.allowed_origins),
        )

    async def close(self) -> None:
        await self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime
    exists; the slow path re-checks under the lock before creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(**kwargs) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.store, RedisStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.close())
            except RuntimeError:
                asyncio.run(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings=settings, **kwargs)
        return runtime


async def check_rate_limit(
    store: DocumentStore,
    key: str,
    limit: int,
    *,
    clock: Clock = system_clock,
    window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
) -> Tuple[bool, int, int]:
    """Count one request against ``key`` and report (allowed, remaining, retry_after).

    The bucket lives in the shared store so the limit holds across replicas.
    The bucket is a log of request timestamps; only those inside the trailing
    ``window_seconds`` count. If the store cannot be reached the request is
    denied.
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = RATE_LIMIT_WINDOW_SECONDS
    window_ms = window_seconds * 1000

    async def _count(txn: Transaction) -> Tuple[bool, int, int]:
        now_ms = clock.now_ms()
        document = await txn.get(RATE_LIMITS, key)
        bucket = RateLimitBucket.from_document(document) if document else RateLimitBucket(client_key=key)
        bucket.timestamps = sorted(ts for ts in bucket.timestamps if ts > now_ms - window_ms)
        if len(bucket.timestamps) >= limit:
            # Denied requests are not recorded
            oldest = bucket.timestamps[-limit]
            retry_after = max(1, math.ceil((oldest + window_ms - now_ms) / 1000))
            return False, 0, retry_after
        bucket.timestamps.append(now_ms)
        txn.set(RATE_LIMITS, key, bucket.to_document(), ttl_seconds=window_seconds)
        return True, limit - len(bucket.timestamps), 0

    try:
        return await store.run_transaction(_count)
    except Exception as exc:
        logger.error("rate_limit_store_unavailable", key=key, error=str(exc))
        return False, 0, window_seconds
