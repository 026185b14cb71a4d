from __future__ import annotations

import asyncio
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from descgate.api.error_handling import register_exception_handlers
from descgate.api.gatekeeper import gatekeeper_middleware
from descgate.api.routes import router
from descgate.config import IdpMode
from descgate.logging import get_logger, set_correlation_id
from descgate.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup environment checks and store shutdown."""
    runtime = get_runtime()
    checks = {
        "session_signing": bool(runtime.settings.session_signing_key),
        "allowed_origins": bool(runtime.settings.allowed_origins),
        "store": await runtime.store.ping(),
    }
    if runtime.settings.idp_mode == IdpMode.JWKS:
        try:
            await runtime.identity_provider.ensure_jwks_available()
            checks["jwks"] = True
        except Exception as exc:
            logger.error("startup_jwks_unavailable", error=str(exc))
            checks["jwks"] = False
    for issue in runtime.settings.config_issues():
        await runtime.security_log.log_config_issue(issue)
    await runtime.security_log.log_environment_check(checks, version=__version__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="descgate", version=__version__, lifespan=lifespan)

# Registered first so it runs inside the correlation-id middleware
app.middleware("http")(gatekeeper_middleware)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Take X-Request-ID from the client (or generate one) and echo it back."""
    supplied = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(
        supplied if supplied and _REQUEST_ID_RE.match(supplied) else None
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store reachability, replay-guard health and verifier metrics."""
    runtime = get_runtime()
    checks: Dict[str, Any] = {}

    try:
        store_ok = await asyncio.wait_for(runtime.store.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        store_ok = False
    checks["store"] = {"status": "healthy" if store_ok else "unhealthy", "type": type(runtime.store).__name__}

    verifier = await runtime.verifier.health_check()
    checks["verifier"] = verifier

    healthy = store_ok and verifier.get("status") == "healthy"
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
