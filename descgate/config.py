from __future__ import annotations

import json
import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from descgate.logging import get_logger

logger = get_logger(__name__)


class IdpMode(str, Enum):
    """How identity-provider credentials are verified."""

    JWKS = "jwks"
    SHARED_SECRET = "shared_secret"


DEFAULT_TIER_LIMITS: dict[str, int | None] = {
    "free": 5,
    "starter": 50,
    "professional": 200,
    "enterprise": None,
}

MIN_REPLAY_WINDOW_SECONDS = 60
MAX_REPLAY_WINDOW_SECONDS = 15 * 60


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the access-control service."""

    # Identity provider
    idp_project_id: str = env_field("descgate-local", "IDP_PROJECT_ID")
    idp_mode: IdpMode = env_field(IdpMode.JWKS, "IDP_MODE")
    idp_jwks_url: str = env_field(
        "https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com",
        "IDP_JWKS_URL",
    )
    idp_issuer_prefix: str = env_field("https://securetoken.google.com/", "IDP_ISSUER_PREFIX")
    idp_shared_secret: str | None = env_field(
        None,
        "IDP_SHARED_SECRET",
        description="HS256 secret used instead of JWKS in development and tests",
    )
    idp_jwks_cache_seconds: int = env_field(3600, "IDP_JWKS_CACHE_SECONDS")

    # Cross-domain sessions
    session_signing_key: str = env_field(None, "SESSION_SIGNING_KEY", validate_default=True)
    session_ttl_seconds: int = env_field(3600, "SESSION_TTL_SECONDS")
    session_rotation_seconds: int = env_field(
        1800,
        "SESSION_ROTATION_SECONDS",
        description="Session age after which verify issues a fresh token",
    )
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")

    # HTTP surface
    allowed_origins: list[str] = env_field(
        ["http://localhost:3000"], "ALLOWED_ORIGINS"
    )
    allowed_countries: list[str] = env_field([], "ALLOWED_COUNTRIES")
    rate_limit_per_minute: int = env_field(30, "RATE_LIMIT_PER_MINUTE")

    # Verification pipeline
    replay_window_seconds: int = env_field(300, "REPLAY_WINDOW_SECONDS")
    operation_timeout_seconds: float = env_field(5.0, "OPERATION_TIMEOUT_SECONDS")
    lock_ttl_seconds: float = env_field(5.0, "LOCK_TTL_SECONDS")
    max_session_age_seconds: int = env_field(24 * 3600, "MAX_SESSION_AGE_SECONDS")
    max_credential_age_seconds: int = env_field(3600, "MAX_CREDENTIAL_AGE_SECONDS")
    require_strong_authentication: bool = env_field(
        False,
        "REQUIRE_STRONG_AUTHENTICATION",
        description="Reject password sign-ins that lack an mfa_enabled claim",
    )

    # Authorization
    tier_limits: dict[str, int | None] = env_field(
        dict(DEFAULT_TIER_LIMITS), "TIER_LIMITS_JSON"
    )
    operation_permissions: dict[str, list[str]] = env_field({}, "OPERATION_PERMISSIONS_JSON")
    trust_role_claims: bool = env_field(False, "TRUST_ROLE_CLAIMS")

    # Logging
    security_log_level: str = env_field("INFO", "SECURITY_LOG_LEVEL")

    # Storage
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    state_dir: str = env_field("/var/lib/descgate", "STATE_DIR")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-memory fallbacks.",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def idp_issuer(self) -> str:
        return f"{self.idp_issuer_prefix}{self.idp_project_id}"

    def config_issues(self) -> list[str]:
        """Settings that are accepted but weaken the deployment."""
        issues = []
        if not self.allowed_origins:
            issues.append("no_allowed_origins")
        if any(origin == "*" for origin in self.allowed_origins):
            issues.append("wildcard_allowed_origin")
        if self.rate_limit_per_minute <= 0:
            issues.append("rate_limit_disabled")
        if self.session_rotation_seconds >= self.session_ttl_seconds:
            issues.append("session_rotation_after_expiry")
        if not self.test_mode:
            if self.idp_mode == IdpMode.SHARED_SECRET:
                issues.append("shared_secret_idp_outside_test_mode")
            if self.allow_redis_fallback_dev:
                issues.append("redis_fallback_enabled")
        return issues

    @field_validator("idp_mode")
    @classmethod
    def _validate_idp_mode(cls, value: IdpMode) -> IdpMode:
        return IdpMode(value)

    @field_validator("allowed_origins", "allowed_countries", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("allowed_countries")
    @classmethod
    def _normalize_countries(cls, value: list[str]) -> list[str]:
        return [country.upper() for country in value]

    @field_validator("tier_limits", mode="before")
    @classmethod
    def _parse_tier_limits(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = json.loads(value) if value.strip() else {}
        if isinstance(value, dict):
            merged = dict(DEFAULT_TIER_LIMITS)
            merged.update({str(k).lower(): v for k, v in value.items()})
            return merged
        return value

    @field_validator("operation_permissions", mode="before")
    @classmethod
    def _parse_permissions(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value) if value.strip() else {}
        return value

    @field_validator("replay_window_seconds")
    @classmethod
    def _clamp_replay_window(cls, value: int) -> int:
        if value < MIN_REPLAY_WINDOW_SECONDS or value > MAX_REPLAY_WINDOW_SECONDS:
            clamped = max(MIN_REPLAY_WINDOW_SECONDS, min(MAX_REPLAY_WINDOW_SECONDS, value))
            logger.warning(
                "replay_window_clamped", requested=value, applied=clamped
            )
            return clamped
        return value

    @field_validator("operation_timeout_seconds", "lock_ttl_seconds")
    @classmethod
    def _positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @field_validator("session_signing_key", mode="before")
    @classmethod
    def _ensure_signing_key(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated key so session cookies survive restarts
        state_root = Path(os.getenv("STATE_DIR", "/var/lib/descgate"))
        key_path = state_root / ".session_signing_key"

        try:
            state_root.mkdir(parents=True, exist_ok=True)
            os.chmod(state_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "signing_key_dir_setup",
                error=str(exc),
                path=str(state_root),
                message="Could not set directory permissions",
            )

        if key_path.exists() and not key_path.is_symlink():
            try:
                persisted = key_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "signing_key_read_failed", error=str(exc), path=str(key_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_root), prefix=".session_signing_key_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(key_path))
        except OSError as exc:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "signing_key_persist_failed", error=str(exc), path=str(key_path)
            )
            raise RuntimeError(
                "Unable to persist session signing key; set SESSION_SIGNING_KEY or make STATE_DIR writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
