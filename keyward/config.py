from __future__ import annotations

import json
import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from keyward.logging import get_logger

logger = get_logger(__name__)


class ConfigurationError(RuntimeError):
    """Raised at startup when required configuration is missing or invalid."""


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str | None = env_field(None, "DATABASE_URL")
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/keyward", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-process fallbacks.",
    )
    build_sha: str = env_field("dev", "BUILD_SHA")

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("keyward", "JWT_ISSUER")
    jwt_audience: str = env_field("keyward-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(60 * 24 * 14, "REFRESH_TOKEN_TTL_MINUTES")
    mfa_ticket_ttl_seconds: int = env_field(300, "MFA_TICKET_TTL_SECONDS")

    # Credentials
    allow_registration: bool = env_field(True, "ALLOW_REGISTRATION")
    hash_workers: int = env_field(4, "HASH_WORKERS")
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD")
    lockout_window_seconds: int = env_field(15 * 60, "LOCKOUT_WINDOW_SECONDS")
    lockout_duration_seconds: int = env_field(15 * 60, "LOCKOUT_DURATION_SECONDS")

    # MFA
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP secrets at rest; defaults to JWT_SECRET.",
    )
    totp_issuer: str | None = env_field(None, "TOTP_ISSUER")
    totp_period_seconds: int = env_field(30, "TOTP_PERIOD_SECONDS")
    totp_digits: int = env_field(6, "TOTP_DIGITS")
    totp_drift_steps: int = env_field(1, "TOTP_DRIFT_STEPS")
    webauthn_rp_id: str | None = env_field(None, "WEBAUTHN_RP_ID")
    webauthn_rp_name: str = env_field("Keyward", "WEBAUTHN_RP_NAME")
    webauthn_origin: str | None = env_field(None, "WEBAUTHN_ORIGIN")
    webauthn_challenge_ttl_seconds: int = env_field(120, "WEBAUTHN_CHALLENGE_TTL_SECONDS")
    mfa_enrollment_ttl_seconds: int = env_field(600, "MFA_ENROLLMENT_TTL_SECONDS")
    mfa_max_attempts: int = env_field(5, "MFA_MAX_ATTEMPTS")
    mfa_lockout_seconds: int = env_field(300, "MFA_LOCKOUT_SECONDS")
    enrollment_cleanup_interval_seconds: int = env_field(300, "ENROLLMENT_CLEANUP_INTERVAL_SECONDS")

    # Anomaly policy
    anomaly_weight_new_ip: int = env_field(20, "ANOMALY_WEIGHT_NEW_IP")
    anomaly_weight_new_device: int = env_field(20, "ANOMALY_WEIGHT_NEW_DEVICE")
    anomaly_weight_new_country: int = env_field(25, "ANOMALY_WEIGHT_NEW_COUNTRY")
    anomaly_weight_impossible_travel: int = env_field(40, "ANOMALY_WEIGHT_IMPOSSIBLE_TRAVEL")
    anomaly_weight_per_failure: int = env_field(6, "ANOMALY_WEIGHT_PER_FAILURE")
    anomaly_failure_cap: int = env_field(5, "ANOMALY_FAILURE_CAP")
    anomaly_step_up_threshold: int = env_field(30, "ANOMALY_STEP_UP_THRESHOLD")
    anomaly_deny_threshold: int = env_field(80, "ANOMALY_DENY_THRESHOLD")
    anomaly_max_travel_kmh: float = env_field(900.0, "ANOMALY_MAX_TRAVEL_KMH")
    anomaly_history_size: int = env_field(20, "ANOMALY_HISTORY_SIZE")

    # Geolocation
    geoip_url: str | None = env_field(
        None,
        "GEOIP_URL",
        description="Lookup URL template containing '{ip}', e.g. http://ip-api.com/json/{ip}",
    )
    geoip_timeout_seconds: float = env_field(2.0, "GEOIP_TIMEOUT_SECONDS")
    geo_static_map: dict[str, dict[str, Any]] = env_field(
        {},
        "GEO_STATIC_MAP",
        description="JSON object mapping IPs or CIDR ranges to {country, lat, lon}.",
    )
    trust_forwarded_for: bool = env_field(False, "TRUST_FORWARDED_FOR")

    # Audit pipeline
    audit_write_retries: int = env_field(3, "AUDIT_WRITE_RETRIES")
    audit_retry_backoff_ms: int = env_field(50, "AUDIT_RETRY_BACKOFF_MS")
    audit_subscriber_buffer: int = env_field(256, "AUDIT_SUBSCRIBER_BUFFER")
    audit_export_batch_size: int = env_field(500, "AUDIT_EXPORT_BATCH_SIZE")
    audit_max_page_size: int = env_field(200, "AUDIT_MAX_PAGE_SIZE")
    audit_stream_recheck_seconds: float = env_field(30.0, "AUDIT_STREAM_RECHECK_SECONDS")

    # Rate limits
    login_rate_limit_per_minute: int = env_field(20, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(5, "REGISTER_RATE_LIMIT_PER_MINUTE")
    refresh_rate_limit_per_minute: int = env_field(60, "REFRESH_RATE_LIMIT_PER_MINUTE")
    mfa_rate_limit_per_minute: int = env_field(20, "MFA_RATE_LIMIT_PER_MINUTE")

    # HTTP
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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

    @field_validator("geo_static_map", mode="before")
    @classmethod
    def _parse_geo_map(cls, value: Any) -> Any:
        if isinstance(value, str):
            if not value.strip():
                return {}
            try:
                return json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError("GEO_STATIC_MAP must be a JSON object") from exc
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("anomaly_deny_threshold")
    @classmethod
    def _deny_above_step_up(cls, value: int, info) -> int:
        step_up = info.data.get("anomaly_step_up_threshold")
        if step_up is not None and value <= step_up:
            raise ValueError("ANOMALY_DENY_THRESHOLD must exceed ANOMALY_STEP_UP_THRESHOLD")
        return value

    @field_validator("hash_workers", "audit_subscriber_buffer", "lockout_threshold")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be at least 1")
        return value

    def validate_required(self) -> None:
        """Fail fast when signing material or relying-party settings are missing."""

        missing = []
        if not self.jwt_secret:
            missing.append("JWT_SECRET")
        elif len(self.jwt_secret) < 32:
            raise ConfigurationError("JWT_SECRET must be at least 32 characters")
        if not self.totp_issuer:
            missing.append("TOTP_ISSUER")
        if not self.webauthn_rp_id:
            missing.append("WEBAUTHN_RP_ID")
        if not self.webauthn_origin:
            missing.append("WEBAUTHN_ORIGIN")
        if not self.use_memory_store and not self.database_url:
            missing.append("DATABASE_URL")
        if missing:
            logger.error("config_missing_required", missing=missing)
            raise ConfigurationError(
                "missing required configuration: {}".format(", ".join(missing))
            )


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
