from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_rate_limits() -> dict[str, int]:
    return {"UNKNOWN": 60, "CONSUMER": 120, "PROVIDER": 120, "ADMIN": 600}


class Settings(BaseSettings):
    app_name: str = "homehero-core"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    redis_url: str | None = None

    job_default_max_attempts: int = 8
    job_retry_base_seconds: int = 30
    job_retry_max_seconds: int = 600
    # Running jobs refresh their lock every third of this window.
    job_stale_lock_seconds: int = 300
    worker_id: str | None = None
    worker_poll_interval_seconds: float = 1.0
    worker_max_backoff_seconds: float = 15.0
    worker_batch_size: int = 20
    provider_stats_recompute_hour_utc: int = 4
    payment_sweep_interval_minutes: int = 30
    payment_sweep_lookback_hours: int = 24

    rate_limit_prefix: str = "rl"
    rate_limit_window_seconds: int = 60
    rate_limit_limits: dict[str, int] = Field(default_factory=_default_rate_limits)
    rate_limit_fail_open: bool = True
    rate_limit_trust_forwarded_for: bool = False
    rate_limit_ipv6_prefix: int = 56

    attestation_enforce: bool = False
    allow_unattested_dev: bool = False
    attestation_fail_open: bool = False
    attestation_cache_prefix: str = "attest"
    attestation_failure_limit: int = 25
    attestation_timeout_seconds: float = 5.0
    attestation_public_keys_json: str | None = None
    attestation_public_key_pem: str | None = None
    attestation_jwt_algorithm: str = "RS256"
    attestation_issuer: str | None = None
    attestation_audience: str | None = None
    play_integrity_package_name: str | None = None
    play_integrity_cert_digests: str | None = None
    play_integrity_service_account_json: str | None = None
    play_integrity_max_token_age_seconds: int = 300
    play_integrity_max_future_skew_seconds: int = 60
    play_integrity_allowed_device_verdicts: str = "MEETS_DEVICE_INTEGRITY,MEETS_STRONG_INTEGRITY"
    play_integrity_require_play_recognized: bool = True
    play_integrity_require_licensed: bool = False
    app_attest_bundle_id: str | None = None
    app_attest_allowed_key_ids: str | None = None
    app_attest_verify_url: str | None = None
    app_attest_verify_auth_header: str | None = None
    app_attest_max_token_age_seconds: int = 300
    app_attest_max_future_skew_seconds: int = 60

    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_webhook_tolerance_seconds: int = 300
    payment_currency: str = "usd"

    auth_jwt_secret: str | None = None
    auth_jwt_algorithm: str = "HS256"

    otel_enabled: bool = True
    otel_service_name: str = "homehero-core"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="HH_", extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() in {"prod", "production"}


class StartupConfigurationError(RuntimeError):
    """Raised when settings are unsafe to boot with."""


def validate_startup_settings(settings: Settings) -> None:
    if "UNKNOWN" not in settings.rate_limit_limits:
        raise StartupConfigurationError("HH_RATE_LIMIT_LIMITS must define a limit for UNKNOWN")
    if settings.rate_limit_window_seconds <= 0:
        raise StartupConfigurationError("HH_RATE_LIMIT_WINDOW_SECONDS must be positive")
    if settings.job_default_max_attempts < 1:
        raise StartupConfigurationError("HH_JOB_DEFAULT_MAX_ATTEMPTS must be at least 1")

    if not settings.is_production:
        return

    missing = [
        name
        for name, value in (("HH_DATABASE_URL", settings.database_url), ("HH_REDIS_URL", settings.redis_url))
        if not value
    ]
    if missing:
        raise StartupConfigurationError(f"missing required production settings: {', '.join(missing)}")

    if settings.attestation_enforce:
        has_verifier = any(
            [
                settings.play_integrity_package_name,
                settings.app_attest_bundle_id,
                settings.attestation_public_keys_json,
                settings.attestation_public_key_pem,
            ]
        )
        if not has_verifier:
            raise StartupConfigurationError("attestation enforcement requires at least one configured verifier")


@lru_cache
def get_settings() -> Settings:
    return Settings()
