import os
from dataclasses import dataclass
from typing import Optional


def _env_bool(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


def _env_int(name: str) -> Optional[int]:
    v = os.getenv(name, "").strip()
    return int(v) if v else None


# ----------------------------
# Config & Constants
# ----------------------------
@dataclass(frozen=True)
class Config:
    database_url: str
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: Optional[int] = None
    gate_backend: str = "pg"          # 'pg' | 'redis'
    redis_url: str = "redis://127.0.0.1:6379"
    gateway: str = "mock"             # 'mock' | 'tokopay'
    tokopay_base_url: str = "https://api.tokopay.id"
    tokopay_merchant_id: str = ""
    tokopay_secret: str = ""
    tokopay_channel: str = "QRIS"
    mock_secret: str = "supersecret"
    payment_fallback_ttl: int = 24 * 3600
    admin_token: str = "dev-admin-token-change-me"
    # HMAC key that reseller access keys are derived from; empty disables
    # reseller pricing and wallet payment over HTTP
    reseller_key_secret: str = ""
    job_max_attempts: int = 3
    fulfillment_batch_size: int = 10
    fulfillment_concurrency: int = 4
    fulfillment_poll_seconds: float = 10.0
    job_lease_seconds: int = 15 * 60
    # order hooks still outstanding after this long are re-run
    hook_retry_seconds: float = 60.0
    run_worker: bool = False
    settings_refresh_seconds: float = 60.0
    email_api_url: str = ""
    email_api_key: str = ""
    email_from: str = "RuangPremium <no-reply@ruangpremium.id>"
    track_base_url: str = ""
    http_timeout: float = 10.0
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls) -> "Config":
        database_url = os.environ.get("DATABASE_URL", None)
        if database_url is None:
            raise RuntimeError("NEED DATABASE_URL!")
        return cls(
            database_url=database_url,
            db_pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
            db_max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            db_pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
            db_gate_limit=_env_int("DB_GATE_LIMIT"),
            gate_backend=os.getenv("GATE_BACKEND", "pg").lower(),
            redis_url=os.getenv("REDIS_URL", "redis://127.0.0.1:6379"),
            gateway=os.getenv("GATEWAY", "mock").lower(),
            tokopay_base_url=os.getenv(
                "TOKOPAY_BASE_URL", "https://api.tokopay.id"
            ),
            tokopay_merchant_id=os.getenv("TOKOPAY_MERCHANT_ID", ""),
            tokopay_secret=os.getenv("TOKOPAY_SECRET", ""),
            tokopay_channel=os.getenv("TOKOPAY_CHANNEL", "QRIS"),
            mock_secret=os.environ.get("MOCK_SECRET", "supersecret"),
            payment_fallback_ttl=int(
                os.getenv("PAYMENT_FALLBACK_TTL", str(24 * 3600))
            ),
            admin_token=os.environ.get(
                "ADMIN_TOKEN", "dev-admin-token-change-me"
            ),
            reseller_key_secret=os.getenv("RESELLER_KEY_SECRET", ""),
            job_max_attempts=int(os.getenv("JOB_MAX_ATTEMPTS", "3")),
            fulfillment_batch_size=int(
                os.getenv("FULFILLMENT_BATCH_SIZE", "10")
            ),
            fulfillment_concurrency=int(
                os.getenv("FULFILLMENT_CONCURRENCY", "4")
            ),
            fulfillment_poll_seconds=float(
                os.getenv("FULFILLMENT_POLL_SECONDS", "10")
            ),
            job_lease_seconds=int(os.getenv("JOB_LEASE_SECONDS", "900")),
            hook_retry_seconds=float(
                os.getenv("HOOK_RETRY_SECONDS", "60")
            ),
            run_worker=_env_bool("RUN_WORKER", "1"),
            settings_refresh_seconds=float(
                os.getenv("SETTINGS_REFRESH_SECONDS", "60")
            ),
            email_api_url=os.getenv("EMAIL_API_URL", ""),
            email_api_key=os.getenv("EMAIL_API_KEY", ""),
            email_from=os.getenv(
                "EMAIL_FROM", "RuangPremium <no-reply@ruangpremium.id>"
            ),
            track_base_url=os.getenv("TRACK_BASE_URL", ""),
            http_timeout=float(os.getenv("HTTP_TIMEOUT", "10")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_json=_env_bool("LOG_JSON"),
        )
