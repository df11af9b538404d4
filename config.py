from typing import List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================
    # Environment
    # =========================
    ENV: str = Field(default="dev")
    LOG_LEVEL: str = "INFO"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # =========================
    # Persistence (tokens, usage ledger, bans, alerts)
    # =========================
    DATABASE_URL: str = ""
    REDIS_URL: str = ""

    # =========================
    # Token issuance
    # =========================
    JWT_SECRET: str = ""
    TOKEN_ISSUER: str = "sentinel-gateway"
    TOKEN_DEFAULT_TTL: str = "30d"
    TOKEN_CACHE_TTL_SECONDS: float = 30.0

    # =========================
    # Rate ceilings
    # =========================
    MAX_REQUESTS_PER_HOUR: int = 1000
    MAX_REQUESTS_PER_DAY: int = 10000

    # No default: the operator must choose how governance degrades
    RATE_LIMIT_DEGRADE_POLICY: Literal["fail_open", "fail_closed"]
    RATE_LIMIT_READ_TIMEOUT_MS: int = 250
    RATE_LIMIT_READ_ATTEMPTS: int = 2

    # =========================
    # Usage ledger writer
    # =========================
    USAGE_QUEUE_MAX_SIZE: int = 1000
    USAGE_QUEUE_OVERFLOW: Literal["drop_newest", "drop_oldest", "block"] = "drop_newest"

    # =========================
    # IP reputation
    # =========================
    AUTO_BLOCK_ENABLED: bool = True
    AUTO_BLOCK_MINUTES: int = 30
    HIGH_SEVERITY_BLOCK_THRESHOLD: int = 5
    HIGH_FREQUENCY_THRESHOLD: int = 100
    ERROR_COUNT_THRESHOLD: int = 20
    ERROR_RATE_THRESHOLD: float = 0.2
    IP_IDLE_EVICTION_HOURS: int = 24
    SWEEP_INTERVAL_SECONDS: float = 300.0

    # =========================
    # Alerts
    # =========================
    ALERT_WEBHOOK_URL: str = ""
    ALERT_COOLDOWN_SECONDS: float = 300.0
    MAX_ALERTS_PER_HOUR: int = 10
    ALERT_SEND_TIMEOUT: float = 3.0

    # =========================
    # HTTP surface
    # =========================
    ADMIN_API_KEY: str = ""
    UPSTREAM_BASE_URL: str = ""
    PUBLIC_PATHS: List[str] = Field(default_factory=list)

    @property
    def is_production(self) -> bool:
        return self.ENV.lower() in ("prod", "production")
