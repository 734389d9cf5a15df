import os
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Database / Redis
    DATABASE_URL: str = "postgresql://localhost:5432/integrations"
    REDIS_URL: str = "redis://localhost:6379/0"

    # Auth (JWT issued by the identity provider in front of the gateway)
    AUTH_JWKS_URL: str | None = None
    AUTH_AUDIENCE: str | None = None
    AUTH_ALGORITHMS: str = "RS256"

    ENCRYPTION_KEY: str | None = None

    # OAuth callbacks land on /connections/oauth/callback under this base URL
    OAUTH_REDIRECT_BASE_URL: str = "http://localhost:8000"
    OAUTH_STATE_TTL_SECONDS: int = 300

    # Provider family credentials: <FAMILY>_CLIENT_ID / <FAMILY>_CLIENT_SECRET
    GOOGLE_CLIENT_ID: str | None = None
    GOOGLE_CLIENT_SECRET: str | None = None
    MICROSOFT_CLIENT_ID: str | None = None
    MICROSOFT_CLIENT_SECRET: str | None = None
    MICROSOFT_TENANT: str = "common"
    LINKEDIN_CLIENT_ID: str | None = None
    LINKEDIN_CLIENT_SECRET: str | None = None

    # Token refresh
    TOKEN_REFRESH_WINDOW_MINUTES: int = 5
    TOKEN_REFRESH_LOCK_TIMEOUT_SECONDS: float = 30.0

    # Outbox
    EVENT_STREAM_NAME: str = "domain-events"
    EVENT_STREAM_MAXLEN: int = 100_000
    OUTBOX_BATCH_SIZE: int = 50
    OUTBOX_POLL_INTERVAL_SECONDS: float = 1.0
    OUTBOX_LEASE_SECONDS: int = 60
    OUTBOX_BASE_BACKOFF_SECONDS: float = 2.0
    OUTBOX_MAX_BACKOFF_SECONDS: float = 300.0

    # ATS sync queue
    SYNC_BATCH_SIZE: int = 10
    SYNC_POLL_INTERVAL_SECONDS: float = 5.0
    SYNC_LEASE_SECONDS: int = 300
    SYNC_DEFAULT_MAX_RETRIES: int = 3
    SYNC_RETRY_BASE_SECONDS: float = 30.0
    SYNC_RETRY_MAX_SECONDS: float = 3600.0

    # Retention
    OUTBOX_RETENTION_DAYS: int = 7
    SYNC_QUEUE_RETENTION_DAYS: int = 30
    CLEANUP_ENABLED: bool = True
    CLEANUP_SCHEDULE_HOUR: int = 2  # UTC

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 3
    DB_POOL_MAX_SIZE: int = 12
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def oauth_redirect_uri(self) -> str:
        """Callback URI registered with every OAuth provider."""
        base = self.OAUTH_REDIRECT_BASE_URL.rstrip("/")
        return f"{base}/connections/oauth/callback"

    def client_credentials(self, family: str) -> tuple[str | None, str | None]:
        """
        Resolve <FAMILY>_CLIENT_ID / <FAMILY>_CLIENT_SECRET for a provider family.

        Families without a declared field (new ATS platforms) are read straight
        from the process environment.
        """
        prefix = family.upper()
        client_id = getattr(self, f"{prefix}_CLIENT_ID", None) or os.getenv(f"{prefix}_CLIENT_ID")
        client_secret = getattr(self, f"{prefix}_CLIENT_SECRET", None) or os.getenv(
            f"{prefix}_CLIENT_SECRET"
        )
        return client_id, client_secret

    def get_data_retention_config(self) -> dict:
        """Retention windows and cleanup schedule. Cleanup never runs in development."""
        return {
            "outbox_retention_days": self.OUTBOX_RETENTION_DAYS,
            "sync_queue_retention_days": self.SYNC_QUEUE_RETENTION_DAYS,
            "cleanup_enabled": self.CLEANUP_ENABLED and self.environment != "development",
            "cleanup_schedule_hour": self.CLEANUP_SCHEDULE_HOUR,
        }

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            # More conservative for local development
            config.update(
                {
                    "min_size": 2,
                    "max_size": 6,
                    "timeout": 15.0,
                }
            )

        return config


settings = Settings()
