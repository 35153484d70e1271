"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version (format: a.bc.de - major.feature.patch)
    VERSION: str = "0.01.00"

    # Database
    DATABASE_URL: str = "sqlite+pysqlite:///./mailgraph.db"

    # Google OAuth (used by the token provider to refresh access tokens)
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_TOKEN_URL: str = "https://oauth2.googleapis.com/token"

    # Gmail push (users.watch -> Pub/Sub -> /webhooks/google-gmail)
    GMAIL_PUSH_TOPIC: str = ""  # projects/<project>/topics/<topic>
    GMAIL_PUSH_LABEL_IDS: str = ""  # comma-separated, empty = all mail
    GMAIL_PUSH_VERIFICATION_TOKEN: str = ""  # shared token on the push subscription URL
    GMAIL_PUSH_TEST_MODE: bool = False  # Set to True only for local testing (accepts unverified pushes)

    # Gmail API client
    GMAIL_API_BASE_URL: str = "https://gmail.googleapis.com/gmail/v1/users/me"
    GMAIL_HTTP_TIMEOUT_SECONDS: float = 30.0
    GMAIL_RATE_LIMIT_PER_SECOND: float = 10.0  # token bucket refill, per account
    GMAIL_RATE_LIMIT_BURST: int = 20
    GMAIL_DEFAULT_RETRY_AFTER_SECONDS: int = 30
    GMAIL_FETCH_CONCURRENCY: int = 5

    # Sync windows
    SYNC_PAGE_SIZE: int = 100
    SYNC_INITIAL_WINDOW_DAYS: int = 30
    SYNC_BACKFILL_WINDOW_DAYS: int = 90
    SYNC_BACKFILL_HORIZON_DAYS: int = 3650
    SYNC_BACKFILL_YIELD_SECONDS: int = 30

    # Job queue
    JOB_LEASE_SECONDS: int = 300
    JOB_DEFAULT_MAX_ATTEMPTS: int = 5
    JOB_RETRY_BASE_DELAY: float = 10.0
    JOB_RETRY_MAX_DELAY: float = 3600.0
    JOB_RETRY_JITTER: float = 0.5  # fraction of the base delay, 0..1
    JOB_MAX_RATE_LIMIT_HITS: int = 50

    # Contact stats
    STATS_DEBOUNCE_SECONDS: int = 60

    # Worker
    WORKER_CONCURRENCY: int = 4
    WORKER_POLL_INTERVAL: float = 2.0
    WORKER_JOB_TYPES: str = ""  # comma-separated filter, empty = all
    WORKER_LEASE_SWEEP_SECONDS: int = 30

    # Inbound rate limiting (slowapi)
    RATE_LIMIT_WEBHOOK_PER_MINUTE: int = 600  # 0 disables
    RATE_LIMIT_STORAGE_URI: str = "memory://"

    # Internal scheduled endpoints (cron jobs)
    INTERNAL_SECRET: str = ""  # Secret for /internal/scheduled/* endpoints

    # Contact enrichment (optional third-party lookup)
    ENRICHMENT_API_URL: str = ""
    ENRICHMENT_API_KEY: str = ""
    ENRICHMENT_TIMEOUT_SECONDS: float = 10.0

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    @property
    def gmail_push_label_ids(self) -> list[str]:
        """Parse GMAIL_PUSH_LABEL_IDS into a de-duplicated list."""
        out: list[str] = []
        for item in self.GMAIL_PUSH_LABEL_IDS.split(","):
            token = item.strip()
            if token and token not in out:
                out.append(token)
        return out

    @property
    def sentry_enabled(self) -> bool:
        """Sentry only reports outside dev."""
        return bool(self.SENTRY_DSN) and self.ENV != "dev"


settings = Settings()
