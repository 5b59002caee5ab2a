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
    DATABASE_URL: str = "sqlite:///./carepipeline.db"

    # CORS
    CORS_ORIGINS: str = "http://localhost:5173"

    # Internal scheduled endpoints (cron jobs)
    INTERNAL_SECRET: str = ""  # Secret for /internal/scheduled/* endpoints

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Rate Limiting (requests per minute)
    RATE_LIMIT_WEBHOOK: int = 100  # Inbound SMS + intake webhooks
    RATE_LIMIT_API: int = 60  # General API

    # RingCentral (SMS delivery + message-store history)
    RINGCENTRAL_API_URL: str = "https://platform.ringcentral.com"
    RINGCENTRAL_CLIENT_ID: str = ""
    RINGCENTRAL_CLIENT_SECRET: str = ""
    RINGCENTRAL_JWT_TOKEN: str = ""
    RINGCENTRAL_FROM_NUMBER: str = ""

    # Resend (email delivery)
    RESEND_API_KEY: str = ""
    RESEND_FROM_EMAIL: str = ""
    DEFAULT_EMAIL_SUBJECT: str = "Message from Tremendous Care"

    # Outbound delivery
    PROVIDER_TIMEOUT_SECONDS: float = 15.0
    BULK_SEND_DELAY_SECONDS: float = 0.2  # Fixed gap between batch sends
    BULK_RATE_LIMIT_BACKOFF_SECONDS: float = 2.0  # Extra wait after a 429

    # Automation engine
    AUTOMATION_MAX_WAIT_SECONDS: float = 8.0  # Bounded wait before responding
    AUTOMATION_WORKERS: int = 4
    NOTE_APPEND_MAX_ATTEMPTS: int = 3

    # Communication timeline: provider events this close to a local note are duplicates
    TIMELINE_DEDUP_WINDOW_SECONDS: int = 120

    # Intake defaults
    INTAKE_DEFAULT_CLIENT_PHASE: str = "new_lead"
    INTAKE_DEFAULT_CAREGIVER_PHASE: str = "intake"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def ringcentral_configured(self) -> bool:
        return bool(
            self.RINGCENTRAL_CLIENT_ID
            and self.RINGCENTRAL_CLIENT_SECRET
            and self.RINGCENTRAL_JWT_TOKEN
        )


settings = Settings()
