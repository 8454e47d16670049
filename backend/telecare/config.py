from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List
import os


class Settings(BaseSettings):
    """Global app settings loaded from environment.
    - Keep defaults light for dev.
    - Override via .env or real env vars.
    """

    APP_NAME: str = "telecare_api"
    APP_ENV: str = "development"  # development | production
    APP_DEBUG: bool = False

    MONGODB_URI: str = "mongodb://localhost:27017/telecare"

    # JWT settings
    ACCESS_TOKEN_SECRET: str = "telecare-dev-access-secret"
    REFRESH_TOKEN_SECRET: str = "telecare-dev-refresh-secret"
    # Email-verification and password-reset tokens; falls back to the access secret
    ACTION_TOKEN_SECRET: str | None = None
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7
    EMAIL_VERIFY_TOKEN_EXPIRE_HOURS: int = 24
    PASSWORD_RESET_TOKEN_EXPIRE_MINUTES: int = 30
    TOKEN_CLOCK_SKEW_SECONDS: int = 30

    # Account security
    BCRYPT_ROUNDS: int = 12
    MAX_FAILED_LOGINS: int = 5
    ACCOUNT_LOCK_MINUTES: int = 15
    EMAIL_COOLDOWN_SECONDS: int = 60
    REQUIRE_EMAIL_VERIFICATION: bool = False
    # Unknown login identifiers are reported as bad credentials
    STRICT_LOGIN_ERRORS: bool = True
    INVALIDATE_SESSIONS_ON_PASSWORD_CHANGE: bool = True

    FRONTEND_URL: str = "http://localhost:3000"

    # Raw CORS string from env (comma-separated); parsed via cors_origins property
    CORS_ORIGINS: str | None = None

    RATE_LIMIT_ENABLED: bool = True

    # SMTP (email gateway is disabled when SMTP_HOST is empty)
    SMTP_HOST: str | None = None
    SMTP_PORT: int = 587
    SMTP_USE_TLS: bool = True
    EMAIL_USER: str | None = None
    EMAIL_PASS: str | None = None
    EMAIL_FROM: str = "noreply@telecare.local"
    EMAIL_FROM_NAME: str = "Telecare"
    SMTP_POOL_SIZE: int = 5
    SMTP_MAX_MESSAGES: int = 100

    # SMS provider config (dummy | twilio)
    SMS_PROVIDER: str = "dummy"
    TWILIO_ACCOUNT_SID: str | None = None
    TWILIO_AUTH_TOKEN: str | None = None
    TWILIO_FROM_NUMBER: str | None = None

    # Firebase Admin SDK service account
    FIREBASE_CREDENTIALS_FILE: str | None = None

    # Per-call channel timeouts (seconds)
    EMAIL_TIMEOUT_SECONDS: float = 10.0
    SMS_TIMEOUT_SECONDS: float = 5.0
    PUSH_TIMEOUT_SECONDS: float = 5.0

    NOTIFICATION_MAX_RETRIES: int = 3
    NOTIFICATION_RETRY_BACKOFF_MINUTES: int = 5
    NOTIFICATION_JOB_INTERVAL_SECONDS: int = 60

    LOG_DIR: str = "logs"

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def cors_origins(self) -> List[str]:
        """Return CORS origins as a list, parsing comma-separated env string."""
        raw = self.CORS_ORIGINS or os.getenv("CORS_ORIGINS", "") or ""
        return [o.strip() for o in raw.split(",") if o.strip()]

    @property
    def is_production(self) -> bool:
        return self.APP_ENV.lower() == "production"

    @property
    def action_token_secret(self) -> str:
        return self.ACTION_TOKEN_SECRET or self.ACCESS_TOKEN_SECRET


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
