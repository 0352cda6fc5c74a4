from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from functools import lru_cache
from typing import List


class Settings(BaseSettings):
    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")

    # Database - PostgreSQL for production, SQLite for development
    database_url: str = Field(
        default="sqlite:///./safari_bookings.db",
        alias="DATABASE_URL"
    )
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    # Identity provider JWT verification (tokens are issued elsewhere)
    secret_key: str = Field(default="dev-secret-key-at-least-32-characters-long-for-development", alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    jwt_audience: str = Field(default="", alias="JWT_AUDIENCE")
    access_token_expire_minutes: int = 60

    # CORS - Frontend URLs from environment (comma-separated)
    allowed_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173,http://localhost:8080",
        alias="ALLOWED_ORIGINS"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    # ==============================================
    # M-Pesa Daraja (Server-Side Only!)
    # ==============================================
    mpesa_environment: str = Field(default="sandbox", alias="MPESA_ENVIRONMENT")
    mpesa_consumer_key: str = Field(default="", alias="MPESA_CONSUMER_KEY")
    mpesa_consumer_secret: str = Field(default="", alias="MPESA_CONSUMER_SECRET")
    mpesa_shortcode: str = Field(default="174379", alias="MPESA_SHORTCODE")
    mpesa_passkey: str = Field(default="", alias="MPESA_PASSKEY")
    mpesa_callback_url: str = Field(
        default="http://localhost:8000/api/payments/mpesa/callback",
        alias="MPESA_CALLBACK_URL"
    )
    # Shared token appended to the callback URL as ?token=... (optional)
    mpesa_callback_token: str = Field(default="", alias="MPESA_CALLBACK_TOKEN")
    mpesa_timeout_seconds: int = Field(default=30, alias="MPESA_TIMEOUT_SECONDS")

    # ==============================================
    # Booking policy
    # ==============================================
    guest_cancellation_window_hours: int = Field(default=48, alias="GUEST_CANCELLATION_WINDOW_HOURS")
    pending_payment_timeout_minutes: int = Field(default=30, alias="PENDING_PAYMENT_TIMEOUT_MINUTES")

    # Commission percentages
    referral_commission_rate: float = Field(default=5.0, alias="REFERRAL_COMMISSION_RATE")
    platform_referral_commission_rate: float = Field(default=5.0, alias="PLATFORM_REFERRAL_COMMISSION_RATE")

    # Rate limit for booking admission (slowapi syntax)
    booking_rate_limit: str = Field(default="30/minute", alias="BOOKING_RATE_LIMIT")

    # ==============================================
    # Reconciliation runner
    # ==============================================
    reconciliation_max_attempts: int = Field(default=5, alias="RECONCILIATION_MAX_ATTEMPTS")
    reconciliation_retry_base_seconds: int = Field(default=30, alias="RECONCILIATION_RETRY_BASE_SECONDS")

    # Worker settings (runs inside FastAPI process via APScheduler)
    scheduler_enabled: bool = Field(default=True, alias="SCHEDULER_ENABLED")
    worker_poll_interval: int = Field(default=10, alias="WORKER_POLL_INTERVAL")  # seconds
    worker_batch_size: int = Field(default=50, alias="WORKER_BATCH_SIZE")
    sweep_interval_seconds: int = Field(default=300, alias="SWEEP_INTERVAL_SECONDS")

    @field_validator('secret_key')
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        """Validate SECRET_KEY is strong enough"""
        if not v:
            raise ValueError("SECRET_KEY is required and cannot be empty")
        if len(v) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters long")
        return v

    @field_validator('mpesa_environment')
    @classmethod
    def validate_mpesa_environment(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in ("sandbox", "production"):
            raise ValueError("MPESA_ENVIRONMENT must be 'sandbox' or 'production'")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def mpesa_base_url(self) -> str:
        if self.mpesa_environment == "production":
            return "https://api.safaricom.co.ke"
        return "https://sandbox.safaricom.co.ke"

    @property
    def has_mpesa_credentials(self) -> bool:
        """Check if all Daraja credentials are present"""
        return bool(
            self.mpesa_consumer_key and
            self.mpesa_consumer_secret and
            self.mpesa_shortcode and
            self.mpesa_passkey
        )

    @property
    def cors_origins(self) -> List[str]:
        """
        Parse allowed origins from comma-separated string.
        Returns a list suitable for CORSMiddleware.
        """
        if not self.allowed_origins:
            return ["http://localhost:5173"]

        origins = []
        for origin in self.allowed_origins.split(","):
            origin = origin.strip().rstrip("/")
            if origin and origin not in origins:
                origins.append(origin)

        return origins or ["http://localhost:5173"]

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Initialize settings on module load
settings = get_settings()
