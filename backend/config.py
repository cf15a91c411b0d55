from pydantic_settings import BaseSettings
from pathlib import Path


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"  # development | test | staging | production
    APP_NAME: str = "ProteinLens"
    LOG_LEVEL: str = "INFO"
    EXPOSE_ERROR_DETAILS: bool = False
    DATABASE_URL: str = "sqlite:///data/proteinlens.db"
    DATA_DIR: Path = Path("data")
    FRONTEND_URL: str = "https://www.proteinlens.com"
    CORS_ORIGINS: list[str] = [
        "http://localhost:5173",
        "https://www.proteinlens.com",
    ]

    # Signing keys are validated lazily by auth.tokens, not at startup.
    JWT_SECRET: str | None = None
    JWT_SECRET_PREVIOUS: str | None = None
    JWT_ALGORITHM: str = "HS256"
    JWT_ISSUER: str = "proteinlens"
    JWT_AUDIENCE: str = "proteinlens-api"
    ACCESS_TOKEN_MINUTES: int = 15
    REFRESH_TOKEN_DAYS: int = 7
    EMAIL_VERIFICATION_HOURS: int = 24
    PASSWORD_RESET_HOURS: int = 1
    PASSWORD_BREACH_CHECK_ENABLED: bool = True

    STORAGE_BUCKET: str | None = None
    STORAGE_REGION: str = "us-east-1"
    STORAGE_ENDPOINT: str | None = None
    STORAGE_ACCESS_KEY_ID: str | None = None
    STORAGE_SECRET_ACCESS_KEY: str | None = None
    UPLOAD_URL_EXPIRY_SECONDS: int = 600
    READ_URL_EXPIRY_SECONDS: int = 900
    PUBLIC_IMAGE_URL_EXPIRY_SECONDS: int = 86400
    MAX_UPLOAD_SIZE_MB: int = 8

    AI_ENDPOINT: str | None = None
    AI_API_KEY: str | None = None
    AI_DEPLOYMENT: str = "gpt-5.1-vision"
    AI_API_VERSION: str = "2024-02-15-preview"
    AI_MAX_RETRIES: int = 3
    AI_RETRY_BASE_DELAY_SECONDS: float = 1.0
    AI_TIMEOUT_SECONDS: int = 60
    AI_HEALTH_TIMEOUT_SECONDS: int = 5

    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_PRICE_MONTHLY: str | None = None
    STRIPE_PRICE_ANNUAL: str | None = None

    SMTP_HOST: str | None = None
    SMTP_PORT: int = 587
    SMTP_USER: str | None = None
    SMTP_PASSWORD: str | None = None
    MAIL_FROM: str = "noreply@proteinlens.com"
    MAIL_FROM_NAME: str = "ProteinLens"

    FREE_SCANS_PER_WEEK: int = 20
    ROLLING_WINDOW_DAYS: int = 7
    GRACE_PERIOD_DAYS: int = 5

    RATE_LIMIT_AUTH_SIGNIN_ATTEMPTS: int = 10
    RATE_LIMIT_AUTH_SIGNIN_WINDOW_SECONDS: int = 300
    RATE_LIMIT_AUTH_SIGNUP_ATTEMPTS: int = 5
    RATE_LIMIT_AUTH_SIGNUP_WINDOW_SECONDS: int = 600

    SECURITY_HEADERS_ENABLED: bool = True
    SECURITY_CSP: str = "default-src 'none'; frame-ancestors 'none'; base-uri 'none';"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def is_production_like(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() in {"production", "prod", "staging"}

    @property
    def exposes_dev_tokens(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() in {"development", "dev", "test"}

    def validate_security_configuration(self) -> None:
        if not self.is_production_like:
            return

        errors: list[str] = []
        if self.EXPOSE_ERROR_DETAILS:
            errors.append("EXPOSE_ERROR_DETAILS must be false in production-like environments")
        if not self.STORAGE_BUCKET:
            errors.append("STORAGE_BUCKET must be configured")
        if not self.AI_ENDPOINT or not self.AI_API_KEY:
            errors.append("AI_ENDPOINT and AI_API_KEY must be configured")
        if self.STRIPE_SECRET_KEY and not self.STRIPE_WEBHOOK_SECRET:
            errors.append("STRIPE_WEBHOOK_SECRET is required when Stripe is enabled")
        if errors:
            joined = "; ".join(errors)
            raise RuntimeError(f"Insecure production configuration: {joined}")


settings = Settings()
settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
