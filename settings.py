from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """All configuration is loaded from .env or environment variables, once, at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", frozen=True, extra="ignore")

    # Database
    database_url: str = "sqlite+aiosqlite:///./dealshield.db"

    # CORS + redirect targets
    frontend_origin: str = ""

    # Object storage (S3 compatible)
    storage_endpoint_url: str = ""
    storage_access_key: str = ""
    storage_secret_key: str = ""
    storage_bucket: str = "deal-files"
    storage_region: str = "us-east-1"
    upload_url_ttl_seconds: int = 3600
    read_url_ttl_seconds: int = 600

    # Gemini
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    upstream_timeout_seconds: float = 30.0

    # Stripe
    stripe_secret_key: str = ""
    stripe_price_id: str = ""
    stripe_webhook_secret: str = ""
    unlock_price_label: str = "$19.99"

    # Brevo
    brevo_api_key: str = ""
    brevo_sender_email: str = ""
    brevo_sender_name: str = "Deal Shield"

    # Auth
    admin_password: str = ""
    admin_email: str = "admin@dealshield.pro"
    otp_ttl_minutes: int = 15
    access_token_minutes: int = 60
    refresh_token_days: int = 30

    log_level: str = "INFO"

    @property
    def frontend_url(self) -> str:
        return (self.frontend_origin or "http://localhost:3000").rstrip("/")

    @property
    def cors_origins(self) -> list[str]:
        return [self.frontend_origin] if self.frontend_origin else ["*"]
