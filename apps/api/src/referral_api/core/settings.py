from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./referrals.db"
    api_base_url: str = "http://localhost:8000"

    # Reward job pipeline
    reward_worker_enabled: bool = False
    reward_poll_interval_seconds: int = 60
    reward_batch_size: int = 10
    reward_job_max_attempts: int = 5
    reward_job_stale_lock_seconds: int = 300
    reward_backoff_base_seconds: float = 5.0
    reward_backoff_max_seconds: float = 300.0
    reward_tick_error_budget: int = 3

    # Referral program amounts
    referral_signup_bonus_cents: int = 1000
    referral_reward_cents: int = 1000
    referral_currency: str = "USD"
    referral_code_max_probes: int = 10
    referral_url_base: str | None = None

    @field_validator("referral_currency", mode="before")
    @classmethod
    def _normalize_currency(cls, value: object) -> str:
        if not value:
            return "USD"
        return str(value).strip().upper()

    # Square gift card API (value store)
    square_access_token: str = ""
    square_environment: Literal["sandbox", "production"] = "sandbox"
    square_location_id: str = ""
    square_api_version: str = "2024-10-17"
    square_timeout_seconds: float = 15.0

    # Square webhook verification
    square_webhook_signature_key: str = ""
    square_webhook_notification_url: str = ""

    # Operator + cron access
    operator_api_key: str = ""
    cron_secret: str = ""

    # Email / notification settings
    sendgrid_api_key: str | None = None
    sendgrid_sender_email: str | None = None
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    smtp_sender_email: str | None = None

    # Wallet passes are built elsewhere; only the public URL is derived here
    wallet_pass_base_url: str | None = None

    @property
    def square_base_url(self) -> str:
        if self.square_environment == "production":
            return "https://connect.squareup.com"
        return "https://connect.squareupsandbox.com"

    @property
    def referral_link_base(self) -> str:
        if self.referral_url_base:
            return self.referral_url_base.rstrip("/")
        return f"{self.api_base_url.rstrip('/')}/ref"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
