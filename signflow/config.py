"""Application configuration from environment."""
from pathlib import Path

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings
from functools import lru_cache

# Load .env from project root (parent of signflow/) so env vars are available everywhere
_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=_env_path)


class Settings(BaseSettings):
    app_name: str = "SignFlow"
    app_env: str = "development"
    debug: bool = True

    database_url: str = "sqlite:///./signflow.db"

    # Public origin used for signing, verification and download links
    base_url: str = "http://localhost:3000"

    @field_validator("base_url")
    @classmethod
    def strip_base_url(cls, v: str) -> str:
        return (v or "").strip().rstrip("/")

    signature_default_ttl_days: int = 7
    signing_token_ttl_hours: int = 24

    signature_sweep_enabled: bool = True
    signature_sweep_interval_minutes: int = 15

    webhook_timeout_seconds: float = 5.0
    notification_max_workers: int = 4

    sendgrid_api_key: str = ""
    sendgrid_from_email: str = "noreply@signflow.local"
    sendgrid_from_name: str = "SignFlow"

    mailgun_api_key: str = ""
    mailgun_domain: str = ""
    mailgun_base_url: str = "https://api.mailgun.net"
    mailgun_from_email: str = "noreply@signflow.local"
    mailgun_from_name: str = "SignFlow"

    @field_validator("mailgun_api_key", "mailgun_domain", "mailgun_base_url", "mailgun_from_email", mode="before")
    @classmethod
    def strip_mailgun(cls, v: str) -> str:
        return (v or "").strip()

    class Config:
        env_file = str(_env_path)
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    return Settings()
