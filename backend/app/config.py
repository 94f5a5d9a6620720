"""Configuration settings for the ZeroMiles backend."""

from datetime import timedelta
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

from zeromiles.config import LoanConfig, get_zeromiles_home


class Settings(BaseSettings):
    """Application settings loaded from environment (``ZEROMILES_*``)."""

    # Storage
    database_path: str | None = None  # Defaults to $ZEROMILES_HOME/loans.db

    # Operator access (refunds, maintenance). Unset disables those routes.
    operator_token: str | None = None

    # Settlement policy
    default_chain: str = "osmosis"
    poll_interval: float = 10.0
    backoff_multiplier: float = 1.0
    max_poll_interval: float = 300.0
    max_verification_attempts: int | None = None
    max_claim_age_minutes: float = 60.0
    verify_timeout: float = 30.0

    # Only these peers may set X-Forwarded-For
    trusted_proxy_cidrs: list[str] = [
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "127.0.0.0/8",
        "::1/128",
    ]

    # App
    debug: bool = False
    # CORS: Allowed origins for cross-origin requests
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    class Config:
        env_prefix = "ZEROMILES_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model

    @property
    def db_path(self) -> Path:
        if self.database_path:
            return Path(self.database_path)
        return get_zeromiles_home() / "loans.db"

    def loan_config(self) -> LoanConfig:
        """Settlement config; chain endpoint overrides still come from the environment."""
        return LoanConfig.from_env(
            default_chain=self.default_chain,
            poll_interval=self.poll_interval,
            backoff_multiplier=self.backoff_multiplier,
            max_poll_interval=self.max_poll_interval,
            max_verification_attempts=self.max_verification_attempts,
            max_claim_age=timedelta(minutes=self.max_claim_age_minutes),
            verify_timeout=self.verify_timeout,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
