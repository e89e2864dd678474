"""Application configuration utilities."""
from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", description="Root logger level")
    json_logs: bool = Field(default=True, description="Enable JSON formatted logs")


class Settings(BaseSettings):
    """Central application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=(Path(__file__).resolve().parent.parent / ".env"),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    app_name: str = Field(default="stablepay")
    environment: Literal["development", "staging", "production"] = Field(default="development")
    api_key: str = Field(default="dev-secret-key")
    database_url: str = Field(default="sqlite+aiosqlite:///./stablepay.db")
    allowed_origins: list[str] = Field(default_factory=lambda: ["*"])

    backend_url: str = Field(default="http://localhost:3001")
    backend_api_key: str = Field(default="dev-backend-key", validation_alias=AliasChoices("STABLEPAY_BACKEND_API_KEY", "BACKEND_API_KEY"))
    conversion_url: str = Field(default="http://localhost:3000/api/conversion/inr-to-usd")
    interpret_url: str = Field(default="http://localhost:8000/v1/scans")
    payout_url: str = Field(default="http://localhost:3000/api/payouts/initiate")
    treasury_address: str = Field(default="0x0000000000000000000000000000000000000000")
    default_chain_id: int = Field(default=421614)

    max_fiat_amount: Decimal = Field(default=Decimal("25000"), gt=0)
    supported_currency: str = Field(default="INR", min_length=3, max_length=3)
    scan_retry_delay_ms: int = Field(default=500, ge=50, le=10_000)
    max_qr_length: int = Field(default=2048, ge=64)
    payout_remarks_max_length: int = Field(default=20, ge=4, le=50)
    request_timeout_seconds: float = Field(default=15.0, gt=0)

    logging: LoggingConfig = Field(default_factory=LoggingConfig)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return memoized application settings."""

    return Settings()


settings = get_settings()
