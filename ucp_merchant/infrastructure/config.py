"""Application configuration.

Loads settings from environment variables (or a ``.env`` file) with
sensible defaults for local development.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API
    api_version: str = "1.0.0"
    debug: bool = False
    base_url: str = "http://localhost:8000"
    host: str = "0.0.0.0"
    port: int = 8000

    # Merchant
    merchant_id: str = "merchant-demo"
    merchant_name: str = "UCP Demo Merchant"
    supported_currencies: list[str] = Field(default_factory=lambda: ["USD", "EUR", "GBP"])
    supported_countries: list[str] = Field(default_factory=lambda: ["US", "GB", "DE", "FR"])
    session_ttl_minutes: int = 360

    # Storage
    storage_type: Literal["memory", "sql"] = "memory"
    database_url: str = "sqlite+aiosqlite:///./ucp-merchant.db"
    capabilities_ttl_seconds: int = 300

    # Payments
    payment_provider: Literal["simulator", "stripe"] = "simulator"
    stripe_api_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_base_url: str = "https://api.stripe.com"
    payment_timeout_seconds: float = 30.0

    # Request signatures
    signature_enabled: bool = False
    signature_secret: str = "dev-signature-secret-change-in-production"
    signature_max_age_seconds: int = 300

    # Idempotency
    idempotency_required: bool = False
    idempotency_ttl_seconds: int = 86400

    # Rate limiting
    rate_limit_enabled: bool = True
    rate_limit_requests: int = 100
    rate_limit_window_seconds: int = 60
    # Key clients by the first X-Forwarded-For hop; enable only behind a trusted proxy
    rate_limit_trust_forwarded_for: bool = False

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "UCP_",
        "extra": "ignore",
    }


settings = Settings()
