from __future__ import annotations

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings

PAWAPAY_SANDBOX_URL = "https://api.sandbox.pawapay.io"
PAWAPAY_PRODUCTION_URL = "https://api.pawapay.io"
DEFAULT_SUBSCRIPTION_CATEGORY_ID = "607d224f-f9ee-44c1-9edf-118d73142ee2"


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    hmac_secret: str = "test-hmac-secret"
    api_key: str = "test-api-key"
    pawapay_ips: list[str] = Field(
        default_factory=lambda: ["127.0.0.1", "testclient"]
    )
    trusted_proxies: list[str] = Field(
        default_factory=lambda: ["127.0.0.1", "testclient"]
    )

    database_url: str = Field("sqlite:////tmp/dulu_test.db", alias="DATABASE_URL")
    db_create_all: bool = Field(False, alias="DB_CREATE_ALL")

    redis_url: str = Field("redis://localhost:6379", alias="REDIS_URL")

    pawapay_api_token: str = Field("test-pawapay-token", alias="PAWAPAY_API_TOKEN")
    pawapay_environment: str = Field("sandbox", alias="PAWAPAY_ENVIRONMENT")
    pawapay_base_url: str | None = Field(
        None,
        alias="PAWAPAY_BASE_URL",
        description="Overrides the URL derived from PAWAPAY_ENVIRONMENT",
    )
    pawapay_timeout: float = Field(15.0, alias="PAWAPAY_TIMEOUT")

    currency: str = Field("XAF", alias="CURRENCY")
    pro_price: int = Field(2500, alias="PRO_PRICE")
    subscription_category_id: str = Field(
        DEFAULT_SUBSCRIPTION_CATEGORY_ID, alias="SUBSCRIPTION_CATEGORY_ID"
    )
    subscription_label: str = Field("Abonnement", alias="SUBSCRIPTION_LABEL")
    extension_floor_to_now: bool = Field(
        False,
        alias="EXTENSION_FLOOR_TO_NOW",
        description="Extend a lapsed subscription from now instead of its old end date",
    )

    poll_interval_s: float = Field(5.0, alias="POLL_INTERVAL_S")
    poll_max_attempts: int = Field(60, alias="POLL_MAX_ATTEMPTS")
    pending_sweep_minutes: int = Field(10, alias="PENDING_SWEEP_MINUTES")

    model_config = ConfigDict(
        extra="ignore",
        env_file=".env",
        case_sensitive=False,
        populate_by_name=True,
    )

    @property
    def pawapay_url(self) -> str:
        if self.pawapay_base_url:
            return self.pawapay_base_url.rstrip("/")
        if self.pawapay_environment.lower() == "production":
            return PAWAPAY_PRODUCTION_URL
        return PAWAPAY_SANDBOX_URL
