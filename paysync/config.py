"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (StripeConfig, PaymobConfig, SweeperConfig, ...) are
env-overridable via the double-underscore delimiter, e.g.:
    STRIPE__WEBHOOK_SECRET=whsec_...
    PAYMOB__HMAC_SECRET=...
    SWEEPER__INTERVAL_SECONDS=900

Every group is frozen: the settings object is built once at startup and handed
to the gateway adapters and services, never mutated afterwards.
"""

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StripeConfig(BaseModel):
    """Stripe (card processor) credentials and price mapping."""

    model_config = ConfigDict(frozen=True)

    secret_key: str = ""
    webhook_secret: str = ""
    # Seconds of clock skew accepted on the Stripe-Signature timestamp
    signature_tolerance_seconds: int = 300
    price_pro_monthly: str = ""
    price_pro_yearly: str = ""
    price_team_monthly: str = ""
    price_team_yearly: str = ""
    price_enterprise_monthly: str = ""
    price_enterprise_yearly: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.webhook_secret)


class PayTabsConfig(BaseModel):
    """PayTabs (MENA regional gateway) credentials."""

    model_config = ConfigDict(frozen=True)

    profile_id: str = ""
    server_key: str = ""
    region: str = "ARE"

    @property
    def configured(self) -> bool:
        return bool(self.profile_id and self.server_key)


class PaymobConfig(BaseModel):
    """Paymob (Egypt regional gateway) credentials."""

    model_config = ConfigDict(frozen=True)

    secret_key: str = ""
    hmac_secret: str = ""
    currency: str = "EGP"

    @property
    def configured(self) -> bool:
        return bool(self.hmac_secret)


class PaddleConfig(BaseModel):
    """Paddle Billing credentials."""

    model_config = ConfigDict(frozen=True)

    api_key: str = ""
    webhook_secret: str = ""
    environment: Literal["sandbox", "production"] = "sandbox"

    @property
    def configured(self) -> bool:
        return bool(self.webhook_secret)

    @property
    def api_base_url(self) -> str:
        if self.environment == "production":
            return "https://api.paddle.com"
        return "https://sandbox-api.paddle.com"


class SweeperConfig(BaseModel):
    """Expiration sweeper schedule.

    Env-overridable via SWEEPER__KEY format, e.g.:
        SWEEPER__ENABLED=false
        SWEEPER__INTERVAL_SECONDS=900
    """

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    interval_seconds: int = 3600
    batch_limit: int = 500


class RedirectConfig(BaseModel):
    """Browser landing pages for hosted-checkout returns."""

    model_config = ConfigDict(frozen=True)

    success_url: str = "http://localhost:3000/pricing?success=true"
    failure_url: str = "http://localhost:3000/pricing?error=payment_failed"


class TablesConfig(BaseModel):
    """Supabase table / function names."""

    model_config = ConfigDict(frozen=True)

    subscriptions: str = "subscriptions"
    webhook_events: str = "webhook_events"
    storage_quota: str = "storage_quota"
    accounts: str = "accounts"
    adjust_storage_fn: str = "adjust_storage_used"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
        frozen=True,
    )

    # Supabase
    supabase_url: str = ""
    supabase_secret_key: str = ""

    # "memory" keeps everything in-process (tests, local runs)
    storage_backend: Literal["memory", "supabase"] = "memory"

    # Version tag of the static plan table loaded at startup
    plans_version: str = "2024-06"

    # Bound on outbound gateway calls (remote cancel / resume)
    remote_call_timeout_seconds: float = 10.0
    # A `processing` idempotency claim older than this is considered abandoned
    processing_lease_seconds: int = 300
    # Compare-and-swap retries before giving up with a 5xx
    max_apply_attempts: int = 3

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:3000"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    stripe: StripeConfig = Field(default_factory=StripeConfig)
    paytabs: PayTabsConfig = Field(default_factory=PayTabsConfig)
    paymob: PaymobConfig = Field(default_factory=PaymobConfig)
    paddle: PaddleConfig = Field(default_factory=PaddleConfig)
    sweeper: SweeperConfig = Field(default_factory=SweeperConfig)
    redirects: RedirectConfig = Field(default_factory=RedirectConfig)
    tables: TablesConfig = Field(default_factory=TablesConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
