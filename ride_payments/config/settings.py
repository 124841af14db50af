"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ride_payments.core.enums import Provider

MTN_PRODUCTION_URL = "https://api.mtn.cm"
MTN_SANDBOX_URL = "https://sandbox.momodeveloper.mtn.com"
ORANGE_BASE_URL = "https://api-s1.orange.cm/omcoreapis/1.0.2/"
ORANGE_TOKEN_URL = "https://api-s1.orange.cm/token"
PAWAPAY_PRODUCTION_URL = "https://api.pawapay.io"
PAWAPAY_SANDBOX_URL = "https://api.sandbox.pawapay.io"


class ProviderConfig(BaseModel):
    """
    Read-only connection settings for a single provider.

    Adapters only ever see their own ProviderConfig, never the full Settings.
    """

    model_config = ConfigDict(frozen=True)

    provider: Provider
    base_url: str
    callback_url: Optional[str] = None
    payout_callback_url: Optional[str] = None
    refund_callback_url: Optional[str] = None
    credentials: Dict[str, str] = Field(default_factory=dict)
    sandbox: bool = True
    reliable_callbacks: bool = True
    currency: str = "XAF"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(..., description="Async SQLAlchemy database URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration (idempotency cache, optional)
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL")
    idempotency_cache_ttl: int = Field(
        default=86400, description="Idempotency cache TTL (seconds)"
    )

    # Application Configuration
    app_name: str = Field(default="ride-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Routing
    use_aggregator: bool = Field(
        default=False, description="Route every transaction through pawaPay"
    )
    default_currency: str = Field(default="XAF", description="Default ISO currency code")

    # MTN MoMo
    mtn_environment: str = Field(default="sandbox", description="sandbox or production")
    mtn_base_url: Optional[str] = Field(default=None, description="Override MTN API base URL")
    mtn_collection_subscription_key: str = Field(default="", description="Collection primary key")
    mtn_collection_user_id: str = Field(default="", description="Collection API user")
    mtn_collection_api_key: str = Field(default="", description="Collection API key")
    mtn_disbursement_subscription_key: str = Field(
        default="", description="Disbursement primary key"
    )
    mtn_disbursement_user_id: str = Field(default="", description="Disbursement API user")
    mtn_disbursement_api_key: str = Field(default="", description="Disbursement API key")
    mtn_callback_url: Optional[str] = Field(default=None, description="Collection callback URL")
    mtn_payout_callback_url: Optional[str] = Field(
        default=None, description="Disbursement callback URL"
    )
    mtn_refund_callback_url: Optional[str] = Field(
        default=None, description="Refund callback URL (collection callback if unset)"
    )
    mtn_webhook_secret: Optional[str] = Field(
        default=None, description="HMAC secret for X-MTN-Signature verification"
    )

    # Orange Money
    orange_environment: str = Field(default="sandbox", description="sandbox or production")
    orange_base_url: str = Field(default=ORANGE_BASE_URL, description="Orange Money API base URL")
    orange_token_url: str = Field(default=ORANGE_TOKEN_URL, description="Orange OAuth token URL")
    orange_consumer_key: str = Field(default="", description="OAuth consumer key")
    orange_consumer_secret: str = Field(default="", description="OAuth consumer secret")
    orange_api_username: str = Field(default="", description="X-AUTH-TOKEN username")
    orange_api_password: str = Field(default="", description="X-AUTH-TOKEN password")
    orange_pin_code: str = Field(default="", description="Channel user PIN")
    orange_merchant_number: str = Field(default="", description="Channel user MSISDN")
    orange_callback_url: Optional[str] = Field(default=None, description="Notification URL")
    orange_reliable_callbacks: bool = Field(
        default=False, description="Whether Orange notifications can be relied upon"
    )

    # pawaPay
    pawapay_environment: str = Field(default="sandbox", description="sandbox or production")
    pawapay_api_token: str = Field(default="", description="pawaPay bearer token")
    pawapay_callback_url: Optional[str] = Field(default=None, description="pawaPay callback URL")

    # Provider transport
    provider_request_timeout: float = Field(
        default=30.0, description="Per-request timeout for provider calls (seconds)"
    )
    circuit_breaker_failure_threshold: int = Field(
        default=5, description="Consecutive transport failures before a provider circuit opens"
    )
    circuit_breaker_timeout: int = Field(
        default=60, description="Seconds before an open provider circuit is tried again"
    )

    # Payout retries
    payout_max_retries: int = Field(default=3, description="Retry ceiling per payout")
    payout_retry_cooldown_seconds: int = Field(
        default=300, description="Minimum gap between payout retries (seconds)"
    )

    # Driver payout fees (percentages are given as 1.5 for 1.5%)
    transaction_fee_rate: Decimal = Field(
        default=Decimal("0"), ge=0, le=100, description="Transaction fee, percent of the fare"
    )
    transaction_fee_fixed: Decimal = Field(
        default=Decimal("0"), ge=0, description="Flat transaction fee per payout"
    )
    commission_rate: Decimal = Field(
        default=Decimal("0"), ge=0, le=100, description="Platform commission, percent of the fare"
    )

    # Polling and reconciliation
    poll_ceiling_seconds: float = Field(
        default=300.0, description="Wall-clock limit for client-side polling"
    )
    reconciliation_interval_seconds: int = Field(
        default=300, description="Pause between reconciliation sweeps"
    )
    reconciliation_stale_after_seconds: int = Field(
        default=300, description="Age after which in-flight records are re-checked"
    )
    reconciliation_batch_size: int = Field(default=100, description="Records per sweep and kind")

    # Notifications
    notification_url: Optional[str] = Field(
        default=None, description="HTTP endpoint receiving user notifications"
    )

    # Provider status tokens added on top of the built-in vocabularies,
    # e.g. {"orange": {"completed": ["SUCCESSFULL"]}}
    status_vocabulary_overrides: Dict[str, Dict[str, List[str]]] = Field(
        default_factory=dict, description="Extra provider status tokens"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("mtn_environment", "orange_environment", "pawapay_environment")
    @classmethod
    def validate_provider_environment(cls, v: str) -> str:
        """Validate provider environment names."""
        if v.lower() not in ("sandbox", "production"):
            raise ValueError("Provider environment must be 'sandbox' or 'production'")
        return v.lower()

    @field_validator("default_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        if len(v) != 3:
            raise ValueError("Currency must be a 3-letter code")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    def provider_configs(self) -> Dict[Provider, ProviderConfig]:
        """
        Build the per-provider configuration structs.

        Returns:
            Dict[Provider, ProviderConfig]: One entry per supported provider
        """
        mtn_sandbox = self.mtn_environment == "sandbox"
        pawapay_sandbox = self.pawapay_environment == "sandbox"

        return {
            Provider.MTN: ProviderConfig(
                provider=Provider.MTN,
                base_url=self.mtn_base_url
                or (MTN_SANDBOX_URL if mtn_sandbox else MTN_PRODUCTION_URL),
                callback_url=self.mtn_callback_url,
                payout_callback_url=self.mtn_payout_callback_url,
                refund_callback_url=self.mtn_refund_callback_url,
                credentials={
                    "collection_subscription_key": self.mtn_collection_subscription_key,
                    "collection_user_id": self.mtn_collection_user_id,
                    "collection_api_key": self.mtn_collection_api_key,
                    "disbursement_subscription_key": self.mtn_disbursement_subscription_key,
                    "disbursement_user_id": self.mtn_disbursement_user_id,
                    "disbursement_api_key": self.mtn_disbursement_api_key,
                },
                sandbox=mtn_sandbox,
                reliable_callbacks=True,
                currency="EUR" if mtn_sandbox else self.default_currency,
            ),
            Provider.ORANGE: ProviderConfig(
                provider=Provider.ORANGE,
                base_url=self.orange_base_url,
                callback_url=self.orange_callback_url,
                payout_callback_url=self.orange_callback_url,
                credentials={
                    "token_url": self.orange_token_url,
                    "consumer_key": self.orange_consumer_key,
                    "consumer_secret": self.orange_consumer_secret,
                    "api_username": self.orange_api_username,
                    "api_password": self.orange_api_password,
                    "pin_code": self.orange_pin_code,
                    "merchant_number": self.orange_merchant_number,
                },
                sandbox=self.orange_environment == "sandbox",
                reliable_callbacks=self.orange_reliable_callbacks,
                currency=self.default_currency,
            ),
            Provider.PAWAPAY: ProviderConfig(
                provider=Provider.PAWAPAY,
                base_url=PAWAPAY_SANDBOX_URL if pawapay_sandbox else PAWAPAY_PRODUCTION_URL,
                callback_url=self.pawapay_callback_url,
                payout_callback_url=self.pawapay_callback_url,
                credentials={"api_token": self.pawapay_api_token},
                sandbox=pawapay_sandbox,
                reliable_callbacks=True,
                currency=self.default_currency,
            ),
        }


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
