"""Central environment-driven settings shared by the ledger and billing services.

Each service process loads this once at startup. Service-specific behavior is
controlled by environment variables (see `.env.example`).
"""

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PlanConfig(BaseModel):
    """Static limits and grants for one subscription plan."""

    periodic_credit_grant: int = Field(ge=0)
    credit_limit: int = Field(ge=0)
    api_call_limit: int = Field(ge=0)
    price_cents: int = Field(default=0, ge=0)


class CreditPackage(BaseModel):
    """One-time credit top-up sold through checkout."""

    credits: int = Field(gt=0)
    price_cents: int = Field(gt=0)


DEFAULT_PLANS: dict[str, PlanConfig] = {
    "free": PlanConfig(periodic_credit_grant=0, credit_limit=100, api_call_limit=1_000),
    "starter": PlanConfig(periodic_credit_grant=2_500, credit_limit=500, api_call_limit=5_000, price_cents=4_900),
    "pro": PlanConfig(periodic_credit_grant=10_000, credit_limit=2_000, api_call_limit=25_000, price_cents=14_900),
    "enterprise": PlanConfig(
        periodic_credit_grant=50_000, credit_limit=10_000, api_call_limit=100_000, price_cents=49_900
    ),
}

DEFAULT_CREDIT_PACKAGES: dict[str, CreditPackage] = {
    "small": CreditPackage(credits=100, price_cents=499),
    "medium": CreditPackage(credits=500, price_cents=1_999),
    "large": CreditPackage(credits=2_000, price_cents=6_999),
    "xlarge": CreditPackage(credits=5_000, price_cents=14_999),
}


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    postgres_dsn: str
    api_key: str
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    rate_limit_per_minute: int = 120
    reservation_ttl_seconds: int = 30
    enforce_plan_limits: bool = False
    default_plan_id: str = "free"
    stripe_api_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance_seconds: int = 300
    site_url: str = "http://localhost:3000"
    plans: dict[str, PlanConfig] = Field(default_factory=lambda: dict(DEFAULT_PLANS))
    credit_packages: dict[str, CreditPackage] = Field(default_factory=lambda: dict(DEFAULT_CREDIT_PACKAGES))
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
