"""Central environment-driven settings for the checkout service.

The process loads this once at startup. Behavior is controlled by environment
variables (see `.env.example`).
"""

from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "checkout"
    log_level: str = "INFO"
    postgres_dsn: str
    api_key: str
    kafka_bootstrap_servers: str = "kafka:9092"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    business_timezone: str = "Asia/Kolkata"

    razorpay_key_id: str | None = None
    razorpay_key_secret: str | None = None
    razorpay_api_url: str = "https://api.razorpay.com/v1"
    payment_currency: str = "INR"
    gateway_timeout_seconds: float = 10.0

    invoice_office_id: str | None = None
    invoice_office_state_code: str | None = "09"
    # Offices registered in this jurisdiction print invoice numbers without a state segment.
    no_segment_state_code: str = "10"

    price_check_mode: str = "enforce"
    price_tolerance: Decimal = Decimal("0.01")

    order_update_max_attempts: int = 3
    order_update_base_delay_seconds: float = 1.0
    order_update_backoff_multiplier: float = 2.0
    allocator_max_attempts: int = 5
    allocator_base_delay_seconds: float = 0.05
    reconciliation_spool_path: str = "var/reconciliation_spool.jsonl"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
