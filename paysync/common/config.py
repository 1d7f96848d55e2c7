"""Central environment-driven settings shared by the payments and notification services.

Each service process loads this once at startup. Gateway credentials and the
webhook secret are read here but handed to the gateway adapter and webhook
processor at construction time; core code never reads them globally.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    postgres_dsn: str
    api_key: str
    otel_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    gateway_base_url: str = "https://api.mercadopago.com"
    gateway_access_token: str = ""
    gateway_notification_url: str | None = None
    gateway_redirect_base_url: str | None = None
    gateway_timeout_seconds: float = 10.0
    gateway_max_retries: int = 3
    gateway_backoff_seconds: float = 1.0
    webhook_secret: str = ""
    webhook_inline_processing: bool = False

    default_payer_email: str = "payer@paysync.local"
    payment_description_prefix: str = "Order"
    create_rate_limit_per_minute: int = 10
    sync_window_seconds: int = 900
    sweep_interval_seconds: int = 300
    sweep_batch_size: int = 100
    push_webhook_url: str | None = None
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
