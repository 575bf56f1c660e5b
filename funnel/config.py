from pydantic_settings import BaseSettings, SettingsConfigDict

VERSION = "0.1.0"

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"

    redis_url: str = "redis://redis:6379/0"

    # stripe
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_timeout_seconds: float = 30.0

    # mailerlite
    mailerlite_api_key: str | None = None
    mailerlite_api_url: str = "https://connect.mailerlite.com/api"
    mailerlite_timeout_seconds: float = 15.0

    # lifecycle groups, no fallback ids: unset means the transition is skipped
    mailerlite_checkout_started_group_id: str | None = None
    mailerlite_abandoned_payment_group_id: str | None = None
    mailerlite_buyer_pending_group_id: str | None = None
    mailerlite_buyer_paid_group_id: str | None = None
    mailerlite_details_pending_group_id: str | None = None
    mailerlite_details_complete_group_id: str | None = None
    mailerlite_attended_group_id: str | None = None
    mailerlite_no_show_group_id: str | None = None

    # crm contact cards
    crm_api_url: str = "https://mocha-smoky.vercel.app/api/integrations/contact-card"
    crm_api_key: str | None = None
    crm_company_id: str | None = None
    crm_board_id: str | None = None
    crm_column_id: str | None = None
    crm_timeout_seconds: float = 15.0

    # ga4 measurement protocol / server-side gtm
    ga4_measurement_id: str | None = None
    ga4_api_secret: str | None = None
    ga4_endpoint: str = "https://www.google-analytics.com"
    sgtm_endpoint: str | None = None
    sgtm_preview_endpoint: str | None = None
    external_timeout_seconds: float = 15.0

    pii_hash_salt: str | None = None
    pii_default_country_code: str = "351"

    # retry / circuit breaker
    retry_max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    circuit_failure_threshold: int = 5
    circuit_reset_timeout_seconds: float = 60.0

    # dead letter queue
    dlq_max_retries: int = 5
    dlq_backoff_multiplier: float = 2.0
    dlq_base_delay_seconds: float = 1.0
    dlq_max_delay_seconds: float = 1800.0

    fulfillment_ttl_seconds: int = 24 * 60 * 60
    customer_cache_ttl_seconds: int = 10 * 60
    customer_cache_max_size: int = 1000

    # rate limiting (memory or redis)
    rate_limit_enabled: bool = True
    rate_limit_backend: str = "memory"
    rate_limit_payment_max: int = 5
    rate_limit_payment_window_seconds: int = 15 * 60
    rate_limit_payment_dev_max: int = 20
    rate_limit_payment_dev_window_seconds: int = 5 * 60
    rate_limit_lead_max: int = 8
    rate_limit_lead_window_seconds: int = 10 * 60
    rate_limit_lead_dev_max: int = 30
    rate_limit_lead_dev_window_seconds: int = 10 * 60
    rate_limit_metrics_max: int = 60
    rate_limit_metrics_window_seconds: int = 60
    rate_limit_crm_max: int = 10
    rate_limit_crm_window_seconds: int = 10 * 60

    # cors
    canonical_origin: str = "https://jucanamaximiliano.com.br"
    cors_allowed_origins: list[str] = [
        "https://jucanamaximiliano.com.br",
        "https://www.jucanamaximiliano.com.br",
        "http://localhost:8080",
        "http://localhost:8888",
    ]
    cors_preview_suffix: str = ".netlify.app"

    # event details written to subscriber fields
    event_name: str = "Café com Vendas - Lisboa"
    event_date: str = "2025-09-20"
    event_address: str = "Lisboa, Portugal"
    event_maps_link: str = "https://maps.google.com/?q=Lisboa,Portugal"
    event_tag: str = "ccv-2025-09-20"
    default_amount_cents: int = 18000
    default_currency: str = "eur"

    admin_key: str | None = None
    metrics_max_per_request: int = 50

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() in {"prod", "production"}

settings = Settings()
