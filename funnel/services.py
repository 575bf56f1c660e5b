from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx
import redis

from funnel.clients.analytics import AnalyticsClient
from funnel.clients.crm import CRMClient
from funnel.clients.mailerlite import MailerLiteClient
from funnel.clients.stripe_gateway import StripeGateway
from funnel.config import Settings
from funnel.customer_cache import CustomerCache
from funnel.dlq import DeadLetterQueue
from funnel.fulfillment import FulfillmentTracker
from funnel.pii import PIIHasher
from funnel.ratelimit import MemoryRateLimitStore, RedisRateLimitStore
from funnel.redis_client import build_redis
from funnel.resilience import CircuitBreakerRegistry
from funnel.webhooks.dispatcher import WebhookDispatcher
from funnel.webhooks.handlers import PaymentLifecycleHandlers


@dataclass
class Services:
    settings: Settings
    http: httpx.AsyncClient
    breakers: CircuitBreakerRegistry
    fulfillment: FulfillmentTracker
    dlq: DeadLetterQueue
    customer_cache: CustomerCache
    pii: PIIHasher
    mailerlite: MailerLiteClient
    crm: CRMClient
    analytics: AnalyticsClient
    stripe: StripeGateway
    rate_limiter: MemoryRateLimitStore | RedisRateLimitStore
    dispatcher: WebhookDispatcher
    redis: redis.Redis | None = None

    async def aclose(self) -> None:
        self.dlq.clear_all()
        await self.http.aclose()


def build_services(
    settings: Settings,
    *,
    http: httpx.AsyncClient | None = None,
    stripe_gateway: Any | None = None,
    redis_client: redis.Redis | None = None,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
) -> Services:
    http = http or httpx.AsyncClient()
    breakers = CircuitBreakerRegistry(
        failure_threshold=settings.circuit_failure_threshold,
        reset_timeout=settings.circuit_reset_timeout_seconds,
    )
    retry = {
        "max_retries": settings.retry_max_retries,
        "base_delay": settings.retry_base_delay_seconds,
        "sleep": sleep,
    }

    mailerlite = MailerLiteClient(
        http,
        breakers,
        api_key=settings.mailerlite_api_key,
        base_url=settings.mailerlite_api_url,
        timeout=settings.mailerlite_timeout_seconds,
        **retry,
    )
    crm = CRMClient(
        http,
        breakers,
        api_url=settings.crm_api_url,
        api_key=settings.crm_api_key,
        company_id=settings.crm_company_id,
        board_id=settings.crm_board_id,
        column_id=settings.crm_column_id,
        timeout=settings.crm_timeout_seconds,
        **retry,
    )
    analytics = AnalyticsClient(
        http,
        breakers,
        measurement_id=settings.ga4_measurement_id,
        api_secret=settings.ga4_api_secret,
        endpoint=settings.ga4_endpoint,
        debug=not settings.is_production,
        timeout=settings.external_timeout_seconds,
        **retry,
    )
    stripe_gateway = stripe_gateway or StripeGateway(settings.stripe_secret_key, settings.stripe_timeout_seconds)

    if settings.rate_limit_backend == "redis":
        redis_client = redis_client or build_redis(settings)
        rate_limiter: MemoryRateLimitStore | RedisRateLimitStore = RedisRateLimitStore(redis_client)
    else:
        rate_limiter = MemoryRateLimitStore()

    fulfillment = FulfillmentTracker(ttl=settings.fulfillment_ttl_seconds)
    pii = PIIHasher(settings.pii_hash_salt, settings.pii_default_country_code, production=settings.is_production)
    dlq = DeadLetterQueue(
        max_retries=settings.dlq_max_retries,
        backoff_multiplier=settings.dlq_backoff_multiplier,
        base_delay=settings.dlq_base_delay_seconds,
        max_delay=settings.dlq_max_delay_seconds,
    )
    handlers = PaymentLifecycleHandlers(
        settings,
        mailerlite=mailerlite,
        crm=crm,
        analytics=analytics,
        stripe_gateway=stripe_gateway,
        fulfillment=fulfillment,
        pii=pii,
    )

    return Services(
        settings=settings,
        http=http,
        breakers=breakers,
        fulfillment=fulfillment,
        dlq=dlq,
        customer_cache=CustomerCache(settings.customer_cache_ttl_seconds, settings.customer_cache_max_size),
        pii=pii,
        mailerlite=mailerlite,
        crm=crm,
        analytics=analytics,
        stripe=stripe_gateway,
        rate_limiter=rate_limiter,
        dispatcher=WebhookDispatcher(handlers, dlq),
        redis=redis_client,
    )
