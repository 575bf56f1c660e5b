from __future__ import annotations

import time
from typing import Any

import httpx
import structlog

from funnel.clients.base import IntegrationClient, IntegrationResult
from funnel.models.enums import ResultCode

logger = structlog.get_logger(__name__)


def validate_purchase_event(event: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    if not event.get("client_id"):
        errors.append("client_id is required")
    if not event.get("transaction_id"):
        errors.append("transaction_id is required")
    value = event.get("value")
    if not isinstance(value, (int, float)) or value <= 0:
        errors.append("value must be greater than 0")
    if not event.get("currency"):
        errors.append("currency is required")
    items = event.get("items") or []
    if not items:
        errors.append("at least one item is required")
    for i, item in enumerate(items):
        if not item.get("item_id"):
            errors.append(f"item[{i}].item_id is required")
        if not item.get("item_name"):
            errors.append(f"item[{i}].item_name is required")
        quantity = item.get("quantity")
        if not isinstance(quantity, (int, float)) or quantity <= 0:
            errors.append(f"item[{i}].quantity must be greater than 0")
        price = item.get("price")
        if isinstance(price, bool) or not isinstance(price, (int, float)):
            errors.append(f"item[{i}].price must be a number")
    return errors


class AnalyticsClient(IntegrationClient):
    service = "ga4"
    breaker_name = "ga4-collector"

    def __init__(
        self,
        http: httpx.AsyncClient,
        breakers,
        *,
        measurement_id: str | None,
        api_secret: str | None,
        endpoint: str = "https://www.google-analytics.com",
        debug: bool = False,
        **kwargs: Any,
    ):
        super().__init__(http, breakers, **kwargs)
        self.measurement_id = measurement_id
        self.api_secret = api_secret
        self.endpoint = endpoint.rstrip("/")
        self.debug = debug

    @property
    def configured(self) -> bool:
        return bool(self.measurement_id and self.api_secret)

    def collect_url(self) -> str:
        path = "/debug/mp/collect" if self.debug else "/mp/collect"
        return f"{self.endpoint}{path}"

    def build_payload(self, event: dict[str, Any]) -> dict[str, Any]:
        params: dict[str, Any] = {
            "transaction_id": event["transaction_id"],
            "value": event["value"],
            "currency": event["currency"],
            "items": event["items"],
        }
        for key in ("event_id", "session_id", "source", "medium", "campaign", "term", "content"):
            if event.get(key):
                params[key] = event[key]
        params.update(event.get("custom_parameters") or {})

        payload: dict[str, Any] = {
            "client_id": event["client_id"],
            "timestamp_micros": event.get("timestamp_micros") or int(time.time() * 1_000_000),
            "events": [{"name": "purchase", "params": params}],
        }
        if event.get("user_data"):
            payload["user_data"] = event["user_data"]
        return payload

    async def send_purchase(self, event: dict[str, Any]) -> IntegrationResult:
        errors = validate_purchase_event(event)
        if errors:
            logger.warning("ga4_purchase_invalid", errors=errors, transaction_id=event.get("transaction_id"))
            return IntegrationResult.failed(
                ResultCode.bad_request, f"validation failed: {', '.join(errors)}", recoverable=False
            )
        if not self.configured:
            return self.not_configured("GA4_MEASUREMENT_ID / GA4_API_SECRET not set")

        payload = self.build_payload(event)
        params = {"measurement_id": self.measurement_id, "api_secret": self.api_secret}

        def _interpret(response: httpx.Response) -> IntegrationResult:
            self.raise_for_recoverable(response)
            if response.is_success:
                logger.info(
                    "ga4_purchase_sent",
                    transaction_id=event["transaction_id"],
                    value=event["value"],
                    items_count=len(event["items"]),
                )
                return IntegrationResult.ok("sent", event["transaction_id"])
            return self.client_error(response)

        return await self.call(
            "GA4 purchase event",
            lambda: self._http.post(self.collect_url(), params=params, json=payload),
            _interpret,
        )
