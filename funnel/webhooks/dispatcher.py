from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from funnel.dlq import DeadLetterQueue, FailedWebhook
from funnel.schemas.webhooks import (
    CheckoutSessionObject,
    DisputeObject,
    PaymentIntentObject,
    StripeObject,
    WebhookEvent,
)
from funnel.webhooks.handlers import PaymentLifecycleHandlers

logger = structlog.get_logger(__name__)

Handler = Callable[[Any], Awaitable[dict[str, Any]]]


class WebhookDispatcher:
    def __init__(self, handlers: PaymentLifecycleHandlers, dlq: DeadLetterQueue):
        self.handlers = handlers
        self.dlq = dlq
        self._processed: set[str] = set()
        self._routes: dict[str, tuple[type[StripeObject], Handler]] = {
            "payment_intent.succeeded": (PaymentIntentObject, handlers.payment_succeeded),
            "payment_intent.processing": (PaymentIntentObject, handlers.payment_processing),
            "payment_intent.payment_failed": (PaymentIntentObject, handlers.payment_failed),
            "payment_intent.canceled": (PaymentIntentObject, handlers.payment_canceled),
            "payment_intent.requires_action": (PaymentIntentObject, handlers.payment_requires_action),
            "payment_intent.partially_funded": (PaymentIntentObject, handlers.payment_partially_funded),
            "charge.dispute.created": (DisputeObject, handlers.charge_dispute_created),
            "checkout.session.completed": (CheckoutSessionObject, handlers.checkout_session_completed),
            "checkout.session.async_payment_succeeded": (
                CheckoutSessionObject,
                handlers.checkout_async_payment_succeeded,
            ),
            "checkout.session.async_payment_failed": (
                CheckoutSessionObject,
                handlers.checkout_async_payment_failed,
            ),
        }
        dlq.set_webhook_processor(self.process_failed)

    @property
    def handled_types(self) -> list[str]:
        return sorted(self._routes)

    def is_processed(self, event_id: str) -> bool:
        return event_id in self._processed

    def processed_count(self) -> int:
        return len(self._processed)

    async def _run(self, event: WebhookEvent) -> dict[str, Any]:
        route = self._routes.get(event.type)
        if route is None:
            logger.info("webhook_unhandled_type", event_id=event.id, event_type=event.type)
            return {"status": "ignored", "reason": "unhandled_type"}
        model, handler = route
        return await handler(event.parse_object(model))

    async def handle(self, event: WebhookEvent) -> dict[str, Any]:
        base = {"received": True, "event_id": event.id, "event_type": event.type}

        if event.id in self._processed:
            logger.info("webhook_already_processed", event_id=event.id, event_type=event.type)
            return {**base, "status": "already_processed"}

        if self.dlq.contains(event.id):
            logger.info("webhook_retry_pending", event_id=event.id, event_type=event.type)
            return {**base, "status": "retry_pending"}

        try:
            result = await self._run(event)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.error("webhook_processing_failed", event_id=event.id, event_type=event.type, error=error, exc_info=True)
            self.dlq.add_failed_event(event.id, event.type, event.model_dump(), error)
            return {**base, "success": False, "status": "queued_for_retry"}

        self._processed.add(event.id)
        logger.info("webhook_processed", event_id=event.id, event_type=event.type, status=result.get("status"))
        return {**base, "success": True, **result}

    async def process_failed(self, failed: FailedWebhook) -> dict[str, Any]:
        event = WebhookEvent.model_validate(failed.payload)
        result = await self._run(event)
        self._processed.add(event.id)
        return result
