from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Header, Request
from pydantic import ValidationError

from funnel.errors import ApiError, SignatureVerificationError
from funnel.routes.deps import get_services
from funnel.schemas.webhooks import WebhookEvent
from funnel.services import Services
from funnel.webhooks.signature import verify_stripe_signature

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="stripe-signature"),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    secret = services.settings.stripe_webhook_secret
    if not secret:
        # fail closed: unsigned events are never processed
        logger.error("stripe_webhook_secret_missing")
        raise ApiError(500, "Configuration error")

    raw = await request.body()
    if not raw:
        raise ApiError(400, "Empty request body")

    try:
        verify_stripe_signature(raw, stripe_signature, secret)
    except SignatureVerificationError as exc:
        logger.warning("webhook_signature_invalid", reason=str(exc))
        raise ApiError(400, "Webhook signature verification failed", message=str(exc)) from None

    try:
        event = WebhookEvent.model_validate_json(raw)
    except ValidationError:
        raise ApiError(400, "invalid_stripe_event") from None

    with structlog.contextvars.bound_contextvars(event_id=event.id, event_type=event.type):
        logger.info("webhook_received", livemode=event.livemode)
        return await services.dispatcher.handle(event)
