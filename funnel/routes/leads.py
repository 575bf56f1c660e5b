from __future__ import annotations

import asyncio
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request

from funnel.clients.base import IntegrationResult
from funnel.errors import ApiError
from funnel.lifecycle import event_fields, group_id, now_iso, split_name
from funnel.models.enums import LifecycleGroup, ResultCode
from funnel.ratelimit import client_ip, rate_limit
from funnel.routes.deps import get_services, read_json_object
from funnel.services import Services
from funnel.validation import UTM_MAX_LENGTH, utm_values, validate_crm_request, validate_lead_request

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api", tags=["leads"])

# optional tracking fields copied onto the subscriber when present
ENRICHMENT_FIELDS = (
    "company",
    "city",
    "country",
    "referrer",
    "referrer_domain",
    "landing_page",
    "device_type",
    "browser_name",
    "preferred_language",
    "timezone",
    "intent_signal",
    "lead_score",
    "time_on_page",
    "scroll_depth",
    "page_views",
    "is_returning_visitor",
)


def _enrichment(body: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in ENRICHMENT_FIELDS:
        value = body.get(name)
        if value is None or value == "":
            continue
        if isinstance(value, bool):
            out[name] = str(value).lower()
        elif isinstance(value, (int, float)):
            out[name] = value
        elif isinstance(value, str):
            out[name] = value[:UTM_MAX_LENGTH]
    return out


async def _settled(operation) -> IntegrationResult:
    try:
        return await operation
    except Exception as exc:
        logger.error("lead_integration_failed", error=str(exc), error_type=type(exc).__name__)
        return IntegrationResult.failed(ResultCode.upstream_error, str(exc), recoverable=True)


@router.post("/leads")
async def capture_lead(
    request: Request,
    services: Services = Depends(get_services),
    _: None = Depends(rate_limit("lead_capture")),
) -> dict[str, Any]:
    settings = services.settings
    body = await read_json_object(request)

    validation = validate_lead_request(body)
    if not validation.is_valid or validation.sanitized is None:
        raise ApiError(400, "Validation failed", details=validation.errors)
    data = validation.sanitized

    first_name, last_name = split_name(data["full_name"])
    now = now_iso()
    fields: dict[str, Any] = {
        "name": first_name,
        "last_name": last_name,
        "phone": data["phone"],
        "event_id": data["event_id"],
        "user_session_id": data["user_session_id"],
        "lead_created_at": body.get("lead_created_at") or now,
        "checkout_started_at": body.get("checkout_started_at") or now,
        "payment_status": "lead",
        "ticket_type": body.get("ticket_type") or "Standard",
        "details_form_status": "pending",
        "event_interest": settings.event_tag,
        "crm_deal_status": "lead",
        "marketing_opt_in": "yes",
        **event_fields(settings),
        **_enrichment(body),
        **utm_values(body),
    }
    checkout_group = group_id(settings, LifecycleGroup.checkout_started)
    ip = client_ip(request)

    mailerlite, crm = await asyncio.gather(
        _settled(
            services.mailerlite.upsert_subscriber(
                data["email"],
                fields,
                groups=[checkout_group] if checkout_group else None,
                name=data["full_name"],
                ip_address=ip if ip != "unknown" else None,
            )
        ),
        _settled(
            services.crm.send_contact_card(
                name=data["full_name"],
                phone=data["phone"],
                email=data["email"],
                amount="0",
                title=f"Lead: {data['full_name']}",
                obs=f"Lead captured at checkout. Event ID: {data['event_id']}",
                contact_tags=["lead", settings.event_tag, "checkout-started"],
            )
        ),
    )

    errors = {name: r.reason for name, r in (("mailerlite", mailerlite), ("crm", crm)) if not r.success}
    logger.info(
        "lead_captured",
        email=data["email"],
        event_id=data["event_id"],
        mailerlite_success=mailerlite.success,
        mailerlite_action=mailerlite.action,
        crm_success=crm.success,
        crm_contact_id=crm.resource_id,
    )

    # always 200 so lead capture never blocks checkout
    return {
        "success": True,
        "event_id": data["event_id"],
        "timestamp": now,
        "mailerlite": {
            "success": mailerlite.success,
            "subscriber_id": mailerlite.resource_id,
            "action": mailerlite.action,
            "reason": mailerlite.reason,
        },
        "crm": {
            "success": crm.success,
            "contact_id": crm.resource_id,
            "action": crm.action,
            "stage": "lead",
            "recoverable": crm.recoverable,
            "reason": crm.reason,
        },
        "errors": errors,
        "circuit_breaker_status": services.mailerlite.breaker.status(),
    }


@router.post("/crm-contacts")
async def create_crm_contact(
    request: Request,
    services: Services = Depends(get_services),
    _: None = Depends(rate_limit("crm_contacts")),
) -> dict[str, Any]:
    body = await read_json_object(request)

    validation = validate_crm_request(body)
    if not validation.is_valid or validation.sanitized is None:
        raise ApiError(400, "Validation failed", details=validation.errors)
    data = validation.sanitized

    result = await _settled(services.crm.send_contact_card(**data))
    logger.info("crm_contact_attempt", name=data["name"], amount=data["amount"], success=result.success)

    return {
        "success": True,
        "crm": {"success": result.success, "contact_id": result.resource_id, "reason": result.reason},
        "circuit_breaker": services.crm.breaker.status(),
    }
