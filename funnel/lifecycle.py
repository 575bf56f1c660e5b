# checkout_started -> abandoned_payment | buyer_pending | buyer_paid
# buyer_paid -> details_pending -> details_complete -> attended | no_show

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from funnel.config import Settings
from funnel.models.enums import LifecycleGroup

TRANSITIONS: dict[LifecycleGroup, set[LifecycleGroup]] = {
    LifecycleGroup.checkout_started: {
        LifecycleGroup.abandoned_payment,
        LifecycleGroup.buyer_pending,
        LifecycleGroup.buyer_paid,
    },
    LifecycleGroup.buyer_pending: {LifecycleGroup.buyer_paid, LifecycleGroup.abandoned_payment},
    LifecycleGroup.abandoned_payment: {LifecycleGroup.buyer_paid, LifecycleGroup.buyer_pending},
    LifecycleGroup.buyer_paid: {LifecycleGroup.details_pending},
    LifecycleGroup.details_pending: {LifecycleGroup.details_complete},
    LifecycleGroup.details_complete: {LifecycleGroup.attended, LifecycleGroup.no_show},
    LifecycleGroup.attended: set(),
    LifecycleGroup.no_show: set(),
}


def can_transition(source: LifecycleGroup, target: LifecycleGroup) -> bool:
    return target in TRANSITIONS[source]


def group_name(settings: Settings, group: LifecycleGroup) -> str:
    return f"{settings.event_tag}_{group.value}"


def group_id(settings: Settings, group: LifecycleGroup) -> str | None:
    return getattr(settings, f"mailerlite_{group.value}_group_id") or None


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def split_name(full_name: str) -> tuple[str, str]:
    parts = full_name.strip().split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def event_fields(settings: Settings) -> dict[str, Any]:
    return {
        "event_date": settings.event_date,
        "event_address": settings.event_address,
        "google_maps_link": settings.event_maps_link,
    }


def buyer_fields(
    settings: Settings,
    *,
    full_name: str,
    phone: str | None,
    order_id: str,
    amount_cents: int | None,
    payment_status: str,
    metadata: dict[str, Any],
) -> dict[str, Any]:
    first_name, _ = split_name(full_name)
    fields: dict[str, Any] = {
        "first_name": first_name or full_name,
        "phone": phone or "",
        "checkout_started_at": metadata.get("created_at") or now_iso(),
        "payment_status": payment_status,
        "ticket_type": metadata.get("ticket_type") or "Standard",
        "order_id": order_id,
        "amount_paid": (amount_cents or 0) / 100,
        "details_form_status": "pending",
        "utm_source": metadata.get("utm_source"),
        "utm_medium": metadata.get("utm_medium"),
        "utm_campaign": metadata.get("utm_campaign"),
        "marketing_opt_in": "yes",
    }
    fields.update(event_fields(settings))
    return fields


def multibanco_fields(details: dict[str, Any], amount_cents: int | None) -> dict[str, Any]:
    expires_at = details.get("expires_at")
    return {
        "payment_method": "multibanco",
        "mb_entity": details.get("entity"),
        "mb_reference": details.get("reference"),
        "mb_amount": (amount_cents or 0) / 100,
        "mb_expires_at": datetime.fromtimestamp(expires_at, timezone.utc).isoformat() if expires_at else "",
        "voucher_generated_at": now_iso(),
    }
