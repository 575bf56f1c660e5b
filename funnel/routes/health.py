from __future__ import annotations

import time
from typing import Any

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from funnel.config import VERSION
from funnel.errors import ApiError
from funnel.models.enums import CircuitState
from funnel.routes.deps import get_services, require_admin
from funnel.services import Services

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["health"])

_STARTED = time.monotonic()


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


# readiness check
@router.get("/ready")
def ready(services: Services = Depends(get_services)):
    checks: dict[str, bool] = {}
    if services.settings.rate_limit_backend == "redis":
        checks["redis"] = services.rate_limiter.ping()

    ok = all(checks.values())
    body: dict = {"status": "ok" if ok else "unready", "checks": checks}

    # 503 only when the shared rate-limit backend is unreachable
    return JSONResponse(status_code=200 if ok else 503, content=body)


def _integrations(services: Services) -> dict[str, bool]:
    settings = services.settings
    return {
        "stripe": services.stripe.configured,
        "stripe_webhooks": bool(settings.stripe_webhook_secret),
        "mailerlite": services.mailerlite.configured,
        "crm": services.crm.configured,
        "ga4": services.analytics.configured,
        "server_gtm": bool(settings.sgtm_endpoint),
    }


def health_report(services: Services) -> dict[str, Any]:
    integrations = _integrations(services)
    breakers = services.breakers.statuses()
    dlq = services.dlq.get_status()

    critical: list[str] = []
    warnings: list[str] = []
    for name in ("stripe", "stripe_webhooks"):
        if not integrations[name]:
            critical.append(f"{name} not configured")
    for name in ("mailerlite", "crm", "ga4", "server_gtm"):
        if not integrations[name]:
            warnings.append(f"{name} not configured")
    for name, status in breakers.items():
        if status["state"] != CircuitState.closed.value:
            warnings.append(f"circuit {name} is {status['state']}")
    if dlq["failed_events_count"]:
        warnings.append(f"{dlq['failed_events_count']} webhook event(s) awaiting retry")

    if critical:
        status = "unhealthy"
    elif warnings:
        status = "degraded"
    else:
        status = "healthy"

    healthy = sum(1 for ok in integrations.values() if ok)
    return {
        "status": status,
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "uptime_seconds": int(time.monotonic() - _STARTED),
        "version": VERSION,
        "environment": services.settings.app_env,
        "services": {
            "integrations": integrations,
            "circuit_breakers": breakers,
            "dead_letter_queue": dlq,
            "fulfillment": services.fulfillment.stats(),
            "customer_cache": services.customer_cache.stats(),
            "webhooks": {
                "processed_events": services.dispatcher.processed_count(),
                "handled_types": services.dispatcher.handled_types,
            },
        },
        "summary": {
            "healthy_services": healthy,
            "total_services": len(integrations),
            "overall_health_percentage": round(100 * healthy / len(integrations)),
            "critical_issues": critical,
            "warnings": warnings,
        },
    }


@router.get("/api/health-check", dependencies=[Depends(require_admin)])
def health_check(services: Services = Depends(get_services)):
    report = health_report(services)
    return JSONResponse(status_code=503 if report["status"] == "unhealthy" else 200, content=report)


@router.delete("/api/dlq/{event_id}", dependencies=[Depends(require_admin)])
def remove_dlq_event(event_id: str, services: Services = Depends(get_services)) -> dict:
    if not services.dlq.remove_event(event_id):
        raise ApiError(404, "Event not found in dead letter queue")
    return {"removed": True, "event_id": event_id}


@router.post("/api/dlq/clear", dependencies=[Depends(require_admin)])
def clear_dlq(services: Services = Depends(get_services)) -> dict:
    count = services.dlq.get_status()["failed_events_count"]
    services.dlq.clear_all()
    logger.warning("dlq_cleared_by_operator", cleared=count)
    return {"cleared": count}
