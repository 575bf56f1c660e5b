from __future__ import annotations

import json
from typing import Any

import httpx
import structlog
from fastapi import APIRouter, Depends, Request, Response

from funnel.errors import ApiError, OperationTimeout
from funnel.lifecycle import now_iso
from funnel.ratelimit import rate_limit
from funnel.resilience import with_timeout
from funnel.routes.deps import get_services, read_json
from funnel.services import Services

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api", tags=["reports"])

METRIC_TYPES = ("core_web_vital", "performance", "user_interaction", "business_event", "error")

GTM_FORWARDED_HEADERS = (
    "user-agent",
    "accept",
    "accept-language",
    "referer",
    "content-type",
    "x-forwarded-for",
    "x-real-ip",
    "x-gtm-server-preview",
    "cookie",
)
GTM_RESPONSE_HEADERS = ("content-type", "cache-control")
GTM_PREVIEW_COOKIES = ("gtm_auth", "gtm_preview", "gtm_debug")


@router.post("/csp-report", status_code=204)
async def csp_report(request: Request) -> Response:
    raw = await request.body()
    content_type = request.headers.get("content-type", "")
    report: Any
    if "json" in content_type or "csp-report" in content_type:
        try:
            report = json.loads(raw or b"{}")
        except ValueError:
            report = raw.decode("utf-8", errors="replace")
    else:
        report = raw.decode("utf-8", errors="replace")

    logger.warning("csp_report", report=report)
    return Response(status_code=204)


@router.post("/metrics")
async def collect_metrics(
    request: Request,
    services: Services = Depends(get_services),
    _: None = Depends(rate_limit("metrics")),
) -> dict[str, Any]:
    body = await read_json(request)
    metrics = body if isinstance(body, list) else [body]

    limit = services.settings.metrics_max_per_request
    if len(metrics) > limit:
        raise ApiError(400, f"Too many metrics. Maximum {limit} per request.", extra={"success": False})

    received = 0
    for metric in metrics:
        if not isinstance(metric, dict) or not metric.get("metric_type") or not metric.get("timestamp"):
            logger.warning("client_metric_invalid", metric=metric)
            continue
        metric_type = metric["metric_type"]
        if metric_type not in METRIC_TYPES:
            logger.warning("client_metric_unknown_type", metric_type=metric_type)
            continue
        logger.info(
            "client_metric",
            metric_type=metric_type,
            name=metric.get("name") or metric.get("metric_name"),
            value=metric.get("value"),
            page=metric.get("page") or metric.get("url"),
        )
        received += 1

    return {"success": True, "metrics_received": received, "timestamp": now_iso()}


def is_preview_request(request: Request) -> bool:
    params = request.query_params
    if "gtm_debug" in params or params.get("_dbg") == "1":
        return True
    if request.headers.get("x-gtm-server-preview"):
        return True
    cookies = request.headers.get("cookie", "")
    return any(marker in cookies for marker in GTM_PREVIEW_COOKIES)


def _gtm_target(base: str, path: str, query: str) -> str:
    target = "/mp/collect" if "mp/collect" in path else "/g/collect"
    url = f"{base.rstrip('/')}{target}"
    return f"{url}?{query}" if query else url


def _forward_headers(request: Request) -> dict[str, str]:
    headers = {name: request.headers[name] for name in GTM_FORWARDED_HEADERS if name in request.headers}
    headers.setdefault("user-agent", "Mozilla/5.0 (compatible; GTMProxy/1.0)")
    headers["x-forwarded-proto"] = "https"
    headers["x-forwarded-host"] = request.url.netloc
    if "x-forwarded-for" not in headers and "x-real-ip" not in headers:
        ip = request.headers.get("cf-connecting-ip") or (request.client.host if request.client else "127.0.0.1")
        headers["x-forwarded-for"] = ip
        headers["x-real-ip"] = ip
    return headers


@router.api_route("/gtm-proxy/{path:path}", methods=["GET", "POST"])
async def gtm_proxy(path: str, request: Request, services: Services = Depends(get_services)) -> Response:
    settings = services.settings
    if not settings.sgtm_endpoint:
        raise ApiError(503, "Server-side tagging not configured")

    preview = is_preview_request(request) and bool(settings.sgtm_preview_endpoint)
    base = settings.sgtm_preview_endpoint if preview else settings.sgtm_endpoint
    query = request.url.query
    body = await request.body() if request.method == "POST" else None
    headers = _forward_headers(request)

    async def _send(url: str) -> httpx.Response:
        return await with_timeout(
            services.http.request(request.method, url, headers=headers, content=body),
            settings.external_timeout_seconds,
            "GTM proxy request",
        )

    logger.info("gtm_proxy_request", mode="preview" if preview else "production", path=path)
    try:
        upstream = await _send(_gtm_target(base, path, query))
        if preview and upstream.status_code == 404:
            logger.info("gtm_proxy_preview_fallback", path=path)
            upstream = await _send(_gtm_target(settings.sgtm_endpoint, path, query))
    except OperationTimeout:
        raise ApiError(504, "GTM proxy timed out", code="request_timeout") from None
    except httpx.HTTPError as exc:
        logger.error("gtm_proxy_failed", error=str(exc))
        raise ApiError(502, "GTM proxy error") from None

    out_headers = {name: upstream.headers[name] for name in GTM_RESPONSE_HEADERS if name in upstream.headers}
    return Response(content=upstream.content, status_code=upstream.status_code, headers=out_headers)
