from __future__ import annotations

from urllib.parse import urlparse

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from funnel.config import Settings

ALLOW_HEADERS = "Content-Type, X-Idempotency-Key"
WILDCARD_ALLOW_HEADERS = "Content-Type, X-Gtm-Server-Preview, User-Agent, Referer"

# browser-facing beacons and the tag proxy accept any origin
WILDCARD_PREFIXES = ("/api/csp-report", "/api/metrics", "/api/gtm-proxy")


def is_preview_origin(origin: str | None, suffix: str = ".netlify.app") -> bool:
    if not origin:
        return False
    host = urlparse(origin).hostname or ""
    return host.endswith(suffix)


def allowed_origin(settings: Settings, origin: str | None) -> str:
    if origin and (origin in settings.cors_allowed_origins or is_preview_origin(origin, settings.cors_preview_suffix)):
        return origin
    return settings.canonical_origin


def cors_headers(settings: Settings, path: str, origin: str | None) -> dict[str, str]:
    if path.startswith(WILDCARD_PREFIXES):
        return {
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
            "Access-Control-Allow-Headers": WILDCARD_ALLOW_HEADERS,
        }
    return {
        "Access-Control-Allow-Origin": allowed_origin(settings, origin),
        "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": ALLOW_HEADERS,
        "Access-Control-Allow-Credentials": "false",
        "Vary": "Origin",
    }


# never rejects: unknown origins get the canonical one
class FunnelCORSMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, settings: Settings):
        super().__init__(app)
        self.settings = settings

    async def dispatch(self, request: Request, call_next) -> Response:
        headers = cors_headers(self.settings, request.url.path, request.headers.get("origin"))
        if request.method == "OPTIONS":
            return Response(status_code=200, headers={**headers, "Access-Control-Max-Age": "86400"})

        response = await call_next(request)
        for key, value in headers.items():
            response.headers.setdefault(key, value)
        return response
