import uuid
from contextlib import asynccontextmanager

import structlog
from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from funnel.config import VERSION, Settings, settings as default_settings
from funnel.cors import FunnelCORSMiddleware
from funnel.errors import ApiError, RateLimitExceeded
from funnel.logging import configure_structlog
from funnel.routes.health import router as health_router
from funnel.routes.leads import router as leads_router
from funnel.routes.payments import router as payments_router
from funnel.routes.reports import router as reports_router
from funnel.routes.webhooks import router as webhooks_router
from funnel.services import Services, build_services

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: Services = app.state.services
    logger.info("startup", environment=services.settings.app_env, version=VERSION)
    yield
    await services.aclose()
    logger.info("shutdown_complete")


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    headers = getattr(request.state, "rate_limit_headers", None)
    return JSONResponse(status_code=exc.status_code, content=exc.body(), headers=headers)


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(status_code=429, content=exc.body(), headers=exc.headers)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    debug_id = str(uuid.uuid4())
    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=correlation_id.get(None),
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error. Please try again later.", "debug_id": debug_id},
    )


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    settings = settings or default_settings
    configure_structlog(settings.log_level, json_logs=settings.is_production)

    app = FastAPI(title="funnel-api", version=VERSION, lifespan=lifespan)
    app.state.services = services or build_services(settings)

    app.add_middleware(FunnelCORSMiddleware, settings=settings)
    app.add_middleware(
        CorrelationIdMiddleware,
        header_name="X-Request-ID",
        generator=lambda: str(uuid.uuid4()),
        validator=None,
    )

    app.exception_handler(ApiError)(api_error_handler)
    app.exception_handler(RateLimitExceeded)(rate_limit_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(health_router)
    app.include_router(payments_router)
    app.include_router(leads_router)
    app.include_router(webhooks_router)
    app.include_router(reports_router)
    return app


app = create_app()
