from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import Any

import httpx
import structlog

from funnel.errors import CircuitOpenError, IntegrationError, OperationTimeout
from funnel.models.enums import ResultCode
from funnel.resilience import CircuitBreakerRegistry, retry_with_backoff, with_timeout

logger = structlog.get_logger(__name__)


@dataclass
class IntegrationResult:
    success: bool
    code: ResultCode
    action: str | None = None
    resource_id: str | None = None
    reason: str | None = None
    recoverable: bool | None = None
    status_code: int | None = None
    data: dict[str, Any] | None = None

    @classmethod
    def ok(cls, action: str, resource_id: str | None = None, **kwargs: Any) -> "IntegrationResult":
        code = ResultCode.skipped if action == "skipped" else ResultCode.ok
        return cls(success=True, code=code, action=action, resource_id=resource_id, **kwargs)

    @classmethod
    def failed(cls, code: ResultCode, reason: str, *, recoverable: bool, **kwargs: Any) -> "IntegrationResult":
        return cls(success=False, code=code, reason=reason, recoverable=recoverable, **kwargs)

    def as_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["code"] = self.code.value
        return {k: v for k, v in out.items() if v is not None}


def response_json(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {"data": body}


class IntegrationClient:
    service = "integration"
    breaker_name = "integration"

    def __init__(
        self,
        http: httpx.AsyncClient,
        breakers: CircuitBreakerRegistry,
        *,
        timeout: float = 15.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self._http = http
        self._breakers = breakers
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep

    @property
    def breaker(self):
        return self._breakers.get(self.breaker_name)

    def not_configured(self, reason: str) -> IntegrationResult:
        logger.warning("integration_not_configured", service=self.service, reason=reason)
        return IntegrationResult.failed(ResultCode.not_configured, reason, recoverable=False)

    def raise_for_recoverable(self, response: httpx.Response) -> None:
        if response.status_code == 429:
            raise IntegrationError(self.service, "rate limit exceeded", recoverable=True, status_code=429)
        if response.status_code >= 500:
            raise IntegrationError(
                self.service,
                f"server error: {response.status_code}",
                recoverable=True,
                status_code=response.status_code,
            )

    def client_error(self, response: httpx.Response) -> IntegrationResult:
        if response.status_code == 401:
            logger.error("integration_auth_failed", service=self.service)
            return IntegrationResult.failed(
                ResultCode.auth_failed, "authentication failed", recoverable=False, status_code=401
            )
        text = response.text[:500]
        logger.warning("integration_bad_request", service=self.service, status_code=response.status_code, body=text)
        return IntegrationResult.failed(
            ResultCode.bad_request,
            f"request rejected ({response.status_code}): {text}",
            recoverable=False,
            status_code=response.status_code,
        )

    async def call(
        self,
        label: str,
        send: Callable[[], Awaitable[httpx.Response]],
        interpret: Callable[[httpx.Response], IntegrationResult],
    ) -> IntegrationResult:
        breaker = self.breaker

        async def _guarded() -> IntegrationResult:
            try:
                response = await with_timeout(send(), self.timeout, label)
            except httpx.HTTPError as exc:
                raise IntegrationError(self.service, f"network error: {exc}", recoverable=True) from exc
            return interpret(response)

        async def _attempt() -> IntegrationResult:
            return await breaker.execute(_guarded)

        try:
            return await retry_with_backoff(
                _attempt, self.max_retries, self.base_delay, label=label, sleep=self._sleep
            )
        except CircuitOpenError as exc:
            logger.warning("integration_circuit_open", service=self.service, label=label, retry_after=exc.retry_after)
            return IntegrationResult.failed(ResultCode.circuit_open, str(exc), recoverable=True)
        except OperationTimeout as exc:
            logger.error("integration_timeout", service=self.service, label=label, timeout=exc.timeout)
            return IntegrationResult.failed(ResultCode.timeout, str(exc), recoverable=True)
        except IntegrationError as exc:
            code = ResultCode.rate_limited if exc.status_code == 429 else (
                ResultCode.upstream_error if exc.status_code else ResultCode.network_error
            )
            logger.error(
                "integration_failed",
                service=self.service,
                label=label,
                status_code=exc.status_code,
                error=str(exc),
            )
            return IntegrationResult.failed(code, str(exc), recoverable=exc.recoverable, status_code=exc.status_code)
