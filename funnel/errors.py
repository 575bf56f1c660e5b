from __future__ import annotations

from typing import Any


class FunnelError(Exception):
    pass


class OperationTimeout(FunnelError, TimeoutError):
    def __init__(self, label: str, timeout: float):
        self.label = label
        self.timeout = timeout
        super().__init__(f"{label} timed out after {timeout:g}s")


class CircuitOpenError(FunnelError):
    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"circuit '{name}' is open, retry in {retry_after:.0f}s")


# recoverable: another attempt can succeed (429, 5xx, network), otherwise auth or bad request
class IntegrationError(FunnelError):
    def __init__(self, service: str, message: str, *, recoverable: bool, status_code: int | None = None):
        self.service = service
        self.recoverable = recoverable
        self.status_code = status_code
        super().__init__(f"{service}: {message}")


class SignatureVerificationError(FunnelError):
    pass


# rendered as JSON by the handler registered in main
class ApiError(FunnelError):
    def __init__(
        self,
        status_code: int,
        error: str,
        *,
        code: str | None = None,
        message: str | None = None,
        details: list[str] | None = None,
        extra: dict[str, Any] | None = None,
    ):
        self.status_code = status_code
        self.error = error
        self.code = code
        self.message = message
        self.details = details
        self.extra = extra or {}
        super().__init__(error)

    def body(self) -> dict[str, Any]:
        out: dict[str, Any] = {"error": self.error}
        if self.code:
            out["code"] = self.code
        if self.message:
            out["message"] = self.message
        if self.details:
            out["details"] = self.details
        out.update(self.extra)
        return out


class RateLimitExceeded(FunnelError):
    def __init__(
        self,
        retry_after: int,
        limit: int,
        window_seconds: int,
        environment: str,
        *,
        message: str | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.retry_after = retry_after
        self.limit = limit
        self.window_seconds = window_seconds
        self.environment = environment
        self.message = message or f"Maximum {limit} requests per {window_seconds // 60 or 1} minutes."
        self.headers = headers or {}
        super().__init__(f"rate limited, retry in {retry_after}s")

    def body(self) -> dict[str, Any]:
        return {
            "error": "Too many requests",
            "retryAfter": self.retry_after,
            "message": self.message,
            "environment": self.environment,
        }
