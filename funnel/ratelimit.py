from __future__ import annotations

import hashlib
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

import redis
import structlog
from fastapi import Request, Response

from funnel.config import Settings
from funnel.errors import RateLimitExceeded
from funnel.redis_client import redis_ping

logger = structlog.get_logger(__name__)

_DEV_HOSTS = ("localhost", "127.0.0.1")


def _hash(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()[:24]


@dataclass(frozen=True)
class RateLimitRule:
    scope: str
    max_requests: int
    window_seconds: int
    environment: str
    noun: str = "requests"

    @property
    def message(self) -> str:
        minutes = self.window_seconds / 60
        return f"Maximum {self.max_requests} {self.noun} per {minutes:g} minutes."


@dataclass
class RateLimitDecision:
    allowed: bool
    count: int
    remaining: int
    retry_after: int | None = None


def is_development_origin(origin: str | None) -> bool:
    return bool(origin) and any(host in origin for host in _DEV_HOSTS)


def resolve_rule(settings: Settings, scope: str, development: bool = False) -> RateLimitRule:
    env = "development" if development else "production"
    if scope == "payment_intent":
        if development:
            return RateLimitRule(
                scope,
                settings.rate_limit_payment_dev_max,
                settings.rate_limit_payment_dev_window_seconds,
                env,
                "payment attempts",
            )
        return RateLimitRule(
            scope, settings.rate_limit_payment_max, settings.rate_limit_payment_window_seconds, env, "payment attempts"
        )
    if scope == "lead_capture":
        if development:
            return RateLimitRule(
                scope,
                settings.rate_limit_lead_dev_max,
                settings.rate_limit_lead_dev_window_seconds,
                env,
                "lead submissions",
            )
        return RateLimitRule(
            scope, settings.rate_limit_lead_max, settings.rate_limit_lead_window_seconds, env, "lead submissions"
        )
    if scope == "crm_contacts":
        return RateLimitRule(
            scope, settings.rate_limit_crm_max, settings.rate_limit_crm_window_seconds, env, "contact submissions"
        )
    if scope == "metrics":
        return RateLimitRule(
            scope, settings.rate_limit_metrics_max, settings.rate_limit_metrics_window_seconds, env, "metric batches"
        )
    raise ValueError(f"unknown rate limit scope: {scope}")


# process-local window counters keyed by `<scope>:<client>`; counting continues while refused
class MemoryRateLimitStore:
    max_keys = 1000

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._windows: dict[str, tuple[int, float, int]] = {}

    def __len__(self) -> int:
        return len(self._windows)

    # each key expires against its own window
    def _cleanup(self, now: float) -> None:
        for key, (_, first, window) in list(self._windows.items()):
            if now - first > window:
                del self._windows[key]

    def hit(self, key: str, limit: int, window: int) -> RateLimitDecision:
        now = self._clock()
        if len(self._windows) > self.max_keys:
            self._cleanup(now)

        count, first, _ = self._windows.get(key, (0, now, window))
        if now - first > window:
            count, first = 0, now
        count += 1
        self._windows[key] = (count, first, window)

        if count > limit:
            return RateLimitDecision(False, count, 0, max(1, math.ceil(first + window - now)))
        return RateLimitDecision(True, count, limit - count)

    def reset(self) -> None:
        self._windows.clear()

    def ping(self) -> bool:
        return True


# fixed window shared across processes: INCR + EXPIRE NX
class RedisRateLimitStore:
    def __init__(self, client: redis.Redis):
        self._client = client

    def hit(self, key: str, limit: int, window: int) -> RateLimitDecision:
        try:
            pipe = self._client.pipeline()
            pipe.incr(key)
            pipe.expire(key, window, nx=True)
            pipe.ttl(key)
            count, _, ttl = pipe.execute()
        except redis.RedisError as exc:
            # fail-open if redis is down
            logger.warning("rate_limit_backend_unavailable", error=str(exc))
            return RateLimitDecision(True, 0, limit)

        count = int(count)
        if count > limit:
            retry_after = int(ttl) if ttl and int(ttl) > 0 else window
            return RateLimitDecision(False, count, 0, retry_after)
        return RateLimitDecision(True, count, limit - count)

    def reset(self) -> None:
        for key in self._client.scan_iter(match="rl:*"):
            self._client.delete(key)

    def ping(self) -> bool:
        return redis_ping(self._client)


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = request.headers.get(header)
        if value:
            return value.strip()
    return request.client.host if request.client else "unknown"


def rate_limit_headers(rule: RateLimitRule, decision: RateLimitDecision) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(rule.max_requests),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Window": str(rule.window_seconds),
        "X-RateLimit-Environment": rule.environment,
    }
    if not decision.allowed:
        headers["Retry-After"] = str(decision.retry_after or 60)
    return headers


# window limiter keyed by scope + hashed client ip
def rate_limit(scope: str):
    async def _dep(request: Request, response: Response) -> None:
        services = request.app.state.services
        if not services.settings.rate_limit_enabled:
            return

        rule = resolve_rule(services.settings, scope, is_development_origin(request.headers.get("origin")))
        ip = client_ip(request)
        decision = services.rate_limiter.hit(f"rl:{scope}:{_hash(ip)}", rule.max_requests, rule.window_seconds)
        headers = rate_limit_headers(rule, decision)
        request.state.rate_limit_headers = headers

        if not decision.allowed:
            logger.warning("rate_limit_exceeded", scope=scope, client_ip=ip, count=decision.count, limit=rule.max_requests)
            raise RateLimitExceeded(
                decision.retry_after or 60,
                rule.max_requests,
                rule.window_seconds,
                rule.environment,
                message=rule.message,
                headers=headers,
            )
        response.headers.update(headers)

    return _dep
