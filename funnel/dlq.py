from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FailedWebhook:
    event_id: str
    event_type: str
    payload: dict[str, Any]
    failed_at: datetime
    max_retries: int
    error: str
    retry_count: int = 0
    next_retry_at: datetime | None = None

    def summary(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "failed_at": self.failed_at.isoformat(),
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "error": self.error,
        }


WebhookProcessor = Callable[[FailedWebhook], Awaitable[Any]]


def _failure_duration(event: FailedWebhook) -> str:
    seconds = int((_now_utc() - event.failed_at).total_seconds())
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


class DeadLetterQueue:
    def __init__(
        self,
        max_retries: int = 5,
        backoff_multiplier: float = 2.0,
        base_delay: float = 1.0,
        max_delay: float = 30 * 60,
    ):
        self.max_retries = max_retries
        self.backoff_multiplier = backoff_multiplier
        self.base_delay = base_delay
        self.max_delay = max_delay

        self._events: dict[str, FailedWebhook] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()
        self._processor: WebhookProcessor | None = None

    def set_webhook_processor(self, processor: WebhookProcessor) -> None:
        self._processor = processor

    def contains(self, event_id: str) -> bool:
        return event_id in self._events

    def get(self, event_id: str) -> FailedWebhook | None:
        return self._events.get(event_id)

    def backoff_delay(self, retry_count: int) -> float:
        return min(self.base_delay * self.backoff_multiplier ** retry_count, self.max_delay)

    def add_failed_event(
        self,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        error: str,
        max_retries: int | None = None,
    ) -> FailedWebhook:
        event = FailedWebhook(
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            failed_at=_now_utc(),
            max_retries=self.max_retries if max_retries is None else max_retries,
            error=error,
        )
        self._cancel_timer(event_id)
        self._events[event_id] = event

        logger.warning(
            "dlq_event_added",
            event_id=event_id,
            event_type=event_type,
            max_retries=event.max_retries,
            error=error,
        )
        self._schedule_retry(event)
        return event

    def _schedule_retry(self, event: FailedWebhook) -> None:
        if event.retry_count >= event.max_retries:
            logger.error(
                "dlq_event_exhausted",
                event_id=event.event_id,
                event_type=event.event_type,
                retry_count=event.retry_count,
                max_retries=event.max_retries,
                total_time_failed=_failure_duration(event),
                error=event.error,
            )
            self._cancel_timer(event.event_id)
            self._events.pop(event.event_id, None)
            return

        delay = self.backoff_delay(event.retry_count)
        event.next_retry_at = _now_utc() + timedelta(seconds=delay)

        logger.info(
            "dlq_retry_scheduled",
            event_id=event.event_id,
            retry_count=event.retry_count + 1,
            delay=delay,
            next_retry_at=event.next_retry_at.isoformat(),
        )

        self._cancel_timer(event.event_id)
        loop = asyncio.get_running_loop()
        self._timers[event.event_id] = loop.call_later(delay, self._fire, event.event_id)

    def _fire(self, event_id: str) -> None:
        self._timers.pop(event_id, None)
        event = self._events.get(event_id)
        if event is None:
            return
        task = asyncio.ensure_future(self.retry_event(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def retry_event(self, event: FailedWebhook) -> None:
        event.retry_count += 1
        logger.info(
            "dlq_retry_started",
            event_id=event.event_id,
            event_type=event.event_type,
            retry_count=event.retry_count,
            max_retries=event.max_retries,
        )

        try:
            if self._processor is None:
                raise RuntimeError("no webhook processor registered")
            await self._processor(event)
        except Exception as exc:
            event.error = str(exc) or type(exc).__name__
            logger.warning(
                "dlq_retry_failed",
                event_id=event.event_id,
                retry_count=event.retry_count,
                max_retries=event.max_retries,
                error=event.error,
            )
            # removed by an operator while the retry was running
            if event.event_id in self._events:
                self._schedule_retry(event)
            return

        self._events.pop(event.event_id, None)
        self._cancel_timer(event.event_id)
        logger.info(
            "dlq_retry_succeeded",
            event_id=event.event_id,
            retry_count=event.retry_count,
            total_time_failed=_failure_duration(event),
        )

    def _cancel_timer(self, event_id: str) -> None:
        timer = self._timers.pop(event_id, None)
        if timer is not None:
            timer.cancel()

    def remove_event(self, event_id: str) -> bool:
        existed = event_id in self._events
        self._cancel_timer(event_id)
        self._events.pop(event_id, None)
        if existed:
            logger.info("dlq_event_removed", event_id=event_id)
        return existed

    def clear_all(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._events.clear()
        logger.info("dlq_cleared")

    def get_status(self) -> dict[str, Any]:
        return {
            "failed_events_count": len(self._events),
            "events_with_retries_pending": len(self._timers),
            "config": {
                "max_retries": self.max_retries,
                "backoff_multiplier": self.backoff_multiplier,
                "base_delay_seconds": self.base_delay,
                "max_delay_seconds": self.max_delay,
            },
            "failed_events": [e.summary() for e in self._events.values()],
        }
