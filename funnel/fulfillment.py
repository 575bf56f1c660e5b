from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable

import structlog

logger = structlog.get_logger(__name__)


def payment_intent_key(payment_intent_id: str) -> str:
    return f"payment_intent_{payment_intent_id}"


def checkout_session_key(session_id: str) -> str:
    return f"checkout_session_{session_id}"


@dataclass
class FulfillmentRecord:
    key: str
    timestamp: float
    fulfilled: bool
    customer_email: str | None = None
    payment_intent_id: str | None = None
    session_id: str | None = None
    fulfillment_type: str | None = None
    awaiting_payment_completion: bool | None = None


# expiry happens on read; a pending record (voucher issued, money not in yet) is not fulfilled
class FulfillmentTracker:
    def __init__(self, ttl: float = 24 * 60 * 60, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self._clock = clock
        self._records: dict[str, FulfillmentRecord] = {}

    def _expire(self, key: str) -> FulfillmentRecord | None:
        record = self._records.get(key)
        if record is None:
            return None
        if self._clock() - record.timestamp > self.ttl:
            del self._records[key]
            return None
        return record

    def get(self, key: str) -> FulfillmentRecord | None:
        return self._expire(key)

    def is_already_fulfilled(self, key: str) -> bool:
        record = self._expire(key)
        return bool(record and record.fulfilled)

    def mark_as_fulfilled(self, key: str, **metadata: Any) -> FulfillmentRecord:
        record = FulfillmentRecord(key=key, timestamp=self._clock(), fulfilled=True, **metadata)
        record.awaiting_payment_completion = False
        self._records[key] = record
        logger.info("fulfillment_marked", key=key, fulfillment_type=record.fulfillment_type)
        return record

    def mark_pending(self, key: str, **metadata: Any) -> FulfillmentRecord:
        existing = self._expire(key)
        if existing and existing.fulfilled:
            return existing
        record = FulfillmentRecord(
            key=key,
            timestamp=self._clock(),
            fulfilled=False,
            awaiting_payment_completion=True,
            **metadata,
        )
        self._records[key] = record
        logger.info("fulfillment_pending", key=key, fulfillment_type=record.fulfillment_type)
        return record

    def stats(self) -> dict[str, Any]:
        for key in list(self._records):
            self._expire(key)
        records = list(self._records.values())
        return {
            "total": len(records),
            "fulfilled": sum(1 for r in records if r.fulfilled),
            "awaiting_payment": sum(1 for r in records if r.awaiting_payment_completion),
            "ttl_seconds": self.ttl,
        }

    def clear(self) -> None:
        self._records.clear()
