from enum import Enum

class CircuitState(str, Enum):
    closed = "CLOSED"
    open = "OPEN"
    half_open = "HALF_OPEN"

class ResultCode(str, Enum):
    ok = "ok"
    skipped = "skipped"
    not_configured = "not_configured"
    circuit_open = "circuit_open"
    timeout = "timeout"
    rate_limited = "rate_limited"
    auth_failed = "auth_failed"
    bad_request = "bad_request"
    upstream_error = "upstream_error"
    network_error = "network_error"

class LifecycleGroup(str, Enum):
    checkout_started = "checkout_started"
    abandoned_payment = "abandoned_payment"
    buyer_pending = "buyer_pending"
    buyer_paid = "buyer_paid"
    details_pending = "details_pending"
    details_complete = "details_complete"
    attended = "attended"
    no_show = "no_show"

class PaymentStatus(str, Enum):
    paid = "paid"
    processing = "processing"
    pending_payment = "pending_payment"
    failed = "failed"
    failed_async = "failed_async"
    canceled = "canceled"
    requires_action = "requires_action"
    partially_funded = "partially_funded"

class FulfillmentType(str, Enum):
    payment_intent = "payment_intent"
    checkout_session = "checkout_session"
    async_payment = "async_payment"
    pending_voucher = "pending_voucher"
