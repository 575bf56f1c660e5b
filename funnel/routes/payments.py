from __future__ import annotations

import secrets
import time
from typing import Any

import stripe
import structlog
from fastapi import APIRouter, Depends, Header, Request

from funnel.errors import ApiError, OperationTimeout
from funnel.lifecycle import now_iso
from funnel.ratelimit import rate_limit
from funnel.routes.deps import get_services, read_json_object
from funnel.schemas.payments import CouponOut, PaymentIntentOut, PromoCodeIn, PromoCodeOut
from funnel.services import Services
from funnel.validation import validate_payment_request

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api", tags=["payments"])

MIN_CHARGE_CENTS = 50


def _idempotency_key(header: str | None, body: dict[str, Any]) -> str:
    from_body = body.get("idempotency_key")
    if header:
        return header
    if isinstance(from_body, str) and from_body:
        return from_body
    return f"pi_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def _stripe_error(exc: stripe.StripeError) -> ApiError:
    message = exc.user_message or str(exc)
    if isinstance(exc, stripe.CardError):
        return ApiError(400, f"Card error: {message}")
    if isinstance(exc, stripe.RateLimitError):
        return ApiError(429, "Too many requests. Please try again later.")
    if isinstance(exc, stripe.IdempotencyError):
        return ApiError(
            409,
            "Duplicate request detected. Please try again with a new request.",
            code="idempotency_conflict",
        )
    if isinstance(exc, stripe.InvalidRequestError):
        return ApiError(400, f"Invalid request: {message}")
    if isinstance(exc, stripe.APIConnectionError):
        return ApiError(500, "Network error. Please try again.")
    if isinstance(exc, stripe.APIError):
        return ApiError(500, "Payment service temporarily unavailable")
    return ApiError(500, "Internal server error. Please try again later.")


async def _resolve_customer(services: Services, data: dict[str, Any]) -> tuple[Any, bool]:
    # cached customer by email, refreshed when name or phone changed
    gateway = services.stripe
    cache = services.customer_cache
    email, name, phone = data["email"], data["full_name"], data["phone"]
    customer_meta = {
        "lead_id": data["lead_id"],
        "source": "checkout",
        "created_at": now_iso(),
        "validation_passed": "true",
    }

    async def _refresh(customer: Any) -> Any:
        metadata = {**dict(customer.get("metadata") or {}), **customer_meta, "updated_at": now_iso()}
        return await gateway.update_customer(customer["id"], name=name, phone=phone, metadata=metadata)

    customer = cache.get(email)
    if customer is not None:
        logger.info("customer_cache_hit", email=email)
        if customer.get("name") != name or customer.get("phone") != phone:
            customer = await _refresh(customer)
            cache.set(email, customer)
        return customer, True

    logger.info("customer_cache_miss", email=email)
    existing = await gateway.find_customer(email)
    if existing is not None:
        customer = await _refresh(existing)
    else:
        customer = await gateway.create_customer(email=email, name=name, phone=phone, metadata=customer_meta)
    cache.set(email, customer)
    return customer, False


@router.post("/payment-intents", response_model=PaymentIntentOut)
async def create_payment_intent(
    request: Request,
    x_idempotency_key: str | None = Header(default=None, alias="x-idempotency-key"),
    services: Services = Depends(get_services),
    _: None = Depends(rate_limit("payment_intent")),
) -> PaymentIntentOut:
    settings = services.settings
    if not services.stripe.configured:
        logger.error("stripe_not_configured")
        raise ApiError(500, "Internal server error. Please try again later.")

    body = await read_json_object(request)
    idempotency_key = _idempotency_key(x_idempotency_key, body)

    validation = validate_payment_request(body, settings.default_amount_cents)
    if not validation.is_valid or validation.sanitized is None:
        logger.info("payment_validation_failed", errors=validation.errors)
        raise ApiError(400, "Validation failed", details=validation.errors)
    data = validation.sanitized

    try:
        customer, cache_hit = await _resolve_customer(services, data)
    except OperationTimeout:
        raise ApiError(
            504, "Customer service temporarily unavailable. Please try again.", code="service_timeout"
        ) from None
    except stripe.StripeError as exc:
        logger.error("customer_resolution_failed", error=str(exc), error_type=type(exc).__name__)
        raise ApiError(500, "Error processing customer information") from None

    metadata: dict[str, Any] = {
        "lead_id": data["lead_id"],
        "event_id": data["event_id"],
        "user_session_id": data["user_session_id"],
        "customer_name": data["full_name"],
        "customer_email": data["email"],
        "customer_phone": data["phone"],
        "event_name": settings.event_name,
        "event_date": settings.event_date,
        "spot_type": "first_lot_early_bird",
        "source": "checkout_modal",
        "created_at": now_iso(),
        "idempotency_key": idempotency_key,
        **{k: v for k, v in data.items() if k.startswith("utm_")},
    }

    try:
        intent = await services.stripe.create_payment_intent(
            idempotency_key=idempotency_key,
            amount=data["amount"],
            currency=data["currency"],
            customer=customer["id"],
            automatic_payment_methods={"enabled": True, "allow_redirects": "always"},
            metadata=metadata,
            description=f"{settings.event_name}: {data['full_name']}",
            receipt_email=data["email"],
            payment_method_options={
                "card": {"request_three_d_secure": "automatic", "setup_future_usage": "off_session"},
                "sepa_debit": {"setup_future_usage": "off_session"},
            },
        )
    except OperationTimeout:
        raise ApiError(504, "Request timed out. Please try again.", code="request_timeout") from None
    except stripe.StripeError as exc:
        logger.error("payment_intent_failed", error=str(exc), error_type=type(exc).__name__)
        raise _stripe_error(exc) from None

    logger.info(
        "payment_intent_created",
        payment_intent_id=intent["id"],
        email=data["email"],
        amount=data["amount"],
        cache_hit=cache_hit,
        cache=services.customer_cache.stats(),
    )
    return PaymentIntentOut(
        client_secret=intent.get("client_secret"),
        payment_intent_id=intent["id"],
        customer_id=customer["id"],
        amount=data["amount"],
        currency=data["currency"],
        idempotency_key=idempotency_key,
        cache_hit=cache_hit,
    )


def _discounted(amount: int, currency: str, coupon: dict[str, Any]) -> tuple[int, str]:
    percent_off = coupon.get("percent_off")
    amount_off = coupon.get("amount_off")
    if isinstance(percent_off, (int, float)):
        return max(MIN_CHARGE_CENTS, int(amount * (1 - percent_off / 100))), "percent"
    if isinstance(amount_off, int):
        if (coupon.get("currency") or "").lower() != currency:
            raise ApiError(400, "Coupon currency does not match")
        return max(MIN_CHARGE_CENTS, amount - amount_off), "amount"
    raise ApiError(400, "Unsupported coupon type")


@router.post("/promo-code", response_model=PromoCodeOut)
async def apply_promo_code(
    payload: PromoCodeIn,
    services: Services = Depends(get_services),
) -> PromoCodeOut:
    payment_intent_id = payload.payment_intent_id.strip()
    code = payload.promo_code.strip()
    if not payment_intent_id or not code:
        raise ApiError(400, "Missing payment_intent_id or promo_code")
    if not services.stripe.configured:
        logger.error("stripe_not_configured")
        raise ApiError(500, "Stripe secret key not configured")

    try:
        intent = await services.stripe.retrieve_payment_intent(payment_intent_id)
        if intent["status"] in ("succeeded", "canceled"):
            raise ApiError(400, f"PaymentIntent is {intent['status']}")

        currency = intent["currency"].lower()
        original = int(intent["amount"])

        promo = await services.stripe.find_promotion_code(code)
        coupon = (promo or {}).get("coupon")
        if not coupon or coupon.get("valid") is False:
            raise ApiError(400, "Invalid or inactive promotion code")

        restrictions = promo.get("restrictions") or {}
        minimum = restrictions.get("minimum_amount")
        if minimum and (restrictions.get("minimum_amount_currency") or "").lower() == currency and original < minimum:
            raise ApiError(400, "Order amount does not meet minimum for this code")

        discounted, discount_type = _discounted(original, currency, coupon)
        discount_value = original - discounted
        metadata = {
            **dict(intent.get("metadata") or {}),
            "coupon_code": promo.get("code"),
            "coupon_id": str(coupon.get("id")),
            "discount_type": discount_type,
            "discount_value": str(discount_value),
            "discounted_from": str(original),
        }
        updated = await services.stripe.update_payment_intent(payment_intent_id, amount=discounted, metadata=metadata)
    except OperationTimeout:
        raise ApiError(504, "Request timed out. Please try again.", code="request_timeout") from None
    except stripe.StripeError as exc:
        logger.error("promo_code_failed", payment_intent_id=payment_intent_id, error=str(exc))
        raise ApiError(500, exc.user_message or str(exc)) from None

    logger.info(
        "promo_code_applied",
        payment_intent_id=payment_intent_id,
        code=promo.get("code"),
        original_amount=original,
        discounted_amount=discounted,
    )
    return PromoCodeOut(
        payment_intent_id=updated["id"],
        client_secret=updated.get("client_secret"),
        currency=updated["currency"],
        original_amount=original,
        discounted_amount=discounted,
        discount_applied=discount_value > 0,
        coupon=CouponOut(
            code=promo.get("code"),
            id=str(coupon.get("id")) if coupon.get("id") is not None else None,
            percent_off=coupon.get("percent_off") or None,
            amount_off=coupon.get("amount_off") or None,
        ),
    )
