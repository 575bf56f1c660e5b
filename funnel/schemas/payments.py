from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaymentIntentOut(CamelModel):
    client_secret: str | None = None
    payment_intent_id: str
    customer_id: str
    amount: int
    currency: str
    idempotency_key: str
    cache_hit: bool = False


class PromoCodeIn(BaseModel):
    payment_intent_id: str = ""
    promo_code: str = ""


class CouponOut(BaseModel):
    code: str | None = None
    id: str | None = None
    percent_off: float | None = None
    amount_off: int | None = None


class PromoCodeOut(BaseModel):
    success: bool = True
    payment_intent_id: str
    client_secret: str | None = None
    currency: str
    original_amount: int
    discounted_amount: int
    discount_applied: bool
    coupon: CouponOut
