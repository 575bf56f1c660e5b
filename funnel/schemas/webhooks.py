from __future__ import annotations

from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field

class StripeObject(BaseModel):
    model_config = ConfigDict(extra="allow")

class PaymentIntentObject(StripeObject):
    id: str
    amount: int = 0
    amount_received: int | None = None
    currency: str = "eur"
    status: str | None = None
    customer: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    next_action: dict[str, Any] | None = None
    last_payment_error: dict[str, Any] | None = None

    def multibanco_details(self) -> dict[str, Any] | None:
        details = (self.next_action or {}).get("multibanco_display_details")
        if not isinstance(details, dict):
            return None
        if not details.get("entity") or not details.get("reference"):
            return None
        return details

class CustomerDetails(StripeObject):
    email: str | None = None
    name: str | None = None
    phone: str | None = None

class CheckoutSessionObject(StripeObject):
    id: str
    payment_status: str | None = None
    payment_intent: str | dict[str, Any] | None = None
    amount_total: int | None = None
    currency: str | None = None
    customer_details: CustomerDetails | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def payment_intent_id(self) -> str | None:
        if isinstance(self.payment_intent, dict):
            return self.payment_intent.get("id")
        return self.payment_intent

    @property
    def customer_email(self) -> str | None:
        return (self.customer_details.email if self.customer_details else None) or self.metadata.get("customer_email")

    @property
    def customer_name(self) -> str | None:
        return (self.customer_details.name if self.customer_details else None) or self.metadata.get("customer_name")

    @property
    def customer_phone(self) -> str | None:
        return self.metadata.get("customer_phone") or (self.customer_details.phone if self.customer_details else None)

class DisputeObject(StripeObject):
    id: str
    charge: str | None = None
    amount: int | None = None
    currency: str | None = None
    reason: str | None = None
    status: str | None = None

class EventData(BaseModel):
    object: dict[str, Any]

O = TypeVar("O", bound=StripeObject)

class WebhookEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    livemode: bool = False
    created: int | None = None
    data: EventData

    def parse_object(self, model: type[O]) -> O:
        return model.model_validate(self.data.object)
