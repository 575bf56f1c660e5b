from __future__ import annotations

from typing import Any

import stripe

from funnel.resilience import with_timeout


class StripeGateway:
    def __init__(self, api_key: str | None, timeout: float = 30.0):
        self.api_key = api_key
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _configure(self) -> None:
        if not self.api_key:
            raise RuntimeError("Stripe secret key not configured")
        stripe.api_key = self.api_key

    async def find_customer(self, email: str) -> dict[str, Any] | None:
        self._configure()
        result = await with_timeout(stripe.Customer.list_async(email=email, limit=1), self.timeout, "Customer lookup")
        data = result["data"]
        return data[0] if data else None

    async def create_customer(self, **params: Any) -> dict[str, Any]:
        self._configure()
        return await with_timeout(stripe.Customer.create_async(**params), self.timeout, "Customer creation")

    async def update_customer(self, customer_id: str, **params: Any) -> dict[str, Any]:
        self._configure()
        return await with_timeout(
            stripe.Customer.modify_async(customer_id, **params), self.timeout, "Customer update"
        )

    async def create_payment_intent(self, *, idempotency_key: str, **params: Any) -> dict[str, Any]:
        self._configure()
        return await with_timeout(
            stripe.PaymentIntent.create_async(idempotency_key=idempotency_key, **params),
            self.timeout,
            "PaymentIntent creation",
        )

    async def retrieve_payment_intent(self, payment_intent_id: str) -> dict[str, Any]:
        self._configure()
        return await with_timeout(
            stripe.PaymentIntent.retrieve_async(payment_intent_id), self.timeout, "Retrieve PaymentIntent"
        )

    async def update_payment_intent(self, payment_intent_id: str, **params: Any) -> dict[str, Any]:
        self._configure()
        return await with_timeout(
            stripe.PaymentIntent.modify_async(payment_intent_id, **params),
            self.timeout,
            "Update PaymentIntent amount",
        )

    async def find_promotion_code(self, code: str) -> dict[str, Any] | None:
        self._configure()
        result = await with_timeout(
            stripe.PromotionCode.list_async(code=code, active=True, limit=1),
            self.timeout,
            "List Promotion Codes",
        )
        data = result["data"]
        return data[0] if data else None

    async def retrieve_checkout_session(self, session_id: str) -> dict[str, Any]:
        self._configure()
        return await with_timeout(
            stripe.checkout.Session.retrieve_async(session_id, expand=["line_items", "payment_intent"]),
            self.timeout,
            "Retrieve checkout session",
        )
