from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any

import structlog

from funnel.clients.analytics import AnalyticsClient
from funnel.clients.base import IntegrationResult
from funnel.clients.crm import CRMClient
from funnel.clients.mailerlite import MailerLiteClient
from funnel.clients.stripe_gateway import StripeGateway
from funnel.config import Settings
from funnel.fulfillment import FulfillmentTracker, checkout_session_key, payment_intent_key
from funnel.lifecycle import (
    buyer_fields,
    can_transition,
    group_id,
    group_name,
    multibanco_fields,
    now_iso,
    split_name,
)
from funnel.models.enums import FulfillmentType, LifecycleGroup, PaymentStatus, ResultCode
from funnel.pii import PIIHasher
from funnel.resilience import retry_with_backoff
from funnel.schemas.webhooks import CheckoutSessionObject, DisputeObject, PaymentIntentObject

logger = structlog.get_logger(__name__)


def _missing_customer(**ids: Any) -> dict[str, Any]:
    logger.warning("webhook_missing_customer", **ids)
    return {"status": "ignored", "reason": "missing_customer"}


def _summarize(results: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name, value in results.items():
        if isinstance(value, IntegrationResult):
            out[name] = value.as_dict()
        elif isinstance(value, dict):
            out[name] = _summarize(value)
    return out


class PaymentLifecycleHandlers:
    def __init__(
        self,
        settings: Settings,
        *,
        mailerlite: MailerLiteClient,
        crm: CRMClient,
        analytics: AnalyticsClient,
        stripe_gateway: StripeGateway,
        fulfillment: FulfillmentTracker,
        pii: PIIHasher,
    ):
        self.settings = settings
        self.mailerlite = mailerlite
        self.crm = crm
        self.analytics = analytics
        self.stripe = stripe_gateway
        self.fulfillment = fulfillment
        self.pii = pii

    # helpers

    async def _best_effort(self, label: str, operation: Awaitable[Any]) -> Any:
        try:
            return await operation
        except Exception as exc:
            logger.error("integration_step_failed", step=label, error=str(exc), error_type=type(exc).__name__)
            return IntegrationResult.failed(ResultCode.upstream_error, str(exc), recoverable=True)

    async def _concurrently(self, **steps: Awaitable[Any]) -> dict[str, Any]:
        names = list(steps)
        results = await asyncio.gather(*(self._best_effort(n, steps[n]) for n in names))
        return dict(zip(names, results))

    async def _transition(self, email: str, source: LifecycleGroup, target: LifecycleGroup) -> IntegrationResult:
        if not can_transition(source, target):
            logger.warning("lifecycle_transition_rejected", source=source.value, target=target.value)
            return IntegrationResult.failed(ResultCode.bad_request, "transition not allowed", recoverable=False)

        target_id = group_id(self.settings, target)
        if not target_id:
            logger.warning("lifecycle_group_unconfigured", group=group_name(self.settings, target))
            return IntegrationResult.failed(
                ResultCode.not_configured, f"group {target.value} not configured", recoverable=False
            )

        result = await self.mailerlite.move_between_groups(email, group_id(self.settings, source), target_id)
        logger.info(
            "lifecycle_transition",
            email=email,
            transition=f"{group_name(self.settings, source)} -> {group_name(self.settings, target)}",
            success=result.success,
            reason=result.reason,
        )
        return result

    async def _update_fields(self, email: str, fields: dict[str, Any]) -> IntegrationResult:
        return await self.mailerlite.update_subscriber_fields(email, fields)

    async def _crm_buyer_card(self, *, name: str, phone: str | None, email: str, amount_cents: int | None, order_id: str):
        return await self.crm.send_contact_card(
            name=name,
            phone=phone or "",
            email=email,
            amount=f"{(amount_cents or 0) / 100:.2f}",
            title=f"Buyer: {name}",
            obs=f"Payment confirmed. Order: {order_id}",
            contact_tags=["buyer", self.settings.event_tag],
        )

    async def _purchase_event(
        self,
        *,
        transaction_id: str,
        amount_cents: int | None,
        currency: str | None,
        email: str,
        name: str,
        phone: str | None,
        metadata: dict[str, Any],
        payment_method: str,
    ) -> IntegrationResult:
        first, last = split_name(name)
        value = (amount_cents or 0) / 100
        currency_code = (currency or self.settings.default_currency).upper()
        event = {
            "client_id": metadata.get("ga_client_id") or metadata.get("user_session_id") or transaction_id,
            "transaction_id": transaction_id,
            "value": value,
            "currency": currency_code,
            "items": [
                {
                    "item_id": metadata.get("spot_type") or "event_ticket",
                    "item_name": self.settings.event_name,
                    "quantity": 1,
                    "price": value,
                    "currency": currency_code,
                }
            ],
            "source": metadata.get("utm_source"),
            "medium": metadata.get("utm_medium"),
            "campaign": metadata.get("utm_campaign"),
            "user_data": self.pii.hash_user_data(email=email, phone=phone, first_name=first, last_name=last),
            "custom_parameters": {"payment_method": payment_method},
        }
        return await self.analytics.send_purchase(event)

    async def _expand_session(self, session: CheckoutSessionObject) -> CheckoutSessionObject:
        if not self.stripe.configured:
            logger.warning("stripe_not_configured", detail="using session from event payload", session_id=session.id)
            return session
        full = await retry_with_backoff(
            lambda: self.stripe.retrieve_checkout_session(session.id),
            self.settings.retry_max_retries,
            self.settings.retry_base_delay_seconds,
            label="Retrieve checkout session",
        )
        return CheckoutSessionObject.model_validate(full)

    # payment intents

    async def payment_succeeded(self, pi: PaymentIntentObject) -> dict[str, Any]:
        key = payment_intent_key(pi.id)
        if self.fulfillment.is_already_fulfilled(key):
            logger.info("payment_already_fulfilled", payment_intent_id=pi.id, fulfillment_key=key)
            return {"status": "already_fulfilled", "fulfillment_key": key}

        md = pi.metadata
        email, name, phone = md.get("customer_email"), md.get("customer_name"), md.get("customer_phone")
        if not email or not name:
            return _missing_customer(payment_intent_id=pi.id)

        logger.info("payment_succeeded", payment_intent_id=pi.id, amount=pi.amount, currency=pi.currency)
        fields = buyer_fields(
            self.settings,
            full_name=name,
            phone=phone,
            order_id=pi.id,
            amount_cents=pi.amount,
            payment_status=PaymentStatus.paid.value,
            metadata=md,
        )

        async def _mailerlite() -> dict[str, Any]:
            subscriber = await self.mailerlite.upsert_subscriber(email, fields, name=name)
            lifecycle = await self._transition(email, LifecycleGroup.checkout_started, LifecycleGroup.buyer_paid)
            return {"subscriber": subscriber, "lifecycle": lifecycle}

        results = await self._concurrently(
            mailerlite=_mailerlite(),
            crm=self._crm_buyer_card(name=name, phone=phone, email=email, amount_cents=pi.amount, order_id=pi.id),
            analytics=self._purchase_event(
                transaction_id=pi.id,
                amount_cents=pi.amount,
                currency=pi.currency,
                email=email,
                name=name,
                phone=phone,
                metadata=md,
                payment_method="payment_intent",
            ),
        )
        logger.info("automation_triggered", automation="confirmation_email", email=email)

        self.fulfillment.mark_as_fulfilled(
            key,
            customer_email=email,
            payment_intent_id=pi.id,
            fulfillment_type=FulfillmentType.payment_intent.value,
        )
        return {"status": "fulfilled", "fulfillment_key": key, "integrations": _summarize(results)}

    async def payment_processing(self, pi: PaymentIntentObject) -> dict[str, Any]:
        email = pi.metadata.get("customer_email")
        if not email:
            return _missing_customer(payment_intent_id=pi.id)

        logger.info("payment_processing", payment_intent_id=pi.id)
        results: dict[str, Any] = {
            "fields": await self._best_effort(
                "update payment status",
                self._update_fields(
                    email, {"payment_status": PaymentStatus.processing.value, "payment_intent_id": pi.id}
                ),
            )
        }

        details = pi.multibanco_details()
        if details:
            results["multibanco"] = await self._best_effort(
                "update multibanco voucher", self._update_fields(email, multibanco_fields(details, pi.amount))
            )
            logger.info(
                "multibanco_voucher_recorded",
                payment_intent_id=pi.id,
                entity=details.get("entity"),
                reference=details.get("reference"),
            )

        results["lifecycle"] = await self._best_effort(
            "lifecycle transition",
            self._transition(email, LifecycleGroup.checkout_started, LifecycleGroup.buyer_pending),
        )
        return {"status": "processed", "integrations": _summarize(results)}

    async def payment_failed(self, pi: PaymentIntentObject) -> dict[str, Any]:
        reason = (pi.last_payment_error or {}).get("message") or "Unknown error"
        logger.warning("payment_failed", payment_intent_id=pi.id, reason=reason)

        email = pi.metadata.get("customer_email")
        if not email:
            return _missing_customer(payment_intent_id=pi.id)

        fields = {
            "payment_status": PaymentStatus.failed.value,
            "payment_intent_id": pi.id,
            "failure_date": now_iso(),
            "failure_reason": reason,
        }
        results = {
            "fields": await self._best_effort("update payment status", self._update_fields(email, fields)),
            "lifecycle": await self._best_effort(
                "lifecycle transition",
                self._transition(email, LifecycleGroup.checkout_started, LifecycleGroup.abandoned_payment),
            ),
        }
        logger.info("automation_triggered", automation="abandoned_cart", email=email)
        return {"status": "processed", "integrations": _summarize(results)}

    async def _status_only(self, pi: PaymentIntentObject, status: PaymentStatus, **extra: Any) -> dict[str, Any]:
        email = pi.metadata.get("customer_email")
        if not email:
            return _missing_customer(payment_intent_id=pi.id)
        fields = {"payment_status": status.value, "payment_intent_id": pi.id, **extra}
        result = await self._best_effort("update payment status", self._update_fields(email, fields))
        return {"status": "processed", "integrations": _summarize({"fields": result})}

    async def payment_canceled(self, pi: PaymentIntentObject) -> dict[str, Any]:
        logger.info("payment_canceled", payment_intent_id=pi.id)
        return await self._status_only(pi, PaymentStatus.canceled, canceled_date=now_iso())

    async def payment_requires_action(self, pi: PaymentIntentObject) -> dict[str, Any]:
        logger.info("payment_requires_action", payment_intent_id=pi.id, next_action=(pi.next_action or {}).get("type"))
        return await self._status_only(pi, PaymentStatus.requires_action, action_required_date=now_iso())

    async def payment_partially_funded(self, pi: PaymentIntentObject) -> dict[str, Any]:
        logger.warning("payment_partially_funded", payment_intent_id=pi.id, amount_received=pi.amount_received)
        return await self._status_only(
            pi,
            PaymentStatus.partially_funded,
            amount_received=pi.amount_received or 0,
            partial_funding_date=now_iso(),
        )

    async def charge_dispute_created(self, dispute: DisputeObject) -> dict[str, Any]:
        logger.error(
            "charge_dispute_created",
            dispute_id=dispute.id,
            charge_id=dispute.charge,
            amount=dispute.amount,
            reason=dispute.reason,
        )
        return {"status": "logged", "dispute_id": dispute.id}

    # checkout sessions

    async def _fulfil_session(
        self,
        session: CheckoutSessionObject,
        email: str,
        name: str,
        *,
        source: LifecycleGroup,
        fulfillment_type: FulfillmentType,
        payment_method: str,
    ) -> dict[str, Any]:
        phone = session.customer_phone
        order_id = session.payment_intent_id or session.id
        fields = buyer_fields(
            self.settings,
            full_name=name,
            phone=phone,
            order_id=order_id,
            amount_cents=session.amount_total,
            payment_status=PaymentStatus.paid.value,
            metadata=session.metadata,
        )
        fields.update({"session_id": session.id, "payment_method": payment_method, "payment_date": now_iso()})

        async def _mailerlite() -> dict[str, Any]:
            subscriber = await self.mailerlite.upsert_subscriber(email, fields, name=name)
            lifecycle = await self._transition(email, source, LifecycleGroup.buyer_paid)
            return {"subscriber": subscriber, "lifecycle": lifecycle}

        results = await self._concurrently(
            mailerlite=_mailerlite(),
            crm=self._crm_buyer_card(
                name=name, phone=phone, email=email, amount_cents=session.amount_total, order_id=order_id
            ),
            analytics=self._purchase_event(
                transaction_id=order_id,
                amount_cents=session.amount_total,
                currency=session.currency,
                email=email,
                name=name,
                phone=phone,
                metadata=session.metadata,
                payment_method=payment_method,
            ),
        )
        logger.info("automation_triggered", automation="confirmation_email", email=email)

        session_key = checkout_session_key(session.id)
        self.fulfillment.mark_as_fulfilled(
            session_key,
            customer_email=email,
            session_id=session.id,
            payment_intent_id=session.payment_intent_id,
            fulfillment_type=fulfillment_type.value,
        )
        keys = [session_key]
        if session.payment_intent_id:
            pi_key = payment_intent_key(session.payment_intent_id)
            self.fulfillment.mark_as_fulfilled(
                pi_key,
                customer_email=email,
                session_id=session.id,
                payment_intent_id=session.payment_intent_id,
                fulfillment_type=fulfillment_type.value,
            )
            keys.append(pi_key)
        return {"status": "fulfilled", "fulfillment_keys": keys, "integrations": _summarize(results)}

    async def _session_pending(self, session: CheckoutSessionObject, email: str, name: str) -> dict[str, Any]:
        key = checkout_session_key(session.id)
        fields = {
            "first_name": split_name(name)[0],
            "phone": session.customer_phone or "",
            "payment_status": PaymentStatus.pending_payment.value,
            "order_id": session.payment_intent_id or session.id,
            "session_id": session.id,
            "amount_pending": (session.amount_total or 0) / 100,
            "payment_method": "delayed_notification",
            "checkout_date": now_iso(),
            "voucher_generated": "true",
            "utm_source": session.metadata.get("utm_source"),
            "utm_medium": session.metadata.get("utm_medium"),
            "utm_campaign": session.metadata.get("utm_campaign"),
        }

        subscriber = await self._best_effort(
            "subscriber upsert", self.mailerlite.upsert_subscriber(email, fields, name=name)
        )
        lifecycle = await self._best_effort(
            "lifecycle transition",
            self._transition(email, LifecycleGroup.checkout_started, LifecycleGroup.buyer_pending),
        )
        logger.info("automation_triggered", automation="voucher_instructions", email=email, session_id=session.id)

        self.fulfillment.mark_pending(
            key,
            customer_email=email,
            session_id=session.id,
            payment_intent_id=session.payment_intent_id,
            fulfillment_type=FulfillmentType.pending_voucher.value,
        )
        return {
            "status": "pending_payment",
            "fulfillment_key": key,
            "integrations": _summarize({"subscriber": subscriber, "lifecycle": lifecycle}),
        }

    async def checkout_session_completed(self, session: CheckoutSessionObject) -> dict[str, Any]:
        logger.info(
            "checkout_session_completed",
            session_id=session.id,
            payment_status=session.payment_status,
            amount=session.amount_total,
        )
        full = await self._expand_session(session)
        email, name = full.customer_email, full.customer_name
        if not email or not name:
            return _missing_customer(session_id=full.id)

        key = checkout_session_key(full.id)
        if self.fulfillment.is_already_fulfilled(key):
            logger.info("checkout_session_already_fulfilled", session_id=full.id)
            return {"status": "already_fulfilled", "fulfillment_key": key}

        if full.payment_status == "paid":
            return await self._fulfil_session(
                full,
                email,
                name,
                source=LifecycleGroup.checkout_started,
                fulfillment_type=FulfillmentType.checkout_session,
                payment_method="card_or_instant",
            )
        if full.payment_status == "unpaid":
            return await self._session_pending(full, email, name)
        if full.payment_status == "no_payment_required":
            logger.info("checkout_free_order", session_id=full.id, email=email)
            return {"status": "no_payment_required"}

        logger.warning("checkout_unknown_payment_status", session_id=full.id, payment_status=full.payment_status)
        return {"status": "ignored", "reason": "unknown_payment_status"}

    async def checkout_async_payment_succeeded(self, session: CheckoutSessionObject) -> dict[str, Any]:
        logger.info("checkout_async_payment_succeeded", session_id=session.id, amount=session.amount_total)
        full = await self._expand_session(session)
        email, name = full.customer_email, full.customer_name
        if not email or not name:
            return _missing_customer(session_id=full.id)

        session_key = checkout_session_key(full.id)
        pi_key = payment_intent_key(full.payment_intent_id) if full.payment_intent_id else None
        if self.fulfillment.is_already_fulfilled(session_key) or (
            pi_key and self.fulfillment.is_already_fulfilled(pi_key)
        ):
            logger.info("checkout_session_already_fulfilled", session_id=full.id, payment_intent_key=pi_key)
            return {"status": "already_fulfilled", "fulfillment_key": session_key}

        return await self._fulfil_session(
            full,
            email,
            name,
            source=LifecycleGroup.buyer_pending,
            fulfillment_type=FulfillmentType.async_payment,
            payment_method="multibanco",
        )

    async def checkout_async_payment_failed(self, session: CheckoutSessionObject) -> dict[str, Any]:
        logger.warning("checkout_async_payment_failed", session_id=session.id, amount=session.amount_total)
        full = await self._expand_session(session)
        email = full.customer_email
        if not email:
            return _missing_customer(session_id=full.id)

        fields = {
            "payment_status": PaymentStatus.failed_async.value,
            "session_id": full.id,
            "failure_date": now_iso(),
            "failure_reason": "Async payment method failed or expired",
            "payment_method": "delayed_notification",
        }
        results = {
            "fields": await self._best_effort("update payment status", self._update_fields(email, fields)),
            "lifecycle": await self._best_effort(
                "lifecycle transition",
                self._transition(email, LifecycleGroup.buyer_pending, LifecycleGroup.abandoned_payment),
            ),
        }
        logger.info("automation_triggered", automation="abandoned_cart", email=email)
        return {"status": "processed", "integrations": _summarize(results)}
