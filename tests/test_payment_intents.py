import stripe

from funnel.errors import OperationTimeout

EVENT_ID = "2f1e7c52-4b1a-4c3e-9d2f-6a7b8c9d0e1f"
SESSION_ID = "7a6b5c4d-3e2f-4a1b-8c9d-0e1f2a3b4c5d"


def checkout_body(**overrides):
    body = {
        "event_id": EVENT_ID,
        "user_session_id": SESSION_ID,
        "lead_id": "lead_abc12345",
        "full_name": "Maria Silva",
        "email": "maria@example.com",
        "phone": "+351912345678",
        "utm_source": "instagram",
        "utm_campaign": "launch",
    }
    body.update(overrides)
    return body


def create_intent(client, body=None, **headers):
    return client.post("/api/payment-intents", json=body or checkout_body(), headers=headers)


def test_create_payment_intent(client, stripe_gateway):
    r = create_intent(client, **{"x-idempotency-key": "idem_1"})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["paymentIntentId"].startswith("pi_test_")
    assert body["clientSecret"] == f"{body['paymentIntentId']}_secret"
    assert body["customerId"].startswith("cus_test_")
    assert body["amount"] == 18000
    assert body["currency"] == "eur"
    assert body["idempotencyKey"] == "idem_1"
    assert body["cacheHit"] is False

    (params,) = stripe_gateway.called("create_payment_intent")
    assert params["idempotency_key"] == "idem_1"
    assert params["customer"] == body["customerId"]
    assert params["receipt_email"] == "maria@example.com"
    metadata = params["metadata"]
    assert metadata["customer_email"] == "maria@example.com"
    assert metadata["customer_name"] == "Maria Silva"
    assert metadata["utm_campaign"] == "launch"
    assert metadata["lead_id"] == "lead_abc12345"
    assert r.headers["X-RateLimit-Limit"] == "5"


def test_idempotency_key_from_body_or_generated(client, stripe_gateway):
    r = create_intent(client, checkout_body(idempotency_key="idem_body"))
    assert r.json()["idempotencyKey"] == "idem_body"

    r = create_intent(client)
    assert r.json()["idempotencyKey"].startswith("pi_")


def test_customer_cache_hit_on_second_checkout(client, stripe_gateway):
    assert create_intent(client).json()["cacheHit"] is False

    r = create_intent(client)
    assert r.json()["cacheHit"] is True
    assert len(stripe_gateway.called("create_customer")) == 1
    assert len(stripe_gateway.called("find_customer")) == 1
    assert stripe_gateway.called("update_customer") == []


def test_cached_customer_updated_when_details_change(client, stripe_gateway):
    create_intent(client)
    r = create_intent(client, checkout_body(phone="+351913000000"))
    assert r.json()["cacheHit"] is True

    (update,) = stripe_gateway.called("update_customer")
    assert update["phone"] == "+351913000000"


def test_existing_stripe_customer_is_reused(client, stripe_gateway):
    stripe_gateway.customers["cus_existing"] = {"id": "cus_existing", "email": "maria@example.com", "metadata": {}}

    r = create_intent(client)
    assert r.json()["customerId"] == "cus_existing"
    assert stripe_gateway.called("create_customer") == []
    assert stripe_gateway.called("update_customer")[0]["id"] == "cus_existing"


def test_amount_limits(client):
    r = create_intent(client, checkout_body(amount=49))
    assert r.status_code == 400
    assert r.json()["error"] == "Validation failed"
    assert any("Amount must be between" in d for d in r.json()["details"])

    r = create_intent(client, checkout_body(amount=50))
    assert r.status_code == 200
    assert r.json()["amount"] == 50


def test_validation_errors_are_listed(client, stripe_gateway):
    r = create_intent(client, checkout_body(email="nope", event_id="123"))
    assert r.status_code == 400
    assert "Invalid email format" in r.json()["details"]
    assert "Invalid event_id format (expected UUID v4)" in r.json()["details"]
    assert stripe_gateway.calls == []


def test_invalid_json_body(client):
    r = client.post("/api/payment-intents", content=b"{not json", headers={"content-type": "application/json"})
    assert r.status_code == 400
    assert r.json()["error"] == "Invalid JSON in request body"


def test_card_error_maps_to_400(client, stripe_gateway):
    stripe_gateway.fail_create_intent = stripe.CardError("Your card was declined.", None, "card_declined")

    r = create_intent(client)
    assert r.status_code == 400
    assert r.json()["error"].startswith("Card error")


def test_idempotency_conflict_maps_to_409(client, stripe_gateway):
    stripe_gateway.fail_create_intent = stripe.IdempotencyError("Keys for idempotent requests can only be used once")

    r = create_intent(client)
    assert r.status_code == 409
    assert r.json()["code"] == "idempotency_conflict"


def test_stripe_rate_limit_maps_to_429(client, stripe_gateway):
    stripe_gateway.fail_create_intent = stripe.RateLimitError("slow down")

    r = create_intent(client)
    assert r.status_code == 429


def test_stripe_connection_error_maps_to_500(client, stripe_gateway):
    stripe_gateway.fail_create_intent = stripe.APIConnectionError("unreachable")

    r = create_intent(client)
    assert r.status_code == 500
    assert r.json()["error"] == "Network error. Please try again."


def test_stripe_timeout_maps_to_504(client, stripe_gateway):
    stripe_gateway.fail_create_intent = OperationTimeout("PaymentIntent creation", 30)

    r = create_intent(client)
    assert r.status_code == 504
    assert r.json()["code"] == "request_timeout"


def test_unconfigured_stripe_returns_500(client, stripe_gateway):
    stripe_gateway.configured = False

    r = create_intent(client)
    assert r.status_code == 500
    assert stripe_gateway.calls == []


def test_payment_intents_are_rate_limited(client, settings):
    for _ in range(settings.rate_limit_payment_max):
        assert create_intent(client).status_code == 200

    r = create_intent(client)
    assert r.status_code == 429
    assert r.json()["message"] == "Maximum 5 payment attempts per 15 minutes."


def test_promo_code_percent_discount(client, stripe_gateway):
    pi_id = create_intent(client).json()["paymentIntentId"]
    stripe_gateway.promotion_codes["LAUNCH20"] = {
        "code": "LAUNCH20",
        "coupon": {"id": "co_1", "percent_off": 20, "valid": True},
        "restrictions": {},
    }

    r = client.post("/api/promo-code", json={"payment_intent_id": pi_id, "promo_code": " LAUNCH20 "})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["success"] is True
    assert body["original_amount"] == 18000
    assert body["discounted_amount"] == 14400
    assert body["discount_applied"] is True
    assert body["coupon"]["code"] == "LAUNCH20"

    intent = stripe_gateway.intents[pi_id]
    assert intent["amount"] == 14400
    assert intent["metadata"]["coupon_code"] == "LAUNCH20"
    assert intent["metadata"]["discount_value"] == "3600"


def test_promo_code_amount_discount_keeps_minimum_charge(client, stripe_gateway):
    pi_id = create_intent(client).json()["paymentIntentId"]
    stripe_gateway.promotion_codes["FREE"] = {
        "code": "FREE",
        "coupon": {"id": "co_2", "amount_off": 50000, "currency": "eur", "valid": True},
    }

    r = client.post("/api/promo-code", json={"payment_intent_id": pi_id, "promo_code": "FREE"})
    assert r.json()["discounted_amount"] == 50


def test_promo_code_rejections(client, stripe_gateway):
    pi_id = create_intent(client).json()["paymentIntentId"]

    r = client.post("/api/promo-code", json={"payment_intent_id": pi_id})
    assert r.status_code == 400
    assert r.json()["error"] == "Missing payment_intent_id or promo_code"

    r = client.post("/api/promo-code", json={"payment_intent_id": pi_id, "promo_code": "NOPE"})
    assert r.status_code == 400
    assert r.json()["error"] == "Invalid or inactive promotion code"

    stripe_gateway.promotion_codes["USD10"] = {
        "code": "USD10",
        "coupon": {"id": "co_3", "amount_off": 1000, "currency": "usd", "valid": True},
    }
    r = client.post("/api/promo-code", json={"payment_intent_id": pi_id, "promo_code": "USD10"})
    assert r.status_code == 400
    assert r.json()["error"] == "Coupon currency does not match"

    stripe_gateway.intents[pi_id]["status"] = "succeeded"
    r = client.post("/api/promo-code", json={"payment_intent_id": pi_id, "promo_code": "USD10"})
    assert r.status_code == 400
    assert r.json()["error"] == "PaymentIntent is succeeded"


def test_promo_code_minimum_amount(client, stripe_gateway):
    pi_id = create_intent(client).json()["paymentIntentId"]
    stripe_gateway.promotion_codes["BIG"] = {
        "code": "BIG",
        "coupon": {"id": "co_4", "percent_off": 10, "valid": True},
        "restrictions": {"minimum_amount": 50000, "minimum_amount_currency": "eur"},
    }

    r = client.post("/api/promo-code", json={"payment_intent_id": pi_id, "promo_code": "BIG"})
    assert r.status_code == 400
    assert r.json()["error"] == "Order amount does not meet minimum for this code"


def test_cors_preflight_and_allowed_origins(client, settings):
    r = client.options("/api/payment-intents", headers={"origin": "https://preview-12--site.netlify.app"})
    assert r.status_code == 200
    assert r.headers["access-control-allow-origin"] == "https://preview-12--site.netlify.app"
    assert r.headers["access-control-max-age"] == "86400"
    assert "X-Idempotency-Key" in r.headers["access-control-allow-headers"]

    r = client.options("/api/payment-intents", headers={"origin": "https://evil.example"})
    assert r.headers["access-control-allow-origin"] == settings.canonical_origin

    r = client.options("/api/metrics", headers={"origin": "https://evil.example"})
    assert r.headers["access-control-allow-origin"] == "*"
