import json

import httpx
import pytest

from funnel.clients.analytics import validate_purchase_event
from funnel.models.enums import CircuitState, ResultCode


def purchase_event(**overrides):
    event = {
        "client_id": "cid_1",
        "transaction_id": "pi_1",
        "value": 180.0,
        "currency": "EUR",
        "items": [{"item_id": "ticket", "item_name": "Ticket", "quantity": 1, "price": 180.0}],
        "user_data": {"sha256_email_address": "abc"},
    }
    event.update(overrides)
    return event


@pytest.mark.asyncio
async def test_mailerlite_upsert_created(services, upstream):
    result = await services.mailerlite.upsert_subscriber(
        "buyer@example.com", {"phone": "912345678", "utm_term": None}, groups=["g_started"], name="Maria"
    )
    assert result.success
    assert result.action == "created"
    assert result.resource_id == "sub_1"

    (request,) = upstream.requests
    assert request.headers["authorization"] == "Bearer ml_test_key"
    body = json.loads(request.content)
    assert body["groups"] == ["g_started"]
    assert body["fields"] == {"phone": "912345678", "name": "Maria"}
    assert body["status"] == "active"


@pytest.mark.asyncio
async def test_mailerlite_validation_error_is_not_retried(services, upstream):
    upstream.respond(
        "POST",
        "mailerlite.test",
        httpx.Response(422, json={"message": "invalid", "errors": {"email": ["The email must be valid."]}}),
    )

    result = await services.mailerlite.upsert_subscriber("nope", {})
    assert not result.success
    assert result.code is ResultCode.bad_request
    assert "email: The email must be valid." in result.reason
    assert len(upstream.requests) == 1


@pytest.mark.asyncio
async def test_mailerlite_rate_limit_is_retried(services, upstream):
    upstream.respond("POST", "mailerlite.test", httpx.Response(429), httpx.Response(200, json={"data": {"id": "sub_9"}}))

    result = await services.mailerlite.upsert_subscriber("buyer@example.com", {})
    assert result.success
    assert result.action == "updated"
    assert len(upstream.requests) == 2


@pytest.mark.asyncio
async def test_mailerlite_not_configured(services, upstream):
    services.mailerlite.api_key = None

    result = await services.mailerlite.upsert_subscriber("buyer@example.com", {})
    assert result.code is ResultCode.not_configured
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_mailerlite_move_between_groups(services, upstream):
    result = await services.mailerlite.move_between_groups("buyer@example.com", "g_started", "g_paid")
    assert result.success
    assert result.action == "moved"

    calls = [(r.method, r.url.path) for r in upstream.requests]
    assert calls == [
        ("GET", "/api/subscribers"),
        ("DELETE", "/api/subscribers/sub_1/groups/g_started"),
        ("POST", "/api/subscribers/sub_1/groups/g_paid"),
    ]
    assert upstream.requests[0].url.params["filter[email]"] == "buyer@example.com"


@pytest.mark.asyncio
async def test_mailerlite_move_unknown_subscriber(services, upstream):
    upstream.respond("GET", "mailerlite.test", httpx.Response(200, json={"data": []}))

    result = await services.mailerlite.move_between_groups("ghost@example.com", "g_started", "g_paid")
    assert not result.success
    assert result.reason == "subscriber not found"
    assert len(upstream.requests) == 1


@pytest.mark.asyncio
async def test_mailerlite_removal_404_still_adds(services, upstream):
    upstream.respond("DELETE", "mailerlite.test", httpx.Response(404))

    result = await services.mailerlite.move_between_groups("buyer@example.com", "g_started", "g_paid")
    assert result.success
    assert upstream.calls("mailerlite.test", "POST")[0].url.path.endswith("/groups/g_paid")


@pytest.mark.asyncio
async def test_crm_contact_card_payload(services, upstream):
    result = await services.crm.send_contact_card(
        name="Maria Silva", phone="912345678", email="m@example.com", amount="0", contact_tags=["lead"]
    )
    assert result.success
    assert result.resource_id == "crm_1"

    body = upstream.json_bodies("crm.test")[0]
    assert body["company_id"] == "company_1"
    assert body["board_id"] == "board_1"
    assert body["column_id"] == "column_1"
    assert body["title"] == "Maria Silva"
    assert body["contact_tags"] == ["lead"]


@pytest.mark.asyncio
async def test_crm_duplicate_is_skipped(services, upstream):
    upstream.respond("POST", "crm.test", httpx.Response(409, json={"existing_card": {"contact": {"id": 77}}}))

    result = await services.crm.send_contact_card(name="Maria Silva", phone="912345678")
    assert result.success
    assert result.code is ResultCode.skipped
    assert result.resource_id == "77"


@pytest.mark.asyncio
async def test_crm_not_configured_without_board(services, upstream):
    services.crm.board_id = None

    result = await services.crm.send_contact_card(name="Maria Silva", phone="912345678")
    assert result.code is ResultCode.not_configured
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_crm_circuit_opens_after_repeated_failures(services, upstream):
    upstream.respond("POST", "crm.test", httpx.Response(503))
    threshold = services.crm.breaker.failure_threshold

    for _ in range(threshold):
        await services.crm.send_contact_card(name="Maria Silva", phone="912345678")
    assert services.crm.breaker.state is CircuitState.open
    sent = len(upstream.calls("crm.test"))

    result = await services.crm.send_contact_card(name="Maria Silva", phone="912345678")
    assert result.code is ResultCode.circuit_open
    assert result.recoverable is True
    assert len(upstream.calls("crm.test")) == sent


@pytest.mark.asyncio
async def test_crm_network_error(services, upstream):
    upstream.respond("POST", "crm.test", httpx.ConnectError("connection refused"))

    result = await services.crm.send_contact_card(name="Maria Silva", phone="912345678")
    assert not result.success
    assert result.code is ResultCode.network_error


@pytest.mark.asyncio
async def test_analytics_purchase_goes_to_debug_endpoint(services, upstream):
    result = await services.analytics.send_purchase(purchase_event())
    assert result.success

    (request,) = upstream.calls("ga4.test")
    assert request.url.path == "/debug/mp/collect"
    assert request.url.params["measurement_id"] == "G-TEST"
    assert request.url.params["api_secret"] == "ga4_secret"
    body = json.loads(request.content)
    assert body["client_id"] == "cid_1"
    assert body["user_data"] == {"sha256_email_address": "abc"}
    assert body["events"][0]["params"]["transaction_id"] == "pi_1"


@pytest.mark.asyncio
async def test_analytics_invalid_event_is_not_sent(services, upstream):
    result = await services.analytics.send_purchase(purchase_event(value=0, items=[]))
    assert not result.success
    assert result.code is ResultCode.bad_request
    assert upstream.requests == []


def test_purchase_event_validation_messages():
    errors = validate_purchase_event(
        purchase_event(client_id="", items=[{"item_id": "", "item_name": "x", "quantity": 0, "price": "1"}])
    )
    assert errors == [
        "client_id is required",
        "item[0].item_id is required",
        "item[0].quantity must be greater than 0",
        "item[0].price must be a number",
    ]
