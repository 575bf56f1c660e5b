import itertools
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from funnel.config import Settings
from funnel.main import create_app
from funnel.services import Services, build_services
from funnel.webhooks.signature import sign_payload

WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_KEY = "admin-test-key"


class FakeStripeGateway:
    """Stands in for StripeGateway; returns plain dicts like the SDK objects."""

    configured = True

    def __init__(self):
        self._ids = itertools.count(1)
        self.customers: dict[str, dict] = {}
        self.intents: dict[str, dict] = {}
        self.sessions: dict[str, dict] = {}
        self.promotion_codes: dict[str, dict] = {}
        self.calls: list[tuple[str, dict]] = []
        self.fail_create_intent: Exception | None = None
        self.fail_retrieve_session: Exception | None = None

    async def find_customer(self, email):
        self.calls.append(("find_customer", {"email": email}))
        return next((c for c in self.customers.values() if c["email"] == email), None)

    async def create_customer(self, **params):
        self.calls.append(("create_customer", params))
        customer = {"id": f"cus_test_{next(self._ids)}", **params}
        self.customers[customer["id"]] = customer
        return customer

    async def update_customer(self, customer_id, **params):
        self.calls.append(("update_customer", {"id": customer_id, **params}))
        customer = {**self.customers.get(customer_id, {"id": customer_id}), **params}
        self.customers[customer_id] = customer
        return customer

    async def create_payment_intent(self, *, idempotency_key, **params):
        self.calls.append(("create_payment_intent", {"idempotency_key": idempotency_key, **params}))
        if self.fail_create_intent is not None:
            raise self.fail_create_intent
        pi_id = f"pi_test_{next(self._ids)}"
        intent = {"id": pi_id, "client_secret": f"{pi_id}_secret", "status": "requires_payment_method", **params}
        self.intents[pi_id] = intent
        return intent

    async def retrieve_payment_intent(self, payment_intent_id):
        self.calls.append(("retrieve_payment_intent", {"id": payment_intent_id}))
        return self.intents[payment_intent_id]

    async def update_payment_intent(self, payment_intent_id, **params):
        self.calls.append(("update_payment_intent", {"id": payment_intent_id, **params}))
        self.intents[payment_intent_id].update(params)
        return self.intents[payment_intent_id]

    async def find_promotion_code(self, code):
        self.calls.append(("find_promotion_code", {"code": code}))
        return self.promotion_codes.get(code)

    async def retrieve_checkout_session(self, session_id):
        self.calls.append(("retrieve_checkout_session", {"id": session_id}))
        if self.fail_retrieve_session is not None:
            raise self.fail_retrieve_session
        return self.sessions[session_id]

    def called(self, name):
        return [params for call, params in self.calls if call == name]


class Upstream:
    """httpx MockTransport handler answering for the outbound integrations."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.overrides: dict[tuple[str, str], list[httpx.Response | Exception]] = {}

    def respond(self, method: str, host: str, *responses: httpx.Response | Exception) -> None:
        # the last response repeats once the list runs out; exceptions are raised
        self.overrides[(method, host)] = list(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queued = self.overrides.get((request.method, request.url.host))
        if queued:
            response = queued.pop(0) if len(queued) > 1 else queued[0]
            if isinstance(response, Exception):
                raise response
            return response
        return self._default(request)

    def _default(self, request: httpx.Request) -> httpx.Response:
        host, method = request.url.host, request.method
        if host == "mailerlite.test":
            if method == "POST" and request.url.path.endswith("/subscribers"):
                return httpx.Response(201, json={"data": {"id": "sub_1"}})
            if method == "GET":
                return httpx.Response(200, json={"data": [{"id": "sub_1"}]})
            if method == "DELETE":
                return httpx.Response(204)
            return httpx.Response(200, json={"data": {"id": "sub_1"}})
        if host == "crm.test":
            return httpx.Response(201, json={"id": "crm_1"})
        if host == "ga4.test":
            return httpx.Response(204)
        if host in ("sgtm.test", "sgtm-preview.test"):
            return httpx.Response(200, text="ok", headers={"content-type": "text/plain"})
        return httpx.Response(404)

    def calls(self, host: str, method: str | None = None) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.host == host and (method is None or r.method == method)]

    def json_bodies(self, host: str, method: str | None = None) -> list[dict]:
        return [json.loads(r.content) for r in self.calls(host, method) if r.content]


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        _env_file=None,
        app_env="test",
        log_level="WARNING",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        mailerlite_api_key="ml_test_key",
        mailerlite_api_url="https://mailerlite.test/api",
        mailerlite_checkout_started_group_id="g_started",
        mailerlite_abandoned_payment_group_id="g_abandoned",
        mailerlite_buyer_pending_group_id="g_pending",
        mailerlite_buyer_paid_group_id="g_paid",
        crm_api_url="https://crm.test/contact-card",
        crm_company_id="company_1",
        crm_board_id="board_1",
        crm_column_id="column_1",
        ga4_measurement_id="G-TEST",
        ga4_api_secret="ga4_secret",
        ga4_endpoint="https://ga4.test",
        sgtm_endpoint="https://sgtm.test",
        sgtm_preview_endpoint="https://sgtm-preview.test",
        pii_hash_salt="test-salt",
        retry_max_retries=1,
        retry_base_delay_seconds=0,
        admin_key=ADMIN_KEY,
    )


@pytest.fixture()
def upstream() -> Upstream:
    return Upstream()


@pytest.fixture()
def stripe_gateway() -> FakeStripeGateway:
    return FakeStripeGateway()


@pytest.fixture()
def services(settings, upstream, stripe_gateway) -> Services:
    http = httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))
    return build_services(settings, http=http, stripe_gateway=stripe_gateway)


@pytest.fixture()
def client(settings, services) -> TestClient:
    app = create_app(settings, services)
    return TestClient(app)


def signed_headers(raw: bytes, secret: str = WEBHOOK_SECRET) -> dict[str, str]:
    return {"content-type": "application/json", "stripe-signature": sign_payload(raw, secret)}


def post_webhook(client: TestClient, event: dict, secret: str = WEBHOOK_SECRET):
    raw = json.dumps(event).encode("utf-8")
    return client.post("/webhooks/stripe", content=raw, headers=signed_headers(raw, secret))


def payment_intent_event(event_id: str, event_type: str = "payment_intent.succeeded", **obj) -> dict:
    pi = {
        "id": "pi_test_1",
        "amount": 18000,
        "currency": "eur",
        "status": "succeeded",
        "metadata": {
            "customer_email": "buyer@example.com",
            "customer_name": "Maria Silva",
            "customer_phone": "+351912345678",
            "utm_source": "instagram",
        },
    }
    pi.update(obj)
    return {"id": event_id, "type": event_type, "livemode": False, "data": {"object": pi}}


def checkout_session_event(event_id: str, event_type: str = "checkout.session.completed", **obj) -> dict:
    session = {
        "id": "cs_test_1",
        "payment_status": "paid",
        "payment_intent": "pi_cs_1",
        "amount_total": 18000,
        "currency": "eur",
        "customer_details": {"email": "buyer@example.com", "name": "Maria Silva", "phone": "+351912345678"},
        "metadata": {},
    }
    session.update(obj)
    return {"id": event_id, "type": event_type, "livemode": False, "data": {"object": session}}
