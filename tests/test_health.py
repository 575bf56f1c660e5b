import httpx
from fastapi.testclient import TestClient

from conftest import ADMIN_KEY, checkout_session_event, post_webhook
from funnel.main import create_app


def queue_failed_webhook(client, stripe_gateway, event_id="evt_dlq"):
    stripe_gateway.fail_retrieve_session = RuntimeError("stripe unavailable")
    r = post_webhook(client, checkout_session_event(event_id))
    assert r.json()["status"] == "queued_for_retry"


def test_health_and_ready(client):
    assert client.get("/health").json() == {"status": "ok"}

    r = client.get("/ready")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "checks": {}}


def test_request_id_is_echoed_or_generated(client):
    r = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert r.headers["x-request-id"] == "req-123"

    assert client.get("/health").headers["x-request-id"]


def test_health_check_requires_admin_key(client):
    r = client.get("/api/health-check")
    assert r.status_code == 401
    assert r.json() == {"error": "Unauthorized", "message": "Valid admin_key required"}

    assert client.get("/api/health-check", params={"admin_key": "wrong"}).status_code == 401


def test_health_check_closed_without_configured_key(client, settings):
    settings.admin_key = None
    assert client.get("/api/health-check", params={"admin_key": ""}).status_code == 401


def test_health_check_report(client):
    r = client.get("/api/health-check", headers={"x-admin-key": ADMIN_KEY})
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "healthy"
    assert body["services"]["integrations"] == {
        "stripe": True,
        "stripe_webhooks": True,
        "mailerlite": True,
        "crm": True,
        "ga4": True,
        "server_gtm": True,
    }
    assert body["summary"]["overall_health_percentage"] == 100
    assert "payment_intent.succeeded" in body["services"]["webhooks"]["handled_types"]


def test_health_check_unhealthy_without_webhook_secret(client, settings):
    settings.stripe_webhook_secret = None

    r = client.get("/api/health-check", params={"admin_key": ADMIN_KEY})
    assert r.status_code == 503
    assert r.json()["status"] == "unhealthy"
    assert "stripe_webhooks not configured" in r.json()["summary"]["critical_issues"]


def test_health_check_degraded_with_queued_events(client, stripe_gateway):
    queue_failed_webhook(client, stripe_gateway)

    body = client.get("/api/health-check", params={"admin_key": ADMIN_KEY}).json()
    assert body["status"] == "degraded"
    dlq = body["services"]["dead_letter_queue"]
    assert dlq["failed_events_count"] == 1
    assert dlq["failed_events"][0]["event_id"] == "evt_dlq"


def test_dlq_remove_and_clear(client, services, stripe_gateway):
    queue_failed_webhook(client, stripe_gateway, "evt_dlq_a")
    queue_failed_webhook(client, stripe_gateway, "evt_dlq_b")
    queue_failed_webhook(client, stripe_gateway, "evt_dlq_c")

    auth = {"x-admin-key": ADMIN_KEY}
    assert client.delete("/api/dlq/evt_dlq_a").status_code == 401

    r = client.delete("/api/dlq/evt_dlq_a", headers=auth)
    assert r.json() == {"removed": True, "event_id": "evt_dlq_a"}
    assert not services.dlq.contains("evt_dlq_a")
    assert client.delete("/api/dlq/evt_dlq_a", headers=auth).status_code == 404

    r = client.post("/api/dlq/clear", headers=auth)
    assert r.json() == {"cleared": 2}
    assert services.dlq.get_status()["failed_events_count"] == 0


def test_csp_report_is_accepted(client):
    r = client.post(
        "/api/csp-report",
        content=b'{"csp-report": {"violated-directive": "script-src"}}',
        headers={"content-type": "application/csp-report"},
    )
    assert r.status_code == 204
    assert r.headers["access-control-allow-origin"] == "*"


def test_metrics_batch(client):
    metrics = [
        {"metric_type": "core_web_vital", "name": "LCP", "value": 1800, "timestamp": "2025-09-01T10:00:00Z"},
        {"metric_type": "unknown", "timestamp": "2025-09-01T10:00:00Z"},
        {"name": "missing type"},
    ]
    r = client.post("/api/metrics", json=metrics)
    assert r.status_code == 200
    assert r.json()["success"] is True
    assert r.json()["metrics_received"] == 1


def test_metrics_batch_too_large(client, settings):
    metric = {"metric_type": "performance", "timestamp": "2025-09-01T10:00:00Z"}
    r = client.post("/api/metrics", json=[metric] * (settings.metrics_max_per_request + 1))
    assert r.status_code == 400
    assert r.json() == {"error": "Too many metrics. Maximum 50 per request.", "success": False}


def test_gtm_proxy_forwards_to_server_container(client, upstream):
    r = client.get("/api/gtm-proxy/g/collect?v=2&tid=G-TEST", headers={"user-agent": "pytest"})
    assert r.status_code == 200
    assert r.text == "ok"

    (request,) = upstream.calls("sgtm.test")
    assert request.url.path == "/g/collect"
    assert request.url.params["tid"] == "G-TEST"
    assert request.headers["user-agent"] == "pytest"
    assert request.headers["x-forwarded-proto"] == "https"


def test_gtm_proxy_preview_falls_back_to_production(client, upstream):
    upstream.respond("POST", "sgtm-preview.test", httpx.Response(404))

    r = client.post("/api/gtm-proxy/mp/collect?_dbg=1", content=b"{}")
    assert r.status_code == 200
    assert upstream.calls("sgtm-preview.test")[0].url.path == "/mp/collect"
    assert upstream.calls("sgtm.test")[0].url.path == "/mp/collect"


def test_gtm_proxy_upstream_errors(client, settings, upstream):
    upstream.respond("GET", "sgtm.test", httpx.ConnectError("refused"))
    assert client.get("/api/gtm-proxy/g/collect").status_code == 502

    settings.sgtm_endpoint = None
    assert client.get("/api/gtm-proxy/g/collect").status_code == 503


def test_unknown_errors_return_debug_id(settings, services, stripe_gateway):
    stripe_gateway.fail_create_intent = ZeroDivisionError("boom")
    client = TestClient(create_app(settings, services), raise_server_exceptions=False)
    body = {
        "event_id": "2f1e7c52-4b1a-4c3e-9d2f-6a7b8c9d0e1f",
        "user_session_id": "7a6b5c4d-3e2f-4a1b-8c9d-0e1f2a3b4c5d",
        "full_name": "Maria Silva",
        "email": "maria@example.com",
        "phone": "912345678",
    }

    r = client.post("/api/payment-intents", json=body)
    assert r.status_code == 500
    assert r.json()["error"] == "Internal server error. Please try again later."
    assert r.json()["debug_id"]
