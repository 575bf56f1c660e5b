from __future__ import annotations

import json
import os
import time
import uuid

import requests
from rich import print

from funnel.webhooks.signature import sign_payload

BASE = os.getenv("API_BASE_URL", "http://127.0.0.1:8000")
WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "whsec_demo")
ADMIN_KEY = os.getenv("ADMIN_KEY")


def post(path: str, *, json_body: dict | None = None, headers: dict | None = None) -> requests.Response:
    h = {"content-type": "application/json", **(headers or {})}
    return requests.post(f"{BASE}{path}", headers=h, json=json_body, timeout=10)


def get(path: str, *, params: dict | None = None) -> requests.Response:
    return requests.get(f"{BASE}{path}", params=params, timeout=10)


def send_webhook(event: dict) -> requests.Response:
    raw = json.dumps(event).encode("utf-8")
    headers = {"content-type": "application/json", "stripe-signature": sign_payload(raw, WEBHOOK_SECRET)}
    return requests.post(f"{BASE}/webhooks/stripe", data=raw, headers=headers, timeout=30)


def payment_succeeded_event(event_id: str, email: str) -> dict:
    return {
        "id": event_id,
        "type": "payment_intent.succeeded",
        "livemode": False,
        "data": {
            "object": {
                "id": f"pi_demo_{int(time.time())}",
                "amount": 18000,
                "currency": "eur",
                "status": "succeeded",
                "metadata": {
                    "customer_email": email,
                    "customer_name": "Demo Buyer",
                    "customer_phone": "+351912345678",
                    "utm_source": "demo",
                },
            }
        },
    }


def wait_ready(timeout_s: float = 30.0) -> None:
    deadline = time.time() + timeout_s
    last_err: Exception | None = None

    while time.time() < deadline:
        try:
            r = get("/ready")
            if r.status_code == 200:
                return
        except requests.RequestException as e:
            last_err = e
        time.sleep(0.5)

    if last_err:
        raise RuntimeError(f"api not ready after {timeout_s}s (last error: {last_err})")
    raise RuntimeError(f"api not ready after {timeout_s}s")


def main() -> None:
    print("[bold]demo: lead -> payment webhook -> redelivery -> health report[/bold]")

    wait_ready()
    print("[green]ready ok[/green]")

    email = f"demo+{int(time.time())}@example.com"
    r = post(
        "/api/leads",
        json_body={
            "lead_id": f"lead_{uuid.uuid4().hex[:12]}",
            "full_name": "Demo Buyer",
            "email": email,
            "phone": "912345678",
            "utm_source": "demo",
        },
    )
    r.raise_for_status()
    print("lead captured:", r.json()["mailerlite"], r.json()["crm"])

    event = payment_succeeded_event(f"evt_demo_{int(time.time())}", email)
    r = send_webhook(event)
    r.raise_for_status()
    print("webhook:", r.json()["status"])

    # same event id again, stripe retries look exactly like this
    r = send_webhook(event)
    r.raise_for_status()
    print("redelivery:", r.json()["status"])

    if ADMIN_KEY:
        r = get("/api/health-check", params={"admin_key": ADMIN_KEY})
        print("health:", r.json()["status"], r.json()["summary"])
    print("[bold green]demo complete[/bold green]")


if __name__ == "__main__":
    main()
