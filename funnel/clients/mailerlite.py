from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from funnel.clients.base import IntegrationClient, IntegrationResult, response_json
from funnel.models.enums import ResultCode

logger = structlog.get_logger(__name__)


def _subscribed_at() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


class MailerLiteClient(IntegrationClient):
    service = "mailerlite"
    breaker_name = "mailerlite-api"

    def __init__(self, http: httpx.AsyncClient, breakers, *, api_key: str | None, base_url: str, **kwargs: Any):
        super().__init__(http, breakers, **kwargs)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def upsert_subscriber(
        self,
        email: str,
        fields: dict[str, Any],
        *,
        groups: list[str] | None = None,
        name: str | None = None,
        ip_address: str | None = None,
    ) -> IntegrationResult:
        if not self.configured:
            return self.not_configured("MAILERLITE_API_KEY not set")

        payload: dict[str, Any] = {
            "email": email,
            "fields": {k: v for k, v in fields.items() if v is not None},
            "status": "active",
            "subscribed_at": _subscribed_at(),
        }
        if name:
            payload["fields"].setdefault("name", name)
        if groups:
            payload["groups"] = groups
        if ip_address:
            payload["ip_address"] = ip_address

        def _interpret(response: httpx.Response) -> IntegrationResult:
            self.raise_for_recoverable(response)
            body = response_json(response)
            if response.status_code in (200, 201):
                subscriber_id = (body.get("data") or {}).get("id")
                action = "created" if response.status_code == 201 else "updated"
                logger.info("mailerlite_subscriber_upserted", email=email, subscriber_id=subscriber_id, action=action)
                return IntegrationResult.ok(action, str(subscriber_id) if subscriber_id else None)
            if response.status_code == 422 and "already exists" in str(body.get("message", "")):
                logger.info("mailerlite_subscriber_exists", email=email)
                return IntegrationResult.ok("skipped", reason="subscriber already exists")
            if response.status_code == 422 and body.get("errors"):
                details = "; ".join(
                    f"{field}: {', '.join(m) if isinstance(m, list) else m}" for field, m in body["errors"].items()
                )
                logger.warning("mailerlite_validation_failed", email=email, errors=details)
                return IntegrationResult.failed(
                    ResultCode.bad_request, f"validation failed: {details}", recoverable=False, status_code=422
                )
            return self.client_error(response)

        return await self.call(
            "MailerLite subscriber upsert",
            lambda: self._http.post(self._url("/subscribers"), json=payload, headers=self._headers()),
            _interpret,
        )

    async def find_subscriber(self, email: str) -> IntegrationResult:
        if not self.configured:
            return self.not_configured("MAILERLITE_API_KEY not set")

        def _interpret(response: httpx.Response) -> IntegrationResult:
            self.raise_for_recoverable(response)
            if response.status_code != 200:
                return self.client_error(response)
            data = response_json(response).get("data") or []
            if not data:
                return IntegrationResult.ok("not_found")
            return IntegrationResult.ok("found", str(data[0].get("id")))

        return await self.call(
            "MailerLite subscriber search",
            lambda: self._http.get(
                self._url("/subscribers"), params={"filter[email]": email}, headers=self._headers()
            ),
            _interpret,
        )

    async def update_subscriber_fields(self, email: str, fields: dict[str, Any]) -> IntegrationResult:
        found = await self.find_subscriber(email)
        if not found.success:
            return found
        if not found.resource_id:
            logger.info("mailerlite_subscriber_missing", email=email)
            return IntegrationResult.failed(ResultCode.bad_request, "subscriber not found", recoverable=False)
        subscriber_id = found.resource_id

        def _interpret(response: httpx.Response) -> IntegrationResult:
            self.raise_for_recoverable(response)
            if response.status_code in (200, 201):
                logger.info("mailerlite_subscriber_updated", email=email, fields=sorted(fields))
                return IntegrationResult.ok("updated", subscriber_id)
            return self.client_error(response)

        return await self.call(
            "MailerLite subscriber update",
            lambda: self._http.put(
                self._url(f"/subscribers/{subscriber_id}"), json={"fields": fields}, headers=self._headers()
            ),
            _interpret,
        )

    async def add_to_group(self, subscriber_id: str, group_id: str) -> IntegrationResult:
        def _interpret(response: httpx.Response) -> IntegrationResult:
            self.raise_for_recoverable(response)
            if response.status_code in (200, 201):
                return IntegrationResult.ok("added", subscriber_id)
            return self.client_error(response)

        return await self.call(
            "MailerLite group assignment",
            lambda: self._http.post(
                self._url(f"/subscribers/{subscriber_id}/groups/{group_id}"), headers=self._headers()
            ),
            _interpret,
        )

    async def remove_from_group(self, subscriber_id: str, group_id: str) -> IntegrationResult:
        def _interpret(response: httpx.Response) -> IntegrationResult:
            self.raise_for_recoverable(response)
            if response.status_code in (200, 204):
                return IntegrationResult.ok("removed", subscriber_id)
            if response.status_code == 404:
                return IntegrationResult.ok("skipped", subscriber_id, reason="not in group")
            return self.client_error(response)

        return await self.call(
            "MailerLite group removal",
            lambda: self._http.delete(
                self._url(f"/subscribers/{subscriber_id}/groups/{group_id}"), headers=self._headers()
            ),
            _interpret,
        )

    async def move_between_groups(self, email: str, from_group_id: str | None, to_group_id: str) -> IntegrationResult:
        found = await self.find_subscriber(email)
        if not found.success:
            return found
        if not found.resource_id:
            logger.info("mailerlite_subscriber_missing", email=email)
            return IntegrationResult.failed(ResultCode.bad_request, "subscriber not found", recoverable=False)

        if from_group_id:
            removed = await self.remove_from_group(found.resource_id, from_group_id)
            if not removed.success:
                logger.warning("mailerlite_group_removal_failed", email=email, group_id=from_group_id, reason=removed.reason)

        added = await self.add_to_group(found.resource_id, to_group_id)
        if added.success:
            logger.info("mailerlite_group_moved", email=email, from_group=from_group_id, to_group=to_group_id)
            added.action = "moved"
        return added
