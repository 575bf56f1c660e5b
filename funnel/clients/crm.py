from __future__ import annotations

from typing import Any

import httpx
import structlog

from funnel.clients.base import IntegrationClient, IntegrationResult, response_json

logger = structlog.get_logger(__name__)


class CRMClient(IntegrationClient):
    service = "crm"
    breaker_name = "crm-api"

    def __init__(
        self,
        http: httpx.AsyncClient,
        breakers,
        *,
        api_url: str,
        api_key: str | None,
        company_id: str | None,
        board_id: str | None,
        column_id: str | None,
        **kwargs: Any,
    ):
        super().__init__(http, breakers, **kwargs)
        self.api_url = api_url
        self.api_key = api_key
        self.company_id = company_id
        self.board_id = board_id
        self.column_id = column_id

    @property
    def configured(self) -> bool:
        return bool(self.company_id and self.board_id and self.column_id)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def send_contact_card(
        self,
        *,
        name: str,
        phone: str,
        email: str | None = None,
        amount: str = "0",
        title: str | None = None,
        obs: str = "",
        contact_tags: list[str] | None = None,
        company_id: str | None = None,
        board_id: str | None = None,
        column_id: str | None = None,
    ) -> IntegrationResult:
        payload = {
            "company_id": company_id or self.company_id,
            "board_id": board_id or self.board_id,
            "column_id": column_id or self.column_id,
            "name": name,
            "phone": phone,
            "email": email,
            "title": title or name,
            "amount": amount,
            "obs": obs,
            "contact_tags": contact_tags or [],
        }
        if not (payload["company_id"] and payload["board_id"] and payload["column_id"]):
            return self.not_configured("CRM company/board/column ids not set")

        def _interpret(response: httpx.Response) -> IntegrationResult:
            self.raise_for_recoverable(response)
            body = response_json(response)
            if response.is_success:
                contact_id = body.get("id")
                logger.info("crm_contact_created", email=email, contact_id=contact_id)
                return IntegrationResult.ok("created", str(contact_id) if contact_id else None)
            if response.status_code == 409:
                existing = ((body.get("existing_card") or {}).get("contact") or {}).get("id")
                logger.info("crm_contact_exists", email=email, contact_id=existing)
                return IntegrationResult.ok(
                    "skipped", str(existing) if existing else None, reason="contact already exists"
                )
            return self.client_error(response)

        return await self.call(
            "CRM contact card",
            lambda: self._http.post(self.api_url, json=payload, headers=self._headers()),
            _interpret,
        )
