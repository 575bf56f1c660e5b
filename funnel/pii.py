from __future__ import annotations

import hashlib
import re
import secrets
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class PIIHasher:
    def __init__(self, salt: str | None = None, default_country_code: str = "351", production: bool = False):
        if not salt:
            if production:
                logger.warning("pii_salt_missing", detail="generated salt, hashes will differ across restarts")
            salt = secrets.token_hex(32)
        self._salt = salt
        self.default_country_code = default_country_code

    def hash_value(self, value: str) -> str:
        return hashlib.sha256((self._salt + value).encode("utf-8")).hexdigest()

    def hash_email(self, email: str) -> str:
        normalized = (email or "").strip().lower()
        if not _EMAIL_RE.match(normalized):
            raise ValueError("invalid email format")
        return self.hash_value(normalized)

    def normalize_phone(self, phone: str) -> str:
        normalized = re.sub(r"[^\d+]", "", phone or "")
        if not normalized.startswith("+"):
            # 9-10 bare digits are treated as a national number
            if 9 <= len(normalized) <= 10:
                normalized = f"+{self.default_country_code}{normalized}"
            else:
                normalized = f"+{normalized}"
        return normalized

    def hash_phone(self, phone: str) -> str:
        if not phone or not phone.strip():
            raise ValueError("phone required")
        return self.hash_value(self.normalize_phone(phone))

    def hash_name(self, name: str) -> str:
        if not name or not name.strip():
            raise ValueError("name required")
        return self.hash_value(" ".join(name.lower().split()))

    def hash_user_data(
        self,
        email: str | None = None,
        phone: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        country: str | None = None,
        city: str | None = None,
    ) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for field, fn, value in (
            ("sha256_email_address", self.hash_email, email),
            ("sha256_phone_number", self.hash_phone, phone),
        ):
            if not value:
                continue
            try:
                out[field] = fn(value)
            except ValueError as exc:
                logger.warning("pii_hash_skipped", field=field, error=str(exc))

        address: dict[str, str] = {}
        if first_name and first_name.strip():
            address["sha256_first_name"] = self.hash_name(first_name)
        if last_name and last_name.strip():
            address["sha256_last_name"] = self.hash_name(last_name)
        if city:
            address["sha256_city"] = self.hash_value(city.strip().lower())
        if country:
            address["country"] = country.strip().upper()
        if address:
            out["address"] = address
        return out
