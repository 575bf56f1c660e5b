# every problem is collected so the front end can show all messages at once

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
UUID_V4_RE = re.compile(r"^[a-fA-F0-9]{8}-[a-fA-F0-9]{4}-4[a-fA-F0-9]{3}-[89aAbB][a-fA-F0-9]{3}-[a-fA-F0-9]{12}$")
NAME_RE = re.compile(r"^[a-zA-ZÀ-ÿĀ-ſ\s\-'.]+$")
LEAD_ID_RE = re.compile(r"^[a-zA-Z0-9\-_]{8,}$")
PHONE_DIGITS_RE = re.compile(r"^[+]?[0-9]+$")

SUSPICIOUS_PATTERNS = [
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+=", re.IGNORECASE),
    re.compile(r"\bselect\b.*\bfrom\b", re.IGNORECASE),
]

NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 100
EMAIL_MAX_LENGTH = 254
PHONE_MIN_DIGITS = 7
PHONE_MAX_DIGITS = 15
AMOUNT_MIN = 50
AMOUNT_MAX = 1_000_000
CURRENCIES = ("eur", "usd", "gbp")
UTM_PARAMS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")
UTM_MAX_LENGTH = 255

PAYMENT_REQUIRED_FIELDS = ("event_id", "user_session_id", "full_name", "email", "phone")
LEAD_REQUIRED_FIELDS = ("lead_id", "full_name", "email", "phone")


@dataclass
class ValidationResult:
    errors: list[str] = field(default_factory=list)
    sanitized: dict[str, Any] | None = None

    @property
    def is_valid(self) -> bool:
        return not self.errors


def _missing(body: dict[str, Any], fields: tuple[str, ...]) -> list[str]:
    errors = []
    for name in fields:
        value = body.get(name)
        if not isinstance(value, str) or not value.strip():
            errors.append(f"Missing or invalid required field: {name}")
    return errors


def _check_contact(full_name: str, email: str, phone: str, errors: list[str]) -> tuple[str, str]:
    clean_name = full_name.strip()
    if not NAME_MIN_LENGTH <= len(clean_name) <= NAME_MAX_LENGTH:
        errors.append(f"Name must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters")
    if not NAME_RE.match(clean_name):
        errors.append("Name contains invalid characters")

    clean_email = email.strip().lower()
    if not EMAIL_RE.match(clean_email):
        errors.append("Invalid email format")
    if len(clean_email) > EMAIL_MAX_LENGTH:
        errors.append("Email address too long")

    clean_phone = re.sub(r"[\s\-()]", "", phone)
    if not PHONE_MIN_DIGITS <= len(clean_phone) <= PHONE_MAX_DIGITS:
        errors.append(f"Phone number must be between {PHONE_MIN_DIGITS} and {PHONE_MAX_DIGITS} digits")
    elif not PHONE_DIGITS_RE.match(clean_phone):
        errors.append("Phone number contains invalid characters")

    return clean_name, clean_email


def _check_utm(body: dict[str, Any], errors: list[str]) -> None:
    for name in UTM_PARAMS:
        value = body.get(name)
        if value and (not isinstance(value, str) or len(value) > UTM_MAX_LENGTH):
            errors.append(f"Invalid {name}: must be string under {UTM_MAX_LENGTH} characters")


def _check_suspicious(values: list[Any], errors: list[str]) -> None:
    for value in values:
        if not isinstance(value, str):
            continue
        if any(p.search(value) for p in SUSPICIOUS_PATTERNS):
            errors.append("Request contains potentially malicious content")


def _parse_amount(raw: Any) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return int(raw)
    if isinstance(raw, str):
        match = re.match(r"^\s*(-?\d+)", raw)
        return int(match.group(1)) if match else None
    return None


def utm_values(body: dict[str, Any]) -> dict[str, str]:
    out = {}
    for name in UTM_PARAMS:
        value = body.get(name)
        if isinstance(value, str) and value.strip():
            out[name] = value.strip()[:UTM_MAX_LENGTH]
    return out


def validate_payment_request(body: dict[str, Any], default_amount: int = 18000) -> ValidationResult:
    errors = _missing(body, PAYMENT_REQUIRED_FIELDS)
    if errors:
        return ValidationResult(errors=errors)

    event_id = body["event_id"].strip()
    user_session_id = body["user_session_id"].strip()
    if not UUID_V4_RE.match(event_id):
        errors.append("Invalid event_id format (expected UUID v4)")
    if not UUID_V4_RE.match(user_session_id):
        errors.append("Invalid user_session_id format (expected UUID v4)")

    clean_name, clean_email = _check_contact(body["full_name"], body["email"], body["phone"], errors)

    amount = default_amount
    if body.get("amount") is not None:
        parsed = _parse_amount(body["amount"])
        if parsed is None or not AMOUNT_MIN <= parsed <= AMOUNT_MAX:
            errors.append(f"Amount must be between {AMOUNT_MIN} and {AMOUNT_MAX} cents (minimum {AMOUNT_MIN})")
        else:
            amount = parsed

    currency = body.get("currency") or "eur"
    if not isinstance(currency, str) or currency.lower() not in CURRENCIES:
        errors.append(f"Currency must be one of: {', '.join(CURRENCIES)}")

    _check_utm(body, errors)
    _check_suspicious([body["full_name"], body["email"], body["phone"], body.get("utm_source")], errors)

    if errors:
        return ValidationResult(errors=errors)

    lead_id = body.get("lead_id")
    return ValidationResult(
        sanitized={
            "event_id": event_id,
            "user_session_id": user_session_id,
            "lead_id": lead_id.strip() if isinstance(lead_id, str) and lead_id.strip() else event_id,
            "full_name": clean_name,
            "email": clean_email,
            "phone": body["phone"].strip(),
            "amount": amount,
            "currency": currency.lower(),
            **utm_values(body),
        }
    )


def validate_lead_request(body: dict[str, Any]) -> ValidationResult:
    errors = _missing(body, LEAD_REQUIRED_FIELDS)
    if errors:
        return ValidationResult(errors=errors)

    lead_id = body["lead_id"].strip()
    if not LEAD_ID_RE.match(lead_id):
        errors.append("Invalid lead_id format")

    clean_name, clean_email = _check_contact(body["full_name"], body["email"], body["phone"], errors)
    _check_utm(body, errors)
    _check_suspicious([body["full_name"], body["email"], body["phone"], body.get("utm_source")], errors)

    if errors:
        return ValidationResult(errors=errors)

    event_id = body.get("event_id")
    session_id = body.get("user_session_id")
    return ValidationResult(
        sanitized={
            "lead_id": lead_id,
            "event_id": event_id if isinstance(event_id, str) and event_id else lead_id,
            "user_session_id": session_id if isinstance(session_id, str) and session_id else lead_id,
            "full_name": clean_name,
            "email": clean_email,
            "phone": body["phone"].strip(),
            **utm_values(body),
        }
    )


CRM_REQUIRED_FIELDS = ("name", "phone", "amount")
CRM_PHONE_MAX_LENGTH = 20
CRM_AMOUNT_RE = re.compile(r"^\d+(\.\d{1,2})?$")


def validate_crm_request(body: dict[str, Any]) -> ValidationResult:
    errors = _missing(body, CRM_REQUIRED_FIELDS)
    if errors:
        return ValidationResult(errors=errors)

    clean_name = body["name"].strip()
    if not NAME_MIN_LENGTH <= len(clean_name) <= NAME_MAX_LENGTH:
        errors.append(f"Name must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters")

    clean_phone = re.sub(r"[\s\-()]", "", body["phone"])
    if not PHONE_MIN_DIGITS <= len(clean_phone) <= CRM_PHONE_MAX_LENGTH:
        errors.append(f"Phone number must be between {PHONE_MIN_DIGITS} and {CRM_PHONE_MAX_LENGTH} digits")

    amount = body["amount"].strip()
    if not CRM_AMOUNT_RE.match(amount):
        errors.append('Invalid amount format (expected: "180.00")')

    obs = body.get("obs") if isinstance(body.get("obs"), str) else ""
    _check_suspicious([body["name"], body["phone"], obs], errors)

    tags = body.get("contact_tags")
    if tags is not None and not (isinstance(tags, list) and all(isinstance(t, str) for t in tags)):
        errors.append("contact_tags must be an array of strings")

    if errors:
        return ValidationResult(errors=errors)

    def _opt(name: str) -> str | None:
        value = body.get(name)
        return value if isinstance(value, str) and value else None

    return ValidationResult(
        sanitized={
            "name": clean_name,
            "phone": body["phone"].strip(),
            "amount": amount,
            "email": _opt("email"),
            "title": _opt("title") or clean_name,
            "obs": obs,
            "contact_tags": tags or [],
            "company_id": _opt("company_id"),
            "board_id": _opt("board_id"),
            "column_id": _opt("column_id"),
        }
    )
