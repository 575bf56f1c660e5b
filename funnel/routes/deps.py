import hmac
import json
from typing import Any

from fastapi import Header, Query, Request

from funnel.errors import ApiError
from funnel.services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


async def read_json(request: Request, error: str = "Invalid JSON in request body") -> Any:
    raw = await request.body()
    try:
        return json.loads(raw or b"{}")
    except ValueError:
        raise ApiError(400, error) from None


async def read_json_object(request: Request) -> dict[str, Any]:
    body = await read_json(request)
    if not isinstance(body, dict):
        raise ApiError(400, "Request body must be a JSON object")
    return body


def require_admin(
    request: Request,
    admin_key: str | None = Query(default=None),
    x_admin_key: str | None = Header(default=None, alias="x-admin-key"),
) -> None:
    expected = get_services(request).settings.admin_key
    supplied = admin_key or x_admin_key
    # no configured key means the admin surface is closed
    if not expected or not supplied or not hmac.compare_digest(expected, supplied):
        raise ApiError(401, "Unauthorized", message="Valid admin_key required")
