from __future__ import annotations

import asyncio

from jose import jwt
from starlette.requests import Request

from pmo.core.auth import get_current_user
from pmo.core.config import get_settings


def _request(headers: dict[str, str]) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(key.lower().encode(), value.encode()) for key, value in headers.items()],
    }
    return Request(scope)


def test_missing_token_is_anonymous() -> None:
    user = asyncio.run(get_current_user(_request({})))

    assert user.sub == "anonymous"
    assert user.roles == ["guest"]
    assert user.tenant_id is None


def test_valid_token_carries_roles_and_tenant() -> None:
    settings = get_settings()
    token = jwt.encode(
        {"sub": "user-7", "roles": ["crm.leads.read", "crm.leads.convert"], "tenant_id": "tenant-jwt"},
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )

    user = asyncio.run(get_current_user(_request({"Authorization": f"Bearer {token}"})))

    assert user.sub == "user-7"
    assert user.roles == ["crm.leads.read", "crm.leads.convert"]
    assert user.tenant_id == "tenant-jwt"


def test_invalid_token_falls_back_to_guest() -> None:
    user = asyncio.run(get_current_user(_request({"Authorization": "Bearer not-a-jwt"})))

    assert user.sub == "anonymous"
    assert user.roles == ["guest"]
