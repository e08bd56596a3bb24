import logging
from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from pmo.core.config import get_settings


logger = logging.getLogger("pmo.auth")


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    tenant_id: str | None = None


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        logger.warning("auth.invalid_token")
        return AuthUser(sub="anonymous", roles=["guest"])

    subject = str(payload.get("sub", "anonymous"))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    tenant_claim = payload.get("tenant_id")
    return AuthUser(
        sub=subject,
        roles=[str(role) for role in roles],
        tenant_id=str(tenant_claim) if tenant_claim else None,
    )
