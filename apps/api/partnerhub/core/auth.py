from dataclasses import dataclass

from fastapi import Depends
from jose import JWTError, jwt
from starlette.requests import Request

from partnerhub.authz.permissions import normalize_role_name
from partnerhub.context import get_correlation_id
from partnerhub.core.config import get_settings
from partnerhub.core.context import get_request_context


@dataclass
class AuthUser:
    sub: str
    roles: list[str]


@dataclass
class ActorUser:
    user_id: str
    role: str
    partner_id: str | None = None
    correlation_id: str | None = None


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub="anonymous", roles=["guest"])

    subject = str(payload.get("sub", "anonymous"))
    roles = payload.get("roles")
    if not isinstance(roles, list):
        single_role = payload.get("role")
        roles = [single_role] if isinstance(single_role, str) else ["guest"]
    context = get_request_context(request)
    if context is not None:
        context.user_id = subject
    return AuthUser(sub=subject, roles=[str(role) for role in roles] or ["guest"])


def get_current_actor(request: Request, auth_user: AuthUser = Depends(get_current_user)) -> ActorUser:
    context = get_request_context(request)
    correlation_id = get_correlation_id() or (context.correlation_id if context is not None else None) or None
    role = normalize_role_name(auth_user.roles[0]) if auth_user.roles else "guest"
    if context is not None:
        context.role = role
    partner_id = auth_user.sub if role == "partner" else None
    return ActorUser(user_id=auth_user.sub, role=role, partner_id=partner_id, correlation_id=correlation_id)
