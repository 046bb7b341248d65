from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import HTTPException, status
from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]


def issue_token(sub: str, roles: list[str], *, expires_in: timedelta = timedelta(hours=1)) -> str:
    settings = get_settings()
    claims = {
        "sub": sub,
        "roles": roles,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> AuthUser:
    settings = get_settings()
    payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    subject = payload.get("sub")
    if not subject:
        raise JWTError("token has no subject")
    roles = payload.get("roles", [])
    if not isinstance(roles, list):
        roles = []
    return AuthUser(sub=str(subject), roles=[str(role) for role in roles])


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header[len("Bearer ") :].strip() if auth_header.startswith("Bearer ") else ""
    if not token:
        raise _unauthorized("missing bearer token")

    try:
        user = decode_token(token)
    except JWTError as exc:
        raise _unauthorized("invalid bearer token") from exc

    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = user.sub
    return user
