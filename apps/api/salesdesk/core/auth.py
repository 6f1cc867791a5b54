from dataclasses import dataclass
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from salesdesk.core.config import get_settings


class AuthenticationError(Exception):
    """Raised when a request carries no usable bearer token."""

    status_code = 401
    code = "unauthenticated"

    def __init__(self, message: str = "Authentication required") -> None:
        self.message = message
        super().__init__(message)


@dataclass
class AuthUser:
    user_id: str
    role: str
    organization_id: str

    @property
    def is_admin(self) -> bool:
        return self.role == "ADMIN"


def decode_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise AuthenticationError("Invalid or expired token") from exc
    if not isinstance(payload, dict):
        raise AuthenticationError("Invalid or expired token")
    return payload


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header[len("Bearer ") :].strip() if auth_header.startswith("Bearer ") else ""


async def get_current_user(request: Request) -> AuthUser:
    token = bearer_token(request)
    if not token:
        raise AuthenticationError()

    payload = decode_token(token)
    user_id = payload.get("userId") or payload.get("sub")
    organization_id = payload.get("organizationId")
    if not user_id or not organization_id:
        raise AuthenticationError("Token is missing identity claims")

    role = str(payload.get("role") or "SALES").upper()
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = str(user_id)
        context.organization_id = str(organization_id)
    return AuthUser(user_id=str(user_id), role=role, organization_id=str(organization_id))
