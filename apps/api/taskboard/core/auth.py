from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from taskboard.core.config import get_settings


ANONYMOUS_SUBJECT = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str] = field(default_factory=lambda: ["user"])

    @property
    def is_anonymous(self) -> bool:
        return self.sub == ANONYMOUS_SUBJECT

    @property
    def is_admin(self) -> bool:
        return "admin" in {role.lower() for role in self.roles}


def anonymous_user() -> AuthUser:
    return AuthUser(sub=ANONYMOUS_SUBJECT, roles=["guest"])


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header[len("Bearer ") :].strip() if auth_header.startswith("Bearer ") else ""


def decode_user(token: str) -> AuthUser | None:
    """Return the user a bearer token names, or None when it does not verify."""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None

    subject = payload.get("sub")
    if not subject:
        return None
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    return AuthUser(sub=str(subject), roles=[str(role) for role in roles])


async def get_current_user(request: Request) -> AuthUser:
    token = bearer_token(request)
    user = decode_user(token) if token else None
    if user is None:
        return anonymous_user()

    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = user.sub
    return user
