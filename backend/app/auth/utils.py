import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from app.auth.models import Role
from app.config import Settings


@dataclass
class TokenPayload:
    sub: uuid.UUID
    role: Role
    exp: datetime


def create_access_token(
    user_id: uuid.UUID,
    role: str,
    settings: Settings,
    expires_in: timedelta | None = None,
) -> str:
    """Issue a bearer token for this service. Sign-in itself happens elsewhere."""
    expires_in = expires_in or timedelta(minutes=settings.access_token_expire_minutes)
    payload = {
        "sub": str(user_id),
        "role": Role(role).value,
        "aud": settings.token_audience,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)


def decode_token(token: str, settings: Settings) -> TokenPayload | None:
    """Return the token's claims, or None if it is invalid, expired or meant for another service."""
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm],
            audience=settings.token_audience,
        )
        return TokenPayload(
            sub=uuid.UUID(payload["sub"]),
            role=Role(payload.get("role", Role.MEMBER.value)),
            exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
    except (JWTError, ValueError, KeyError):
        return None
