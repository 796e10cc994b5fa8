"""Signed bearer tokens for the letters API."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "letters_session"
SESSION_AUDIENCE = "letters-api"


@dataclass(frozen=True)
class SessionClaims:
    """What a verified token says about its bearer. The users table stays authoritative."""

    user_id: str
    role: str
    expires_at: datetime
    email: Optional[str] = None


def _session_ttl(ttl: Optional[timedelta]) -> timedelta:
    if ttl is not None:
        return max(ttl, timedelta(minutes=1))
    return timedelta(hours=max(int(settings.JWT_EXPIRATION_HOURS or 24), 1))


def issue_session_token(
    user_id: str,
    role: str = "subscriber",
    *,
    email: Optional[str] = None,
    ttl: Optional[timedelta] = None,
) -> str:
    """Sign a token naming the user and the role they signed in with."""
    issued_at = datetime.now(timezone.utc)
    expires_at = issued_at + _session_ttl(ttl)
    claims = {
        "sub": user_id,
        "role": role,
        "type": SESSION_TOKEN_TYPE,
        "aud": SESSION_AUDIENCE,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def read_session_token(token: str) -> SessionClaims:
    """Verify signature, expiry, audience and token type. Raises ValueError on any failure."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=SESSION_AUDIENCE,
        )
    except ExpiredSignatureError as exc:
        raise ValueError("Session token has expired.") from exc
    except JWTError as exc:
        raise ValueError("Invalid session token.") from exc

    if payload.get("type") != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    user_id = str(payload.get("sub") or "").strip()
    role = str(payload.get("role") or "").strip()
    if not user_id or not role:
        raise ValueError("Session token is missing its subject or role.")

    return SessionClaims(
        user_id=user_id,
        role=role,
        expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        email=payload.get("email"),
    )
