"""Authentication dependencies: session token -> user row -> capability."""

from dataclasses import dataclass
from typing import Optional, Union

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.user import User
from services.actors import Reviewer, Subscriber
from services.session_token import read_session_token


auth_scheme = HTTPBearer(auto_error=False)

SUBSCRIBER_ROLE = "subscriber"
REVIEWER_ROLES = {"employee", "admin"}


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None
    role: str = SUBSCRIBER_ROLE

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
    db: AsyncSession = Depends(get_db),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        claims = read_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    result = await db.execute(select(User).where(User.id == claims.user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(status_code=401, detail="Session user no longer exists.")

    role = user.role or SUBSCRIBER_ROLE
    # A role change (promotion or demotion) invalidates sessions issued before it.
    if claims.role != role:
        raise HTTPException(status_code=401, detail="Session role is out of date. Sign in again.")

    return AuthContext(user_id=user.id, email=user.email, role=role)


async def get_subscriber(auth: AuthContext = Depends(get_auth_context)) -> Subscriber:
    if auth.role != SUBSCRIBER_ROLE:
        raise HTTPException(status_code=403, detail="Subscriber access required.")
    return Subscriber(user_id=auth.user_id)


async def get_reviewer(auth: AuthContext = Depends(get_auth_context)) -> Reviewer:
    if auth.role not in REVIEWER_ROLES:
        raise HTTPException(status_code=403, detail="Reviewer access required.")
    return Reviewer(user_id=auth.user_id)


async def get_letter_viewer(auth: AuthContext = Depends(get_auth_context)) -> Union[Subscriber, Reviewer]:
    """Staff read any letter as reviewers; everyone else as the owning subscriber."""
    if auth.role in REVIEWER_ROLES:
        return Reviewer(user_id=auth.user_id)
    return Subscriber(user_id=auth.user_id)


async def require_admin(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not auth.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required.")
    return auth
