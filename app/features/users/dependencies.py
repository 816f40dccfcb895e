"""
Authentication dependencies.

Tokens are issued by the school portal; this service only verifies them and
maps the `sub` claim to a local user row.
"""
from typing import Annotated
from datetime import datetime, timezone
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from slowapi import Limiter
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.database.engine import get_db
from app.features.users.models import User
from app.features.users.auth import verify_jwt_token
from app.utils import get_logger


log = get_logger(__name__)
security = HTTPBearer()


def _user_id_from_claims(payload: dict) -> int:
    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> User:
    """
    Resolve the bearer token to an active local user.

    Unknown users get 401, deactivated users 403. The login timestamp is
    written in the request's transaction.

    Usage:
        @router.get("/me")
        async def get_me(user: User = Depends(get_current_user)):
            return user
    """
    user_id = _user_id_from_claims(verify_jwt_token(credentials.credentials))

    user = await db.get(User, user_id)
    if user is None:
        log.info(f"Token for unknown user {user_id}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown user",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated",
        )

    user.last_login_at = datetime.now(timezone.utc)
    await db.flush()

    return user


async def get_current_admin_user(
    user: Annotated[User, Depends(get_current_user)]
) -> User:
    """
    Require a platform admin.

    Platform admins see every branch; they do not automatically hold any
    permission, which still comes from roles and overrides.
    """
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return user


def get_authorization_header(request: Request) -> str:
    """Rate-limit key for slowapi: the bearer token, or one shared anonymous bucket."""
    return request.headers.get("Authorization") or "anonymous"


def admin_rate_limit() -> str:
    # Read per request so ADMIN_RATE_LIMIT can change without re-decorating routes
    return config.ADMIN_RATE_LIMIT


limiter = Limiter(key_func=get_authorization_header)
