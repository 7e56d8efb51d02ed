"""FastAPI dependencies for authentication and role checks."""
from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from app.database import get_db
from app.models.user import User
from app.auth.security import decode_token

security = HTTPBearer(auto_error=False)

# Staff roles allowed to review creator payouts
PAYOUT_REVIEWER_ROLES = frozenset({"admin", "accountant", "customer_service"})
CREATOR_ROLES = frozenset({"creator", "admin"})


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _user_from_token(token: str, db: AsyncSession) -> User:
    payload = decode_token(token)
    if payload is None:
        raise _unauthorized("Invalid or expired token")

    user_id = payload.get("sub")
    if user_id is None:
        raise _unauthorized("Invalid token")

    result = await db.execute(select(User).where(User.uuid == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise _unauthorized("User not found")
    return user


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> User:
    """Resolve the Bearer token to a user or fail with 401."""
    if credentials is None:
        raise _unauthorized("Not authenticated")
    return await _user_from_token(credentials.credentials, db)


async def get_optional_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> Optional[User]:
    """Like ``get_current_user`` but returns ``None`` for anonymous (guest)
    requests. A token that is present but invalid is still rejected."""
    if credentials is None:
        return None
    user = await _user_from_token(credentials.credentials, db)
    if user.status != "active":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is not active"
        )
    return user


async def get_current_active_user(current_user: User = Depends(get_current_user)) -> User:
    if current_user.status != "active":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is not active"
        )
    return current_user


async def creator_required(current_user: User = Depends(get_current_active_user)) -> User:
    if current_user.user_role not in CREATOR_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Creator access required"
        )
    return current_user


async def payout_reviewer_required(current_user: User = Depends(get_current_active_user)) -> User:
    """Admins, accountants and customer service may review payouts."""
    if current_user.user_role not in PAYOUT_REVIEWER_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Payout reviewer access required"
        )
    return current_user


async def admin_required(current_user: User = Depends(get_current_active_user)) -> User:
    if current_user.user_role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return current_user
