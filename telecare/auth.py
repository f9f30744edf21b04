import logging
from datetime import timedelta
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from .config import JWT_ALGORITHM, SECRET_KEY
from .database import get_db
from .domain.directory.repository import UserRepository
from .models import User
from .shared.timeutils import utcnow

logger = logging.getLogger(__name__)

security = HTTPBearer()


def create_access_token(user_id: int, role: str, expires_in: timedelta = timedelta(hours=12)) -> str:
    """Sign a bearer token for a user (used by the identity service and tests)"""
    payload = {"sub": str(user_id), "role": role, "exp": utcnow() + expires_in}
    return jwt.encode(payload, SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        logger.warning(f"❌ Token verification failed: {e}")
        raise HTTPException(status_code=401, detail="Invalid or expired token") from e


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the bearer token to an active user"""
    claims = decode_access_token(credentials.credentials)
    subject: Optional[str] = claims.get("sub")
    if not subject or not subject.isdigit():
        raise HTTPException(status_code=401, detail="Invalid token subject")

    user = UserRepository.get_user_by_id(db, int(subject))
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.is_active:
        logger.warning(f"🚫 Inactive user {user.id} attempted access")
        raise HTTPException(status_code=403, detail="Account is deactivated")
    return user


def require_roles(*roles: str):
    """
    Create a dependency that only admits users with one of the given roles

    Example usage:
        @router.post("/admin/referral-codes")
        async def create_code(admin: User = Depends(require_roles("admin"))):
            ...
    """

    async def role_checker(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise HTTPException(status_code=403, detail="Not permitted for your role")
        return user

    return role_checker
