import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Optional

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from jose import jwt as jose_jwt
from sqlalchemy.orm import Session

from .config import CRON_SECRET, JWT_ALGORITHM, SECRET_KEY
from .database import get_db
from .models import User, UserRole
from .shared.errors import AuthorizationError

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def create_access_token(user_id: int, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a signed access token for a user

    Args:
        user_id: Stored as the `sub` claim
        expires_delta: Token lifetime (default 60 minutes)
    """
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=60))
    return jose_jwt.encode({"sub": str(user_id), "exp": expire}, SECRET_KEY, algorithm=JWT_ALGORITHM)


def verify_access_token(token: str) -> Optional[dict[str, Any]]:
    """Decoded payload if the token is valid, None if invalid or expired"""
    try:
        return jose_jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        logger.warning(f"⚠️ JWT verification failed: {e}")
        return None


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """Get current user from the Bearer token"""
    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Not authenticated. Please provide a valid Bearer token in the Authorization header.",
        )

    payload = verify_access_token(credentials.credentials)
    if not payload or not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=401, detail="Invalid token claims") from e

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        logger.warning(f"⚠️ Token for unknown user {user_id}")
        raise HTTPException(status_code=401, detail="Authentication failed")

    logger.debug(f"✅ User authenticated: {user.email}")
    return user


async def require_trainer(user: User = Depends(get_current_user)) -> User:
    """Current user, who must be a trainer with a workspace"""
    if user.role != UserRole.TRAINER:
        logger.warning(f"⚠️ User {user.id} with role {user.role} attempted a trainer-only route")
        raise AuthorizationError("Trainer access required")
    if not user.workspace_id:
        raise AuthorizationError("No workspace associated with this account")
    return user


async def verify_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """Guard for cron endpoints: expects `Authorization: Bearer <CRON_SECRET>`"""
    if not CRON_SECRET:
        logger.error("❌ CRON_SECRET not configured, rejecting cron request")
        raise HTTPException(status_code=401, detail="Unauthorized")
    expected = f"Bearer {CRON_SECRET}"
    if not authorization or not secrets.compare_digest(authorization, expected):
        logger.warning("⚠️ Cron request with invalid secret")
        raise HTTPException(status_code=401, detail="Unauthorized")
