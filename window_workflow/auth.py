"""
Authentication and authorization utilities.

Provides password hashing, JWT token creation/validation backed by a session
table, role-based FastAPI dependencies, and the access policies the workflow
core is called with.
"""
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple
import logging
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from . import crud, models, statuses
from .database import get_db
from .config import SECRET_KEY, ALGORITHM, ACCESS_TOKEN_EXPIRE_MINUTES

logger = logging.getLogger(__name__)

# Password hashing context
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Security scheme for JWT bearer tokens
security = HTTPBearer()


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a plain password against a hashed password.

    Args:
        plain_password: The plain text password to verify
        hashed_password: The hashed password to compare against

    Returns:
        True if the password matches, False otherwise
    """
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """
    Hash a password for secure storage.

    Args:
        password: The plain text password to hash

    Returns:
        The hashed password
    """
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> Tuple[str, datetime]:
    """
    Create a JWT access token.

    Args:
        data: Dictionary containing the claims to encode in the token
        expires_delta: Optional custom expiration time delta

    Returns:
        Tuple of (encoded JWT token string, expiry time)
    """
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    # jti keeps two tokens issued in the same second distinct
    to_encode.update({"exp": expire, "iat": datetime.utcnow(), "jti": models.new_uuid()})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt, expire


def authenticate_user(db: Session, identifier: str, password: str) -> Optional[models.User]:
    """
    Authenticate a user by email, phone number or username and password.

    Args:
        db: Database session
        identifier: Email address, phone number or username
        password: Plain text password to verify

    Returns:
        User object if authentication succeeds, None otherwise
    """
    user = crud.get_user_by_identifier(db, identifier)
    if not user:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def login(
    db: Session, user: models.User, user_agent: Optional[str] = None, ip_address: Optional[str] = None
) -> Tuple[str, datetime]:
    """Issue a token for ``user`` and record its session."""
    token, expires_at = create_access_token(data={"sub": user.id, "role": user.role})
    crud.create_session(db, user.id, token, expires_at, user_agent=user_agent, ip_address=ip_address)
    logger.info(f"User {user.id} ({user.role}) logged in")
    return token, expires_at


def get_current_session(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> models.UserSession:
    """
    FastAPI dependency resolving the live session behind the bearer token.

    Raises:
        HTTPException: 401 if the token is invalid or expired, or its session was revoked
    """
    token = credentials.credentials
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except JWTError as e:
        logger.warning(f"JWT validation error: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    session = crud.get_session_by_token(db, token)
    if session is None or not session.is_valid() or session.user_id != payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return session


def get_current_user(
    session: models.UserSession = Depends(get_current_session),
    db: Session = Depends(get_db)
) -> models.User:
    """
    FastAPI dependency to get the current authenticated user.

    Returns:
        Current authenticated user

    Raises:
        HTTPException: 401 if the user no longer exists or is inactive
    """
    user = crud.get_user(db, session.user_id)
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def require_roles(*allowed_roles: str) -> Callable[..., models.User]:
    """
    Build a dependency that admits only users holding one of ``allowed_roles``.

    Raises:
        HTTPException: 403 with the required and current roles
    """
    def dependency(current_user: models.User = Depends(get_current_user)) -> models.User:
        if current_user.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "error": "Insufficient permissions",
                    "required": list(allowed_roles),
                    "current": current_user.role,
                },
            )
        return current_user
    return dependency


# Director, Manager
require_admin = require_roles(*statuses.ADMIN_ROLES)

# Director, Manager, Supervisor
require_management = require_roles(*statuses.MANAGEMENT_ROLES)


def job_status_policy(user: models.User) -> Callable[[models.Job], bool]:
    """Policy for ``workflow.transition_job``: management, or the job's assigned worker."""
    def authorize(job: models.Job) -> bool:
        return user.can_view_all_projects() or job.assigned_worker_id == user.id
    return authorize


def can_view_job(user: models.User, job: models.Job) -> bool:
    if user.can_view_all_projects():
        return True
    if user.is_worker() and job.assigned_worker_id == user.id:
        return True
    return can_view_order(user, job.order)


def can_view_order(user: models.User, order: models.Order) -> bool:
    if user.can_view_all_projects():
        return True
    return (
        user.role == statuses.UserRole.CLIENT.value
        and order.client is not None
        and order.client.user_id == user.id
    )
