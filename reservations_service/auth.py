from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from . import models
from .config import ACCESS_TOKEN_EXPIRE_MINUTES, ALGORITHM, SECRET_KEY
from .database import get_db
from .policy import Actor

SERVICE_ACCOUNT_ROLE = "service_account"

# --- Password hashing ---
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

security = HTTPBearer()


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a plaintext password against a bcrypt hash.

    Parameters
    ----------
    plain_password : str
        Raw password provided by the user.
    hashed_password : str
        Previously stored bcrypt hash.

    Returns
    -------
    bool
        True if the password matches, False otherwise.
    """
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


# ---------- DB helpers ----------

def get_user_by_username(db: Session, username: str) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.username == username).first()


def authenticate_user(db: Session, username: str, password: str) -> Optional[models.User]:
    """
    Authenticate a user given username and password.

    Returns
    -------
    Optional[User]
        The authenticated user if credentials are valid, otherwise None.
    """
    user = get_user_by_username(db, username)
    if not user:
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


def actor_from_user(user: models.User) -> Actor:
    """
    Build the immutable actor identity the core works with.

    Permission flags only apply to instructors; other roles get ``False``.
    """
    permission = user.permission if user.role == models.UserRole.INSTRUCTOR else None
    return Actor(
        id=user.id,
        role=user.role,
        can_reserve=bool(permission and permission.can_reserve),
        can_override=bool(permission and permission.can_override),
    )


# ---------- JWT helpers ----------

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a signed JWT access token.

    Parameters
    ----------
    data : dict
        Claims to embed in the token ('sub', 'role', 'user_id').
    expires_delta : Optional[timedelta]
        Optional custom expiration interval.

    Returns
    -------
    str
        Encoded JWT string.
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def token_for_user(user: models.User) -> str:
    return create_access_token(
        {"sub": user.username, "role": user.role.value, "user_id": user.id}
    )


async def get_current_user_claims(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Dict[str, Any]:
    """
    Decode a JWT bearer token and extract its claims.

    Returns
    -------
    Dict[str, Any]
        'username', 'role' and 'user_id'.

    Raises
    ------
    HTTPException
        If the token is invalid or lacks required claims.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(credentials.credentials, SECRET_KEY, algorithms=[ALGORITHM])
        username = payload.get("sub")
        role = payload.get("role")
        user_id = payload.get("user_id")
        if username is None or role is None or user_id is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    return {"username": username, "role": role, "user_id": user_id}


def get_current_user(
    claims: Dict[str, Any] = Depends(get_current_user_claims),
    db: Session = Depends(get_db),
) -> models.User:
    """
    Resolve the user behind the token.

    The role in the token must still match the stored role, so a demoted
    user cannot keep acting with an old token.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    user = db.query(models.User).filter(models.User.id == claims["user_id"]).first()
    if user is None:
        raise credentials_exception
    if claims["role"] != user.role.value:
        raise credentials_exception
    return user


def get_current_actor(user: models.User = Depends(get_current_user)) -> Actor:
    return actor_from_user(user)


# ---------- RBAC helpers ----------

def require_roles(*allowed_roles: models.UserRole) -> Callable:
    """
    Build a dependency that only lets the given roles through.

    Returns
    -------
    Callable
        A FastAPI dependency yielding the Actor, or raising HTTP 403.
    """

    def dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Operation not permitted for this role",
            )
        return actor

    return dependency


admin_only = require_roles(models.UserRole.ADMIN)


async def admin_or_service_account(
    claims: Dict[str, Any] = Depends(get_current_user_claims),
) -> Dict[str, Any]:
    """
    Gate for the periodic trigger: admins, or a service-account token.
    """
    if claims["role"] not in (models.UserRole.ADMIN.value, SERVICE_ACCOUNT_ROLE):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions",
        )
    return claims
