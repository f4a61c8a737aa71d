import logging
import re
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from . import models, schemas
from .auth import (
    admin_only,
    authenticate_user,
    get_current_user,
    get_password_hash,
    token_for_user,
)
from .database import get_db
from .deps import get_emitter
from .models import UserRole
from .notifications import NotificationEmitter
from .policy import Actor
from .rate_limiter import ip_rate_limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["users"])


# ---------- Password Strength ----------

def validate_password_strength(password: str):
    """
    Validate password complexity rules.

    A valid password must:
    - Be at least 8 characters long
    - Contain at least one letter
    - Contain at least one digit

    Raises
    ------
    HTTPException
        If the password does not meet the strength requirements.
    """
    if len(password) < 8:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Password must be at least 8 characters long",
        )
    if not re.search(r"[A-Za-z]", password):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Password must contain at least one letter",
        )
    if not re.search(r"\d", password):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Password must contain at least one digit",
        )


def _get_user_or_404(db: Session, user_id: int) -> models.User:
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )
    return user


# ---------- Registration ----------

@router.post(
    "/users/register",
    response_model=schemas.UserRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(ip_rate_limiter)],
)
def register_user(user_in: schemas.UserCreate, db: Session = Depends(get_db)):
    """
    Register a new user.

    Behavior:
    - First account created becomes ADMIN.
    - All subsequent public registrations become BASIC users.
    - Username and email must be unique.
    - Password strength is validated before hashing.

    Raises
    ------
    HTTPException
        If username/email already exist or password is weak.
    """
    existing = (
        db.query(models.User)
        .filter(
            (models.User.username == user_in.username)
            | (models.User.email == user_in.email)
        )
        .first()
    )
    if existing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Username or email already exists",
        )

    # first ever account becomes admin, every other public registration is basic
    assigned_role = UserRole.ADMIN if db.query(models.User).count() == 0 else UserRole.BASIC

    validate_password_strength(user_in.password)
    user = models.User(
        name=user_in.name,
        username=user_in.username,
        email=user_in.email,
        hashed_password=get_password_hash(user_in.password),
        role=assigned_role,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Registered user {user.id} ({user.username}) as {user.role.value}")
    return user


# ---------- Login (token) ----------

@router.post("/users/login", response_model=schemas.Token, dependencies=[Depends(ip_rate_limiter)])
def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db),
):
    """
    Authenticate a user and return a JWT access token.

    Returns
    -------
    Token
        Access token with role and user_id embedded.
    """
    user = authenticate_user(db, form_data.username, form_data.password)
    if not user:
        logger.warning(f"Failed login for username {form_data.username!r}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
        )

    return {"access_token": token_for_user(user), "token_type": "bearer"}


@router.get("/users/me", response_model=schemas.UserRead)
def get_my_profile(current_user: models.User = Depends(get_current_user)):
    return current_user


# ---------- Admin: user management ----------

@router.get("/users", response_model=List[schemas.UserRead])
def list_users(
    db: Session = Depends(get_db),
    _: Actor = Depends(admin_only),
):
    """
    Admin: list all users, ordered by id.
    """
    return db.query(models.User).order_by(models.User.id).all()


@router.put("/users/{user_id}/role", response_model=schemas.UserRead)
def change_user_role(
    user_id: int,
    role_update: schemas.UserRoleUpdate,
    db: Session = Depends(get_db),
    admin: Actor = Depends(admin_only),
):
    """
    Admin: change a user's role.

    Behavior
    --------
    - Admins cannot change their own role.
    - Promoting to INSTRUCTOR creates the permission record (direct
      booking allowed, override not) if the user has none yet.
    - Tokens issued before the change stop working, since the token role
      no longer matches.

    Raises
    ------
    HTTPException
        404 if the user does not exist, 400 on self-demotion.
    """
    user = _get_user_or_404(db, user_id)
    if user.id == admin.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Admins cannot change their own role",
        )

    previous = user.role
    user.role = role_update.role
    if role_update.role == UserRole.INSTRUCTOR and user.permission is None:
        db.add(
            models.InstructorPermission(
                user_id=user.id,
                can_reserve=True,
                can_override=False,
                granted_by=admin.id,
            )
        )
    db.commit()
    db.refresh(user)

    logger.info(f"Admin {admin.id} changed role of user {user.id}: {previous.value} -> {user.role.value}")
    return user


@router.put("/users/{user_id}/permissions", response_model=schemas.UserRead)
def update_instructor_permissions(
    user_id: int,
    update: schemas.PermissionUpdate,
    db: Session = Depends(get_db),
    admin: Actor = Depends(admin_only),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    """
    Admin: grant or revoke instructor capabilities.

    Only instructors carry capabilities. An instructor without a permission
    record starts from request-only. The instructor is notified when a
    capability is turned on; revocations are silent and leave existing
    reservations untouched.

    Raises
    ------
    HTTPException
        404 if the user does not exist, 400 if the user is not an instructor.
    """
    user = _get_user_or_404(db, user_id)
    if user.role != UserRole.INSTRUCTOR:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Permissions can only be set for instructors",
        )

    permission = user.permission
    if permission is None:
        permission = models.InstructorPermission(user_id=user.id, can_reserve=False, can_override=False)
        db.add(permission)
    before = (bool(permission.can_reserve), bool(permission.can_override))
    if update.can_reserve is not None:
        permission.can_reserve = update.can_reserve
    if update.can_override is not None:
        permission.can_override = update.can_override
    permission.granted_by = admin.id
    db.commit()
    db.refresh(user)

    logger.info(
        f"Admin {admin.id} set permissions of instructor {user.id}: "
        f"can_reserve={permission.can_reserve} can_override={permission.can_override}"
    )
    granted = (permission.can_reserve and not before[0]) or (permission.can_override and not before[1])
    if not granted:
        return user

    booking = "direct booking" if permission.can_reserve else "booking by request only"
    override = ", override of other instructors" if permission.can_override else ""
    emitter.emit(
        user.id,
        models.NotificationType.PERMISSION_GRANTED,
        "Reservation Permissions Updated",
        f"Your reservation permissions are now: {booking}{override}",
    )
    return user
