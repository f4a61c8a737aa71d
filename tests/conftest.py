import os
import sys

# Must be set before the service modules read their configuration
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_reservations.db")
os.environ["TESTING"] = "1"
os.environ.pop("REDIS_URL", None)
os.environ.pop("EMAIL_SERVICE_URL", None)

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import pytest

from reservations_service import models
from reservations_service.auth import actor_from_user
from reservations_service.circuit_breaker import email_circuit_breaker
from reservations_service.database import Base, SessionLocal, engine
from reservations_service.notifications import NotificationEmitter
from reservations_service.rate_limiter import reset as reset_rate_limits


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    email_circuit_breaker.reset()
    reset_rate_limits()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db):
    """
    Create a user directly in the database.

    For instructors, ``can_reserve``/``can_override`` create the permission
    record; leave ``can_reserve`` as None for an instructor without one.
    """
    counter = {"n": 0}

    def _make(name=None, role=models.UserRole.BASIC, can_reserve=None, can_override=False):
        counter["n"] += 1
        name = name or f"user{counter['n']}"
        user = models.User(
            name=name.title(),
            username=name,
            email=f"{name}@example.com",
            hashed_password="not-a-real-hash",
            role=role,
        )
        db.add(user)
        db.flush()
        if role == models.UserRole.INSTRUCTOR and can_reserve is not None:
            db.add(
                models.InstructorPermission(
                    user_id=user.id,
                    can_reserve=can_reserve,
                    can_override=can_override,
                )
            )
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_room(db):
    counter = {"n": 0}

    def _make(name=None, capacity=10, min_role=models.UserRole.BASIC, is_available=True):
        counter["n"] += 1
        room = models.Room(
            name=name or f"Room {counter['n']}",
            capacity=capacity,
            location="Building A",
            min_role=min_role,
            is_available=is_available,
        )
        db.add(room)
        db.commit()
        db.refresh(room)
        return room

    return _make


@pytest.fixture
def actor_of():
    return actor_from_user


@pytest.fixture
def outbox():
    """Outbound email requests captured instead of being delivered."""
    return []


@pytest.fixture
def emitter(db, outbox):
    return NotificationEmitter(db, dispatch=outbox.append)


def notifications_for(db, user_id, notification_type=None):
    q = db.query(models.Notification).filter(models.Notification.user_id == user_id)
    if notification_type is not None:
        q = q.filter(models.Notification.type == notification_type)
    return q.order_by(models.Notification.id).all()


@pytest.fixture
def inbox(db):
    """``inbox(user_id, type=None)`` lists stored notifications."""

    def _inbox(user_id, notification_type=None):
        db.expire_all()
        return notifications_for(db, user_id, notification_type)

    return _inbox
