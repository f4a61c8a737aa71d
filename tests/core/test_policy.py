import pytest

from reservations_service.errors import AuthorizationError
from reservations_service.models import UserRole
from reservations_service.policy import (
    Action,
    Actor,
    BookingMode,
    authorize,
    booking_mode,
    can_access_room,
    can_override_on_create,
    is_permitted,
)

ADMIN = Actor(id=1, role=UserRole.ADMIN)
OVERRIDER = Actor(id=2, role=UserRole.INSTRUCTOR, can_reserve=True, can_override=True)
INSTRUCTOR = Actor(id=3, role=UserRole.INSTRUCTOR, can_reserve=True)
REQUEST_ONLY_INSTRUCTOR = Actor(id=4, role=UserRole.INSTRUCTOR)
BASIC = Actor(id=5, role=UserRole.BASIC)

OWNER_ID = 99


@pytest.mark.parametrize("action", list(Action))
@pytest.mark.parametrize(
    "actor,owner_role,expected",
    [
        (ADMIN, UserRole.BASIC, True),
        (ADMIN, UserRole.INSTRUCTOR, True),
        (ADMIN, UserRole.ADMIN, True),
        (OVERRIDER, UserRole.BASIC, True),
        (OVERRIDER, UserRole.INSTRUCTOR, True),
        (OVERRIDER, UserRole.ADMIN, False),
        (INSTRUCTOR, UserRole.BASIC, False),
        (INSTRUCTOR, UserRole.INSTRUCTOR, False),
        (BASIC, UserRole.BASIC, False),
        (BASIC, UserRole.INSTRUCTOR, False),
    ],
)
def test_permission_table_is_the_same_for_every_action(actor, owner_role, expected, action):
    assert is_permitted(actor, OWNER_ID, owner_role, action) is expected


@pytest.mark.parametrize("actor", [ADMIN, OVERRIDER, INSTRUCTOR, REQUEST_ONLY_INSTRUCTOR, BASIC])
def test_owner_may_always_act_on_own_reservation(actor):
    for action in Action:
        assert is_permitted(actor, actor.id, actor.role, action)


def test_authorize_raises_for_denied_actor():
    with pytest.raises(AuthorizationError) as exc:
        authorize(BASIC, OWNER_ID, UserRole.BASIC, Action.CANCEL)
    assert "cancel" in exc.value.detail
    assert exc.value.status_code == 403


def test_booking_mode_by_role_and_capability():
    assert booking_mode(ADMIN) == BookingMode.DIRECT
    assert booking_mode(OVERRIDER) == BookingMode.DIRECT
    assert booking_mode(INSTRUCTOR) == BookingMode.DIRECT
    assert booking_mode(REQUEST_ONLY_INSTRUCTOR) == BookingMode.REQUEST
    assert booking_mode(BASIC) == BookingMode.REQUEST


def test_room_access_follows_role_rank():
    assert can_access_room(UserRole.BASIC, UserRole.BASIC)
    assert not can_access_room(UserRole.BASIC, UserRole.INSTRUCTOR)
    assert can_access_room(UserRole.INSTRUCTOR, UserRole.INSTRUCTOR)
    assert not can_access_room(UserRole.INSTRUCTOR, UserRole.ADMIN)
    assert can_access_room(UserRole.ADMIN, UserRole.INSTRUCTOR)


def test_only_override_instructors_override_on_create():
    assert can_override_on_create(OVERRIDER)
    assert not can_override_on_create(INSTRUCTOR)
    assert not can_override_on_create(ADMIN)
