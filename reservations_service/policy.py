from dataclasses import dataclass
from enum import Enum as PyEnum

from .errors import AuthorizationError
from .models import UserRole

ROLE_RANK = {
    UserRole.BASIC: 0,
    UserRole.INSTRUCTOR: 1,
    UserRole.ADMIN: 2,
}


@dataclass(frozen=True)
class Actor:
    """
    Authenticated identity attached to every core call.

    Attributes
    ----------
    id : int
        User id.
    role : UserRole
        Current role.
    can_reserve : bool
        Instructor capability to book without approval.
    can_override : bool
        Instructor capability to act on other instructors' reservations.
    """
    id: int
    role: UserRole
    can_reserve: bool = False
    can_override: bool = False


class Action(str, PyEnum):
    CANCEL = "cancel"
    MODIFY = "modify"
    VIEW_OTHERS = "view-others"


class BookingMode(str, PyEnum):
    DIRECT = "direct"
    REQUEST = "request"


def is_permitted(actor: Actor, owner_id: int, owner_role: UserRole, action: Action) -> bool:
    """
    Decide whether ``actor`` may perform ``action`` on a reservation.

    Rules are evaluated in order and the first match wins:

    1. the owner may always act on their own reservation;
    2. admins may act on any reservation;
    3. instructors holding ``can_override`` may act on any reservation
       not owned by an admin;
    4. everyone else is denied.

    State checks (e.g. the reservation already being cancelled) are the
    caller's concern; this function only looks at identities.
    """
    if actor.id == owner_id:
        return True
    if actor.role == UserRole.ADMIN:
        return True
    if (
        actor.role == UserRole.INSTRUCTOR
        and actor.can_override
        and owner_role != UserRole.ADMIN
    ):
        return True
    return False


def authorize(actor: Actor, owner_id: int, owner_role: UserRole, action: Action) -> None:
    """
    Raise AuthorizationError unless :func:`is_permitted` allows the action.
    """
    if not is_permitted(actor, owner_id, owner_role, action):
        raise AuthorizationError(f"Not allowed to {action.value} this reservation")


def booking_mode(actor: Actor) -> BookingMode:
    """
    Return how ``actor`` creates bookings: directly, or through a request.
    """
    if actor.role == UserRole.ADMIN:
        return BookingMode.DIRECT
    if actor.role == UserRole.INSTRUCTOR and actor.can_reserve:
        return BookingMode.DIRECT
    return BookingMode.REQUEST


def can_access_room(role: UserRole, min_role: UserRole) -> bool:
    """True if ``role`` ranks at or above the room's ``min_role``."""
    return ROLE_RANK[role] >= ROLE_RANK[min_role]


def can_override_on_create(actor: Actor) -> bool:
    return actor.role == UserRole.INSTRUCTOR and actor.can_override
