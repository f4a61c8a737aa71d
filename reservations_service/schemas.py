from datetime import date, datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from .lifecycle import ReviewDecision
from .models import (
    AttendeeStatus,
    NotificationType,
    RequestStatus,
    ReservationStatus,
    UserRole,
)


# ---------- Users ----------


class UserCreate(BaseModel):
    """
    Schema for user registration input.
    Public registration does NOT accept role; it is assigned internally.
    """
    name: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    email: EmailStr
    password: str


class UserRoleUpdate(BaseModel):
    """
    Schema used by admins to change a user's role.
    """
    role: UserRole


class PermissionUpdate(BaseModel):
    """
    Instructor capabilities set by an admin.

    Omitted fields keep their current value.
    """
    can_reserve: Optional[bool] = None
    can_override: Optional[bool] = None


class PermissionRead(BaseModel):
    can_reserve: bool
    can_override: bool
    granted_by: Optional[int] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class UserRead(BaseModel):
    """
    Schema returned when reading user information.

    Exposes safe, non-sensitive fields and hides the password hash.
    """
    id: int
    name: str
    username: str
    email: EmailStr
    role: UserRole
    created_at: datetime
    permission: Optional[PermissionRead] = None

    model_config = ConfigDict(from_attributes=True)


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


# ---------- Rooms ----------


class RoomBase(BaseModel):
    """
    Base schema for room information.

    Shared fields used when creating and reading rooms.
    """
    name: str = Field(..., min_length=1, max_length=100)
    capacity: int = Field(..., ge=1)
    location: Optional[str] = Field(default=None, max_length=255)
    min_role: UserRole = UserRole.BASIC
    is_available: bool = True


class RoomCreate(RoomBase):
    pass


class RoomUpdate(BaseModel):
    """
    Schema for partial updates to a room.

    All fields are optional and only provided values will be updated.
    """
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    capacity: Optional[int] = Field(default=None, ge=1)
    location: Optional[str] = Field(default=None, max_length=255)
    min_role: Optional[UserRole] = None
    is_available: Optional[bool] = None


class RoomRead(RoomBase):
    id: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ---------- Reservations ----------


class ReservationBase(BaseModel):
    """
    Room, interval and head count shared by reservations and requests.
    """
    room_id: int = Field(..., ge=1)
    start_time: datetime = Field(...)
    end_time: datetime = Field(...)
    purpose: str = Field(default="", max_length=2000)
    attendee_count: int = Field(default=1, ge=1)


class ReservationCreate(ReservationBase):
    """
    Schema for booking a room directly.

    ``override`` is only honoured for instructors holding the override
    capability; it displaces conflicting reservations of instructors
    without it.
    """
    override: bool = False


class ReservationUpdate(BaseModel):
    """
    Schema for partially updating an existing reservation.

    All fields are optional; only provided values will be applied.
    """
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    purpose: Optional[str] = Field(default=None, max_length=2000)
    attendee_count: Optional[int] = Field(default=None, ge=1)


class ReservationRead(ReservationBase):
    id: int
    user_id: int
    status: ReservationStatus
    share_token: str
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ReservationSummaryRead(ReservationRead):
    """
    A reservation with attendance counts, as shown in personal listings.

    ``confirmed_count`` includes the owner.
    """
    confirmed_count: int
    invited_count: int

    @classmethod
    def from_summary(cls, summary) -> "ReservationSummaryRead":
        return cls(
            **ReservationRead.model_validate(summary.reservation).model_dump(),
            confirmed_count=summary.confirmed_count,
            invited_count=summary.invited_count,
        )


class ReservationViewRead(ReservationSummaryRead):
    """
    A reservation as seen by one viewer (detail page, share link).
    """
    is_owner: bool
    is_ended: bool
    is_ongoing: bool
    attendance_status: Optional[AttendeeStatus] = None

    @classmethod
    def from_view(cls, view) -> "ReservationViewRead":
        return cls(
            **ReservationRead.model_validate(view.reservation).model_dump(),
            confirmed_count=view.confirmed_count,
            invited_count=view.invited_count,
            is_owner=view.is_owner,
            is_ended=view.is_ended,
            is_ongoing=view.is_ongoing,
            attendance_status=view.attendance_status,
        )


class ScheduleEntry(BaseModel):
    """
    Public slot information for a room schedule: no owner details.
    """
    id: int
    start_time: datetime
    end_time: datetime
    status: ReservationStatus

    model_config = ConfigDict(from_attributes=True)


class RoomSchedule(BaseModel):
    room_id: int
    day: date
    reservations: List[ScheduleEntry]


class InviteBody(BaseModel):
    user_ids: List[int] = Field(..., min_length=1)


class AttendeeRead(BaseModel):
    id: int
    reservation_id: int
    user_id: int
    status: AttendeeStatus
    joined_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# ---------- Reservation requests ----------


class ReservationRequestCreate(ReservationBase):
    purpose: str = Field(..., min_length=1, max_length=2000)


class ReservationRequestRead(ReservationBase):
    id: int
    user_id: int
    status: RequestStatus
    reviewed_by: Optional[int] = None
    review_note: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    reservation_id: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReviewBody(BaseModel):
    """
    Admin decision on a pending request; rejections need a note.
    """
    decision: ReviewDecision
    note: Optional[str] = Field(default=None, max_length=2000)


class ReviewResultRead(BaseModel):
    request: ReservationRequestRead
    reservation: Optional[ReservationRead] = None

    model_config = ConfigDict(from_attributes=True)


# ---------- Notifications ----------


class NotificationRead(BaseModel):
    id: int
    type: NotificationType
    title: str
    message: str
    reservation_id: Optional[int] = None
    is_read: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NotificationList(BaseModel):
    items: List[NotificationRead]
    unread_count: int


class MarkReadBody(BaseModel):
    """
    Mark one notification as read, or all of them when ``notification_id``
    is omitted.
    """
    notification_id: Optional[int] = None


class Preferences(BaseModel):
    email: Dict[NotificationType, bool]


# ---------- Admin ----------


class DurationSettings(BaseModel):
    min_reservation_minutes: int = Field(..., ge=1)
    max_reservation_minutes: int = Field(..., ge=1)


class RoomUtilization(BaseModel):
    room_id: int
    room_name: str
    bookings: int
    hours: float


class PopularRoom(BaseModel):
    room_id: int
    room_name: str
    bookings: int


class RoleCount(BaseModel):
    role: UserRole
    count: int


class AdminStats(BaseModel):
    total_users: int
    total_rooms: int
    upcoming_reservations: int
    total_reservations: int
    utilization: List[RoomUtilization]
    popular_rooms: List[PopularRoom]
    role_distribution: List[RoleCount]


class ReminderRun(BaseModel):
    total: int
    sent: int
