from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base


class UserRole(str, PyEnum):
    """
    Enumeration of the three-tier role hierarchy.

    Roles
    -----
    basic
        Member who must ask an admin to approve each booking.
    instructor
        Member who may book directly when granted ``can_reserve``.
    admin
        Unrestricted authority over rooms, users and reservations.
    """
    BASIC = "basic"
    INSTRUCTOR = "instructor"
    ADMIN = "admin"


class ReservationStatus(str, PyEnum):
    """
    Lifecycle of a reservation: ``active -> cancelled`` (terminal).

    Whether a reservation has *ended* is derived from its end time and is
    never stored.
    """
    ACTIVE = "active"
    CANCELLED = "cancelled"


class RequestStatus(str, PyEnum):
    """
    Lifecycle of a reservation request.

    ``pending`` moves to exactly one of the terminal states
    ``approved``, ``rejected`` or ``cancelled``.
    """
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class AttendeeStatus(str, PyEnum):
    INVITED = "invited"
    CONFIRMED = "confirmed"
    DECLINED = "declined"


class NotificationType(str, PyEnum):
    """
    Tag of a notification; each value maps to one user-facing template.
    """
    RESERVATION_CONFIRMED = "reservation_confirmed"
    RESERVATION_CANCELLED = "reservation_cancelled"
    RESERVATION_UPDATED = "reservation_updated"
    RESERVATION_REMINDER = "reservation_reminder"
    RESERVATION_OVERRIDDEN = "reservation_overridden"
    RESERVATION_INVITE = "reservation_invite"
    ATTENDEE_JOINED = "attendee_joined"
    PERMISSION_GRANTED = "permission_granted"
    PERMISSION_REJECTED = "permission_rejected"


class User(Base):
    """
    SQLAlchemy model for members of the organization.

    Attributes
    ----------
    id : int
        Primary key.
    name : str
        Display name.
    username : str
        Unique login name.
    email : str
        Unique address used by the email collaborator.
    hashed_password : str
        Bcrypt hash.
    role : UserRole
        Position in the basic < instructor < admin hierarchy.
    created_at : datetime
        Registration timestamp (UTC).
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    username = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.BASIC)
    created_at = Column(DateTime, default=datetime.utcnow)

    permission = relationship(
        "InstructorPermission",
        back_populates="user",
        uselist=False,
        foreign_keys="InstructorPermission.user_id",
    )


class InstructorPermission(Base):
    """
    Capabilities of a single instructor.

    Attributes
    ----------
    user_id : int
        The instructor (one row per instructor).
    can_reserve : bool
        May create reservations without an approved request.
    can_override : bool
        May cancel or modify reservations owned by other instructors.
    granted_by : int
        Admin who last changed the row.
    updated_at : datetime
        Timestamp of the last change.
    """
    __tablename__ = "instructor_permissions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    can_reserve = Column(Boolean, nullable=False, default=True)
    can_override = Column(Boolean, nullable=False, default=False)
    granted_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="permission", foreign_keys=[user_id])


class Room(Base):
    """
    SQLAlchemy model representing a bookable room.

    Attributes
    ----------
    name : str
        Unique room name.
    capacity : int
        Ceiling for a reservation's attendee count.
    location : str
        Optional building/floor description.
    min_role : UserRole
        Lowest role allowed to see and book the room.
    is_available : bool
        Whether the room currently accepts new bookings.
    """
    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False, index=True)
    capacity = Column(Integer, nullable=False)
    location = Column(String(255), nullable=True)
    min_role = Column(Enum(UserRole), nullable=False, default=UserRole.BASIC)
    is_available = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Reservation(Base):
    """
    SQLAlchemy model representing a room reservation.

    For a given room, active reservations never overlap in time
    (intervals are half-open, ``[start_time, end_time)``).

    Attributes
    ----------
    user_id : int
        Owner of the reservation.
    room_id : int
        Reserved room.
    start_time, end_time : datetime
        Reserved interval (naive UTC).
    purpose : str
        Free text.
    attendee_count : int
        Expected head count, bounded by the room capacity.
    status : ReservationStatus
        ``active`` or ``cancelled``.
    share_token : str
        Opaque join token, minted once at creation.
    cancelled_at : datetime
        Set exactly when status becomes ``cancelled``.
    """
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    room_id = Column(Integer, ForeignKey("rooms.id", ondelete="CASCADE"), index=True, nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    purpose = Column(Text, nullable=False, default="")
    attendee_count = Column(Integer, nullable=False, default=1)
    status = Column(Enum(ReservationStatus), nullable=False, default=ReservationStatus.ACTIVE)
    share_token = Column(String(64), unique=True, index=True, nullable=False)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    owner = relationship("User")
    room = relationship("Room")
    attendees = relationship(
        "ReservationAttendee",
        back_populates="reservation",
        cascade="all, delete-orphan",
    )


class ReservationRequest(Base):
    """
    A booking intent awaiting admin review.

    Attributes
    ----------
    status : RequestStatus
        ``pending`` until reviewed or withdrawn.
    reviewed_by : int
        Admin who approved or rejected the request.
    review_note : str
        Reviewer note; mandatory for rejections.
    reservation_id : int
        Reservation materialized on approval.
    """
    __tablename__ = "reservation_requests"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    room_id = Column(Integer, ForeignKey("rooms.id", ondelete="CASCADE"), index=True, nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    purpose = Column(Text, nullable=False, default="")
    attendee_count = Column(Integer, nullable=False, default=1)
    status = Column(Enum(RequestStatus), nullable=False, default=RequestStatus.PENDING, index=True)
    reviewed_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    review_note = Column(Text, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    reservation_id = Column(Integer, ForeignKey("reservations.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class ReservationAttendee(Base):
    __tablename__ = "reservation_attendees"
    __table_args__ = (
        UniqueConstraint("reservation_id", "user_id", name="uq_reservation_attendee"),
    )

    id = Column(Integer, primary_key=True, index=True)
    reservation_id = Column(
        Integer,
        ForeignKey("reservations.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    status = Column(Enum(AttendeeStatus), nullable=False, default=AttendeeStatus.INVITED)
    joined_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    reservation = relationship("Reservation", back_populates="attendees")
    user = relationship("User")


class Notification(Base):
    """
    Append-only in-app notification.

    Only the owning user may mark it read or delete it.
    """
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    type = Column(Enum(NotificationType), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    reservation_id = Column(
        Integer,
        ForeignKey("reservations.id", ondelete="CASCADE"),
        index=True,
        nullable=True,
    )
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class NotificationPreference(Base):
    """
    Per-user, per-type email opt-out. A missing row means "send".
    """
    __tablename__ = "notification_preferences"
    __table_args__ = (
        UniqueConstraint("user_id", "notification_type", name="uq_notification_preference"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    notification_type = Column(Enum(NotificationType), nullable=False)
    email_enabled = Column(Boolean, nullable=False, default=True)


class SystemSetting(Base):
    __tablename__ = "system_settings"

    key = Column(String(100), primary_key=True)
    value = Column(String(255), nullable=False)
    updated_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
