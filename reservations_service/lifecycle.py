"""
Reservation and reservation-request state transitions.

Every write below follows the same shape: authorize, validate, lock the
room, run the conflict check, write, commit. Notifications are emitted only
after the commit, so a messaging failure can never undo a booking.
"""
import logging
import secrets
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum as PyEnum
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from common.cache import invalidate_room_schedule

from . import models
from .clock import to_naive_utc, utcnow
from .conflicts import find_conflicts, has_conflict, lock_room
from .errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from .notifications import NotificationEmitter, describe_slot
from .policy import (
    Action,
    Actor,
    BookingMode,
    authorize,
    booking_mode,
    can_access_room,
    can_override_on_create,
)
from .settings import get_duration_bounds

logger = logging.getLogger(__name__)

SLOT_TAKEN = "Room is already booked for this time range"
SLOT_GONE = "Time slot is no longer available"


class ReviewDecision(str, PyEnum):
    APPROVE = "approve"
    REJECT = "reject"


@dataclass
class ReviewResult:
    request: models.ReservationRequest
    reservation: Optional[models.Reservation] = None


@contextmanager
def write_transaction(db: Session):
    """Commit on success, roll back on any error."""
    try:
        yield
        db.commit()
    except Exception:
        db.rollback()
        raise


def new_share_token() -> str:
    return secrets.token_hex(16)


# ---------- Validation helpers ----------


def validate_interval(db: Session, start_time: datetime, end_time: datetime) -> Tuple[datetime, datetime]:
    """
    Normalize an interval to naive UTC and check it against the duration bounds.

    Raises
    ------
    ValidationError
        If end is not after start, or the length is outside the
        configured minimum/maximum.
    """
    start_time = to_naive_utc(start_time)
    end_time = to_naive_utc(end_time)
    if end_time <= start_time:
        raise ValidationError("end_time must be after start_time")

    min_minutes, max_minutes = get_duration_bounds(db)
    duration = (end_time - start_time).total_seconds() / 60
    if duration < min_minutes:
        raise ValidationError(f"Reservation must be at least {min_minutes} minutes")
    if duration > max_minutes:
        raise ValidationError(f"Reservation cannot exceed {max_minutes} minutes")
    return start_time, end_time


def validate_attendee_count(room: models.Room, attendee_count: int) -> None:
    if attendee_count < 1:
        raise ValidationError("attendee_count must be at least 1")
    if attendee_count > room.capacity:
        raise ValidationError(f"Room capacity is {room.capacity} people")


def load_visible_room(db: Session, actor: Actor, room_id: int, lock: bool = False) -> models.Room:
    """
    Load a room the actor is allowed to see, optionally taking the room lock.

    Rooms above the actor's rank are reported as missing.
    """
    if lock:
        room = lock_room(db, room_id)
    else:
        room = db.query(models.Room).filter(models.Room.id == room_id).first()
    if room is None or not can_access_room(actor.role, room.min_role):
        raise NotFoundError("Room not found")
    return room


def _load_reservation(db: Session, reservation_id: int, lock: bool = False) -> models.Reservation:
    q = db.query(models.Reservation).filter(models.Reservation.id == reservation_id)
    if lock:
        q = q.with_for_update()
    reservation = q.first()
    if reservation is None:
        raise NotFoundError("Reservation not found")
    return reservation


def _ensure_overridable(actor: Actor, conflicts: List[models.Reservation]) -> None:
    """
    An override may only displace reservations of instructors who cannot
    override themselves.
    """
    for existing in conflicts:
        owner = existing.owner
        owner_can_override = owner.permission is not None and owner.permission.can_override
        if existing.user_id == actor.id or owner.role != models.UserRole.INSTRUCTOR or owner_can_override:
            raise ConflictError(SLOT_TAKEN)


# ---------- Reservations ----------


def create_reservation(
    db: Session,
    actor: Actor,
    room_id: int,
    start_time: datetime,
    end_time: datetime,
    purpose: str = "",
    attendee_count: int = 1,
    override: bool = False,
    emitter: Optional[NotificationEmitter] = None,
) -> models.Reservation:
    """
    Book a room directly.

    Parameters
    ----------
    db : Session
        Database session.
    actor : Actor
        Must have direct booking rights (admin, or instructor with
        ``can_reserve``).
    room_id : int
        Room to book.
    start_time, end_time : datetime
        Requested interval.
    purpose : str
        Free text.
    attendee_count : int
        Expected head count (1..room capacity).
    override : bool
        Instructors with ``can_override`` may displace conflicting
        reservations of instructors without that capability.
    emitter : Optional[NotificationEmitter]
        Notification sink; a synchronous one is built when omitted.

    Returns
    -------
    Reservation
        The new active reservation.

    Raises
    ------
    AuthorizationError
        If the actor must go through a reservation request.
    ConflictError
        If the interval overlaps an active reservation.
    ValidationError
        If the interval, duration or attendee count is invalid.
    NotFoundError
        If the room does not exist or is above the actor's role.
    """
    if booking_mode(actor) != BookingMode.DIRECT:
        raise AuthorizationError(
            "This account cannot book directly; submit a reservation request instead"
        )

    start_time, end_time = validate_interval(db, start_time, end_time)
    now = utcnow()
    overridden: List[models.Reservation] = []

    with write_transaction(db):
        room = load_visible_room(db, actor, room_id, lock=True)
        if not room.is_available:
            raise ValidationError("Room is not available for booking")
        validate_attendee_count(room, attendee_count)

        conflicts = find_conflicts(db, room.id, start_time, end_time)
        if conflicts:
            if not (override and can_override_on_create(actor)):
                raise ConflictError(SLOT_TAKEN)
            _ensure_overridable(actor, conflicts)
            for existing in conflicts:
                existing.status = models.ReservationStatus.CANCELLED
                existing.cancelled_at = now
                overridden.append(existing)

        reservation = models.Reservation(
            user_id=actor.id,
            room_id=room.id,
            start_time=start_time,
            end_time=end_time,
            purpose=purpose or "",
            attendee_count=attendee_count,
            status=models.ReservationStatus.ACTIVE,
            share_token=new_share_token(),
        )
        db.add(reservation)

    invalidate_room_schedule(reservation.room_id)
    logger.info(
        f"User {actor.id} reserved room {reservation.room_id} "
        f"{reservation.start_time:%Y-%m-%d %H:%M}-{reservation.end_time:%H:%M} (#{reservation.id})"
    )

    emitter = emitter or NotificationEmitter(db)
    for existing in overridden:
        logger.info(f"Reservation #{existing.id} overridden by instructor {actor.id}")
        if existing.end_time > now:
            emitter.emit(
                existing.user_id,
                models.NotificationType.RESERVATION_OVERRIDDEN,
                "Reservation Overridden",
                f"Your reservation has been overridden by a privileged instructor: {describe_slot(existing)}",
                existing.id,
            )
    emitter.emit(
        reservation.user_id,
        models.NotificationType.RESERVATION_CONFIRMED,
        "Reservation Confirmed",
        f"Your reservation has been confirmed: {describe_slot(reservation)}",
        reservation.id,
    )
    return reservation


def cancel_reservation(
    db: Session,
    actor: Actor,
    reservation_id: int,
    emitter: Optional[NotificationEmitter] = None,
) -> models.Reservation:
    """
    Move a reservation to ``cancelled``.

    Cancelling an already-cancelled reservation is acknowledged without
    any change. When the reservation has already ended the cancellation
    is recorded but nobody is notified.

    Raises
    ------
    NotFoundError
        If the reservation does not exist.
    AuthorizationError
        If the actor may not cancel it.
    """
    now = utcnow()
    with write_transaction(db):
        reservation = _load_reservation(db, reservation_id, lock=True)
        authorize(actor, reservation.user_id, reservation.owner.role, Action.CANCEL)

        if reservation.status == models.ReservationStatus.CANCELLED:
            logger.info(f"Reservation #{reservation.id} already cancelled")
            return reservation

        reservation.status = models.ReservationStatus.CANCELLED
        reservation.cancelled_at = now

    invalidate_room_schedule(reservation.room_id)
    logger.info(f"User {actor.id} cancelled reservation #{reservation.id}")

    if reservation.end_time <= now:
        logger.debug(f"Reservation #{reservation.id} already ended, cancellation not announced")
        return reservation

    message = f"Your reservation has been cancelled: {describe_slot(reservation)}"
    if actor.id != reservation.user_id:
        message += " (cancelled by another member)"
    (emitter or NotificationEmitter(db)).emit(
        reservation.user_id,
        models.NotificationType.RESERVATION_CANCELLED,
        "Reservation Cancelled",
        message,
        reservation.id,
    )
    return reservation


def edit_reservation(
    db: Session,
    actor: Actor,
    reservation_id: int,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
    purpose: Optional[str] = None,
    attendee_count: Optional[int] = None,
    emitter: Optional[NotificationEmitter] = None,
) -> models.Reservation:
    """
    Change an active reservation in place.

    Fields left as ``None`` keep their current value. The resulting
    interval is re-checked against every other active reservation in the
    same room.

    Raises
    ------
    NotFoundError
        If the reservation does not exist.
    AuthorizationError
        If the actor may not modify it.
    ValidationError
        If it is cancelled, or the new values are invalid.
    ConflictError
        If the new interval overlaps another active reservation.
    """
    with write_transaction(db):
        # lock order: room, then reservation
        room_id = (
            db.query(models.Reservation.room_id)
            .filter(models.Reservation.id == reservation_id)
            .scalar()
        )
        if room_id is None:
            raise NotFoundError("Reservation not found")
        room = lock_room(db, room_id)
        reservation = _load_reservation(db, reservation_id, lock=True)
        authorize(actor, reservation.user_id, reservation.owner.role, Action.MODIFY)
        if reservation.status != models.ReservationStatus.ACTIVE:
            raise ValidationError("Cancelled reservations cannot be modified")

        new_start, new_end = validate_interval(
            db,
            start_time if start_time is not None else reservation.start_time,
            end_time if end_time is not None else reservation.end_time,
        )

        new_count = attendee_count if attendee_count is not None else reservation.attendee_count
        validate_attendee_count(room, new_count)

        if has_conflict(db, room.id, new_start, new_end, exclude_reservation_id=reservation.id):
            raise ConflictError(SLOT_TAKEN)

        reservation.start_time = new_start
        reservation.end_time = new_end
        reservation.attendee_count = new_count
        if purpose is not None:
            reservation.purpose = purpose

    invalidate_room_schedule(reservation.room_id)
    logger.info(f"User {actor.id} updated reservation #{reservation.id}")

    (emitter or NotificationEmitter(db)).emit(
        reservation.user_id,
        models.NotificationType.RESERVATION_UPDATED,
        "Reservation Updated",
        f"Your reservation has been updated: {describe_slot(reservation)}",
        reservation.id,
    )
    return reservation


# ---------- Reservation requests ----------


def submit_request(
    db: Session,
    actor: Actor,
    room_id: int,
    start_time: datetime,
    end_time: datetime,
    purpose: str,
    attendee_count: int = 1,
) -> models.ReservationRequest:
    """
    Ask an admin to approve a booking.

    Only actors without direct booking rights submit requests. The slot
    must be free at submission time; it is checked again on approval.

    Raises
    ------
    AuthorizationError
        If the actor can book directly.
    ValidationError
        For invalid values or a duplicate pending request.
    ConflictError
        If the slot is already taken.
    NotFoundError
        If the room is missing or not visible.
    """
    if booking_mode(actor) == BookingMode.DIRECT:
        raise AuthorizationError("This account can book directly; create the reservation instead")

    if not purpose or not purpose.strip():
        raise ValidationError("purpose is required for a reservation request")

    start_time, end_time = validate_interval(db, start_time, end_time)
    room = load_visible_room(db, actor, room_id)
    if not room.is_available:
        raise ValidationError("Room is not available for booking")
    validate_attendee_count(room, attendee_count)

    if has_conflict(db, room.id, start_time, end_time):
        raise ConflictError(SLOT_TAKEN)

    duplicate = (
        db.query(models.ReservationRequest)
        .filter(
            models.ReservationRequest.user_id == actor.id,
            models.ReservationRequest.room_id == room.id,
            models.ReservationRequest.status == models.RequestStatus.PENDING,
            models.ReservationRequest.start_time == start_time,
            models.ReservationRequest.end_time == end_time,
        )
        .first()
    )
    if duplicate:
        raise ValidationError("You already have a pending request for this time slot")

    request = models.ReservationRequest(
        user_id=actor.id,
        room_id=room.id,
        start_time=start_time,
        end_time=end_time,
        purpose=purpose.strip(),
        attendee_count=attendee_count,
        status=models.RequestStatus.PENDING,
    )
    db.add(request)
    db.commit()
    db.refresh(request)

    logger.info(f"User {actor.id} submitted reservation request #{request.id} for room {room.id}")
    return request


def review_request(
    db: Session,
    actor: Actor,
    request_id: int,
    decision: ReviewDecision,
    note: Optional[str] = None,
    emitter: Optional[NotificationEmitter] = None,
) -> ReviewResult:
    """
    Approve or reject a pending request (admins only).

    Approval re-runs the availability, capacity and conflict checks under
    the room lock. If the slot was taken in the meantime a ConflictError
    is raised and the request stays ``pending``; a room closed or shrunk
    since submission gives a ValidationError. Rejection requires a
    non-empty note.

    Returns
    -------
    ReviewResult
        The reviewed request and, on approval, the new reservation.
    """
    if actor.role != models.UserRole.ADMIN:
        raise AuthorizationError("Only admins can review reservation requests")

    note = note.strip() if note else None
    if decision == ReviewDecision.REJECT and not note:
        raise ValidationError("A review note is required to reject a request")

    now = utcnow()
    reservation = None

    with write_transaction(db):
        request = (
            db.query(models.ReservationRequest)
            .filter(models.ReservationRequest.id == request_id)
            .with_for_update()
            .first()
        )
        if request is None:
            raise NotFoundError("Reservation request not found")
        if request.status != models.RequestStatus.PENDING:
            raise ValidationError("Reservation request has already been processed")

        if decision == ReviewDecision.APPROVE:
            room = lock_room(db, request.room_id)
            if room is None:
                raise NotFoundError("Room not found")
            if not room.is_available:
                raise ValidationError("Room is not available for booking")
            validate_attendee_count(room, request.attendee_count)
            if has_conflict(db, room.id, request.start_time, request.end_time):
                raise ConflictError(SLOT_GONE)

            reservation = models.Reservation(
                user_id=request.user_id,
                room_id=request.room_id,
                start_time=request.start_time,
                end_time=request.end_time,
                purpose=request.purpose,
                attendee_count=request.attendee_count,
                status=models.ReservationStatus.ACTIVE,
                share_token=new_share_token(),
            )
            db.add(reservation)
            db.flush()
            request.status = models.RequestStatus.APPROVED
            request.reservation_id = reservation.id
        else:
            request.status = models.RequestStatus.REJECTED

        request.reviewed_by = actor.id
        request.reviewed_at = now
        request.review_note = note

    emitter = emitter or NotificationEmitter(db)
    if reservation is not None:
        invalidate_room_schedule(reservation.room_id)
        logger.info(f"Admin {actor.id} approved request #{request.id} as reservation #{reservation.id}")
        emitter.emit(
            reservation.user_id,
            models.NotificationType.RESERVATION_CONFIRMED,
            "Reservation Request Approved",
            f"Your reservation request has been approved: {describe_slot(reservation)}",
            reservation.id,
        )
    else:
        logger.info(f"Admin {actor.id} rejected request #{request.id}")
        emitter.emit(
            request.user_id,
            models.NotificationType.PERMISSION_REJECTED,
            "Reservation Request Rejected",
            f"Your reservation request has been rejected: {note}",
        )
    return ReviewResult(request=request, reservation=reservation)


def withdraw_request(db: Session, actor: Actor, request_id: int) -> models.ReservationRequest:
    """
    Let a requester cancel their own pending request.

    Requests of other users are reported as missing.
    """
    with write_transaction(db):
        request = (
            db.query(models.ReservationRequest)
            .filter(
                models.ReservationRequest.id == request_id,
                models.ReservationRequest.user_id == actor.id,
            )
            .with_for_update()
            .first()
        )
        if request is None:
            raise NotFoundError("Reservation request not found")
        if request.status != models.RequestStatus.PENDING:
            raise ValidationError("Only pending requests can be cancelled")
        request.status = models.RequestStatus.CANCELLED

    logger.info(f"User {actor.id} withdrew reservation request #{request.id}")
    return request
