"""
Read-only views over reservations: nothing here writes to the store.
"""
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from . import config, models
from .attendees import ReservationView, attendance_counts, build_view
from .clock import utcnow
from .errors import NotFoundError
from .policy import Action, Actor, can_access_room, is_permitted

POPULAR_ROOMS_LIMIT = 5


@dataclass
class ReservationSummary:
    reservation: models.Reservation
    confirmed_count: int
    invited_count: int


def list_my_reservations(
    db: Session, user_id: int, now: Optional[datetime] = None
) -> List[ReservationSummary]:
    """
    Reservations owned by ``user_id`` that are still worth showing.

    Hidden: reservations cancelled more than ``CANCELLED_VISIBLE_MINUTES``
    ago and reservations that ended more than ``ENDED_VISIBLE_HOURS`` ago.
    Ordered by start time, newest first.
    """
    now = now or utcnow()
    cancelled_cutoff = now - timedelta(minutes=config.CANCELLED_VISIBLE_MINUTES)
    ended_cutoff = now - timedelta(hours=config.ENDED_VISIBLE_HOURS)

    reservations = (
        db.query(models.Reservation)
        .filter(models.Reservation.user_id == user_id)
        .filter(
            or_(
                models.Reservation.status == models.ReservationStatus.ACTIVE,
                models.Reservation.cancelled_at > cancelled_cutoff,
            )
        )
        .filter(models.Reservation.end_time > ended_cutoff)
        .order_by(models.Reservation.start_time.desc())
        .all()
    )

    counts = attendance_counts(db, [r.id for r in reservations])
    return [
        ReservationSummary(r, *counts[r.id])
        for r in reservations
    ]


def get_room_schedule(db: Session, actor: Actor, room_id: int, day: date) -> List[models.Reservation]:
    """
    Active reservations of one room that overlap the given calendar day,
    ordered by start time.

    Raises
    ------
    NotFoundError
        If the room does not exist or is above the actor's role.
    """
    room = db.query(models.Room).filter(models.Room.id == room_id).first()
    if room is None or not can_access_room(actor.role, room.min_role):
        raise NotFoundError("Room not found")

    day_start = datetime.combine(day, time.min)
    day_end = day_start + timedelta(days=1)
    return (
        db.query(models.Reservation)
        .filter(models.Reservation.room_id == room_id)
        .filter(models.Reservation.status == models.ReservationStatus.ACTIVE)
        .filter(models.Reservation.start_time < day_end)
        .filter(models.Reservation.end_time > day_start)
        .order_by(models.Reservation.start_time.asc())
        .all()
    )


def list_reservations(
    db: Session,
    room_id: Optional[int] = None,
    user_id: Optional[int] = None,
) -> List[models.Reservation]:
    q = db.query(models.Reservation)
    if room_id is not None:
        q = q.filter(models.Reservation.room_id == room_id)
    if user_id is not None:
        q = q.filter(models.Reservation.user_id == user_id)
    return q.order_by(models.Reservation.start_time.desc()).all()


def get_reservation_detail(db: Session, actor: Actor, reservation_id: int) -> ReservationView:
    """
    Load one reservation for the actor.

    Visible to the owner, to anyone with an attendee row, and to actors the
    view-others policy allows. Everyone else gets NotFoundError.
    """
    reservation = (
        db.query(models.Reservation)
        .filter(models.Reservation.id == reservation_id)
        .first()
    )
    if reservation is None:
        raise NotFoundError("Reservation not found")

    is_attendee = (
        db.query(models.ReservationAttendee.id)
        .filter(
            models.ReservationAttendee.reservation_id == reservation.id,
            models.ReservationAttendee.user_id == actor.id,
        )
        .first()
        is not None
    )
    if not is_attendee and not is_permitted(
        actor, reservation.user_id, reservation.owner.role, Action.VIEW_OTHERS
    ):
        raise NotFoundError("Reservation not found")

    return build_view(db, reservation, actor.id)


def list_requests(db: Session, user_id: Optional[int] = None) -> List[models.ReservationRequest]:
    """
    Reservation requests, newest first.

    Without ``user_id`` all requests are returned with pending ones first.
    """
    q = db.query(models.ReservationRequest)
    if user_id is not None:
        return (
            q.filter(models.ReservationRequest.user_id == user_id)
            .order_by(models.ReservationRequest.created_at.desc(), models.ReservationRequest.id.desc())
            .all()
        )
    pending_first = (models.ReservationRequest.status != models.RequestStatus.PENDING)
    return q.order_by(
        pending_first,
        models.ReservationRequest.created_at.desc(),
        models.ReservationRequest.id.desc(),
    ).all()


def reminders_due_between(
    db: Session, window_start: datetime, window_end: datetime
) -> List[models.Reservation]:
    """
    Active reservations starting inside ``[window_start, window_end]`` that
    have not been reminded yet.

    A reservation counts as reminded once a reminder notification exists
    for it, which makes repeated runs over overlapping windows safe.
    """
    already_reminded = (
        db.query(models.Notification.id)
        .filter(
            models.Notification.reservation_id == models.Reservation.id,
            models.Notification.type == models.NotificationType.RESERVATION_REMINDER,
        )
        .exists()
    )
    return (
        db.query(models.Reservation)
        .filter(models.Reservation.status == models.ReservationStatus.ACTIVE)
        .filter(models.Reservation.start_time >= window_start)
        .filter(models.Reservation.start_time <= window_end)
        .filter(~already_reminded)
        .order_by(models.Reservation.start_time.asc())
        .all()
    )


def admin_stats(db: Session, now: Optional[datetime] = None) -> Dict:
    """
    Dashboard aggregates for admins.

    Utilization and popularity only count non-cancelled reservations.

    Returns
    -------
    dict
        ``total_users``, ``total_rooms``, ``upcoming_reservations``,
        ``total_reservations``, ``utilization`` (per room: bookings and
        hours), ``popular_rooms`` (top rooms by bookings) and
        ``role_distribution``.
    """
    now = now or utcnow()
    active = models.Reservation.status == models.ReservationStatus.ACTIVE

    total_users = db.query(models.User).count()
    total_rooms = db.query(models.Room).count()
    total_reservations = db.query(models.Reservation).count()
    upcoming = (
        db.query(models.Reservation)
        .filter(active, models.Reservation.end_time > now)
        .count()
    )

    rooms = db.query(models.Room).order_by(models.Room.name).all()
    usage = {room.id: {"room_id": room.id, "room_name": room.name, "bookings": 0, "hours": 0.0} for room in rooms}
    intervals = (
        db.query(
            models.Reservation.room_id,
            models.Reservation.start_time,
            models.Reservation.end_time,
        )
        .filter(active)
        .all()
    )
    for room_id, start_time, end_time in intervals:
        entry = usage.get(room_id)
        if entry is None:
            continue
        entry["bookings"] += 1
        entry["hours"] += (end_time - start_time).total_seconds() / 3600

    utilization = sorted(usage.values(), key=lambda e: (-e["hours"], e["room_name"]))
    for entry in utilization:
        entry["hours"] = round(entry["hours"], 2)
    popular = sorted(usage.values(), key=lambda e: (-e["bookings"], e["room_name"]))[:POPULAR_ROOMS_LIMIT]

    roles = dict(
        db.query(models.User.role, func.count(models.User.id))
        .group_by(models.User.role)
        .all()
    )
    role_distribution = [
        {"role": role.value, "count": roles.get(role, 0)}
        for role in models.UserRole
    ]

    return {
        "total_users": total_users,
        "total_rooms": total_rooms,
        "upcoming_reservations": upcoming,
        "total_reservations": total_reservations,
        "utilization": utilization,
        "popular_rooms": [
            {"room_id": e["room_id"], "room_name": e["room_name"], "bookings": e["bookings"]}
            for e in popular
        ],
        "role_distribution": role_distribution,
    }
