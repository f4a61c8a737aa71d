import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .clock import utcnow
from .errors import NotFoundError, ValidationError
from .notifications import NotificationEmitter, describe_slot
from .policy import Action, Actor, authorize

logger = logging.getLogger(__name__)


@dataclass
class ReservationView:
    """
    What a visitor of a reservation sees, including attendance counts.

    ``confirmed_count`` includes the owner; ``invited_count`` is the number
    of attendee rows in any state.
    """
    reservation: models.Reservation
    is_owner: bool
    is_ended: bool
    is_ongoing: bool
    attendance_status: Optional[models.AttendeeStatus]
    confirmed_count: int
    invited_count: int


def attendance_counts(db: Session, reservation_ids: Iterable[int]) -> Dict[int, Tuple[int, int]]:
    """
    Return ``{reservation_id: (confirmed_count, invited_count)}``.

    Reservations without attendee rows map to ``(1, 0)``: the owner is
    always a confirmed participant.
    """
    ids = list(reservation_ids)
    counts = {rid: (1, 0) for rid in ids}
    if not ids:
        return counts

    rows = (
        db.query(
            models.ReservationAttendee.reservation_id,
            models.ReservationAttendee.status,
            func.count(models.ReservationAttendee.id),
        )
        .filter(models.ReservationAttendee.reservation_id.in_(ids))
        .group_by(models.ReservationAttendee.reservation_id, models.ReservationAttendee.status)
        .all()
    )
    for reservation_id, status, count in rows:
        confirmed, invited = counts[reservation_id]
        if status == models.AttendeeStatus.CONFIRMED:
            confirmed += count
        counts[reservation_id] = (confirmed, invited + count)
    return counts


def _attendee_row(db: Session, reservation_id: int, user_id: int) -> Optional[models.ReservationAttendee]:
    return (
        db.query(models.ReservationAttendee)
        .filter(
            models.ReservationAttendee.reservation_id == reservation_id,
            models.ReservationAttendee.user_id == user_id,
        )
        .first()
    )


def build_view(db: Session, reservation: models.Reservation, viewer_id: int, now=None) -> ReservationView:
    now = now or utcnow()
    row = _attendee_row(db, reservation.id, viewer_id)
    confirmed, invited = attendance_counts(db, [reservation.id])[reservation.id]
    return ReservationView(
        reservation=reservation,
        is_owner=reservation.user_id == viewer_id,
        is_ended=reservation.end_time <= now,
        is_ongoing=reservation.start_time <= now < reservation.end_time,
        attendance_status=row.status if row is not None else None,
        confirmed_count=confirmed,
        invited_count=invited,
    )


def invite_users(
    db: Session,
    actor: Actor,
    reservation_id: int,
    user_ids: Iterable[int],
    emitter: Optional[NotificationEmitter] = None,
) -> List[models.ReservationAttendee]:
    """
    Invite users to a reservation.

    Already-present users (invited, confirmed or declined) are left
    untouched, as are the owner and unknown ids. Each newly invited user
    gets one notification.

    Returns
    -------
    List[ReservationAttendee]
        Rows created by this call.

    Raises
    ------
    NotFoundError
        If the reservation does not exist.
    AuthorizationError
        If the actor may not modify the reservation.
    ValidationError
        If the reservation is cancelled.
    """
    reservation = (
        db.query(models.Reservation)
        .filter(models.Reservation.id == reservation_id)
        .first()
    )
    if reservation is None:
        raise NotFoundError("Reservation not found")
    authorize(actor, reservation.user_id, reservation.owner.role, Action.MODIFY)
    if reservation.status != models.ReservationStatus.ACTIVE:
        raise ValidationError("Cannot invite users to a cancelled reservation")

    wanted = {uid for uid in user_ids if uid != reservation.user_id}
    known = {
        uid
        for (uid,) in db.query(models.User.id).filter(models.User.id.in_(wanted)).all()
    } if wanted else set()
    if len(known) != len(wanted):
        logger.debug(f"Ignoring unknown invitees {sorted(wanted - known)} for reservation #{reservation.id}")

    created: List[models.ReservationAttendee] = []
    for attempt in (1, 2):
        present = {
            uid
            for (uid,) in db.query(models.ReservationAttendee.user_id)
            .filter(models.ReservationAttendee.reservation_id == reservation.id)
            .all()
        }
        created = [
            models.ReservationAttendee(
                reservation_id=reservation.id,
                user_id=uid,
                status=models.AttendeeStatus.INVITED,
            )
            for uid in sorted(known - present)
        ]
        db.add_all(created)
        try:
            db.commit()
            break
        except IntegrityError:
            db.rollback()
            if attempt == 2:
                raise
            logger.info(f"Concurrent invite on reservation #{reservation.id}, retrying")

    if not created:
        return created

    logger.info(f"User {actor.id} invited {len(created)} user(s) to reservation #{reservation.id}")
    emitter = emitter or NotificationEmitter(db)
    inviter = db.query(models.User.name).filter(models.User.id == actor.id).scalar() or "A member"
    for row in created:
        emitter.emit(
            row.user_id,
            models.NotificationType.RESERVATION_INVITE,
            "New Reservation Invitation",
            f"{inviter} invited you to a room reservation: {describe_slot(reservation)}",
            reservation.id,
        )
    return created


def resolve_share_token(
    db: Session,
    token: str,
    visitor: Actor,
    emitter: Optional[NotificationEmitter] = None,
) -> ReservationView:
    """
    Open a reservation through its share link and confirm attendance.

    - The owner just gets the view; no attendee row is created.
    - Any other visitor of a reservation that has not ended is recorded as
      ``confirmed`` (creating the row, or upgrading an invited/declined
      one) and the owner is notified once for that transition.
    - Revisiting after confirming changes nothing.
    - Ended reservations are shown read-only.

    Raises
    ------
    NotFoundError
        If the token is unknown or the reservation was cancelled.
    """
    now = utcnow()
    reservation = (
        db.query(models.Reservation)
        .filter(models.Reservation.share_token == token)
        .first()
    )
    if reservation is None or reservation.status != models.ReservationStatus.ACTIVE:
        raise NotFoundError("Reservation not found or has been cancelled")

    is_owner = reservation.user_id == visitor.id
    if is_owner or reservation.end_time <= now:
        return build_view(db, reservation, visitor.id, now)

    joined = False
    row = _attendee_row(db, reservation.id, visitor.id)
    if row is None:
        db.add(
            models.ReservationAttendee(
                reservation_id=reservation.id,
                user_id=visitor.id,
                status=models.AttendeeStatus.CONFIRMED,
                joined_at=now,
            )
        )
        try:
            db.commit()
            joined = True
        except IntegrityError:
            # a concurrent visit by the same user already created the row
            db.rollback()
    elif row.status != models.AttendeeStatus.CONFIRMED:
        row.status = models.AttendeeStatus.CONFIRMED
        row.joined_at = now
        db.commit()
        joined = True

    if joined:
        logger.info(f"User {visitor.id} joined reservation #{reservation.id}")
        joiner = db.query(models.User).filter(models.User.id == visitor.id).first()
        joiner_name = joiner.name if joiner is not None else f"User {visitor.id}"
        (emitter or NotificationEmitter(db)).emit(
            reservation.user_id,
            models.NotificationType.ATTENDEE_JOINED,
            "New Attendee Joined",
            f"{joiner_name} has joined your reservation: {describe_slot(reservation)}",
            reservation.id,
        )

    return build_view(db, reservation, visitor.id, now)


def decline_invitation(db: Session, actor: Actor, reservation_id: int) -> models.ReservationAttendee:
    """
    Record that an invited or confirmed attendee will not come.
    """
    row = _attendee_row(db, reservation_id, actor.id)
    if row is None:
        raise NotFoundError("Invitation not found")
    if row.status != models.AttendeeStatus.DECLINED:
        row.status = models.AttendeeStatus.DECLINED
        db.commit()
        logger.info(f"User {actor.id} declined reservation #{reservation_id}")
    return row
