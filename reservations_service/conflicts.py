from datetime import datetime
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import models


def intervals_overlap(
    start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime
) -> bool:
    """
    Half-open interval overlap: ``[start_a, end_a)`` and ``[start_b, end_b)``.

    Touching endpoints never overlap, so 10:00-11:00 and 11:00-12:00 are
    compatible.
    """
    return start_a < end_b and start_b < end_a


def _overlap_query(
    db: Session,
    room_id: int,
    start_time: datetime,
    end_time: datetime,
    exclude_reservation_id: Optional[int] = None,
):
    q = (
        db.query(models.Reservation)
        .filter(models.Reservation.room_id == room_id)
        .filter(models.Reservation.status == models.ReservationStatus.ACTIVE)
        .filter(models.Reservation.start_time < end_time)
        .filter(models.Reservation.end_time > start_time)
    )

    if exclude_reservation_id is not None:
        q = q.filter(models.Reservation.id != exclude_reservation_id)

    return q


def has_conflict(
    db: Session,
    room_id: int,
    start_time: datetime,
    end_time: datetime,
    exclude_reservation_id: Optional[int] = None,
) -> bool:
    """
    Check if any active reservation in the room overlaps the interval.

    Parameters
    ----------
    db : Session
        Database session.
    room_id : int
        Room identifier.
    start_time, end_time : datetime
        Proposed interval (naive UTC).
    exclude_reservation_id : Optional[int]
        Reservation to ignore, used when editing so it does not conflict
        with itself.

    Returns
    -------
    bool
        True if there is at least one conflicting reservation.
    """
    q = _overlap_query(db, room_id, start_time, end_time, exclude_reservation_id)
    return db.query(q.exists()).scalar()


def find_conflicts(
    db: Session,
    room_id: int,
    start_time: datetime,
    end_time: datetime,
    exclude_reservation_id: Optional[int] = None,
) -> List[models.Reservation]:
    """Return the active reservations that overlap the interval."""
    q = _overlap_query(db, room_id, start_time, end_time, exclude_reservation_id)
    return q.order_by(models.Reservation.start_time).all()


def lock_room(db: Session, room_id: int) -> Optional[models.Room]:
    """
    Load the room with a row lock held until the transaction ends.

    Every writer that runs a conflict check for a room takes this lock
    first, so two concurrent check-then-insert sequences on the same room
    are serialized.

    SQLite ignores ``FOR UPDATE``, so there a no-op write to the room row
    takes the database write lock instead. It has to run before any other
    write in the transaction.
    """
    if db.get_bind().dialect.name == "sqlite":
        db.execute(
            update(models.Room)
            .where(models.Room.id == room_id)
            .values(id=models.Room.id)
            .execution_options(synchronize_session=False)
        )
    return (
        db.query(models.Room)
        .filter(models.Room.id == room_id)
        .with_for_update()
        .first()
    )
