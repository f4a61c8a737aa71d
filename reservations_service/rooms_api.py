import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from common.cache import (
    SCHEDULE_TTL_SECONDS,
    get_cached_json,
    invalidate_room_schedule,
    schedule_key,
    set_cached_json,
)

from . import models, schemas
from .auth import admin_only, get_current_actor
from .database import get_db
from .errors import NotFoundError
from .policy import ROLE_RANK, Actor, can_access_room
from .queries import get_room_schedule

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["rooms"])


def _visible_room(db: Session, actor: Actor, room_id: int) -> models.Room:
    room = db.query(models.Room).filter(models.Room.id == room_id).first()
    if room is None or not can_access_room(actor.role, room.min_role):
        raise NotFoundError("Room not found")
    return room


def _ensure_name_free(db: Session, name: str, room_id: Optional[int] = None) -> None:
    q = db.query(models.Room).filter(models.Room.name == name)
    if room_id is not None:
        q = q.filter(models.Room.id != room_id)
    if q.first():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Room with this name already exists",
        )


@router.post("/rooms", response_model=schemas.RoomRead, status_code=status.HTTP_201_CREATED)
def create_room(
    room_in: schemas.RoomCreate,
    db: Session = Depends(get_db),
    admin: Actor = Depends(admin_only),
):
    """
    Admin: create a new room.

    Raises
    ------
    HTTPException
        If a room with the same name already exists.
    """
    _ensure_name_free(db, room_in.name)
    room = models.Room(**room_in.model_dump())
    db.add(room)
    db.commit()
    db.refresh(room)
    logger.info(f"Admin {admin.id} created room {room.id} ({room.name})")
    return room


@router.get("/rooms", response_model=List[schemas.RoomRead])
def list_rooms(
    available_only: bool = False,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """
    List the rooms the caller's role may book, ordered by name.

    Parameters
    ----------
    available_only : bool
        If True, hide rooms that are currently closed for booking.
    """
    visible_roles = [role for role, rank in ROLE_RANK.items() if rank <= ROLE_RANK[actor.role]]
    q = db.query(models.Room).filter(models.Room.min_role.in_(visible_roles))
    if available_only:
        q = q.filter(models.Room.is_available.is_(True))
    return q.order_by(models.Room.name).all()


@router.get("/rooms/{room_id}", response_model=schemas.RoomRead)
def get_room(
    room_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return _visible_room(db, actor, room_id)


@router.put("/rooms/{room_id}", response_model=schemas.RoomRead)
def update_room(
    room_id: int,
    update_data: schemas.RoomUpdate,
    db: Session = Depends(get_db),
    admin: Actor = Depends(admin_only),
):
    """
    Admin: partially update a room.

    Existing reservations are kept as they are; capacity and availability
    only apply to future bookings.
    """
    room = _visible_room(db, admin, room_id)
    changes = update_data.model_dump(exclude_unset=True)
    if "name" in changes and changes["name"] != room.name:
        _ensure_name_free(db, changes["name"], room.id)
    for field, value in changes.items():
        setattr(room, field, value)
    db.commit()
    db.refresh(room)
    invalidate_room_schedule(room.id)
    logger.info(f"Admin {admin.id} updated room {room.id}: {sorted(changes)}")
    return room


@router.get("/rooms/{room_id}/schedule", response_model=schemas.RoomSchedule)
def room_schedule(
    room_id: int,
    day: date = Query(...),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """
    Active reservations of a room on one calendar day (UTC).

    Only slot times are exposed, never who holds them. Results are cached
    per room and day; every write to the room drops its cached days.
    """
    _visible_room(db, actor, room_id)

    cache_key = schedule_key(room_id, day)
    cached = get_cached_json(cache_key)
    if cached is not None:
        return cached

    reservations = get_room_schedule(db, actor, room_id, day)
    result = schemas.RoomSchedule(
        room_id=room_id,
        day=day,
        reservations=[schemas.ScheduleEntry.model_validate(r) for r in reservations],
    )
    set_cached_json(cache_key, result.model_dump(mode="json"), ttl_seconds=SCHEDULE_TTL_SECONDS)
    return result
