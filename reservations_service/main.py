import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import admin_api, notifications_api, rooms_api, schemas, users_api
from .attendees import decline_invitation, invite_users, resolve_share_token
from .auth import admin_only, get_current_actor
from .config import LOG_LEVEL
from .database import Base, engine, get_db
from .deps import get_emitter
from .errors import ReservationError
from .lifecycle import (
    cancel_reservation,
    create_reservation,
    edit_reservation,
    review_request,
    submit_request,
    withdraw_request,
)
from .notifications import NotificationEmitter
from .policy import Actor
from .queries import get_reservation_detail, list_my_reservations, list_requests, list_reservations
from .rate_limiter import write_rate_limiter

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

# Create tables
Base.metadata.create_all(bind=engine)

app = FastAPI(title="Reservations Service", version="1.0.0")
router_v1 = APIRouter(prefix="/api/v1")

SERVICE_NAME = "reservations"


def _error_body(request: Request, status_code: int, detail, **extra) -> dict:
    return {
        "service": SERVICE_NAME,
        "path": request.url.path,
        "method": request.method,
        "status_code": status_code,
        "detail": detail,
        **extra,
    }


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.status_code, exc.detail),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(ReservationError)
async def reservation_error_handler(request: Request, exc: ReservationError):
    logger.info(f"{request.method} {request.url.path} rejected ({exc.code}): {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.status_code, exc.detail, error=exc.code),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content=_error_body(request, 500, "Internal server error"),
    )


@app.get("/")
def root():
    """
    Health-check endpoint for the Reservations service.

    Returns
    -------
    dict
        A small JSON payload indicating that the service is running.
    """
    return {"service": SERVICE_NAME, "status": "running"}


# ---------- Create reservation (admins, instructors with direct booking) ----------


@router_v1.post(
    "/reservations",
    response_model=schemas.ReservationRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(write_rate_limiter)],
)
def book_room(
    reservation_in: schemas.ReservationCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    """
    Book a room directly for the authenticated user.

    Access
    ------
    - Admins, and instructors allowed to book directly.
    - Everyone else gets 403 and must submit a reservation request.

    Behavior
    --------
    - Validates the interval against the configured duration bounds.
    - Rejects intervals overlapping an active reservation with 409,
      unless an override-capable instructor sets ``override`` and every
      conflicting reservation belongs to an instructor without override.
    - The owner is notified; displaced owners are notified of the override.

    Returns
    -------
    ReservationRead
        The new reservation, including its share token.
    """
    return create_reservation(
        db,
        actor,
        room_id=reservation_in.room_id,
        start_time=reservation_in.start_time,
        end_time=reservation_in.end_time,
        purpose=reservation_in.purpose,
        attendee_count=reservation_in.attendee_count,
        override=reservation_in.override,
        emitter=emitter,
    )


# ---------- My reservations (current user) ----------


@router_v1.get("/reservations/me", response_model=List[schemas.ReservationSummaryRead])
def my_reservations(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """
    Reservations owned by the caller, newest start first.

    Reservations cancelled more than an hour ago, or ended more than a day
    ago, are left out.
    """
    return [schemas.ReservationSummaryRead.from_summary(s) for s in list_my_reservations(db, actor.id)]


# ---------- Admin: list all reservations ----------


@router_v1.get("/reservations", response_model=List[schemas.ReservationRead])
def all_reservations(
    room_id: Optional[int] = Query(default=None, ge=1),
    user_id: Optional[int] = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    _: Actor = Depends(admin_only),
):
    """
    Admin: view all reservations with optional filters, newest start first.
    """
    return list_reservations(db, room_id=room_id, user_id=user_id)


# ---------- Join through a share link ----------


@router_v1.post("/reservations/join/{token}", response_model=schemas.ReservationViewRead)
def join_reservation(
    token: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    """
    Open a reservation through its share token.

    Any authenticated user other than the owner is recorded as a confirmed
    attendee (once). Cancelled reservations and unknown tokens give 404.
    """
    return schemas.ReservationViewRead.from_view(resolve_share_token(db, token, actor, emitter=emitter))


@router_v1.get("/reservations/{reservation_id}", response_model=schemas.ReservationViewRead)
def reservation_detail(
    reservation_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return schemas.ReservationViewRead.from_view(get_reservation_detail(db, actor, reservation_id))


@router_v1.put(
    "/reservations/{reservation_id}",
    response_model=schemas.ReservationRead,
    dependencies=[Depends(write_rate_limiter)],
)
def update_reservation(
    reservation_id: int,
    update_data: schemas.ReservationUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    """
    Change the interval, purpose or head count of an active reservation.

    Access
    ------
    - The owner, admins, and override-capable instructors (except on
      admin-owned reservations).

    Raises
    ------
    HTTPException
        403 if not allowed, 400 on invalid values or a cancelled
        reservation, 409 if the new interval is taken.
    """
    return edit_reservation(
        db,
        actor,
        reservation_id,
        start_time=update_data.start_time,
        end_time=update_data.end_time,
        purpose=update_data.purpose,
        attendee_count=update_data.attendee_count,
        emitter=emitter,
    )


@router_v1.delete(
    "/reservations/{reservation_id}",
    response_model=schemas.ReservationRead,
    dependencies=[Depends(write_rate_limiter)],
)
def cancel(
    reservation_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    """
    Cancel (soft-delete) a reservation.

    The record is kept with status ``cancelled``. Cancelling twice is
    acknowledged without change.
    """
    return cancel_reservation(db, actor, reservation_id, emitter=emitter)


@router_v1.post(
    "/reservations/{reservation_id}/invite",
    response_model=List[schemas.AttendeeRead],
    dependencies=[Depends(write_rate_limiter)],
)
def invite(
    reservation_id: int,
    body: schemas.InviteBody,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    """
    Invite users to a reservation. Returns only the newly created invitations.
    """
    return invite_users(db, actor, reservation_id, body.user_ids, emitter=emitter)


@router_v1.post("/reservations/{reservation_id}/decline", response_model=schemas.AttendeeRead)
def decline(
    reservation_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return decline_invitation(db, actor, reservation_id)


# ---------- Reservation requests ----------


@router_v1.post(
    "/reservation-requests",
    response_model=schemas.ReservationRequestRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(write_rate_limiter)],
)
def request_reservation(
    request_in: schemas.ReservationRequestCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """
    Ask an admin to approve a booking.

    Access
    ------
    - Basic users, and instructors without direct booking rights.

    Behavior
    --------
    - The slot must be free now; approval checks it again.
    - A second pending request for the same room and interval is refused.
    """
    return submit_request(
        db,
        actor,
        room_id=request_in.room_id,
        start_time=request_in.start_time,
        end_time=request_in.end_time,
        purpose=request_in.purpose,
        attendee_count=request_in.attendee_count,
    )


@router_v1.get("/reservation-requests/me", response_model=List[schemas.ReservationRequestRead])
def my_requests(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return list_requests(db, user_id=actor.id)


@router_v1.get("/reservation-requests", response_model=List[schemas.ReservationRequestRead])
def all_requests(
    db: Session = Depends(get_db),
    _: Actor = Depends(admin_only),
):
    """
    Admin: all reservation requests, pending ones first.
    """
    return list_requests(db)


@router_v1.post("/reservation-requests/{request_id}/review", response_model=schemas.ReviewResultRead)
def review(
    request_id: int,
    body: schemas.ReviewBody,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    """
    Admin: approve or reject a pending request.

    Approval creates the reservation, unless the slot was taken since the
    request was made (409; the request stays pending). Rejection needs a
    note, which is passed on to the requester.
    """
    result = review_request(db, actor, request_id, body.decision, note=body.note, emitter=emitter)
    return schemas.ReviewResultRead.model_validate(result)


@router_v1.post("/reservation-requests/{request_id}/cancel", response_model=schemas.ReservationRequestRead)
def withdraw(
    request_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return withdraw_request(db, actor, request_id)


app.include_router(router_v1)
app.include_router(users_api.router)
app.include_router(rooms_api.router)
app.include_router(notifications_api.router)
app.include_router(admin_api.router)
