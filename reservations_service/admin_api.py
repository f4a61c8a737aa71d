import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from . import schemas
from .auth import admin_only, admin_or_service_account
from .database import get_db
from .deps import get_emitter
from .notifications import NotificationEmitter
from .policy import Actor
from .queries import admin_stats
from .reminders import send_due_reminders
from .settings import get_duration_bounds, update_duration_bounds

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["admin"])


@router.get("/admin/stats", response_model=schemas.AdminStats)
def dashboard_stats(
    db: Session = Depends(get_db),
    _: Actor = Depends(admin_only),
):
    """
    Admin: totals, per-room utilization, most booked rooms and the role
    distribution of users.
    """
    return admin_stats(db)


@router.get("/admin/settings", response_model=schemas.DurationSettings)
def read_settings(
    db: Session = Depends(get_db),
    _: Actor = Depends(admin_only),
):
    min_minutes, max_minutes = get_duration_bounds(db)
    return {"min_reservation_minutes": min_minutes, "max_reservation_minutes": max_minutes}


@router.put("/admin/settings", response_model=schemas.DurationSettings)
def change_settings(
    body: schemas.DurationSettings,
    db: Session = Depends(get_db),
    admin: Actor = Depends(admin_only),
):
    """
    Admin: change the allowed reservation length.

    Only new bookings and edits are checked against the new bounds.
    """
    min_minutes, max_minutes = update_duration_bounds(
        db, admin.id, body.min_reservation_minutes, body.max_reservation_minutes
    )
    return {"min_reservation_minutes": min_minutes, "max_reservation_minutes": max_minutes}


@router.post("/reminders/run", response_model=schemas.ReminderRun)
def run_reminders(
    db: Session = Depends(get_db),
    claims: Dict[str, Any] = Depends(admin_or_service_account),
    emitter: NotificationEmitter = Depends(get_emitter),
):
    """
    Send reminders for reservations starting soon.

    Meant for a periodic trigger holding a service-account token; safe to
    call repeatedly.
    """
    logger.info(f"Reminder run requested by {claims['username']} ({claims['role']})")
    return send_due_reminders(db, emitter=emitter)
