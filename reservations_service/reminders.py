# reservations_service/reminders.py
"""
Reminder run for the external periodic trigger.

Run it from cron (every few minutes) with::

    python -m reservations_service.reminders
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.orm import Session

from . import config, models
from .clock import utcnow
from .database import SessionLocal
from .notifications import NotificationEmitter, describe_slot
from .queries import reminders_due_between

logger = logging.getLogger(__name__)


def send_due_reminders(
    db: Session,
    emitter: Optional[NotificationEmitter] = None,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """
    Remind owners of reservations starting in the configured lead window.

    Each reservation is reminded at most once: the reminder notification
    itself marks it as done.

    Returns
    -------
    dict
        ``total`` reservations found and ``sent`` notifications stored.
    """
    now = now or utcnow()
    window_start = now + timedelta(minutes=config.REMINDER_LEAD_MIN_MINUTES)
    window_end = now + timedelta(minutes=config.REMINDER_LEAD_MAX_MINUTES)

    due = reminders_due_between(db, window_start, window_end)
    if not due:
        logger.debug("No upcoming reservations requiring reminders")
        return {"total": 0, "sent": 0}

    emitter = emitter or NotificationEmitter(db)
    sent = 0
    for reservation in due:
        minutes = round((reservation.start_time - now).total_seconds() / 60)
        notification = emitter.emit(
            reservation.user_id,
            models.NotificationType.RESERVATION_REMINDER,
            "Reservation Reminder",
            f"Your reservation starts in {minutes} minutes: {describe_slot(reservation)}",
            reservation.id,
        )
        if notification is not None:
            sent += 1

    logger.info(f"Reminder run finished: {sent} of {len(due)} sent")
    return {"total": len(due), "sent": sent}


def main() -> None:
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    db = SessionLocal()
    try:
        send_due_reminders(db)
    finally:
        db.close()


if __name__ == "__main__":
    main()
