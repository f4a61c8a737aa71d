from fastapi import BackgroundTasks, Depends
from sqlalchemy.orm import Session

from .database import get_db
from .mailer import OutboundMessage, deliver
from .notifications import NotificationEmitter


def get_emitter(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
) -> NotificationEmitter:
    """
    Notification emitter for request handlers.

    Emails are sent after the response is returned, so a slow or broken
    email service never delays or fails the request.
    """

    def dispatch(message: OutboundMessage) -> None:
        background_tasks.add_task(deliver, message)

    return NotificationEmitter(db, dispatch=dispatch)
