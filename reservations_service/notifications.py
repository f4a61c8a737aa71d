import logging
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .errors import NotFoundError
from .mailer import OutboundMessage, deliver

logger = logging.getLogger(__name__)

Dispatch = Callable[[OutboundMessage], None]

DEFAULT_INBOX_LIMIT = 50


class NotificationEmitter:
    """
    Turn a state transition into a durable notification and an email request.

    The notification row is committed on its own, after the transition that
    triggered it. If that commit fails the error is logged and the
    transition stands. The email request is handed to ``dispatch`` only when
    the recipient has not opted out of the notification type; ``dispatch``
    is expected to return immediately (e.g. schedule a background task).

    Parameters
    ----------
    db : Session
        Session used for the notification row and the preference lookup.
    dispatch : Optional[Callable[[OutboundMessage], None]]
        Hand-off for outbound messages. Defaults to synchronous delivery.
    """

    def __init__(self, db: Session, dispatch: Optional[Dispatch] = None):
        self.db = db
        self.dispatch = dispatch or deliver

    def emit(
        self,
        user_id: int,
        notification_type: models.NotificationType,
        title: str,
        message: str,
        reservation_id: Optional[int] = None,
    ) -> Optional[models.Notification]:
        notification = models.Notification(
            user_id=user_id,
            type=notification_type,
            title=title,
            message=message,
            reservation_id=reservation_id,
        )
        self.db.add(notification)
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(
                f"Failed to store {notification_type.value} notification for user {user_id}"
            )
            return None

        self._request_email(user_id, notification_type, title, message, reservation_id)
        return notification

    def _request_email(
        self,
        user_id: int,
        notification_type: models.NotificationType,
        title: str,
        message: str,
        reservation_id: Optional[int],
    ) -> None:
        user = self.db.query(models.User).filter(models.User.id == user_id).first()
        if user is None or not user.email:
            return

        if not email_enabled(self.db, user_id, notification_type):
            logger.debug(f"User {user_id} opted out of {notification_type.value} emails")
            return

        self.dispatch(
            OutboundMessage(
                recipient=user.email,
                template=notification_type.value,
                title=title,
                message=message,
                reservation_id=reservation_id,
            )
        )


def describe_slot(reservation) -> str:
    """Short human description such as ``Room A, 2026-10-20 14:00-15:00``."""
    room_name = reservation.room.name if reservation.room is not None else f"room {reservation.room_id}"
    return (
        f"{room_name}, {reservation.start_time:%Y-%m-%d %H:%M}"
        f"-{reservation.end_time:%H:%M}"
    )


# ---------- Preferences ----------


def email_enabled(db: Session, user_id: int, notification_type: models.NotificationType) -> bool:
    pref = (
        db.query(models.NotificationPreference)
        .filter(
            models.NotificationPreference.user_id == user_id,
            models.NotificationPreference.notification_type == notification_type,
        )
        .first()
    )
    return pref is None or pref.email_enabled


def get_preferences(db: Session, user_id: int) -> Dict[models.NotificationType, bool]:
    """
    Return the email setting for every notification type.

    Types without a stored row default to enabled.
    """
    prefs = {t: True for t in models.NotificationType}
    rows = (
        db.query(models.NotificationPreference)
        .filter(models.NotificationPreference.user_id == user_id)
        .all()
    )
    for row in rows:
        prefs[row.notification_type] = row.email_enabled
    return prefs


def update_preferences(
    db: Session, user_id: int, changes: Dict[models.NotificationType, bool]
) -> Dict[models.NotificationType, bool]:
    existing = {
        row.notification_type: row
        for row in db.query(models.NotificationPreference)
        .filter(models.NotificationPreference.user_id == user_id)
        .all()
    }
    for notification_type, enabled in changes.items():
        row = existing.get(notification_type)
        if row is None:
            db.add(
                models.NotificationPreference(
                    user_id=user_id,
                    notification_type=notification_type,
                    email_enabled=enabled,
                )
            )
        else:
            row.email_enabled = enabled
    db.commit()
    return get_preferences(db, user_id)


# ---------- Inbox ----------


def list_notifications(
    db: Session,
    user_id: int,
    unread_only: bool = False,
    limit: int = DEFAULT_INBOX_LIMIT,
) -> Tuple[List[models.Notification], int]:
    """
    Return the user's newest notifications and their total unread count.
    """
    q = db.query(models.Notification).filter(models.Notification.user_id == user_id)
    if unread_only:
        q = q.filter(models.Notification.is_read.is_(False))
    items = (
        q.order_by(models.Notification.created_at.desc(), models.Notification.id.desc())
        .limit(limit)
        .all()
    )

    unread_count = (
        db.query(models.Notification)
        .filter(
            models.Notification.user_id == user_id,
            models.Notification.is_read.is_(False),
        )
        .count()
    )
    return items, unread_count


def mark_read(db: Session, user_id: int, notification_id: Optional[int] = None) -> int:
    """
    Mark one notification, or all of the user's unread ones, as read.

    Returns the number of rows changed.
    """
    q = db.query(models.Notification).filter(
        models.Notification.user_id == user_id,
        models.Notification.is_read.is_(False),
    )
    if notification_id is not None:
        q = q.filter(models.Notification.id == notification_id)
    changed = q.update({models.Notification.is_read: True}, synchronize_session=False)
    db.commit()
    return changed


def delete_notification(db: Session, user_id: int, notification_id: int) -> None:
    notification = (
        db.query(models.Notification)
        .filter(
            models.Notification.id == notification_id,
            models.Notification.user_id == user_id,
        )
        .first()
    )
    if notification is None:
        raise NotFoundError("Notification not found")
    db.delete(notification)
    db.commit()


def delete_all_notifications(db: Session, user_id: int) -> int:
    deleted = (
        db.query(models.Notification)
        .filter(models.Notification.user_id == user_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted
