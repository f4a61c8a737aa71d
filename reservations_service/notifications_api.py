from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from . import schemas
from .auth import get_current_actor
from .database import get_db
from .notifications import (
    DEFAULT_INBOX_LIMIT,
    delete_all_notifications,
    delete_notification,
    get_preferences,
    list_notifications,
    mark_read,
    update_preferences,
)
from .policy import Actor

router = APIRouter(prefix="/api/v1", tags=["notifications"])


@router.get("/notifications", response_model=schemas.NotificationList)
def my_notifications(
    unread_only: bool = False,
    limit: int = Query(default=DEFAULT_INBOX_LIMIT, ge=1, le=200),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """
    The caller's newest notifications plus the total unread count.
    """
    items, unread_count = list_notifications(db, actor.id, unread_only=unread_only, limit=limit)
    return {"items": items, "unread_count": unread_count}


@router.post("/notifications/read")
def mark_notifications_read(
    body: schemas.MarkReadBody,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return {"updated": mark_read(db, actor.id, body.notification_id)}


@router.delete("/notifications/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_notification(
    notification_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    delete_notification(db, actor.id, notification_id)


@router.delete("/notifications")
def clear_notifications(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return {"deleted": delete_all_notifications(db, actor.id)}


@router.get("/notifications/preferences", response_model=schemas.Preferences)
def my_preferences(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return {"email": get_preferences(db, actor.id)}


@router.put("/notifications/preferences", response_model=schemas.Preferences)
def change_preferences(
    body: schemas.Preferences,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """
    Turn email delivery on or off per notification type.

    Types not mentioned keep their current setting. In-app notifications
    are always stored.
    """
    return {"email": update_preferences(db, actor.id, body.email)}
