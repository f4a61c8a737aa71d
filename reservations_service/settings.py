import logging
from typing import Tuple

from sqlalchemy.orm import Session

from . import config, models
from .errors import ValidationError

logger = logging.getLogger(__name__)

MIN_MINUTES_KEY = "min_reservation_minutes"
MAX_MINUTES_KEY = "max_reservation_minutes"


def _read_int(db: Session, key: str, default: int) -> int:
    row = db.query(models.SystemSetting).filter(models.SystemSetting.key == key).first()
    if row is None:
        return default
    try:
        return int(row.value)
    except ValueError:
        logger.warning(f"Ignoring non-numeric system setting {key}={row.value!r}")
        return default


def get_duration_bounds(db: Session) -> Tuple[int, int]:
    """
    Return the (minimum, maximum) reservation length in minutes.

    Stored settings win over the environment defaults.
    """
    return (
        _read_int(db, MIN_MINUTES_KEY, config.MIN_RESERVATION_MINUTES),
        _read_int(db, MAX_MINUTES_KEY, config.MAX_RESERVATION_MINUTES),
    )


def update_duration_bounds(
    db: Session, admin_id: int, min_minutes: int, max_minutes: int
) -> Tuple[int, int]:
    """
    Persist new duration bounds.

    Raises
    ------
    ValidationError
        If the values fall outside the configured floor/ceiling or
        ``min_minutes`` is not below ``max_minutes``.
    """
    if min_minutes < config.MIN_RESERVATION_FLOOR:
        raise ValidationError(
            f"Minimum reservation time cannot be less than {config.MIN_RESERVATION_FLOOR} minutes"
        )
    if max_minutes > config.MAX_RESERVATION_CEILING:
        raise ValidationError(
            f"Maximum reservation time cannot exceed {config.MAX_RESERVATION_CEILING} minutes"
        )
    if min_minutes >= max_minutes:
        raise ValidationError("Minimum time must be less than maximum time")

    for key, value in ((MIN_MINUTES_KEY, min_minutes), (MAX_MINUTES_KEY, max_minutes)):
        row = db.query(models.SystemSetting).filter(models.SystemSetting.key == key).first()
        if row is None:
            row = models.SystemSetting(key=key, value=str(value), updated_by=admin_id)
            db.add(row)
        else:
            row.value = str(value)
            row.updated_by = admin_id
    db.commit()

    logger.info(f"Admin {admin_id} set reservation bounds to {min_minutes}-{max_minutes} minutes")
    return min_minutes, max_minutes
