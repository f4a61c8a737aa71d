# reservations_service/mailer.py
import logging
from dataclasses import asdict, dataclass
from typing import Optional

import httpx

from . import config
from .circuit_breaker import email_circuit_breaker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboundMessage:
    """
    Payload handed to the email collaborator.

    ``template`` is the notification type; the collaborator owns the
    template content and translation.
    """
    recipient: str
    template: str
    title: str
    message: str
    reservation_id: Optional[int] = None


def deliver(message: OutboundMessage) -> bool:
    """
    Send one message to the email collaborator.

    Failures (missing configuration, open circuit, network or provider
    errors) are logged and reported as ``False``; this function never
    raises, so it is safe to run after the triggering action completed.

    Parameters
    ----------
    message : OutboundMessage
        Recipient and rendered notification fields.

    Returns
    -------
    bool
        True if the collaborator accepted the message.
    """
    base_url = config.EMAIL_SERVICE_URL
    if not base_url:
        logger.debug(f"Email delivery disabled, dropping {message.template} for {message.recipient}")
        return False

    if not email_circuit_breaker.allow_request():
        logger.warning(f"Email circuit open, dropping {message.template} for {message.recipient}")
        return False

    try:
        response = httpx.post(
            f"{base_url.rstrip('/')}/api/v1/messages",
            json=asdict(message),
            timeout=config.EMAIL_TIMEOUT_SECONDS,
        )
    except httpx.HTTPError as exc:
        email_circuit_breaker.record_failure()
        logger.warning(f"Failed to send {message.template} email to {message.recipient}: {exc}")
        return False

    if response.status_code >= 400:
        email_circuit_breaker.record_failure()
        logger.warning(
            f"Email service rejected {message.template} for {message.recipient} "
            f"with status {response.status_code}"
        )
        return False

    email_circuit_breaker.record_success()
    logger.info(f"Sent {message.template} email to {message.recipient}")
    return True
