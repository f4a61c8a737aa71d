# reservations_service/circuit_breaker.py
import logging
from datetime import timedelta
from .clock import utcnow

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """
    In-memory circuit breaker for calls to an outbound collaborator.

    States:
    - closed: all requests pass, count failures
    - open: requests are blocked immediately
    - half_open: allow a trial request after reset timeout
    """

    def __init__(self, name: str, max_failures: int = 3, reset_timeout_seconds: int = 30):
        self.name = name
        self.max_failures = max_failures
        self.reset_timeout = timedelta(seconds=reset_timeout_seconds)
        self.failure_count = 0
        self.state = "closed"  # "closed" | "open" | "half_open"
        self.opened_at = None

    def allow_request(self) -> bool:
        """
        Return True if a request may go through, False while the circuit is open.
        """
        if self.state != "open":
            return True

        if self.opened_at is None or utcnow() - self.opened_at < self.reset_timeout:
            return False

        self.state = "half_open"
        logger.info(f"Circuit {self.name} half-open, allowing a trial request")
        return True

    def record_success(self) -> None:
        if self.state != "closed":
            logger.info(f"Circuit {self.name} closed")
        self.failure_count = 0
        self.state = "closed"
        self.opened_at = None

    def record_failure(self) -> None:
        """
        Count a failure; a failed trial or too many failures opens the circuit.
        """
        self.failure_count += 1
        if self.state == "half_open" or self.failure_count >= self.max_failures:
            if self.state != "open":
                logger.warning(
                    f"Circuit {self.name} opened after {self.failure_count} failures"
                )
            self.state = "open"
            self.opened_at = utcnow()

    def reset(self) -> None:
        self.failure_count = 0
        self.state = "closed"
        self.opened_at = None


email_circuit_breaker = CircuitBreaker(
    name="email_service",
    max_failures=3,
    reset_timeout_seconds=30,
)
