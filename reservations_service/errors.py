class ReservationError(Exception):
    """
    Base class for recoverable failures of a reservation action.

    When one of these is raised the action did not happen and the store is
    left consistent; the caller decides how to report it.

    Attributes
    ----------
    code : str
        Short machine-readable category included in error responses.
    status_code : int
        HTTP status used when the error reaches the API layer.
    """
    code = "reservation_error"
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class AuthorizationError(ReservationError):
    """The actor lacks rights for the requested action."""
    code = "forbidden"
    status_code = 403


class ConflictError(ReservationError):
    """
    The requested interval overlaps an active reservation in the same room.

    The message reports that the slot is taken, never who holds it.
    """
    code = "conflict"
    status_code = 409


class ValidationError(ReservationError):
    """Malformed interval, out-of-bounds value, or illegal state transition."""
    code = "validation_error"
    status_code = 400


class NotFoundError(ReservationError):
    """The target does not exist or is not visible to the actor."""
    code = "not_found"
    status_code = 404
