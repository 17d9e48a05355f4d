"""Error taxonomy for the dispatch core.

Learn: Services raise these; the API layer maps them to HTTP status codes.
Losing the accept race is NOT an error — the coordinator returns an
AlreadyTaken outcome instead of raising (see services/assignment.py).
Send failures never escape a broadcast; they are aggregated into its result.
"""


class ValidationError(Exception):
    """Malformed name/phone/location/plate — rejected before any state change."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message


class NotEligible(Exception):
    """Driver is unregistered or inactive."""

    def __init__(self, phone: str, reason: str):
        super().__init__(f"Driver {phone} is not eligible: {reason}")
        self.phone = phone
        self.reason = reason


class AlreadyAssigned(Exception):
    """Request left PENDING before this caller could take it."""

    def __init__(self, request_id):
        super().__init__(f"Request {request_id} was already taken")
        self.request_id = request_id


class InvalidTransition(Exception):
    """Raised when a status transition is not allowed."""
    pass


class RequestNotFoundError(Exception):
    pass


class DriverNotFoundError(Exception):
    pass


class DuplicateDriverError(Exception):
    """A driver with this phone number is already registered."""
    pass


class DriverBusyError(Exception):
    """Driver still owns an ASSIGNED ride and cannot be deleted."""
    pass


class NoWorkersAvailable(Exception):
    """A broadcast reached zero drivers."""
    pass


class TransientSendFailure(Exception):
    """Retryable transport error."""

    def __init__(self, identity: str, message: str):
        super().__init__(message)
        self.identity = identity


class SessionCorruption(TransientSendFailure):
    """Encryption session out of sync with the recipient; repair before retry."""
    pass


class SendTimeout(TransientSendFailure):
    """A single send attempt exceeded the message timeout."""
    pass
