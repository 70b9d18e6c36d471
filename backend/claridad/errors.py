"""Error taxonomy shared by the chat core and the HTTP boundary.

Every error carries the status code the API answers with. Only the API layer
turns these into responses; components raise and propagate them.
"""

class ClaridadError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(ClaridadError):
    """Malformed input, rejected before any write."""
    status_code = 400


class InvalidMembership(ValidationError):
    pass


class NotAssigned(ClaridadError):
    """The user has no neighborhood chat yet."""
    status_code = 409


class NotFound(ClaridadError):
    status_code = 404


class Forbidden(ClaridadError):
    status_code = 403


class StoreUnavailable(ClaridadError):
    """A backing store could not be reached. Callers may retry with backoff."""
    status_code = 503

    def __init__(self, store: str, message: str = ""):
        super().__init__(message or f"{store} store unavailable")
        self.store = store


class PartialBroadcastFailure(ClaridadError):
    """The primary write succeeded but a derived write did not.

    Not raised to clients: components log it and hand it back as a warning.
    """

    def __init__(self, step: str, cause: BaseException | None = None):
        detail = f"{step} failed"
        if cause is not None:
            detail = f"{detail}: {cause}"
        super().__init__(detail)
        self.step = step
        self.cause = cause
