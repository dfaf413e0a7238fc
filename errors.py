"""Domain errors raised by the ride and fleet managers."""


class RideServiceError(Exception):
    """
    Base exception for every caller-visible failure.

    ``code`` is the machine-readable value rendered as ``{"error": code}``.
    """

    status = 500

    def __init__(self, code: str, detail: str = None):
        self.code = code
        self.detail = detail
        super().__init__(detail or code)


class InvalidRequestError(RideServiceError):
    """Raised when the payload or a query parameter is malformed."""

    status = 400


class AuthorizationError(RideServiceError):
    status = 401


class NotFoundError(RideServiceError):
    status = 404


class ConflictError(RideServiceError):
    """Raised when the current state forbids the change, e.g. not enough seats."""

    status = 409


class InternalError(RideServiceError):
    """Wraps unexpected failures so callers only see a generic code."""

    status = 500
