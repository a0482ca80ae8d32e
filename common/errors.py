"""
Domain errors shared by the SafeCircle services.

Services raise these from business logic; the service factory maps each
class onto an HTTP status (see ERROR_STATUSES).
"""


class DomainError(Exception):
    """Base class for expected, user-facing failures."""


class BadRequestError(DomainError):
    pass


class ForbiddenError(DomainError):
    pass


class NotFoundError(DomainError, LookupError):
    pass


class ConflictError(DomainError):
    pass


class GoneError(DomainError):
    pass


ERROR_STATUSES = {
    BadRequestError: 400,
    ForbiddenError: 403,
    NotFoundError: 404,
    ConflictError: 409,
    GoneError: 410,
}
