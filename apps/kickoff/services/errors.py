"""
Domain exceptions shared by the service layer.

Every exception carries a stable machine-readable ``kind`` and the HTTP
status the API layer maps it to. They subclass ValueError so callers that
only distinguish "bad request" from "server error" keep working.
"""


class DomainError(ValueError):
    """Base class for business-rule failures."""

    kind = "domain_error"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ValidationError(DomainError):
    """Malformed input."""

    kind = "validation_error"
    status_code = 400


class UnauthenticatedError(DomainError):
    """Identity could not be resolved."""

    kind = "unauthenticated"
    status_code = 401


class ForbiddenError(DomainError):
    """Caller is not allowed to perform this action."""

    kind = "forbidden"
    status_code = 403


class NotFoundError(DomainError):
    """Referenced entity does not exist."""

    kind = "not_found"
    status_code = 404


class ConflictError(DomainError):
    """Duplicate active state."""

    kind = "conflict"
    status_code = 409


class CapacityExceededError(ConflictError):
    """No spots available in this game."""

    kind = "capacity_exceeded"
    status_code = 409


class InvalidStateError(ConflictError):
    """Game is not in a state that allows this action."""

    kind = "invalid_state"
    status_code = 409


class UnavailableError(DomainError):
    """Storage is temporarily unavailable; retry later."""

    kind = "unavailable"
    status_code = 503
