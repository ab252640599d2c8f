class DomainError(Exception):
    """Base class for rule violations raised by the booking engine."""

    status_code = 400
    default_title = "Domain Error"

    def __init__(
        self,
        detail: str,
        *,
        title: str | None = None,
        errors: list[dict[str, str]] | None = None,
        type: str | None = None,
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        self.title = title or self.default_title
        self.errors = errors or []
        self.type = type


class ValidationError(DomainError):
    status_code = 422
    default_title = "Validation Error"


class ConflictError(DomainError):
    status_code = 409
    default_title = "Conflict"


class NotFoundError(DomainError):
    status_code = 404
    default_title = "Not Found"


class InvalidTransitionError(DomainError):
    status_code = 409
    default_title = "Invalid State Transition"


class InconsistencyError(DomainError):
    """Stored state contradicts an incoming fact; an operator has to look at it."""

    status_code = 500
    default_title = "Data Inconsistency"


class CollaboratorError(DomainError):
    status_code = 502
    default_title = "Upstream Failure"


class CollaboratorUnavailableError(CollaboratorError):
    status_code = 503
    default_title = "Service Unavailable"
