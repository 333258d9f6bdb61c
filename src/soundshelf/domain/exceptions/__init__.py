"""Domain exceptions."""

from typing import Any


class DomainException(Exception):
    """Base exception for all domain exceptions."""

    # Hey future me, we store message as an attribute so callers (and the sync error list) can
    # use it without parsing str(exception). Don't raise this directly, pick a subclass so
    # callers can catch precisely.
    def __init__(self, message: str, *args: Any) -> None:
        super().__init__(message, *args)
        self.message = message


class EntityNotFoundException(DomainException):
    """Raised when an entity is not found."""

    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(f"{entity_type} with id {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class ValidationException(DomainException):
    """Raised when a value object or entity fails validation."""

    pass


class ConfigurationError(DomainException):
    """Raised when a required setting is missing or invalid."""

    pass


class MissingArtistError(DomainException):
    """Raised when a remote track or album carries no artist.

    Item-level error: the batch processor records it and moves on to the next item.
    """

    def __init__(self, item_id: str) -> None:
        super().__init__(f"Item {item_id} has no artist")
        self.item_id = item_id


class RemoteSourceError(DomainException):
    """Raised when a call to the remote library source fails.

    Recoverable at item or playlist scope - a sync run keeps going.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(DomainException):
    """Raised when no valid credential exists or the remote rejected it.

    Hey future me - this is the ONLY error that aborts a whole sync run. Everything
    else is caught per item or per playlist. Never swallow this one in a per-item
    handler, re-raise it so the orchestrator can move to the Failed state.
    """

    def __init__(
        self,
        message: str = "Spotify credential missing or rejected. Please re-authenticate.",
        http_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.http_status = http_status

    @property
    def requires_reauth(self) -> bool:
        """Check if the user must re-authenticate."""
        return self.http_status in (None, 401, 403)


class SyncFailedError(DomainException):
    """Raised by a job handler when the sync it ran ended in the FAILED state.

    The job queue stores the message as the job's failure reason.
    """


__all__ = [
    "AuthenticationError",
    "ConfigurationError",
    "DomainException",
    "EntityNotFoundException",
    "MissingArtistError",
    "RemoteSourceError",
    "SyncFailedError",
    "ValidationException",
]
