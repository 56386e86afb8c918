from typing import Iterable


class SitestatsError(Exception):
    """Base class for every error raised by the pipeline."""


class ValidationError(SitestatsError):
    """Client input is malformed or incomplete. Nothing was written."""

    def __init__(self, message: str, missing: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.missing = list(missing)

    @classmethod
    def missing_fields(cls, fields: Iterable[str]) -> "ValidationError":
        fields = list(fields)
        return cls(f"missing required fields: {', '.join(fields)}", missing=fields)


class QueueUnavailableError(SitestatsError):
    """The event queue rejected a push or pop."""


class StoreUnavailableError(SitestatsError):
    """A document store operation could not be completed."""


class DuplicateKeyError(SitestatsError):
    """An insert hit an existing key. Converted to InsertOutcome.ALREADY_EXISTS."""


class PayloadTooLargeError(ValidationError):
    """Request body exceeds the configured size limit."""
