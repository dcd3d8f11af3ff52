"""Exceptions raised by the event lifecycle and the store layer."""

from __future__ import annotations

from collections.abc import Iterable


class CalendarError(Exception):
    """Base class for errors surfaced to callers."""

    status_code = 400
    default_message = "Request could not be completed."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class ValidationFailed(CalendarError):
    """Raised when submitted data breaks one or more validation rules."""

    status_code = 422
    default_message = "Some of the fields were invalid."

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or None)


class RateLimitExceeded(CalendarError):
    """Raised when an identifier exhausted its submission window."""

    status_code = 429
    default_message = "Too many submissions."

    def __init__(self, retry_after: float) -> None:
        self.retry_after = max(0.0, retry_after)
        super().__init__(
            f"Too many submissions. Please wait {self.retry_after_seconds} "
            "seconds before trying again."
        )

    @property
    def retry_after_seconds(self) -> int:
        whole = int(self.retry_after)
        return whole + 1 if self.retry_after > whole else whole


class Forbidden(CalendarError):
    status_code = 403
    default_message = "You are not allowed to do that."


class NotFound(CalendarError):
    status_code = 404
    default_message = "Event not found."


class StoreUnavailable(CalendarError):
    """Raised when the event store is unreachable or not configured."""

    status_code = 503
    default_message = "The event store is unavailable."
