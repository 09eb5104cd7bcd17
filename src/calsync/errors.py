from __future__ import annotations

from typing import Optional


class CalendarError(RuntimeError):
    """Base class for failures surfaced by the calendar clients."""


class HttpError(CalendarError):
    def __init__(self, context: str, status_code: Optional[int], body: str = "") -> None:
        self.context = context
        self.status_code = status_code
        self.body = body
        prefix = context if status_code is None else f"{context} {status_code}"
        super().__init__(f"{prefix}: {body}" if body else prefix)


class TokenExpiredError(HttpError):
    """The REST API rejected the bearer token (HTTP 401)."""


class DeleteError(HttpError):
    pass


class DiscoveryError(CalendarError):
    """A required CalDAV discovery property was missing from the response."""


class AuthError(CalendarError):
    def __init__(self, message: str, body: Optional[str] = None) -> None:
        self.body = body
        super().__init__(message)
