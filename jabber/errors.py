from __future__ import annotations

from typing import Optional


class StorageError(Exception):
    """Raised when the relational store fails a read or write."""


class UpstreamError(Exception):
    """Raised when a remote AI, search, OAuth or calendar call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CalendarError(Exception):
    code = "calendar_error"


class NotConfigured(CalendarError):
    code = "not_configured"


class NotAuthenticated(CalendarError):
    code = "not_authenticated"
