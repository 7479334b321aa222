"""
Exception classes for the tracker backend.
"""


class TrackerError(Exception):
    """Base exception for all tracker errors."""


class NotFoundError(TrackerError, LookupError):
    """Raised when a habit, todo, list or tag does not exist for the user."""


class SchemaCapabilityError(TrackerError):
    """Raised when a write targets a column the connected database does not have."""


class CalendarApiError(TrackerError):
    """Raised when the remote calendar answers with a non-2xx status."""

    def __init__(self, action: str, status_code: int, message: str):
        super().__init__(f"Calendar {action} failed ({status_code}): {message}")
        self.action = action
        self.status_code = status_code
        self.message = message

    @property
    def is_gone(self) -> bool:
        return self.status_code in {404, 410}
