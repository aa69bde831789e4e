"""Custom exceptions for settleline."""


class SettlelineError(Exception):
    """Base exception for all settleline errors."""

    pass


class ValidationError(SettlelineError):
    """Raised when input validation fails."""

    pass


class InvalidTimeError(ValidationError, ValueError):
    """Raised when a time of day is not in 24-hour HH:MM form."""

    pass


class InvalidWorkingHoursError(ValidationError, ValueError):
    """Raised when a working-hours window does not end after it starts."""

    pass


class CircularDependencyError(ValidationError):
    """Raised when a circular dependency is detected."""

    pass


class MissingReferenceError(ValidationError):
    """Raised when a task depends on an id that is not in the list."""

    pass


class DuplicateTaskIdError(ValidationError):
    """Raised when two tasks in one list share an id."""

    pass


class SnapshotError(SettlelineError):
    """Raised when a snapshot file cannot be read."""

    pass
