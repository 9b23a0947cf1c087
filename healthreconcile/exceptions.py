"""Custom exceptions for healthreconcile.

Provides domain-specific error types for better error handling and debugging.
Losing a freshness comparison is a normal outcome and has no exception here.
"""

from datetime import date as date_type


class ReconciliationError(Exception):
    """Base exception for all healthreconcile errors."""

    pass


class ConfigurationError(ReconciliationError):
    """Raised when configuration is invalid or missing."""

    pass


class InvalidInputError(ReconciliationError):
    """Raised when a sample or sleep session cannot be reconciled at all.

    Covers unregistered source identifiers, missing or naive measurement
    timestamps, and sleep sessions whose end is not after their start.
    """

    def __init__(self, message: str, field_name: str | None = None):
        super().__init__(message)
        self.field_name = field_name


class StorageUnavailableError(ReconciliationError):
    """Raised when the persistence collaborator cannot read or write a record."""

    def __init__(
        self,
        message: str,
        user_id: str | None = None,
        date: date_type | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.user_id = user_id
        self.date = date
        self.cause = cause
