"""Custom exceptions for the MaBourse sync backend."""

from __future__ import annotations


class MaBourseError(Exception):
    """Base exception for all MaBourse errors."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TransportError(MaBourseError):
    """Raised when the remote snapshot store is unreachable or answers with garbage."""

    def __init__(self, message: str, entity_type: str | None = None, details: dict | None = None) -> None:
        super().__init__(message, details)
        self.entity_type = entity_type


class TransportTimeoutError(TransportError):
    """Raised when a remote call exceeds its deadline."""

    pass


class RecordStoreError(MaBourseError):
    """Raised when the local record store cannot be read or written."""

    pass


class ValidationError(MaBourseError):
    """Raised when input validation fails."""

    pass


class EntityNotFoundError(MaBourseError):
    """Raised when an entity is not found."""

    pass
