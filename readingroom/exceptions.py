"""Custom exceptions for the library stores."""

from typing import Optional


class LibraryError(Exception):
    """Base exception for library persistence."""

    pass


class LibraryValidationError(LibraryError):
    """An entity or argument violates a constraint (range, uniqueness, reference)."""

    pass


class EntityNotFoundError(LibraryError):
    """A mutation targets an entity that does not exist."""

    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} not found: {entity_id}")


class StorageError(LibraryError):
    """The underlying engine failed to read or write a primary record."""

    pass


class IndexInconsistencyError(LibraryError):
    """A secondary, roster or child index could not be maintained."""

    def __init__(self, key: str, message: str):
        self.key = key
        super().__init__(f"index {key}: {message}")


class UnsupportedOperationError(LibraryError):
    """The selected engine does not implement an entity kind."""

    def __init__(self, capability: str, backend: str, recommendation: Optional[str] = "sql"):
        self.capability = capability
        self.backend = backend
        self.recommendation = recommendation
        message = f"{capability} not supported by the {backend} backend"
        if recommendation:
            message += f": use the {recommendation} backend"
        super().__init__(message)
