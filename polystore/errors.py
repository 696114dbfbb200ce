"""
Error taxonomy for polystore.

CRUD errors (NotConnected, ModelNotRegistered, NotInitialized,
BackendOperationError) always reach the caller. RemoteServiceError and
DimensionMismatch are raised internally by the embedding and search paths,
which recover from them with a local fallback.
"""

from __future__ import annotations


class PolystoreError(Exception):
    """Base class for every error raised by polystore."""


class NotConnected(PolystoreError):
    """A provider operation was attempted before connect()."""


class NotInitialized(PolystoreError):
    """A StorageService operation was attempted before connect() completed."""


class ModelNotRegistered(PolystoreError):
    """The backend needs a registered model for this entity and none exists."""

    def __init__(self, entity: str):
        self.entity = entity
        super().__init__(f"Model '{entity}' is not registered")


class UnknownBackend(PolystoreError, ValueError):
    """The configured backend kind is not one of the supported kinds."""


class InvalidFilter(PolystoreError, ValueError):
    """A filter could not be parsed into the structured filter algebra."""


class InvalidQuery(PolystoreError, ValueError):
    """Find options are out of range (negative skip/limit, bad sort)."""


class DimensionMismatch(PolystoreError, ValueError):
    """Two vectors of different length were compared."""

    def __init__(self, left: int, right: int):
        self.left = left
        self.right = right
        super().__init__(f"Vectors must have the same dimensions ({left} != {right})")


class RemoteServiceError(PolystoreError):
    """A remote endpoint returned a non-success status or a malformed payload."""


class BackendOperationError(PolystoreError):
    """A native driver call failed."""

    def __init__(self, operation: str, entity: str, cause: BaseException | None = None):
        self.operation = operation
        self.entity = entity
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{operation} on '{entity}' failed{detail}")
