"""Error taxonomy for repository operations.

Every error carries a stable machine-readable ``code`` so callers (console,
web handlers, sync jobs) can branch on the failure kind without parsing
messages:

- ``ValidationError``: bad input shape or value, duplicate key, broken
  referential integrity, malformed serialized payload. Recoverable by the
  caller correcting its input; never retried automatically.
- ``NotFoundError``: a mutating operation targeted an id that does not exist.
  Read operations return ``None`` instead of raising.
- ``ConflictError``: reserved for write conflicts reported by the store.
"""
from __future__ import annotations

from typing import Any


class RepositoryError(Exception):
    """Base class for all repository failures."""

    code = "REPOSITORY_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.cause is not None:
            data["cause"] = str(self.cause)
        return data


class NotFoundError(RepositoryError):
    code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: Any):
        super().__init__(f"{resource} with ID {resource_id} not found")
        self.resource = resource
        self.resource_id = resource_id

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["resource"] = self.resource
        data["resource_id"] = str(self.resource_id)
        return data


class ValidationError(RepositoryError):
    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        field: str | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message, cause=cause)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.field is not None:
            data["field"] = self.field
        return data


class ConflictError(RepositoryError):
    code = "CONFLICT"
