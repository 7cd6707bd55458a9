from __future__ import annotations

from typing import Any, Dict, Iterable, Optional


class StorageError(Exception):
    """Base class for persistence failures surfaced by the stores."""


class ConstraintViolation(StorageError):
    """A uniqueness or foreign-key rule rejected the write."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class SchemaMissingError(StorageError):
    """The database is reachable but the auth tables are not installed."""

    def __init__(self, tables: Iterable[str]):
        self.tables = sorted(tables)
        super().__init__(
            "missing required tables: {}; apply securesnap/storage/schema.sql".format(
                ", ".join(self.tables)
            )
        )


__all__ = ["StorageError", "ConstraintViolation", "SchemaMissingError"]
