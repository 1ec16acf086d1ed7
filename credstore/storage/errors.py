from __future__ import annotations

from typing import Any, Dict, Iterable, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class SchemaMissing(RuntimeError):
    """Required tables are absent from the durable store."""

    def __init__(self, tables: Iterable[str]):
        self.tables = sorted(tables)
        super().__init__(
            "Missing required Postgres tables: {}. Apply credstore/storage/schema.sql first.".format(
                ", ".join(self.tables)
            )
        )


__all__ = ["ConstraintViolation", "SchemaMissing"]
