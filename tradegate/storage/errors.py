from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class VersionConflict(Exception):
    """Raised when an update carries a version that is no longer current."""

    def __init__(
        self,
        entity: str,
        entity_id: str,
        expected_version: int,
        current_version: int,
    ):
        message = f"{entity} was modified by another request"
        super().__init__(message)
        self.message = message
        self.detail = {
            "entity": entity,
            "id": entity_id,
            "expected_version": expected_version,
            "current_version": current_version,
        }


__all__ = ["ConstraintViolation", "VersionConflict"]
