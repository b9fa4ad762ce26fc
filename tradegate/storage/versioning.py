"""Optimistic concurrency shared by every mutable aggregate.

An update names the version it was computed from. The store applies the
changes only if that version is still current and increments it in the same
step; otherwise :class:`VersionConflict` is raised and nothing is written.
"""

from __future__ import annotations

from dataclasses import fields, replace
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, TypeVar

from tradegate.storage.errors import VersionConflict
from tradegate.storage.models import utcnow

T = TypeVar("T")

# Never writable through a versioned update.
_PROTECTED = frozenset({"id", "version", "created_at", "updated_at"})


def check_changes(
    entity_name: str, changes: Mapping[str, Any], allowed: Iterable[str]
) -> Dict[str, Any]:
    """Reject fields the caller may not change through a versioned update."""
    allowed_set = set(allowed) - _PROTECTED
    unknown = sorted(set(changes) - allowed_set)
    if unknown:
        raise ValueError(f"{entity_name} fields not updatable: {', '.join(unknown)}")
    return dict(changes)


def apply_versioned_update(
    entity: T,
    entity_name: str,
    expected_version: int,
    changes: Mapping[str, Any],
    *,
    now: Optional[datetime] = None,
) -> T:
    """Compare ``expected_version`` with the entity and return the bumped copy.

    Callers hold whatever lock makes the read and the write atomic.
    """
    current = getattr(entity, "version")
    if current != expected_version:
        raise VersionConflict(entity_name, getattr(entity, "id"), expected_version, current)
    names = {f.name for f in fields(entity)}
    check_changes(entity_name, changes, names)
    extra: Dict[str, Any] = {"version": current + 1}
    if "updated_at" in names:
        extra["updated_at"] = now or utcnow()
    return replace(entity, **dict(changes), **extra)


def versioned_update_sql(
    table: str,
    columns: Mapping[str, Any],
    *,
    key_column: str = "id",
) -> Tuple[str, list]:
    """Build ``UPDATE ... WHERE id = %s AND version = %s RETURNING *``.

    Column names come from the store's own whitelist, never from request input.
    The returned parameter list still lacks the key and expected version,
    which the caller appends in that order.
    """
    assignments = [f"{name} = %s" for name in columns]
    assignments.append("version = version + 1")
    assignments.append("updated_at = now()")
    sql = (
        f"UPDATE {table} SET {', '.join(assignments)} "
        f"WHERE {key_column} = %s AND version = %s RETURNING *"
    )
    return sql, list(columns.values())
