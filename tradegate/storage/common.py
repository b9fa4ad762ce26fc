"""Storage helpers shared between the memory and postgres implementations.

Keeps the writable-field whitelists and row normalisation in one place so both
backends accept and reject the same updates.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Mapping, Optional

from tradegate.storage.models import PasswordPolicy, RoleScope, SystemScope, scope_from_dict
from tradegate.storage.versioning import check_changes

# Fields services may write on a user without a version check: login
# bookkeeping and security flags, never profile data.
SYSTEM_USER_FIELDS = frozenset(
    {
        "failed_login_attempts",
        "locked_until",
        "last_failed_login_at",
        "last_login_at",
        "mfa_enabled",
        "needs_reset_password",
        "password_changed_at",
        "force_logout_at",
    }
)

USER_UPDATABLE_FIELDS = frozenset(
    {"name_first", "name_last", "is_active", "max_sessions", "company_id", "mfa_enabled"}
)
COMPANY_UPDATABLE_FIELDS = frozenset(
    {"name", "mfa_required", "max_sessions_per_user", "password_policy", "is_active"}
)
ROLE_UPDATABLE_FIELDS = frozenset(
    {"display_name", "description", "permissions", "scope", "is_default"}
)


def check_system_fields(values: Mapping[str, Any]) -> Dict[str, Any]:
    # check_changes strips the protected columns; none of these are protected
    return check_changes("user", values, SYSTEM_USER_FIELDS)


def normalize_email(email: str) -> str:
    """Emails are compared and stored trimmed and lowercase."""
    return email.strip().lower()


def parse_json_list(raw: Any) -> List[str]:
    """Decode a JSON array column that may arrive as text or an already-parsed list."""
    if raw is None:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return []
    if isinstance(raw, (list, tuple)):
        return [str(item) for item in raw]
    return []


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    if isinstance(raw_meta, str):
        try:
            return json.loads(raw_meta)
        except ValueError:
            return None
    if isinstance(raw_meta, dict):
        return raw_meta
    return None


def policy_from_raw(raw: Any) -> PasswordPolicy:
    data = parse_json_meta(raw) or {}
    known = {k: v for k, v in data.items() if k in PasswordPolicy.__dataclass_fields__}
    return PasswordPolicy(**known)


def scope_from_row(row: Mapping[str, Any]) -> RoleScope:
    kind = row.get("scope_kind") or "system"
    if kind == "system":
        return SystemScope()
    return scope_from_dict(
        {
            "kind": kind,
            "company_id": row.get("company_id"),
            "company_permissions": parse_json_list(row.get("company_permissions")),
        }
    )


def unique_preserving_order(items: Iterable[str]) -> List[str]:
    seen: set = set()
    out: List[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out
