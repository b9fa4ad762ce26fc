"""Permission catalog and effective-permission resolution.

Permissions are ``resource:action`` strings. Roles may grant ``*`` (everything)
or ``resource:*`` (every action on one resource). ``platform:*`` permissions
exist only for internal users and are stripped from everyone else, even when
granted through ``*``.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from tradegate.logging import get_logger
from tradegate.service.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from tradegate.storage.errors import ConstraintViolation
from tradegate.storage.models import PlatformScope, Role, User, UserRole

logger = get_logger(__name__)

WILDCARD = "*"
PLATFORM_PREFIX = "platform:"


@dataclass(frozen=True)
class PermissionMeta:
    label: str
    category: str
    description: str


PERMISSION_CATALOG: Dict[str, PermissionMeta] = {
    "customer:read": PermissionMeta("View Customers", "Customers", "View customer list and details"),
    "customer:create": PermissionMeta("Create Customers", "Customers", "Add new customers"),
    "customer:update": PermissionMeta("Edit Customers", "Customers", "Modify existing customer information"),
    "customer:delete": PermissionMeta("Delete Customers", "Customers", "Remove customers"),
    "user:read": PermissionMeta("View Users", "Users", "View user list and profiles"),
    "user:create": PermissionMeta("Create Users", "Users", "Add new users to the company"),
    "user:update": PermissionMeta("Edit Users", "Users", "Modify user profiles and settings"),
    "user:delete": PermissionMeta("Delete Users", "Users", "Remove users from the company"),
    "user:activate": PermissionMeta("Activate/Deactivate Users", "Users", "Enable or disable user accounts"),
    "office:read": PermissionMeta("View Offices", "Offices", "View office list and details"),
    "office:create": PermissionMeta("Create Offices", "Offices", "Add new offices to the company"),
    "office:update": PermissionMeta("Edit Offices", "Offices", "Modify office settings and information"),
    "office:delete": PermissionMeta("Delete Offices", "Offices", "Remove offices from the company"),
    "role:read": PermissionMeta("View Roles", "Roles & Permissions", "View roles and their permissions"),
    "role:create": PermissionMeta("Create Roles", "Roles & Permissions", "Create custom roles for the company"),
    "role:update": PermissionMeta("Edit Roles", "Roles & Permissions", "Modify role permissions and settings"),
    "role:delete": PermissionMeta("Delete Roles", "Roles & Permissions", "Remove custom roles from the company"),
    "role:assign": PermissionMeta("Assign Roles", "Roles & Permissions", "Assign or revoke user roles"),
    "report:read": PermissionMeta("View Reports", "Reports", "Access reports and dashboards"),
    "report:export": PermissionMeta("Export Reports", "Reports", "Export reports to CSV or PDF"),
    "settings:read": PermissionMeta("View Settings", "Settings", "View company and application settings"),
    "settings:update": PermissionMeta("Manage Settings", "Settings", "Modify company and application settings"),
    "company:read": PermissionMeta("View Company Info", "Company", "View company profile"),
    "company:update": PermissionMeta("Manage Company", "Company", "Update company profile and security settings"),
    "file:read": PermissionMeta("View Files", "Files", "View and download files"),
    "file:create": PermissionMeta("Upload Files", "Files", "Upload new files"),
    "file:update": PermissionMeta("Edit Files", "Files", "Update file metadata and visibility"),
    "file:delete": PermissionMeta("Delete Files", "Files", "Delete files"),
    "data:migration": PermissionMeta("Data Migration", "Data Migration", "Import data from legacy systems"),
    "price_guide:import_export": PermissionMeta(
        "Price Guide Import/Export", "Price Guide", "Export and import price guide pricing data"
    ),
    "platform:admin": PermissionMeta("Platform Admin", "Platform", "Full platform administration access"),
    "platform:view_companies": PermissionMeta("View All Companies", "Platform", "List every company on the platform"),
    "platform:create_company": PermissionMeta("Create Companies", "Platform", "Create new companies"),
    "platform:update_company": PermissionMeta("Update Companies", "Platform", "Update company settings and details"),
    "platform:switch_company": PermissionMeta("Switch Company", "Platform", "Switch the active company context"),
    "platform:view_audit_logs": PermissionMeta("View Audit Logs", "Platform", "Access platform-wide audit logs"),
    "platform:manage_internal_users": PermissionMeta(
        "Manage Internal Users", "Platform", "Create and manage internal platform users"
    ),
}


def all_permissions() -> List[str]:
    return list(PERMISSION_CATALOG)


def permissions_by_category() -> Dict[str, List[str]]:
    grouped: Dict[str, List[str]] = {}
    for permission, meta in PERMISSION_CATALOG.items():
        grouped.setdefault(meta.category, []).append(permission)
    return grouped


def is_valid_permission(permission: str) -> bool:
    return permission in PERMISSION_CATALOG


def match_permission(required: str, granted: str) -> bool:
    """Whether one granted pattern covers ``required``.

    ``cust:*`` only covers ``cust:...``; the resource must match exactly.
    """
    if granted == WILDCARD or granted == required:
        return True
    if granted.endswith(":*"):
        resource = granted[:-2]
        return required.startswith(resource + ":")
    return False


def has_permission(required: str, granted: Iterable[str]) -> bool:
    return any(match_permission(required, pattern) for pattern in granted)


def expand_wildcard(pattern: str) -> List[str]:
    if pattern == WILDCARD:
        return all_permissions()
    if pattern.endswith(":*"):
        resource = pattern[:-2]
        return [p for p in PERMISSION_CATALOG if p.startswith(resource + ":")]
    return [pattern] if is_valid_permission(pattern) else []


def is_platform_permission(permission: str) -> bool:
    return permission.startswith(PLATFORM_PREFIX)


def platform_permissions() -> List[str]:
    return [p for p in PERMISSION_CATALOG if is_platform_permission(p)]


def company_permissions() -> List[str]:
    return [p for p in PERMISSION_CATALOG if not is_platform_permission(p)]


def read_only_permissions() -> List[str]:
    return [p for p in company_permissions() if p.endswith(":read")]


def validate_permissions(permissions: Sequence[str]) -> List[str]:
    """Return the entries that are neither catalog permissions nor valid wildcards."""
    invalid = []
    for permission in permissions:
        if permission == WILDCARD:
            continue
        if permission.endswith(":*"):
            if not expand_wildcard(permission):
                invalid.append(permission)
            continue
        if not is_valid_permission(permission):
            invalid.append(permission)
    return invalid


def grants_platform_permission(permissions: Iterable[str]) -> bool:
    """True when the list contains an explicit ``platform:`` grant.

    ``*`` does not count: a platform role must name what it grants.
    """
    return any(is_platform_permission(p) for p in permissions)


def strip_platform_permissions(permissions: Iterable[str]) -> List[str]:
    return [p for p in permissions if not is_platform_permission(p)]


class PermissionResolver:
    """Resolves a user's effective permissions within a company context.

    Results are cached per ``(user_id, company_id)`` for ``ttl_seconds``.
    Every assignment change invalidates the affected entries; role edits call
    :meth:`invalidate_all` since they can touch any user.
    """

    def __init__(self, store, *, ttl_seconds: int = 300) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._cache: Dict[Tuple[str, Optional[str]], Tuple[FrozenSet[str], float]] = {}
        self._cache_lock = threading.Lock()

    # -- cache ---------------------------------------------------------

    def invalidate(self, user_id: str, company_id: Optional[str] = None) -> None:
        with self._cache_lock:
            if company_id is not None:
                self._cache.pop((user_id, company_id), None)
                return
            for key in [k for k in self._cache if k[0] == user_id]:
                self._cache.pop(key, None)

    def invalidate_all(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    # -- resolution ----------------------------------------------------

    def _applicable_roles(self, user: User, company_id: Optional[str]) -> List[Role]:
        roles = []
        for assignment in self.store.list_user_roles(user.id):
            if assignment.company_id is not None and assignment.company_id != company_id:
                continue
            role = self.store.get_role(assignment.role_id)
            if not role:
                continue
            if role.scope.applies_to(is_internal=user.is_internal, company_id=company_id):
                roles.append(role)
        return roles

    def resolve(self, user: User, company_id: Optional[str]) -> FrozenSet[str]:
        key = (user.id, company_id)
        now = time.monotonic()
        with self._cache_lock:
            cached = self._cache.get(key)
            if cached and cached[1] > now:
                return cached[0]

        granted: set = set()
        for role in self._applicable_roles(user, company_id):
            granted.update(role.permissions)
            if isinstance(role.scope, PlatformScope) and company_id is not None:
                granted.update(role.scope.company_permissions)
        if not user.is_internal:
            granted = set(strip_platform_permissions(granted))
        resolved = frozenset(granted)

        with self._cache_lock:
            self._cache[key] = (resolved, now + self.ttl_seconds)
        return resolved

    def has_permission(self, user: User, company_id: Optional[str], permission: str) -> bool:
        if is_platform_permission(permission) and not user.is_internal:
            return False
        return has_permission(permission, self.resolve(user, company_id))

    def has_all(self, user: User, company_id: Optional[str], permissions: Sequence[str]) -> bool:
        return all(self.has_permission(user, company_id, p) for p in permissions)

    def has_any(self, user: User, company_id: Optional[str], permissions: Sequence[str]) -> bool:
        return any(self.has_permission(user, company_id, p) for p in permissions)

    def missing(self, user: User, company_id: Optional[str], permissions: Sequence[str]) -> List[str]:
        return [p for p in permissions if not self.has_permission(user, company_id, p)]

    # -- assignments ---------------------------------------------------

    def assign_role(
        self,
        user: User,
        role: Role,
        company_id: Optional[str],
        *,
        assigned_by: Optional[str] = None,
    ) -> UserRole:
        if role.kind == "platform":
            if not user.is_internal:
                raise ForbiddenError("Platform roles can only be assigned to internal users")
            # platform roles follow the user into every company
            company_id = None
        elif role.kind == "company" and role.company_id != company_id:
            raise BadRequestError("Role does not belong to this company")
        try:
            assignment = self.store.assign_role(user.id, role.id, company_id, assigned_by)
        except ConstraintViolation as exc:
            raise ConflictError("Role is already assigned to this user", detail=exc.detail)
        self.invalidate(user.id)
        logger.info(
            "role_assigned",
            user_id=user.id,
            role_id=role.id,
            company_id=company_id,
            assigned_by=assigned_by,
        )
        return assignment

    def revoke_role(self, user_id: str, role_id: str, company_id: Optional[str]) -> bool:
        role = self.store.get_role(role_id)
        if role and role.kind == "platform":
            company_id = None
        removed = self.store.delete_user_role(user_id, role_id, company_id)
        if removed:
            self.invalidate(user_id)
            logger.info("role_revoked", user_id=user_id, role_id=role_id, company_id=company_id)
        return removed

    def revoke_all_roles(self, user_id: str, company_id: Optional[str]) -> int:
        count = self.store.delete_user_roles(user_id, company_id)
        if count:
            self.invalidate(user_id)
        return count

    def user_roles(self, user: User, company_id: Optional[str]) -> List[Role]:
        return self._applicable_roles(user, company_id)

    def available_roles(self, company_id: Optional[str], viewer: User) -> List[Role]:
        """System roles, the company's own roles, and platform roles for internal viewers."""
        roles = list(self.store.list_roles(kind="system"))
        if company_id is not None:
            roles.extend(self.store.list_roles(kind="company", company_id=company_id))
        if viewer.is_internal:
            roles.extend(self.store.list_roles(kind="platform"))
        return roles

    def get_role(self, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if not role:
            raise NotFoundError("Role not found", detail={"role_id": role_id})
        return role
