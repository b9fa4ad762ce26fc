"""Role management for company administrators and platform operators.

System roles are seeded at startup and shared by every company; they cannot
be edited or deleted through this service. Company roles belong to one
company. Platform roles are only visible to internal users.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from tradegate.logging import get_logger
from tradegate.service.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from tradegate.service.permissions import (
    PermissionResolver,
    grants_platform_permission,
    platform_permissions,
    read_only_permissions,
    validate_permissions,
)
from tradegate.storage.common import unique_preserving_order
from tradegate.storage.errors import ConstraintViolation
from tradegate.storage.models import CompanyScope, PlatformScope, Role, SystemScope

logger = get_logger(__name__)

ROLE_NAME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]*$")
MAX_ROLE_NAME = 100


@dataclass(frozen=True)
class RoleSeed:
    name: str
    display_name: str
    description: str
    permissions: Sequence[str]
    is_default: bool = False
    company_permissions: Sequence[str] = field(default_factory=tuple)


DEFAULT_SYSTEM_ROLES = (
    RoleSeed(
        "superUser",
        "Super User",
        "Full access to every company feature",
        ["*"],
    ),
    RoleSeed(
        "admin",
        "Administrator",
        "Manage users, roles, offices and company settings",
        [
            "customer:*",
            "user:*",
            "office:*",
            "role:*",
            "settings:*",
            "company:*",
            "report:read",
            "report:export",
        ],
    ),
    RoleSeed(
        "salesRep",
        "Sales Representative",
        "Work with customers and view reports",
        [
            "customer:read",
            "customer:create",
            "customer:update",
            "office:read",
            "report:read",
            "settings:read",
        ],
        is_default=True,
    ),
    RoleSeed(
        "viewer",
        "Viewer",
        "Read-only access to customers, offices and reports",
        ["customer:read", "office:read", "report:read"],
    ),
)

DEFAULT_PLATFORM_ROLES = (
    RoleSeed(
        "platformAdmin",
        "Platform Administrator",
        "Full platform administration with full access inside any company",
        platform_permissions(),
        company_permissions=("*",),
    ),
    RoleSeed(
        "platformSupport",
        "Platform Support",
        "Read-only support access across companies",
        ["platform:view_companies", "platform:switch_company", "platform:view_audit_logs"],
        company_permissions=tuple(read_only_permissions()),
    ),
    RoleSeed(
        "platformDeveloper",
        "Platform Developer",
        "Switch into companies for debugging with read-only access",
        ["platform:view_companies", "platform:switch_company"],
        company_permissions=tuple(read_only_permissions()),
    ),
)


@dataclass
class RoleSummary:
    role: Role
    user_count: int = 0


def _check_name(name: str) -> str:
    name = (name or "").strip()
    if not name or len(name) > MAX_ROLE_NAME or not ROLE_NAME_RE.match(name):
        raise ValidationError(
            "Role name must start with a letter and contain only letters, numbers, hyphens and underscores",
            detail={"field": "name"},
        )
    return name


def _check_permissions(permissions: Sequence[str], *, allow_platform: bool) -> List[str]:
    permissions = unique_preserving_order(permissions)
    invalid = validate_permissions(permissions)
    if invalid:
        raise ValidationError("Invalid permissions", detail={"invalid_permissions": invalid})
    if not allow_platform and grants_platform_permission(permissions):
        raise ValidationError(
            "Company roles cannot grant platform permissions",
            detail={"invalid_permissions": [p for p in permissions if p.startswith("platform:")]},
        )
    return permissions


class RoleService:
    def __init__(self, store, resolver: PermissionResolver) -> None:
        self.store = store
        self.resolver = resolver

    # -- seeding -------------------------------------------------------

    def ensure_default_roles(self) -> int:
        """Create any missing built-in roles; existing ones are left untouched."""
        created = 0
        for seed in DEFAULT_SYSTEM_ROLES:
            if self.store.get_role_by_name(seed.name, "system") is None:
                self._seed(seed, SystemScope())
                created += 1
        for seed in DEFAULT_PLATFORM_ROLES:
            if self.store.get_role_by_name(seed.name, "platform") is None:
                self._seed(seed, PlatformScope(company_permissions=tuple(seed.company_permissions)))
                created += 1
        if created:
            logger.info("default_roles_seeded", created=created)
        return created

    def _seed(self, seed: RoleSeed, scope) -> None:
        try:
            self.store.create_role(
                seed.name,
                seed.display_name,
                list(seed.permissions),
                scope,
                description=seed.description,
                is_default=seed.is_default,
            )
        except ConstraintViolation:
            # another instance seeded it first
            logger.info("default_role_exists", name=seed.name)

    # -- company roles -------------------------------------------------

    def _visible_role(self, role_id: str, company_id: str) -> Role:
        role = self.store.get_role(role_id)
        if not role or role.kind == "platform":
            raise NotFoundError("Role not found", detail={"role_id": role_id})
        if role.kind == "company" and role.company_id != company_id:
            raise NotFoundError("Role not found", detail={"role_id": role_id})
        return role

    def list_company_roles(self, company_id: str) -> List[RoleSummary]:
        roles = self.store.list_roles(kind="system") + self.store.list_roles(
            kind="company", company_id=company_id
        )
        return [
            RoleSummary(role, len(self.store.list_role_assignments(role.id, company_id)))
            for role in roles
        ]

    def get_company_role(self, role_id: str, company_id: str) -> RoleSummary:
        role = self._visible_role(role_id, company_id)
        return RoleSummary(role, len(self.store.list_role_assignments(role.id, company_id)))

    def _ensure_name_free(self, name: str, company_id: str) -> None:
        if self.store.get_role_by_name(name, "system") is not None:
            raise ConflictError(
                "Role name conflicts with system role", detail={"field": "name", "name": name}
            )
        if self.store.get_role_by_name(name, "company", company_id) is not None:
            raise ConflictError("Role name already exists", detail={"field": "name", "name": name})

    def create_company_role(
        self,
        company_id: str,
        *,
        name: str,
        display_name: str,
        permissions: Sequence[str],
        description: Optional[str] = None,
        is_default: bool = False,
        created_by: Optional[str] = None,
    ) -> Role:
        name = _check_name(name)
        permissions = _check_permissions(permissions, allow_platform=False)
        self._ensure_name_free(name, company_id)
        try:
            role = self.store.create_role(
                name,
                display_name,
                permissions,
                CompanyScope(company_id=company_id),
                description=description,
                is_default=is_default,
            )
        except ConstraintViolation as exc:
            raise ConflictError("Role name already exists", detail=exc.detail)
        logger.info("role_created", role_id=role.id, company_id=company_id, created_by=created_by)
        return role

    def clone_company_role(
        self,
        role_id: str,
        company_id: str,
        *,
        name: str,
        display_name: str,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Role:
        source = self._visible_role(role_id, company_id)
        permissions = source.permissions
        if source.kind == "system":
            # a clone of superUser must not smuggle in platform grants later
            permissions = [p for p in permissions if not p.startswith("platform:")]
        role = self.create_company_role(
            company_id,
            name=name,
            display_name=display_name,
            permissions=permissions,
            description=description if description is not None else source.description,
            created_by=created_by,
        )
        logger.info("role_cloned", role_id=role.id, source_role_id=source.id)
        return role

    def update_company_role(
        self,
        role_id: str,
        company_id: str,
        *,
        expected_version: int,
        changes: Dict[str, Any],
        updated_by: Optional[str] = None,
    ) -> Role:
        role = self._visible_role(role_id, company_id)
        if role.kind == "system":
            raise ForbiddenError("Cannot modify system roles")
        changes = dict(changes)
        if "permissions" in changes:
            changes["permissions"] = _check_permissions(changes["permissions"], allow_platform=False)
        updated = self.store.update_role(role.id, expected_version, changes)
        if not updated:
            raise NotFoundError("Role not found", detail={"role_id": role_id})
        self.resolver.invalidate_all()
        logger.info(
            "role_updated",
            role_id=role.id,
            version=updated.version,
            fields=sorted(changes),
            updated_by=updated_by,
        )
        return updated

    def delete_company_role(
        self, role_id: str, company_id: str, *, force: bool = False, deleted_by: Optional[str] = None
    ) -> int:
        """Delete a company role; returns how many assignments went with it."""
        role = self._visible_role(role_id, company_id)
        if role.kind == "system":
            raise ForbiddenError("Cannot delete system roles")
        assigned = len(self.store.list_role_assignments(role.id, company_id))
        if assigned and not force:
            raise ConflictError(
                "Role has assigned users",
                detail={"user_count": assigned},
            )
        self.store.delete_role(role.id)
        self.resolver.invalidate_all()
        logger.info(
            "role_deleted",
            role_id=role.id,
            removed_assignments=assigned,
            force=force,
            deleted_by=deleted_by,
        )
        return assigned

    # -- platform roles ------------------------------------------------

    def _platform_role(self, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if not role or role.kind != "platform":
            raise NotFoundError("Platform role not found", detail={"role_id": role_id})
        return role

    def list_platform_roles(self) -> List[RoleSummary]:
        return [
            RoleSummary(role, self.store.count_role_assignments(role.id))
            for role in self.store.list_roles(kind="platform")
        ]

    def get_platform_role(self, role_id: str) -> RoleSummary:
        role = self._platform_role(role_id)
        return RoleSummary(role, self.store.count_role_assignments(role.id))

    def create_platform_role(
        self,
        *,
        name: str,
        display_name: str,
        permissions: Sequence[str],
        company_permissions: Sequence[str] = (),
        description: Optional[str] = None,
    ) -> Role:
        name = _check_name(name)
        permissions = _check_permissions(permissions, allow_platform=True)
        company_perms = _check_permissions(company_permissions, allow_platform=False)
        if not grants_platform_permission(permissions):
            raise BadRequestError("At least one platform permission (platform:*) is required")
        if self.store.get_role_by_name(name, "platform") is not None:
            raise ConflictError("A platform role with this name already exists")
        try:
            role = self.store.create_role(
                name,
                display_name,
                permissions,
                PlatformScope(company_permissions=tuple(company_perms)),
                description=description,
            )
        except ConstraintViolation as exc:
            raise ConflictError("A platform role with this name already exists", detail=exc.detail)
        logger.info("platform_role_created", role_id=role.id, name=name)
        return role

    def update_platform_role(
        self, role_id: str, *, expected_version: int, changes: Dict[str, Any]
    ) -> Role:
        role = self._platform_role(role_id)
        changes = dict(changes)
        if "permissions" in changes:
            changes["permissions"] = _check_permissions(changes["permissions"], allow_platform=True)
            if not grants_platform_permission(changes["permissions"]):
                raise BadRequestError("At least one platform permission (platform:*) is required")
        if "company_permissions" in changes:
            company_perms = _check_permissions(
                changes.pop("company_permissions"), allow_platform=False
            )
            changes["scope"] = PlatformScope(company_permissions=tuple(company_perms))
        updated = self.store.update_role(role.id, expected_version, changes)
        if not updated:
            raise NotFoundError("Platform role not found", detail={"role_id": role_id})
        self.resolver.invalidate_all()
        logger.info("platform_role_updated", role_id=role.id, version=updated.version)
        return updated

    def delete_platform_role(self, role_id: str) -> None:
        role = self._platform_role(role_id)
        count = self.store.count_role_assignments(role.id)
        if count:
            raise BadRequestError(
                f"Cannot delete role: {count} user(s) are assigned to this role. Reassign them first.",
                detail={"user_count": count},
            )
        self.store.delete_role(role.id)
        self.resolver.invalidate_all()
        logger.info("platform_role_deleted", role_id=role.id, name=role.name)
