import pytest

from tradegate.service.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from tradegate.service.roles import DEFAULT_PLATFORM_ROLES, DEFAULT_SYSTEM_ROLES
from tradegate.storage.errors import VersionConflict


def _create(runtime, company, name="estimator", permissions=("customer:read",)):
    return runtime.roles.create_company_role(
        company.id, name=name, display_name=name.title(), permissions=list(permissions)
    )


def test_default_roles_seeded_once(runtime):
    expected = len(DEFAULT_SYSTEM_ROLES) + len(DEFAULT_PLATFORM_ROLES)
    assert len(runtime.store.list_roles()) == expected

    assert runtime.roles.ensure_default_roles() == 0
    assert len(runtime.store.list_roles()) == expected
    assert runtime.store.get_role_by_name("salesRep", "system").is_default


def test_list_company_roles_includes_system_roles_with_counts(runtime, company, make_user):
    make_user(roles=("viewer",))
    _create(runtime, company)

    summaries = {s.role.name: s for s in runtime.roles.list_company_roles(company.id)}

    assert {"superUser", "admin", "salesRep", "viewer", "estimator"} <= set(summaries)
    assert "platformAdmin" not in summaries
    assert summaries["viewer"].user_count == 1
    assert summaries["estimator"].user_count == 0


def test_create_rejects_bad_input(runtime, company):
    with pytest.raises(ValidationError):
        _create(runtime, company, name="1bad name")
    with pytest.raises(ValidationError):
        _create(runtime, company, permissions=["customer:fly"])
    with pytest.raises(ValidationError):
        _create(runtime, company, permissions=["platform:admin"])


def test_create_rejects_duplicates_and_system_names(runtime, company):
    _create(runtime, company)
    with pytest.raises(ConflictError):
        _create(runtime, company)
    with pytest.raises(ConflictError):
        _create(runtime, company, name="admin")


def test_same_name_allowed_in_other_company(runtime, company):
    other = runtime.store.create_company("Other Co")
    _create(runtime, company)
    role = _create(runtime, other)
    assert role.company_id == other.id


def test_other_companys_role_is_invisible(runtime, company):
    other = runtime.store.create_company("Other Co")
    role = _create(runtime, other)

    with pytest.raises(NotFoundError):
        runtime.roles.get_company_role(role.id, company.id)


def test_update_bumps_version_and_detects_conflicts(runtime, company):
    role = _create(runtime, company)

    updated = runtime.roles.update_company_role(
        role.id,
        company.id,
        expected_version=role.version,
        changes={"permissions": ["customer:read", "customer:update"]},
    )
    assert updated.version == role.version + 1
    assert updated.permissions == ["customer:read", "customer:update"]

    with pytest.raises(VersionConflict) as excinfo:
        runtime.roles.update_company_role(
            role.id, company.id, expected_version=role.version, changes={"display_name": "Stale"}
        )
    assert excinfo.value.detail["current_version"] == updated.version


def test_update_invalidates_permission_cache(runtime, company, make_user):
    user = make_user(roles=())
    role = _create(runtime, company)
    runtime.permissions.assign_role(user, role, company.id)
    assert not runtime.permissions.has_permission(user, company.id, "report:read")

    runtime.roles.update_company_role(
        role.id, company.id, expected_version=role.version, changes={"permissions": ["report:read"]}
    )

    assert runtime.permissions.has_permission(user, company.id, "report:read")


def test_system_roles_are_immutable(runtime, company):
    admin = runtime.store.get_role_by_name("admin", "system")

    with pytest.raises(ForbiddenError):
        runtime.roles.update_company_role(
            admin.id, company.id, expected_version=admin.version, changes={"display_name": "Boss"}
        )
    with pytest.raises(ForbiddenError):
        runtime.roles.delete_company_role(admin.id, company.id)


def test_delete_with_assignments_requires_force(runtime, company, make_user):
    user = make_user(roles=())
    role = _create(runtime, company)
    runtime.permissions.assign_role(user, role, company.id)

    with pytest.raises(ConflictError):
        runtime.roles.delete_company_role(role.id, company.id)

    assert runtime.roles.delete_company_role(role.id, company.id, force=True) == 1
    assert runtime.store.get_role(role.id) is None
    assert runtime.store.list_user_roles(user.id) == []


def test_clone_copies_permissions(runtime, company):
    source = runtime.store.get_role_by_name("salesRep", "system")

    clone = runtime.roles.clone_company_role(
        source.id, company.id, name="seniorRep", display_name="Senior Rep"
    )

    assert clone.kind == "company"
    assert clone.permissions == source.permissions
    assert clone.description == source.description
    assert not clone.is_default


def test_platform_role_crud(runtime):
    role = runtime.roles.create_platform_role(
        name="billing",
        display_name="Billing",
        permissions=["platform:view_companies"],
        company_permissions=["report:read"],
    )
    assert role.scope.company_permissions == ("report:read",)

    updated = runtime.roles.update_platform_role(
        role.id,
        expected_version=role.version,
        changes={"company_permissions": ["report:read", "report:export"]},
    )
    assert updated.scope.company_permissions == ("report:read", "report:export")

    with pytest.raises(ConflictError):
        runtime.roles.create_platform_role(
            name="billing", display_name="Again", permissions=["platform:view_companies"]
        )

    runtime.roles.delete_platform_role(role.id)
    with pytest.raises(NotFoundError):
        runtime.roles.get_platform_role(role.id)


def test_platform_role_needs_platform_permission(runtime):
    with pytest.raises(BadRequestError):
        runtime.roles.create_platform_role(
            name="noop", display_name="Noop", permissions=["customer:read"]
        )


def test_platform_role_with_users_cannot_be_deleted(runtime, internal_company, make_user):
    from tradegate.storage.models import UserType

    user = make_user(
        "ops@tradegate.test", roles=(), target_company=internal_company, user_type=UserType.INTERNAL
    )
    support = runtime.store.get_role_by_name("platformSupport", "platform")
    runtime.permissions.assign_role(user, support, None)

    with pytest.raises(BadRequestError):
        runtime.roles.delete_platform_role(support.id)
    assert runtime.roles.get_platform_role(support.id).user_count == 1
