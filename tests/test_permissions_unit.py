"""Permission matching, catalog validation and per-company resolution."""

import pytest

from tradegate.service.permissions import (
    PermissionResolver,
    expand_wildcard,
    grants_platform_permission,
    has_permission,
    match_permission,
    read_only_permissions,
    validate_permissions,
)
from tradegate.storage.models import CompanyScope, PlatformScope, UserType


class TestMatching:
    def test_exact_match(self):
        assert match_permission("customer:read", "customer:read")
        assert not match_permission("customer:read", "customer:update")

    def test_global_wildcard_matches_everything(self):
        assert match_permission("platform:admin", "*")
        assert match_permission("customer:delete", "*")

    def test_resource_wildcard_is_scoped_to_resource(self):
        assert match_permission("customer:delete", "customer:*")
        assert not match_permission("customers:read", "customer:*")
        assert not match_permission("office:read", "customer:*")

    def test_has_permission_over_grant_list(self):
        granted = ["office:read", "role:*"]
        assert has_permission("role:assign", granted)
        assert not has_permission("user:read", granted)

    def test_expand_wildcard(self):
        assert set(expand_wildcard("role:*")) == {
            "role:read",
            "role:create",
            "role:update",
            "role:delete",
            "role:assign",
        }
        assert expand_wildcard("bogus:*") == []

    def test_validate_permissions_reports_unknown_entries(self):
        assert validate_permissions(["customer:read", "*", "user:*"]) == []
        assert validate_permissions(["customer:fly", "nothing:*"]) == ["customer:fly", "nothing:*"]

    def test_global_wildcard_is_not_an_explicit_platform_grant(self):
        assert not grants_platform_permission(["*"])
        assert grants_platform_permission(["platform:view_companies"])

    def test_read_only_permissions_exclude_platform(self):
        perms = read_only_permissions()
        assert "customer:read" in perms
        assert all(p.endswith(":read") and not p.startswith("platform:") for p in perms)


class TestResolver:
    def test_company_role_applies_only_in_its_company(self, runtime, company, make_user):
        other = runtime.store.create_company("Other Co")
        user = make_user(roles=())
        role = runtime.roles.create_company_role(
            company.id, name="estimator", display_name="Estimator", permissions=["report:export"]
        )
        runtime.permissions.assign_role(user, role, company.id)

        assert runtime.permissions.has_permission(user, company.id, "report:export")
        assert not runtime.permissions.has_permission(user, other.id, "report:export")

    def test_company_user_never_gets_platform_permissions(self, runtime, make_user):
        user = make_user(roles=("superUser",))
        company_id = user.company_id

        assert runtime.permissions.has_permission(user, company_id, "customer:delete")
        assert not runtime.permissions.has_permission(user, company_id, "platform:admin")

    def test_platform_role_grants_company_permissions_only_inside_a_company(
        self, runtime, internal_company, company, make_user
    ):
        support = runtime.store.get_role_by_name("platformSupport", "platform")
        user = make_user(
            "support@tradegate.test",
            roles=(),
            target_company=internal_company,
            user_type=UserType.INTERNAL,
        )
        runtime.permissions.assign_role(user, support, None)

        assert runtime.permissions.has_permission(user, None, "platform:switch_company")
        assert not runtime.permissions.has_permission(user, None, "customer:read")
        assert runtime.permissions.has_permission(user, company.id, "customer:read")
        assert not runtime.permissions.has_permission(user, company.id, "customer:update")

    def test_platform_role_cannot_go_to_company_user(self, runtime, make_user):
        from tradegate.service.errors import ForbiddenError

        user = make_user(roles=())
        admin_role = runtime.store.get_role_by_name("platformAdmin", "platform")
        with pytest.raises(ForbiddenError):
            runtime.permissions.assign_role(user, admin_role, user.company_id)

    def test_cache_is_invalidated_on_assignment_change(self, runtime, make_user):
        user = make_user(roles=("viewer",))
        company_id = user.company_id
        assert not runtime.permissions.has_permission(user, company_id, "customer:update")

        rep = runtime.store.get_role_by_name("salesRep", "system")
        runtime.permissions.assign_role(user, rep, company_id)
        assert runtime.permissions.has_permission(user, company_id, "customer:update")

        runtime.permissions.revoke_role(user.id, rep.id, company_id)
        assert not runtime.permissions.has_permission(user, company_id, "customer:update")

    def test_cached_result_survives_until_invalidated(self, runtime, company, make_user):
        resolver = PermissionResolver(runtime.store, ttl_seconds=600)
        user = make_user(roles=())
        role = runtime.store.create_role(
            "direct", "Direct", ["file:read"], CompanyScope(company_id=company.id)
        )
        assert resolver.resolve(user, company.id) == frozenset()

        runtime.store.assign_role(user.id, role.id, company.id)
        # the store changed behind the resolver's back
        assert resolver.resolve(user, company.id) == frozenset()
        resolver.invalidate(user.id)
        assert resolver.resolve(user, company.id) == frozenset({"file:read"})

    def test_missing_lists_what_is_not_granted(self, runtime, make_user):
        user = make_user(roles=("viewer",))
        missing = runtime.permissions.missing(
            user, user.company_id, ["customer:read", "customer:update", "role:read"]
        )
        assert missing == ["customer:update", "role:read"]

    def test_platform_scope_round_trip_through_store(self, runtime):
        role = runtime.store.create_role(
            "auditor",
            "Auditor",
            ["platform:view_audit_logs"],
            PlatformScope(company_permissions=("report:read",)),
        )
        loaded = runtime.store.get_role(role.id)
        assert loaded.kind == "platform"
        assert loaded.scope.company_permissions == ("report:read",)

    def test_revoke_all_roles_in_one_company(self, runtime, company, make_user):
        user = make_user(roles=("salesRep", "viewer"))
        other = runtime.store.create_company("Other Co")
        runtime.store.add_membership(user.id, other.id)
        runtime.permissions.assign_role(
            user, runtime.store.get_role_by_name("viewer", "system"), other.id
        )

        assert runtime.permissions.revoke_all_roles(user.id, company.id) == 2

        assert runtime.permissions.resolve(user, company.id) == frozenset()
        assert runtime.permissions.has_permission(user, other.id, "report:read")

    def test_available_roles_hide_platform_tier_from_company_users(
        self, runtime, company, internal_company, make_user
    ):
        rep = make_user(roles=())
        ops = make_user(
            "ops@tradegate.test",
            roles=(),
            target_company=internal_company,
            user_type=UserType.INTERNAL,
        )
        runtime.store.create_role("estimator", "Estimator", ["report:read"], CompanyScope(company.id))

        for_rep = {r.name: r.kind for r in runtime.permissions.available_roles(company.id, rep)}
        for_ops = {r.name for r in runtime.permissions.available_roles(company.id, ops)}

        assert for_rep["estimator"] == "company"
        assert "platform" not in for_rep.values()
        assert {"platformAdmin", "estimator", "superUser"} <= for_ops

    def test_has_all_and_has_any_edges(self, runtime, make_user):
        user = make_user(roles=("viewer",))
        resolver = runtime.permissions

        assert resolver.has_all(user, user.company_id, [])
        assert not resolver.has_any(user, user.company_id, [])
        assert resolver.has_all(user, user.company_id, ["customer:read", "office:read"])
        assert not resolver.has_all(user, user.company_id, ["customer:read", "role:read"])
        assert resolver.has_any(user, user.company_id, ["role:read", "report:read"])
