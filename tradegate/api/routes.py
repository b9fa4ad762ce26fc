from __future__ import annotations

from dataclasses import dataclass
from datetime import timezone
from typing import Callable, Optional, Sequence

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Query, Request, Response

from tradegate.api.schemas import (
    CompanySummary,
    Envelope,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MfaRecoveryRequest,
    MfaSendResponse,
    MfaStatusResponse,
    MfaVerifyRequest,
    MfaVerifyResponse,
    MyPermissionsResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PermissionCatalogResponse,
    PermissionInfo,
    PlatformRoleCreateRequest,
    PlatformRoleUpdateRequest,
    RecoveryCodesResponse,
    RoleAssignRequest,
    RoleCloneRequest,
    RoleCreateRequest,
    RoleListResponse,
    RoleResponse,
    RoleUpdateRequest,
    SessionListResponse,
    SessionResponse,
    SwitchCompanyRequest,
    TrustedDeviceListResponse,
    TrustedDeviceResponse,
    UnlockResponse,
    UserResponse,
    UserRolesResponse,
)
from tradegate.logging import get_logger
from tradegate.service.auth import LoginRequest as AuthLoginRequest
from tradegate.service.errors import (
    BadRequestError,
    ForbiddenError,
    NotFoundError,
    ServerError,
)
from tradegate.service.events import ClientInfo
from tradegate.service.permissions import (
    PERMISSION_CATALOG,
    permissions_by_category,
)
from tradegate.service.runtime import check_rate_limit, get_runtime
from tradegate.service.trusted_device import DEVICE_TRUST_COOKIE
from tradegate.storage.models import (
    Company,
    PlatformScope,
    Role,
    Session,
    SessionSource,
    User,
    utcnow,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SESSION_COOKIE = "sid"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Raise 429 once ``key`` has used up ``limit`` requests in the window."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.info("rate_limited", scope=key.split(":", 1)[0])
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after": reset_seconds},
        )
    return info


def _client_info(request: Request, source: SessionSource = SessionSource.WEB) -> ClientInfo:
    return ClientInfo(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        source=source,
    )


def _set_cookie(response: Response, name: str, value: str, *, max_age: int) -> None:
    runtime = get_runtime()
    response.set_cookie(
        name,
        value,
        httponly=True,
        secure=not runtime.settings.test_mode,
        samesite="lax",
        max_age=max_age,
        path="/",
    )


def _set_session_cookie(response: Response, session: Session) -> None:
    expires_at = session.absolute_expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    max_age = max(1, int((expires_at - utcnow()).total_seconds()))
    _set_cookie(response, SESSION_COOKIE, session.sid, max_age=max_age)


# -- serialisation ----------------------------------------------------


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name_first=user.name_first,
        name_last=user.name_last,
        user_type=user.user_type.value,
        mfa_enabled=user.mfa_enabled,
        is_active=user.is_active,
    )


def _company_summary(company: Optional[Company]) -> Optional[CompanySummary]:
    if not company:
        return None
    return CompanySummary(id=company.id, name=company.name, mfa_required=company.mfa_required)


def _role_response(role: Role, user_count: Optional[int] = None) -> RoleResponse:
    return RoleResponse(
        id=role.id,
        name=role.name,
        display_name=role.display_name,
        description=role.description,
        type=role.kind,
        permissions=list(role.permissions),
        company_permissions=(
            list(role.scope.company_permissions) if isinstance(role.scope, PlatformScope) else None
        ),
        is_default=role.is_default,
        version=role.version,
        user_count=user_count,
        created_at=role.created_at,
        updated_at=role.updated_at,
    )


def _session_response(session: Session, current_sid: Optional[str]) -> SessionResponse:
    return SessionResponse(
        sid=session.sid,
        source=session.source.value,
        created_at=session.created_at,
        expires_at=session.expires_at,
        last_activity_at=session.last_activity_at,
        ip_address=session.ip_address,
        user_agent=session.user_agent,
        is_current=session.sid == current_sid,
    )


# -- dependencies -----------------------------------------------------


@dataclass
class AuthContext:
    session: Session
    user: User
    company: Optional[Company] = None
    client: Optional[ClientInfo] = None

    @property
    def company_id(self) -> Optional[str]:
        return self.company.id if self.company else None

    def require_company(self) -> str:
        if not self.company:
            raise BadRequestError("No active company context")
        return self.company.id


async def require_auth(
    request: Request,
    sid_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
    x_session_id: Optional[str] = Header(None, alias="X-Session-ID"),
    x_company_id: Optional[str] = Header(None, alias="X-Company-ID"),
) -> AuthContext:
    runtime = get_runtime()
    session, user = runtime.sessions.resolve(x_session_id or sid_cookie)
    company = runtime.auth.current_company(session, user)
    # company users are pinned to their session's company; the header only
    # moves internal users that may switch companies
    if x_company_id and user.is_internal and x_company_id != (company.id if company else None):
        if runtime.permissions.has_permission(
            user, company.id if company else None, "platform:switch_company"
        ):
            override = runtime.store.get_company(x_company_id)
            if override and override.is_active:
                company = override
    return AuthContext(
        session=session,
        user=user,
        company=company,
        client=_client_info(request, session.source),
    )


async def require_mfa(ctx: AuthContext = Depends(require_auth)) -> AuthContext:
    get_runtime().mfa.require_verified(ctx.session, ctx.user, ctx.company)
    return ctx


def _deny(missing: Sequence[str]) -> ForbiddenError:
    return ForbiddenError(
        f"Missing required permission: {', '.join(missing)}",
        detail={"required_permissions": list(missing)},
    )


def require_permission(permission: str) -> Callable:
    async def _dependency(ctx: AuthContext = Depends(require_mfa)) -> AuthContext:
        resolver = get_runtime().permissions
        if not resolver.has_permission(ctx.user, ctx.company_id, permission):
            logger.warning(
                "permission_denied", user_id=ctx.user.id, permission=permission
            )
            raise _deny([permission])
        return ctx

    return _dependency


def require_all(*permissions: str) -> Callable:
    async def _dependency(ctx: AuthContext = Depends(require_mfa)) -> AuthContext:
        missing = get_runtime().permissions.missing(ctx.user, ctx.company_id, permissions)
        if missing:
            logger.warning("permission_denied", user_id=ctx.user.id, permissions=missing)
            raise _deny(missing)
        return ctx

    return _dependency


def require_any(*permissions: str) -> Callable:
    async def _dependency(ctx: AuthContext = Depends(require_mfa)) -> AuthContext:
        if not get_runtime().permissions.has_any(ctx.user, ctx.company_id, permissions):
            logger.warning("permission_denied", user_id=ctx.user.id, permissions=list(permissions))
            raise ForbiddenError(
                f"Requires one of: {', '.join(permissions)}",
                detail={"required_permissions": list(permissions)},
            )
        return ctx

    return _dependency


def require_platform_admin() -> Callable:
    check = require_permission("platform:admin")

    async def _dependency(ctx: AuthContext = Depends(require_mfa)) -> AuthContext:
        if not ctx.user.is_internal:
            raise ForbiddenError("Internal user access required")
        return await check(ctx)

    return _dependency


# -- auth -------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    sid_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
    device_trust: Optional[str] = Cookie(None, alias=DEVICE_TRUST_COOKIE),
):
    """Authenticate with email and password.

    A user whose company requires MFA (or who enabled it) gets a session that
    only becomes usable after ``/auth/mfa/verify``; a code is sent right away.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    source = SessionSource(body.source)
    client = _client_info(request, source)
    result = await runtime.auth.login(
        AuthLoginRequest(
            email=body.email,
            password=body.password,
            source=source,
            sid=sid_cookie,
            remember_me=body.remember_me,
            device_trust_token=device_trust,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
    )

    code = None
    expires_in = None
    if result.requires_mfa:
        try:
            code = await runtime.mfa.send_code(result.user)
            expires_in = runtime.settings.mfa_code_expiry_minutes * 60
        except ServerError as exc:
            # the user can still ask for a new code through /auth/mfa/send
            logger.error("login_mfa_code_send_failed", user_id=result.user.id, error=exc.message)

    _set_session_cookie(response, result.session)
    return Envelope(
        status="ok",
        data=LoginResponse(
            user=_user_response(result.user),
            session_id=result.session.sid,
            session_expires_at=result.session.expires_at,
            requires_mfa=result.requires_mfa,
            active_company=_company_summary(result.company),
            can_switch_companies=result.can_switch_companies,
            mfa_code_expires_in=expires_in,
            mfa_code=code,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, ctx: AuthContext = Depends(require_auth)):
    await get_runtime().auth.logout(ctx.session, ctx.user, client=ctx.client)
    response.delete_cookie(SESSION_COOKIE, path="/")
    return Envelope(status="ok", data={"message": "Logged out"})


def _can_switch_companies(ctx: AuthContext) -> bool:
    runtime = get_runtime()
    if ctx.user.is_internal:
        return runtime.permissions.has_permission(
            ctx.user, ctx.company_id, "platform:switch_company"
        )
    return len(runtime.store.list_memberships(ctx.user.id, active_only=True)) > 1


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(ctx: AuthContext = Depends(require_auth)):
    runtime = get_runtime()
    if runtime.mfa.mfa_applies(ctx.user, ctx.company) and not ctx.session.mfa_verified:
        return Envelope(status="ok", data=MeResponse(requires_mfa=True))
    return Envelope(
        status="ok",
        data=MeResponse(
            user=_user_response(ctx.user),
            company=_company_summary(ctx.company),
            can_switch_companies=_can_switch_companies(ctx),
        ),
    )


@router.post("/auth/switch-company", response_model=Envelope, tags=["auth"])
async def switch_company(body: SwitchCompanyRequest, ctx: AuthContext = Depends(require_mfa)):
    runtime = get_runtime()
    session, company = runtime.sessions.switch_company(
        ctx.session, ctx.user, body.company_id, permissions=runtime.permissions
    )
    permissions = sorted(runtime.permissions.resolve(ctx.user, company.id))
    return Envelope(
        status="ok",
        data={
            "company": _company_summary(company),
            "permissions": permissions,
            "session_id": session.sid,
        },
    )


# -- mfa --------------------------------------------------------------


async def _mfa_rate_limit(runtime, ctx: AuthContext, action: str) -> None:
    await _enforce_rate_limit(
        runtime,
        f"mfa:{action}:{ctx.user.id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )


@router.post("/auth/mfa/send", response_model=Envelope, tags=["mfa"])
async def mfa_send(ctx: AuthContext = Depends(require_auth)):
    runtime = get_runtime()
    await _mfa_rate_limit(runtime, ctx, "send")
    code = await runtime.mfa.send_code(ctx.user)
    return Envelope(
        status="ok",
        data=MfaSendResponse(
            expires_in=runtime.settings.mfa_code_expiry_minutes * 60, code=code
        ),
    )


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["mfa"])
async def mfa_verify(
    body: MfaVerifyRequest, response: Response, ctx: AuthContext = Depends(require_auth)
):
    runtime = get_runtime()
    await _mfa_rate_limit(runtime, ctx, "verify")
    result = await runtime.mfa.verify_code(
        ctx.user, ctx.session, body.code, trust_device=body.trust_device, client=ctx.client
    )
    if result.device_token:
        _set_cookie(
            response,
            DEVICE_TRUST_COOKIE,
            result.device_token,
            max_age=runtime.settings.trusted_device_days * 24 * 60 * 60,
        )
    return Envelope(
        status="ok",
        data=MfaVerifyResponse(
            method=result.method,
            trusted_device_id=result.device.id if result.device else None,
        ),
    )


@router.post("/auth/mfa/recovery", response_model=Envelope, tags=["mfa"])
async def mfa_recovery(body: MfaRecoveryRequest, ctx: AuthContext = Depends(require_auth)):
    runtime = get_runtime()
    await _mfa_rate_limit(runtime, ctx, "recovery")
    result = await runtime.mfa.verify_recovery_code(
        ctx.user, ctx.session, body.code, client=ctx.client
    )
    return Envelope(
        status="ok",
        data=MfaVerifyResponse(
            method=result.method,
            remaining_recovery_codes=result.remaining_recovery_codes,
        ),
    )


@router.get("/auth/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(ctx: AuthContext = Depends(require_mfa)):
    status = get_runtime().mfa.status(ctx.user, ctx.company)
    return Envelope(
        status="ok",
        data=MfaStatusResponse(
            enabled=status.enabled,
            required_by_company=status.required_by_company,
            remaining_recovery_codes=status.remaining_recovery_codes,
            trusted_devices=status.trusted_devices,
        ),
    )


@router.post("/auth/mfa/enable", response_model=Envelope, tags=["mfa"])
async def mfa_enable(ctx: AuthContext = Depends(require_mfa)):
    codes = get_runtime().mfa.enable(ctx.user, client=ctx.client)
    return Envelope(status="ok", data=RecoveryCodesResponse(recovery_codes=codes))


@router.post("/auth/mfa/disable", response_model=Envelope, tags=["mfa"])
async def mfa_disable(ctx: AuthContext = Depends(require_mfa)):
    get_runtime().mfa.disable(ctx.user, client=ctx.client)
    return Envelope(status="ok", data={"message": "MFA disabled"})


@router.post("/auth/mfa/recovery-codes", response_model=Envelope, tags=["mfa"])
async def mfa_regenerate_recovery_codes(ctx: AuthContext = Depends(require_mfa)):
    codes = get_runtime().mfa.regenerate_recovery_codes(ctx.user)
    return Envelope(status="ok", data=RecoveryCodesResponse(recovery_codes=codes))


# -- sessions and devices ---------------------------------------------


@router.get("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(ctx: AuthContext = Depends(require_mfa)):
    sessions = get_runtime().sessions.list_for_user(ctx.user.id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[_session_response(s, ctx.session.sid) for s in sessions]
        ),
    )


@router.delete("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def revoke_other_sessions(ctx: AuthContext = Depends(require_mfa)):
    count = get_runtime().sessions.revoke_all(ctx.user.id, except_sid=ctx.session.sid)
    return Envelope(status="ok", data={"revoked": count})


@router.delete("/auth/sessions/{sid}", response_model=Envelope, tags=["sessions"])
async def revoke_session(sid: str, ctx: AuthContext = Depends(require_mfa)):
    get_runtime().sessions.revoke(ctx.user, sid, client=ctx.client)
    return Envelope(status="ok", data={"sid": sid, "revoked": True})


@router.get("/auth/devices", response_model=Envelope, tags=["sessions"])
async def list_devices(ctx: AuthContext = Depends(require_mfa)):
    devices = get_runtime().devices.list_for_user(ctx.user.id)
    return Envelope(
        status="ok",
        data=TrustedDeviceListResponse(
            items=[
                TrustedDeviceResponse(
                    id=d.id,
                    name=d.name,
                    ip_address=d.ip_address,
                    created_at=d.created_at,
                    last_used_at=d.last_used_at,
                    expires_at=d.expires_at,
                )
                for d in devices
            ]
        ),
    )


@router.delete("/auth/devices/{device_id}", response_model=Envelope, tags=["sessions"])
async def revoke_device(device_id: str, ctx: AuthContext = Depends(require_mfa)):
    get_runtime().devices.revoke(ctx.user.id, device_id)
    return Envelope(status="ok", data={"device_id": device_id, "revoked": True})


# -- passwords --------------------------------------------------------


@router.post("/auth/password/reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    result = await runtime.passwords.request_reset(body.email, client=_client_info(request))
    data = {"message": "If the account exists, a reset link has been sent"}
    if result.token:
        data["token"] = result.token
    return Envelope(status="ok", data=data)


@router.post("/auth/password/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    client = _client_info(request)
    await _enforce_rate_limit(
        runtime,
        f"reset_confirm:{client.ip_address}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    await runtime.passwords.complete_reset(body.token, body.new_password, client=client)
    return Envelope(status="ok", data={"message": "Password has been reset"})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(body: PasswordChangeRequest, ctx: AuthContext = Depends(require_mfa)):
    revoked = await get_runtime().passwords.change_password(
        ctx.user,
        body.current_password,
        body.new_password,
        keep_sid=ctx.session.sid,
        client=ctx.client,
    )
    return Envelope(status="ok", data={"message": "Password changed", "sessions_revoked": revoked})


# -- company roles ----------------------------------------------------


@router.get("/roles/permissions", response_model=Envelope, tags=["roles"])
async def permission_catalog(ctx: AuthContext = Depends(require_mfa)):
    visible = {
        name: meta
        for name, meta in PERMISSION_CATALOG.items()
        if ctx.user.is_internal or not name.startswith("platform:")
    }
    by_category = {
        category: [p for p in names if p in visible]
        for category, names in permissions_by_category().items()
    }
    return Envelope(
        status="ok",
        data=PermissionCatalogResponse(
            permissions=[
                PermissionInfo(
                    name=name, label=meta.label, category=meta.category, description=meta.description
                )
                for name, meta in visible.items()
            ],
            by_category={k: v for k, v in by_category.items() if v},
        ),
    )


@router.get("/roles/me", response_model=Envelope, tags=["roles"])
async def my_roles(ctx: AuthContext = Depends(require_mfa)):
    resolver = get_runtime().permissions
    roles = resolver.user_roles(ctx.user, ctx.company_id)
    return Envelope(
        status="ok",
        data=MyPermissionsResponse(
            roles=[_role_response(r) for r in roles],
            permissions=sorted(resolver.resolve(ctx.user, ctx.company_id)),
            company_id=ctx.company_id,
        ),
    )


@router.get("/roles", response_model=Envelope, tags=["roles"])
async def list_roles(ctx: AuthContext = Depends(require_permission("role:read"))):
    summaries = get_runtime().roles.list_company_roles(ctx.require_company())
    return Envelope(
        status="ok",
        data=RoleListResponse(items=[_role_response(s.role, s.user_count) for s in summaries]),
    )


@router.post("/roles", response_model=Envelope, status_code=201, tags=["roles"])
async def create_role(
    body: RoleCreateRequest, ctx: AuthContext = Depends(require_permission("role:create"))
):
    role = get_runtime().roles.create_company_role(
        ctx.require_company(),
        name=body.name,
        display_name=body.display_name,
        permissions=body.permissions,
        description=body.description,
        is_default=body.is_default,
        created_by=ctx.user.id,
    )
    return Envelope(status="ok", data=_role_response(role, 0))


def _target_user(ctx: AuthContext, user_id: str) -> User:
    """Users an admin may manage: members of the active company, or anyone for internal admins."""
    runtime = get_runtime()
    target = runtime.store.get_user(user_id)
    if not target:
        raise NotFoundError("User not found", detail={"user_id": user_id})
    if ctx.user.is_internal:
        return target
    company_id = ctx.require_company()
    if target.company_id == company_id:
        return target
    if any(m.company_id == company_id for m in runtime.store.list_memberships(target.id)):
        return target
    raise NotFoundError("User not found", detail={"user_id": user_id})


@router.get("/roles/users/{user_id}", response_model=Envelope, tags=["roles"])
async def user_roles(user_id: str, ctx: AuthContext = Depends(require_permission("role:read"))):
    resolver = get_runtime().permissions
    target = _target_user(ctx, user_id)
    roles = resolver.user_roles(target, ctx.company_id)
    return Envelope(
        status="ok",
        data=UserRolesResponse(
            user_id=target.id,
            roles=[_role_response(r) for r in roles],
            permissions=sorted(resolver.resolve(target, ctx.company_id)),
        ),
    )


def _assignable_role(ctx: AuthContext, role_id: str) -> Role:
    role = get_runtime().permissions.get_role(role_id)
    if role.kind == "platform" and not ctx.user.is_internal:
        raise NotFoundError("Role not found", detail={"role_id": role_id})
    if role.kind == "company" and role.company_id != ctx.company_id:
        raise NotFoundError("Role not found", detail={"role_id": role_id})
    return role


@router.post("/roles/assign", response_model=Envelope, tags=["roles"])
async def assign_role(
    body: RoleAssignRequest, ctx: AuthContext = Depends(require_permission("role:assign"))
):
    runtime = get_runtime()
    role = _assignable_role(ctx, body.role_id)
    target = _target_user(ctx, body.user_id)
    assignment = runtime.permissions.assign_role(
        target, role, ctx.company_id, assigned_by=ctx.user.id
    )
    return Envelope(
        status="ok",
        data={
            "user_id": assignment.user_id,
            "role_id": assignment.role_id,
            "company_id": assignment.company_id,
        },
    )


@router.post("/roles/revoke", response_model=Envelope, tags=["roles"])
async def revoke_role(
    body: RoleAssignRequest, ctx: AuthContext = Depends(require_permission("role:assign"))
):
    runtime = get_runtime()
    role = _assignable_role(ctx, body.role_id)
    target = _target_user(ctx, body.user_id)
    if not runtime.permissions.revoke_role(target.id, role.id, ctx.company_id):
        raise NotFoundError("Role assignment not found")
    return Envelope(status="ok", data={"message": "Role revoked"})


@router.get("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def get_role(role_id: str, ctx: AuthContext = Depends(require_permission("role:read"))):
    summary = get_runtime().roles.get_company_role(role_id, ctx.require_company())
    return Envelope(status="ok", data=_role_response(summary.role, summary.user_count))


@router.patch("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def update_role(
    role_id: str,
    body: RoleUpdateRequest,
    ctx: AuthContext = Depends(require_permission("role:update")),
):
    role = get_runtime().roles.update_company_role(
        role_id,
        ctx.require_company(),
        expected_version=body.version,
        changes=body.changes(),
        updated_by=ctx.user.id,
    )
    return Envelope(status="ok", data=_role_response(role))


@router.delete("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def delete_role(
    role_id: str,
    force: bool = Query(False),
    ctx: AuthContext = Depends(require_permission("role:delete")),
):
    removed = get_runtime().roles.delete_company_role(
        role_id, ctx.require_company(), force=force, deleted_by=ctx.user.id
    )
    return Envelope(status="ok", data={"message": "Role deleted", "removed_assignments": removed})


@router.post("/roles/{role_id}/clone", response_model=Envelope, status_code=201, tags=["roles"])
async def clone_role(
    role_id: str,
    body: RoleCloneRequest,
    ctx: AuthContext = Depends(require_all("role:read", "role:create")),
):
    role = get_runtime().roles.clone_company_role(
        role_id,
        ctx.require_company(),
        name=body.name,
        display_name=body.display_name,
        description=body.description,
        created_by=ctx.user.id,
    )
    return Envelope(status="ok", data={"role": _role_response(role, 0), "cloned_from": role_id})


# -- platform roles ---------------------------------------------------


@router.get("/platform/roles", response_model=Envelope, tags=["platform"])
async def list_platform_roles(ctx: AuthContext = Depends(require_platform_admin())):
    summaries = get_runtime().roles.list_platform_roles()
    return Envelope(
        status="ok",
        data=RoleListResponse(items=[_role_response(s.role, s.user_count) for s in summaries]),
    )


@router.post("/platform/roles", response_model=Envelope, status_code=201, tags=["platform"])
async def create_platform_role(
    body: PlatformRoleCreateRequest, ctx: AuthContext = Depends(require_platform_admin())
):
    role = get_runtime().roles.create_platform_role(
        name=body.name,
        display_name=body.display_name,
        permissions=body.permissions,
        company_permissions=body.company_permissions,
        description=body.description,
    )
    return Envelope(status="ok", data=_role_response(role, 0))


@router.get("/platform/roles/{role_id}", response_model=Envelope, tags=["platform"])
async def get_platform_role(role_id: str, ctx: AuthContext = Depends(require_platform_admin())):
    summary = get_runtime().roles.get_platform_role(role_id)
    return Envelope(status="ok", data=_role_response(summary.role, summary.user_count))


@router.patch("/platform/roles/{role_id}", response_model=Envelope, tags=["platform"])
async def update_platform_role(
    role_id: str,
    body: PlatformRoleUpdateRequest,
    ctx: AuthContext = Depends(require_platform_admin()),
):
    role = get_runtime().roles.update_platform_role(
        role_id, expected_version=body.version, changes=body.changes()
    )
    return Envelope(status="ok", data=_role_response(role))


@router.delete("/platform/roles/{role_id}", response_model=Envelope, tags=["platform"])
async def delete_platform_role(role_id: str, ctx: AuthContext = Depends(require_platform_admin())):
    get_runtime().roles.delete_platform_role(role_id)
    return Envelope(status="ok", data={"message": "Platform role deleted"})


# -- admin ------------------------------------------------------------


@router.post("/admin/users/{user_id}/unlock", response_model=Envelope, tags=["admin"])
async def unlock_user(
    user_id: str,
    ctx: AuthContext = Depends(require_any("user:update", "platform:manage_internal_users")),
):
    runtime = get_runtime()
    target = _target_user(ctx, user_id)
    if target.is_internal and not runtime.permissions.has_permission(
        ctx.user, ctx.company_id, "platform:manage_internal_users"
    ):
        raise _deny(["platform:manage_internal_users"])
    user = runtime.auth.unlock_user(target.id, unlocked_by=ctx.user.id, client=ctx.client)
    return Envelope(
        status="ok",
        data=UnlockResponse(
            user_id=user.id,
            failed_login_attempts=user.failed_login_attempts,
            locked_until=user.locked_until,
        ),
    )
