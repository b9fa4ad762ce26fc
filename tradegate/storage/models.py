from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class UserType(str, Enum):
    """Company users belong to a customer company; internal users operate the platform."""

    COMPANY = "company"
    INTERNAL = "internal"


class SessionSource(str, Enum):
    WEB = "web"
    MOBILE = "mobile"
    API = "api"


class LoginEventType(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"
    SESSION_REVOKED = "SESSION_REVOKED"
    LOGOUT = "LOGOUT"
    MFA_ENABLED = "MFA_ENABLED"
    MFA_DISABLED = "MFA_DISABLED"
    MFA_VERIFIED = "MFA_VERIFIED"
    MFA_BACKUP_CODE_USED = "MFA_BACKUP_CODE_USED"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_RESET_COMPLETED = "PASSWORD_RESET_COMPLETED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"


@dataclass
class PasswordPolicy:
    min_length: int = 8
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_special_chars: bool = False
    history_count: int = 3
    max_age_days: Optional[int] = None


@dataclass
class Company:
    id: str
    name: str
    mfa_required: bool = False
    max_sessions_per_user: Optional[int] = None
    password_policy: PasswordPolicy = field(default_factory=PasswordPolicy)
    is_internal: bool = False
    is_active: bool = True
    version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    id: str
    email: str
    user_type: UserType = UserType.COMPANY
    company_id: Optional[str] = None
    name_first: Optional[str] = None
    name_last: Optional[str] = None
    is_active: bool = True
    needs_reset_password: bool = False
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_failed_login_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    mfa_enabled: bool = False
    max_sessions: Optional[int] = None
    force_logout_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_internal(self) -> bool:
        return self.user_type == UserType.INTERNAL

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if not self.locked_until:
            return False
        return self.locked_until > (now or utcnow())


@dataclass
class UserCompany:
    user_id: str
    company_id: str
    is_active: bool = True
    last_accessed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    sid: str
    user_id: str
    source: SessionSource
    created_at: datetime
    expires_at: datetime
    absolute_expires_at: datetime
    last_activity_at: Optional[datetime] = None
    mfa_verified: bool = False
    remember_me: bool = False
    active_company_id: Optional[str] = None
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        current = now or utcnow()
        return self.expires_at <= current or self.absolute_expires_at <= current


# Role scope is a tagged variant: every role carries exactly one of these.


@dataclass(frozen=True)
class SystemScope:
    """Built-in role shared by every company; immutable through the API."""

    kind: str = field(default="system", init=False)

    def applies_to(self, *, is_internal: bool, company_id: Optional[str]) -> bool:
        return True


@dataclass(frozen=True)
class CompanyScope:
    """Role defined by and visible to a single company."""

    company_id: str
    kind: str = field(default="company", init=False)

    def applies_to(self, *, is_internal: bool, company_id: Optional[str]) -> bool:
        return company_id is not None and company_id == self.company_id


@dataclass(frozen=True)
class PlatformScope:
    """Role for internal platform operators.

    ``company_permissions`` are granted inside whichever company the
    operator has switched into.
    """

    company_permissions: Tuple[str, ...] = ()
    kind: str = field(default="platform", init=False)

    def applies_to(self, *, is_internal: bool, company_id: Optional[str]) -> bool:
        return is_internal


RoleScope = Union[SystemScope, CompanyScope, PlatformScope]


def scope_to_dict(scope: RoleScope) -> dict:
    if isinstance(scope, CompanyScope):
        return {"kind": scope.kind, "company_id": scope.company_id}
    if isinstance(scope, PlatformScope):
        return {"kind": scope.kind, "company_permissions": list(scope.company_permissions)}
    return {"kind": scope.kind}


def scope_from_dict(data: dict) -> RoleScope:
    kind = data.get("kind")
    if kind == "company":
        return CompanyScope(company_id=data["company_id"])
    if kind == "platform":
        return PlatformScope(company_permissions=tuple(data.get("company_permissions") or ()))
    if kind == "system":
        return SystemScope()
    raise ValueError(f"unknown role scope kind: {kind!r}")


@dataclass
class Role:
    id: str
    name: str
    display_name: str
    permissions: List[str]
    scope: RoleScope = field(default_factory=SystemScope)
    description: Optional[str] = None
    is_default: bool = False
    version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def kind(self) -> str:
        return self.scope.kind

    @property
    def company_id(self) -> Optional[str]:
        return self.scope.company_id if isinstance(self.scope, CompanyScope) else None


@dataclass
class UserRole:
    id: str
    user_id: str
    role_id: str
    company_id: Optional[str] = None
    assigned_at: datetime = field(default_factory=utcnow)
    assigned_by: Optional[str] = None


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class PasswordHistoryEntry:
    user_id: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PasswordResetToken:
    token_hash: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None


@dataclass
class RecoveryCode:
    id: str
    user_id: str
    code_hash: str
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None


@dataclass
class TrustedDevice:
    id: str
    user_id: str
    token_hash: str
    name: str
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None


@dataclass
class LoginEvent:
    id: str
    event_type: LoginEventType
    user_id: Optional[str] = None
    email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    source: Optional[SessionSource] = None
    metadata: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class LoginAttempt:
    id: str
    email: str
    success: bool
    user_id: Optional[str] = None
    failure_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    source: Optional[SessionSource] = None
    created_at: datetime = field(default_factory=utcnow)
