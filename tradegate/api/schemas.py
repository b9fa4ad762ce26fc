from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from tradegate.logging import get_correlation_id

MAX_PERMISSIONS = 200

_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "mfa_required",
        "not_found",
        "rate_limited",
        "validation_error",
        "conflict",
        "version_conflict",
        "server_error",
    }
)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


# -- auth -------------------------------------------------------------


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=256)
    source: str = Field(default="web", max_length=16)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("source")
    @classmethod
    def _normalize_source(cls, value: str) -> str:
        normalized = (value or "web").lower()
        if normalized not in {"web", "mobile", "api"}:
            raise ValueError("source must be 'web', 'mobile' or 'api'")
        return normalized


class CompanySummary(BaseModel):
    id: str
    name: str
    mfa_required: bool = False


class UserResponse(BaseModel):
    id: str
    email: str
    name_first: Optional[str] = None
    name_last: Optional[str] = None
    user_type: str
    mfa_enabled: bool = False
    is_active: bool = True


class LoginResponse(BaseModel):
    user: UserResponse
    session_id: str
    session_expires_at: datetime
    requires_mfa: bool = False
    active_company: Optional[CompanySummary] = None
    can_switch_companies: bool = False
    mfa_code_expires_in: Optional[int] = None
    # populated only in test mode
    mfa_code: Optional[str] = None


class MeResponse(BaseModel):
    user: Optional[UserResponse] = None
    company: Optional[CompanySummary] = None
    can_switch_companies: bool = False
    requires_mfa: bool = False


class SessionResponse(BaseModel):
    sid: str
    source: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class SwitchCompanyRequest(BaseModel):
    company_id: str = Field(..., min_length=1, max_length=64)


# -- mfa --------------------------------------------------------------


class MfaVerifyRequest(BaseModel):
    code: str = Field(..., min_length=4, max_length=10)
    trust_device: bool = False

    @field_validator("code")
    @classmethod
    def _digits_only(cls, value: str) -> str:
        value = value.strip()
        if not value.isdigit():
            raise ValueError("code must contain only digits")
        return value


class MfaRecoveryRequest(BaseModel):
    code: str = Field(..., min_length=8, max_length=16)


class MfaSendResponse(BaseModel):
    expires_in: int
    code: Optional[str] = None


class MfaVerifyResponse(BaseModel):
    verified: bool = True
    method: str
    remaining_recovery_codes: Optional[int] = None
    trusted_device_id: Optional[str] = None


class MfaStatusResponse(BaseModel):
    enabled: bool
    required_by_company: bool
    remaining_recovery_codes: int
    trusted_devices: int


class RecoveryCodesResponse(BaseModel):
    recovery_codes: List[str]


class TrustedDeviceResponse(BaseModel):
    id: str
    name: str
    ip_address: Optional[str] = None
    created_at: datetime
    last_used_at: Optional[datetime] = None
    expires_at: datetime


class TrustedDeviceListResponse(BaseModel):
    items: List[TrustedDeviceResponse]


# -- passwords --------------------------------------------------------


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., min_length=1, max_length=256)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., min_length=1, max_length=256)


# -- roles ------------------------------------------------------------


class RoleResponse(BaseModel):
    id: str
    name: str
    display_name: str
    description: Optional[str] = None
    type: str
    permissions: List[str]
    company_permissions: Optional[List[str]] = None
    is_default: bool = False
    version: int
    user_count: Optional[int] = None
    created_at: datetime
    updated_at: datetime


class RoleListResponse(BaseModel):
    items: List[RoleResponse]


def _check_permission_list(value: Optional[List[str]]) -> Optional[List[str]]:
    if value is None:
        return None
    if len(value) > MAX_PERMISSIONS:
        raise ValueError(f"at most {MAX_PERMISSIONS} permissions")
    return [p.strip() for p in value if p and p.strip()]


class RoleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    display_name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    permissions: List[str] = Field(..., min_length=1)
    is_default: bool = False

    @field_validator("permissions")
    @classmethod
    def _clean_permissions(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return _check_permission_list(value)


class RoleCloneRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    display_name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)


class RoleUpdateRequest(BaseModel):
    version: int = Field(..., ge=1)
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    permissions: Optional[List[str]] = None
    is_default: Optional[bool] = None

    @field_validator("permissions")
    @classmethod
    def _clean_permissions(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return _check_permission_list(value)

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude={"version"})

    @model_validator(mode="after")
    def _require_change(self):
        if not self.changes():
            raise ValueError("no fields to update")
        return self


class RoleAssignRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    role_id: str = Field(..., min_length=1, max_length=64)


class UserRolesResponse(BaseModel):
    user_id: str
    roles: List[RoleResponse]
    permissions: List[str]


class PermissionInfo(BaseModel):
    name: str
    label: str
    category: str
    description: str


class PermissionCatalogResponse(BaseModel):
    permissions: List[PermissionInfo]
    by_category: Dict[str, List[str]]


class MyPermissionsResponse(BaseModel):
    roles: List[RoleResponse]
    permissions: List[str]
    company_id: Optional[str] = None


class PlatformRoleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    display_name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    permissions: List[str] = Field(..., min_length=1)
    company_permissions: List[str] = Field(default_factory=list)

    @field_validator("permissions", "company_permissions")
    @classmethod
    def _clean_permissions(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return _check_permission_list(value)


class PlatformRoleUpdateRequest(BaseModel):
    version: int = Field(..., ge=1)
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    permissions: Optional[List[str]] = None
    company_permissions: Optional[List[str]] = None

    @field_validator("permissions", "company_permissions")
    @classmethod
    def _clean_permissions(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return _check_permission_list(value)

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude={"version"})

    @model_validator(mode="after")
    def _require_change(self):
        if not self.changes():
            raise ValueError("no fields to update")
        return self


# -- admin ------------------------------------------------------------


class UnlockResponse(BaseModel):
    user_id: str
    failed_login_attempts: int
    locked_until: Optional[datetime] = None
