from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional, Protocol, Tuple

from tradegate.config import Settings
from tradegate.logging import get_logger, redact_email
from tradegate.service.errors import LoginErrorCode, LoginFailedError, NotFoundError
from tradegate.service.events import ClientInfo, LoginEventRecorder
from tradegate.service.lockout import LockoutPolicy
from tradegate.service.mfa import MfaService
from tradegate.service.passwords import PasswordService
from tradegate.service.sessions import SessionManager
from tradegate.service.trusted_device import TrustedDeviceService
from tradegate.storage.common import normalize_email
from tradegate.storage.models import (
    Company,
    LoginEventType,
    Session,
    SessionSource,
    User,
    UserCompany,
    UserType,
    utcnow,
)

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(self, email: str, **kwargs: Any) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_company(self, company_id: str) -> Optional[Company]: ...

    def list_memberships(self, user_id: str, *, active_only: bool = True) -> List[UserCompany]: ...

    def touch_membership(self, user_id: str, company_id: str, at: datetime) -> None: ...


@dataclass
class LoginRequest:
    email: str
    password: str
    source: SessionSource = SessionSource.WEB
    sid: Optional[str] = None
    remember_me: bool = False
    device_trust_token: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def client(self) -> ClientInfo:
        return ClientInfo(
            ip_address=self.ip_address, user_agent=self.user_agent, source=self.source
        )


@dataclass
class LoginResult:
    user: User
    session: Session
    company: Optional[Company] = None
    requires_mfa: bool = False
    can_switch_companies: bool = False
    memberships: List[UserCompany] = field(default_factory=list)
    trusted_device_id: Optional[str] = None


class AuthService:
    """Credential verification and the login orchestration around it."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        events: LoginEventRecorder,
        lockout: LockoutPolicy,
        passwords: PasswordService,
        sessions: SessionManager,
        mfa: MfaService,
        devices: TrustedDeviceService,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.events = events
        self.lockout = lockout
        self.passwords = passwords
        self.sessions = sessions
        self.mfa = mfa
        self.devices = devices

    def _now(self) -> datetime:
        return utcnow()

    def _fail(
        self,
        code: LoginErrorCode,
        email: str,
        client: ClientInfo,
        *,
        user: Optional[User] = None,
        reason: Optional[str] = None,
    ) -> LoginFailedError:
        self.events.record_attempt(
            email,
            success=False,
            client=client,
            user_id=user.id if user else None,
            failure_reason=reason or code.value,
        )
        logger.info(
            "login_failed",
            email=redact_email(email),
            code=code.value,
            reason=reason or code.value,
        )
        return LoginFailedError(code)

    def _active_company(self, user: User) -> Tuple[Optional[Company], List[UserCompany]]:
        """Pick the company a login lands in.

        Company users land in their most recently accessed active membership,
        skipping memberships whose company has been deactivated.
        """
        if user.is_internal:
            company = self.store.get_company(user.company_id) if user.company_id else None
            return company, []
        memberships = []
        for membership in self.store.list_memberships(user.id, active_only=True):
            company = self.store.get_company(membership.company_id)
            if company and company.is_active:
                memberships.append(membership)
        if not memberships:
            return None, []
        return self.store.get_company(memberships[0].company_id), memberships

    async def login(self, request: LoginRequest) -> LoginResult:
        email = normalize_email(request.email)
        client = request.client
        now = self._now()

        user = self.store.get_user_by_email(email)
        if not user:
            raise self._fail(
                LoginErrorCode.INVALID_CREDENTIALS, email, client, reason="user_not_found"
            )

        if user.is_locked(now):
            self.events.record(
                LoginEventType.LOGIN_FAILED,
                client=client,
                user_id=user.id,
                email=email,
                metadata={"reason": "account_locked", "locked_until": user.locked_until.isoformat()},
            )
            raise self._fail(LoginErrorCode.ACCOUNT_LOCKED, email, client, user=user)

        if not user.is_active:
            raise self._fail(LoginErrorCode.ACCOUNT_INACTIVE, email, client, user=user)

        if not self.passwords.verify_password(user.id, request.password):
            outcome = self.lockout.record_failure(user, now=now, client=client)
            raise self._fail(
                LoginErrorCode.INVALID_CREDENTIALS,
                email,
                client,
                user=user,
                reason="invalid_password" if not outcome.locked else "invalid_password_locked",
            )

        if self.passwords.is_expired(user, now=now):
            raise self._fail(LoginErrorCode.PASSWORD_EXPIRED, email, client, user=user)

        company, memberships = self._active_company(user)
        if not user.is_internal and company is None:
            raise self._fail(LoginErrorCode.NO_ACTIVE_COMPANIES, email, client, user=user)

        trusted = None
        requires_mfa = self.mfa.mfa_applies(user, company)
        if requires_mfa:
            trusted = self.devices.verify(user.id, request.device_trust_token, now=now)
            if trusted:
                requires_mfa = False
                logger.info("mfa_skipped_trusted_device", user_id=user.id, device_id=trusted.id)

        self.lockout.reset(user, now=now)
        if company and not user.is_internal:
            self.store.touch_membership(user.id, company.id, now)

        session = self.sessions.establish(
            user,
            sid=request.sid,
            source=request.source,
            remember_me=request.remember_me,
            mfa_verified=not requires_mfa,
            company=company,
            device_id=trusted.id if trusted else None,
            client=client,
            now=now,
        )

        self.events.record_attempt(email, success=True, client=client, user_id=user.id)
        self.events.record(
            LoginEventType.LOGIN_SUCCESS,
            client=client,
            user_id=user.id,
            email=email,
            metadata={
                "requires_mfa": requires_mfa,
                "company_id": company.id if company else None,
                "trusted_device": trusted is not None,
            },
        )
        logger.info(
            "login_succeeded",
            user_id=user.id,
            sid=session.sid,
            requires_mfa=requires_mfa,
            source=request.source.value,
        )
        return LoginResult(
            user=self.store.get_user(user.id) or user,
            session=session,
            company=company,
            requires_mfa=requires_mfa,
            can_switch_companies=len(memberships) > 1,
            memberships=memberships,
            trusted_device_id=trusted.id if trusted else None,
        )

    async def logout(self, session: Session, user: User, *, client: Optional[ClientInfo] = None) -> None:
        self.sessions.logout(session, user, client=client)

    def current_company(self, session: Session, user: User) -> Optional[Company]:
        company_id = session.active_company_id or (user.company_id if user.is_internal else None)
        return self.store.get_company(company_id) if company_id else None

    def unlock_user(
        self, user_id: str, *, unlocked_by: Optional[str] = None, client: Optional[ClientInfo] = None
    ) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        self.lockout.unlock(user, unlocked_by=unlocked_by, client=client)
        return self.store.get_user(user_id) or user

    def admin_create_user(
        self,
        *,
        email: str,
        password: Optional[str] = None,
        user_type: UserType = UserType.COMPANY,
        company_id: Optional[str] = None,
        name_first: Optional[str] = None,
        name_last: Optional[str] = None,
        needs_reset_password: bool = False,
    ) -> Tuple[User, str]:
        """Create a user with a password; a random one is generated when omitted."""
        pwd = password or secrets.token_urlsafe(16)
        if password is not None:
            # check the policy before the row exists; a new user has no history
            self.passwords.validate_new_password(
                User(id="", email=email, user_type=user_type, company_id=company_id), password
            )
        user = self.store.create_user(
            email,
            user_type=user_type,
            company_id=company_id,
            name_first=name_first,
            name_last=name_last,
            needs_reset_password=needs_reset_password,
        )
        self.passwords.set_password(user, pwd, enforce_policy=False)
        logger.info("user_created", user_id=user.id, user_type=user.user_type.value)
        return self.store.get_user(user.id) or user, pwd
