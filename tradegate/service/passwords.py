from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tradegate.config import Settings
from tradegate.logging import get_logger
from tradegate.service.email import EmailService
from tradegate.service.errors import AuthenticationError, BadRequestError, ValidationError
from tradegate.service.events import ClientInfo, LoginEventRecorder
from tradegate.service.lockout import LockoutPolicy
from tradegate.storage.models import (
    LoginEventType,
    PasswordPolicy,
    PasswordResetToken,
    User,
    utcnow,
)

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
_SPECIAL = re.compile(r"[^A-Za-z0-9]")


def keyed_token_hash(secret: str, token: str) -> str:
    """HMAC-SHA256 of an opaque token; only this digest is ever stored."""
    return hmac.new(secret.encode(), token.encode(), hashlib.sha256).hexdigest()


def policy_violations(password: str, policy: PasswordPolicy) -> List[str]:
    problems = []
    if len(password) < policy.min_length:
        problems.append(f"Password must be at least {policy.min_length} characters")
    if policy.require_uppercase and not any(c.isupper() for c in password):
        problems.append("Password must contain an uppercase letter")
    if policy.require_lowercase and not any(c.islower() for c in password):
        problems.append("Password must contain a lowercase letter")
    if policy.require_numbers and not any(c.isdigit() for c in password):
        problems.append("Password must contain a number")
    if policy.require_special_chars and not _SPECIAL.search(password):
        problems.append("Password must contain a special character")
    return problems


@dataclass
class ResetRequestResult:
    accepted: bool = True
    # only populated in test mode
    token: Optional[str] = None


class PasswordService:
    """Password hashing, policy enforcement, history and the reset flow."""

    def __init__(
        self,
        store,
        settings: Settings,
        events: LoginEventRecorder,
        lockout: LockoutPolicy,
        email: EmailService,
    ) -> None:
        self.store = store
        self.settings = settings
        self.events = events
        self.lockout = lockout
        self.email = email
        self._hasher = PasswordHasher(type=Type.ID)

    def _now(self) -> datetime:
        return utcnow()

    # -- hashing -------------------------------------------------------

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), PASSWORD_ALGO

    def verify_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        return self.verify_hash(stored_hash, password)

    # -- policy --------------------------------------------------------

    def policy_for(self, user: User) -> PasswordPolicy:
        company = self.store.get_company(user.company_id) if user.company_id else None
        return company.password_policy if company else PasswordPolicy()

    def is_expired(self, user: User, *, now: Optional[datetime] = None) -> bool:
        if user.needs_reset_password:
            return True
        policy = self.policy_for(user)
        if not policy.max_age_days or not user.password_changed_at:
            return False
        now = now or self._now()
        return user.password_changed_at + timedelta(days=policy.max_age_days) <= now

    def validate_new_password(self, user: User, password: str) -> None:
        policy = self.policy_for(user)
        problems = policy_violations(password, policy)
        if problems:
            raise ValidationError(problems[0], detail={"errors": problems})
        if policy.history_count > 0:
            for entry in self.store.list_password_history(user.id, policy.history_count):
                if self.verify_hash(entry.password_hash, password):
                    raise ValidationError(
                        "Password was used recently",
                        detail={"history_count": policy.history_count},
                    )

    def set_password(self, user: User, password: str, *, enforce_policy: bool = True) -> None:
        if enforce_policy:
            self.validate_new_password(user, password)
        digest, algo = self.hash_password(password)
        self.store.save_password(user.id, digest, algo)
        self.store.add_password_history(user.id, digest)
        self.store.set_user_fields(
            user.id, password_changed_at=self._now(), needs_reset_password=False
        )

    # -- reset flow ----------------------------------------------------

    async def request_reset(
        self, email: str, *, client: Optional[ClientInfo] = None
    ) -> ResetRequestResult:
        """Issue a reset token; unknown or inactive accounts get the same answer."""
        user = self.store.get_user_by_email(email)
        if not user or not user.is_active:
            logger.info("password_reset_unknown_account")
            return ResetRequestResult()

        token = secrets.token_urlsafe(32)
        now = self._now()
        ttl = self.settings.password_reset_ttl_minutes
        self.store.save_reset_token(
            PasswordResetToken(
                token_hash=keyed_token_hash(self.settings.token_secret, token),
                user_id=user.id,
                expires_at=now + timedelta(minutes=ttl),
                created_at=now,
            )
        )
        if not self.settings.test_mode:
            self.email.send_password_reset(user.email, token, ttl)
        self.events.record(
            LoginEventType.PASSWORD_RESET_REQUESTED,
            client=client,
            user_id=user.id,
            email=user.email,
        )
        logger.info("password_reset_requested", user_id=user.id)
        return ResetRequestResult(token=token if self.settings.test_mode else None)

    async def complete_reset(
        self, token: str, new_password: str, *, client: Optional[ClientInfo] = None
    ) -> User:
        now = self._now()
        token_hash = keyed_token_hash(self.settings.token_secret, token)
        record = self.store.get_reset_token(token_hash) if token else None
        if not record or record.used_at is not None or record.expires_at <= now:
            logger.warning("password_reset_invalid_token")
            raise BadRequestError("Reset link is invalid or has expired")
        user = self.store.get_user(record.user_id)
        if not user:
            raise BadRequestError("Reset link is invalid or has expired")

        # a policy failure leaves the link usable
        self.validate_new_password(user, new_password)
        if not self.store.consume_reset_token(token_hash, now):
            raise BadRequestError("Reset link is invalid or has expired")
        self.set_password(user, new_password, enforce_policy=False)
        self.lockout.reset(user, login=False)
        self.store.set_user_fields(user.id, force_logout_at=now)
        revoked = self.store.delete_user_sessions(user.id)
        self.events.record(
            LoginEventType.PASSWORD_RESET_COMPLETED,
            client=client,
            user_id=user.id,
            email=user.email,
            metadata={"sessions_revoked": revoked},
        )
        logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        return self.store.get_user(user.id) or user

    async def change_password(
        self,
        user: User,
        current_password: str,
        new_password: str,
        *,
        keep_sid: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> int:
        """Change a password; every other session of the user is revoked."""
        if not self.verify_password(user.id, current_password):
            raise AuthenticationError("Current password is incorrect")
        if current_password == new_password:
            raise ValidationError("New password must differ from the current password")
        self.set_password(user, new_password)
        revoked = self.store.delete_user_sessions(user.id, except_sid=keep_sid)
        self.events.record(
            LoginEventType.PASSWORD_CHANGED,
            client=client,
            user_id=user.id,
            email=user.email,
            metadata={"sessions_revoked": revoked},
        )
        logger.info("password_changed", user_id=user.id, sessions_revoked=revoked)
        return revoked
