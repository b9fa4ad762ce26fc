"""Second-factor gate: emailed one-time codes, recovery codes and trusted devices.

A login that needs a second factor produces a session with
``mfa_verified=False``. The session is upgraded by a matching emailed code,
an unused recovery code, or (at login time) a valid device-trust cookie.
"""

from __future__ import annotations

import hmac
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Protocol

from tradegate.config import Settings
from tradegate.logging import get_logger
from tradegate.service.email import EmailService
from tradegate.service.errors import (
    AuthenticationError,
    BadRequestError,
    MfaRequiredError,
    ServerError,
)
from tradegate.service.events import ClientInfo, LoginEventRecorder
from tradegate.service.passwords import PasswordService
from tradegate.service.trusted_device import TrustedDeviceService
from tradegate.storage.models import (
    Company,
    LoginEventType,
    Session,
    TrustedDevice,
    User,
    utcnow,
)

logger = get_logger(__name__)

RECOVERY_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
RECOVERY_CODE_GROUP = 4


class MfaErrorCode(str, Enum):
    CODE_EXPIRED = "mfa_code_expired"
    CODE_INVALID = "mfa_code_invalid"
    MFA_NOT_ENABLED = "mfa_not_enabled"
    MFA_ALREADY_ENABLED = "mfa_already_enabled"
    EMAIL_NOT_CONFIGURED = "email_not_configured"
    RECOVERY_CODE_INVALID = "recovery_code_invalid"
    NO_PENDING_MFA = "no_pending_mfa"


@dataclass
class PendingCode:
    code: str
    expires_at: datetime
    attempts: int = 0


class PendingMfaStore(Protocol):
    """Where outstanding emailed codes live between send and verify."""

    async def put(self, user_id: str, code: str, expires_at: datetime) -> None: ...

    async def get(self, user_id: str) -> Optional[PendingCode]: ...

    async def increment_attempts(self, user_id: str) -> Optional[int]: ...

    async def delete(self, user_id: str) -> None: ...


class MemoryPendingMfaStore:
    """Single-process pending codes."""

    def __init__(self) -> None:
        self._codes: Dict[str, PendingCode] = {}
        self._lock = threading.Lock()

    def _purge_expired(self, now: datetime) -> None:
        for user_id in [k for k, v in self._codes.items() if v.expires_at <= now]:
            self._codes.pop(user_id, None)

    async def put(self, user_id: str, code: str, expires_at: datetime) -> None:
        with self._lock:
            self._purge_expired(utcnow())
            self._codes[user_id] = PendingCode(code=code, expires_at=expires_at)

    async def get(self, user_id: str) -> Optional[PendingCode]:
        with self._lock:
            pending = self._codes.get(user_id)
            if not pending:
                return None
            return PendingCode(pending.code, pending.expires_at, pending.attempts)

    async def increment_attempts(self, user_id: str) -> Optional[int]:
        with self._lock:
            pending = self._codes.get(user_id)
            if not pending:
                return None
            pending.attempts += 1
            return pending.attempts

    async def delete(self, user_id: str) -> None:
        with self._lock:
            self._codes.pop(user_id, None)


class RedisPendingMfaStore:
    """Pending codes shared across instances through Redis hashes with a TTL."""

    def __init__(self, cache) -> None:
        self.cache = cache

    async def put(self, user_id: str, code: str, expires_at: datetime) -> None:
        await self.cache.set_pending_mfa(user_id, code, expires_at)

    async def get(self, user_id: str) -> Optional[PendingCode]:
        data = await self.cache.get_pending_mfa(user_id)
        if not data or "code" not in data:
            return None
        return PendingCode(
            code=data["code"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
            attempts=int(data.get("attempts") or 0),
        )

    async def increment_attempts(self, user_id: str) -> Optional[int]:
        return await self.cache.increment_pending_mfa_attempts(user_id)

    async def delete(self, user_id: str) -> None:
        await self.cache.delete_pending_mfa(user_id)


def normalize_recovery_code(code: str) -> str:
    return code.strip().upper().replace("-", "").replace(" ", "")


def generate_recovery_code() -> str:
    raw = "".join(secrets.choice(RECOVERY_CODE_ALPHABET) for _ in range(RECOVERY_CODE_GROUP * 2))
    return f"{raw[:RECOVERY_CODE_GROUP]}-{raw[RECOVERY_CODE_GROUP:]}"


@dataclass
class MfaVerification:
    method: str
    device: Optional[TrustedDevice] = None
    # plaintext device-trust token, set only when a device was just trusted
    device_token: Optional[str] = None
    remaining_recovery_codes: Optional[int] = None


@dataclass
class MfaStatus:
    enabled: bool
    required_by_company: bool
    remaining_recovery_codes: int
    trusted_devices: int


class MfaService:
    def __init__(
        self,
        store,
        settings: Settings,
        events: LoginEventRecorder,
        pending: PendingMfaStore,
        email: EmailService,
        passwords: PasswordService,
        devices: TrustedDeviceService,
    ) -> None:
        self.store = store
        self.settings = settings
        self.events = events
        self.pending = pending
        self.email = email
        self.passwords = passwords
        self.devices = devices

    def _now(self) -> datetime:
        return utcnow()

    @staticmethod
    def mfa_applies(user: User, company: Optional[Company]) -> bool:
        return bool(user.mfa_enabled or (company and company.mfa_required))

    def _generate_code(self) -> str:
        length = self.settings.mfa_code_length
        return str(secrets.randbelow(10**length)).zfill(length)

    # -- emailed codes -------------------------------------------------

    async def send_code(self, user: User) -> Optional[str]:
        """Issue a fresh code, replacing any pending one.

        Returns the code only in test mode.
        """
        if not self.settings.test_mode and not self.email.is_configured:
            logger.error("mfa_email_not_configured", user_id=user.id)
            raise ServerError(
                "Email delivery is not configured",
                detail={"mfa_error": MfaErrorCode.EMAIL_NOT_CONFIGURED.value},
            )
        code = self._generate_code()
        expiry = self.settings.mfa_code_expiry_minutes
        await self.pending.put(user.id, code, self._now() + timedelta(minutes=expiry))
        if self.settings.test_mode:
            logger.info("mfa_code_issued_test_mode", user_id=user.id)
            return code
        if not self.email.send_mfa_code(user.email, code, expiry):
            await self.pending.delete(user.id)
            raise ServerError("Failed to send verification code")
        logger.info("mfa_code_sent", user_id=user.id)
        return None

    async def verify_code(
        self,
        user: User,
        session: Session,
        code: str,
        *,
        trust_device: bool = False,
        client: Optional[ClientInfo] = None,
    ) -> MfaVerification:
        pending = await self.pending.get(user.id)
        if not pending:
            raise BadRequestError(
                "No pending MFA verification",
                detail={"mfa_error": MfaErrorCode.NO_PENDING_MFA.value},
            )
        if pending.expires_at <= self._now():
            await self.pending.delete(user.id)
            raise AuthenticationError(
                "MFA code has expired", detail={"mfa_error": MfaErrorCode.CODE_EXPIRED.value}
            )

        attempts = await self.pending.increment_attempts(user.id)
        if attempts is None:
            raise BadRequestError(
                "No pending MFA verification",
                detail={"mfa_error": MfaErrorCode.NO_PENDING_MFA.value},
            )
        if attempts > self.settings.mfa_max_attempts:
            await self.pending.delete(user.id)
            logger.warning("mfa_code_invalidated", user_id=user.id, attempts=attempts)
            raise AuthenticationError(
                "Too many failed attempts",
                detail={"mfa_error": MfaErrorCode.CODE_INVALID.value},
            )

        if not hmac.compare_digest(code.strip().encode(), pending.code.encode()):
            logger.info("mfa_code_mismatch", user_id=user.id, attempts=attempts)
            raise AuthenticationError(
                "Invalid MFA code", detail={"mfa_error": MfaErrorCode.CODE_INVALID.value}
            )

        await self.pending.delete(user.id)
        result = self._mark_verified(user, session, "email_code")
        self.events.record(
            LoginEventType.MFA_VERIFIED,
            client=client,
            user_id=user.id,
            email=user.email,
            metadata={"method": "email_code"},
        )
        if trust_device:
            client = client or ClientInfo()
            token, device = self.devices.trust(
                user.id, ip_address=client.ip_address, user_agent=client.user_agent
            )
            result.device = device
            result.device_token = token
        return result

    def _mark_verified(self, user: User, session: Session, method: str) -> MfaVerification:
        self.store.mark_session_verified(session.sid)
        session.mfa_verified = True
        logger.info("mfa_verified", user_id=user.id, sid=session.sid, method=method)
        return MfaVerification(method=method)

    # -- recovery codes ------------------------------------------------

    def generate_recovery_codes(self, user: User) -> List[str]:
        """Replace the user's recovery codes; plaintext is returned exactly once."""
        codes = [generate_recovery_code() for _ in range(self.settings.mfa_recovery_code_count)]
        hashes = [self.passwords.hash_password(normalize_recovery_code(c))[0] for c in codes]
        self.store.replace_recovery_codes(user.id, hashes)
        logger.info("recovery_codes_generated", user_id=user.id, count=len(codes))
        return codes

    def remaining_recovery_codes(self, user_id: str) -> int:
        return sum(1 for c in self.store.list_recovery_codes(user_id) if c.used_at is None)

    async def verify_recovery_code(
        self,
        user: User,
        session: Session,
        code: str,
        *,
        client: Optional[ClientInfo] = None,
    ) -> MfaVerification:
        normalized = normalize_recovery_code(code)
        now = self._now()
        matched = None
        if normalized:
            for candidate in self.store.list_recovery_codes(user.id):
                if candidate.used_at is None and self.passwords.verify_hash(
                    candidate.code_hash, normalized
                ):
                    matched = candidate
                    break
        # the conditional update decides races between two requests using the same code
        if not matched or not self.store.mark_recovery_code_used(matched.id, now):
            logger.warning("recovery_code_rejected", user_id=user.id)
            raise AuthenticationError(
                "Invalid recovery code",
                detail={"mfa_error": MfaErrorCode.RECOVERY_CODE_INVALID.value},
            )

        await self.pending.delete(user.id)
        result = self._mark_verified(user, session, "recovery_code")
        remaining = self.remaining_recovery_codes(user.id)
        result.remaining_recovery_codes = remaining
        self.events.record(
            LoginEventType.MFA_BACKUP_CODE_USED,
            client=client,
            user_id=user.id,
            email=user.email,
            metadata={"remaining_codes": remaining},
        )
        return result

    # -- management ----------------------------------------------------

    def enable(self, user: User, *, client: Optional[ClientInfo] = None) -> List[str]:
        if user.mfa_enabled:
            raise BadRequestError(
                "MFA is already enabled",
                detail={"mfa_error": MfaErrorCode.MFA_ALREADY_ENABLED.value},
            )
        self.store.set_user_fields(user.id, mfa_enabled=True)
        codes = self.generate_recovery_codes(user)
        self.events.record(
            LoginEventType.MFA_ENABLED, client=client, user_id=user.id, email=user.email
        )
        if not self.settings.test_mode:
            self.email.send_mfa_enabled(user.email)
        logger.info("mfa_enabled", user_id=user.id)
        return codes

    def disable(self, user: User, *, client: Optional[ClientInfo] = None) -> None:
        if not user.mfa_enabled:
            raise BadRequestError(
                "MFA is not enabled", detail={"mfa_error": MfaErrorCode.MFA_NOT_ENABLED.value}
            )
        company = self.store.get_company(user.company_id) if user.company_id else None
        if company and company.mfa_required:
            raise BadRequestError("Your company requires MFA")
        self.store.set_user_fields(user.id, mfa_enabled=False)
        self.store.delete_recovery_codes(user.id)
        self.devices.revoke_all(user.id)
        self.events.record(
            LoginEventType.MFA_DISABLED, client=client, user_id=user.id, email=user.email
        )
        logger.info("mfa_disabled", user_id=user.id)

    def regenerate_recovery_codes(self, user: User) -> List[str]:
        if not user.mfa_enabled:
            raise BadRequestError(
                "MFA is not enabled", detail={"mfa_error": MfaErrorCode.MFA_NOT_ENABLED.value}
            )
        return self.generate_recovery_codes(user)

    def status(self, user: User, company: Optional[Company]) -> MfaStatus:
        return MfaStatus(
            enabled=user.mfa_enabled,
            required_by_company=bool(company and company.mfa_required),
            remaining_recovery_codes=self.remaining_recovery_codes(user.id),
            trusted_devices=len(self.devices.list_for_user(user.id)),
        )

    def require_verified(self, session: Session, user: User, company: Optional[Company]) -> None:
        if self.mfa_applies(user, company) and not session.mfa_verified:
            raise MfaRequiredError()
