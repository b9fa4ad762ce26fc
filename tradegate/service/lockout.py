"""Escalating account lockout after repeated password failures.

Failures are counted on the user row. Reaching a threshold locks the account
for that threshold's duration; later failures past a threshold re-lock it from
the time of that failure. A successful login, a completed password reset or
an admin unlock clears the counter.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from tradegate.config import LockoutThreshold, Settings
from tradegate.logging import get_logger
from tradegate.service.events import ClientInfo, LoginEventRecorder
from tradegate.storage.models import LoginEventType, User, utcnow

logger = get_logger(__name__)


class LockoutState(str, Enum):
    UNLOCKED = "unlocked"
    COUNTING = "counting"
    LOCKED_SHORT = "locked_short"
    LOCKED_MEDIUM = "locked_medium"
    LOCKED_LONG = "locked_long"


@dataclass
class FailureOutcome:
    attempts: int
    locked_until: Optional[datetime] = None
    lockout_minutes: Optional[int] = None

    @property
    def locked(self) -> bool:
        return self.locked_until is not None


class LockoutPolicy:
    def __init__(self, store, events: LoginEventRecorder, settings: Settings) -> None:
        self.store = store
        self.events = events
        self.settings = settings

    def threshold_for(self, attempts: int) -> Optional[LockoutThreshold]:
        """Highest threshold ``attempts`` has reached, or ``None``."""
        for threshold in self.settings.lockout_ladder:
            if attempts >= threshold.attempts:
                return threshold
        return None

    def record_failure(
        self, user: User, *, now: Optional[datetime] = None, client: Optional[ClientInfo] = None
    ) -> FailureOutcome:
        now = now or utcnow()
        attempts = self.store.increment_failed_logins(user.id, now)
        outcome = FailureOutcome(attempts=attempts)

        threshold = self.threshold_for(attempts)
        if threshold:
            outcome.locked_until = now + timedelta(minutes=threshold.minutes)
            outcome.lockout_minutes = threshold.minutes
            self.store.set_user_fields(user.id, locked_until=outcome.locked_until)
            self.events.record(
                LoginEventType.ACCOUNT_LOCKED,
                client=client,
                user_id=user.id,
                email=user.email,
                metadata={"attempts": attempts, "lockout_minutes": threshold.minutes},
            )
            logger.warning(
                "account_locked",
                user_id=user.id,
                attempts=attempts,
                lockout_minutes=threshold.minutes,
            )

        self.events.record(
            LoginEventType.LOGIN_FAILED,
            client=client,
            user_id=user.id,
            email=user.email,
            metadata={"reason": "invalid_password", "attempts": attempts},
        )
        return outcome

    def reset(self, user: User, *, now: Optional[datetime] = None, login: bool = True) -> None:
        """Clear lockout bookkeeping; ``login`` also stamps ``last_login_at``."""
        fields = {
            "failed_login_attempts": 0,
            "locked_until": None,
            "last_failed_login_at": None,
        }
        if login:
            fields["last_login_at"] = now or utcnow()
        self.store.set_user_fields(user.id, **fields)

    def unlock(
        self, user: User, *, unlocked_by: Optional[str] = None, client: Optional[ClientInfo] = None
    ) -> None:
        self.reset(user, login=False)
        self.events.record(
            LoginEventType.ACCOUNT_UNLOCKED,
            client=client,
            user_id=user.id,
            email=user.email,
            metadata={"unlocked_by": unlocked_by},
        )
        logger.info("account_unlocked", user_id=user.id, unlocked_by=unlocked_by)

    def state_for(self, user: User, now: Optional[datetime] = None) -> LockoutState:
        now = now or utcnow()
        if user.is_locked(now):
            threshold = self.threshold_for(user.failed_login_attempts)
            s = self.settings
            if threshold is None or threshold.attempts < s.lockout_second_attempts:
                return LockoutState.LOCKED_SHORT
            if threshold.attempts < s.lockout_long_attempts:
                return LockoutState.LOCKED_MEDIUM
            return LockoutState.LOCKED_LONG
        if user.failed_login_attempts > 0:
            return LockoutState.COUNTING
        return LockoutState.UNLOCKED
