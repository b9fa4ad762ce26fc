from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from tradegate.logging import get_logger
from tradegate.storage.models import (
    LoginAttempt,
    LoginEvent,
    LoginEventType,
    SessionSource,
    new_id,
    utcnow,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class ClientInfo:
    """Where a request came from, attached to every audit record."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    source: SessionSource = SessionSource.WEB


class LoginEventRecorder:
    """Writes the login audit trail.

    Audit writes never abort the request that triggered them; a failed write
    is logged and the caller carries on.
    """

    def __init__(self, store) -> None:
        self.store = store

    def record(
        self,
        event_type: LoginEventType,
        *,
        client: Optional[ClientInfo] = None,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LoginEvent:
        client = client or ClientInfo()
        event = LoginEvent(
            id=new_id(),
            event_type=event_type,
            user_id=user_id,
            email=email,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            source=client.source,
            metadata=metadata,
            created_at=utcnow(),
        )
        try:
            self.store.record_login_event(event)
        except Exception as exc:
            logger.error("login_event_write_failed", event_type=event_type.value, error=str(exc))
        return event

    def record_attempt(
        self,
        email: str,
        *,
        success: bool,
        client: Optional[ClientInfo] = None,
        user_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> LoginAttempt:
        client = client or ClientInfo()
        attempt = LoginAttempt(
            id=new_id(),
            email=email,
            success=success,
            user_id=user_id,
            failure_reason=failure_reason,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            source=client.source,
            created_at=utcnow(),
        )
        try:
            self.store.record_login_attempt(attempt)
        except Exception as exc:
            logger.error("login_attempt_write_failed", error=str(exc))
        return attempt
