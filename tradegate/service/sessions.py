from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Tuple

from tradegate.config import Settings
from tradegate.logging import get_logger
from tradegate.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    SessionExpiredError,
)
from tradegate.service.events import ClientInfo, LoginEventRecorder
from tradegate.storage.models import (
    Company,
    LoginEventType,
    Session,
    SessionSource,
    User,
    new_id,
    utcnow,
)

logger = get_logger(__name__)

SESSION_LIMIT_REASON = "session_limit_exceeded"


class SessionManager:
    """Creates, refreshes and revokes login sessions.

    A user holds at most one session per source and at most
    :meth:`session_limit` sessions overall; the oldest are evicted first.
    """

    def __init__(self, store, settings: Settings, events: LoginEventRecorder) -> None:
        self.store = store
        self.settings = settings
        self.events = events

    def _now(self) -> datetime:
        return utcnow()

    def session_limit(self, user: User, company: Optional[Company] = None) -> int:
        if user.max_sessions:
            return user.max_sessions
        if company and company.max_sessions_per_user:
            return company.max_sessions_per_user
        return self.settings.default_max_sessions

    def establish(
        self,
        user: User,
        *,
        sid: Optional[str] = None,
        source: SessionSource = SessionSource.WEB,
        remember_me: bool = False,
        mfa_verified: bool = False,
        company: Optional[Company] = None,
        device_id: Optional[str] = None,
        client: Optional[ClientInfo] = None,
        now: Optional[datetime] = None,
    ) -> Session:
        now = now or self._now()
        client = client or ClientInfo(source=source)
        existing = self.store.get_session(sid) if sid else None
        if existing and existing.user_id != user.id:
            existing = None
        # only ids this store issued to the same user are reused
        sid = existing.sid if existing else new_id()

        self.store.delete_sessions_by_source(user.id, source, except_sid=sid)

        if not existing:
            limit = self.session_limit(user, company)
            for evicted in self.store.evict_oldest_sessions(user.id, keep=limit - 1):
                self.events.record(
                    LoginEventType.SESSION_REVOKED,
                    client=client,
                    user_id=user.id,
                    email=user.email,
                    metadata={"reason": SESSION_LIMIT_REASON, "sid": evicted.sid},
                )
                logger.info(
                    "session_evicted", user_id=user.id, sid=evicted.sid, limit=limit
                )

        rolling, absolute = self.settings.session_lifetimes(remember_me)
        session = Session(
            sid=sid,
            user_id=user.id,
            source=source,
            created_at=existing.created_at if existing else now,
            expires_at=now + rolling,
            absolute_expires_at=now + absolute,
            last_activity_at=now,
            mfa_verified=mfa_verified,
            remember_me=remember_me,
            active_company_id=company.id if company else None,
            device_id=device_id,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
        self.store.save_session(session)
        logger.info(
            "session_established",
            user_id=user.id,
            sid=sid,
            source=source.value,
            remember_me=remember_me,
            reused=existing is not None,
        )
        return session

    def touch(self, session: Session, *, now: Optional[datetime] = None) -> Session:
        """Slide the rolling expiry forward, never past the absolute expiry."""
        now = now or self._now()
        rolling, _ = self.settings.session_lifetimes(session.remember_me)
        session.expires_at = min(now + rolling, session.absolute_expires_at)
        session.last_activity_at = now
        # mfa_verified and active_company_id are left as stored
        self.store.touch_session(session.sid, session.expires_at, now)
        return session

    def resolve(self, sid: Optional[str], *, now: Optional[datetime] = None) -> Tuple[Session, User]:
        if not sid:
            raise AuthenticationError("Authentication required")
        now = now or self._now()
        session = self.store.get_session(sid)
        if not session:
            raise AuthenticationError("Authentication required")
        if session.is_expired(now):
            self.store.delete_session(sid)
            raise SessionExpiredError("Session expired")
        user = self.store.get_user(session.user_id)
        if not user or not user.is_active:
            self.store.delete_session(sid)
            raise AuthenticationError("Authentication required")
        if user.force_logout_at and session.created_at < user.force_logout_at:
            self.store.delete_session(sid)
            raise SessionExpiredError("Session expired")
        return self.touch(session, now=now), user

    def list_for_user(self, user_id: str) -> List[Session]:
        now = self._now()
        return [s for s in self.store.list_user_sessions(user_id) if not s.is_expired(now)]

    def revoke(
        self,
        user: User,
        sid: str,
        *,
        reason: str = "user_revoked",
        client: Optional[ClientInfo] = None,
    ) -> None:
        session = self.store.get_session(sid)
        if not session or session.user_id != user.id:
            raise NotFoundError("Session not found")
        self.store.delete_session(sid)
        self.events.record(
            LoginEventType.SESSION_REVOKED,
            client=client,
            user_id=user.id,
            email=user.email,
            metadata={"reason": reason, "sid": sid},
        )
        logger.info("session_revoked", user_id=user.id, sid=sid, reason=reason)

    def revoke_all(self, user_id: str, *, except_sid: Optional[str] = None) -> int:
        count = self.store.delete_user_sessions(user_id, except_sid=except_sid)
        logger.info("sessions_revoked", user_id=user_id, count=count)
        return count

    def logout(self, session: Session, user: User, *, client: Optional[ClientInfo] = None) -> None:
        self.store.delete_session(session.sid)
        self.events.record(
            LoginEventType.LOGOUT, client=client, user_id=user.id, email=user.email
        )
        logger.info("logout", user_id=user.id, sid=session.sid)

    def switch_company(
        self, session: Session, user: User, company_id: str, *, permissions
    ) -> Tuple[Session, Company]:
        company = self.store.get_company(company_id)
        if not company or not company.is_active:
            raise NotFoundError("Company not found", detail={"company_id": company_id})

        if user.is_internal:
            if not permissions.has_permission(
                user, session.active_company_id, "platform:switch_company"
            ):
                raise ForbiddenError("Missing required permission: platform:switch_company")
        else:
            memberships = self.store.list_memberships(user.id, active_only=True)
            if not any(m.company_id == company_id for m in memberships):
                raise ForbiddenError("No access to this company")
            self.store.touch_membership(user.id, company_id, self._now())

        self.store.set_session_company(session.sid, company_id)
        session.active_company_id = company_id
        logger.info(
            "company_switched", user_id=user.id, sid=session.sid, company_id=company_id
        )
        return session, company
