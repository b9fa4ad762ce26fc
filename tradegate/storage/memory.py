from __future__ import annotations

import copy
import json
import threading
from dataclasses import asdict, fields
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar

from tradegate.logging import get_logger
from tradegate.storage.common import (
    COMPANY_UPDATABLE_FIELDS,
    ROLE_UPDATABLE_FIELDS,
    USER_UPDATABLE_FIELDS,
    check_system_fields,
    normalize_email,
)
from tradegate.storage.errors import ConstraintViolation
from tradegate.storage.models import (
    Company,
    LoginAttempt,
    LoginEvent,
    LoginEventType,
    PasswordHistoryEntry,
    PasswordPolicy,
    PasswordResetToken,
    RecoveryCode,
    Role,
    RoleScope,
    Session,
    SessionSource,
    TrustedDevice,
    User,
    UserCompany,
    UserRole,
    UserType,
    new_id,
    scope_from_dict,
    scope_to_dict,
    utcnow,
)
from tradegate.storage.versioning import apply_versioned_update, check_changes

T = TypeVar("T")

_MAX_EVENTS = 10000


class MemoryStore:
    """In-memory identity store persisted as a JSON snapshot.

    Every public method takes ``_data_lock`` so that read-then-write sequences
    (failure counters, session eviction, version checks) are atomic within the
    process.
    """

    def __init__(self, fs_root: str = "/tmp/tradegate") -> None:
        self.logger = get_logger(__name__)
        self.companies: Dict[str, Company] = {}
        self.users: Dict[str, User] = {}
        self.memberships: List[UserCompany] = []
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.password_history: Dict[str, List[PasswordHistoryEntry]] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self.sessions: Dict[str, Session] = {}
        self.recovery_codes: Dict[str, RecoveryCode] = {}
        self.trusted_devices: Dict[str, TrustedDevice] = {}
        self.roles: Dict[str, Role] = {}
        self.user_roles: Dict[str, UserRole] = {}
        self.login_events: List[LoginEvent] = []
        self.login_attempts: List[LoginAttempt] = []
        # RLock so helpers can re-enter while a public method holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _clone(obj: T) -> T:
        return copy.deepcopy(obj)

    # ------------------------------------------------------------------
    # Companies
    # ------------------------------------------------------------------

    def create_company(
        self,
        name: str,
        *,
        mfa_required: bool = False,
        max_sessions_per_user: Optional[int] = None,
        password_policy: Optional[PasswordPolicy] = None,
        is_internal: bool = False,
    ) -> Company:
        with self._data_lock:
            company = Company(
                id=new_id(),
                name=name,
                mfa_required=mfa_required,
                max_sessions_per_user=max_sessions_per_user,
                password_policy=password_policy or PasswordPolicy(),
                is_internal=is_internal,
            )
            self.companies[company.id] = company
            self._persist_state()
            return self._clone(company)

    def get_company(self, company_id: str) -> Optional[Company]:
        with self._data_lock:
            company = self.companies.get(company_id)
            return self._clone(company) if company else None

    def list_companies(self, *, is_internal: Optional[bool] = None) -> List[Company]:
        with self._data_lock:
            found = [
                c
                for c in self.companies.values()
                if is_internal is None or c.is_internal == is_internal
            ]
            found.sort(key=lambda c: c.created_at)
            return [self._clone(c) for c in found]

    def update_company(
        self, company_id: str, expected_version: int, changes: Dict[str, Any]
    ) -> Optional[Company]:
        with self._data_lock:
            current = self.companies.get(company_id)
            if not current:
                return None
            check_changes("company", changes, COMPANY_UPDATABLE_FIELDS)
            updated = apply_versioned_update(current, "company", expected_version, changes)
            self.companies[company_id] = updated
            self._persist_state()
            return self._clone(updated)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        user_type: UserType = UserType.COMPANY,
        company_id: Optional[str] = None,
        name_first: Optional[str] = None,
        name_last: Optional[str] = None,
        is_active: bool = True,
        mfa_enabled: bool = False,
        needs_reset_password: bool = False,
        max_sessions: Optional[int] = None,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                email=normalized,
                user_type=UserType(user_type),
                company_id=company_id,
                name_first=name_first,
                name_last=name_last,
                is_active=is_active,
                mfa_enabled=mfa_enabled,
                needs_reset_password=needs_reset_password,
                max_sessions=max_sessions,
            )
            self.users[user.id] = user
            self._persist_state()
            return self._clone(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._clone(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            for user in self.users.values():
                if user.email == normalized:
                    return self._clone(user)
        return None

    def update_user(
        self, user_id: str, expected_version: int, changes: Dict[str, Any]
    ) -> Optional[User]:
        with self._data_lock:
            current = self.users.get(user_id)
            if not current:
                return None
            check_changes("user", changes, USER_UPDATABLE_FIELDS)
            updated = apply_versioned_update(current, "user", expected_version, changes)
            self.users[user_id] = updated
            self._persist_state()
            return self._clone(updated)

    def set_user_fields(self, user_id: str, **values: Any) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            check_system_fields(values)
            for name, value in values.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            self._persist_state()
            return self._clone(user)

    def increment_failed_logins(self, user_id: str, at: datetime) -> int:
        """Atomically bump the failure counter and return the new count."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return 0
            user.failed_login_attempts += 1
            user.last_failed_login_at = at
            self._persist_state()
            return user.failed_login_attempts

    # ------------------------------------------------------------------
    # Company memberships
    # ------------------------------------------------------------------

    def add_membership(
        self,
        user_id: str,
        company_id: str,
        *,
        is_active: bool = True,
        last_accessed_at: Optional[datetime] = None,
    ) -> UserCompany:
        with self._data_lock:
            for existing in self.memberships:
                if existing.user_id == user_id and existing.company_id == company_id:
                    existing.is_active = is_active
                    if last_accessed_at:
                        existing.last_accessed_at = last_accessed_at
                    self._persist_state()
                    return self._clone(existing)
            membership = UserCompany(
                user_id=user_id,
                company_id=company_id,
                is_active=is_active,
                last_accessed_at=last_accessed_at,
            )
            self.memberships.append(membership)
            self._persist_state()
            return self._clone(membership)

    def list_memberships(self, user_id: str, *, active_only: bool = True) -> List[UserCompany]:
        """Memberships ordered by most recent access; never-accessed ones last."""
        with self._data_lock:
            found = [
                m
                for m in self.memberships
                if m.user_id == user_id and (m.is_active or not active_only)
            ]
            found.sort(
                key=lambda m: (m.last_accessed_at is not None, m.last_accessed_at or m.created_at),
                reverse=True,
            )
            return [self._clone(m) for m in found]

    def touch_membership(self, user_id: str, company_id: str, at: datetime) -> None:
        with self._data_lock:
            for membership in self.memberships:
                if membership.user_id == user_id and membership.company_id == company_id:
                    membership.last_accessed_at = at
            self._persist_state()

    # ------------------------------------------------------------------
    # Credentials, history, reset tokens
    # ------------------------------------------------------------------

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def add_password_history(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            self.password_history.setdefault(user_id, []).append(
                PasswordHistoryEntry(user_id=user_id, password_hash=password_hash)
            )
            self._persist_state()

    def list_password_history(self, user_id: str, limit: int) -> List[PasswordHistoryEntry]:
        with self._data_lock:
            entries = sorted(
                self.password_history.get(user_id, []),
                key=lambda e: e.created_at,
                reverse=True,
            )
            return [self._clone(e) for e in entries[:limit]]

    def save_reset_token(self, token: PasswordResetToken) -> None:
        with self._data_lock:
            self.reset_tokens[token.token_hash] = self._clone(token)
            self._persist_state()

    def get_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            token = self.reset_tokens.get(token_hash)
            return self._clone(token) if token else None

    def consume_reset_token(self, token_hash: str, now: datetime) -> Optional[PasswordResetToken]:
        """Mark a live token used and return it; ``None`` when unknown, used or expired."""
        with self._data_lock:
            token = self.reset_tokens.get(token_hash)
            if not token or token.used_at is not None or token.expires_at <= now:
                return None
            token.used_at = now
            self._persist_state()
            return self._clone(token)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def get_session(self, sid: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(sid)
            return self._clone(session) if session else None

    def save_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("session user missing", {"user_id": session.user_id})
            self.sessions[session.sid] = self._clone(session)
            self._persist_state()
            return self._clone(session)

    def delete_session(self, sid: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(sid, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_sessions_by_source(
        self, user_id: str, source: SessionSource, except_sid: Optional[str] = None
    ) -> int:
        with self._data_lock:
            doomed = [
                sid
                for sid, s in self.sessions.items()
                if s.user_id == user_id and s.source == source and sid != except_sid
            ]
            for sid in doomed:
                self.sessions.pop(sid, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    def list_user_sessions(self, user_id: str) -> List[Session]:
        """Sessions for a user, oldest first."""
        with self._data_lock:
            found = [s for s in self.sessions.values() if s.user_id == user_id]
            found.sort(key=lambda s: s.created_at)
            return [self._clone(s) for s in found]

    def evict_oldest_sessions(self, user_id: str, keep: int) -> List[Session]:
        """Delete the oldest sessions until at most ``keep`` remain; return the evicted ones."""
        with self._data_lock:
            found = sorted(
                (s for s in self.sessions.values() if s.user_id == user_id),
                key=lambda s: s.created_at,
            )
            doomed = found[: max(0, len(found) - max(0, keep))]
            for session in doomed:
                self.sessions.pop(session.sid, None)
            if doomed:
                self._persist_state()
            return [self._clone(s) for s in doomed]

    def delete_user_sessions(self, user_id: str, except_sid: Optional[str] = None) -> int:
        with self._data_lock:
            doomed = [
                sid for sid, s in self.sessions.items() if s.user_id == user_id and sid != except_sid
            ]
            for sid in doomed:
                self.sessions.pop(sid, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    def touch_session(self, sid: str, expires_at: datetime, last_activity_at: datetime) -> None:
        with self._data_lock:
            session = self.sessions.get(sid)
            if session:
                session.expires_at = expires_at
                session.last_activity_at = last_activity_at
                self._persist_state()

    def mark_session_verified(self, sid: str) -> None:
        with self._data_lock:
            session = self.sessions.get(sid)
            if session:
                session.mfa_verified = True
                self._persist_state()

    def set_session_company(self, sid: str, company_id: Optional[str]) -> None:
        with self._data_lock:
            session = self.sessions.get(sid)
            if session:
                session.active_company_id = company_id
                self._persist_state()

    # ------------------------------------------------------------------
    # Recovery codes
    # ------------------------------------------------------------------

    def replace_recovery_codes(self, user_id: str, code_hashes: Iterable[str]) -> List[RecoveryCode]:
        with self._data_lock:
            self.recovery_codes = {
                k: c for k, c in self.recovery_codes.items() if c.user_id != user_id
            }
            created = []
            for code_hash in code_hashes:
                code = RecoveryCode(id=new_id(), user_id=user_id, code_hash=code_hash)
                self.recovery_codes[code.id] = code
                created.append(self._clone(code))
            self._persist_state()
            return created

    def list_recovery_codes(self, user_id: str) -> List[RecoveryCode]:
        with self._data_lock:
            return [self._clone(c) for c in self.recovery_codes.values() if c.user_id == user_id]

    def mark_recovery_code_used(self, code_id: str, at: datetime) -> bool:
        """Claim a code; only the first caller for an unused code gets ``True``."""
        with self._data_lock:
            code = self.recovery_codes.get(code_id)
            if not code or code.used_at is not None:
                return False
            code.used_at = at
            self._persist_state()
            return True

    def delete_recovery_codes(self, user_id: str) -> int:
        with self._data_lock:
            before = len(self.recovery_codes)
            self.recovery_codes = {
                k: c for k, c in self.recovery_codes.items() if c.user_id != user_id
            }
            removed = before - len(self.recovery_codes)
            if removed:
                self._persist_state()
            return removed

    # ------------------------------------------------------------------
    # Trusted devices
    # ------------------------------------------------------------------

    def save_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        with self._data_lock:
            self.trusted_devices[device.id] = self._clone(device)
            self._persist_state()
            return self._clone(device)

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        with self._data_lock:
            found = [d for d in self.trusted_devices.values() if d.user_id == user_id]
            found.sort(key=lambda d: d.created_at, reverse=True)
            return [self._clone(d) for d in found]

    def get_trusted_device_by_hash(self, user_id: str, token_hash: str) -> Optional[TrustedDevice]:
        with self._data_lock:
            for device in self.trusted_devices.values():
                if device.user_id == user_id and device.token_hash == token_hash:
                    return self._clone(device)
        return None

    def touch_trusted_device(self, device_id: str, at: datetime) -> None:
        with self._data_lock:
            device = self.trusted_devices.get(device_id)
            if device:
                device.last_used_at = at
                self._persist_state()

    def delete_trusted_device(self, device_id: str) -> bool:
        with self._data_lock:
            removed = self.trusted_devices.pop(device_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_user_trusted_devices(self, user_id: str) -> int:
        with self._data_lock:
            doomed = [k for k, d in self.trusted_devices.items() if d.user_id == user_id]
            for key in doomed:
                self.trusted_devices.pop(key, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    # ------------------------------------------------------------------
    # Roles and assignments
    # ------------------------------------------------------------------

    def create_role(
        self,
        name: str,
        display_name: str,
        permissions: List[str],
        scope: RoleScope,
        *,
        description: Optional[str] = None,
        is_default: bool = False,
    ) -> Role:
        with self._data_lock:
            for existing in self.roles.values():
                if existing.name == name and existing.scope == scope:
                    raise ConstraintViolation("role name already exists", {"field": "name"})
            role = Role(
                id=new_id(),
                name=name,
                display_name=display_name,
                permissions=list(permissions),
                scope=scope,
                description=description,
                is_default=is_default,
            )
            self.roles[role.id] = role
            self._persist_state()
            return self._clone(role)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return self._clone(role) if role else None

    def get_role_by_name(
        self, name: str, kind: str, company_id: Optional[str] = None
    ) -> Optional[Role]:
        with self._data_lock:
            for role in self.roles.values():
                if role.name == name and role.kind == kind and role.company_id == company_id:
                    return self._clone(role)
        return None

    def list_roles(
        self, *, kind: Optional[str] = None, company_id: Optional[str] = None
    ) -> List[Role]:
        with self._data_lock:
            found = [
                r
                for r in self.roles.values()
                if (kind is None or r.kind == kind)
                and (company_id is None or r.company_id == company_id)
            ]
            found.sort(key=lambda r: (r.kind, r.name))
            return [self._clone(r) for r in found]

    def update_role(
        self, role_id: str, expected_version: int, changes: Dict[str, Any]
    ) -> Optional[Role]:
        with self._data_lock:
            current = self.roles.get(role_id)
            if not current:
                return None
            check_changes("role", changes, ROLE_UPDATABLE_FIELDS)
            updated = apply_versioned_update(current, "role", expected_version, changes)
            self.roles[role_id] = updated
            self._persist_state()
            return self._clone(updated)

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            removed = self.roles.pop(role_id, None)
            if removed:
                self.user_roles = {
                    k: ur for k, ur in self.user_roles.items() if ur.role_id != role_id
                }
                self._persist_state()
            return removed is not None

    def assign_role(
        self,
        user_id: str,
        role_id: str,
        company_id: Optional[str],
        assigned_by: Optional[str] = None,
    ) -> UserRole:
        with self._data_lock:
            if self._find_user_role(user_id, role_id, company_id):
                raise ConstraintViolation(
                    "role is already assigned to this user", {"field": "role_id"}
                )
            user_role = UserRole(
                id=new_id(),
                user_id=user_id,
                role_id=role_id,
                company_id=company_id,
                assigned_by=assigned_by,
            )
            self.user_roles[user_role.id] = user_role
            self._persist_state()
            return self._clone(user_role)

    def _find_user_role(
        self, user_id: str, role_id: str, company_id: Optional[str]
    ) -> Optional[UserRole]:
        for ur in self.user_roles.values():
            if ur.user_id == user_id and ur.role_id == role_id and ur.company_id == company_id:
                return ur
        return None

    def delete_user_role(self, user_id: str, role_id: str, company_id: Optional[str]) -> bool:
        with self._data_lock:
            found = self._find_user_role(user_id, role_id, company_id)
            if not found:
                return False
            self.user_roles.pop(found.id, None)
            self._persist_state()
            return True

    def delete_user_roles(self, user_id: str, company_id: Optional[str]) -> int:
        with self._data_lock:
            doomed = [
                k
                for k, ur in self.user_roles.items()
                if ur.user_id == user_id and ur.company_id == company_id
            ]
            for key in doomed:
                self.user_roles.pop(key, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    def list_user_roles(self, user_id: str) -> List[UserRole]:
        with self._data_lock:
            found = [ur for ur in self.user_roles.values() if ur.user_id == user_id]
            found.sort(key=lambda ur: ur.assigned_at)
            return [self._clone(ur) for ur in found]

    def list_role_assignments(
        self, role_id: str, company_id: Optional[str] = None
    ) -> List[UserRole]:
        with self._data_lock:
            return [
                self._clone(ur)
                for ur in self.user_roles.values()
                if ur.role_id == role_id and (company_id is None or ur.company_id == company_id)
            ]

    def count_role_assignments(self, role_id: str) -> int:
        with self._data_lock:
            return sum(1 for ur in self.user_roles.values() if ur.role_id == role_id)

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def record_login_event(self, event: LoginEvent) -> None:
        with self._data_lock:
            self.login_events.append(self._clone(event))
            if len(self.login_events) > _MAX_EVENTS:
                self.login_events = self.login_events[-_MAX_EVENTS:]
            self._persist_state()

    def list_login_events(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[LoginEvent]:
        with self._data_lock:
            found = [e for e in self.login_events if user_id is None or e.user_id == user_id]
            return [self._clone(e) for e in reversed(found[-limit:])]

    def record_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._data_lock:
            self.login_attempts.append(self._clone(attempt))
            if len(self.login_attempts) > _MAX_EVENTS:
                self.login_attempts = self.login_attempts[-_MAX_EVENTS:]
            self._persist_state()

    def list_login_attempts(self, email: str, limit: int = 100) -> List[LoginAttempt]:
        normalized = normalize_email(email)
        with self._data_lock:
            found = [a for a in self.login_attempts if a.email == normalized]
            return [self._clone(a) for a in reversed(found[-limit:])]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "companies": [self._serialize_company(c) for c in self.companies.values()],
            "users": [_dump(u) for u in self.users.values()],
            "memberships": [_dump(m) for m in self.memberships],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "password_history": [
                _dump(e) for entries in self.password_history.values() for e in entries
            ],
            "reset_tokens": [_dump(t) for t in self.reset_tokens.values()],
            "sessions": [_dump(s) for s in self.sessions.values()],
            "recovery_codes": [_dump(c) for c in self.recovery_codes.values()],
            "trusted_devices": [_dump(d) for d in self.trusted_devices.values()],
            "roles": [self._serialize_role(r) for r in self.roles.values()],
            "user_roles": [_dump(ur) for ur in self.user_roles.values()],
            "login_events": [_dump(e) for e in self.login_events],
            "login_attempts": [_dump(a) for a in self.login_attempts],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.companies = {
            c["id"]: self._deserialize_company(c) for c in data.get("companies", [])
        }
        self.users = {
            u["id"]: _load(User, u, enums={"user_type": UserType}) for u in data.get("users", [])
        }
        self.memberships = [_load(UserCompany, m) for m in data.get("memberships", [])]
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.password_history = {}
        for raw in data.get("password_history", []):
            entry = _load(PasswordHistoryEntry, raw)
            self.password_history.setdefault(entry.user_id, []).append(entry)
        self.reset_tokens = {
            t["token_hash"]: _load(PasswordResetToken, t) for t in data.get("reset_tokens", [])
        }
        self.sessions = {
            s["sid"]: _load(Session, s, enums={"source": SessionSource})
            for s in data.get("sessions", [])
        }
        self.recovery_codes = {
            c["id"]: _load(RecoveryCode, c) for c in data.get("recovery_codes", [])
        }
        self.trusted_devices = {
            d["id"]: _load(TrustedDevice, d) for d in data.get("trusted_devices", [])
        }
        self.roles = {r["id"]: self._deserialize_role(r) for r in data.get("roles", [])}
        self.user_roles = {ur["id"]: _load(UserRole, ur) for ur in data.get("user_roles", [])}
        self.login_events = [
            _load(LoginEvent, e, enums={"event_type": LoginEventType, "source": SessionSource})
            for e in data.get("login_events", [])
        ]
        self.login_attempts = [
            _load(LoginAttempt, a, enums={"source": SessionSource})
            for a in data.get("login_attempts", [])
        ]
        return True

    def _serialize_company(self, company: Company) -> dict:
        data = _dump(company)
        data["password_policy"] = asdict(company.password_policy)
        return data

    def _deserialize_company(self, data: dict) -> Company:
        raw = dict(data)
        raw["password_policy"] = PasswordPolicy(**(raw.get("password_policy") or {}))
        return _load(Company, raw)

    def _serialize_role(self, role: Role) -> dict:
        data = _dump(role)
        data["scope"] = scope_to_dict(role.scope)
        return data

    def _deserialize_role(self, data: dict) -> Role:
        raw = dict(data)
        raw["scope"] = scope_from_dict(raw["scope"])
        return _load(Role, raw)

def _dump(obj: Any) -> dict:
    """Shallow JSON-ready dict of a dataclass: datetimes as ISO strings, enums by value."""
    out: Dict[str, Any] = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, Enum):
            value = value.value
        out[f.name] = value
    return out


def _load(cls: Type[T], data: dict, *, enums: Optional[Dict[str, Type[Enum]]] = None) -> T:
    enums = enums or {}
    kwargs: Dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in data or not f.init:
            continue
        value = data[f.name]
        if f.name in enums and value is not None:
            value = enums[f.name](value)
        elif isinstance(value, str) and (f.name.endswith("_at") or f.name.endswith("_until")):
            value = datetime.fromisoformat(value)
        kwargs[f.name] = value
    return cls(**kwargs)
