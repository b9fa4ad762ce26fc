from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tradegate.logging import get_logger
from tradegate.storage.common import (
    COMPANY_UPDATABLE_FIELDS,
    ROLE_UPDATABLE_FIELDS,
    USER_UPDATABLE_FIELDS,
    check_system_fields,
    normalize_email,
    parse_json_list,
    parse_json_meta,
    policy_from_raw,
    scope_from_row,
)
from tradegate.storage.errors import ConstraintViolation, VersionConflict
from tradegate.storage.models import (
    Company,
    CompanyScope,
    LoginAttempt,
    LoginEvent,
    LoginEventType,
    PasswordHistoryEntry,
    PasswordPolicy,
    PasswordResetToken,
    PlatformScope,
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
    utcnow,
)
from tradegate.storage.versioning import check_changes, versioned_update_sql

REQUIRED_TABLES = [
    "company",
    "app_user",
    "user_company",
    "user_auth_credential",
    "password_history",
    "password_reset_token",
    "auth_session",
    "mfa_recovery_code",
    "trusted_device",
    "role",
    "user_role",
    "login_event",
    "login_attempt",
]


class PostgresStore:
    """Postgres-backed identity store.

    Read-then-write sequences are collapsed into single statements
    (``UPDATE ... RETURNING``, ``DELETE ... WHERE sid IN (SELECT ... OFFSET n)``)
    so concurrent requests for the same user cannot interleave them.
    """

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Refuse to serve requests against a database without the identity tables."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def _versioned_update(
        self,
        table: str,
        entity: str,
        entity_id: str,
        expected_version: int,
        columns: Mapping[str, Any],
    ) -> Optional[dict]:
        sql, params = versioned_update_sql(table, columns)
        params.extend([entity_id, expected_version])
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
            if row:
                return row
            current = conn.execute(
                f"SELECT version FROM {table} WHERE id = %s", (entity_id,)
            ).fetchone()
        if not current:
            return None
        raise VersionConflict(entity, entity_id, expected_version, current["version"])

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
        policy = password_policy or PasswordPolicy()
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO company (id, name, mfa_required, max_sessions_per_user, password_policy, is_internal)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    new_id(),
                    name,
                    mfa_required,
                    max_sessions_per_user,
                    json.dumps(asdict(policy)),
                    is_internal,
                ),
            ).fetchone()
        return self._company_from_row(row)

    def get_company(self, company_id: str) -> Optional[Company]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM company WHERE id = %s", (company_id,)).fetchone()
        return self._company_from_row(row) if row else None

    def list_companies(self, *, is_internal: Optional[bool] = None) -> List[Company]:
        sql = "SELECT * FROM company"
        params: list = []
        if is_internal is not None:
            sql += " WHERE is_internal = %s"
            params.append(is_internal)
        with self._connect() as conn:
            rows = conn.execute(sql + " ORDER BY created_at", params).fetchall()
        return [self._company_from_row(r) for r in rows]

    def update_company(
        self, company_id: str, expected_version: int, changes: Dict[str, Any]
    ) -> Optional[Company]:
        columns = check_changes("company", changes, COMPANY_UPDATABLE_FIELDS)
        if "password_policy" in columns:
            columns["password_policy"] = json.dumps(asdict(columns["password_policy"]))
        row = self._versioned_update("company", "company", company_id, expected_version, columns)
        return self._company_from_row(row) if row else None

    @staticmethod
    def _company_from_row(row: dict) -> Company:
        return Company(
            id=str(row["id"]),
            name=row["name"],
            mfa_required=bool(row.get("mfa_required", False)),
            max_sessions_per_user=row.get("max_sessions_per_user"),
            password_policy=policy_from_raw(row.get("password_policy")),
            is_internal=bool(row.get("is_internal", False)),
            is_active=bool(row.get("is_active", True)),
            version=row.get("version", 1),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, user_type, company_id, name_first, name_last,
                                          is_active, mfa_enabled, needs_reset_password, max_sessions)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        normalize_email(email),
                        UserType(user_type).value,
                        company_id,
                        name_first,
                        name_last,
                        is_active,
                        mfa_enabled,
                        needs_reset_password,
                        max_sessions,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("company missing", {"company_id": company_id})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user(
        self, user_id: str, expected_version: int, changes: Dict[str, Any]
    ) -> Optional[User]:
        columns = check_changes("user", changes, USER_UPDATABLE_FIELDS)
        row = self._versioned_update("app_user", "user", user_id, expected_version, columns)
        return self._user_from_row(row) if row else None

    def set_user_fields(self, user_id: str, **values: Any) -> Optional[User]:
        columns = check_system_fields(values)
        if not columns:
            return self.get_user(user_id)
        assignments = ", ".join(f"{name} = %s" for name in columns)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                [*columns.values(), user_id],
            ).fetchone()
        return self._user_from_row(row) if row else None

    def increment_failed_logins(self, user_id: str, at: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = failed_login_attempts + 1,
                    last_failed_login_at = %s
                WHERE id = %s
                RETURNING failed_login_attempts
                """,
                (at, user_id),
            ).fetchone()
        return int(row["failed_login_attempts"]) if row else 0

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            user_type=UserType(row.get("user_type") or UserType.COMPANY.value),
            company_id=row.get("company_id"),
            name_first=row.get("name_first"),
            name_last=row.get("name_last"),
            is_active=bool(row.get("is_active", True)),
            needs_reset_password=bool(row.get("needs_reset_password", False)),
            failed_login_attempts=row.get("failed_login_attempts") or 0,
            locked_until=row.get("locked_until"),
            last_failed_login_at=row.get("last_failed_login_at"),
            last_login_at=row.get("last_login_at"),
            mfa_enabled=bool(row.get("mfa_enabled", False)),
            max_sessions=row.get("max_sessions"),
            force_logout_at=row.get("force_logout_at"),
            password_changed_at=row.get("password_changed_at"),
            version=row.get("version", 1),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_company (user_id, company_id, is_active, last_accessed_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (user_id, company_id) DO UPDATE
                    SET is_active = EXCLUDED.is_active,
                        last_accessed_at = COALESCE(EXCLUDED.last_accessed_at, user_company.last_accessed_at)
                    RETURNING *
                    """,
                    (user_id, company_id, is_active, last_accessed_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "membership target missing", {"user_id": user_id, "company_id": company_id}
            )
        return self._membership_from_row(row)

    def list_memberships(self, user_id: str, *, active_only: bool = True) -> List[UserCompany]:
        clause = "AND is_active" if active_only else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM user_company
                WHERE user_id = %s {clause}
                ORDER BY last_accessed_at DESC NULLS LAST, created_at DESC
                """,
                (user_id,),
            ).fetchall()
        return [self._membership_from_row(row) for row in rows]

    def touch_membership(self, user_id: str, company_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE user_company SET last_accessed_at = %s WHERE user_id = %s AND company_id = %s",
                (at, user_id, company_id),
            )

    @staticmethod
    def _membership_from_row(row: dict) -> UserCompany:
        return UserCompany(
            user_id=str(row["user_id"]),
            company_id=str(row["company_id"]),
            is_active=bool(row.get("is_active", True)),
            last_accessed_at=row.get("last_accessed_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    # ------------------------------------------------------------------
    # Credentials, history, reset tokens
    # ------------------------------------------------------------------

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_auth_credential (user_id, password_hash, password_algo, created_at, last_updated_at)
                VALUES (%s, %s, %s, now(), now())
                ON CONFLICT (user_id) DO UPDATE SET password_hash = EXCLUDED.password_hash, password_algo = EXCLUDED.password_algo, last_updated_at = now()
                """,
                (user_id, password_hash, password_algo),
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    def add_password_history(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO password_history (user_id, password_hash) VALUES (%s, %s)",
                (user_id, password_hash),
            )

    def list_password_history(self, user_id: str, limit: int) -> List[PasswordHistoryEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT user_id, password_hash, created_at FROM password_history
                WHERE user_id = %s ORDER BY created_at DESC LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [
            PasswordHistoryEntry(
                user_id=str(row["user_id"]),
                password_hash=row["password_hash"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def save_reset_token(self, token: PasswordResetToken) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO password_reset_token (token_hash, user_id, expires_at, created_at, used_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (token.token_hash, token.user_id, token.expires_at, token.created_at, token.used_at),
            )

    def get_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._reset_token_from_row(row) if row else None

    def consume_reset_token(self, token_hash: str, now: datetime) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_token SET used_at = %s
                WHERE token_hash = %s AND used_at IS NULL AND expires_at > %s
                RETURNING *
                """,
                (now, token_hash, now),
            ).fetchone()
        return self._reset_token_from_row(row) if row else None

    @staticmethod
    def _reset_token_from_row(row: dict) -> PasswordResetToken:
        return PasswordResetToken(
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            used_at=row.get("used_at"),
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def get_session(self, sid: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM auth_session WHERE sid = %s", (sid,)).fetchone()
        return self._session_from_row(row) if row else None

    def save_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (sid, user_id, source, created_at, expires_at, absolute_expires_at,
                                              last_activity_at, mfa_verified, remember_me, active_company_id,
                                              device_id, ip_address, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (sid) DO UPDATE SET
                        expires_at = EXCLUDED.expires_at,
                        absolute_expires_at = EXCLUDED.absolute_expires_at,
                        last_activity_at = EXCLUDED.last_activity_at,
                        mfa_verified = EXCLUDED.mfa_verified,
                        remember_me = EXCLUDED.remember_me,
                        active_company_id = EXCLUDED.active_company_id,
                        device_id = EXCLUDED.device_id,
                        ip_address = EXCLUDED.ip_address,
                        user_agent = EXCLUDED.user_agent
                    WHERE auth_session.user_id = EXCLUDED.user_id
                    """,
                    (
                        session.sid,
                        session.user_id,
                        SessionSource(session.source).value,
                        session.created_at,
                        session.expires_at,
                        session.absolute_expires_at,
                        session.last_activity_at,
                        session.mfa_verified,
                        session.remember_me,
                        session.active_company_id,
                        session.device_id,
                        session.ip_address,
                        session.user_agent,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        return session

    def delete_session(self, sid: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM auth_session WHERE sid = %s RETURNING sid", (sid,)
            ).fetchone()
        return row is not None

    def delete_sessions_by_source(
        self, user_id: str, source: SessionSource, except_sid: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM auth_session
                WHERE user_id = %s AND source = %s AND sid IS DISTINCT FROM %s
                """,
                (user_id, SessionSource(source).value, except_sid),
            )
            return cur.rowcount or 0

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def evict_oldest_sessions(self, user_id: str, keep: int) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                DELETE FROM auth_session
                WHERE sid IN (
                    SELECT sid FROM auth_session WHERE user_id = %s
                    ORDER BY created_at DESC
                    OFFSET %s
                    FOR UPDATE
                )
                RETURNING *
                """,
                (user_id, max(0, keep)),
            ).fetchall()
        return sorted((self._session_from_row(row) for row in rows), key=lambda s: s.created_at)

    def delete_user_sessions(self, user_id: str, except_sid: Optional[str] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE user_id = %s AND sid IS DISTINCT FROM %s",
                (user_id, except_sid),
            )
            return cur.rowcount or 0

    def touch_session(self, sid: str, expires_at: datetime, last_activity_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET expires_at = %s, last_activity_at = %s WHERE sid = %s",
                (expires_at, last_activity_at, sid),
            )

    def mark_session_verified(self, sid: str) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE auth_session SET mfa_verified = TRUE WHERE sid = %s", (sid,))

    def set_session_company(self, sid: str, company_id: Optional[str]) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET active_company_id = %s WHERE sid = %s",
                (company_id, sid),
            )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            sid=str(row["sid"]),
            user_id=str(row["user_id"]),
            source=SessionSource(row["source"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            absolute_expires_at=row["absolute_expires_at"],
            last_activity_at=row.get("last_activity_at"),
            mfa_verified=bool(row.get("mfa_verified", False)),
            remember_me=bool(row.get("remember_me", False)),
            active_company_id=row.get("active_company_id"),
            device_id=row.get("device_id"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
        )

    # ------------------------------------------------------------------
    # Recovery codes
    # ------------------------------------------------------------------

    def replace_recovery_codes(self, user_id: str, code_hashes: Iterable[str]) -> List[RecoveryCode]:
        created = [RecoveryCode(id=new_id(), user_id=user_id, code_hash=h) for h in code_hashes]
        with self._connect() as conn:
            with conn.transaction():
                conn.execute("DELETE FROM mfa_recovery_code WHERE user_id = %s", (user_id,))
                for code in created:
                    conn.execute(
                        """
                        INSERT INTO mfa_recovery_code (id, user_id, code_hash, created_at)
                        VALUES (%s, %s, %s, %s)
                        """,
                        (code.id, code.user_id, code.code_hash, code.created_at),
                    )
        return created

    def list_recovery_codes(self, user_id: str) -> List[RecoveryCode]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM mfa_recovery_code WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [
            RecoveryCode(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                code_hash=row["code_hash"],
                created_at=row["created_at"],
                used_at=row.get("used_at"),
            )
            for row in rows
        ]

    def mark_recovery_code_used(self, code_id: str, at: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_recovery_code SET used_at = %s
                WHERE id = %s AND used_at IS NULL
                RETURNING id
                """,
                (at, code_id),
            ).fetchone()
        return row is not None

    def delete_recovery_codes(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM mfa_recovery_code WHERE user_id = %s", (user_id,))
            return cur.rowcount or 0

    # ------------------------------------------------------------------
    # Trusted devices
    # ------------------------------------------------------------------

    def save_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO trusted_device (id, user_id, token_hash, name, expires_at, ip_address,
                                            user_agent, created_at, last_used_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    device.id,
                    device.user_id,
                    device.token_hash,
                    device.name,
                    device.expires_at,
                    device.ip_address,
                    device.user_agent,
                    device.created_at,
                    device.last_used_at,
                ),
            )
        return device

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM trusted_device WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._device_from_row(row) for row in rows]

    def get_trusted_device_by_hash(self, user_id: str, token_hash: str) -> Optional[TrustedDevice]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM trusted_device WHERE user_id = %s AND token_hash = %s",
                (user_id, token_hash),
            ).fetchone()
        return self._device_from_row(row) if row else None

    def touch_trusted_device(self, device_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE trusted_device SET last_used_at = %s WHERE id = %s", (at, device_id)
            )

    def delete_trusted_device(self, device_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM trusted_device WHERE id = %s RETURNING id", (device_id,)
            ).fetchone()
        return row is not None

    def delete_user_trusted_devices(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM trusted_device WHERE user_id = %s", (user_id,))
            return cur.rowcount or 0

    @staticmethod
    def _device_from_row(row: dict) -> TrustedDevice:
        return TrustedDevice(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            name=row["name"],
            expires_at=row["expires_at"],
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=row["created_at"],
            last_used_at=row.get("last_used_at"),
        )

    # ------------------------------------------------------------------
    # Roles and assignments
    # ------------------------------------------------------------------

    @staticmethod
    def _scope_columns(scope: RoleScope) -> tuple[str, Optional[str], str]:
        company_id = scope.company_id if isinstance(scope, CompanyScope) else None
        company_permissions = (
            list(scope.company_permissions) if isinstance(scope, PlatformScope) else []
        )
        return scope.kind, company_id, json.dumps(company_permissions)

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
        kind, company_id, company_permissions = self._scope_columns(scope)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO role (id, name, display_name, description, permissions, scope_kind,
                                      company_id, company_permissions, is_default)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        name,
                        display_name,
                        description,
                        json.dumps(list(permissions)),
                        kind,
                        company_id,
                        company_permissions,
                        is_default,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return self._role_from_row(row)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
        return self._role_from_row(row) if row else None

    def get_role_by_name(
        self, name: str, kind: str, company_id: Optional[str] = None
    ) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM role
                WHERE name = %s AND scope_kind = %s AND company_id IS NOT DISTINCT FROM %s
                """,
                (name, kind, company_id),
            ).fetchone()
        return self._role_from_row(row) if row else None

    def list_roles(
        self, *, kind: Optional[str] = None, company_id: Optional[str] = None
    ) -> List[Role]:
        clauses = []
        params: list = []
        if kind is not None:
            clauses.append("scope_kind = %s")
            params.append(kind)
        if company_id is not None:
            clauses.append("company_id = %s")
            params.append(company_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM role {where} ORDER BY scope_kind, name", params
            ).fetchall()
        return [self._role_from_row(row) for row in rows]

    def update_role(
        self, role_id: str, expected_version: int, changes: Dict[str, Any]
    ) -> Optional[Role]:
        columns = check_changes("role", changes, ROLE_UPDATABLE_FIELDS)
        if "permissions" in columns:
            columns["permissions"] = json.dumps(list(columns["permissions"]))
        if "scope" in columns:
            kind, company_id, company_permissions = self._scope_columns(columns.pop("scope"))
            columns.update(
                scope_kind=kind, company_id=company_id, company_permissions=company_permissions
            )
        try:
            row = self._versioned_update("role", "role", role_id, expected_version, columns)
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return self._role_from_row(row) if row else None

    def delete_role(self, role_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute("DELETE FROM role WHERE id = %s RETURNING id", (role_id,)).fetchone()
        return row is not None

    @staticmethod
    def _role_from_row(row: dict) -> Role:
        return Role(
            id=str(row["id"]),
            name=row["name"],
            display_name=row["display_name"],
            permissions=parse_json_list(row.get("permissions")),
            scope=scope_from_row(row),
            description=row.get("description"),
            is_default=bool(row.get("is_default", False)),
            version=row.get("version", 1),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def assign_role(
        self,
        user_id: str,
        role_id: str,
        company_id: Optional[str],
        assigned_by: Optional[str] = None,
    ) -> UserRole:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_role (id, user_id, role_id, company_id, assigned_by)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), user_id, role_id, company_id, assigned_by),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role is already assigned to this user", {"field": "role_id"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "assignment target missing", {"user_id": user_id, "role_id": role_id}
            )
        return self._user_role_from_row(row)

    def delete_user_role(self, user_id: str, role_id: str, company_id: Optional[str]) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM user_role
                WHERE user_id = %s AND role_id = %s AND company_id IS NOT DISTINCT FROM %s
                RETURNING id
                """,
                (user_id, role_id, company_id),
            ).fetchone()
        return row is not None

    def delete_user_roles(self, user_id: str, company_id: Optional[str]) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM user_role WHERE user_id = %s AND company_id IS NOT DISTINCT FROM %s",
                (user_id, company_id),
            )
            return cur.rowcount or 0

    def list_user_roles(self, user_id: str) -> List[UserRole]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_role WHERE user_id = %s ORDER BY assigned_at", (user_id,)
            ).fetchall()
        return [self._user_role_from_row(row) for row in rows]

    def list_role_assignments(
        self, role_id: str, company_id: Optional[str] = None
    ) -> List[UserRole]:
        with self._connect() as conn:
            if company_id is None:
                rows = conn.execute(
                    "SELECT * FROM user_role WHERE role_id = %s", (role_id,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM user_role WHERE role_id = %s AND company_id = %s",
                    (role_id, company_id),
                ).fetchall()
        return [self._user_role_from_row(row) for row in rows]

    def count_role_assignments(self, role_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS n FROM user_role WHERE role_id = %s", (role_id,)
            ).fetchone()
        return int(row["n"]) if row else 0

    @staticmethod
    def _user_role_from_row(row: dict) -> UserRole:
        return UserRole(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            role_id=str(row["role_id"]),
            company_id=row.get("company_id"),
            assigned_at=row.get("assigned_at") or utcnow(),
            assigned_by=row.get("assigned_by"),
        )

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def record_login_event(self, event: LoginEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_event (id, event_type, user_id, email, ip_address, user_agent,
                                         source, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    LoginEventType(event.event_type).value,
                    event.user_id,
                    event.email,
                    event.ip_address,
                    event.user_agent,
                    event.source.value if event.source else None,
                    json.dumps(event.metadata) if event.metadata else None,
                    event.created_at,
                ),
            )

    def list_login_events(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[LoginEvent]:
        with self._connect() as conn:
            if user_id is None:
                rows = conn.execute(
                    "SELECT * FROM login_event ORDER BY created_at DESC LIMIT %s", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM login_event WHERE user_id = %s ORDER BY created_at DESC LIMIT %s",
                    (user_id, limit),
                ).fetchall()
        return [
            LoginEvent(
                id=str(row["id"]),
                event_type=LoginEventType(row["event_type"]),
                user_id=row.get("user_id"),
                email=row.get("email"),
                ip_address=row.get("ip_address"),
                user_agent=row.get("user_agent"),
                source=SessionSource(row["source"]) if row.get("source") else None,
                metadata=parse_json_meta(row.get("metadata")),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def record_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_attempt (id, email, success, user_id, failure_reason, ip_address,
                                           user_agent, source, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    attempt.email,
                    attempt.success,
                    attempt.user_id,
                    attempt.failure_reason,
                    attempt.ip_address,
                    attempt.user_agent,
                    attempt.source.value if attempt.source else None,
                    attempt.created_at,
                ),
            )

    def list_login_attempts(self, email: str, limit: int = 100) -> List[LoginAttempt]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM login_attempt WHERE email = %s ORDER BY created_at DESC LIMIT %s",
                (normalize_email(email), limit),
            ).fetchall()
        return [
            LoginAttempt(
                id=str(row["id"]),
                email=row["email"],
                success=bool(row["success"]),
                user_id=row.get("user_id"),
                failure_reason=row.get("failure_reason"),
                ip_address=row.get("ip_address"),
                user_agent=row.get("user_agent"),
                source=SessionSource(row["source"]) if row.get("source") else None,
                created_at=row["created_at"],
            )
            for row in rows
        ]
