from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from keyward.logging import get_logger
from keyward.storage.errors import ConstraintViolation, StoreUnavailable
from keyward.storage.memory import build_mfa_cipher
from keyward.storage.models import (
    AuditLogEntry,
    BlockedIP,
    PendingEnrollment,
    Session,
    TOTPMethod,
    User,
    WebAuthnMethod,
    utcnow,
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'user',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        disabled_at TIMESTAMPTZ,
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id),
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mfa_totp (
        user_id UUID PRIMARY KEY REFERENCES app_user(id),
        secret TEXT NOT NULL,
        enrolled_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_step BIGINT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mfa_webauthn (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id),
        credential_id TEXT NOT NULL UNIQUE,
        public_key TEXT NOT NULL,
        sign_count BIGINT NOT NULL DEFAULT 0,
        label TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mfa_pending (
        user_id UUID NOT NULL REFERENCES app_user(id),
        kind TEXT NOT NULL,
        payload JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (user_id, kind)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id),
        refresh_jti TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        last_seen_at TIMESTAMPTZ NOT NULL,
        ip_addr TEXT,
        user_agent TEXT,
        device_fingerprint TEXT,
        country TEXT,
        latitude DOUBLE PRECISION,
        longitude DOUBLE PRECISION,
        mfa_verified BOOLEAN NOT NULL DEFAULT FALSE,
        rotation_count INTEGER NOT NULL DEFAULT 0,
        revoked_at TIMESTAMPTZ,
        revoked_reason TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id, last_seen_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id UUID PRIMARY KEY,
        ts TIMESTAMPTZ NOT NULL,
        event_type TEXT NOT NULL,
        user_id UUID,
        ip_address TEXT,
        user_agent TEXT,
        details JSONB NOT NULL DEFAULT '{}'::jsonb,
        suspicious BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_log_ts_idx ON audit_log (ts DESC)",
    "CREATE INDEX IF NOT EXISTS audit_log_type_ts_idx ON audit_log (event_type, ts DESC)",
    "CREATE INDEX IF NOT EXISTS audit_log_user_ts_idx ON audit_log (user_id, ts DESC)",
    """
    CREATE TABLE IF NOT EXISTS blocked_ip (
        ip TEXT PRIMARY KEY,
        reason TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        created_by UUID
    )
    """,
]


def _as_uuid(value: Optional[str]) -> Optional[str]:
    """Canonical text form of an id column value, or None when it cannot be one."""
    if value is None:
        return None
    try:
        return str(uuid.UUID(str(value)))
    except ValueError:
        return None


class PostgresStore:
    """Postgres-backed store; single-row conditional updates provide the atomic swaps."""

    def __init__(
        self, dsn: str, fs_root: str, *, mfa_encryption_key: str | None = None
    ) -> None:
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
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(
        self, email: str, *, role: str = "user", meta: Optional[Dict] = None
    ) -> User:
        user = User(id=str(uuid.uuid4()), email=email, role=role, meta=dict(meta or {}))
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, role, is_active, mfa_enabled, created_at, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        email,
                        role,
                        True,
                        False,
                        user.created_at,
                        json.dumps(user.meta),
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def _user_from_row(self, row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            role=row.get("role", "user"),
            is_active=row.get("is_active", True),
            mfa_enabled=row.get("mfa_enabled", False),
            created_at=row["created_at"],
            disabled_at=row.get("disabled_at"),
            meta=row.get("meta"),
        )

    def get_user(self, user_id: str) -> Optional[User]:
        uid = _as_uuid(user_id)
        if uid is None:
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (uid,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE email = %s", (email,)).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(r) for r in rows]

    def count_users(self, *, active_only: bool = True) -> int:
        query = "SELECT count(*) AS n FROM app_user"
        if active_only:
            query += " WHERE is_active"
        with self._connect() as conn:
            row = conn.execute(query).fetchone()
        return int(row["n"]) if row else 0

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *", (role, user_id)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_active(self, user_id: str, active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET is_active = %s, disabled_at = %s
                WHERE id = %s RETURNING *
                """,
                (active, None if active else utcnow(), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_mfa_enabled(self, user_id: str, enabled: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET mfa_enabled = %s WHERE id = %s", (enabled, user_id)
            )

    # credentials
    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, password_algo, updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        return (row["password_hash"], row["password_algo"]) if row else None

    # mfa: totp
    def save_totp_method(self, user_id: str, secret: str) -> TOTPMethod:
        encrypted = self._mfa_cipher.encrypt(secret.encode()).decode()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO mfa_totp (user_id, secret, enrolled_at, last_used_step)
                    VALUES (%s, %s, now(), NULL)
                    ON CONFLICT (user_id) DO UPDATE
                    SET secret = EXCLUDED.secret, enrolled_at = now(), last_used_step = NULL
                    RETURNING enrolled_at
                    """,
                    (user_id, encrypted),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
        return TOTPMethod(user_id=user_id, secret=secret, enrolled_at=row["enrolled_at"])

    def get_totp_method(self, user_id: str) -> Optional[TOTPMethod]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mfa_totp WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return TOTPMethod(
            user_id=str(row["user_id"]),
            secret=self._mfa_cipher.decrypt(row["secret"].encode()).decode(),
            enrolled_at=row["enrolled_at"],
            last_used_step=row.get("last_used_step"),
        )

    def delete_totp_method(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM mfa_totp WHERE user_id = %s", (user_id,))
            return cur.rowcount > 0

    def consume_totp_step(self, user_id: str, step: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_totp SET last_used_step = %s
                WHERE user_id = %s AND (last_used_step IS NULL OR last_used_step < %s)
                RETURNING user_id
                """,
                (step, user_id, step),
            ).fetchone()
        return row is not None

    # mfa: webauthn
    def _webauthn_from_row(self, row: dict) -> WebAuthnMethod:
        return WebAuthnMethod(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            credential_id=row["credential_id"],
            public_key=row["public_key"],
            sign_count=int(row["sign_count"]),
            label=row.get("label"),
            created_at=row["created_at"],
            last_used_at=row.get("last_used_at"),
        )

    def add_webauthn_method(
        self,
        user_id: str,
        credential_id: str,
        public_key: str,
        sign_count: int,
        label: Optional[str] = None,
    ) -> WebAuthnMethod:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO mfa_webauthn (id, user_id, credential_id, public_key, sign_count, label)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), user_id, credential_id, public_key, sign_count, label),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "credential already registered", {"field": "credential_id"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
        return self._webauthn_from_row(row)

    def list_webauthn_methods(self, user_id: str) -> List[WebAuthnMethod]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM mfa_webauthn WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._webauthn_from_row(r) for r in rows]

    def get_webauthn_method_by_credential(self, credential_id: str) -> Optional[WebAuthnMethod]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mfa_webauthn WHERE credential_id = %s", (credential_id,)
            ).fetchone()
        return self._webauthn_from_row(row) if row else None

    def advance_webauthn_counter(self, method_id: str, new_count: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_webauthn SET sign_count = %s, last_used_at = now()
                WHERE id = %s AND sign_count < %s
                RETURNING id
                """,
                (new_count, method_id, new_count),
            ).fetchone()
        return row is not None

    def delete_webauthn_method(self, user_id: str, method_id: str) -> bool:
        mid, uid = _as_uuid(method_id), _as_uuid(user_id)
        if mid is None or uid is None:
            return False
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM mfa_webauthn WHERE id = %s AND user_id = %s", (mid, uid)
            )
            return cur.rowcount > 0

    # mfa: pending enrollment
    def save_pending_enrollment(self, pending: PendingEnrollment) -> PendingEnrollment:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO mfa_pending (user_id, kind, payload, created_at, expires_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (user_id, kind) DO UPDATE
                SET payload = EXCLUDED.payload,
                    created_at = EXCLUDED.created_at,
                    expires_at = EXCLUDED.expires_at
                """,
                (
                    pending.user_id,
                    pending.kind,
                    json.dumps(pending.payload),
                    pending.created_at,
                    pending.expires_at,
                ),
            )
        return pending

    def get_pending_enrollment(self, user_id: str, kind: str) -> Optional[PendingEnrollment]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mfa_pending WHERE user_id = %s AND kind = %s", (user_id, kind)
            ).fetchone()
        if not row:
            return None
        return PendingEnrollment(
            user_id=str(row["user_id"]),
            kind=row["kind"],
            payload=row["payload"] or {},
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    def delete_pending_enrollment(self, user_id: str, kind: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM mfa_pending WHERE user_id = %s AND kind = %s", (user_id, kind)
            )

    def purge_expired_enrollments(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM mfa_pending WHERE expires_at <= %s", (now or utcnow(),)
            )
            return cur.rowcount

    # sessions
    def _session_from_row(self, row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_jti=row["refresh_jti"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            last_seen_at=row["last_seen_at"],
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
            device_fingerprint=row.get("device_fingerprint"),
            country=row.get("country"),
            latitude=row.get("latitude"),
            longitude=row.get("longitude"),
            mfa_verified=row.get("mfa_verified", False),
            rotation_count=int(row.get("rotation_count") or 0),
            revoked_at=row.get("revoked_at"),
            revoked_reason=row.get("revoked_reason"),
        )

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int,
        *,
        ip_addr: str | None = None,
        user_agent: str | None = None,
        device_fingerprint: str | None = None,
        country: str | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
        mfa_verified: bool = False,
    ) -> Session:
        sess = Session.new(
            user_id,
            ttl_minutes,
            ip_addr=ip_addr,
            user_agent=user_agent,
            device_fingerprint=device_fingerprint,
            country=country,
            latitude=latitude,
            longitude=longitude,
            mfa_verified=mfa_verified,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, user_id, refresh_jti, created_at, expires_at, last_seen_at,
                        ip_addr, user_agent, device_fingerprint, country, latitude, longitude,
                        mfa_verified, rotation_count
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 0)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.refresh_jti,
                        sess.created_at,
                        sess.expires_at,
                        sess.last_seen_at,
                        ip_addr,
                        user_agent,
                        device_fingerprint,
                        country,
                        latitude,
                        longitude,
                        mfa_verified,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        sid = _as_uuid(session_id)
        if sid is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (sid,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_sessions(
        self, user_id: str, *, include_revoked: bool = False, limit: Optional[int] = None
    ) -> List[Session]:
        query = "SELECT * FROM auth_session WHERE user_id = %s"
        params: list[Any] = [user_id]
        if not include_revoked:
            query += " AND revoked_at IS NULL"
        query += " ORDER BY last_seen_at DESC"
        if limit:
            query += " LIMIT %s"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._session_from_row(r) for r in rows]

    def rotate_refresh_jti(
        self, session_id: str, expected_jti: str, new_jti: str
    ) -> Optional[Session]:
        """Single-statement compare-and-set; at most one concurrent caller matches."""
        sid = _as_uuid(session_id)
        if sid is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET refresh_jti = %s, rotation_count = rotation_count + 1, last_seen_at = now()
                WHERE id = %s AND refresh_jti = %s AND revoked_at IS NULL
                RETURNING *
                """,
                (new_jti, sid, expected_jti),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(
        self,
        session_id: str,
        *,
        ip_addr: str | None = None,
        user_agent: str | None = None,
    ) -> Optional[Session]:
        sid = _as_uuid(session_id)
        if sid is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET last_seen_at = now(),
                    ip_addr = COALESCE(%s, ip_addr),
                    user_agent = COALESCE(%s, user_agent)
                WHERE id = %s AND revoked_at IS NULL
                RETURNING *
                """,
                (ip_addr, user_agent, sid),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def revoke_session(self, session_id: str, reason: str = "revoked") -> bool:
        sid = _as_uuid(session_id)
        if sid is None:
            return False
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET revoked_at = now(), revoked_reason = %s
                WHERE id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (reason, sid),
            ).fetchone()
        return row is not None

    def revoke_user_sessions(
        self, user_id: str, reason: str = "revoked", *, except_session_id: str | None = None
    ) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE auth_session SET revoked_at = now(), revoked_reason = %s
                WHERE user_id = %s AND revoked_at IS NULL
                  AND (%s::uuid IS NULL OR id <> %s::uuid)
                RETURNING id
                """,
                (reason, user_id, except_session_id, except_session_id),
            ).fetchall()
        return [str(r["id"]) for r in rows]

    def count_active_sessions(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS n FROM auth_session
                WHERE revoked_at IS NULL AND expires_at > %s
                """,
                (now or utcnow(),),
            ).fetchone()
        return int(row["n"]) if row else 0

    # audit
    def append_audit_entry(self, entry: AuditLogEntry) -> AuditLogEntry:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_log (id, ts, event_type, user_id, ip_address, user_agent, details, suspicious)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        entry.id,
                        entry.timestamp,
                        entry.event_type,
                        entry.user_id,
                        entry.ip_address,
                        entry.user_agent,
                        json.dumps(entry.details, default=str),
                        entry.suspicious,
                    ),
                )
        except (errors.OperationalError, PoolTimeout) as exc:
            raise StoreUnavailable("audit write failed", {"error": type(exc).__name__}) from exc
        return entry

    def _audit_from_row(self, row: dict) -> AuditLogEntry:
        return AuditLogEntry(
            id=str(row["id"]),
            timestamp=row["ts"],
            event_type=row["event_type"],
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            details=row.get("details") or {},
            suspicious=row.get("suspicious", False),
        )

    @staticmethod
    def _audit_where(
        event_type: Optional[str],
        user_id: Optional[str],
        date_from: Optional[datetime],
        date_to: Optional[datetime],
    ) -> Tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if event_type:
            clauses.append("event_type = %s")
            params.append(event_type)
        if user_id:
            uid = _as_uuid(user_id)
            if uid is None:
                # Not an id any row can carry
                clauses.append("FALSE")
            else:
                clauses.append("user_id = %s")
                params.append(uid)
        if date_from is not None:
            clauses.append("ts >= %s")
            params.append(date_from)
        if date_to is not None:
            clauses.append("ts <= %s")
            params.append(date_to)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def query_audit_entries(
        self,
        *,
        event_type: Optional[str] = None,
        user_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 50,
        ascending: bool = False,
    ) -> Tuple[List[AuditLogEntry], int]:
        where, params = self._audit_where(event_type, user_id, date_from, date_to)
        order = "ASC" if ascending else "DESC"
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT count(*) AS n FROM audit_log{where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM audit_log{where} ORDER BY ts {order}, id {order} LIMIT %s OFFSET %s",
                [*params, limit, offset],
            ).fetchall()
        return [self._audit_from_row(r) for r in rows], int(total_row["n"]) if total_row else 0

    def audit_daily_counts(
        self, since: datetime, event_types: Sequence[str]
    ) -> List[Tuple[str, str, int]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT to_char(date_trunc('day', ts AT TIME ZONE 'UTC'), 'YYYY-MM-DD') AS day,
                       event_type, count(*) AS n
                FROM audit_log
                WHERE ts >= %s AND event_type = ANY(%s)
                GROUP BY 1, 2 ORDER BY 1, 2
                """,
                (since, list(event_types)),
            ).fetchall()
        return [(r["day"], r["event_type"], int(r["n"])) for r in rows]

    def count_audit_entries(
        self, *, since: Optional[datetime] = None, suspicious_only: bool = False
    ) -> Dict[str, int]:
        clauses: list[str] = []
        params: list[Any] = []
        if since is not None:
            clauses.append("ts >= %s")
            params.append(since)
        if suspicious_only:
            clauses.append("suspicious")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT event_type, count(*) AS n FROM audit_log{where} GROUP BY event_type",
                params,
            ).fetchall()
        return {r["event_type"]: int(r["n"]) for r in rows}

    # blocked ips
    def block_ip(
        self, ip: str, reason: Optional[str] = None, created_by: Optional[str] = None
    ) -> BlockedIP:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO blocked_ip (ip, reason, created_at, created_by)
                VALUES (%s, %s, now(), %s)
                ON CONFLICT (ip) DO UPDATE SET reason = EXCLUDED.reason, created_by = EXCLUDED.created_by
                RETURNING *
                """,
                (ip, reason, created_by),
            ).fetchone()
        return BlockedIP(
            ip=row["ip"],
            reason=row.get("reason"),
            created_at=row["created_at"],
            created_by=str(row["created_by"]) if row.get("created_by") else None,
        )

    def unblock_ip(self, ip: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM blocked_ip WHERE ip = %s", (ip,))
            return cur.rowcount > 0

    def is_ip_blocked(self, ip: str) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS hit FROM blocked_ip WHERE ip = %s", (ip,)).fetchone()
        return row is not None

    def list_blocked_ips(self) -> List[BlockedIP]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM blocked_ip ORDER BY created_at DESC").fetchall()
        return [
            BlockedIP(
                ip=r["ip"],
                reason=r.get("reason"),
                created_at=r["created_at"],
                created_by=str(r["created_by"]) if r.get("created_by") else None,
            )
            for r in rows
        ]
