from __future__ import annotations

import base64
import hashlib
import json
import os
import threading
import uuid
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from cryptography.fernet import Fernet, InvalidToken

from keyward.logging import get_logger
from keyward.storage.errors import ConstraintViolation, StoreUnavailable
from keyward.storage.models import (
    AuditLogEntry,
    BlockedIP,
    Credential,
    PendingEnrollment,
    Session,
    TOTPMethod,
    User,
    WebAuthnMethod,
    utcnow,
)


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_mfa_cipher(key_material: str | None) -> Fernet:
    material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
    if not material:
        raise RuntimeError("MFA_SECRET_KEY or JWT_SECRET is required to encrypt MFA secrets")
    return Fernet(derive_cipher_key(material))


class MemoryStore:
    """In-process backing store, snapshotted to ``<fs_root>/state`` as JSON."""

    def __init__(
        self, fs_root: str = "/tmp/keyward", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, Credential] = {}
        self.sessions: Dict[str, Session] = {}
        self.totp_methods: Dict[str, TOTPMethod] = {}
        self.webauthn_methods: Dict[str, WebAuthnMethod] = {}
        self.pending_enrollments: Dict[Tuple[str, str], PendingEnrollment] = {}
        self.audit_log: List[AuditLogEntry] = []
        self.blocked_ips: Dict[str, BlockedIP] = {}
        # RLock so compound operations can call helpers that also lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> None:
        self._state_path()

    # users
    def create_user(
        self, email: str, *, role: str = "user", meta: Optional[Dict] = None
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), email=email, role=role, meta=dict(meta or {}))
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)[:limit]

    def count_users(self, *, active_only: bool = True) -> int:
        with self._data_lock:
            return sum(1 for u in self.users.values() if u.is_active or not active_only)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return user

    def set_user_active(self, user_id: str, active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = active
            user.disabled_at = None if active else utcnow()
            self._persist_state()
            return user

    def set_mfa_enabled(self, user_id: str, enabled: bool) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.mfa_enabled = enabled
            self._persist_state()

    # credentials
    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
            self.credentials[user_id] = Credential(
                user_id=user_id, password_hash=password_hash, password_algo=password_algo
            )
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            return (cred.password_hash, cred.password_algo) if cred else None

    # mfa: totp
    def _encrypt_mfa_secret(self, secret: str) -> str:
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: str) -> str:
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.error("mfa_secret_decrypt_failed")
            raise

    def save_totp_method(self, user_id: str, secret: str) -> TOTPMethod:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            record = TOTPMethod(user_id=user_id, secret=self._encrypt_mfa_secret(secret))
            self.totp_methods[user_id] = record
            self._persist_state()
            return TOTPMethod(user_id=user_id, secret=secret, enrolled_at=record.enrolled_at)

    def get_totp_method(self, user_id: str) -> Optional[TOTPMethod]:
        with self._data_lock:
            record = self.totp_methods.get(user_id)
            if not record:
                return None
            return TOTPMethod(
                user_id=record.user_id,
                secret=self._decrypt_mfa_secret(record.secret),
                enrolled_at=record.enrolled_at,
                last_used_step=record.last_used_step,
            )

    def delete_totp_method(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.totp_methods.pop(user_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    def consume_totp_step(self, user_id: str, step: int) -> bool:
        """Record ``step`` as used only if it is newer than the last consumed step."""
        with self._data_lock:
            record = self.totp_methods.get(user_id)
            if not record:
                return False
            if record.last_used_step is not None and step <= record.last_used_step:
                return False
            record.last_used_step = step
            self._persist_state()
            return True

    # mfa: webauthn
    def add_webauthn_method(
        self,
        user_id: str,
        credential_id: str,
        public_key: str,
        sign_count: int,
        label: Optional[str] = None,
    ) -> WebAuthnMethod:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            if any(m.credential_id == credential_id for m in self.webauthn_methods.values()):
                raise ConstraintViolation(
                    "credential already registered", {"field": "credential_id"}
                )
            method = WebAuthnMethod(
                id=str(uuid.uuid4()),
                user_id=user_id,
                credential_id=credential_id,
                public_key=public_key,
                sign_count=sign_count,
                label=label,
            )
            self.webauthn_methods[method.id] = method
            self._persist_state()
            return method

    def list_webauthn_methods(self, user_id: str) -> List[WebAuthnMethod]:
        with self._data_lock:
            methods = [m for m in self.webauthn_methods.values() if m.user_id == user_id]
            return sorted(methods, key=lambda m: m.created_at)

    def get_webauthn_method_by_credential(self, credential_id: str) -> Optional[WebAuthnMethod]:
        with self._data_lock:
            return next(
                (m for m in self.webauthn_methods.values() if m.credential_id == credential_id),
                None,
            )

    def advance_webauthn_counter(self, method_id: str, new_count: int) -> bool:
        """Store ``new_count`` only if it strictly exceeds the stored counter."""
        with self._data_lock:
            method = self.webauthn_methods.get(method_id)
            if not method or new_count <= method.sign_count:
                return False
            method.sign_count = new_count
            method.last_used_at = utcnow()
            self._persist_state()
            return True

    def delete_webauthn_method(self, user_id: str, method_id: str) -> bool:
        with self._data_lock:
            method = self.webauthn_methods.get(method_id)
            if not method or method.user_id != user_id:
                return False
            self.webauthn_methods.pop(method_id, None)
            self._persist_state()
            return True

    # mfa: pending enrollment
    def save_pending_enrollment(self, pending: PendingEnrollment) -> PendingEnrollment:
        with self._data_lock:
            self.pending_enrollments[(pending.user_id, pending.kind)] = pending
            self._persist_state()
            return pending

    def get_pending_enrollment(self, user_id: str, kind: str) -> Optional[PendingEnrollment]:
        with self._data_lock:
            return self.pending_enrollments.get((user_id, kind))

    def delete_pending_enrollment(self, user_id: str, kind: str) -> None:
        with self._data_lock:
            if self.pending_enrollments.pop((user_id, kind), None) is not None:
                self._persist_state()

    def purge_expired_enrollments(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            stale = [key for key, p in self.pending_enrollments.items() if p.is_expired(now)]
            for key in stale:
                self.pending_enrollments.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    # sessions
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
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
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
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def list_sessions(
        self, user_id: str, *, include_revoked: bool = False, limit: Optional[int] = None
    ) -> List[Session]:
        with self._data_lock:
            rows = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and (include_revoked or not s.revoked)
            ]
            rows.sort(key=lambda s: s.last_seen_at, reverse=True)
            return rows[:limit] if limit else rows

    def rotate_refresh_jti(
        self, session_id: str, expected_jti: str, new_jti: str
    ) -> Optional[Session]:
        """Compare-and-set the live refresh identifier; ``None`` when the swap loses."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked or sess.refresh_jti != expected_jti:
                return None
            sess.refresh_jti = new_jti
            sess.rotation_count += 1
            sess.last_seen_at = utcnow()
            self._persist_state()
            return sess

    def touch_session(
        self,
        session_id: str,
        *,
        ip_addr: str | None = None,
        user_agent: str | None = None,
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked:
                return None
            sess.last_seen_at = utcnow()
            if ip_addr:
                sess.ip_addr = ip_addr
            if user_agent:
                sess.user_agent = user_agent
            self._persist_state()
            return sess

    def revoke_session(self, session_id: str, reason: str = "revoked") -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked:
                return False
            sess.revoked_at = utcnow()
            sess.revoked_reason = reason
            self._persist_state()
            return True

    def revoke_user_sessions(
        self, user_id: str, reason: str = "revoked", *, except_session_id: str | None = None
    ) -> List[str]:
        with self._data_lock:
            now = utcnow()
            revoked: List[str] = []
            for sess in self.sessions.values():
                if sess.user_id != user_id or sess.revoked or sess.id == except_session_id:
                    continue
                sess.revoked_at = now
                sess.revoked_reason = reason
                revoked.append(sess.id)
            if revoked:
                self._persist_state()
            return revoked

    def count_active_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            return sum(1 for s in self.sessions.values() if s.is_active(now))

    # audit
    def append_audit_entry(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._data_lock:
            self.audit_log.append(entry)
            try:
                self._persist_state()
            except RuntimeError as exc:
                self.audit_log.pop()
                raise StoreUnavailable("audit write failed", {"error": str(exc)}) from exc
            return entry

    def _filter_audit(
        self,
        event_type: Optional[str],
        user_id: Optional[str],
        date_from: Optional[datetime],
        date_to: Optional[datetime],
    ) -> List[AuditLogEntry]:
        return [
            e
            for e in self.audit_log
            if (not event_type or e.event_type == event_type)
            and (not user_id or e.user_id == user_id)
            and (date_from is None or e.timestamp >= date_from)
            and (date_to is None or e.timestamp <= date_to)
        ]

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
        with self._data_lock:
            rows = self._filter_audit(event_type, user_id, date_from, date_to)
        rows.sort(key=lambda e: e.timestamp, reverse=not ascending)
        return rows[offset : offset + limit], len(rows)

    def audit_daily_counts(
        self, since: datetime, event_types: Sequence[str]
    ) -> List[Tuple[str, str, int]]:
        with self._data_lock:
            counts = Counter(
                (e.timestamp.date().isoformat(), e.event_type)
                for e in self.audit_log
                if e.timestamp >= since and e.event_type in event_types
            )
        return sorted((day, etype, n) for (day, etype), n in counts.items())

    def count_audit_entries(
        self, *, since: Optional[datetime] = None, suspicious_only: bool = False
    ) -> Dict[str, int]:
        with self._data_lock:
            counts = Counter(
                e.event_type
                for e in self.audit_log
                if (since is None or e.timestamp >= since)
                and (e.suspicious or not suspicious_only)
            )
        return dict(counts)

    # blocked ips
    def block_ip(
        self, ip: str, reason: Optional[str] = None, created_by: Optional[str] = None
    ) -> BlockedIP:
        with self._data_lock:
            record = BlockedIP(ip=ip, reason=reason, created_by=created_by)
            self.blocked_ips[ip] = record
            self._persist_state()
            return record

    def unblock_ip(self, ip: str) -> bool:
        with self._data_lock:
            removed = self.blocked_ips.pop(ip, None) is not None
            if removed:
                self._persist_state()
            return removed

    def is_ip_blocked(self, ip: str) -> bool:
        with self._data_lock:
            return ip in self.blocked_ips

    def list_blocked_ips(self) -> List[BlockedIP]:
        with self._data_lock:
            return sorted(self.blocked_ips.values(), key=lambda b: b.created_at, reverse=True)

    # snapshot
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": c.user_id,
                    "password_hash": c.password_hash,
                    "password_algo": c.password_algo,
                    "updated_at": _dt(c.updated_at),
                }
                for c in self.credentials.values()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "totp_methods": [
                {
                    "user_id": m.user_id,
                    "secret": m.secret,
                    "enrolled_at": _dt(m.enrolled_at),
                    "last_used_step": m.last_used_step,
                }
                for m in self.totp_methods.values()
            ],
            "webauthn_methods": [
                {
                    "id": m.id,
                    "user_id": m.user_id,
                    "credential_id": m.credential_id,
                    "public_key": m.public_key,
                    "sign_count": m.sign_count,
                    "label": m.label,
                    "created_at": _dt(m.created_at),
                    "last_used_at": _dt(m.last_used_at),
                }
                for m in self.webauthn_methods.values()
            ],
            "pending_enrollments": [
                {
                    "user_id": p.user_id,
                    "kind": p.kind,
                    "payload": p.payload,
                    "created_at": _dt(p.created_at),
                    "expires_at": _dt(p.expires_at),
                }
                for p in self.pending_enrollments.values()
            ],
            "audit_log": [e.to_record() for e in self.audit_log],
            "blocked_ips": [
                {
                    "ip": b.ip,
                    "reason": b.reason,
                    "created_at": _dt(b.created_at),
                    "created_by": b.created_by,
                }
                for b in self.blocked_ips.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2, default=str))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            c["user_id"]: Credential(
                user_id=c["user_id"],
                password_hash=c["password_hash"],
                password_algo=c.get("password_algo", ""),
                updated_at=_parse_dt(c.get("updated_at")) or utcnow(),
            )
            for c in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.totp_methods = {
            m["user_id"]: TOTPMethod(
                user_id=m["user_id"],
                secret=m["secret"],
                enrolled_at=_parse_dt(m["enrolled_at"]),
                last_used_step=m.get("last_used_step"),
            )
            for m in data.get("totp_methods", [])
        }
        self.webauthn_methods = {
            m["id"]: WebAuthnMethod(
                id=m["id"],
                user_id=m["user_id"],
                credential_id=m["credential_id"],
                public_key=m["public_key"],
                sign_count=int(m.get("sign_count", 0)),
                label=m.get("label"),
                created_at=_parse_dt(m["created_at"]),
                last_used_at=_parse_dt(m.get("last_used_at")),
            )
            for m in data.get("webauthn_methods", [])
        }
        self.pending_enrollments = {}
        for p in data.get("pending_enrollments", []):
            pending = PendingEnrollment(
                user_id=p["user_id"],
                kind=p["kind"],
                payload=p.get("payload") or {},
                created_at=_parse_dt(p["created_at"]),
                expires_at=_parse_dt(p["expires_at"]),
            )
            self.pending_enrollments[(pending.user_id, pending.kind)] = pending
        self.audit_log = [
            AuditLogEntry(
                id=e["id"],
                timestamp=_parse_dt(e["timestamp"]),
                event_type=e["event_type"],
                user_id=e.get("user_id"),
                ip_address=e.get("ip_address"),
                user_agent=e.get("user_agent"),
                details=e.get("details") or {},
                suspicious=bool(e.get("suspicious", False)),
            )
            for e in data.get("audit_log", [])
        ]
        self.blocked_ips = {
            b["ip"]: BlockedIP(
                ip=b["ip"],
                reason=b.get("reason"),
                created_at=_parse_dt(b["created_at"]),
                created_by=b.get("created_by"),
            )
            for b in data.get("blocked_ips", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "role": user.role,
            "is_active": user.is_active,
            "mfa_enabled": user.mfa_enabled,
            "created_at": _dt(user.created_at),
            "disabled_at": _dt(user.disabled_at),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            role=data.get("role", "user"),
            is_active=data.get("is_active", True),
            mfa_enabled=data.get("mfa_enabled", False),
            created_at=_parse_dt(data["created_at"]),
            disabled_at=_parse_dt(data.get("disabled_at")),
            meta=data.get("meta"),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "refresh_jti": session.refresh_jti,
            "created_at": _dt(session.created_at),
            "expires_at": _dt(session.expires_at),
            "last_seen_at": _dt(session.last_seen_at),
            "ip_addr": session.ip_addr,
            "user_agent": session.user_agent,
            "device_fingerprint": session.device_fingerprint,
            "country": session.country,
            "latitude": session.latitude,
            "longitude": session.longitude,
            "mfa_verified": session.mfa_verified,
            "rotation_count": session.rotation_count,
            "revoked_at": _dt(session.revoked_at),
            "revoked_reason": session.revoked_reason,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            refresh_jti=data["refresh_jti"],
            created_at=_parse_dt(data["created_at"]),
            expires_at=_parse_dt(data["expires_at"]),
            last_seen_at=_parse_dt(data.get("last_seen_at") or data["created_at"]),
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
            device_fingerprint=data.get("device_fingerprint"),
            country=data.get("country"),
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
            mfa_verified=data.get("mfa_verified", False),
            rotation_count=int(data.get("rotation_count", 0)),
            revoked_at=_parse_dt(data.get("revoked_at")),
            revoked_reason=data.get("revoked_reason"),
        )


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(raw: Any) -> Optional[datetime]:
    if not raw:
        return None
    return datetime.fromisoformat(raw)
