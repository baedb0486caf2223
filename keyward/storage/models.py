from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    role: str = "user"
    is_active: bool = True
    mfa_enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)
    disabled_at: Optional[datetime] = None
    meta: Dict | None = None


@dataclass
class Credential:
    user_id: str
    password_hash: str
    password_algo: str
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class TOTPMethod:
    user_id: str
    secret: str
    enrolled_at: datetime = field(default_factory=utcnow)
    last_used_step: Optional[int] = None

    kind = "totp"


@dataclass
class WebAuthnMethod:
    id: str
    user_id: str
    credential_id: str
    public_key: str
    sign_count: int = 0
    label: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None

    kind = "webauthn"


@dataclass
class PendingEnrollment:
    """Unconfirmed MFA enrollment; discarded once ``expires_at`` passes."""

    user_id: str
    kind: str
    payload: Dict[str, Any]
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class Session:
    """One device/browser login; ``id`` doubles as the refresh-token family id."""

    id: str
    user_id: str
    refresh_jti: str
    created_at: datetime
    expires_at: datetime
    last_seen_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None
    country: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    mfa_verified: bool = False
    rotation_count: int = 0
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None

    @property
    def family_id(self) -> str:
        return self.id

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return not self.revoked and self.expires_at > (now or utcnow())

    @classmethod
    def new(
        cls,
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
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_jti=str(uuid.uuid4()),
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            last_seen_at=now,
            ip_addr=ip_addr,
            user_agent=user_agent,
            device_fingerprint=device_fingerprint,
            country=country,
            latitude=latitude,
            longitude=longitude,
            mfa_verified=mfa_verified,
        )


@dataclass
class AuditLogEntry:
    id: str
    timestamp: datetime
    event_type: str
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    suspicious: bool = False

    def to_record(self) -> Dict[str, Any]:
        """Flat record shape shared by the query, export, and live feed surfaces."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type,
            "user_id": self.user_id,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "details": self.details,
            "suspicious": self.suspicious,
        }


@dataclass
class BlockedIP:
    ip: str
    reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    created_by: Optional[str] = None
