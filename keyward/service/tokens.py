from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol

from keyward.config import Settings
from keyward.logging import get_logger
from keyward.service.errors import (
    SessionRevoked,
    TokenExpired,
    TokenInvalid,
    TokenReused,
)
from keyward.service.sessions import SessionRegistry
from keyward.storage.models import Session, User

if TYPE_CHECKING:
    from keyward.service.audit import AuditPipeline

logger = get_logger(__name__)


class TokenBackend(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_session(self, user_id: str, ttl_minutes: int, **device: Any) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def rotate_refresh_jti(
        self, session_id: str, expected_jti: str, new_jti: str
    ) -> Optional[Session]: ...

    def touch_session(self, session_id: str, **meta: Any) -> Optional[Session]: ...

    def revoke_session(self, session_id: str, reason: str = "revoked") -> bool: ...

    def revoke_user_sessions(
        self, user_id: str, reason: str = "revoked", *, except_session_id: str | None = None
    ) -> List[str]: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    session_id: str
    mfa_verified: bool = False


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    session_id: str
    expires_at: str
    token_type: str = "bearer"

    def to_dict(self) -> Dict[str, str]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.expires_at,
            "session_id": self.session_id,
        }


@dataclass
class DeviceInfo:
    """Where a session was opened from; copied onto the session row."""

    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None
    country: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def as_session_kwargs(self) -> Dict[str, Any]:
        return {
            "ip_addr": self.ip_addr,
            "user_agent": self.user_agent,
            "device_fingerprint": self.device_fingerprint,
            "country": self.country,
            "latitude": self.latitude,
            "longitude": self.longitude,
        }


class TokenService:
    """HS256 access tokens plus rotating refresh-token families.

    A session row is a refresh family. Its ``refresh_jti`` is the only live
    refresh identifier; rotation swaps it with a compare-and-set in the store,
    so exactly one of several concurrent presentations of the same token wins.
    """

    def __init__(
        self,
        store: TokenBackend,
        settings: Settings,
        *,
        audit: Optional["AuditPipeline"] = None,
        sessions: Optional[SessionRegistry] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.audit = audit
        self.sessions = sessions or SessionRegistry(store, settings)
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=30)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # jwt
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str, *, token_type: str) -> dict[str, Any]:
        """Verify signature, issuer, audience, expiry and type; raise on any failure."""
        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
        except ValueError:
            raise TokenInvalid("invalid token")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalid("invalid token")
        # Reject anything but HS256 to prevent algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            raise TokenInvalid("invalid token")

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise TokenInvalid("invalid token")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid("invalid token")
        if not isinstance(payload, dict):
            raise TokenInvalid("invalid token")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalid("invalid token")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenInvalid("invalid token")
        if payload.get("token_type") != token_type:
            raise TokenInvalid("invalid token")
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            raise TokenInvalid("invalid token")
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            raise TokenExpired("token expired")
        return payload

    def _claims(self, user: User, session: Session, token_type: str, ttl: timedelta, jti: str) -> dict:
        now = self._now()
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "sid": session.id,
            "role": user.role,
            "token_type": token_type,
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }

    # issuance
    def issue_access_token(self, session: Session, user: User) -> tuple[str, int]:
        claims = self._claims(
            user,
            session,
            "access",
            timedelta(minutes=self.settings.access_token_ttl_minutes),
            str(uuid.uuid4()),
        )
        return self._encode_jwt(claims), claims["exp"]

    def _issue_refresh_token(self, session: Session, user: User) -> str:
        remaining = session.expires_at - self._now()
        return self._encode_jwt(
            self._claims(user, session, "refresh", remaining, session.refresh_jti)
        )

    def _pair(self, session: Session, user: User) -> TokenPair:
        access_token, access_exp = self.issue_access_token(session, user)
        return TokenPair(
            access_token=access_token,
            refresh_token=self._issue_refresh_token(session, user),
            session_id=session.id,
            expires_at=datetime.fromtimestamp(access_exp, timezone.utc).isoformat(),
        )

    def issue_initial_session(
        self, user: User, device: DeviceInfo, *, mfa_verified: bool = False
    ) -> tuple[Session, TokenPair]:
        """Open a new refresh family for ``user`` and mint its first token pair."""
        session = self.store.create_session(
            user.id,
            self.settings.refresh_token_ttl_minutes,
            mfa_verified=mfa_verified,
            **device.as_session_kwargs(),
        )
        logger.info("session_created", user_id=user.id, session_id=session.id)
        return session, self._pair(session, user)

    async def rotate(
        self,
        presented_refresh_token: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        payload = self._decode_jwt(presented_refresh_token, token_type="refresh")
        session_id = payload.get("sid")
        jti = payload.get("jti")
        if not session_id or not jti:
            raise TokenInvalid("invalid token")
        session = self.store.get_session(session_id)
        if not session or session.user_id != payload.get("sub"):
            raise TokenInvalid("invalid token")
        if session.revoked:
            raise SessionRevoked("session revoked")
        if session.expires_at <= self._now():
            raise TokenExpired("session expired")
        user = self.store.get_user(session.user_id)
        if not user or not user.is_active:
            self.store.revoke_session(session_id, "user_disabled")
            raise SessionRevoked("session revoked")

        rotated = self.store.rotate_refresh_jti(session_id, jti, str(uuid.uuid4()))
        if rotated is None:
            await self._handle_reuse(session, jti, ip_addr=ip_addr, user_agent=user_agent)
        # Rotation is a use of the session: record when and where it happened
        rotated = self.sessions.touch(session_id, ip_addr=ip_addr, user_agent=user_agent) or rotated
        logger.info(
            "refresh_rotated",
            user_id=user.id,
            session_id=session_id,
            rotation_count=rotated.rotation_count,
        )
        return self._pair(rotated, user)

    async def _handle_reuse(
        self,
        session: Session,
        jti: str,
        *,
        ip_addr: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        # Only the caller that actually revokes the family reports the reuse
        if not self.store.revoke_session(session.id, "token_reuse"):
            raise SessionRevoked("session revoked")
        logger.warning(
            "refresh_token_reuse_detected", user_id=session.user_id, session_id=session.id
        )
        if self.audit is not None:
            await self.audit.record(
                "token_reuse_detected",
                user_id=session.user_id,
                ip_address=ip_addr,
                user_agent=user_agent,
                details={"session_id": session.id, "presented_jti": jti},
                suspicious=True,
            )
        raise TokenReused("authentication failed")

    # revocation
    def revoke(self, session_id: str, reason: str = "logout") -> bool:
        """Idempotent; returns True only when this call revoked the session."""
        return self.store.revoke_session(session_id, reason)

    def revoke_all(
        self, user_id: str, reason: str = "revoke_all", *, except_session_id: Optional[str] = None
    ) -> List[str]:
        return self.store.revoke_user_sessions(
            user_id, reason, except_session_id=except_session_id
        )

    # verification
    def verify_access_token(self, token: str) -> AuthContext:
        payload = self._decode_jwt(token, token_type="access")
        session_id = payload.get("sid")
        session = self.store.get_session(session_id) if session_id else None
        if not session or session.user_id != payload.get("sub"):
            raise TokenInvalid("invalid token")
        if session.revoked:
            raise SessionRevoked("session revoked")
        if session.expires_at <= self._now():
            raise TokenExpired("session expired")
        user = self.store.get_user(session.user_id)
        if not user or not user.is_active or payload.get("role") != user.role:
            raise TokenInvalid("invalid token")
        return AuthContext(
            user_id=user.id,
            role=user.role,
            session_id=session.id,
            mfa_verified=session.mfa_verified,
        )

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    # pending-login tickets
    def issue_mfa_ticket(
        self,
        user: User,
        *,
        decision: str,
        enrollment_required: bool,
        device: DeviceInfo,
        factors: Optional[List[str]] = None,
    ) -> str:
        now = self._now()
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "token_type": "mfa_pending",
            "jti": str(uuid.uuid4()),
            "decision": decision,
            "enrollment_required": enrollment_required,
            "factors": list(factors or []),
            "device": {**device.as_session_kwargs(), **device.extra},
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self.settings.mfa_ticket_ttl_seconds)).timestamp()),
        }
        return self._encode_jwt(payload)

    def read_mfa_ticket(self, ticket: str) -> dict[str, Any]:
        payload = self._decode_jwt(ticket, token_type="mfa_pending")
        if not payload.get("sub"):
            raise TokenInvalid("invalid token")
        return payload
