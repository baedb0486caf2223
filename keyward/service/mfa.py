from __future__ import annotations

import base64
import hashlib
import hmac
import os
import re
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import quote, urlencode

from keyward.config import Settings
from keyward.logging import get_logger
from keyward.service import webauthn
from keyward.service.errors import (
    ChallengeExpired,
    ChallengeMismatch,
    CloneDetected,
    CodeReplayed,
    InvalidProof,
    MFAFailed,
    MFALocked,
    NoSuchMethod,
    NotFoundError,
    ValidationError,
)
from keyward.storage.errors import ConstraintViolation
from keyward.storage.models import PendingEnrollment, User, utcnow
from keyward.storage.redis_cache import RedisCache

if TYPE_CHECKING:
    from keyward.service.audit import AuditPipeline

logger = get_logger(__name__)

_CODE_RE = re.compile(r"^\d{6,8}$")


def generate_totp(secret: str, timestamp: float, *, period: int = 30, digits: int = 6) -> str:
    """RFC 6238 code (HMAC-SHA1) for the step containing ``timestamp``."""
    return totp_for_step(secret, int(timestamp // period), digits=digits)


def totp_for_step(secret: str, step: int, *, digits: int = 6) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    digest = hmac.new(key, step.to_bytes(8, "big"), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


class ChallengeStore:
    """Single-use, TTL-bound challenges; Redis GETDEL when available."""

    def __init__(self, cache: Optional[RedisCache]) -> None:
        self.cache = cache
        self._state_lock = threading.Lock()
        self._challenges: Dict[str, tuple[Dict[str, Any], datetime]] = {}

    async def put(self, challenge: str, payload: Dict[str, Any], ttl_seconds: int) -> None:
        if self.cache:
            await self.cache.set_challenge(challenge, payload, ttl_seconds)
            return
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        with self._state_lock:
            self._purge_locked()
            self._challenges[challenge] = (dict(payload), expires_at)

    async def pop(self, challenge: str) -> Optional[Dict[str, Any]]:
        if self.cache:
            return await self.cache.pop_challenge(challenge)
        with self._state_lock:
            entry = self._challenges.pop(challenge, None)
        if entry is None:
            return None
        payload, expires_at = entry
        if expires_at <= datetime.now(timezone.utc):
            return None
        return payload

    def _purge_locked(self) -> None:
        now = datetime.now(timezone.utc)
        for key in [k for k, (_, exp) in self._challenges.items() if exp <= now]:
            self._challenges.pop(key, None)


class Verifier(ABC):
    """One second-factor kind. ``MFAEngine`` dispatches on ``kind`` only."""

    kind: str = ""

    @abstractmethod
    def is_enrolled(self, user: User) -> bool: ...

    @abstractmethod
    async def begin_enroll(self, user: User) -> Dict[str, Any]: ...

    @abstractmethod
    async def confirm_enroll(self, user: User, proof: Dict[str, Any]) -> Dict[str, Any]: ...

    @abstractmethod
    async def begin_assert(self, user: User) -> Dict[str, Any]: ...

    @abstractmethod
    async def verify(self, user: User, proof: Dict[str, Any]) -> Dict[str, Any]: ...

    def describe(self, user: User) -> Any:
        return None

    def _pending(self, user: User) -> PendingEnrollment:
        pending = self.store.get_pending_enrollment(user.id, self.kind)
        if pending is None:
            raise ChallengeExpired("no enrollment in progress")
        if pending.is_expired():
            self.store.delete_pending_enrollment(user.id, self.kind)
            raise ChallengeExpired("enrollment expired; start again")
        return pending

    def _start_pending(self, user: User, payload: Dict[str, Any]) -> PendingEnrollment:
        now = utcnow()
        pending = PendingEnrollment(
            user_id=user.id,
            kind=self.kind,
            payload=payload,
            created_at=now,
            expires_at=now + timedelta(seconds=self.settings.mfa_enrollment_ttl_seconds),
        )
        return self.store.save_pending_enrollment(pending)


class TotpVerifier(Verifier):
    kind = "totp"

    def __init__(self, store, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock

    def is_enrolled(self, user: User) -> bool:
        return self.store.get_totp_method(user.id) is not None

    def describe(self, user: User) -> Any:
        method = self.store.get_totp_method(user.id)
        if not method:
            return None
        return {"enrolled_at": method.enrolled_at.isoformat()}

    def _provisioning_uri(self, user: User, secret: str) -> str:
        issuer = self.settings.totp_issuer or "keyward"
        label = quote(f"{issuer}:{user.email}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": self.settings.totp_digits,
                "period": self.settings.totp_period_seconds,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    def _matching_step(self, secret: str, code: str) -> Optional[int]:
        if not isinstance(code, str) or not _CODE_RE.match(code):
            raise InvalidProof("invalid code")
        current = int(self.clock() // self.settings.totp_period_seconds)
        drift = self.settings.totp_drift_steps
        for step in range(current - drift, current + drift + 1):
            generated = totp_for_step(secret, step, digits=self.settings.totp_digits)
            # Constant-time comparison
            if generated and hmac.compare_digest(generated, code):
                return step
        return None

    async def begin_enroll(self, user: User) -> Dict[str, Any]:
        secret = base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")
        pending = self._start_pending(user, {"secret": secret})
        return {
            "kind": self.kind,
            "secret": secret,
            "otpauth_uri": self._provisioning_uri(user, secret),
            "expires_at": pending.expires_at.isoformat(),
        }

    async def confirm_enroll(self, user: User, proof: Dict[str, Any]) -> Dict[str, Any]:
        pending = self._pending(user)
        secret = pending.payload.get("secret", "")
        step = self._matching_step(secret, proof.get("code"))
        if step is None:
            raise InvalidProof("invalid code")
        method = self.store.save_totp_method(user.id, secret)
        # The confirming code must not be usable again at login
        self.store.consume_totp_step(user.id, step)
        self.store.delete_pending_enrollment(user.id, self.kind)
        return {"kind": self.kind, "enrolled_at": method.enrolled_at.isoformat()}

    async def begin_assert(self, user: User) -> Dict[str, Any]:
        if not self.is_enrolled(user):
            raise NoSuchMethod("no totp method enrolled")
        return {"kind": self.kind}

    async def verify(self, user: User, proof: Dict[str, Any]) -> Dict[str, Any]:
        method = self.store.get_totp_method(user.id)
        if not method:
            raise NoSuchMethod("no totp method enrolled")
        step = self._matching_step(method.secret, proof.get("code"))
        if step is None:
            raise InvalidProof("invalid code")
        if not self.store.consume_totp_step(user.id, step):
            raise CodeReplayed("code already used")
        return {"kind": self.kind}


class WebAuthnVerifier(Verifier):
    kind = "webauthn"

    def __init__(self, store, settings: Settings, challenges: ChallengeStore) -> None:
        self.store = store
        self.settings = settings
        self.challenges = challenges

    def is_enrolled(self, user: User) -> bool:
        return bool(self.store.list_webauthn_methods(user.id))

    def describe(self, user: User) -> Any:
        return [
            {
                "id": m.id,
                "label": m.label,
                "created_at": m.created_at.isoformat(),
                "last_used_at": m.last_used_at.isoformat() if m.last_used_at else None,
            }
            for m in self.store.list_webauthn_methods(user.id)
        ]

    def _new_challenge(self) -> str:
        return webauthn.b64url_encode(os.urandom(32))

    async def begin_enroll(self, user: User) -> Dict[str, Any]:
        challenge = self._new_challenge()
        pending = self._start_pending(user, {"challenge": challenge})
        return {
            "kind": self.kind,
            "challenge": challenge,
            "rp": {"id": self.settings.webauthn_rp_id, "name": self.settings.webauthn_rp_name},
            "user": {"id": webauthn.b64url_encode(user.id.encode()), "name": user.email},
            "pub_key_cred_params": [{"type": "public-key", "alg": -7}, {"type": "public-key", "alg": -8}],
            "exclude_credentials": [
                {"type": "public-key", "id": m.credential_id}
                for m in self.store.list_webauthn_methods(user.id)
            ],
            "expires_at": pending.expires_at.isoformat(),
        }

    async def confirm_enroll(self, user: User, proof: Dict[str, Any]) -> Dict[str, Any]:
        pending = self._pending(user)
        credential_id = proof.get("credential_id")
        public_key = proof.get("public_key")
        if not credential_id or not public_key:
            raise InvalidProof("credential_id and public_key are required")
        client_data = webauthn.parse_client_data(
            webauthn.b64url_decode(proof.get("client_data_json", ""))
        )
        webauthn.check_client_data(
            client_data,
            expected_type="webauthn.create",
            challenge=pending.payload.get("challenge", ""),
            origin=self.settings.webauthn_origin,
        )
        auth_data = webauthn.parse_authenticator_data(
            webauthn.b64url_decode(proof.get("authenticator_data", ""))
        )
        webauthn.check_authenticator_data(auth_data, rp_id=self.settings.webauthn_rp_id)
        webauthn.load_public_key(public_key)
        try:
            method = self.store.add_webauthn_method(
                user.id,
                credential_id,
                public_key,
                auth_data.sign_count,
                proof.get("label"),
            )
        except ConstraintViolation:
            raise InvalidProof("credential already registered")
        self.store.delete_pending_enrollment(user.id, self.kind)
        return {"kind": self.kind, "method_id": method.id, "label": method.label}

    async def begin_assert(self, user: User) -> Dict[str, Any]:
        methods = self.store.list_webauthn_methods(user.id)
        if not methods:
            raise NoSuchMethod("no webauthn credential registered")
        challenge = self._new_challenge()
        ttl = self.settings.webauthn_challenge_ttl_seconds
        await self.challenges.put(challenge, {"user_id": user.id}, ttl)
        return {
            "kind": self.kind,
            "challenge": challenge,
            "rp_id": self.settings.webauthn_rp_id,
            "timeout": ttl * 1000,
            "allow_credentials": [{"type": "public-key", "id": m.credential_id} for m in methods],
        }

    async def verify(self, user: User, proof: Dict[str, Any]) -> Dict[str, Any]:
        method = self.store.get_webauthn_method_by_credential(proof.get("credential_id") or "")
        if not method or method.user_id != user.id:
            raise NoSuchMethod("unknown credential")
        client_data_raw = webauthn.b64url_decode(proof.get("client_data_json", ""))
        client_data = webauthn.parse_client_data(client_data_raw)
        challenge = client_data.get("challenge")
        outstanding = await self.challenges.pop(challenge) if isinstance(challenge, str) else None
        if outstanding is None:
            raise ChallengeExpired("challenge expired or already used")
        if outstanding.get("user_id") != user.id:
            raise ChallengeMismatch("challenge mismatch")
        webauthn.check_client_data(
            client_data,
            expected_type="webauthn.get",
            challenge=challenge,
            origin=self.settings.webauthn_origin,
        )
        auth_data_raw = webauthn.b64url_decode(proof.get("authenticator_data", ""))
        auth_data = webauthn.parse_authenticator_data(auth_data_raw)
        webauthn.check_authenticator_data(auth_data, rp_id=self.settings.webauthn_rp_id)
        public_key = webauthn.load_public_key(method.public_key)
        signature = webauthn.b64url_decode(proof.get("signature", ""))
        if not webauthn.verify_signature(
            public_key, signature, webauthn.assertion_signed_data(auth_data_raw, client_data_raw)
        ):
            raise InvalidProof("signature verification failed")
        if not self.store.advance_webauthn_counter(method.id, auth_data.sign_count):
            raise CloneDetected(
                "authenticator counter did not advance",
                detail={
                    "method_id": method.id,
                    "stored_count": method.sign_count,
                    "presented_count": auth_data.sign_count,
                },
            )
        return {"kind": self.kind, "method_id": method.id}


class MFAEngine:
    """Registry of verifiers plus the shared attempt lockout."""

    def __init__(
        self,
        store,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        audit: Optional["AuditPipeline"] = None,
        verifiers: Optional[Iterable[Verifier]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.audit = audit
        self.challenges = ChallengeStore(cache)
        self._verifiers: Dict[str, Verifier] = {}
        for verifier in verifiers or (
            TotpVerifier(store, settings),
            WebAuthnVerifier(store, settings, self.challenges),
        ):
            self.register(verifier)
        self._state_lock = threading.Lock()
        self._mfa_attempts: dict[str, tuple[int, datetime]] = {}
        self._mfa_lockouts: dict[str, datetime] = {}

    def register(self, verifier: Verifier) -> None:
        self._verifiers[verifier.kind] = verifier

    @property
    def kinds(self) -> List[str]:
        return list(self._verifiers)

    def verifier(self, kind: str) -> Verifier:
        verifier = self._verifiers.get(kind)
        if verifier is None:
            raise ValidationError("unsupported mfa method", detail={"kind": kind})
        return verifier

    def enrolled_kinds(self, user: User) -> List[str]:
        return [kind for kind, v in self._verifiers.items() if v.is_enrolled(user)]

    def preferred_kind(self, user: User) -> Optional[str]:
        enrolled = self.enrolled_kinds(user)
        if "webauthn" in enrolled:
            return "webauthn"
        return enrolled[0] if enrolled else None

    async def begin_enroll(self, user: User, kind: str) -> Dict[str, Any]:
        challenge = await self.verifier(kind).begin_enroll(user)
        logger.info("mfa_enroll_started", user_id=user.id, kind=kind)
        return challenge

    async def confirm_enroll(self, user: User, kind: str, proof: Dict[str, Any]) -> Dict[str, Any]:
        result = await self.verifier(kind).confirm_enroll(user, proof or {})
        if not user.mfa_enabled:
            self.store.set_mfa_enabled(user.id, True)
            user.mfa_enabled = True
        logger.info("mfa_enrolled", user_id=user.id, kind=kind)
        return result

    async def begin_assert(self, user: User, kind: str) -> Dict[str, Any]:
        return await self.verifier(kind).begin_assert(user)

    async def verify(
        self,
        user: User,
        kind: str,
        proof: Dict[str, Any],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        verifier = self.verifier(kind)
        if await self._is_locked(user.id):
            logger.warning("mfa_locked_out", user_id=user.id)
            raise MFALocked("too many failed attempts")
        try:
            result = await verifier.verify(user, proof or {})
        except CloneDetected as exc:
            logger.warning("webauthn_clone_detected", user_id=user.id, **exc.detail)
            if self.audit is not None:
                await self.audit.record(
                    "webauthn_clone_detected",
                    user_id=user.id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    details=dict(exc.detail),
                    suspicious=True,
                )
            await self._record_failure(user.id)
            raise
        except MFAFailed:
            await self._record_failure(user.id)
            raise
        await self._clear_attempts(user.id)
        return result

    def status(self, user: User) -> Dict[str, Any]:
        methods = {kind: v.describe(user) for kind, v in self._verifiers.items()}
        pending = []
        for kind in self._verifiers:
            entry = self.store.get_pending_enrollment(user.id, kind)
            if entry is not None and not entry.is_expired():
                pending.append(kind)
        return {
            "enabled": bool(self.enrolled_kinds(user)),
            "methods": self.enrolled_kinds(user),
            "totp": methods.get("totp"),
            "webauthn": methods.get("webauthn") or [],
            "pending": pending,
        }

    def remove_webauthn(self, user: User, method_id: str) -> None:
        if not self.store.delete_webauthn_method(user.id, method_id):
            raise NotFoundError("authenticator not found")
        if not self.enrolled_kinds(user):
            self.store.set_mfa_enabled(user.id, False)
            user.mfa_enabled = False
        logger.info("webauthn_removed", user_id=user.id, method_id=method_id)

    # attempt lockout
    async def _is_locked(self, user_id: str) -> bool:
        if self.cache:
            return await self.cache.check_mfa_lockout(user_id)
        now = datetime.now(timezone.utc)
        with self._state_lock:
            locked_until = self._mfa_lockouts.get(user_id)
            if locked_until and locked_until > now:
                return True
            if locked_until:
                self._mfa_lockouts.pop(user_id, None)
        return False

    async def _record_failure(self, user_id: str) -> None:
        max_attempts = self.settings.mfa_max_attempts
        lockout_seconds = self.settings.mfa_lockout_seconds
        if self.cache:
            is_locked, attempts = await self.cache.atomic_mfa_attempt(
                user_id, max_attempts=max_attempts, lockout_seconds=lockout_seconds
            )
            if is_locked and attempts >= 0:
                logger.warning("mfa_lockout_triggered", user_id=user_id, attempts=attempts)
            return
        now = datetime.now(timezone.utc)
        window = timedelta(seconds=lockout_seconds)
        with self._state_lock:
            current = self._mfa_attempts.get(user_id)
            window_start = now
            attempts = 1
            if current:
                count, prev_window_start = current
                if now - prev_window_start < window:
                    attempts = count + 1
                    window_start = prev_window_start
            self._mfa_attempts[user_id] = (attempts, window_start)
            if attempts >= max_attempts:
                self._mfa_lockouts[user_id] = now + window
                self._mfa_attempts.pop(user_id, None)
                logger.warning("mfa_lockout_triggered", user_id=user_id, attempts=attempts)

    async def _clear_attempts(self, user_id: str) -> None:
        if self.cache:
            await self.cache.clear_mfa_attempts(user_id)
            return
        with self._state_lock:
            self._mfa_attempts.pop(user_id, None)
