from __future__ import annotations

import hashlib
import ipaddress
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from keyward.config import Settings
from keyward.logging import get_logger
from keyward.service.anomaly import AnomalyGate, Decision, LoginAttempt
from keyward.service.audit import AuditPipeline
from keyward.service.credentials import CredentialStore, normalize_identifier
from keyward.service.errors import (
    AccountLocked,
    AnomalyDenied,
    AuthenticationError,
    CloneDetected,
    ForbiddenError,
    InvalidCredentials,
    MFAFailed,
    MFALocked,
    MFARequired,
    NoSuchMethod,
    StorageUnavailable,
    TokenInvalid,
    ValidationError,
)
from keyward.service.geo import GeoResolver
from keyward.service.mfa import MFAEngine
from keyward.service.sessions import SessionRegistry
from keyward.service.tokens import AuthContext, DeviceInfo, TokenPair, TokenService
from keyward.storage.models import BlockedIP, User

logger = get_logger(__name__)


def device_fingerprint(header_value: Optional[str], user_agent: Optional[str]) -> Optional[str]:
    """Client-supplied fingerprint if present, else a hash of the user agent."""
    if header_value:
        return header_value.strip()[:128] or None
    if user_agent:
        return hashlib.sha256(user_agent.encode()).hexdigest()[:32]
    return None


@dataclass
class RequestContext:
    """Per-request origin data passed explicitly into every flow."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None


@dataclass
class LoginResult:
    status: str
    user: User
    tokens: Optional[TokenPair] = None
    mfa_type: Optional[str] = None
    mfa_ticket: Optional[str] = None
    enrollment_required: bool = False
    decision: str = Decision.ALLOW.value
    available_methods: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        if self.tokens is not None:
            return {
                "status": self.status,
                "user_id": self.user.id,
                "role": self.user.role,
                **self.tokens.to_dict(),
            }
        return {
            "status": self.status,
            "user_id": self.user.id,
            "mfa_required": True,
            "mfa_type": self.mfa_type,
            "mfa_ticket": self.mfa_ticket,
            "enrollment_required": self.enrollment_required,
            "available_methods": self.available_methods,
            "decision": self.decision,
        }


class AuthService:
    """Login, step-up, refresh and logout flows over the security components.

    Every credential, MFA and anomaly outcome is audited before the caller
    sees a response; an audit write failure aborts the flow.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        credentials: CredentialStore,
        tokens: TokenService,
        mfa: MFAEngine,
        anomaly: AnomalyGate,
        sessions: SessionRegistry,
        audit: AuditPipeline,
        geo: GeoResolver,
    ) -> None:
        self.store = store
        self.settings = settings
        self.credentials = credentials
        self.tokens = tokens
        self.mfa = mfa
        self.anomaly = anomaly
        self.sessions = sessions
        self.audit = audit
        self.geo = geo

    async def _audit(
        self,
        event_type: str,
        ctx: RequestContext,
        *,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        suspicious: bool = False,
    ) -> None:
        await self.audit.record(
            event_type,
            user_id=user_id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            details=details,
            suspicious=suspicious,
        )

    # registration / login
    async def register(self, email: str, password: str, ctx: RequestContext) -> User:
        if not self.settings.allow_registration:
            raise ForbiddenError("registration is disabled")
        user = await self.credentials.register(email, password)
        await self._audit("registered", ctx, user_id=user.id, details={"email": user.email})
        return user

    async def login(self, email: str, password: str, ctx: RequestContext) -> LoginResult:
        identifier = normalize_identifier(email)
        try:
            check = await self.credentials.verify(identifier, password)
        except AccountLocked as exc:
            if exc.triggered:
                await self._audit(
                    "account_locked",
                    ctx,
                    details={"email": identifier, "retry_after": exc.retry_after},
                    suspicious=True,
                )
            else:
                await self._audit(
                    "login_failed", ctx, details={"email": identifier, "reason": "account_locked"}
                )
            raise
        except InvalidCredentials:
            await self._audit(
                "login_failed", ctx, details={"email": identifier, "reason": "invalid_credentials"}
            )
            raise

        user = check.user
        point = await self.geo.resolve(ctx.ip_address)
        device = DeviceInfo(
            ip_addr=ctx.ip_address,
            user_agent=ctx.user_agent,
            device_fingerprint=ctx.device_fingerprint,
            country=point.country if point else None,
            latitude=point.latitude if point else None,
            longitude=point.longitude if point else None,
        )
        assessment = self.anomaly.assess(
            LoginAttempt(
                user_id=user.id,
                ip_address=ctx.ip_address,
                device_fingerprint=ctx.device_fingerprint,
                geo=point,
                recent_failures=check.recent_failures,
            ),
            self.sessions.recent_history(user.id),
        )

        if assessment.decision is Decision.DENY:
            await self._audit(
                "login_denied",
                ctx,
                user_id=user.id,
                details=assessment.to_details(),
                suspicious=True,
            )
            raise AnomalyDenied("login denied")

        enrolled = self.mfa.enrolled_kinds(user)
        if assessment.decision is Decision.STEP_UP:
            await self._audit(
                "login_step_up",
                ctx,
                user_id=user.id,
                details={**assessment.to_details(), "enrollment_required": not enrolled},
                suspicious=True,
            )
        if assessment.decision is Decision.STEP_UP or enrolled:
            ticket = self.tokens.issue_mfa_ticket(
                user,
                decision=assessment.decision.value,
                enrollment_required=not enrolled,
                device=device,
                factors=list(assessment.factors),
            )
            logger.info(
                "login_mfa_pending",
                user_id=user.id,
                decision=assessment.decision.value,
                enrollment_required=not enrolled,
            )
            return LoginResult(
                status="mfa_required",
                user=user,
                mfa_type=self.mfa.preferred_kind(user),
                mfa_ticket=ticket,
                enrollment_required=not enrolled,
                decision=assessment.decision.value,
                available_methods=enrolled or self.mfa.kinds,
            )

        return await self._complete_login(
            user, device, ctx, mfa_verified=False, details=assessment.to_details()
        )

    async def _complete_login(
        self,
        user: User,
        device: DeviceInfo,
        ctx: RequestContext,
        *,
        mfa_verified: bool,
        details: Optional[Dict[str, Any]] = None,
    ) -> LoginResult:
        session, pair = self.tokens.issue_initial_session(user, device, mfa_verified=mfa_verified)
        try:
            await self._audit(
                "login_success",
                ctx,
                user_id=user.id,
                details={**(details or {}), "session_id": session.id, "mfa": mfa_verified},
            )
        except StorageUnavailable:
            self.tokens.revoke(session.id, "audit_unavailable")
            raise
        await self.credentials.clear_failures(user.email)
        return LoginResult(status="authenticated", user=user, tokens=pair)

    # pending-login MFA
    def _ticket_user(self, ticket: str) -> tuple[User, Dict[str, Any]]:
        payload = self.tokens.read_mfa_ticket(ticket)
        user = self.store.get_user(payload["sub"])
        if not user or not user.is_active:
            raise TokenInvalid("invalid token")
        return user, payload

    @staticmethod
    def _ticket_device(payload: Dict[str, Any]) -> DeviceInfo:
        device = payload.get("device") or {}
        return DeviceInfo(
            ip_addr=device.get("ip_addr"),
            user_agent=device.get("user_agent"),
            device_fingerprint=device.get("device_fingerprint"),
            country=device.get("country"),
            latitude=device.get("latitude"),
            longitude=device.get("longitude"),
        )

    async def begin_mfa(
        self, ticket: str, kind: Optional[str], ctx: RequestContext
    ) -> Dict[str, Any]:
        user, _ = self._ticket_user(ticket)
        kind = kind or self.mfa.preferred_kind(user)
        if kind is None:
            raise MFARequired("mfa enrollment required")
        return await self.mfa.begin_assert(user, kind)

    async def _verify_factor(
        self, user: User, kind: Optional[str], proof: Dict[str, Any], ctx: RequestContext
    ) -> str:
        kind = kind or self.mfa.preferred_kind(user)
        try:
            if kind is None:
                raise NoSuchMethod("no mfa method enrolled")
            await self.mfa.verify(
                user, kind, proof, ip_address=ctx.ip_address, user_agent=ctx.user_agent
            )
        except CloneDetected:
            # Already recorded as suspicious by the engine
            raise
        except (MFAFailed, MFALocked) as exc:
            await self._audit(
                "mfa_failed",
                ctx,
                user_id=user.id,
                details={"kind": kind, "reason": exc.detail.get("reason")},
            )
            raise
        await self._audit("mfa_verified", ctx, user_id=user.id, details={"kind": kind})
        return kind

    async def verify_mfa(
        self,
        ticket: str,
        kind: Optional[str],
        proof: Dict[str, Any],
        ctx: RequestContext,
    ) -> LoginResult:
        user, payload = self._ticket_user(ticket)
        kind = await self._verify_factor(user, kind, proof, ctx)
        return await self._complete_login(
            user,
            self._ticket_device(payload),
            ctx,
            mfa_verified=True,
            details={"decision": payload.get("decision"), "mfa_kind": kind},
        )

    # enrollment
    async def begin_enrollment(
        self,
        kind: str,
        ctx: RequestContext,
        *,
        auth: Optional[AuthContext] = None,
        ticket: Optional[str] = None,
    ) -> Dict[str, Any]:
        user = self._enrolling_user(auth, ticket)
        challenge = await self.mfa.begin_enroll(user, kind)
        await self._audit("mfa_enroll_started", ctx, user_id=user.id, details={"kind": kind})
        return challenge

    async def confirm_enrollment(
        self,
        kind: str,
        proof: Dict[str, Any],
        ctx: RequestContext,
        *,
        auth: Optional[AuthContext] = None,
        ticket: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Confirm a pending enrollment.

        With a login ticket (mandatory enrollment after STEP_UP) a successful
        confirmation also completes the login and the result carries tokens.
        """
        user = self._enrolling_user(auth, ticket)
        try:
            method = await self.mfa.confirm_enroll(user, kind, proof)
        except MFAFailed as exc:
            await self._audit(
                "mfa_failed",
                ctx,
                user_id=user.id,
                details={"kind": kind, "stage": "enroll", "reason": exc.detail.get("reason")},
            )
            raise
        await self._audit("mfa_enrolled", ctx, user_id=user.id, details=method)
        if ticket is None:
            return {"enrolled": method}
        payload = self.tokens.read_mfa_ticket(ticket)
        result = await self._complete_login(
            user,
            self._ticket_device(payload),
            ctx,
            mfa_verified=True,
            details={"decision": payload.get("decision"), "mfa_kind": kind, "enrolled": True},
        )
        return {"enrolled": method, **result.to_dict()}

    def _enrolling_user(self, auth: Optional[AuthContext], ticket: Optional[str]) -> User:
        if auth is not None:
            user = self.store.get_user(auth.user_id)
            if not user:
                raise TokenInvalid("invalid token")
            # Adding a factor to an MFA account needs a session that passed MFA
            if not auth.mfa_verified and self.mfa.enrolled_kinds(user):
                raise MFARequired("mfa verification required")
            return user
        if not ticket:
            raise AuthenticationError("authentication required")
        user, payload = self._ticket_user(ticket)
        # A ticket only allows enrolling a first factor; enrolled users must verify
        if not payload.get("enrollment_required") or self.mfa.enrolled_kinds(user):
            raise MFARequired("mfa verification required")
        return user

    def mfa_status(self, auth: AuthContext) -> Dict[str, Any]:
        return self.mfa.status(self._user(auth))

    async def remove_webauthn(self, auth: AuthContext, method_id: str, ctx: RequestContext) -> None:
        user = self._user(auth)
        self.mfa.remove_webauthn(user, method_id)
        await self._audit(
            "mfa_method_removed", ctx, user_id=user.id, details={"kind": "webauthn", "method_id": method_id}
        )

    # tokens / sessions
    def authenticate(self, authorization: Optional[str], *, required_role: Optional[str] = None) -> AuthContext:
        token = self.tokens.extract_bearer(authorization)
        if not token:
            raise AuthenticationError("authentication required")
        auth = self.tokens.verify_access_token(token)
        if required_role and not _role_allows(auth.role, required_role):
            raise ForbiddenError("insufficient permissions")
        return auth

    async def refresh(self, refresh_token: str, ctx: RequestContext) -> TokenPair:
        pair = await self.tokens.rotate(
            refresh_token, ip_addr=ctx.ip_address, user_agent=ctx.user_agent
        )
        session = self.store.get_session(pair.session_id)
        await self._audit(
            "token_refreshed",
            ctx,
            user_id=session.user_id if session else None,
            details={"session_id": pair.session_id},
        )
        return pair

    async def logout(self, auth: AuthContext, ctx: RequestContext) -> None:
        self.tokens.revoke(auth.session_id, "logout")
        await self._audit("logout", ctx, user_id=auth.user_id, details={"session_id": auth.session_id})

    async def change_password(
        self, auth: AuthContext, current_password: str, new_password: str, ctx: RequestContext
    ) -> int:
        """Rotate the credential and revoke every other session; returns the revoked count."""
        if not await self.credentials.check_password(auth.user_id, current_password):
            await self._audit(
                "password_change_failed", ctx, user_id=auth.user_id, details={"reason": "invalid_credentials"}
            )
            raise InvalidCredentials("invalid credentials")
        await self.credentials.rotate(auth.user_id, new_password)
        revoked = self.sessions.revoke_all(
            auth.user_id, "password_changed", except_session_id=auth.session_id
        )
        await self._audit(
            "password_changed", ctx, user_id=auth.user_id, details={"sessions_revoked": len(revoked)}
        )
        return len(revoked)

    def list_sessions(self, auth: AuthContext) -> List[Dict[str, Any]]:
        return self.sessions.list(auth.user_id, current_session_id=auth.session_id)

    async def revoke_session(self, auth: AuthContext, session_id: str, ctx: RequestContext) -> bool:
        self.sessions.get_owned(auth.user_id, session_id)
        revoked = self.sessions.revoke(session_id, "user_revoked")
        if revoked:
            await self._audit(
                "session_revoked", ctx, user_id=auth.user_id, details={"session_id": session_id}
            )
        return revoked

    async def revoke_all_sessions(
        self, auth: AuthContext, ctx: RequestContext, *, keep_current: bool = True
    ) -> List[str]:
        revoked = self.sessions.revoke_all(
            auth.user_id,
            "user_revoked_all",
            except_session_id=auth.session_id if keep_current else None,
        )
        await self._audit(
            "sessions_revoked_all",
            ctx,
            user_id=auth.user_id,
            details={"count": len(revoked), "kept_current": keep_current},
        )
        return revoked

    # admin
    async def block_ip(
        self, auth: AuthContext, ip: str, reason: Optional[str], ctx: RequestContext
    ) -> BlockedIP:
        try:
            normalized = str(ipaddress.ip_address(ip.strip()))
        except ValueError:
            raise ValidationError("invalid ip address", detail={"ip": ip})
        record = self.store.block_ip(normalized, reason, auth.user_id)
        await self._audit(
            "ip_blocked", ctx, user_id=auth.user_id, details={"ip": normalized, "reason": reason}
        )
        return record

    async def unblock_ip(self, auth: AuthContext, ip: str, ctx: RequestContext) -> bool:
        removed = self.store.unblock_ip(ip)
        if removed:
            await self._audit("ip_unblocked", ctx, user_id=auth.user_id, details={"ip": ip})
        return removed

    def _user(self, auth: AuthContext) -> User:
        user = self.store.get_user(auth.user_id)
        if not user:
            raise TokenInvalid("invalid token")
        return user


def _role_allows(role: str, required: str) -> bool:
    if role == required:
        return True
    return role == "admin" and required in {"admin", "user"}
