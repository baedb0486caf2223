from __future__ import annotations

import asyncio
import hashlib
import json
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import (
    APIRouter,
    Depends,
    Header,
    HTTPException,
    Path,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.responses import StreamingResponse

from keyward.api.schemas import (
    BlockedIPResponse,
    BlockIPRequest,
    Envelope,
    LoginRequest,
    MFAChallengeRequest,
    MFAConfirmRequest,
    MFASetupRequest,
    MFAVerifyRequest,
    PasswordChangeRequest,
    RegisterRequest,
    RegisterResponse,
    RevokeAllRequest,
    TokenRefreshRequest,
)
from keyward.logging import get_logger
from keyward.service.auth import RequestContext, device_fingerprint
from keyward.service.errors import ForbiddenError, ServiceError
from keyward.service.runtime import check_rate_limit, get_runtime
from keyward.service.tokens import AuthContext
from keyward.storage.models import BlockedIP

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

# Fields pushed to live audit subscribers
_LIVE_FIELDS = ("id", "event_type", "timestamp", "user_id", "ip_address", "details")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce a token-bucket limit; raises 429 when exhausted."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail={
                "status": "error",
                "error": {"code": "rate_limited", "message": "rate limit exceeded"},
            },
            headers={"Retry-After": str(max(1, reset_seconds))},
        )
    return info


def _client_ip(request: Request) -> Optional[str]:
    runtime = get_runtime()
    if runtime.settings.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            # Left-most entry is the original client
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    return request.client.host if request.client else None


def _request_context(request: Request) -> RequestContext:
    user_agent = request.headers.get("user-agent")
    return RequestContext(
        ip_address=_client_ip(request),
        user_agent=user_agent,
        device_fingerprint=device_fingerprint(
            request.headers.get("x-device-fingerprint"), user_agent
        ),
    )


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:24]


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


async def get_admin_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization, required_role="admin")


def _blocked_view(record: BlockedIP) -> Dict[str, Any]:
    return BlockedIPResponse(
        ip=record.ip,
        reason=record.reason,
        created_by=record.created_by,
        created_at=record.created_at.isoformat(),
    ).model_dump()


# auth


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    runtime = get_runtime()
    ctx = _request_context(request)
    await _enforce_rate_limit(
        runtime,
        f"register:{ctx.ip_address}",
        runtime.settings.register_rate_limit_per_minute,
        60,
    )
    user = await runtime.auth.register(body.email, body.password, ctx)
    return Envelope(
        status="ok",
        data=RegisterResponse(user_id=user.id, email=user.email, role=user.role).model_dump(),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Returns a token pair, or ``mfa_required`` with a short-lived ``mfa_ticket``
    when the account has a second factor or the login looked anomalous.

    Raises:
        401: invalid credentials
        403: login denied by the anomaly gate
        429: rate limited or account locked
    """
    runtime = get_runtime()
    ctx = _request_context(request)
    await _enforce_rate_limit(
        runtime,
        f"login:{_digest(body.email.strip().lower())}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    await _enforce_rate_limit(
        runtime,
        f"login_ip:{ctx.ip_address}",
        runtime.settings.login_rate_limit_per_minute * 5,
        60,
    )
    result = await runtime.auth.login(body.email, body.password, ctx)
    return Envelope(status="ok", data=result.to_dict())


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    ctx = _request_context(request)
    await _enforce_rate_limit(
        runtime,
        f"refresh:{ctx.ip_address}",
        runtime.settings.refresh_rate_limit_per_minute,
        60,
    )
    pair = await runtime.auth.refresh(body.refresh_token, ctx)
    return Envelope(status="ok", data=pair.to_dict())


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(principal, _request_context(request))
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    """Change password; every other session of the user is revoked."""
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        principal, body.current_password, body.new_password, _request_context(request)
    )
    return Envelope(status="ok", data={"message": "password changed", "sessions_revoked": revoked})


# mfa


async def _optional_user(authorization: Optional[str] = Header(None)) -> Optional[AuthContext]:
    if not authorization:
        return None
    return get_runtime().auth.authenticate(authorization)


async def _enforce_mfa_rate_limit(runtime, ctx: RequestContext, ticket: Optional[str]) -> None:
    subject = _digest(ticket) if ticket else ctx.ip_address
    await _enforce_rate_limit(
        runtime, f"mfa:{subject}", runtime.settings.mfa_rate_limit_per_minute, 60
    )


@router.post("/auth/mfa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup(
    body: MFASetupRequest,
    request: Request,
    principal: Optional[AuthContext] = Depends(_optional_user),
):
    """Start enrolling a factor, authenticated by bearer token or login ticket."""
    runtime = get_runtime()
    ctx = _request_context(request)
    await _enforce_mfa_rate_limit(runtime, ctx, body.mfa_ticket)
    challenge = await runtime.auth.begin_enrollment(
        body.kind, ctx, auth=principal, ticket=None if principal else body.mfa_ticket
    )
    return Envelope(status="ok", data=challenge)


@router.post("/auth/mfa/confirm", response_model=Envelope, tags=["mfa"])
async def mfa_confirm(
    body: MFAConfirmRequest,
    request: Request,
    principal: Optional[AuthContext] = Depends(_optional_user),
):
    runtime = get_runtime()
    ctx = _request_context(request)
    await _enforce_mfa_rate_limit(runtime, ctx, body.mfa_ticket)
    result = await runtime.auth.confirm_enrollment(
        body.kind,
        body.proof,
        ctx,
        auth=principal,
        ticket=None if principal else body.mfa_ticket,
    )
    return Envelope(status="ok", data=result)


@router.post("/auth/mfa/challenge", response_model=Envelope, tags=["mfa"])
async def mfa_challenge(body: MFAChallengeRequest, request: Request):
    runtime = get_runtime()
    ctx = _request_context(request)
    await _enforce_mfa_rate_limit(runtime, ctx, body.mfa_ticket)
    challenge = await runtime.auth.begin_mfa(body.mfa_ticket, body.kind, ctx)
    return Envelope(status="ok", data=challenge)


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["mfa"])
async def mfa_verify(body: MFAVerifyRequest, request: Request):
    runtime = get_runtime()
    ctx = _request_context(request)
    await _enforce_mfa_rate_limit(runtime, ctx, body.mfa_ticket)
    result = await runtime.auth.verify_mfa(body.mfa_ticket, body.kind, body.proof, ctx)
    return Envelope(status="ok", data=result.to_dict())


@router.get("/auth/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.auth.mfa_status(principal))


@router.delete("/auth/mfa/webauthn/{method_id}", response_model=Envelope, tags=["mfa"])
async def mfa_remove_webauthn(
    request: Request,
    method_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.auth.remove_webauthn(principal, method_id, _request_context(request))
    return Envelope(status="ok", data={"removed": method_id})


# sessions


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data={"items": runtime.auth.list_sessions(principal)})


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    request: Request,
    session_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    revoked = await runtime.auth.revoke_session(principal, session_id, _request_context(request))
    return Envelope(status="ok", data={"session_id": session_id, "revoked": revoked})


@router.post("/sessions/revoke_all", response_model=Envelope, tags=["sessions"])
async def revoke_all_sessions(
    request: Request,
    body: Optional[RevokeAllRequest] = None,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    keep_current = body.keep_current if body is not None else True
    revoked = await runtime.auth.revoke_all_sessions(
        principal, _request_context(request), keep_current=keep_current
    )
    return Envelope(status="ok", data={"revoked": revoked, "count": len(revoked)})


# admin


@router.get("/admin/logs", response_model=Envelope, tags=["admin"])
async def admin_logs(
    event_type: Optional[str] = Query(None, max_length=64),
    user_id: Optional[str] = Query(None, max_length=128),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=1000),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    items, total = runtime.audit.query(
        event_type=event_type,
        user_id=user_id,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )
    return Envelope(
        status="ok",
        data={"items": items, "total": total, "page": page, "limit": runtime.audit.page_limit(limit)},
    )


@router.get("/admin/logs/recent", response_model=Envelope, tags=["admin"])
async def admin_logs_recent(
    limit: int = Query(20, ge=1, le=200),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    return Envelope(status="ok", data={"items": runtime.audit.recent(limit)})


@router.get("/admin/logs/export", tags=["admin"])
async def admin_logs_export(
    event_type: Optional[str] = Query(None, max_length=64),
    user_id: Optional[str] = Query(None, max_length=128),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    principal: AuthContext = Depends(get_admin_user),
):
    """Stream matching audit records as newline-delimited JSON, oldest first."""
    runtime = get_runtime()

    async def _lines():
        async for record in runtime.audit.export(
            event_type=event_type, user_id=user_id, date_from=date_from, date_to=date_to
        ):
            yield json.dumps(record, default=str) + "\n"

    logger.info("audit_export_started", admin_id=principal.user_id, event_type=event_type)
    return StreamingResponse(
        _lines(),
        media_type="application/x-ndjson",
        headers={"Content-Disposition": 'attachment; filename="audit-log.ndjson"'},
    )


@router.get("/admin/metrics", response_model=Envelope, tags=["admin"])
async def admin_metrics(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.audit.metrics())


@router.get("/admin/analytics/login-trends", response_model=Envelope, tags=["admin"])
async def admin_login_trends(
    days: int = Query(7, ge=1, le=90),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    return Envelope(status="ok", data={"days": days, "items": runtime.audit.login_trends(days)})


@router.post("/admin/block-ip", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_block_ip(
    body: BlockIPRequest,
    request: Request,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    record = await runtime.auth.block_ip(principal, body.ip, body.reason, _request_context(request))
    return Envelope(status="ok", data=_blocked_view(record))


@router.delete("/admin/block-ip/{ip}", response_model=Envelope, tags=["admin"])
async def admin_unblock_ip(
    request: Request,
    ip: str = Path(..., max_length=45),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    removed = await runtime.auth.unblock_ip(principal, ip, _request_context(request))
    if not removed:
        raise _http_error("not_found", "ip is not blocked", status_code=404)
    return Envelope(status="ok", data={"ip": ip, "removed": True})


@router.get("/admin/block-ip", response_model=Envelope, tags=["admin"])
async def admin_list_blocked_ips(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    items = [_blocked_view(r) for r in runtime.store.list_blocked_ips()]
    return Envelope(status="ok", data={"items": items})


def _live_view(record: Dict[str, Any]) -> Dict[str, Any]:
    return {key: record[key] for key in _LIVE_FIELDS if key in record}


def _stream_close_code(runtime, access_token: Optional[str]) -> Optional[int]:
    """Close code for a stream whose token no longer authorizes it, else None."""
    try:
        runtime.auth.authenticate(
            f"Bearer {access_token}" if access_token else None, required_role="admin"
        )
    except ForbiddenError:
        return 4403
    except ServiceError:
        return 4401
    return None


async def _pump(ws: WebSocket, subscription, authorize, recheck_seconds: float) -> None:
    """Forward subscription records until the client goes away.

    ``authorize`` runs before every send and whenever the stream has been idle
    for ``recheck_seconds``; a non-None result closes the socket with that code.
    """
    receiver = asyncio.ensure_future(ws.receive())
    try:
        while True:
            nxt = asyncio.ensure_future(subscription.get())
            done, _ = await asyncio.wait(
                {nxt, receiver}, timeout=recheck_seconds, return_when=asyncio.FIRST_COMPLETED
            )
            if nxt not in done:
                nxt.cancel()
            if nxt in done or not done:
                close_code = authorize()
                if close_code is not None:
                    await ws.close(code=close_code)
                    return
            if nxt in done:
                try:
                    record = nxt.result()
                except StopAsyncIteration:
                    return
                await ws.send_json(_live_view(record))
            if receiver in done:
                message = receiver.result()
                if message.get("type") == "websocket.disconnect":
                    return
                # Client chatter after the handshake is ignored
                receiver = asyncio.ensure_future(ws.receive())
    finally:
        receiver.cancel()


@router.websocket("/admin/logs/stream")
async def admin_logs_stream(ws: WebSocket):
    """Live audit feed for administrators.

    The first client message must be ``{"access_token": ...}``. The token is
    re-checked while the stream is open, so logout, session revocation or a
    role change closes it. Slow readers never block writers; they receive a
    ``gap`` record counting what they lost.
    """
    runtime = get_runtime()
    await ws.accept()
    request_id = str(uuid4())
    user_id: Optional[str] = None
    try:
        init = await ws.receive_json()
        access_token = init.get("access_token") if isinstance(init, dict) else None
        close_code = _stream_close_code(runtime, access_token)
        if close_code is not None:
            await ws.close(code=close_code)
            return
        user_id = runtime.auth.authenticate(f"Bearer {access_token}").user_id
        subscription = runtime.audit.subscribe()
        logger.info("audit_stream_opened", admin_id=user_id, request_id=request_id)
        try:
            await ws.send_json(
                Envelope(
                    status="ok", data={"subscribed": True}, request_id=request_id
                ).model_dump()
            )
            await _pump(
                ws,
                subscription,
                lambda: _stream_close_code(runtime, access_token),
                runtime.settings.audit_stream_recheck_seconds,
            )
        finally:
            subscription.close()
            logger.info("audit_stream_closed", admin_id=user_id, request_id=request_id)
    except WebSocketDisconnect:
        return
    except json.JSONDecodeError:
        logger.warning("websocket_invalid_json", request_id=request_id)
        await ws.close(code=1003)
    except Exception as exc:
        logger.error(
            "unhandled_websocket_error",
            user_id=user_id,
            request_id=request_id,
            error_type=type(exc).__name__,
        )
        try:
            await ws.close(code=1011)
        except RuntimeError:
            # Already closed by the peer
            return
