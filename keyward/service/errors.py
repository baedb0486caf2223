from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    - service_unavailable (503)

    Authentication failures additionally carry a ``reason``. It is copied into
    ``detail`` for logs and the audit trail; the API only shows it to callers
    for the few reasons a client must act on (see ``api/error_handling.py``).
    """

    status_code: int = 400
    error_code: str = "validation_error"
    reason: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = dict(detail or {})
        if self.reason and "reason" not in self.detail:
            self.detail["reason"] = self.reason


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# Authentication taxonomy


class InvalidCredentials(AuthenticationError):
    """Unknown account, wrong password, or disabled account; deliberately indistinguishable."""
    reason = "invalid_credentials"


class AccountLocked(RateLimitedError):
    reason = "account_locked"

    def __init__(
        self,
        message: str = "account temporarily locked",
        *,
        retry_after: int = 0,
        triggered: bool = False,
    ) -> None:
        super().__init__(message, detail={"retry_after": retry_after})
        self.retry_after = retry_after
        # True only for the attempt that crossed the threshold
        self.triggered = triggered


class TokenInvalid(AuthenticationError):
    """Malformed, mis-signed, or wrong-type token."""
    reason = "token_invalid"


class TokenExpired(AuthenticationError):
    reason = "token_expired"


class TokenReused(AuthenticationError):
    """A refresh token that was already rotated was presented again; the family is revoked."""
    reason = "token_reused"


class SessionRevoked(AuthenticationError):
    reason = "session_revoked"


class MFARequired(AuthenticationError):
    reason = "mfa_required"


class MFAFailed(AuthenticationError):
    reason = "mfa_failed"


class NoSuchMethod(MFAFailed):
    reason = "no_such_method"


class ChallengeExpired(MFAFailed):
    reason = "challenge_expired"


class ChallengeMismatch(MFAFailed):
    reason = "challenge_mismatch"


class InvalidProof(MFAFailed):
    reason = "invalid_proof"


class CodeReplayed(MFAFailed):
    """A TOTP code for an already-consumed time step."""
    reason = "code_replayed"


class CloneDetected(MFAFailed):
    """WebAuthn signature counter did not advance."""
    reason = "clone_detected"


class MFALocked(RateLimitedError):
    reason = "mfa_locked"


class AnomalyDenied(ForbiddenError):
    reason = "anomaly_denied"


class StorageUnavailable(ServiceError):
    """Durable audit or credential storage could not be written (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "InvalidCredentials",
    "AccountLocked",
    "TokenInvalid",
    "TokenExpired",
    "TokenReused",
    "SessionRevoked",
    "MFARequired",
    "MFAFailed",
    "NoSuchMethod",
    "ChallengeExpired",
    "ChallengeMismatch",
    "InvalidProof",
    "CodeReplayed",
    "CloneDetected",
    "MFALocked",
    "AnomalyDenied",
    "StorageUnavailable",
]
