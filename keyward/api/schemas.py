from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

# Maximum nested JSON depth accepted in MFA proofs
MAX_JSON_DEPTH = 8
MAX_PROOF_FIELD_LENGTH = 16384


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)
    elif isinstance(obj, str) and len(obj) > MAX_PROOF_FIELD_LENGTH:
        raise ValueError("proof field too long")


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})

MFAKind = Literal["totp", "webauthn"]


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class RegisterResponse(BaseModel):
    user_id: str
    email: str
    role: str


class LoginRequest(BaseModel):
    # Not format-validated: a malformed identifier is just an unknown account
    email: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class MFASetupRequest(BaseModel):
    kind: MFAKind
    mfa_ticket: Optional[str] = Field(default=None, max_length=4096)


class MFAConfirmRequest(BaseModel):
    kind: MFAKind
    proof: Dict[str, Any] = Field(default_factory=dict)
    code: Optional[str] = Field(default=None, max_length=10)
    mfa_ticket: Optional[str] = Field(default=None, max_length=4096)

    @field_validator("proof")
    @classmethod
    def _validate_proof(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value

    @model_validator(mode="after")
    def _merge_code(self):
        # Shorthand for TOTP clients: {"code": "123456"}
        if self.code and "code" not in self.proof:
            self.proof = {**self.proof, "code": self.code}
        return self


class MFAChallengeRequest(BaseModel):
    mfa_ticket: str = Field(..., max_length=4096)
    kind: Optional[MFAKind] = None


class MFAVerifyRequest(BaseModel):
    mfa_ticket: str = Field(..., max_length=4096)
    kind: Optional[MFAKind] = None
    proof: Dict[str, Any] = Field(default_factory=dict)
    code: Optional[str] = Field(default=None, max_length=10)

    @field_validator("proof")
    @classmethod
    def _validate_proof(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value

    @model_validator(mode="after")
    def _merge_code(self):
        if self.code and "code" not in self.proof:
            self.proof = {**self.proof, "code": self.code}
        if not self.proof:
            raise ValueError("proof or code is required")
        return self


class RevokeAllRequest(BaseModel):
    keep_current: bool = True


class BlockIPRequest(BaseModel):
    ip: str = Field(..., min_length=2, max_length=45)
    reason: Optional[str] = Field(default=None, max_length=512)


class BlockedIPResponse(BaseModel):
    ip: str
    reason: Optional[str] = None
    created_by: Optional[str] = None
    created_at: str
