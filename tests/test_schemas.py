"""Request models and the error envelope."""

import json

import pytest
from pydantic import ValidationError

from keyward.api.error_handling import (
    _STATUS_TO_CODE,
    _client_view,
    _error_code_for_status,
    _error_response,
)
from keyward.api.schemas import (
    Envelope,
    ErrorBody,
    LoginRequest,
    MFAConfirmRequest,
    MFAVerifyRequest,
    RegisterRequest,
)
from keyward.service.errors import (
    AccountLocked,
    CloneDetected,
    CodeReplayed,
    MFARequired,
    TokenExpired,
    TokenReused,
)


class TestErrorBody:
    def test_known_codes_accepted(self):
        for code in set(_STATUS_TO_CODE.values()):
            assert ErrorBody(code=code, message="x").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="x")

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")
        assert Envelope(status="ok").request_id


class TestErrorResponse:
    def test_unmapped_status_falls_back_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "service_unavailable"

    def test_response_body_shape(self):
        response = _error_response(429, "slow down", {"retry_after": 5}, headers={"Retry-After": "5"})
        body = json.loads(response.body)
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "5"
        assert body["status"] == "error"
        assert body["error"] == {"code": "rate_limited", "message": "slow down", "details": {"retry_after": 5}}
        assert body["data"] is None

    @pytest.mark.parametrize(
        "exc",
        [
            TokenReused("authentication failed"),
            CodeReplayed("code already used"),
            CloneDetected("counter did not advance", detail={"stored_count": 5, "presented_count": 5}),
        ],
    )
    def test_authentication_failures_hide_their_reason(self, exc):
        assert _client_view(exc) == ("authentication failed", None)
        assert exc.detail["reason"] == exc.reason

    def test_actionable_reasons_stay_visible(self):
        assert _client_view(TokenExpired("token expired")) == ("token expired", {"reason": "token_expired"})
        assert _client_view(MFARequired("mfa verification required"))[1] == {"reason": "mfa_required"}
        _, details = _client_view(AccountLocked(retry_after=30))
        assert details["retry_after"] == 30


class TestRegisterRequest:
    def test_email_is_normalized(self):
        request = RegisterRequest(email="  Alice@Example.COM ", password="long enough")
        assert request.email == "alice@example.com"

    def test_zero_width_characters_are_stripped(self):
        request = RegisterRequest(email="al\u200bice@example.com", password="long enough")
        assert request.email == "alice@example.com"

    @pytest.mark.parametrize("email", ["alice", "alice@localhost", "a b@example.com", "@example.com"])
    def test_malformed_email_rejected(self, email):
        with pytest.raises(ValidationError):
            RegisterRequest(email=email, password="long enough")

    @pytest.mark.parametrize("password", ["short", "x" * 129])
    def test_password_length_bounds(self, password):
        with pytest.raises(ValidationError):
            RegisterRequest(email="alice@example.com", password=password)


class TestLoginRequest:
    def test_identifier_is_not_format_checked(self):
        assert LoginRequest(email="not an email", password="x").email == "not an email"

    def test_empty_password_rejected(self):
        with pytest.raises(ValidationError):
            LoginRequest(email="alice@example.com", password="")


class TestMFAProofs:
    def test_code_shorthand_merges_into_proof(self):
        request = MFAConfirmRequest(kind="totp", code="123456")
        assert request.proof == {"code": "123456"}

    def test_explicit_proof_wins_over_shorthand(self):
        request = MFAVerifyRequest(mfa_ticket="t", proof={"code": "111111"}, code="222222")
        assert request.proof == {"code": "111111"}

    def test_deeply_nested_proof_rejected(self):
        nested = {}
        cursor = nested
        for _ in range(12):
            cursor["n"] = {}
            cursor = cursor["n"]
        with pytest.raises(ValidationError):
            MFAConfirmRequest(kind="webauthn", proof=nested)

    def test_oversized_proof_field_rejected(self):
        with pytest.raises(ValidationError):
            MFAVerifyRequest(mfa_ticket="t", proof={"signature": "A" * 20000})

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError):
            MFAConfirmRequest(kind="sms", code="123456")
