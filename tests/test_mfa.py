"""MFA engine: TOTP drift and replay, WebAuthn ceremonies and clone detection."""

import pytest

from keyward.config import Settings
from keyward.service.audit import AuditPipeline
from keyward.service.errors import (
    ChallengeExpired,
    ChallengeMismatch,
    CloneDetected,
    CodeReplayed,
    InvalidProof,
    MFALocked,
    NoSuchMethod,
    ValidationError,
)
from keyward.service.mfa import MFAEngine, TotpVerifier, WebAuthnVerifier, generate_totp
from keyward.storage.memory import MemoryStore

PERIOD = 30
NOW = 1_700_000_000.0


class FrozenClock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        totp_issuer="Keyward Test",
        webauthn_rp_id="localhost",
        webauthn_origin="http://localhost",
        mfa_max_attempts=3,
        mfa_lockout_seconds=60,
        audit_retry_backoff_ms=1,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="unit-test-key")


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def engine(memory_store, settings, clock):
    engine = MFAEngine(memory_store, None, settings, audit=AuditPipeline(memory_store, settings))
    engine.register(TotpVerifier(memory_store, settings, clock=clock))
    return engine


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("mfa@example.com")


def _code(secret: str, offset_steps: int = 0, now: float = NOW) -> str:
    return generate_totp(secret, now + offset_steps * PERIOD, period=PERIOD)


async def _enroll_totp(engine, user) -> str:
    started = await engine.begin_enroll(user, "totp")
    secret = started["secret"]
    assert started["otpauth_uri"].startswith("otpauth://totp/")
    await engine.confirm_enroll(user, "totp", {"code": _code(secret)})
    return secret


async def _enroll_webauthn(engine, user, authenticator):
    started = await engine.begin_enroll(user, "webauthn")
    result = await engine.confirm_enroll(user, "webauthn", authenticator.register(started["challenge"]))
    return result["method_id"]


async def _assert(engine, user, authenticator, **kwargs):
    challenge = await engine.begin_assert(user, "webauthn")
    proof = authenticator.assert_(challenge["challenge"], **kwargs)
    return await engine.verify(user, "webauthn", proof)


def test_generate_totp_matches_rfc6238_vector():
    # RFC 6238 appendix B, SHA1, T = 59
    secret = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
    assert generate_totp(secret, 59, digits=8) == "94287082"
    assert generate_totp(secret, 1111111109, digits=8) == "07081804"


async def test_totp_enrollment_marks_user_enabled(engine, user, memory_store):
    await _enroll_totp(engine, user)
    assert memory_store.get_user(user.id).mfa_enabled is True
    assert engine.enrolled_kinds(user) == ["totp"]
    assert memory_store.get_pending_enrollment(user.id, "totp") is None


async def test_totp_secret_encrypted_at_rest(engine, user, memory_store):
    secret = await _enroll_totp(engine, user)
    raw = (memory_store.fs_root / "state" / "memory_store.json").read_text()
    assert secret not in raw


async def test_confirm_without_enrollment_fails(engine, user):
    with pytest.raises(ChallengeExpired):
        await engine.confirm_enroll(user, "totp", {"code": "123456"})


async def test_wrong_enrollment_code_keeps_pending(engine, user, memory_store):
    started = await engine.begin_enroll(user, "totp")
    with pytest.raises(InvalidProof):
        await engine.confirm_enroll(user, "totp", {"code": _code(started["secret"], 5)})
    assert memory_store.get_pending_enrollment(user.id, "totp") is not None
    assert not engine.enrolled_kinds(user)


@pytest.mark.parametrize("offset", [-1, 1])
async def test_totp_accepts_one_step_of_drift(engine, user, clock, offset):
    secret = await _enroll_totp(engine, user)
    clock.now = NOW + 5 * PERIOD
    result = await engine.verify(user, "totp", {"code": _code(secret, offset, now=clock.now)})
    assert result["kind"] == "totp"


@pytest.mark.parametrize("offset", [-2, 2])
async def test_totp_rejects_two_steps_of_drift(engine, user, clock, offset):
    secret = await _enroll_totp(engine, user)
    clock.now = NOW + 5 * PERIOD
    with pytest.raises(InvalidProof):
        await engine.verify(user, "totp", {"code": _code(secret, offset, now=clock.now)})


async def test_totp_code_cannot_be_replayed(engine, user):
    secret = await _enroll_totp(engine, user)
    code = _code(secret, 1)
    await engine.verify(user, "totp", {"code": code})
    with pytest.raises(CodeReplayed):
        await engine.verify(user, "totp", {"code": code})


async def test_enrollment_code_is_consumed(engine, user):
    started = await engine.begin_enroll(user, "totp")
    code = _code(started["secret"])
    await engine.confirm_enroll(user, "totp", {"code": code})
    with pytest.raises(CodeReplayed):
        await engine.verify(user, "totp", {"code": code})


async def test_malformed_totp_code_rejected(engine, user):
    await _enroll_totp(engine, user)
    with pytest.raises(InvalidProof):
        await engine.verify(user, "totp", {"code": "12ab56"})


async def test_repeated_failures_lock_mfa(engine, user, settings):
    secret = await _enroll_totp(engine, user)
    for _ in range(settings.mfa_max_attempts):
        with pytest.raises(InvalidProof):
            await engine.verify(user, "totp", {"code": _code(secret, 9)})
    with pytest.raises(MFALocked):
        await engine.verify(user, "totp", {"code": _code(secret, 1)})


async def test_unknown_kind_rejected(engine, user):
    with pytest.raises(ValidationError):
        await engine.begin_enroll(user, "sms")


async def test_verify_without_method(engine, user):
    with pytest.raises(NoSuchMethod):
        await engine.verify(user, "totp", {"code": "123456"})


async def test_webauthn_enroll_and_assert(engine, user, authenticator, memory_store):
    method_id = await _enroll_webauthn(engine, user, authenticator)
    result = await _assert(engine, user, authenticator)
    assert result["method_id"] == method_id
    assert memory_store.list_webauthn_methods(user.id)[0].sign_count == 1
    assert engine.preferred_kind(user) == "webauthn"


async def test_webauthn_enroll_wrong_origin(engine, user, authenticator_factory):
    rogue = authenticator_factory(origin="https://evil.example")
    started = await engine.begin_enroll(user, "webauthn")
    with pytest.raises(InvalidProof):
        await engine.confirm_enroll(user, "webauthn", rogue.register(started["challenge"]))


async def test_webauthn_enroll_wrong_challenge(engine, user, authenticator):
    await engine.begin_enroll(user, "webauthn")
    with pytest.raises(ChallengeMismatch):
        await engine.confirm_enroll(user, "webauthn", authenticator.register("not-the-challenge"))


async def test_webauthn_challenge_is_single_use(engine, user, authenticator):
    await _enroll_webauthn(engine, user, authenticator)
    challenge = (await engine.begin_assert(user, "webauthn"))["challenge"]
    await engine.verify(user, "webauthn", authenticator.assert_(challenge))
    with pytest.raises(ChallengeExpired):
        await engine.verify(user, "webauthn", authenticator.assert_(challenge))


async def test_webauthn_bad_signature(engine, user, authenticator, authenticator_factory):
    await _enroll_webauthn(engine, user, authenticator)
    impostor = authenticator_factory(credential_id=authenticator.credential_id)
    challenge = (await engine.begin_assert(user, "webauthn"))["challenge"]
    with pytest.raises(InvalidProof):
        await engine.verify(user, "webauthn", impostor.assert_(challenge))


async def test_webauthn_non_increasing_counter_is_clone(engine, user, authenticator, memory_store):
    await _enroll_webauthn(engine, user, authenticator)
    await _assert(engine, user, authenticator, sign_count=5)

    with pytest.raises(CloneDetected):
        await _assert(engine, user, authenticator, sign_count=5)
    with pytest.raises(CloneDetected):
        await _assert(engine, user, authenticator, sign_count=3)

    clones = [e for e in memory_store.audit_log if e.event_type == "webauthn_clone_detected"]
    assert len(clones) == 2
    assert all(e.suspicious for e in clones)
    assert clones[0].details["stored_count"] == 5
    # Counter never moves backwards
    assert memory_store.list_webauthn_methods(user.id)[0].sign_count == 5


async def test_remove_last_webauthn_disables_mfa(engine, user, authenticator, memory_store):
    method_id = await _enroll_webauthn(engine, user, authenticator)
    engine.remove_webauthn(user, method_id)
    assert engine.enrolled_kinds(user) == []
    assert memory_store.get_user(user.id).mfa_enabled is False


async def test_status_lists_methods(engine, user, authenticator):
    await _enroll_totp(engine, user)
    await _enroll_webauthn(engine, user, authenticator)
    status = engine.status(user)
    assert status["enabled"] is True
    assert set(status["methods"]) == {"totp", "webauthn"}
    assert status["webauthn"][0]["label"] == "security key"


def test_verifiers_share_one_interface(memory_store, settings):
    engine = MFAEngine(memory_store, None, settings)
    assert set(engine.kinds) == {"totp", "webauthn"}
    assert isinstance(engine.verifier("webauthn"), WebAuthnVerifier)
    assert isinstance(engine.verifier("totp"), TotpVerifier)
