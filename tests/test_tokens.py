"""Token service: JWT validation, refresh rotation, reuse detection."""

import asyncio
import base64
import json
from concurrent.futures import ThreadPoolExecutor

import pytest

from keyward.config import Settings
from keyward.service.audit import AuditPipeline
from keyward.service.errors import (
    SessionRevoked,
    TokenExpired,
    TokenInvalid,
    TokenReused,
)
from keyward.service.sessions import SessionRegistry
from keyward.service.tokens import DeviceInfo, TokenService
from keyward.storage.memory import MemoryStore


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60,
        audit_retry_backoff_ms=1,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="unit-test-key")


@pytest.fixture
def audit(memory_store, settings):
    return AuditPipeline(memory_store, settings)


@pytest.fixture
def tokens(memory_store, settings, audit):
    return TokenService(memory_store, settings, audit=audit)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("rotate@example.com")


def _reuse_events(memory_store):
    return [e for e in memory_store.audit_log if e.event_type == "token_reuse_detected"]


def _tamper(token: str, **changes) -> str:
    header, payload, sig = token.split(".")
    data = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
    data.update(changes)
    forged = base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")
    return f"{header}.{forged}.{sig}"


def test_access_token_roundtrip(tokens, user):
    session, pair = tokens.issue_initial_session(user, DeviceInfo(ip_addr="203.0.113.10"))
    ctx = tokens.verify_access_token(pair.access_token)
    assert ctx.user_id == user.id
    assert ctx.session_id == session.id
    assert ctx.role == "user"


def test_refresh_token_is_not_an_access_token(tokens, user):
    _, pair = tokens.issue_initial_session(user, DeviceInfo())
    with pytest.raises(TokenInvalid):
        tokens.verify_access_token(pair.refresh_token)


def test_tampered_token_rejected(tokens, user):
    _, pair = tokens.issue_initial_session(user, DeviceInfo())
    with pytest.raises(TokenInvalid):
        tokens.verify_access_token(_tamper(pair.access_token, role="admin"))


def test_alg_none_rejected(tokens, user):
    _, pair = tokens.issue_initial_session(user, DeviceInfo())
    _, payload, _ = pair.access_token.split(".")
    header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
    with pytest.raises(TokenInvalid):
        tokens.verify_access_token(f"{header}.{payload}.")


def test_expired_access_token(memory_store, settings, user):
    expired = TokenService(memory_store, settings.model_copy(update={"access_token_ttl_minutes": -5}))
    _, pair = expired.issue_initial_session(user, DeviceInfo())
    with pytest.raises(TokenExpired):
        expired.verify_access_token(pair.access_token)


def test_revoked_session_rejects_access_token(tokens, user):
    session, pair = tokens.issue_initial_session(user, DeviceInfo())
    assert tokens.revoke(session.id) is True
    assert tokens.revoke(session.id) is False
    with pytest.raises(SessionRevoked):
        tokens.verify_access_token(pair.access_token)


async def test_rotation_issues_new_pair_in_same_family(tokens, user, memory_store):
    session, pair = tokens.issue_initial_session(user, DeviceInfo())
    rotated = await tokens.rotate(pair.refresh_token, ip_addr="203.0.113.11")

    assert rotated.session_id == session.id
    assert rotated.refresh_token != pair.refresh_token
    stored = memory_store.get_session(session.id)
    assert stored.rotation_count == 1
    assert stored.ip_addr == "203.0.113.11"


async def test_rotation_touches_session_through_registry(memory_store, settings, user):
    registry = SessionRegistry(memory_store, settings)
    touched = []
    original_touch = registry.touch

    def recording_touch(session_id, **meta):
        touched.append((session_id, meta))
        return original_touch(session_id, **meta)

    registry.touch = recording_touch
    service = TokenService(memory_store, settings, sessions=registry)
    session, pair = service.issue_initial_session(user, DeviceInfo(ip_addr="203.0.113.10"))
    before = memory_store.get_session(session.id).last_seen_at

    await service.rotate(pair.refresh_token, ip_addr="203.0.113.11", user_agent="curl/8.5")

    assert touched == [(session.id, {"ip_addr": "203.0.113.11", "user_agent": "curl/8.5"})]
    stored = memory_store.get_session(session.id)
    assert stored.user_agent == "curl/8.5"
    assert stored.last_seen_at >= before


async def test_replayed_refresh_token_revokes_family(tokens, user, memory_store):
    session, pair = tokens.issue_initial_session(user, DeviceInfo())
    rotated = await tokens.rotate(pair.refresh_token)

    with pytest.raises(TokenReused) as exc:
        await tokens.rotate(pair.refresh_token)
    assert exc.value.status_code == 401
    assert exc.value.reason == "token_reused"

    # The legitimate successor dies with the family
    with pytest.raises(SessionRevoked):
        await tokens.rotate(rotated.refresh_token)
    with pytest.raises(SessionRevoked):
        tokens.verify_access_token(rotated.access_token)
    assert memory_store.get_session(session.id).revoked_reason == "token_reuse"

    events = _reuse_events(memory_store)
    assert len(events) == 1
    assert events[0].suspicious is True
    assert events[0].details["session_id"] == session.id


async def test_concurrent_rotation_has_exactly_one_winner(tokens, user, memory_store):
    _, pair = tokens.issue_initial_session(user, DeviceInfo())
    results = await asyncio.gather(
        tokens.rotate(pair.refresh_token),
        tokens.rotate(pair.refresh_token),
        return_exceptions=True,
    )
    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], TokenReused)
    assert len(_reuse_events(memory_store)) == 1


def test_threaded_rotation_race_audits_reuse_once(tokens, user, memory_store):
    session, pair = tokens.issue_initial_session(user, DeviceInfo())

    def _attempt():
        try:
            return asyncio.run(tokens.rotate(pair.refresh_token))
        except (TokenReused, SessionRevoked) as exc:
            return exc

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: _attempt(), range(8)))

    winners = [r for r in results if not isinstance(r, Exception)]
    reused = [r for r in results if isinstance(r, TokenReused)]
    assert len(winners) == 1
    assert len(reused) == 1
    assert len(_reuse_events(memory_store)) == 1
    assert memory_store.get_session(session.id).revoked


async def test_rotation_rejects_disabled_user(tokens, user, memory_store):
    session, pair = tokens.issue_initial_session(user, DeviceInfo())
    memory_store.set_user_active(user.id, False)
    with pytest.raises(SessionRevoked):
        await tokens.rotate(pair.refresh_token)
    assert memory_store.get_session(session.id).revoked


def test_mfa_ticket_is_its_own_token_type(tokens, user):
    ticket = tokens.issue_mfa_ticket(
        user, decision="step_up", enrollment_required=True, device=DeviceInfo(ip_addr="203.0.113.10")
    )
    payload = tokens.read_mfa_ticket(ticket)
    assert payload["sub"] == user.id
    assert payload["enrollment_required"] is True
    assert payload["device"]["ip_addr"] == "203.0.113.10"
    with pytest.raises(TokenInvalid):
        tokens.verify_access_token(ticket)


def test_extract_bearer():
    assert TokenService.extract_bearer("Bearer abc") == "abc"
    assert TokenService.extract_bearer("bearer abc") == "abc"
    assert TokenService.extract_bearer("Basic abc") is None
    assert TokenService.extract_bearer(None) is None
