"""Audit pipeline: durable writes, retries, bounded live fan-out, reads."""

import asyncio
from datetime import timedelta

import pytest

from keyward.config import Settings
from keyward.service.audit import AuditPipeline, Broadcaster
from keyward.service.errors import StorageUnavailable
from keyward.storage.errors import StoreUnavailable
from keyward.storage.memory import MemoryStore
from keyward.storage.models import utcnow


class FlakyStore(MemoryStore):
    """Fails the first ``failures`` audit writes."""

    def __init__(self, *args, failures: int = 0, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = failures
        self.attempts = 0

    def append_audit_entry(self, entry):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise StoreUnavailable("database down")
        return super().append_audit_entry(entry)


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        audit_write_retries=2,
        audit_retry_backoff_ms=1,
        audit_subscriber_buffer=3,
        audit_export_batch_size=2,
        audit_max_page_size=10,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="unit-test-key")


@pytest.fixture
def audit(memory_store, settings):
    return AuditPipeline(memory_store, settings)


async def test_record_persists_then_publishes(audit, memory_store):
    subscription = audit.subscribe()
    entry = await audit.record("login_success", user_id="u1", ip_address="203.0.113.10")

    assert memory_store.audit_log == [entry]
    live = await asyncio.wait_for(subscription.get(), timeout=1)
    assert live["id"] == entry.id
    assert live["event_type"] == "login_success"
    subscription.close()


async def test_transient_failure_is_retried_and_written_once(tmp_path, settings):
    store = FlakyStore(fs_root=str(tmp_path), mfa_encryption_key="k", failures=2)
    audit = AuditPipeline(store, settings)
    subscription = audit.subscribe()

    await audit.record("registered", user_id="u1")

    assert store.attempts == 3
    assert [e.event_type for e in store.audit_log] == ["registered"]
    assert subscription.pending() == 1


async def test_persistent_failure_raises_and_publishes_nothing(tmp_path, settings):
    store = FlakyStore(fs_root=str(tmp_path), mfa_encryption_key="k", failures=100)
    audit = AuditPipeline(store, settings)
    subscription = audit.subscribe()

    with pytest.raises(StorageUnavailable) as exc:
        await audit.record("login_success", user_id="u1")

    assert exc.value.status_code == 503
    assert store.attempts == settings.audit_write_retries + 1
    assert store.audit_log == []
    assert subscription.pending() == 0


async def test_slow_subscriber_gets_gap_marker():
    broadcaster = Broadcaster(buffer_size=3)
    slow = broadcaster.subscribe()
    fast = broadcaster.subscribe(maxsize=100)

    for i in range(5):
        broadcaster.publish({"event_type": "e", "n": i})

    gap = await slow.get()
    assert gap == {"event_type": "gap", "details": {"dropped": 2}}
    assert [(await slow.get())["n"] for _ in range(3)] == [2, 3, 4]
    # Other subscribers are unaffected
    assert [(await fast.get())["n"] for _ in range(5)] == [0, 1, 2, 3, 4]


async def test_closed_subscription_stops_iteration():
    broadcaster = Broadcaster()
    subscription = broadcaster.subscribe()
    assert broadcaster.subscriber_count == 1
    subscription.close()
    assert broadcaster.subscriber_count == 0
    with pytest.raises(StopAsyncIteration):
        await subscription.get()


async def test_waiting_subscriber_is_woken_by_publish():
    broadcaster = Broadcaster()
    subscription = broadcaster.subscribe()

    async def _publish_later():
        await asyncio.sleep(0.01)
        broadcaster.publish({"event_type": "late"})

    publisher = asyncio.create_task(_publish_later())
    record = await asyncio.wait_for(subscription.get(), timeout=1)
    await publisher
    assert record["event_type"] == "late"


async def test_query_filters_and_paginates(audit):
    for i in range(5):
        await audit.record("login_failed", user_id="u1", details={"n": i})
    await audit.record("login_success", user_id="u2")

    items, total = audit.query(event_type="login_failed", page=1, limit=2)
    assert total == 5
    assert len(items) == 2
    # Newest first
    assert items[0]["details"]["n"] == 4

    page3, _ = audit.query(event_type="login_failed", page=3, limit=2)
    assert [r["details"]["n"] for r in page3] == [0]

    by_user, total_u2 = audit.query(user_id="u2")
    assert total_u2 == 1
    assert by_user[0]["event_type"] == "login_success"


async def test_query_date_range(audit):
    await audit.record("login_success", user_id="u1")
    future = utcnow() + timedelta(hours=1)
    items, total = audit.query(date_from=future)
    assert items == [] and total == 0


def test_page_limit_is_clamped(audit, settings):
    assert audit.page_limit(0) == 1
    assert audit.page_limit(1000) == settings.audit_max_page_size


async def test_export_yields_everything_oldest_first(audit):
    for i in range(5):
        await audit.record("token_refreshed", details={"n": i})

    exported = [record async for record in audit.export(event_type="token_refreshed")]
    assert [r["details"]["n"] for r in exported] == [0, 1, 2, 3, 4]


async def test_metrics_and_login_trends(audit, memory_store):
    user = memory_store.create_user("metrics@example.com")
    memory_store.create_session(user.id, 60)
    await audit.record("login_success", user_id=user.id)
    await audit.record("login_failed", user_id=user.id)
    await audit.record("account_locked", user_id=user.id, suspicious=True)

    metrics = audit.metrics()
    assert metrics["total_users"] == 1
    assert metrics["active_sessions"] == 1
    assert metrics["login_success_24h"] == 1
    assert metrics["login_failed_24h"] == 2
    assert metrics["suspicious_24h"] == 1

    trends = audit.login_trends(days=3)
    assert len(trends) == 3
    assert trends[-1]["date"] == utcnow().date().isoformat()
    assert trends[-1]["success"] == 1
    assert trends[-1]["failed"] == 2
    assert trends[0]["success"] == 0
