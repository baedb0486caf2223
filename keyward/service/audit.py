from __future__ import annotations

import asyncio
import threading
import uuid
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Set, Tuple

from psycopg_pool import PoolTimeout

from keyward.config import Settings
from keyward.logging import get_logger, sanitize_error_message
from keyward.service.errors import StorageUnavailable
from keyward.storage.errors import StoreUnavailable
from keyward.storage.models import AuditLogEntry, utcnow

logger = get_logger(__name__)

# Failed durable writes that are worth retrying
_RETRYABLE = (StoreUnavailable, PoolTimeout, OSError)

LOGIN_SUCCESS_EVENTS = ("login_success",)
LOGIN_FAILURE_EVENTS = ("login_failed", "login_denied", "account_locked")


def gap_marker(dropped: int) -> Dict[str, Any]:
    return {"event_type": "gap", "details": {"dropped": dropped}}


class Subscription:
    """Bounded per-subscriber buffer.

    When full, the oldest entry is dropped and the subscriber's next read
    yields a gap marker with the number of entries lost.
    """

    def __init__(self, broadcaster: "Broadcaster", maxsize: int) -> None:
        self._broadcaster = broadcaster
        self.maxsize = maxsize
        self._buffer: Deque[Dict[str, Any]] = deque()
        self._dropped = 0
        self._wakeup = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = threading.Lock()
        self.closed = False

    def _wake(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        # Writers may run on another thread or loop than the reader
        if running is loop:
            self._wakeup.set()
        else:
            loop.call_soon_threadsafe(self._wakeup.set)

    def offer(self, record: Dict[str, Any]) -> None:
        with self._lock:
            if len(self._buffer) >= self.maxsize:
                self._buffer.popleft()
                self._dropped += 1
            self._buffer.append(record)
        self._wake()

    def get_nowait(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            if self._dropped:
                dropped, self._dropped = self._dropped, 0
                return gap_marker(dropped)
            if self._buffer:
                return self._buffer.popleft()
        return None

    async def get(self) -> Dict[str, Any]:
        self._loop = asyncio.get_running_loop()
        while True:
            record = self.get_nowait()
            if record is not None:
                return record
            if self.closed:
                raise StopAsyncIteration
            self._wakeup.clear()
            # Re-check after clearing so an offer in between is not missed
            record = self.get_nowait()
            if record is not None:
                return record
            await self._wakeup.wait()

    def pending(self) -> int:
        with self._lock:
            return len(self._buffer) + (1 if self._dropped else 0)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._broadcaster.unsubscribe(self)
        self._wake()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Dict[str, Any]:
        return await self.get()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class Broadcaster:
    """Fans records out to live subscribers without ever blocking the writer."""

    def __init__(self, buffer_size: int = 256) -> None:
        self.buffer_size = buffer_size
        self._subscribers: Set[Subscription] = set()
        self._lock = threading.Lock()

    def subscribe(self, maxsize: Optional[int] = None) -> Subscription:
        subscription = Subscription(self, maxsize or self.buffer_size)
        with self._lock:
            self._subscribers.add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscribers.discard(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, record: Dict[str, Any]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.offer(record)


class AuditPipeline:
    """Durable audit trail with live fan-out.

    ``record`` writes to the store first and only then publishes; if the write
    keeps failing the caller gets ``StorageUnavailable`` and must not report
    the audited action as successful.
    """

    def __init__(self, store, settings: Settings, *, broadcaster: Optional[Broadcaster] = None) -> None:
        self.store = store
        self.settings = settings
        self.broadcaster = broadcaster or Broadcaster(settings.audit_subscriber_buffer)

    async def record(
        self,
        event_type: str,
        *,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        suspicious: bool = False,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            id=str(uuid.uuid4()),
            timestamp=utcnow(),
            event_type=event_type,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details=dict(details or {}),
            suspicious=suspicious,
        )
        await self._write(entry)
        self.broadcaster.publish(entry.to_record())
        log_fn = logger.warning if suspicious else logger.info
        log_fn("audit_recorded", audit_id=entry.id, event_type=event_type, user_id=user_id)
        return entry

    async def _write(self, entry: AuditLogEntry) -> None:
        retries = max(0, self.settings.audit_write_retries)
        backoff_ms = self.settings.audit_retry_backoff_ms
        for attempt in range(retries + 1):
            try:
                self.store.append_audit_entry(entry)
                return
            except _RETRYABLE as exc:
                if attempt >= retries:
                    logger.error(
                        "audit_write_failed",
                        event_type=entry.event_type,
                        attempts=attempt + 1,
                        error=sanitize_error_message(str(exc)),
                    )
                    raise StorageUnavailable("audit log unavailable") from exc
                # Exponential backoff: backoff_ms, 2x, 4x, ...
                sleep_ms = backoff_ms * (2**attempt)
                logger.warning(
                    "audit_write_retry",
                    event_type=entry.event_type,
                    attempt=attempt + 1,
                    backoff_ms=sleep_ms,
                )
                await asyncio.sleep(sleep_ms / 1000.0)

    def subscribe(self) -> Subscription:
        return self.broadcaster.subscribe()

    # reads
    def page_limit(self, limit: int) -> int:
        return max(1, min(int(limit or 1), self.settings.audit_max_page_size))

    def query(
        self,
        *,
        event_type: Optional[str] = None,
        user_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[Dict[str, Any]], int]:
        limit = self.page_limit(limit)
        offset = (max(1, page) - 1) * limit
        entries, total = self.store.query_audit_entries(
            event_type=event_type,
            user_id=user_id,
            date_from=date_from,
            date_to=date_to,
            offset=offset,
            limit=limit,
        )
        return [e.to_record() for e in entries], total

    def recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        entries, _ = self.store.query_audit_entries(offset=0, limit=self.page_limit(limit))
        return [e.to_record() for e in entries]

    async def export(
        self,
        *,
        event_type: Optional[str] = None,
        user_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield matching records oldest first, reading in batches."""
        # Pin the upper bound so rows written during the export do not shift pages
        upper = date_to or utcnow()
        batch_size = max(1, self.settings.audit_export_batch_size)
        offset = 0
        while True:
            entries, _ = self.store.query_audit_entries(
                event_type=event_type,
                user_id=user_id,
                date_from=date_from,
                date_to=upper,
                offset=offset,
                limit=batch_size,
                ascending=True,
            )
            for entry in entries:
                yield entry.to_record()
            if len(entries) < batch_size:
                break
            offset += batch_size
            await asyncio.sleep(0)

    def metrics(self) -> Dict[str, Any]:
        since = utcnow() - timedelta(hours=24)
        counts = self.store.count_audit_entries(since=since)
        suspicious = self.store.count_audit_entries(since=since, suspicious_only=True)
        return {
            "total_users": self.store.count_users(active_only=True),
            "active_sessions": self.store.count_active_sessions(),
            "login_success_24h": sum(counts.get(e, 0) for e in LOGIN_SUCCESS_EVENTS),
            "login_failed_24h": sum(counts.get(e, 0) for e in LOGIN_FAILURE_EVENTS),
            "step_up_24h": counts.get("login_step_up", 0),
            "suspicious_24h": sum(suspicious.values()),
            "live_subscribers": self.broadcaster.subscriber_count,
        }

    def login_trends(self, days: int = 7) -> List[Dict[str, Any]]:
        days = max(1, min(int(days), 90))
        today = datetime.now(timezone.utc).date()
        start = today - timedelta(days=days - 1)
        since = datetime(start.year, start.month, start.day, tzinfo=timezone.utc)
        rows = self.store.audit_daily_counts(
            since, LOGIN_SUCCESS_EVENTS + LOGIN_FAILURE_EVENTS
        )
        buckets: Dict[str, Dict[str, int]] = {
            (start + timedelta(days=i)).isoformat(): {"success": 0, "failed": 0}
            for i in range(days)
        }
        for day, event_type, count in rows:
            bucket = buckets.get(day)
            if bucket is None:
                continue
            key = "success" if event_type in LOGIN_SUCCESS_EVENTS else "failed"
            bucket[key] += count
        return [{"date": day, **values} for day, values in buckets.items()]
