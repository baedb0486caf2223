from __future__ import annotations

import hashlib
import json
import time
import uuid
from typing import Any, Dict, Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis wrapper for rate limits, lockouts, and single-use MFA challenges."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    # Sliding-window failure counter: add, trim, count in one step
    _FAILURE_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local member = ARGV[3]

redis.call('ZADD', key, now, member)
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
redis.call('EXPIRE', key, math.max(math.ceil(window), 1))
return redis.call('ZCARD', key)
"""

    _MFA_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end

local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])

local max_attempts = tonumber(ARGV[1])
if attempts >= max_attempts then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end

return {0, attempts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._failure_window = self.client.register_script(self._FAILURE_WINDOW_SCRIPT)
        self._mfa_attempt = self.client.register_script(self._MFA_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()
        await self.client.connection_pool.disconnect()

    @staticmethod
    def _hashed(prefix: str, key: str) -> str:
        """Hash free-form subjects (emails, IPs) so they cannot collide on delimiters."""
        return f"{prefix}:{hashlib.sha256(key.encode()).hexdigest()}"

    # rate limits
    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = self._hashed("rate", key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    # login failures / lockout
    async def record_login_failure(self, subject: str, window_seconds: int) -> int:
        """Record one failed attempt and return the count inside the window."""
        count = await self._failure_window(
            keys=[self._hashed("auth:failures", subject)],
            args=[time.time(), window_seconds, uuid.uuid4().hex],
        )
        return int(count)

    async def count_login_failures(self, subject: str, window_seconds: int) -> int:
        key = self._hashed("auth:failures", subject)
        return int(await self.client.zcount(key, time.time() - window_seconds, "+inf"))

    async def clear_login_failures(self, subject: str) -> None:
        await self.client.delete(self._hashed("auth:failures", subject))

    async def set_lockout(self, subject: str, seconds: int) -> None:
        await self.client.set(self._hashed("auth:lockout", subject), "1", ex=max(1, seconds))

    async def lockout_remaining(self, subject: str) -> int:
        """Seconds left on an active lockout, 0 when not locked."""
        ttl = await self.client.ttl(self._hashed("auth:lockout", subject))
        return max(0, int(ttl or 0))

    async def clear_lockout(self, subject: str) -> None:
        await self.client.delete(self._hashed("auth:lockout", subject))

    # mfa attempts
    async def check_mfa_lockout(self, user_id: str) -> bool:
        return bool(await self.client.exists(f"mfa:lockout:{user_id}"))

    async def atomic_mfa_attempt(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        """Record a failed MFA attempt; returns (locked_out, attempts)."""
        result = await self._mfa_attempt(
            keys=[f"mfa:lockout:{user_id}", f"mfa:attempts:{user_id}"],
            args=[max_attempts, lockout_seconds],
        )
        return (bool(int(result[0])), int(result[1]))

    async def clear_mfa_attempts(self, user_id: str) -> None:
        await self.client.delete(f"mfa:attempts:{user_id}")

    # single-use challenges
    async def set_challenge(self, key: str, payload: Dict[str, Any], ttl_seconds: int) -> None:
        await self.client.set(
            f"mfa:challenge:{key}", json.dumps(payload), ex=max(1, ttl_seconds)
        )

    async def pop_challenge(self, key: str) -> Optional[Dict[str, Any]]:
        """Atomically fetch and delete a challenge so it can be consumed once."""
        cached = await self.client.getdel(f"mfa:challenge:{key}")
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None
