from __future__ import annotations

import asyncio
import secrets
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from keyward.config import Settings
from keyward.logging import get_logger
from keyward.service.errors import AccountLocked, ConflictError, InvalidCredentials
from keyward.storage.errors import ConstraintViolation
from keyward.storage.models import User
from keyward.storage.redis_cache import RedisCache

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialBackend(Protocol):
    def create_user(self, email: str, *, role: str = "user", meta: Optional[Dict] = None) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


@dataclass
class CredentialCheck:
    user: User
    recent_failures: int = 0


def normalize_identifier(identifier: str) -> str:
    return (identifier or "").strip().lower()


class CredentialStore:
    """argon2id password verification with sliding-window lockout.

    Failure counts live in Redis when a cache is configured and in process
    memory otherwise. Unknown identifiers are checked against a dummy hash so
    the timing and error of a miss match a wrong password.
    """

    def __init__(
        self,
        store: CredentialBackend,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._executor = executor or ThreadPoolExecutor(
            max_workers=settings.hash_workers, thread_name_prefix="keyward-hash"
        )
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(24))
        self._state_lock = threading.Lock()
        self._failures: Dict[str, List[float]] = {}
        self._lockouts: Dict[str, float] = {}

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    async def _offload(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    def _hash_password(self, password: str) -> tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def _check_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def register(self, email: str, password: str, *, role: str = "user") -> User:
        email = normalize_identifier(email)
        pwd_hash, algo = await self._offload(self._hash_password, password)
        try:
            user = self.store.create_user(email, role=role)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.store.save_password(user.id, pwd_hash, algo)
        logger.info("user_registered", user_id=user.id, role=role)
        return user

    async def verify(self, identifier: str, secret: str) -> CredentialCheck:
        """Check ``secret`` for ``identifier``.

        Raises ``AccountLocked`` while a lockout is active or when this failure
        crosses the threshold, ``InvalidCredentials`` on any other mismatch.
        """
        subject = normalize_identifier(identifier)
        retry_after = await self.lockout_remaining(subject)
        if retry_after > 0:
            logger.warning("login_locked_out", retry_after=retry_after)
            raise AccountLocked(retry_after=retry_after)

        user = self.store.get_user_by_email(subject)
        record = self.store.get_password_record(user.id) if user else None
        stored_hash = record[0] if record and record[1] == PASSWORD_ALGO else self._dummy_hash
        matched = await self._offload(self._check_hash, stored_hash, secret)
        if not (user and record and matched and user.is_active):
            failures = await self.record_failure(subject)
            if failures >= self.settings.lockout_threshold:
                await self._lock(subject)
                logger.warning("account_lockout_triggered", failures=failures)
                raise AccountLocked(
                    retry_after=self.settings.lockout_duration_seconds, triggered=True
                )
            raise InvalidCredentials("invalid credentials")

        if self._pwd_hasher.check_needs_rehash(stored_hash):
            pwd_hash, algo = await self._offload(self._hash_password, secret)
            self.store.save_password(user.id, pwd_hash, algo)
        return CredentialCheck(user=user, recent_failures=await self.recent_failures(subject))

    async def rotate(self, user_id: str, new_secret: str) -> None:
        """Replace the stored credential wholesale; the old hash is discarded."""
        pwd_hash, algo = await self._offload(self._hash_password, new_secret)
        self.store.save_password(user_id, pwd_hash, algo)
        logger.info("password_rotated", user_id=user_id)

    async def check_password(self, user_id: str, secret: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            return False
        return await self._offload(self._check_hash, record[0], secret)

    # failure window
    async def record_failure(self, subject: str) -> int:
        window = self.settings.lockout_window_seconds
        if self.cache:
            return await self.cache.record_login_failure(subject, window)
        now = time.time()
        with self._state_lock:
            recent = [ts for ts in self._failures.get(subject, []) if ts > now - window]
            recent.append(now)
            self._failures[subject] = recent
            return len(recent)

    async def recent_failures(self, identifier: str) -> int:
        subject = normalize_identifier(identifier)
        window = self.settings.lockout_window_seconds
        if self.cache:
            return await self.cache.count_login_failures(subject, window)
        now = time.time()
        with self._state_lock:
            recent = [ts for ts in self._failures.get(subject, []) if ts > now - window]
            if recent:
                self._failures[subject] = recent
            else:
                self._failures.pop(subject, None)
            return len(recent)

    async def clear_failures(self, identifier: str) -> None:
        subject = normalize_identifier(identifier)
        if self.cache:
            await self.cache.clear_login_failures(subject)
            return
        with self._state_lock:
            self._failures.pop(subject, None)

    async def _lock(self, subject: str) -> None:
        duration = self.settings.lockout_duration_seconds
        if self.cache:
            await self.cache.set_lockout(subject, duration)
            await self.cache.clear_login_failures(subject)
            return
        with self._state_lock:
            self._lockouts[subject] = time.time() + duration
            self._failures.pop(subject, None)

    async def lockout_remaining(self, subject: str) -> int:
        if self.cache:
            return await self.cache.lockout_remaining(subject)
        now = time.time()
        with self._state_lock:
            locked_until = self._lockouts.get(subject)
            if locked_until is None:
                return 0
            if locked_until <= now:
                self._lockouts.pop(subject, None)
                return 0
            return max(1, int(locked_until - now))
