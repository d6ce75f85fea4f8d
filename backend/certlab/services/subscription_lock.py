"""
Per-user subscription locks

Serializes subscription lifecycle operations (checkout, switch, cancel,
resume) for one user so that concurrent requests cannot interleave provider
calls and local writes.

- ``SubscriptionLockManager``: in-process, mutex-protected key -> guard map
  with a background sweep that force-releases guards whose holder never
  released them. Mutual exclusion holds within one running instance only.
- ``RedisSubscriptionLockManager``: same interface backed by Redis
  ``SET NX PX`` for deployments running several API instances.

Both are constructed explicitly and owned by the application
(``app.state.lock_manager``); there is no module-level singleton.

Usage:
    release = manager.acquire(user_id, "cancel-subscription")
    try:
        ...
    finally:
        release()

    # or
    with manager.hold(user_id, "switch-subscription"):
        ...
"""
from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import redis

from certlab.api.errors import LockContention
from certlab.core.config import settings
from certlab.models import utc_now

logger = logging.getLogger(__name__)

ReleaseFn = Callable[[], None]


@dataclass(frozen=True)
class LockInfo:
    operation: str
    acquired_at: datetime


@dataclass
class _Guard:
    token: str
    operation: str
    acquired_at: datetime
    deadline: float


class BaseLockManager:
    """
    Shared blocking-acquire loop; subclasses implement the non-blocking try.
    """

    def __init__(
        self,
        *,
        default_timeout_ms: int | None = None,
        max_wait_ms: int | None = None,
        poll_interval_ms: int | None = None,
    ) -> None:
        self.default_timeout_ms = default_timeout_ms or settings.SUBSCRIPTION_LOCK_TIMEOUT_MS
        self.max_wait_ms = max_wait_ms if max_wait_ms is not None else settings.SUBSCRIPTION_LOCK_MAX_WAIT_MS
        self.poll_interval_ms = poll_interval_ms or settings.SUBSCRIPTION_LOCK_POLL_INTERVAL_MS

    def _try_acquire(self, key: str, operation: str, timeout_ms: int) -> str | None:
        raise NotImplementedError

    def _release(self, key: str, token: str) -> None:
        raise NotImplementedError

    def _wait(self, key: str, seconds: float) -> None:
        time.sleep(seconds)

    def get_lock_info(self, key: str) -> LockInfo | None:
        raise NotImplementedError

    def is_locked(self, key: str) -> bool:
        return self.get_lock_info(key) is not None

    def start(self) -> None:
        """Start background maintenance, if any."""

    def stop(self) -> None:
        """Stop background maintenance, if any."""

    def acquire(self, key: str, operation: str, timeout_ms: int | None = None) -> ReleaseFn:
        """
        Block until the lock for ``key`` is acquired.

        Polls every ``poll_interval_ms`` while another holder has the key.
        After ``max_wait_ms`` gives up with ``LockContention`` naming the
        operation that still holds it.

        Args:
            key: lock key (the user id)
            operation: label recorded with the guard, shown to waiters
            timeout_ms: auto-release deadline for this guard

        Returns:
            An idempotent release function.

        Raises:
            LockContention: the lock stayed held for longer than ``max_wait_ms``
        """
        timeout_ms = timeout_ms or self.default_timeout_ms
        started = time.monotonic()
        while True:
            token = self._try_acquire(key, operation, timeout_ms)
            if token is not None:
                break
            elapsed_ms = (time.monotonic() - started) * 1000
            if elapsed_ms >= self.max_wait_ms:
                info = self.get_lock_info(key)
                holder = info.operation if info else None
                logger.warning(
                    "Lock contention for user %s: %s waited %.0fms on %s",
                    key,
                    operation,
                    elapsed_ms,
                    holder,
                )
                raise LockContention(key, holder)
            self._wait(key, self.poll_interval_ms / 1000)

        logger.info("Lock acquired for user %s: %s", key, operation)

        released = threading.Event()

        def release() -> None:
            if released.is_set():
                return
            released.set()
            self._release(key, token)

        return release

    @contextmanager
    def hold(self, key: str, operation: str, timeout_ms: int | None = None) -> Iterator[None]:
        """
        Hold the lock for the duration of the ``with`` block.

        The lock is released on normal exit and when the block raises.
        """
        release = self.acquire(key, operation, timeout_ms)
        try:
            yield
        finally:
            release()


class SubscriptionLockManager(BaseLockManager):
    """
    In-process lock manager.

    Guards live in a dict protected by a ``threading.Condition``. Each guard
    carries a deadline; expired guards are evicted lazily on every access and
    by the sweep thread started with ``start()``.
    """

    def __init__(
        self,
        *,
        default_timeout_ms: int | None = None,
        max_wait_ms: int | None = None,
        poll_interval_ms: int | None = None,
        sweep_interval_seconds: float | None = None,
    ) -> None:
        super().__init__(
            default_timeout_ms=default_timeout_ms,
            max_wait_ms=max_wait_ms,
            poll_interval_ms=poll_interval_ms,
        )
        self.sweep_interval_seconds = (
            sweep_interval_seconds or settings.SUBSCRIPTION_LOCK_SWEEP_INTERVAL_SECONDS
        )
        self._locks: dict[str, _Guard] = {}
        self._cond = threading.Condition()
        self._stop_event = threading.Event()
        self._sweeper: threading.Thread | None = None

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop_event.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop, name="subscription-lock-sweeper", daemon=True
        )
        self._sweeper.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=self.sweep_interval_seconds * 2)
            self._sweeper = None

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.sweep_interval_seconds):
            self.sweep_expired()

    def sweep_expired(self) -> int:
        """
        Force-release every guard past its deadline.

        Returns:
            number of guards released
        """
        now = time.monotonic()
        with self._cond:
            expired = [key for key, guard in self._locks.items() if guard.deadline <= now]
            for key in expired:
                self._expire_locked(key)
            if expired:
                self._cond.notify_all()
        return len(expired)

    # ------------------------------------------------------------------
    # guard bookkeeping (callers hold self._cond)
    # ------------------------------------------------------------------

    def _expire_locked(self, key: str) -> None:
        guard = self._locks.pop(key)
        timeout_ms = (guard.deadline - time.monotonic()) * -1000
        logger.warning(
            "Lock for user %s (%s) timed out, force-released %.0fms past its deadline",
            key,
            guard.operation,
            timeout_ms,
        )

    def _current_guard(self, key: str) -> _Guard | None:
        guard = self._locks.get(key)
        if guard is not None and guard.deadline <= time.monotonic():
            self._expire_locked(key)
            self._cond.notify_all()
            return None
        return guard

    def _try_acquire(self, key: str, operation: str, timeout_ms: int) -> str | None:
        with self._cond:
            if self._current_guard(key) is not None:
                return None
            token = uuid.uuid4().hex
            self._locks[key] = _Guard(
                token=token,
                operation=operation,
                acquired_at=utc_now(),
                deadline=time.monotonic() + timeout_ms / 1000,
            )
            return token

    def _release(self, key: str, token: str) -> None:
        with self._cond:
            guard = self._locks.get(key)
            if guard is None or guard.token != token:
                # already expired, cleared, or re-acquired by someone else
                return
            del self._locks[key]
            self._cond.notify_all()
        logger.info("Lock released for user %s: %s", key, guard.operation)

    def _wait(self, key: str, seconds: float) -> None:
        with self._cond:
            if key in self._locks:
                self._cond.wait(timeout=seconds)

    # ------------------------------------------------------------------
    # introspection
    # ------------------------------------------------------------------

    def get_lock_info(self, key: str) -> LockInfo | None:
        with self._cond:
            guard = self._current_guard(key)
            if guard is None:
                return None
            return LockInfo(operation=guard.operation, acquired_at=guard.acquired_at)

    def clear_all_locks(self) -> None:
        """
        Drop every guard. Intended for tests and shutdown.
        """
        with self._cond:
            self._locks.clear()
            self._cond.notify_all()
        logger.info("All subscription locks cleared")


_RELEASE_SCRIPT = """
local value = redis.call("get", KEYS[1])
if value and cjson.decode(value)["token"] == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisSubscriptionLockManager(BaseLockManager):
    """
    Lock manager coordinated through Redis.

    Guards are stored as JSON under ``{prefix}{key}`` with a PX expiry, so a
    crashed holder's guard disappears on its own. Release deletes the key only
    when it still carries the holder's token.
    """

    def __init__(
        self,
        client: redis.Redis,
        *,
        key_prefix: str = "subscription:lock:",
        default_timeout_ms: int | None = None,
        max_wait_ms: int | None = None,
        poll_interval_ms: int | None = None,
    ) -> None:
        super().__init__(
            default_timeout_ms=default_timeout_ms,
            max_wait_ms=max_wait_ms,
            poll_interval_ms=poll_interval_ms,
        )
        self.client = client
        self.key_prefix = key_prefix

    def _redis_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _try_acquire(self, key: str, operation: str, timeout_ms: int) -> str | None:
        token = uuid.uuid4().hex
        value = json.dumps(
            {"token": token, "operation": operation, "acquired_at": utc_now().isoformat()}
        )
        if self.client.set(self._redis_key(key), value, px=timeout_ms, nx=True):
            return token
        return None

    def _release(self, key: str, token: str) -> None:
        try:
            released = self.client.eval(_RELEASE_SCRIPT, 1, self._redis_key(key), token)
        except redis.RedisError as e:
            logger.error("Failed to release lock for user %s: %s", key, e)
            return
        if released:
            logger.info("Lock released for user %s", key)

    def get_lock_info(self, key: str) -> LockInfo | None:
        raw = self.client.get(self._redis_key(key))
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return LockInfo(
                operation=data["operation"],
                acquired_at=datetime.fromisoformat(data["acquired_at"]),
            )
        except (ValueError, KeyError, TypeError):
            logger.error("Malformed lock value for user %s: %r", key, raw)
            return None

    def clear_all_locks(self) -> None:
        keys = list(self.client.scan_iter(match=f"{self.key_prefix}*"))
        if keys:
            self.client.delete(*keys)
        logger.info("All subscription locks cleared")


def create_lock_manager(**kwargs: Any) -> BaseLockManager:
    """
    Build the lock manager selected by ``SUBSCRIPTION_LOCK_BACKEND``.

    Keyword arguments are passed to the manager (timeouts, max wait).
    """
    if settings.SUBSCRIPTION_LOCK_BACKEND == "redis":
        from certlab.core.redis import get_redis

        return RedisSubscriptionLockManager(get_redis(), **kwargs)
    return SubscriptionLockManager(**kwargs)
