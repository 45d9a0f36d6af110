"""
Per-referral and per-sweep locking.

Redis locks when REDIS_URL is configured (safe across the web process and the
worker), process-local locks otherwise.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

import redis

from referrals.config import settings
from referrals.runtime import get_logger

logger = get_logger(__name__)

_RELEASE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
else
    return 0
end
"""


class LockTimeout(RuntimeError):
    """Raised when a referral lock could not be acquired in time."""


class Dist:
    def __init__(self) -> None:
        self.r: Optional[redis.Redis] = None
        self._guard = threading.Lock()
        self._keyed: Dict[str, threading.RLock] = {}
        self._sweeps: Dict[str, threading.Lock] = {}
        self._tls = threading.local()
        s = settings()
        if s.REDIS_URL:
            try:
                self.r = redis.from_url(s.REDIS_URL, decode_responses=True, socket_timeout=3)
            except (redis.RedisError, ValueError):
                logger.exception("Redis init failed; using process-local locks")
                self.r = None

    def _key(self, kind: str, name: str) -> str:
        return f"{settings().KEY_PREFIX}:{kind}:{name}"

    def _local(self, table: Dict, name: str, factory):
        with self._guard:
            lock = table.get(name)
            if lock is None:
                lock = table[name] = factory()
            return lock

    @contextmanager
    def referral(self, referral_id: str, timeout: float = 10.0) -> Iterator[None]:
        """Serialize every mutation of a single referral record."""
        local = self._local(self._keyed, referral_id, threading.RLock)
        if not local.acquire(timeout=timeout):
            raise LockTimeout(f"referral {referral_id} busy")
        held = self._held_ids()
        try:
            # Re-entrant within a thread; the Redis lock is taken by the outermost holder only.
            if self.r is None or referral_id in held:
                yield
                return
            held.add(referral_id)
            lock = self.r.lock(
                self._key("referral", referral_id),
                timeout=settings().LOCK_TTL_SEC,
                blocking_timeout=timeout,
                thread_local=False,
            )
            try:
                if not lock.acquire():
                    raise LockTimeout(f"referral {referral_id} busy (redis)")
                try:
                    yield
                finally:
                    try:
                        lock.release()
                    except redis.exceptions.LockError:
                        logger.warning("Referral lock %s expired before release", referral_id)
            finally:
                held.discard(referral_id)
        finally:
            local.release()

    def _held_ids(self) -> set:
        ids = getattr(self._tls, "ids", None)
        if ids is None:
            ids = self._tls.ids = set()
        return ids

    @contextmanager
    def sweep(self, name: str, ttl: Optional[int] = None) -> Iterator[bool]:
        """Non-blocking NX lock; yields False when another sweep holds it."""
        local = self._local(self._sweeps, name, threading.Lock)
        if not local.acquire(blocking=False):
            yield False
            return
        try:
            if self.r is None:
                yield True
                return
            key = self._key("lock", name)
            token = str(uuid.uuid4())
            try:
                acquired = bool(self.r.set(key, token, nx=True, ex=ttl or settings().LOCK_TTL_SEC * 10))
            except redis.RedisError:
                logger.exception("Sweep lock %s unavailable; running without it", name)
                acquired = True
                token = None
            try:
                yield acquired
            finally:
                if acquired and token:
                    try:
                        self.r.eval(_RELEASE_LUA, 1, key, token)
                    except redis.RedisError:
                        logger.exception("Sweep lock %s release failed", name)
        finally:
            local.release()


_DIST: Optional[Dist] = None
_DIST_GUARD = threading.Lock()


def dist() -> Dist:
    global _DIST
    with _DIST_GUARD:
        if _DIST is None:
            _DIST = Dist()
        return _DIST


def reset_locks() -> None:
    global _DIST
    with _DIST_GUARD:
        _DIST = None
