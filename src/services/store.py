"""Versioned record store with Redis primary and in-memory fallback.

Every record is stored together with an integer version.  Writes are
compare-and-swap: the caller names the version it read and the write is
rejected with :class:`~src.services.errors.Conflict` if another writer
got there first.  Within one process, :meth:`RecordStore.locked` also
serialises read-modify-write sequences per key so that coroutines do not
needlessly race each other.

If Redis is unreachable at first use the store degrades to a
process-local backend; once Redis has been selected, failures surface as
:class:`~src.services.errors.StoreUnavailable` instead of silently
switching backends (which would fork the record history).
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import time
from typing import Any, AsyncIterator, Protocol, runtime_checkable

import orjson
import structlog

from src.services.errors import Conflict, StoreUnavailable

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Store backend protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class StoreBackend(Protocol):
    """Async versioned key-value backend."""

    async def get(self, key: str) -> tuple[bytes, int] | None: ...

    async def compare_and_set(
        self, key: str, value: bytes, expected_version: int, new_version: int
    ) -> bool: ...

    async def set_if_absent(self, key: str, value: bytes, ttl_seconds: int | None = None) -> bool: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self, prefix: str) -> list[str]: ...


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------

# Records live in a hash: field "v" holds the version, "d" the document.
# A missing key has version 0.
_CAS_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'v')
if current == false then current = '0' end
if current ~= ARGV[1] then return 0 end
redis.call('HSET', KEYS[1], 'v', ARGV[2], 'd', ARGV[3])
return 1
"""


class RedisStoreBackend:
    """Redis-backed store using ``redis.asyncio`` with a Lua CAS script."""

    __slots__ = ("_cas", "_pool", "_redis")

    def __init__(self, url: str = "redis://localhost:6379/0", *, max_connections: int = 20) -> None:
        import redis.asyncio as aioredis

        self._pool = aioredis.ConnectionPool.from_url(
            url,
            max_connections=max_connections,
            decode_responses=False,
        )
        self._redis = aioredis.Redis(connection_pool=self._pool)
        self._cas = self._redis.register_script(_CAS_SCRIPT)

    # -- StoreBackend interface ------------------------------------------------

    async def get(self, key: str) -> tuple[bytes, int] | None:
        version, data = await self._redis.hmget(key, ["v", "d"])
        if version is None or data is None:
            return None
        return data, int(version)

    async def compare_and_set(
        self, key: str, value: bytes, expected_version: int, new_version: int
    ) -> bool:
        result = await self._cas(keys=[key], args=[str(expected_version), str(new_version), value])
        return bool(result)

    async def set_if_absent(self, key: str, value: bytes, ttl_seconds: int | None = None) -> bool:
        return bool(await self._redis.set(key, value, nx=True, ex=ttl_seconds))

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def keys(self, prefix: str) -> list[str]:
        found: list[str] = []
        async for raw in self._redis.scan_iter(match=f"{prefix}*", _type="hash"):
            found.append(raw.decode() if isinstance(raw, bytes) else raw)
        return found

    # -- Lifecycle -------------------------------------------------------------

    async def close(self) -> None:
        await self._redis.aclose()
        await self._pool.aclose()

    async def ping(self) -> bool:
        """Return *True* if the Redis server is reachable."""
        try:
            return bool(await self._redis.ping())
        except Exception:
            return False


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class _StoreEntry:
    """Single stored value with a version and optional TTL."""

    __slots__ = ("expires_at", "value", "version")

    def __init__(self, value: bytes, version: int, ttl_seconds: int | None = None) -> None:
        self.value = value
        self.version = version
        self.expires_at: float | None = (time.monotonic() + ttl_seconds) if ttl_seconds is not None else None

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and time.monotonic() > self.expires_at


class InMemoryStoreBackend:
    """Dict-based store for single-process deployments and tests."""

    __slots__ = ("_data", "_lock")

    def __init__(self) -> None:
        self._data: dict[str, _StoreEntry] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> _StoreEntry | None:
        entry = self._data.get(key)
        if entry is not None and entry.expired:
            del self._data[key]
            return None
        return entry

    # -- StoreBackend interface ------------------------------------------------

    async def get(self, key: str) -> tuple[bytes, int] | None:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            return entry.value, entry.version

    async def compare_and_set(
        self, key: str, value: bytes, expected_version: int, new_version: int
    ) -> bool:
        async with self._lock:
            entry = self._live(key)
            current = entry.version if entry is not None else 0
            if current != expected_version:
                return False
            self._data[key] = _StoreEntry(value, new_version)
            return True

    async def set_if_absent(self, key: str, value: bytes, ttl_seconds: int | None = None) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = _StoreEntry(value, 1, ttl_seconds)
            return True

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def keys(self, prefix: str) -> list[str]:
        async with self._lock:
            return [key for key in list(self._data) if key.startswith(prefix) and self._live(key) is not None]

    @property
    def size(self) -> int:
        """Return the current number of (possibly expired) entries."""
        return len(self._data)


# ---------------------------------------------------------------------------
# Per-key locks
# ---------------------------------------------------------------------------


class KeyedLocks:
    """Map of :class:`asyncio.Lock` per key, dropped when nobody holds or waits."""

    __slots__ = ("_locks", "_users")

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# ---------------------------------------------------------------------------
# RecordStore  --  public API
# ---------------------------------------------------------------------------


def stable_digest(text: str) -> str:
    """Deterministic, URL-safe digest for marker keys."""
    return hashlib.sha256(text.encode()).hexdigest()[:16]


class RecordStore:
    """Versioned document store facade with automatic Redis -> in-memory fallback.

    Parameters
    ----------
    redis_url:
        Redis connection string.  Pass *None* to skip Redis entirely.
    namespace:
        Optional prefix prepended to every key (e.g. ``"gramamb:"``).
    """

    __slots__ = (
        "_backend_checked",
        "_fallback",
        "_locks",
        "_namespace",
        "_redis",
        "_redis_available",
    )

    def __init__(self, *, redis_url: str | None = None, namespace: str = "") -> None:
        self._namespace = namespace
        self._fallback = InMemoryStoreBackend()
        self._locks = KeyedLocks()
        self._redis: RedisStoreBackend | None = None
        self._redis_available = False
        self._backend_checked = False

        if redis_url:
            try:
                self._redis = RedisStoreBackend(url=redis_url)
            except Exception:
                logger.warning("store.redis_init_failed", redis_url=redis_url)
                self._redis = None

    # -- Internal helpers ------------------------------------------------------

    def _make_key(self, key: str) -> str:
        if self._namespace:
            return f"{self._namespace}{key}"
        return key

    async def _backend(self) -> StoreBackend:
        """Return the selected backend, checking Redis once lazily."""
        if not self._backend_checked:
            self._backend_checked = True
            if self._redis is not None:
                self._redis_available = await self._redis.ping()
                if self._redis_available:
                    logger.info("store.redis_connected")
                else:
                    logger.warning("store.redis_unavailable_using_inmemory")

        if self._redis_available and self._redis is not None:
            return self._redis
        return self._fallback

    async def _call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        backend = await self._backend()
        try:
            return await getattr(backend, method)(*args, **kwargs)
        except (Conflict, StoreUnavailable):
            raise
        except Exception as exc:
            logger.warning("store.backend_op_failed", method=method, exc_info=True)
            raise StoreUnavailable(f"store {method} failed: {exc}") from exc

    # -- Public API ------------------------------------------------------------

    @property
    def backend_name(self) -> str:
        return "redis" if self._redis_available else "memory"

    def locked(self, key: str) -> contextlib.AbstractAsyncContextManager[None]:
        """Serialise read-modify-write sequences on *key* within this process."""
        return self._locks.hold(self._make_key(key))

    async def get(self, key: str) -> tuple[dict[str, Any], int] | None:
        """Return ``(document, version)`` or *None* when the key is absent."""
        found = await self._call("get", self._make_key(key))
        if found is None:
            return None
        raw, version = found
        return orjson.loads(raw), version

    async def put(self, key: str, document: dict[str, Any], *, expected_version: int) -> int:
        """Write *document* if the stored version still equals *expected_version*.

        ``expected_version=0`` means the key must not exist yet.  Returns
        the new version; raises :class:`Conflict` otherwise.
        """
        new_version = expected_version + 1
        payload = orjson.dumps({**document, "version": new_version})
        ok = await self._call(
            "compare_and_set", self._make_key(key), payload, expected_version, new_version
        )
        if not ok:
            logger.info("store.version_conflict", key=key, expected_version=expected_version)
            raise Conflict(key, expected_version)
        return new_version

    async def claim(self, key: str, ttl_seconds: int | None = None) -> bool:
        """Atomically create a marker; *False* if it already exists."""
        return bool(await self._call("set_if_absent", self._make_key(key), b"1", ttl_seconds))

    async def delete(self, key: str) -> None:
        await self._call("delete", self._make_key(key))

    async def keys(self, prefix: str = "") -> list[str]:
        """Return un-namespaced keys that start with *prefix*."""
        full = await self._call("keys", self._make_key(prefix))
        cut = len(self._namespace)
        return [key[cut:] for key in full]

    # -- Lifecycle -------------------------------------------------------------

    async def close(self) -> None:
        """Cleanly shut down the Redis connection pool (if any)."""
        if self._redis is not None:
            with contextlib.suppress(Exception):
                await self._redis.close()
