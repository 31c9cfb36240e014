"""
TaskAPI Key-Value Store Layer — the only persistence the service has.

Contract (all methods are coroutines):
    get(key)                         → str | None
    put(key, value, ttl=None)        → None
    delete(key)                      → None   (absent key is a no-op)
    list(prefix, cursor, limit)      → KeyListing
    incr(key, ttl=None)              → int    (atomic counter)

Backends:
    InMemoryKVStore — per-process dicts with TTL; used for dev and tests
    RedisKVStore    — redis.asyncio; one key prefix per namespace plus a
                      sorted-set index for ordered prefix listing

Cursors are stringified offsets for both backends. The store is treated as
eventually consistent: a key returned by list() may be gone by the time it
is read, and callers must tolerate that.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from taskapi.engine.errors import TaskAPIStoreError

logger = logging.getLogger("taskapi.engine.store")

DEFAULT_LIST_LIMIT = 1000


@dataclass
class KeyListing:
    """One page of keys from a list() call."""

    keys: List[str] = field(default_factory=list)
    cursor: Optional[str] = None
    list_complete: bool = True


def _parse_cursor(cursor: Optional[str]) -> int:
    if not cursor:
        return 0
    try:
        offset = int(cursor)
    except ValueError:
        raise TaskAPIStoreError(f"Malformed list cursor: {cursor!r}", operation="list")
    return max(offset, 0)


class KeyValueStore:
    """Base class for store adapters. Subclasses implement the raw operations."""

    supports_atomic_incr: bool = False

    def __init__(self, namespace: str):
        self.namespace = namespace

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def list(
        self,
        prefix: Optional[str] = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> KeyListing:
        raise NotImplementedError

    async def incr(self, key: str, ttl: Optional[int] = None) -> int:
        raise NotImplementedError(f"{type(self).__name__} has no atomic increment")

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    # ── JSON Operations ──

    async def get_json(self, key: str) -> Optional[Any]:
        """Get and deserialize a JSON value. Corrupt values raise TaskAPIStoreError."""
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise TaskAPIStoreError(
                f"Corrupt JSON under {self.namespace}:{key}: {e}",
                namespace=self.namespace,
                operation="get",
                key=key,
            )

    async def put_json(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        await self.put(key, json.dumps(value, separators=(",", ":")), ttl=ttl)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(namespace={self.namespace!r})"


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class InMemoryKVStore(KeyValueStore):
    """
    Dict-backed store. Expired entries are dropped lazily on access, and
    writes sweep the whole dict at most once every ``sweep_interval`` seconds
    so keys that are never read again do not pile up.

    ``clock`` defaults to time.monotonic and can be swapped in tests to move
    TTLs forward without sleeping.
    """

    supports_atomic_incr = True

    def __init__(
        self,
        namespace: str = "default",
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = 60.0,
    ):
        super().__init__(namespace)
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    def _expiry(self, ttl: Optional[int]) -> Optional[float]:
        return self._clock() + ttl if ttl else None

    def _maybe_sweep(self) -> None:
        now = self._clock()
        if now < self._next_sweep:
            return
        self._next_sweep = now + self._sweep_interval
        expired = [k for k, (_, exp) in self._data.items() if exp is not None and now >= exp]
        for key in expired:
            del self._data[key]
        if expired:
            logger.debug(f"Swept {len(expired)} expired keys from {self.namespace}")

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        self._maybe_sweep()
        self._data[key] = (value, self._expiry(ttl))

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list(
        self,
        prefix: Optional[str] = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> KeyListing:
        offset = _parse_cursor(cursor)
        limit = limit or DEFAULT_LIST_LIMIT
        keys = sorted(
            k for k in list(self._data)
            if (not prefix or k.startswith(prefix)) and self._live(k) is not None
        )
        page = keys[offset:offset + limit]
        end = offset + len(page)
        complete = end >= len(keys)
        return KeyListing(keys=page, cursor=None if complete else str(end), list_complete=complete)

    async def incr(self, key: str, ttl: Optional[int] = None) -> int:
        self._maybe_sweep()
        current = self._live(key)
        count = (int(current) if current else 0) + 1
        self._data[key] = (str(count), self._expiry(ttl))
        return count

    def __len__(self) -> int:
        return sum(1 for k in list(self._data) if self._live(k) is not None)


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------

class RedisKVStore(KeyValueStore):
    """
    Redis-backed store.

    Key format:   {namespace}:{key}
    Index:        {namespace}:__index__  (sorted set, score 0, lexical order)

    Keys written with a ttl are counters and are not indexed, so they never
    show up in list().
    """

    supports_atomic_incr = True

    def __init__(
        self,
        namespace: str,
        redis_url: str = "redis://localhost:6379/0",
        socket_timeout: float = 5.0,
        client: Optional[aioredis.Redis] = None,
    ):
        super().__init__(namespace)
        self._redis_url = redis_url
        self._client = client or aioredis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._index_key = f"{namespace}:__index__"

    def _make_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def _fail(self, operation: str, key: Optional[str], exc: Exception) -> TaskAPIStoreError:
        logger.error(f"Redis {operation.upper()} failed on {self.namespace}:{key}: {exc}")
        return TaskAPIStoreError(
            f"Redis {operation} failed: {exc}",
            namespace=self.namespace,
            operation=operation,
            key=key,
        )

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client.get(self._make_key(key))
        except RedisError as e:
            raise self._fail("get", key, e)

    async def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        try:
            pipe = self._client.pipeline(transaction=False)
            pipe.set(self._make_key(key), value, ex=ttl)
            if not ttl:
                pipe.zadd(self._index_key, {key: 0})
            await pipe.execute()
        except RedisError as e:
            raise self._fail("put", key, e)

    async def delete(self, key: str) -> None:
        try:
            pipe = self._client.pipeline(transaction=False)
            pipe.delete(self._make_key(key))
            pipe.zrem(self._index_key, key)
            await pipe.execute()
        except RedisError as e:
            raise self._fail("delete", key, e)

    async def list(
        self,
        prefix: Optional[str] = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> KeyListing:
        offset = _parse_cursor(cursor)
        limit = limit or DEFAULT_LIST_LIMIT
        low = f"[{prefix}" if prefix else "-"
        high = f"[{prefix}\xff" if prefix else "+"
        try:
            # One extra to learn whether another page exists
            keys = await self._client.zrangebylex(
                self._index_key, low, high, start=offset, num=limit + 1
            )
        except RedisError as e:
            raise self._fail("list", prefix, e)
        complete = len(keys) <= limit
        page = keys[:limit]
        return KeyListing(
            keys=page,
            cursor=None if complete else str(offset + len(page)),
            list_complete=complete,
        )

    async def incr(self, key: str, ttl: Optional[int] = None) -> int:
        try:
            full_key = self._make_key(key)
            pipe = self._client.pipeline()
            pipe.incr(full_key)
            if ttl:
                pipe.expire(full_key, ttl)
            results = await pipe.execute()
            return int(results[0])
        except RedisError as e:
            raise self._fail("incr", key, e)

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            logger.warning(f"Redis ping failed ({self.namespace}): {e}")
            return False

    async def close(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_store(stores_config, namespace: str) -> KeyValueStore:
    """Build a store for one namespace from the ``stores`` config section."""
    if stores_config.backend == "redis":
        logger.info(f"Using Redis store for namespace '{namespace}'")
        return RedisKVStore(
            namespace=namespace,
            redis_url=stores_config.redis_url,
            socket_timeout=stores_config.socket_timeout,
        )
    return InMemoryKVStore(namespace=namespace)
