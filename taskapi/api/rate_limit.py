"""
TaskAPI Rate Limiter — per-client-IP request cap on top of the key-value store.

Key format: rate_limit:{client_ip}

Two counting modes:
    read-then-write (default) — get counter, reject if >= limit, else put
        count+1 with a fresh expiry. Concurrent requests from one IP may
        under-count; acceptable for abuse prevention.
    atomic — store.incr() with expiry; allowed while the new count <= limit.
        Rejected requests also bump the counter and its expiry.

The expiry resets on every counted request, so this is a fixed window with
sliding expiry rather than a true sliding window.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from starlette.requests import Request

from taskapi.engine.store import KeyValueStore

logger = logging.getLogger("taskapi.api.rate_limit")

KEY_PREFIX = "rate_limit:"


@dataclass
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    retry_after: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


def resolve_client_ip(request: Request, headers: Iterable[str]) -> Optional[str]:
    """
    First non-empty value among the configured headers, then the transport
    peer. X-Forwarded-For style lists yield their first (client) entry.
    """
    for name in headers:
        value = request.headers.get(name)
        if value:
            first = value.split(",")[0].strip()
            if first:
                return first
    if request.client and request.client.host:
        return request.client.host
    return None


class RateLimiter:
    """
    Counts requests per client IP in a dedicated store namespace.

    Requests without a resolvable IP share the ``missing_ip_bucket`` bucket
    instead of being rejected.
    """

    def __init__(
        self,
        store: KeyValueStore,
        max_requests: int = 100,
        window_seconds: int = 60,
        atomic: bool = False,
        missing_ip_bucket: str = "unknown",
    ):
        if atomic and not store.supports_atomic_incr:
            logger.warning(f"{store!r} has no atomic increment, falling back to read-then-write")
            atomic = False
        self._store = store
        self._max_requests = max_requests
        self._window = window_seconds
        self._atomic = atomic
        self._missing_ip_bucket = missing_ip_bucket

    def bucket_key(self, client_ip: Optional[str]) -> str:
        return f"{KEY_PREFIX}{client_ip or self._missing_ip_bucket}"

    async def check(self, client_ip: Optional[str]) -> RateLimitDecision:
        """Count this request against the client's bucket and decide."""
        key = self.bucket_key(client_ip)

        if self._atomic:
            count = await self._store.incr(key, ttl=self._window)
            return RateLimitDecision(
                allowed=count <= self._max_requests,
                count=count,
                limit=self._max_requests,
                retry_after=self._window,
            )

        raw = await self._store.get(key)
        try:
            count = int(raw) if raw else 0
        except ValueError:
            logger.warning(f"Non-integer rate limit counter under {key!r}, resetting")
            count = 0

        if count >= self._max_requests:
            return RateLimitDecision(False, count, self._max_requests, self._window)

        await self._store.put(key, str(count + 1), ttl=self._window)
        return RateLimitDecision(True, count + 1, self._max_requests, self._window)
