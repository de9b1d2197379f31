"""Short-TTL entitlement cache with single-flight loading.

Concurrent misses for the same account share one in-flight load. A forced
refresh or an invalidation detaches the account's current flight, so a load
started before it can neither satisfy later callers nor overwrite the fresher
entry. Only accounts with a live entry or a pending load are tracked.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from meisterdesk.entitlements.resolver import Entitlement

logger = logging.getLogger(__name__)

Loader = Callable[[uuid.UUID], Awaitable[Entitlement]]


@dataclass
class _Entry:
    value: Entitlement
    stored_at: float


class _Flight:
    """One load; it may store its result only while it is the account's current flight."""

    task: "asyncio.Task[Entitlement]"


class EntitlementCache:
    """Per-account entitlement cache.

    ``clock`` is a monotonic seconds source, injectable for tests. Degraded
    (fail-open) results are returned but never cached. Expired entries are
    evicted when read and whenever a new entry is stored.
    """

    def __init__(
        self,
        loader: Loader,
        ttl_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[uuid.UUID, _Entry] = {}
        self._in_flight: dict[uuid.UUID, _Flight] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, entry: _Entry, now: float) -> bool:
        return now - entry.stored_at >= self._ttl

    def peek(self, account_id: uuid.UUID) -> Entitlement | None:
        """Fresh cached value, without loading."""
        entry = self._entries.get(account_id)
        if entry is None:
            return None
        if self._expired(entry, self._clock()):
            del self._entries[account_id]
            return None
        return entry.value

    def evict_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        stale = [key for key, entry in self._entries.items() if self._expired(entry, now)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    async def get(self, account_id: uuid.UUID, force_refresh: bool = False) -> Entitlement:
        """Cached entitlement for ``account_id``, loading it on a miss.

        ``force_refresh`` bypasses the cache and any load already in flight.
        """
        if force_refresh:
            self.invalidate(account_id)
        else:
            cached = self.peek(account_id)
            if cached is not None:
                return cached

        flight = self._in_flight.get(account_id)
        if flight is None:
            flight = _Flight()
            flight.task = asyncio.ensure_future(self._load(account_id, flight))
            self._in_flight[account_id] = flight
        else:
            logger.debug("Joining in-flight entitlement load for account %s", account_id)

        # A cancelled caller must not cancel the load other callers share.
        return await asyncio.shield(flight.task)

    async def _load(self, account_id: uuid.UUID, flight: _Flight) -> Entitlement:
        try:
            value = await self._loader(account_id)
        finally:
            current = self._in_flight.get(account_id) is flight
            if current:
                del self._in_flight[account_id]

        if value.degraded:
            logger.debug("Not caching degraded entitlement for account %s", account_id)
        elif current:
            self.evict_expired()
            self._entries[account_id] = _Entry(value, self._clock())
        return value

    def invalidate(self, account_id: uuid.UUID | None = None) -> None:
        """Drop one account's entry, or every entry when ``account_id`` is None.

        A load already in flight still answers its own callers but is no
        longer joined or stored.
        """
        if account_id is None:
            self._entries.clear()
            self._in_flight.clear()
        else:
            self._entries.pop(account_id, None)
            self._in_flight.pop(account_id, None)
