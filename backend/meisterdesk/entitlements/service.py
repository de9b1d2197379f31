"""Entitlement service — composition root for resolver, cache, and pollers.

One instance is created at application startup and shared by every request.
Long-lived consumers (the SSE stream) open an :class:`EntitlementWatch`, which
owns its own poller; closing the watch tears the poller down.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Callable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meisterdesk.config import Settings
from meisterdesk.database import utcnow
from meisterdesk.entitlements.cache import EntitlementCache
from meisterdesk.entitlements.poller import ReconciliationPoller, Sleep
from meisterdesk.entitlements.resolver import Clock, Entitlement, EntitlementResolver

logger = logging.getLogger(__name__)


class EntitlementService:
    """Cached entitlement reads plus per-consumer reconciliation."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl_seconds: float = 5.0,
        delays: Sequence[float] = (1.0, 3.0, 6.0, 10.0),
        background_interval: float = 180.0,
        clock: Clock = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.resolver = EntitlementResolver(session_factory, clock=clock)
        self.cache = EntitlementCache(self.resolver.resolve, ttl_seconds, clock=monotonic)
        self.delays = tuple(delays)
        self.background_interval = background_interval
        self._sleep = sleep
        self._watches: set["EntitlementWatch"] = set()

    @classmethod
    def from_settings(
        cls, config: Settings, session_factory: async_sessionmaker[AsyncSession]
    ) -> "EntitlementService":
        return cls(
            session_factory,
            ttl_seconds=config.entitlement_cache_ttl_seconds,
            delays=config.reconciliation_delays_seconds,
            background_interval=config.background_refresh_seconds,
        )

    async def get(self, account_id: uuid.UUID, force_refresh: bool = False) -> Entitlement:
        return await self.cache.get(account_id, force_refresh=force_refresh)

    def invalidate(self, account_id: uuid.UUID | None = None) -> None:
        self.cache.invalidate(account_id)

    def new_poller(self, refresh, name: str = "entitlements") -> ReconciliationPoller:
        return ReconciliationPoller(
            refresh,
            delays=self.delays,
            interval=self.background_interval,
            sleep=self._sleep,
            name=name,
        )

    def watch(self, account_id: uuid.UUID, just_paid: bool = False) -> "EntitlementWatch":
        """Open a long-lived consumer for ``account_id`` (use as ``async with``)."""
        return EntitlementWatch(self, account_id, just_paid=just_paid)

    @property
    def active_watches(self) -> int:
        return len(self._watches)

    async def aclose(self) -> None:
        """Close every open watch (application shutdown)."""
        watches = list(self._watches)
        for watch in watches:
            await watch.aclose()
        if watches:
            logger.info("Closed %d entitlement watch(es)", len(watches))


class EntitlementWatch:
    """One consumer's view of an account's entitlement.

    Emits the initial snapshot, then every snapshot that differs from the last
    one emitted. A just-paid watch starts with a forced refresh and runs the
    post-checkout refresh schedule.
    """

    def __init__(self, service: EntitlementService, account_id: uuid.UUID, just_paid: bool = False) -> None:
        self.service = service
        self.account_id = account_id
        self.just_paid = just_paid
        self.poller = service.new_poller(self.refresh, name=f"entitlements[{account_id}]")
        self._queue: asyncio.Queue[Entitlement] = asyncio.Queue()
        self._last: tuple | None = None

    async def open(self) -> "EntitlementWatch":
        self.service._watches.add(self)
        initial = await self.service.get(self.account_id, force_refresh=self.just_paid)
        self._publish(initial)
        self.poller.start_background()
        if self.just_paid:
            self.poller.trigger_checkout_burst()
        return self

    async def refresh(self) -> Entitlement:
        value = await self.service.get(self.account_id, force_refresh=True)
        self._publish(value)
        return value

    def _publish(self, value: Entitlement) -> None:
        fingerprint = value.fingerprint()
        if fingerprint == self._last:
            return
        self._last = fingerprint
        self._queue.put_nowait(value)

    async def updates(self) -> AsyncIterator[Entitlement]:
        while True:
            yield await self._queue.get()

    async def aclose(self) -> None:
        await self.poller.aclose()
        self.service._watches.discard(self)

    async def __aenter__(self) -> "EntitlementWatch":
        return await self.open()

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
