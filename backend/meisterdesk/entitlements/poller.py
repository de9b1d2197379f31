"""Reconciliation poller — forced entitlement refreshes for one consumer.

Closes the gap between a provider confirming payment in the browser and its
webhook reaching the canonical store. After a checkout completes, refreshes
run on an explicit schedule (1s, 3s, 6s, 10s after the signal by default);
independently a slow background refresh runs for as long as the consumer lives.
Each poller belongs to exactly one consumer and is torn down with it.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

logger = logging.getLogger(__name__)

Refresh = Callable[[], Awaitable[object]]
Sleep = Callable[[float], Awaitable[None]]


class ReconciliationPoller:
    """Cancellable refresh schedule owned by a single consumer."""

    def __init__(
        self,
        refresh: Refresh,
        delays: Sequence[float] = (1.0, 3.0, 6.0, 10.0),
        interval: float = 180.0,
        sleep: Sleep = asyncio.sleep,
        name: str = "entitlements",
    ) -> None:
        self._refresh = refresh
        self._delays = tuple(delays)
        self._interval = interval
        self._sleep = sleep
        self._name = name
        self._burst: asyncio.Task | None = None
        self._background: asyncio.Task | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def tasks(self) -> list[asyncio.Task]:
        return [t for t in (self._burst, self._background) if t is not None and not t.done()]

    def start_background(self) -> None:
        """Start the slow periodic refresh (idempotent)."""
        if self._closed:
            raise RuntimeError("Poller is closed")
        if self._background is None or self._background.done():
            self._background = asyncio.ensure_future(self._background_loop())

    def trigger_checkout_burst(self) -> None:
        """Run the post-checkout refresh schedule, restarting it if already running."""
        if self._closed:
            raise RuntimeError("Poller is closed")
        if self._burst is not None and not self._burst.done():
            self._burst.cancel()
        logger.info("%s: checkout completed; refreshing at %s s", self._name, list(self._delays))
        self._burst = asyncio.ensure_future(self._burst_loop())

    async def _burst_loop(self) -> None:
        elapsed = 0.0
        for at in self._delays:
            await self._sleep(at - elapsed)
            elapsed = at
            await self._run("checkout")

    async def _background_loop(self) -> None:
        while True:
            await self._sleep(self._interval)
            await self._run("background")

    async def _run(self, reason: str) -> None:
        try:
            await self._refresh()
        except Exception:
            logger.exception("%s: %s refresh failed", self._name, reason)

    async def aclose(self) -> None:
        """Cancel every pending refresh. Safe to call more than once."""
        self._closed = True
        pending = self.tasks
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._burst = None
        self._background = None

    async def __aenter__(self) -> "ReconciliationPoller":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
