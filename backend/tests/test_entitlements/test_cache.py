"""Tests for the entitlement cache — single-flight loading, TTL, invalidation."""

import asyncio
import uuid
from dataclasses import replace
from datetime import datetime
from decimal import Decimal

import pytest

from meisterdesk.entitlements.cache import EntitlementCache
from meisterdesk.entitlements.resolver import Entitlement

ACCOUNT = uuid.UUID("00000000-0000-4000-8000-00000000c0de")
OTHER = uuid.UUID("00000000-0000-4000-8000-00000000beef")


def _entitlement(account_id: uuid.UUID = ACCOUNT, plan: str = "pro", **overrides) -> Entitlement:
    values = dict(
        account_id=account_id,
        plan_name=plan,
        plan_display_name=plan.upper(),
        price_monthly=Decimal("19.90"),
        features={"invoicing": None},
        is_active=True,
        resolved_at=datetime(2026, 10, 1),
        status="active",
    )
    values.update(overrides)
    return Entitlement(**values)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class CountingLoader:
    """Loader that counts calls and can be held open with a gate."""

    def __init__(self, results=None) -> None:
        self.calls = 0
        self.gate: asyncio.Event | None = None
        self.results = list(results or [])

    async def __call__(self, account_id: uuid.UUID) -> Entitlement:
        self.calls += 1
        result = self.results.pop(0) if self.results else _entitlement(account_id)
        if self.gate is not None:
            await self.gate.wait()
        return result


class TestSingleFlight:
    """Concurrent misses share one load."""

    async def test_concurrent_misses_load_once(self):
        loader = CountingLoader()
        loader.gate = asyncio.Event()
        cache = EntitlementCache(loader)

        pending = asyncio.gather(*(cache.get(ACCOUNT) for _ in range(10)))
        await asyncio.sleep(0)
        loader.gate.set()
        results = await pending

        assert loader.calls == 1
        assert all(r is results[0] for r in results)

    async def test_accounts_load_independently(self):
        loader = CountingLoader()
        cache = EntitlementCache(loader)

        await asyncio.gather(cache.get(ACCOUNT), cache.get(OTHER))

        assert loader.calls == 2
        assert len(cache) == 2

    async def test_cancelled_caller_does_not_cancel_shared_load(self):
        loader = CountingLoader()
        loader.gate = asyncio.Event()
        cache = EntitlementCache(loader)

        first = asyncio.ensure_future(cache.get(ACCOUNT))
        second = asyncio.ensure_future(cache.get(ACCOUNT))
        await asyncio.sleep(0)
        first.cancel()
        loader.gate.set()

        assert (await second).plan_name == "pro"
        with pytest.raises(asyncio.CancelledError):
            await first
        assert loader.calls == 1

    async def test_loader_error_propagates_and_clears_flight(self):
        class Boom(Exception):
            pass

        async def failing(account_id):
            raise Boom()

        cache = EntitlementCache(failing)
        with pytest.raises(Boom):
            await cache.get(ACCOUNT)
        assert len(cache) == 0
        assert cache._in_flight == {}


class TestTTL:
    """Entries expire after ttl_seconds."""

    async def test_hit_within_ttl(self):
        clock = FakeClock()
        loader = CountingLoader()
        cache = EntitlementCache(loader, ttl_seconds=5.0, clock=clock)

        await cache.get(ACCOUNT)
        clock.now += 4.9
        await cache.get(ACCOUNT)

        assert loader.calls == 1
        assert cache.peek(ACCOUNT) is not None

    async def test_miss_after_ttl(self):
        clock = FakeClock()
        loader = CountingLoader()
        cache = EntitlementCache(loader, ttl_seconds=5.0, clock=clock)

        await cache.get(ACCOUNT)
        clock.now += 5.0
        assert cache.peek(ACCOUNT) is None
        await cache.get(ACCOUNT)

        assert loader.calls == 2

    async def test_expired_entry_evicted_on_read(self):
        clock = FakeClock()
        cache = EntitlementCache(CountingLoader(), ttl_seconds=5.0, clock=clock)

        await cache.get(ACCOUNT)
        assert len(cache) == 1
        clock.now += 5.0

        assert cache.peek(ACCOUNT) is None
        assert len(cache) == 0
        assert cache._entries == {}

    async def test_expired_entries_evicted_when_storing(self):
        clock = FakeClock()
        cache = EntitlementCache(CountingLoader(), ttl_seconds=5.0, clock=clock)

        for _ in range(20):
            await cache.get(uuid.uuid4())
        assert len(cache) == 20
        clock.now += 5.0

        await cache.get(ACCOUNT)

        assert len(cache) == 1
        assert cache.peek(ACCOUNT) is not None
        assert cache._in_flight == {}

    async def test_evict_expired(self):
        clock = FakeClock()
        cache = EntitlementCache(CountingLoader(), ttl_seconds=5.0, clock=clock)
        await cache.get(ACCOUNT)
        clock.now += 3.0
        await cache.get(OTHER)
        clock.now += 2.0

        assert cache.evict_expired() == 1
        assert cache.peek(ACCOUNT) is None
        assert cache.peek(OTHER) is not None

    async def test_degraded_result_not_cached(self):
        loader = CountingLoader(results=[_entitlement(plan="freemium", is_active=False, degraded=True)])
        cache = EntitlementCache(loader)

        degraded = await cache.get(ACCOUNT)
        healthy = await cache.get(ACCOUNT)

        assert degraded.degraded is True
        assert healthy.plan_name == "pro"
        assert loader.calls == 2


class TestInvalidation:
    """force_refresh and invalidate bypass the cached value."""

    async def test_force_refresh_reloads(self):
        loader = CountingLoader(results=[_entitlement(plan="freemium"), _entitlement(plan="pro")])
        cache = EntitlementCache(loader)

        assert (await cache.get(ACCOUNT)).plan_name == "freemium"
        assert (await cache.get(ACCOUNT, force_refresh=True)).plan_name == "pro"
        assert (await cache.get(ACCOUNT)).plan_name == "pro"
        assert loader.calls == 2

    async def test_force_refresh_does_not_join_stale_flight(self):
        loader = CountingLoader(results=[_entitlement(plan="freemium"), _entitlement(plan="pro")])
        loader.gate = asyncio.Event()
        cache = EntitlementCache(loader)

        stale = asyncio.ensure_future(cache.get(ACCOUNT))
        await asyncio.sleep(0)
        fresh = asyncio.ensure_future(cache.get(ACCOUNT, force_refresh=True))
        await asyncio.sleep(0)
        loader.gate.set()

        assert (await stale).plan_name == "freemium"
        assert (await fresh).plan_name == "pro"
        assert loader.calls == 2
        assert cache.peek(ACCOUNT).plan_name == "pro"

    async def test_invalidate_one_account(self):
        loader = CountingLoader()
        cache = EntitlementCache(loader)
        await cache.get(ACCOUNT)
        await cache.get(OTHER)

        cache.invalidate(ACCOUNT)

        assert cache.peek(ACCOUNT) is None
        assert cache.peek(OTHER) is not None

    async def test_invalidate_all(self):
        loader = CountingLoader()
        cache = EntitlementCache(loader)
        await cache.get(ACCOUNT)
        await cache.get(OTHER)

        cache.invalidate()

        assert len(cache) == 0

    async def test_invalidate_leaves_no_bookkeeping(self):
        loader = CountingLoader()
        loader.gate = asyncio.Event()
        cache = EntitlementCache(loader)

        pending = asyncio.ensure_future(cache.get(ACCOUNT))
        await asyncio.sleep(0)
        for _ in range(5):
            cache.invalidate(ACCOUNT)
            cache.invalidate(uuid.uuid4())
        loader.gate.set()
        await pending

        assert cache._entries == {}
        assert cache._in_flight == {}

    async def test_invalidate_during_load_discards_result(self):
        loader = CountingLoader()
        loader.gate = asyncio.Event()
        cache = EntitlementCache(loader)

        pending = asyncio.ensure_future(cache.get(ACCOUNT))
        await asyncio.sleep(0)
        cache.invalidate(ACCOUNT)
        loader.gate.set()

        assert (await pending).plan_name == "pro"
        assert cache.peek(ACCOUNT) is None


def test_entitlement_equality_ignores_degraded():
    assert _entitlement() == replace(_entitlement(), degraded=True)
