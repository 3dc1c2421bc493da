"""Tests for the session registry and session identity changes."""

import asyncio

import pytest

from storefront.session import SessionRegistry, StorefrontSession
from storefront.stores import MemoryCache
from tests.fakes import FakeApi, FakeCartStore, FakeCharge


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class ClosingSession:
    def __init__(self, session_id, fail=False):
        self.session_id = session_id
        self.fail = fail
        self.closed = 0

    async def close(self):
        self.closed += 1
        if self.fail:
            raise ConnectionError("cart store unreachable")


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def built():
    return {}


def _lookup(registry, built, session_id, fail=False):
    def build():
        built[session_id] = ClosingSession(session_id, fail=fail)
        return built[session_id]
    return asyncio.run(registry.get_or_create(session_id, build))


class TestSessionRegistry:
    def test_reuses_live_session(self, clock, built):
        registry = SessionRegistry(max_sessions=10, idle_seconds=60, clock=clock)
        first = _lookup(registry, built, "s1")
        clock.now = 30
        assert _lookup(registry, built, "s1") is first
        assert len(registry) == 1

    def test_evicts_least_recently_used(self, clock, built):
        registry = SessionRegistry(max_sessions=2, idle_seconds=600, clock=clock)
        _lookup(registry, built, "s1")
        _lookup(registry, built, "s2")
        _lookup(registry, built, "s1")
        _lookup(registry, built, "s3")

        assert "s2" not in registry
        assert "s1" in registry and "s3" in registry
        assert built["s2"].closed == 1
        assert built["s1"].closed == 0

    def test_idle_sessions_expire(self, clock, built):
        registry = SessionRegistry(max_sessions=10, idle_seconds=60, clock=clock)
        _lookup(registry, built, "s1")
        clock.now = 30
        _lookup(registry, built, "s2")
        clock.now = 70
        _lookup(registry, built, "s3")

        assert "s1" not in registry
        assert "s2" in registry
        assert built["s1"].closed == 1

    def test_expired_session_is_rebuilt(self, clock, built):
        registry = SessionRegistry(max_sessions=10, idle_seconds=60, clock=clock)
        first = _lookup(registry, built, "s1")
        clock.now = 120
        second = _lookup(registry, built, "s1")
        assert second is not first
        assert first.closed == 1

    def test_failed_close_does_not_block_lookup(self, clock, built):
        registry = SessionRegistry(max_sessions=1, idle_seconds=600, clock=clock)
        _lookup(registry, built, "s1", fail=True)
        _lookup(registry, built, "s2")
        assert len(registry) == 1
        assert built["s1"].closed == 1

    def test_close_all(self, clock, built):
        registry = SessionRegistry(clock=clock)
        _lookup(registry, built, "s1")
        _lookup(registry, built, "s2")
        asyncio.run(registry.close_all())
        assert len(registry) == 0
        assert all(session.closed == 1 for session in built.values())


class TestStorefrontSession:
    def _session(self, cache, remote):
        return StorefrontSession(
            session_id="s1",
            local_cache=cache,
            remote_cart_store=remote,
            order_sources=[],
            api=FakeApi(),
            charge=FakeCharge(),
        )

    def test_rebuilt_session_restores_local_cart(self, dress):
        cache = MemoryCache()
        session = self._session(cache, FakeCartStore())

        async def first_visit():
            await session.attach(None)
            session.cart.add_item(dress, 2)
            await session.close()

        asyncio.run(first_visit())

        rebuilt = self._session(cache, FakeCartStore())
        asyncio.run(rebuilt.attach(None))
        assert rebuilt.cart.count() == 2

    def test_sign_in_switches_to_remote_cart(self, dress):
        remote = FakeCartStore(carts={"u1": {"7": {"name": "Saved", "unitPrice": 10, "quantity": 1}}})
        session = self._session(MemoryCache(), remote)

        async def visit():
            await session.attach(None)
            session.cart.add_item(dress)
            checkout = session.checkout
            await session.attach("u1")
            return checkout

        old_checkout = asyncio.run(visit())
        assert list(session.cart.cart) == ["7"]
        assert session.identity.current_subject_id() == "u1"
        assert session.checkout is not old_checkout
