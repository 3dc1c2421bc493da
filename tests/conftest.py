import pytest

from storefront.cart import CartEngine
from storefront.stores import MemoryCache
from tests.fakes import FakeCartStore, NoticeLog


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def remote():
    return FakeCartStore()


@pytest.fixture
def notices():
    return NoticeLog()


@pytest.fixture
def make_engine(cache, remote, notices):
    def _make(identity=None, local_cache=None, remote_store=None):
        return CartEngine(
            local_cache if local_cache is not None else cache,
            remote_store if remote_store is not None else remote,
            identity=identity,
            notify=notices,
        )
    return _make


@pytest.fixture
def dress():
    return {"id": 42, "name": "Dress", "price": 80}
