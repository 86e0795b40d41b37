import fakeredis
import pytest

from backend import RedisBackend


@pytest.fixture
def fake_server():
    return fakeredis.FakeServer()


@pytest.fixture
def backend_factory(fake_server):
    # a fresh client per call: async redis clients are bound to the loop that first uses them
    def factory():
        return RedisBackend(fakeredis.FakeAsyncRedis(server=fake_server, decode_responses=True))
    return factory
