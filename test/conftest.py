import os
import sys

import pytest
from fastapi.testclient import TestClient

# test/ is not a package (it would shadow the stdlib "test"); make app importable from the root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.main import create_app
from app.queue import InMemoryQueueChannel
from app.store import InMemoryOrderStore
from app.worker import OrderProcessor, OrderWorker

QUEUE = "order-processing"


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def no_work(order) -> None:
    return None


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def channel(clock):
    return InMemoryQueueChannel(visibility_timeout=30, poll_interval=0.01, clock=clock)


@pytest.fixture()
def store():
    return InMemoryOrderStore(page_size=2)


@pytest.fixture()
def make_worker(channel, store):
    def _make(fulfil=no_work, store_=None, **kwargs):
        kwargs.setdefault("backoff", lambda receive_count: 0)
        processor = OrderProcessor(store_ or store, fulfil)
        return OrderWorker(channel, processor, queue_name=QUEUE, **kwargs)

    return _make


@pytest.fixture()
def worker(make_worker):
    return make_worker()


@pytest.fixture()
def client(store, channel):
    return TestClient(create_app(store=store, channel=channel))
