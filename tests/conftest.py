"""
Shared fixtures: an isolated store/broadcaster/service per test and a
subscriber whose queue can be drained to see what was broadcast.
"""
import json
import random

import pytest
from fastapi.testclient import TestClient

from tracker.broadcast import Broadcaster
from tracker.config import Settings
from tracker.main import create_app
from tracker.service import RosterService
from tracker.store import RosterStore


class FixedWeek:
    """Week-key function the tests can move forward by hand."""

    def __init__(self, key="2026-W10"):
        self.key = key

    def __call__(self):
        return self.key


class DirtyCounter:
    def __init__(self):
        self.count = 0

    def mark_dirty(self):
        self.count += 1


def drain(subscriber):
    """Decode and remove everything queued for *subscriber*."""
    messages = []
    while not subscriber.queue.empty():
        messages.append(json.loads(subscriber.queue.get_nowait()))
    return messages


@pytest.fixture
def week():
    return FixedWeek()


@pytest.fixture
def store():
    return RosterStore()


@pytest.fixture
def broadcaster():
    return Broadcaster()


@pytest.fixture
def persistence():
    return DirtyCounter()


@pytest.fixture
def service(store, broadcaster, persistence, week):
    return RosterService(store, broadcaster, persistence, week_key_fn=week, rng=random.Random(7))


@pytest.fixture
def listener(broadcaster):
    """A subscriber with the connect snapshot already drained."""
    subscriber = broadcaster.subscribe(object(), {})
    drain(subscriber)
    return subscriber


@pytest.fixture
def settings(tmp_path):
    return Settings(data_file=tmp_path / "classroom-data.json", seed_sample_class=False)


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as test_client:
        yield test_client
