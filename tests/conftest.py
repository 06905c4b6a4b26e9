from __future__ import annotations

import fnmatch

import pytest
import redis

from engine.kv_store import KVStore


class FakeRedis:
    """In-memory stand-in for the handful of redis.Redis calls the KV store makes."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.published: list[tuple[str, str]] = []
        self.fail = False

    def _check(self):
        if self.fail:
            raise redis.ConnectionError("redis down")

    def ping(self):
        self._check()
        return True

    def get(self, key):
        self._check()
        return self.data.get(key)

    def set(self, key, value, ex=None):
        self._check()
        self.data[key] = value
        if ex:
            self.ttls[key] = int(ex)
        else:
            self.ttls.pop(key, None)
        return True

    def delete(self, key):
        self._check()
        self.data.pop(key, None)
        self.ttls.pop(key, None)
        return 1

    def scan_iter(self, match=None):
        self._check()
        return [k for k in list(self.data) if match is None or fnmatch.fnmatch(k, match)]

    def mget(self, keys):
        self._check()
        return [self.data.get(k) for k in keys]

    def publish(self, channel, message):
        self._check()
        self.published.append((channel, message))
        return 0


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def kv(fake_redis) -> KVStore:
    return KVStore(client=fake_redis, prefix="htx")
