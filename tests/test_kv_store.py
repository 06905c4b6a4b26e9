from __future__ import annotations

import json
import threading

import redis

from engine.kv_store import PRICE_TTL_S, KVStore
from engine.utils import Backoff


def test_keys_are_prefixed_once(kv) -> None:
    assert kv.key("config") == "htx:config"
    assert kv.key("htx:config") == "htx:config"


def test_set_get_json_with_ttl(kv, fake_redis) -> None:
    assert kv.set("price:ETH-USDT", {"price": 2000.5}, ttl_s=PRICE_TTL_S) is True
    assert fake_redis.ttls["htx:price:ETH-USDT"] == PRICE_TTL_S
    assert kv.get("price:ETH-USDT") == {"price": 2000.5}

    kv.set("config", {"a": 1})
    assert "htx:config" not in fake_redis.ttls


def test_non_json_value_reads_as_none(kv, fake_redis) -> None:
    fake_redis.data["htx:broken"] = "{not json"
    assert kv.get("broken") is None
    assert kv.get_raw("broken") == "{not json"


def test_mget_strips_prefix(kv) -> None:
    kv.set("cache:quant:paper:BTC-USDT", {"balance": 1})
    kv.set("cache:quant:paper:ETH-USDT", {"balance": 2})
    kv.set("config", {})
    out = kv.mget("cache:quant:paper:*")
    assert out == [("cache:quant:paper:BTC-USDT", {"balance": 1}), ("cache:quant:paper:ETH-USDT", {"balance": 2})]


def test_redis_errors_become_neutral_values(kv, fake_redis) -> None:
    fake_redis.fail = True
    assert kv.ping() is False
    assert kv.get("config") is None
    assert kv.set("config", {}) is False
    assert kv.delete("config") is False
    assert kv.mget("*") == []
    assert kv.publish("config:update", {}) is False
    assert kv.last_error and "redis down" in kv.last_error


class _FakePubSub:
    def __init__(self, messages):
        self._messages = list(messages)
        self.subscribed = []
        self.closed = False

    def subscribe(self, channel):
        self.subscribed.append(channel)

    def get_message(self, timeout=None):
        if self._messages:
            return self._messages.pop(0)
        return None

    def close(self):
        self.closed = True


class _PubSubClient:
    def __init__(self, pubsubs):
        self._pubsubs = list(pubsubs)

    def pubsub(self, ignore_subscribe_messages=True):
        item = self._pubsubs.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def test_subscription_yields_decoded_messages_and_resubscribes() -> None:
    first = _FakePubSub([{"type": "message", "data": json.dumps({"ts": 1})}])
    second = _FakePubSub([{"type": "subscribe", "data": 1}, {"type": "message", "data": b"plain"}])
    client = _PubSubClient([redis.ConnectionError("gone"), first, second])
    store = KVStore(client=client, prefix="htx")

    sub = store.subscribe("config:update")
    sub._backoff = Backoff(base_s=0.0, max_s=0.0, jitter_pct=0.0)
    sub._poll_s = 0.0

    stop = threading.Event()
    got = []
    for msg in sub.messages(stop):
        got.append(msg)
        if len(got) == 1:
            # force a reconnect onto the second pubsub
            first.get_message = lambda timeout=None: (_ for _ in ()).throw(redis.ConnectionError("drop"))
        if len(got) == 2:
            stop.set()

    assert got == [{"ts": 1}, "plain"]
    assert first.subscribed == ["htx:config:update"]
    assert first.closed is True
