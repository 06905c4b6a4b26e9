from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Iterator
from typing import Any

import redis

from .utils import Backoff, json_dumps_safe

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    try:
        raw = os.getenv(name)
        if raw is None:
            return int(default)
        return int(float(str(raw).strip()))
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    try:
        raw = os.getenv(name)
        if raw is None:
            return float(default)
        return float(str(raw).strip())
    except Exception:
        return float(default)


def _env_str(name: str, default: str = "") -> str:
    raw = os.getenv(name)
    return default if raw is None else str(raw)


DEFAULT_PREFIX = "htx"

# TTLs of the snapshot keys read by the UI polling path.
PRICE_TTL_S = 60
POSITIONS_TTL_S = 300
QUANT_TTL_S = 300
REALTIME_TTL_S = 300


class KVStore:
    """JSON document store over Redis with a fixed key namespace.

    The store is soft state: every operation logs and returns a neutral value on failure
    (None / False / []), so callers on the tick path never see a Redis exception.
    """

    def __init__(self, *, client: Any | None = None, prefix: str | None = None):
        self.prefix = str(prefix if prefix is not None else _env_str("HTX_KV_PREFIX", DEFAULT_PREFIX)).strip(":")
        if client is None:
            timeout_s = _env_float("HTX_KV_TIMEOUT_S", 2.0)
            client = redis.Redis(
                host=_env_str("REDIS_HOST", "localhost"),
                port=_env_int("REDIS_PORT", 6379),
                db=_env_int("REDIS_DB", 3),
                password=_env_str("REDIS_PASSWORD", "") or None,
                socket_timeout=timeout_s,
                socket_connect_timeout=timeout_s,
                decode_responses=True,
            )
        self._client = client
        self.last_error: str | None = None

    def key(self, name: str) -> str:
        name = str(name)
        if self.prefix and not name.startswith(self.prefix + ":"):
            return f"{self.prefix}:{name}"
        return name

    def _strip(self, full_key: str) -> str:
        head = self.prefix + ":"
        return full_key[len(head):] if self.prefix and full_key.startswith(head) else full_key

    def _note_error(self, op: str, key: str, exc: Exception) -> None:
        self.last_error = f"{op} {key}: {exc}"
        logger.warning("⚠️ KV %s failed for %s: %s", op, key, exc)

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError as e:
            self._note_error("ping", "-", e)
            return False

    def get_raw(self, name: str) -> str | None:
        k = self.key(name)
        try:
            raw = self._client.get(k)
        except redis.RedisError as e:
            self._note_error("get", k, e)
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        return raw

    def get(self, name: str) -> Any | None:
        raw = self.get_raw(name)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("KV value at %s is not JSON: %s", self.key(name), e)
            return None

    def set(self, name: str, value: Any, ttl_s: int | None = None) -> bool:
        """Stores `value` as JSON. ttl_s of None or 0 keeps the key permanently."""
        k = self.key(name)
        payload = json_dumps_safe(value)
        try:
            if ttl_s:
                self._client.set(k, payload, ex=int(ttl_s))
            else:
                self._client.set(k, payload)
            return True
        except redis.RedisError as e:
            self._note_error("set", k, e)
            return False

    def delete(self, name: str) -> bool:
        k = self.key(name)
        try:
            self._client.delete(k)
            return True
        except redis.RedisError as e:
            self._note_error("del", k, e)
            return False

    def mget(self, pattern: str) -> list[tuple[str, Any]]:
        """Returns [(key_without_prefix, decoded_value), ...] for keys matching `pattern`."""
        p = self.key(pattern)
        try:
            keys = sorted(str(k) for k in self._client.scan_iter(match=p))
            if not keys:
                return []
            values = self._client.mget(keys)
        except redis.RedisError as e:
            self._note_error("mget", p, e)
            return []
        out: list[tuple[str, Any]] = []
        for k, raw in zip(keys, values):
            if raw is None:
                continue
            try:
                out.append((self._strip(k), json.loads(raw)))
            except json.JSONDecodeError:
                logger.debug("KV mget skipped non-JSON value at %s", k)
        return out

    def publish(self, channel: str, message: Any) -> bool:
        ch = self.key(channel)
        try:
            self._client.publish(ch, json_dumps_safe(message))
            return True
        except redis.RedisError as e:
            self._note_error("publish", ch, e)
            return False

    def subscribe(self, channel: str) -> "KVSubscription":
        return KVSubscription(self, self.key(channel))


class KVSubscription:
    """Pub/sub stream for one channel; resubscribes after Redis errors."""

    def __init__(self, store: KVStore, channel: str, *, poll_s: float = 1.0):
        self._store = store
        self.channel = channel
        self._poll_s = float(poll_s)
        self._backoff = Backoff(base_s=1.0, max_s=30.0, jitter_pct=0.1)

    def messages(self, stop_event: threading.Event) -> Iterator[Any]:
        """Yields decoded messages until `stop_event` is set."""
        attempt = 0
        while not stop_event.is_set():
            pubsub = None
            try:
                pubsub = self._store._client.pubsub(ignore_subscribe_messages=True)
                pubsub.subscribe(self.channel)
                attempt = 0
                while not stop_event.is_set():
                    msg = pubsub.get_message(timeout=self._poll_s)
                    if not msg or msg.get("type") != "message":
                        continue
                    data = msg.get("data")
                    if isinstance(data, bytes):
                        data = data.decode("utf-8", errors="replace")
                    try:
                        yield json.loads(data)
                    except (TypeError, json.JSONDecodeError):
                        yield data
            except redis.RedisError as e:
                attempt += 1
                self._store._note_error("subscribe", self.channel, e)
                stop_event.wait(self._backoff.delay(attempt))
            finally:
                if pubsub is not None:
                    try:
                        pubsub.close()
                    except redis.RedisError:
                        logger.debug("pubsub close failed for %s", self.channel, exc_info=True)
