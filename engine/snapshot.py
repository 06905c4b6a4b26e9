from __future__ import annotations

import copy
import logging
import threading
from collections import defaultdict
from typing import Any

from .kv_store import POSITIONS_TTL_S, PRICE_TTL_S, QUANT_TTL_S, REALTIME_TTL_S, KVStore
from .positions import Position
from .utils import now_ms

logger = logging.getLogger(__name__)


class DataSnapshot:
    """Latest prices, positions and quant status shared by all sessions.

    Writes are per-key and serialized per key; each write is mirrored to the KV store
    with a short TTL for the UI polling path. Reads return copies.
    """

    def __init__(self, kv: KVStore | None = None):
        self._kv = kv
        self._lock = threading.RLock()
        self._key_locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)
        self._prices: dict[str, dict[str, Any]] = {}
        self._positions: dict[str, dict[str, Any]] = {}
        self._quant: dict[str, Any] | None = None
        self._updated_at_ms: int = 0

    def _key_lock(self, key: str) -> threading.Lock:
        with self._lock:
            return self._key_locks[key]

    def set_price(self, symbol: str, price: float, ts_ms: int | None = None) -> None:
        ts = int(ts_ms if ts_ms is not None else now_ms())
        entry = {"price": float(price), "ts": ts}
        key = f"price:{symbol}"
        with self._key_lock(key):
            with self._lock:
                self._prices[symbol] = entry
                self._updated_at_ms = ts
            if self._kv is not None:
                self._kv.set(key, {"symbol": symbol, **entry}, ttl_s=PRICE_TTL_S)

    def set_positions(self, positions: list[Position]) -> None:
        out: dict[str, dict[str, Any]] = {}
        for p in positions:
            out[f"{p.contract}_{p.direction}"] = p.to_dict()
        with self._key_lock("positions"):
            with self._lock:
                self._positions = out
                self._updated_at_ms = now_ms()
            if self._kv is not None:
                self._kv.set("positions", out, ttl_s=POSITIONS_TTL_S)

    def set_quant(self, status: dict[str, Any] | None) -> None:
        with self._key_lock("quant"):
            with self._lock:
                self._quant = copy.deepcopy(status) if status is not None else None
                self._updated_at_ms = now_ms()
            if self._kv is not None and status is not None:
                self._kv.set("quant", status, ttl_s=QUANT_TTL_S)

    def price(self, symbol: str) -> float | None:
        with self._lock:
            entry = self._prices.get(symbol)
            return None if entry is None else float(entry["price"])

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "prices": copy.deepcopy(self._prices),
                "positions": copy.deepcopy(self._positions),
                "quant": copy.deepcopy(self._quant),
                "updatedAt": self._updated_at_ms,
            }

    def publish_realtime(self) -> bool:
        """Mirror the full snapshot to `<prefix>:realtime`."""
        if self._kv is None:
            return False
        with self._key_lock("realtime"):
            return self._kv.set("realtime", self.snapshot(), ttl_s=REALTIME_TTL_S)
