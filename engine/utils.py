from __future__ import annotations

import hashlib
import json
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


def deep_merge(base: dict[str, Any], override: Any) -> dict[str, Any]:
    """Merge `override` into `base` in place and return `base`.

    Nested mappings merge key by key; any other value (lists included) replaces what
    `base` held. A non-mapping override is logged and ignored.
    """
    if override is None or not isinstance(base, dict):
        return base
    if not isinstance(override, dict):
        logger.warning("deep_merge override ignored: expected dict, got %s", type(override).__name__)
        return base
    for key, val in override.items():
        cur = base.get(key)
        if isinstance(val, dict) and isinstance(cur, dict):
            deep_merge(cur, val)
        else:
            base[key] = val
    return base


def canonical_json(obj: Any) -> str:
    """Key-sorted, whitespace-free JSON used for hashing and equality checks."""
    try:
        return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError):
        return repr(obj)


def sha256_json(obj: Any) -> str:
    """Hex digest of `canonical_json(obj)`; equal documents hash equal."""
    return hashlib.sha256(canonical_json(obj).encode("utf-8")).hexdigest()


def json_dumps_safe(obj: Any) -> str:
    """Compact JSON for KV values; anything json cannot encode is stringified."""
    try:
        return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        return json.dumps(repr(obj), ensure_ascii=False)


def safe_float(val: Any, default: float | None = 0.0) -> float | None:
    try:
        if val is None:
            return default
        return float(val)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class Backoff:
    """Doubling delay capped at `max_s`, spread by +/- `jitter_pct`."""

    base_s: float = 1.0
    max_s: float = 30.0
    jitter_pct: float = 0.25

    def delay(self, attempt: int) -> float:
        """Seconds to wait before retry number `attempt` (first retry is 1)."""
        step = max(1, int(attempt)) - 1
        center = min(self.max_s, self.base_s * (2**step))
        spread = center * max(0.0, float(self.jitter_pct))
        return random.uniform(center - spread, center + spread)


class SingleFlight:
    """At most one in-flight run; concurrent callers are dropped, not queued."""

    def __init__(self, name: str = ""):
        self.name = str(name)
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def try_run(self, fn, *args, **kwargs) -> tuple[bool, Any]:
        """Returns (ran, result). `ran` is False when another call was in flight."""
        if not self._lock.acquire(blocking=False):
            logger.debug("single-flight %s busy; call dropped", self.name or "?")
            return False, None
        try:
            return True, fn(*args, **kwargs)
        finally:
            self._lock.release()


def now_ms() -> int:
    return int(time.time() * 1000)


def monotonic_ms() -> int:
    return int(time.monotonic() * 1000)
