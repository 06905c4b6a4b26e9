from __future__ import annotations

import hashlib
import json
import logging
import threading

from engine.utils import Backoff, SingleFlight, canonical_json, deep_merge, safe_float, sha256_json


def test_deep_merge_warns_and_ignores_non_dict_override(caplog) -> None:
    base = {"quantConfig": {"leverage": 10}}

    with caplog.at_level(logging.WARNING):
        out = deep_merge(base, "not-a-dict")

    assert out is base
    assert "deep_merge override ignored" in caplog.text


def test_deep_merge_recurses_and_replaces_lists() -> None:
    base = {"quantConfig": {"leverage": 10, "symbol": "BTC-USDT"}, "watchContracts": ["ETH-USDT"]}
    deep_merge(base, {"quantConfig": {"leverage": 20}, "watchContracts": ["BTC-USDT"]})
    assert base == {"quantConfig": {"leverage": 20, "symbol": "BTC-USDT"}, "watchContracts": ["BTC-USDT"]}


def test_sha256_json_is_key_order_independent() -> None:
    a = {"b": 1, "a": {"y": 2, "x": 1}}
    b = {"a": {"x": 1, "y": 2}, "b": 1}
    assert sha256_json(a) == sha256_json(b)
    expected = hashlib.sha256(json.dumps(a, sort_keys=True, separators=(",", ":")).encode()).hexdigest()
    assert sha256_json(a) == expected
    assert canonical_json(a) == '{"a":{"x":1,"y":2},"b":1}'


def test_safe_float() -> None:
    assert safe_float("1.5") == 1.5
    assert safe_float(None, 3.0) == 3.0
    assert safe_float("x", None) is None


def test_backoff_grows_and_caps() -> None:
    b = Backoff(base_s=1.0, max_s=4.0, jitter_pct=0.0)
    assert [b.delay(i) for i in (1, 2, 3, 4, 10)] == [1.0, 2.0, 4.0, 4.0, 4.0]


def test_single_flight_drops_concurrent_callers() -> None:
    flight = SingleFlight("test")
    entered = threading.Event()
    release = threading.Event()

    def _slow():
        entered.set()
        release.wait(2.0)
        return "done"

    results = []
    t = threading.Thread(target=lambda: results.append(flight.try_run(_slow)))
    t.start()
    assert entered.wait(2.0)

    assert flight.busy is True
    assert flight.try_run(lambda: "second") == (False, None)

    release.set()
    t.join(2.0)
    assert results == [(True, "done")]
    assert flight.try_run(lambda: "again") == (True, "again")
