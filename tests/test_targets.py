from __future__ import annotations

import math

from engine.config_store import CONFIG_KEY, ConfigStore, MonitorConfig, TargetRule, load_default_document
from engine.targets import TargetTripwires, target_alert, trigger_band


def _monitor(*rules: TargetRule, enabled: bool = True) -> MonitorConfig:
    return MonitorConfig(targets_enabled=enabled, targets=tuple(rules))


def test_band_with_zero_range_is_one_sided() -> None:
    above = TargetRule(symbol="ETH-USDT", target_price=2200.0, direction="above")
    below = TargetRule(symbol="ETH-USDT", target_price=1800.0, direction="below")
    assert trigger_band(above) == (2200.0, math.inf)
    assert trigger_band(below) == (-math.inf, 1800.0)


def test_band_range_is_percent() -> None:
    rule = TargetRule(symbol="ETH-USDT", target_price=2000.0, direction="above", range_percent=1.0)
    lo, hi = trigger_band(rule)
    assert lo == 2000.0
    assert math.isclose(hi, 2020.0)

    rule = TargetRule(symbol="ETH-USDT", target_price=2000.0, direction="below", range_percent=1.0)
    lo, hi = trigger_band(rule)
    assert math.isclose(lo, 1980.0)
    assert hi == 2000.0


def test_above_rule_fires_at_target_and_respects_interval() -> None:
    rule = TargetRule(symbol="ETH-USDT", target_price=2200.0, direction="above", notify_interval_s=60)
    trip = TargetTripwires()
    cfg = _monitor(rule)

    assert trip.on_tick("ETH-USDT", 2199.99, 1_000, cfg) == []
    hits = trip.on_tick("ETH-USDT", 2200.0, 2_000, cfg)
    assert len(hits) == 1
    assert trip.last_notify_ms(rule) == 2_000

    assert trip.on_tick("ETH-USDT", 2250.0, 30_000, cfg) == []
    assert len(trip.on_tick("ETH-USDT", 2250.0, 62_000, cfg)) == 1


def test_range_rule_only_fires_inside_band() -> None:
    rule = TargetRule(symbol="BTC-USDT", target_price=100_000.0, direction="above", range_percent=0.5)
    trip = TargetTripwires()
    cfg = _monitor(rule)
    assert trip.on_tick("BTC-USDT", 100_600.0, 1_000, cfg) == []
    assert len(trip.on_tick("BTC-USDT", 100_400.0, 2_000, cfg)) == 1


def test_other_symbols_and_disabled_targets_are_ignored() -> None:
    rule = TargetRule(symbol="ETH-USDT", target_price=2200.0, direction="above")
    trip = TargetTripwires()
    assert trip.on_tick("BTC-USDT", 99_999.0, 1_000, _monitor(rule)) == []
    assert trip.on_tick("ETH-USDT", 2300.0, 1_000, _monitor(rule, enabled=False)) == []


def test_notify_once_removes_rule_from_stored_document(kv) -> None:
    doc = load_default_document()
    doc["priceTargets"] = {
        "enabled": True,
        "targets": [
            {"symbol": "ETH-USDT", "targetPrice": 1800, "direction": "below", "notifyOnce": True},
            {"symbol": "ETH-USDT", "targetPrice": 2200, "direction": "above"},
        ],
    }
    store = ConfigStore(kv, defaults=doc)
    cfg = store.load()
    trip = TargetTripwires(store)

    hits = trip.on_tick("ETH-USDT", 1790.0, 1_000, cfg)
    assert [h.rule.direction for h in hits] == ["below"]

    stored = kv.get(CONFIG_KEY)
    assert [t["direction"] for t in stored["priceTargets"]["targets"]] == ["above"]
    # retired even while the caller still holds the old config
    assert trip.on_tick("ETH-USDT", 1700.0, 500_000, cfg) == []


def test_target_alert_format() -> None:
    rule = TargetRule(symbol="ETH-USDT", target_price=2200.0, direction="above")
    hit = TargetTripwires().on_tick("ETH-USDT", 2210.5, 1_000, _monitor(rule))[0]
    alert = target_alert(hit)
    assert alert.title == "🎯 ETH-USDT 突破 2200"
    assert alert.meta.sound == "bell"
    assert alert.meta.level == "timeSensitive"
