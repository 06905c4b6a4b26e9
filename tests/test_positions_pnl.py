from __future__ import annotations

import math

from engine.config_store import NotificationConfig
from engine.pnl import PnLEvaluator, compute_pnl
from engine.positions import Position, PositionBook, parse_positions
from engine.symbol_meta import SymbolMeta


def _pos(contract="ETH-USDT", direction="long", volume=10.0, cost=2000.0, margin=20.0) -> Position:
    return Position(contract=contract, direction=direction, volume=volume, cost_open=cost, position_margin=margin)


def test_parse_positions_maps_sides_and_skips_garbage() -> None:
    data = [
        {"contract_code": "eth-usdt", "direction": "buy", "volume": 10, "cost_open": 2000, "position_margin": 20},
        {"contract_code": "BTC-USDT", "direction": "sell", "volume": "3", "cost_open": "90000", "lever_rate": 20},
        {"contract_code": "BTC-USDT", "direction": "sideways", "volume": 1, "cost_open": 1},
        "junk",
    ]
    out = parse_positions(data, received_at_ms=123)
    assert [(p.contract, p.direction, p.volume) for p in out] == [("ETH-USDT", "long", 10.0), ("BTC-USDT", "short", 3.0)]
    assert out[1].lever_rate == 20.0
    assert out[0].received_at_ms == 123
    assert out[0].to_dict()["costOpen"] == 2000.0


def test_book_replaces_per_contract_and_drops_closed() -> None:
    book = PositionBook()
    book.replace_all([_pos(), _pos(direction="short"), _pos(contract="BTC-USDT")])
    assert book.symbols() == {"ETH-USDT", "BTC-USDT"}

    # a push for ETH lists only the long side: the short is gone, BTC untouched
    book.apply([_pos(volume=5.0)])
    assert sorted(p.key for p in book.all()) == [("BTC-USDT", "long"), ("ETH-USDT", "long")]
    assert book.for_symbol("ETH-USDT")[0].volume == 5.0

    book.apply([_pos(contract="BTC-USDT", volume=0.0)])
    assert book.symbols() == {"ETH-USDT"}
    assert len(book) == 1


def test_compute_pnl_uses_contract_size() -> None:
    s = compute_pnl(_pos(volume=10, cost=2000, margin=20), 2010.0, 0.01)
    assert math.isclose(s.pnl, 1.0)
    assert math.isclose(s.roe, 5.0)
    assert math.isclose(s.actual, 0.1)

    short = compute_pnl(_pos(direction="short", volume=10, cost=2000, margin=20), 2010.0, 0.01)
    assert math.isclose(short.pnl, -1.0)

    assert compute_pnl(_pos(margin=0.0), 2010.0, 0.01) is None


def test_symbol_meta_defaults(monkeypatch) -> None:
    monkeypatch.setenv("HTX_CONTRACT_SIZES", "SOL=1,DOGE-USDT=100,bad")
    meta = SymbolMeta()
    assert meta.contract_size("BTC-USDT") == 0.001
    assert meta.contract_size("ETH-USDT") == 0.01
    assert meta.contract_size("DOGE-USDT") == 100.0
    assert meta.contract_size("UNKNOWN-USDT") == 1.0


def test_evaluator_fires_profit_alert_once_per_band() -> None:
    ev = PnLEvaluator(SymbolMeta())
    cfg = NotificationConfig(profit_threshold=3, loss_threshold=-5, repeat_interval_ms=5_000)
    positions = [_pos(volume=10, cost=2000, margin=20)]

    # roe 5% -> enter
    alerts = ev.on_tick("ETH-USDT", 2010.0, positions, cfg, now_ms=10_000)
    assert len(alerts) == 1
    assert alerts[0].title == "🎉 ETH-USDT 盈利 5.00%"
    assert alerts[0].meta.sound == "paymentsuccess"
    assert alerts[0].meta.level == "active"
    assert alerts[0].subject == "ETH-USDT_long"

    # still in band, no further 1-point move
    assert ev.on_tick("ETH-USDT", 2010.1, positions, cfg, now_ms=20_000) == []
    # other symbol ticks do not touch ETH positions
    assert ev.on_tick("BTC-USDT", 1.0, positions, cfg, now_ms=30_000) == []


def test_evaluator_loss_alert_and_time_sensitive_level() -> None:
    ev = PnLEvaluator(SymbolMeta())
    cfg = NotificationConfig(enable_loss=True, loss_threshold=-5)
    alerts = ev.on_tick("ETH-USDT", 1950.0, [_pos()], cfg, now_ms=10_000)
    assert alerts[0].title == "⚠️ ETH-USDT 亏损 25.00%"
    assert alerts[0].meta.sound == "alarm"
    assert alerts[0].meta.level == "timeSensitive"


def test_forget_lets_a_reopened_position_alert_again() -> None:
    ev = PnLEvaluator(SymbolMeta())
    cfg = NotificationConfig(repeat_interval_ms=0)
    ev.on_tick("ETH-USDT", 2010.0, [_pos()], cfg, now_ms=1)
    ev.forget(("ETH-USDT", "long"))
    assert len(ev.on_tick("ETH-USDT", 2010.0, [_pos()], cfg, now_ms=2)) == 1


def test_summary_waits_one_interval_and_skips_without_positions() -> None:
    ev = PnLEvaluator(SymbolMeta())
    cfg = NotificationConfig(enable_time=True, time_interval_ms=60_000)
    positions = [_pos(), _pos(contract="BTC-USDT", volume=100, cost=100_000, margin=500)]
    prices = {"ETH-USDT": 2010.0, "BTC-USDT": 99_000.0}

    assert ev.summary(positions, prices, cfg, now_ms=0) is None
    assert ev.summary(positions, prices, cfg, now_ms=30_000) is None

    alert = ev.summary(positions, prices, cfg, now_ms=60_000)
    assert alert is not None and alert.kind == "summary"
    # pnl: ETH +1.0, BTC -100; margin 520
    assert math.isclose(alert.data["totalProfit"], -99.0)
    assert math.isclose(alert.data["totalRate"], round(-99.0 / 520 * 100, 4))
    assert alert.data["positionCount"] == 2

    assert ev.summary([], prices, cfg, now_ms=200_000) is None


def test_summary_disabled() -> None:
    ev = PnLEvaluator(SymbolMeta())
    cfg = NotificationConfig(enable_time=False)
    assert ev.summary([_pos()], {"ETH-USDT": 1.0}, cfg, now_ms=0) is None
