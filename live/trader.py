"""Quant trader: signal-driven leveraged trading for one symbol.

Paper mode (`testMode: true`) simulates fills at the tick price and persists its state to
`cache:quant:paper:<SYMBOL>`. Live mode sends orders through `HtxLiveExecutor`, takes its
positions from the authenticated stream and never persists: the venue is the source of truth.

Thresholds (`stopLoss`, `takeProfit`, `trailingStop`) are ROE fractions on margin, compared
directly with `priceChange * leverage`.
"""

import dataclasses
import logging
import math
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from engine.alerting import Alert, AlertDispatcher
from engine.config_store import ConfigStore, MonitorConfig, QuantConfig
from engine.kv_store import KVStore
from engine.notifiers import DeliveryMeta
from engine.positions import Position
from engine.snapshot import DataSnapshot
from engine.symbol_meta import SymbolMeta
from engine.utils import SingleFlight, now_ms, safe_float
from exchange.executor import HtxLiveExecutor
from strategy.simple_signal import Signal

logger = logging.getLogger(__name__)

COMMAND_TTL_S = 10
COMMAND_MAX_AGE_MS = 5_000
ORDER_HISTORY_MAX = 100
SIGNAL_HISTORY_MAX = 20
# Relative price move since the last signal check that triggers a new one.
SIGNAL_PRICE_MOVE = 0.003
# Open positions are re-analysed on this move or after this long, whichever comes first.
EXIT_ANALYSIS_PRICE_MOVE = 0.003
EXIT_ANALYSIS_INTERVAL_MS = 60_000
REVERSAL_CONFIDENCE = 60.0
ADVERSE_CONFIDENCE = 70.0
BREAKEVEN_MAX_CONFIDENCE = 40.0

REASON_STOP_LOSS = "stop-loss"
REASON_TAKE_PROFIT = "take-profit"
REASON_TRAILING = "trailing-stop"
REASON_MANUAL = "manual"
REASON_OFFLINE_STOP = "stop during offline"
REASON_OFFLINE_TAKE = "take during offline"
REASON_SMART_TAKE = "smart take-profit"
REASON_SMART_STOP = "smart stop-loss"
REASON_SMART_BREAKEVEN = "smart breakeven"

# config document field -> QuantConfig attribute, for tunables applied without restart
_HOT_ATTRS = {
    "enabled": "enabled",
    "positionSize": "position_size",
    "stopLoss": "stop_loss",
    "takeProfit": "take_profit",
    "trailingStop": "trailing_stop",
    "maxPositions": "max_positions",
    "minConfidence": "min_confidence",
    "smartExit": "smart_exit",
}
_RESTART_ATTRS = {
    "testMode": "test_mode",
    "symbol": "symbol",
    "leverage": "leverage",
    "initialBalance": "initial_balance",
    "signalMode": "signal_mode",
}


def state_key(mode: str, symbol: str) -> str:
    return f"cache:quant:{mode}:{symbol}"


def history_key(mode: str, symbol: str) -> str:
    return f"cache:quant:history:{mode}:{symbol}"


def command_key(symbol: str) -> str:
    return f"cache:quant:command:{symbol}"


@dataclass
class QuantPosition:
    id: str
    direction: str  # long | short
    entry_price: float
    size: float  # base-asset units
    value: float  # notional = margin * leverage
    leverage: float
    open_time: int
    open_fee: float = 0.0
    highest_price: float | None = None
    lowest_price: float | None = None
    volume: int = 0  # venue contracts, live mode
    suggestion: dict[str, Any] | None = None

    @property
    def margin(self) -> float:
        return self.value / self.leverage if self.leverage else self.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "direction": self.direction,
            "entryPrice": self.entry_price,
            "size": self.size,
            "value": self.value,
            "leverage": self.leverage,
            "openTime": self.open_time,
            "openFee": self.open_fee,
            "highestPrice": self.highest_price,
            "lowestPrice": self.lowest_price,
            "volume": self.volume,
            "suggestion": self.suggestion,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "QuantPosition | None":
        direction = str(raw.get("direction") or "")
        entry = safe_float(raw.get("entryPrice"), None)
        size = safe_float(raw.get("size"), None)
        value = safe_float(raw.get("value"), None)
        if direction not in {"long", "short"} or not entry or not size or not value:
            return None
        return cls(
            id=str(raw.get("id") or uuid.uuid4().hex[:12]),
            direction=direction,
            entry_price=float(entry),
            size=float(size),
            value=float(value),
            leverage=float(safe_float(raw.get("leverage"), 1.0) or 1.0),
            open_time=int(safe_float(raw.get("openTime"), 0) or 0),
            open_fee=float(safe_float(raw.get("openFee"), 0.0) or 0.0),
            highest_price=safe_float(raw.get("highestPrice"), None),
            lowest_price=safe_float(raw.get("lowestPrice"), None),
            volume=int(safe_float(raw.get("volume"), 0) or 0),
            suggestion=raw.get("suggestion") if isinstance(raw.get("suggestion"), dict) else None,
        )


@dataclass
class QuantStats:
    total_trades: int = 0
    win_trades: int = 0
    loss_trades: int = 0
    total_profit: float = 0.0
    total_fees: float = 0.0
    max_drawdown: float = 0.0
    peak_balance: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalTrades": self.total_trades,
            "winTrades": self.win_trades,
            "lossTrades": self.loss_trades,
            "totalProfit": self.total_profit,
            "totalFees": self.total_fees,
            "maxDrawdown": self.max_drawdown,
            "peakBalance": self.peak_balance,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any], *, peak_default: float) -> "QuantStats":
        return cls(
            total_trades=int(safe_float(raw.get("totalTrades"), 0) or 0),
            win_trades=int(safe_float(raw.get("winTrades"), 0) or 0),
            loss_trades=int(safe_float(raw.get("lossTrades"), 0) or 0),
            total_profit=float(safe_float(raw.get("totalProfit"), 0.0) or 0.0),
            total_fees=float(safe_float(raw.get("totalFees"), 0.0) or 0.0),
            max_drawdown=float(safe_float(raw.get("maxDrawdown"), 0.0) or 0.0),
            peak_balance=float(safe_float(raw.get("peakBalance"), peak_default) or peak_default),
        )


def price_change(direction: str, entry: float, last: float) -> float:
    """Signed relative move in the position's favour."""
    if entry <= 0:
        return 0.0
    if direction == "long":
        return (last - entry) / entry
    return (entry - last) / entry


def position_roe(pos: QuantPosition, last: float) -> float:
    return price_change(pos.direction, pos.entry_price, last) * pos.leverage


def trailing_retrace(pos: QuantPosition, last: float) -> float:
    """Leveraged retrace from the best price seen, as an ROE fraction."""
    if pos.direction == "long":
        hi = pos.highest_price or pos.entry_price
        return (hi - last) / hi * pos.leverage if hi > 0 else 0.0
    lo = pos.lowest_price or pos.entry_price
    return (last - lo) / lo * pos.leverage if lo > 0 else 0.0


def early_exit_reason(direction: str, roe: float, sig: Signal, *, take_profit: float, stop_loss: float) -> str | None:
    """Exit reason when a fresh signal argues against holding, else None.

    In profit: a confident reversal, or the signal fading to hold past half the take-profit.
    In a shallow loss: a strongly confident reversal. Small profit: an unconvinced hold.
    """
    opposite = "short" if direction == "long" else "long"
    reversal = sig.action == opposite
    if roe > 0:
        if reversal and sig.confidence >= REVERSAL_CONFIDENCE:
            return REASON_SMART_TAKE
        if roe >= take_profit * 0.5 and sig.action == "hold":
            return REASON_SMART_TAKE
        if roe < take_profit * 0.3 and sig.action == "hold" and sig.confidence < BREAKEVEN_MAX_CONFIDENCE:
            return REASON_SMART_BREAKEVEN
    elif -stop_loss < roe < 0 and reversal and sig.confidence >= ADVERSE_CONFIDENCE:
        return REASON_SMART_STOP
    return None


@dataclass(frozen=True)
class CommandResult:
    ok: bool
    message: str
    data: dict[str, Any] = field(default_factory=dict)


class QuantTrader:
    def __init__(
        self,
        cfg: QuantConfig,
        *,
        kv: KVStore | None = None,
        snapshot: DataSnapshot | None = None,
        signals=None,
        executor: HtxLiveExecutor | None = None,
        symbol_meta: SymbolMeta | None = None,
        config_store: ConfigStore | None = None,
        alerts: AlertDispatcher | None = None,
        background: bool = True,
    ):
        if not cfg.test_mode and executor is None:
            raise ValueError("live mode needs an order executor")
        self.cfg = cfg
        self._boot_cfg = cfg
        self.symbol = cfg.symbol
        self.mode = cfg.mode
        self._kv = kv
        self._snapshot = snapshot
        self._signals = signals
        self._executor = executor
        self._meta = symbol_meta or SymbolMeta()
        self._store = config_store
        self._alerts = alerts
        self._background = bool(background)

        self._lock = threading.RLock()
        self.balance = float(cfg.initial_balance)
        self.positions: list[QuantPosition] = []
        self.orders: list[dict[str, Any]] = []
        self.stats = QuantStats(peak_balance=float(cfg.initial_balance))
        self.last_price = 0.0
        self.signal_history: deque[dict[str, Any]] = deque(maxlen=SIGNAL_HISTORY_MAX)

        self._needs_verify = False
        self._last_signal_check_ms: int | None = None
        self._last_signal_check_price = 0.0
        self._last_exit_check_ms: int | None = None
        self._last_exit_check_price = 0.0
        self._closing: set[str] = set()
        self._restart_pending: dict[str, Any] = {}
        self._seq = 0

        self._signal_flight = SingleFlight("quant-signal")
        self._exit_flight = SingleFlight("quant-exit-analysis")
        self._open_flight = SingleFlight("quant-open")
        self._reload_flight = SingleFlight("quant-config-reload")
        self._reload_dirty = False
        self._latest_quant: QuantConfig | None = None

    # -- persistence -------------------------------------------------------

    @property
    def persistent(self) -> bool:
        return self.mode == "paper" and self._kv is not None

    def load(self) -> bool:
        """Restore paper state. Returns True when a saved state was found."""
        if not self.persistent:
            logger.info("📝 quant %s %s: starting without persisted state", self.mode, self.symbol)
            return False
        raw = self._kv.get(state_key(self.mode, self.symbol))
        if not isinstance(raw, dict):
            logger.info("📝 quant %s: first start, balance %.2f USDT", self.symbol, self.balance)
            return False
        with self._lock:
            self.balance = float(safe_float(raw.get("balance"), self.cfg.initial_balance))
            self.positions = [p for p in (QuantPosition.from_dict(x) for x in raw.get("positions") or [] if isinstance(x, dict)) if p]
            self.orders = [o for o in raw.get("orders") or [] if isinstance(o, dict)][-ORDER_HISTORY_MAX:]
            self.stats = QuantStats.from_dict(raw.get("stats") or {}, peak_default=self.cfg.initial_balance)
            self._needs_verify = bool(self.positions)
        logger.info(
            "✅ quant state loaded from %s: balance=%.2f positions=%d trades=%d",
            state_key(self.mode, self.symbol), self.balance, len(self.positions), self.stats.total_trades,
        )
        if self._needs_verify:
            logger.warning("⚠️ %d paper position(s) restored; verifying on the first price", len(self.positions))
        return True

    def _state_doc(self) -> dict[str, Any]:
        return {
            "balance": self.balance,
            "positions": [p.to_dict() for p in self.positions],
            "orders": list(self.orders[-ORDER_HISTORY_MAX:]),
            "stats": self.stats.to_dict(),
            "lastUpdate": now_ms(),
        }

    def save(self) -> bool:
        if not self.persistent:
            return False
        with self._lock:
            doc = self._state_doc()
            closed = [o for o in self.orders if o.get("type") == "close"][-ORDER_HISTORY_MAX:]
        ok = self._kv.set(state_key(self.mode, self.symbol), doc)
        if closed:
            self._kv.set(history_key(self.mode, self.symbol), closed)
        return ok

    def order_history(self) -> list[dict[str, Any]]:
        if self._kv is None:
            return []
        hist = self._kv.get(history_key(self.mode, self.symbol))
        return hist if isinstance(hist, list) else []

    # -- status ------------------------------------------------------------

    def get_status(self) -> dict[str, Any]:
        with self._lock:
            last = self.last_price
            positions = []
            for p in self.positions:
                delta = price_change(p.direction, p.entry_price, last) if last > 0 else 0.0
                positions.append(
                    {
                        "id": p.id,
                        "direction": p.direction,
                        "symbol": self.symbol,
                        "entryPrice": p.entry_price,
                        "size": p.size,
                        "value": p.value,
                        "leverage": p.leverage,
                        "openTime": p.open_time,
                        "openFee": p.open_fee,
                        "profitUSDT": delta * p.value,
                        "profitPercent": delta * 100.0,
                        "roe": delta * p.leverage * 100.0,
                    }
                )
            c = self.cfg
            return {
                "enabled": c.enabled,
                "mode": self.mode,
                "testMode": c.test_mode,
                "dryRun": c.dry_run,
                "symbol": self.symbol,
                "balance": self.balance,
                "lastPrice": last,
                "config": {
                    "leverage": c.leverage,
                    "positionSize": c.position_size,
                    "stopLoss": c.stop_loss,
                    "takeProfit": c.take_profit,
                    "trailingStop": c.trailing_stop,
                    "maxPositions": c.max_positions,
                    "minConfidence": c.min_confidence,
                    "signalMode": c.signal_mode,
                    "smartExit": c.smart_exit,
                },
                "positions": positions,
                "stats": self.stats.to_dict(),
                "signalHistory": list(self.signal_history),
                "canStop": not self.positions,
            }

    def publish_status(self) -> None:
        if self._snapshot is not None:
            self._snapshot.set_quant(self.get_status())

    def print_status(self) -> None:
        if not self.cfg.enabled:
            return
        st = self.get_status()
        s = st["stats"]
        bar = "═" * 60
        lines = [
            bar,
            f"🤖 [quant] {self.symbol} - {'paper' if self.cfg.test_mode else 'live'}{' (dry run)' if self.cfg.dry_run else ''}",
            f"💰 balance: {st['balance']:.2f} USDT | 💵 price: {st['lastPrice']:.2f} | 📈 positions: {len(st['positions'])}/{self.cfg.max_positions}",
        ]
        for i, p in enumerate(st["positions"], 1):
            dot = "🟢" if p["profitUSDT"] >= 0 else "🔴"
            lines.append(
                f"  #{i} {dot} {p['direction'].upper()} entry {p['entryPrice']:.2f} size {p['size']:.6g} "
                f"{p['leverage']:g}x: {p['profitUSDT']:+.2f} USDT (ROE {p['roe']:+.2f}%)"
            )
        win_rate = s["winTrades"] / s["totalTrades"] * 100.0 if s["totalTrades"] else 0.0
        lines.append(
            f"📊 trades {s['totalTrades']} (win {s['winTrades']} / loss {s['lossTrades']}, {win_rate:.1f}%) | "
            f"profit {s['totalProfit']:+.2f} | fees {s['totalFees']:.4f} | max drawdown {s['maxDrawdown'] * 100:.2f}%"
        )
        lines.append(bar)
        logger.info("\n".join(lines))

    # -- tick pipeline -----------------------------------------------------

    def on_tick(self, symbol: str, price: float, ts_ms: int | None = None) -> None:
        if symbol != self.symbol or price <= 0:
            return
        ts = now_ms() if ts_ms is None else int(ts_ms)
        with self._lock:
            self.last_price = float(price)
            if not self.cfg.enabled:
                return
            if self._needs_verify:
                self._needs_verify = False
                self.verify_offline(price)
            self.supervise(price)
            want_signal = self._should_check_signal(price, ts)
            if want_signal:
                self._last_signal_check_ms = ts
                self._last_signal_check_price = float(price)
            want_exit = self._should_analyze_exit(price, ts)
            if want_exit:
                self._last_exit_check_ms = ts
                self._last_exit_check_price = float(price)
        if want_signal:
            self._spawn(self._signal_flight, self.check_signals, price, "htx_quant_signal")
        if want_exit:
            self._spawn(self._exit_flight, self.analyze_positions, price, "htx_quant_exit")
        self.publish_status()

    def verify_offline(self, price: float) -> list[str]:
        """Close restored paper positions whose stop or take level was crossed while down."""
        if self.mode != "paper":
            return []
        closed: list[str] = []
        with self._lock:
            for pos in list(self.positions):
                roe = position_roe(pos, price)
                logger.info(
                    "🔍 restored %s entry %.2f now %.2f: ROE %.2f%%", pos.direction, pos.entry_price, price, roe * 100
                )
                if roe <= -self.cfg.stop_loss:
                    self._finish_close(pos, price, REASON_OFFLINE_STOP)
                    closed.append(pos.id)
                elif roe >= self.cfg.take_profit:
                    self._finish_close(pos, price, REASON_OFFLINE_TAKE)
                    closed.append(pos.id)
        return closed

    def supervise(self, price: float) -> None:
        """Stop-loss, then take-profit, then trailing stop for every open position."""
        with self._lock:
            for pos in list(self.positions):
                if pos.id in self._closing:
                    continue
                if pos.direction == "long":
                    pos.highest_price = max(pos.highest_price or pos.entry_price, price)
                else:
                    pos.lowest_price = min(pos.lowest_price or pos.entry_price, price)
                roe = position_roe(pos, price)
                logger.log(5, "quant %s %s ROE %.4f", self.symbol, pos.direction, roe)
                if roe <= -self.cfg.stop_loss:
                    reason = REASON_STOP_LOSS
                elif roe >= self.cfg.take_profit:
                    reason = REASON_TAKE_PROFIT
                elif self.cfg.trailing_stop > 0 and trailing_retrace(pos, price) >= self.cfg.trailing_stop:
                    reason = REASON_TRAILING
                else:
                    continue
                logger.info("🛑 %s %s @ %.2f (ROE %.2f%%)", reason, pos.direction.upper(), price, roe * 100)
                self.close_position(pos, price, reason)

    def _should_check_signal(self, price: float, ts: int) -> bool:
        if self._signals is None or self._signal_flight.busy:
            return False
        if len(self.positions) >= self.cfg.max_positions:
            return False
        if self._last_signal_check_ms is None or self._last_signal_check_price <= 0:
            return True
        moved = abs(price - self._last_signal_check_price) / self._last_signal_check_price
        return moved >= SIGNAL_PRICE_MOVE or ts - self._last_signal_check_ms > self.cfg.signal_check_interval_ms

    def _should_analyze_exit(self, price: float, ts: int) -> bool:
        if not self.cfg.smart_exit or self._signals is None or self._exit_flight.busy:
            return False
        if not any(p.id not in self._closing for p in self.positions):
            return False
        if self._last_exit_check_ms is None or self._last_exit_check_price <= 0:
            return True
        moved = abs(price - self._last_exit_check_price) / self._last_exit_check_price
        return moved >= EXIT_ANALYSIS_PRICE_MOVE or ts - self._last_exit_check_ms > EXIT_ANALYSIS_INTERVAL_MS

    def _spawn(self, flight: SingleFlight, fn, price: float, name: str) -> None:
        if not self._background:
            flight.try_run(fn, price)
            return
        t = threading.Thread(target=flight.try_run, args=(fn, price), name=name, daemon=True)
        t.start()

    def check_signals(self, price: float) -> Signal | None:
        cfg = self.cfg
        try:
            sig: Signal = self._signals.generate(
                self.symbol, price, take_profit=cfg.take_profit, stop_loss=cfg.stop_loss
            )
        except Exception:
            logger.exception("signal generation raised for %s", self.symbol)
            return None

        entry = {
            "ts": now_ms(),
            "price": price,
            "action": sig.action,
            "confidence": sig.confidence,
            "reasons": list(sig.reasons),
            "executed": False,
        }
        with self._lock:
            self.signal_history.appendleft(entry)
        if sig.action not in {"long", "short"} or sig.confidence < cfg.min_confidence:
            logger.debug("⏸️ signal %s %.0f%% below %.0f%% or hold", sig.action, sig.confidence, cfg.min_confidence)
            return sig

        logger.info("📈 %s signal for %s (confidence %.0f%%): %s", sig.action, self.symbol, sig.confidence, ", ".join(sig.reasons))
        ran, opened = self._open_flight.try_run(self.open_position, sig.action, self.last_price or price, sig)
        if ran and opened is not None:
            entry["executed"] = True
        return sig

    def analyze_positions(self, price: float) -> list[str]:
        """Early exit for open positions when a fresh signal turns against them. Returns closed ids."""
        cfg = self.cfg
        try:
            sig: Signal = self._signals.generate(
                self.symbol, price, take_profit=cfg.take_profit, stop_loss=cfg.stop_loss
            )
        except Exception:
            logger.exception("position analysis raised for %s", self.symbol)
            return []
        if sig.failed:
            logger.debug("position analysis skipped: %s", ", ".join(sig.reasons))
            return []

        closed: list[str] = []
        with self._lock:
            last = self.last_price or price
            for pos in list(self.positions):
                if pos.id in self._closing:
                    continue
                roe = position_roe(pos, last)
                reason = early_exit_reason(
                    pos.direction, roe, sig, take_profit=cfg.take_profit, stop_loss=cfg.stop_loss
                )
                if reason is None:
                    continue
                logger.info(
                    "🧠 %s %s @ %.2f (ROE %.2f%%, signal %s %.0f%%)",
                    reason, pos.direction.upper(), last, roe * 100, sig.action, sig.confidence,
                )
                self.close_position(pos, last, reason)
                closed.append(pos.id)
        return closed

    # -- open / close ------------------------------------------------------

    def _next_id(self) -> str:
        self._seq += 1
        return f"{now_ms()}-{self._seq}"

    def open_position(self, direction: str, price: float, signal: Signal | None = None) -> QuantPosition | None:
        cfg = self.cfg
        with self._lock:
            if len(self.positions) >= cfg.max_positions:
                logger.warning("max positions %d reached; open skipped", cfg.max_positions)
                return None
            margin = self.balance * cfg.position_size
            if margin <= 0 or price <= 0:
                logger.warning("❌ cannot open: balance %.2f", self.balance)
                return None
            value = margin * cfg.leverage
            size = value / price
            open_fee = value * cfg.taker_fee
            self.balance -= open_fee
            self.stats.total_fees += open_fee

        volume = 0
        if self.mode == "live":
            contract_size = self._meta.contract_size(self.symbol)
            volume = max(1, int(math.floor(size / contract_size)))
            ok = self._live_open(direction, volume, price)
            if not ok:
                with self._lock:
                    self.balance += open_fee
                    self.stats.total_fees -= open_fee
                return None
            size = volume * contract_size
            value = size * price

        pos = QuantPosition(
            id=self._next_id(),
            direction=direction,
            entry_price=float(price),
            size=size,
            value=value,
            leverage=float(cfg.leverage),
            open_time=now_ms(),
            open_fee=open_fee,
            highest_price=float(price) if direction == "long" else None,
            lowest_price=float(price) if direction == "short" else None,
            volume=volume,
            suggestion=signal.to_dict() if signal is not None else None,
        )
        with self._lock:
            self.positions.append(pos)
            self.orders.append({**pos.to_dict(), "type": "open", "status": "filled"})
            self.orders = self.orders[-ORDER_HISTORY_MAX:]
        logger.info(
            "✅ %s open %s %.6g @ %.2f | margin %.2f USDT %gx | fee %.4f",
            self.mode, direction.upper(), size, price, margin, cfg.leverage, open_fee,
        )
        self.save()
        self.publish_status()
        return pos

    def _live_open(self, direction: str, volume: int, price: float) -> bool:
        cfg = self.cfg
        res = self._executor.market_open(self.symbol, direction=direction, volume=volume, lever_rate=int(cfg.leverage))
        if res is None:
            self._trade_alert("开仓失败", f"{direction} {volume}张 @ {price:.2f}")
            return False
        dist_sl = cfg.stop_loss / cfg.leverage
        dist_tp = cfg.take_profit / cfg.leverage
        if direction == "long":
            sl, tp = price * (1 - dist_sl), price * (1 + dist_tp)
        else:
            sl, tp = price * (1 + dist_sl), price * (1 - dist_tp)
        if self._executor.place_tpsl(self.symbol, direction=direction, volume=volume, stop_price=sl, take_price=tp) is None:
            logger.error("❌ TP/SL placement failed for %s %s; local supervision still active", self.symbol, direction)
            self._trade_alert("止盈止损设置失败", f"{direction} {volume}张 SL {sl:.2f} TP {tp:.2f}")
        return True

    def close_position(self, pos: QuantPosition, price: float, reason: str) -> None:
        if self.mode == "paper":
            with self._lock:
                self._finish_close(pos, price, reason)
            return
        with self._lock:
            if pos.id in self._closing:
                return
            self._closing.add(pos.id)
        if self._background:
            threading.Thread(
                target=self._live_close, args=(pos, price, reason), name="htx_quant_close", daemon=True
            ).start()
        else:
            self._live_close(pos, price, reason)

    def close_all(self, reason: str = REASON_MANUAL) -> int:
        """Close every open position at the last price."""
        with self._lock:
            price = self.last_price
            open_positions = list(self.positions)
        if price <= 0:
            logger.warning("⚠️ no price yet for %s; nothing closed", self.symbol)
            return 0
        for pos in open_positions:
            self.close_position(pos, price, reason)
        return len(open_positions)

    def _live_close(self, pos: QuantPosition, price: float, reason: str) -> None:
        try:
            volume = pos.volume or max(1, int(round(pos.size / self._meta.contract_size(self.symbol))))
            res = self._executor.market_close(
                self.symbol, direction=pos.direction, volume=volume, lever_rate=int(pos.leverage)
            )
            if res is None:
                logger.error("❌ live close failed; keeping %s position", pos.direction)
                self._trade_alert("平仓失败", f"{pos.direction} {volume}张 ({reason})")
                return
            with self._lock:
                self._finish_close(pos, price, reason)
        finally:
            with self._lock:
                self._closing.discard(pos.id)

    def _finish_close(self, pos: QuantPosition, price: float, reason: str) -> dict[str, Any] | None:
        if pos not in self.positions:
            return None
        delta = price_change(pos.direction, pos.entry_price, price)
        pnl_pre = delta * pos.value
        close_fee = pos.value * self.cfg.taker_fee
        pnl = pnl_pre - close_fee

        self.balance += pnl
        st = self.stats
        st.total_fees += close_fee
        st.total_trades += 1
        if pnl > 0:
            st.win_trades += 1
        else:
            st.loss_trades += 1
        st.total_profit += pnl
        st.peak_balance = max(st.peak_balance, self.balance)
        if st.peak_balance > 0:
            st.max_drawdown = max(st.max_drawdown, (st.peak_balance - self.balance) / st.peak_balance)

        roe = pnl / pos.margin * 100.0 if pos.margin else 0.0
        order = {
            **pos.to_dict(),
            "type": "close",
            "closePrice": float(price),
            "closeTime": now_ms(),
            "profitBeforeFee": pnl_pre,
            "closeFee": close_fee,
            "profit": pnl,
            "profitPercent": delta * 100.0,
            "roe": roe,
            "reason": reason,
            "status": "filled",
        }
        self.positions = [p for p in self.positions if p.id != pos.id]
        self.orders.append(order)
        self.orders = self.orders[-ORDER_HISTORY_MAX:]
        logger.info(
            "✅ %s close %s @ %.2f: pnl %+.4f USDT (fees %.4f) ROE %+.2f%% reason=%s",
            self.mode, pos.direction.upper(), price, pnl, pos.open_fee + close_fee, roe, reason,
        )
        self.save()
        return order

    def _trade_alert(self, what: str, detail: str) -> None:
        msg = self._executor.last_order_error if self._executor is not None else None
        err = (msg or {}).get("error") or ""
        if self._alerts is None:
            return
        self._alerts.send(
            Alert(
                kind="quant",
                subject=self.symbol,
                title=f"❌ {self.symbol} 实盘{what}",
                body=f"{detail}\n{err}".strip(),
                meta=DeliveryMeta(sound="alarm", level="timeSensitive"),
            )
        )

    # -- live sync ---------------------------------------------------------

    def on_positions(self, positions: list[Position]) -> None:
        """Live mode: the venue's positions for our symbol replace the local ones."""
        if self.mode != "live":
            return
        contract_size = self._meta.contract_size(self.symbol)
        with self._lock:
            by_dir = {p.direction: p for p in self.positions}
            synced: list[QuantPosition] = []
            for vp in positions:
                if vp.contract != self.symbol or vp.volume <= 0:
                    continue
                lev = vp.lever_rate or self.cfg.leverage
                size = vp.volume * contract_size
                old = by_dir.get(vp.direction)
                if old is not None:
                    old.entry_price = vp.cost_open
                    old.size = size
                    old.volume = int(vp.volume)
                    old.leverage = float(lev)
                    old.value = vp.position_margin * lev if vp.position_margin > 0 else size * vp.cost_open
                    synced.append(old)
                    continue
                synced.append(
                    QuantPosition(
                        id=self._next_id(),
                        direction=vp.direction,
                        entry_price=vp.cost_open,
                        size=size,
                        value=vp.position_margin * lev if vp.position_margin > 0 else size * vp.cost_open,
                        leverage=float(lev),
                        open_time=now_ms(),
                        highest_price=vp.cost_open if vp.direction == "long" else None,
                        lowest_price=vp.cost_open if vp.direction == "short" else None,
                        volume=int(vp.volume),
                    )
                )
            if len(synced) != len(self.positions):
                logger.info("📡 live positions synced: %d -> %d", len(self.positions), len(synced))
            self.positions = synced
        self.publish_status()

    # -- commands ----------------------------------------------------------

    def poll_commands(self, now: int | None = None) -> CommandResult | None:
        if self._kv is None:
            return None
        key = command_key(self.symbol)
        cmd = self._kv.get(key)
        if not isinstance(cmd, dict):
            return None
        ts = safe_float(cmd.get("ts"), 0) or 0
        now = now_ms() if now is None else int(now)
        if ts <= now - COMMAND_MAX_AGE_MS:
            return None
        action = str(cmd.get("action") or "").strip().lower()
        logger.info("📨 quant command received: %s", action)
        if action == "reset":
            res = self.reset()
        elif action == "stop":
            res = self.stop()
        elif action == "start":
            res = self.start()
        else:
            res = CommandResult(False, f"unknown command {action!r}")
        self._kv.delete(key)
        if res.ok:
            logger.info("✅ %s", res.message)
        else:
            logger.warning("⚠️ %s", res.message)
        self.publish_status()
        return res

    def reset(self) -> CommandResult:
        if self.mode != "paper":
            logger.error("🔴 reset refused in live mode")
            return CommandResult(False, "reset is only allowed in paper mode")
        initial = self.cfg.initial_balance
        if self._store is not None:
            initial = self._store.current().quant.initial_balance
        with self._lock:
            self.cfg = dataclasses.replace(self.cfg, initial_balance=initial)
            self.balance = float(initial)
            self.positions = []
            self.orders = []
            self.stats = QuantStats(peak_balance=float(initial))
            self.last_price = 0.0
            self._needs_verify = False
        self.save()
        return CommandResult(True, f"paper state reset to {initial:.2f} USDT")

    def _persist_enabled(self, enabled: bool) -> None:
        if self._store is None:
            return

        def _mutate(doc: dict[str, Any]) -> None:
            doc.setdefault("quantConfig", {})["enabled"] = bool(enabled)

        self._store.update(_mutate)

    def stop(self) -> CommandResult:
        with self._lock:
            n = len(self.positions)
            if n:
                return CommandResult(False, f"{n} open position(s); close them before stopping", {"positions": n})
            self.cfg = dataclasses.replace(self.cfg, enabled=False)
        self._persist_enabled(False)
        return CommandResult(True, "quant trading stopped")

    def start(self) -> CommandResult:
        with self._lock:
            self.cfg = dataclasses.replace(self.cfg, enabled=True)
        self._persist_enabled(True)
        return CommandResult(True, "quant trading started")

    # -- hot reload --------------------------------------------------------

    def on_config(self, new: MonitorConfig, _prev: MonitorConfig | None = None) -> None:
        """Coalesce reloads: a change arriving mid-apply is picked up by the running flight."""
        with self._lock:
            self._latest_quant = new.quant
            self._reload_dirty = True
        while True:
            ran, _ = self._reload_flight.try_run(self._drain_reload)
            if not ran:
                return
            # a change may have landed between the last drain pass and the release
            with self._lock:
                if not self._reload_dirty:
                    return

    def _drain_reload(self) -> None:
        while True:
            with self._lock:
                if not self._reload_dirty:
                    return
                self._reload_dirty = False
                q = self._latest_quant
            if self._store is not None:
                q = self._store.current().quant
            if q is not None:
                self.apply_config(q)

    def apply_config(self, q: QuantConfig) -> list[str]:
        """Apply hot tunables; log (but do not apply) fields that need a restart."""
        changes: dict[str, Any] = {}
        with self._lock:
            for attr in _HOT_ATTRS.values():
                val = getattr(q, attr)
                if val != getattr(self.cfg, attr):
                    changes[attr] = val
            if changes:
                self.cfg = dataclasses.replace(self.cfg, **changes)
        if changes:
            logger.info("🔄 quant config hot-updated: %s", ", ".join(f"{k}={v}" for k, v in changes.items()))
            self.publish_status()

        pending = {
            name: getattr(q, attr)
            for name, attr in _RESTART_ATTRS.items()
            if getattr(q, attr) != getattr(self._boot_cfg, attr)
        }
        if pending != self._restart_pending:
            self._restart_pending = pending
            if pending:
                logger.warning(
                    "⚠️ quant config needs a restart to apply: %s",
                    ", ".join(f"{k}={v}" for k, v in pending.items()),
                )
        return list(changes)

    @property
    def restart_pending(self) -> dict[str, Any]:
        return dict(self._restart_pending)

    def shutdown(self) -> None:
        self.save()
