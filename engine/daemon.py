"""Monitor daemon entrypoint.

Usage:
  python -m engine.daemon

Wires the market and authenticated streams to the price-change detector, target tripwires,
position P&L evaluator and the quant trader. Configuration lives in the KV document
(`<prefix>:config`) and is hot-reloaded; process settings come from the environment.
"""

from __future__ import annotations

import logging
import os
import signal
import threading
from dataclasses import dataclass
from typing import Callable

from exchange.executor import HtxLiveExecutor
from exchange.htx_auth import Credentials, CredentialsError
from exchange.ws import HtxAuthSession, HtxMarketSession
from live.trader import QuantTrader
from strategy.signal_modes import make_signal_generator

from .alerting import Alert, AlertDispatcher, NotifierMux, startup_probe_alert
from .config_store import ConfigStore, MonitorConfig, wait_for_config
from .kv_store import KVStore
from .pnl import PnLEvaluator
from .positions import Position, PositionBook
from .price_change import PriceChangeDetector, price_change_alert
from .rest_client import HtxRestClient
from .snapshot import DataSnapshot
from .symbol_meta import SymbolMeta
from .targets import TargetTripwires, target_alert
from .utils import monotonic_ms

logger = logging.getLogger(__name__)

TRACE = 5

_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": TRACE,
}


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(str(raw).strip())
    except Exception:
        return float(default)


def configure_logging() -> None:
    logging.addLevelName(TRACE, "TRACE")
    level = _LEVELS.get(str(os.getenv("HTX_LOG_LEVEL", "info") or "info").strip().lower(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@dataclass
class _Task:
    name: str
    every_s: float
    fn: Callable[[], object]
    due_at: float = 0.0


class Scheduler:
    """Runs periodic tasks on one thread. A failing task is logged and retried next period."""

    def __init__(self, *, tick_s: float = 0.2, clock: Callable[[], float] | None = None):
        self._tick_s = float(tick_s)
        self._clock = clock or (lambda: monotonic_ms() / 1000.0)
        self._tasks: list[_Task] = []
        self._thread: threading.Thread | None = None

    def every(self, every_s: float, name: str, fn: Callable[[], object]) -> None:
        self._tasks.append(_Task(name=name, every_s=max(0.05, float(every_s)), fn=fn, due_at=self._clock() + every_s))

    def run_due(self) -> list[str]:
        now = self._clock()
        ran = []
        for task in self._tasks:
            if now < task.due_at:
                continue
            task.due_at = now + task.every_s
            try:
                task.fn()
            except Exception:
                logger.exception("periodic task %s failed", task.name)
            ran.append(task.name)
        return ran

    def start(self, stop_event: threading.Event) -> None:
        def _loop() -> None:
            while not stop_event.wait(self._tick_s):
                self.run_due()

        self._thread = threading.Thread(target=_loop, name="htx_scheduler", daemon=True)
        self._thread.start()


class MonitorDaemon:
    def __init__(
        self,
        *,
        kv: KVStore,
        store: ConfigStore,
        alerts: AlertDispatcher,
        trader: QuantTrader,
        credentials: Credentials | None = None,
        snapshot: DataSnapshot | None = None,
        symbol_meta: SymbolMeta | None = None,
    ):
        self.kv = kv
        self.store = store
        self.alerts = alerts
        self.trader = trader
        self.snapshot = snapshot or DataSnapshot(kv)
        self.meta = symbol_meta or SymbolMeta()
        self.book = PositionBook()
        self.detector = PriceChangeDetector()
        self.targets = TargetTripwires(store)
        self.pnl = PnLEvaluator(self.meta)
        self.stop_event = threading.Event()
        self._stopped = False
        self.scheduler = Scheduler()

        self.market = HtxMarketSession(self.on_tick)
        self.auth = HtxAuthSession(credentials, self.on_positions) if credentials is not None else None

        store.add_listener(self.on_config)

    # -- subscriptions -----------------------------------------------------

    def desired_symbols(self, cfg: MonitorConfig | None = None) -> set[str]:
        cfg = cfg or self.store.current()
        out = set(cfg.watch_contracts) | self.book.symbols()
        out.update(r.symbol for r in cfg.targets)
        out.add(self.trader.symbol)
        return out

    def refresh_subscriptions(self, cfg: MonitorConfig | None = None) -> None:
        added, removed = self.market.update_subscriptions(self.desired_symbols(cfg))
        if added or removed:
            logger.info("📡 market subscriptions: +%s -%s", added or "[]", removed or "[]")

    # -- event handlers ----------------------------------------------------

    def _send_all(self, alerts: list[Alert]) -> None:
        for a in alerts:
            self.alerts.send(a)

    def on_tick(self, symbol: str, price: float, ts_ms: int) -> None:
        self.snapshot.set_price(symbol, price)
        cfg = self.store.current()
        try:
            if symbol in cfg.watch_contracts:
                event = self.detector.on_tick(symbol, price, ts_ms, cfg.price_change)
                if event is not None:
                    self.alerts.send(price_change_alert(event))
            self._send_all([target_alert(hit) for hit in self.targets.on_tick(symbol, price, ts_ms, cfg)])
            self._send_all(self.pnl.on_tick(symbol, price, self.book.for_symbol(symbol), cfg.notification, ts_ms))
        except Exception:
            logger.exception("tick evaluation failed for %s", symbol)
        self.trader.on_tick(symbol, price, ts_ms)

    def on_positions(self, positions: list[Position], snapshot: bool, _ts_ms: int) -> None:
        before = {p.key for p in self.book.all()}
        current = self.book.replace_all(positions) if snapshot else self.book.apply(positions)
        after = {p.key for p in current}
        for key in before - after:
            logger.info("🟡 position closed: %s %s", *key)
            self.pnl.forget(key)
        for key in after - before:
            logger.info("🟢 position opened: %s %s", *key)
        self.snapshot.set_positions(current)
        self.trader.on_positions(current)
        if {k[0] for k in before} != {k[0] for k in after}:
            self.refresh_subscriptions()

    def on_config(self, new: MonitorConfig, prev: MonitorConfig | None) -> None:
        self.refresh_subscriptions(new)
        self.trader.on_config(new, prev)

    def clear_notification_history(self) -> None:
        """Forget sent-notification history and all threshold state."""
        self.alerts.clear_history()
        self.pnl.policy.reset()
        self.detector.policy.reset()

    def check_summary(self) -> None:
        prices = {sym: float(e["price"]) for sym, e in self.snapshot.snapshot()["prices"].items()}
        alert = self.pnl.summary(self.book.all(), prices, self.store.current().notification, monotonic_ms())
        if alert is not None:
            self.alerts.send(alert)

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        self.trader.load()
        self.store.start_watching(self.stop_event)
        self.refresh_subscriptions()
        self.market.start()
        if self.auth is not None:
            self.auth.start()
        else:
            logger.warning("⚠️ no API credentials; position monitoring disabled")

        self.scheduler.every(1.0, "quant-command", self.trader.poll_commands)
        self.scheduler.every(_env_float("HTX_STATUS_PRINT_SECS", 30.0), "quant-status", self.trader.print_status)
        self.scheduler.every(60.0, "pnl-summary", self.check_summary)
        self.scheduler.every(_env_float("HTX_REALTIME_SECS", 1.0), "realtime", self.snapshot.publish_realtime)
        self.scheduler.start(self.stop_event)

        if _env_bool("HTX_NOTIFY_TEST_ON_START", False):
            self.alerts.send(startup_probe_alert(self.alerts.mux))
        logger.info("🚀 monitor started: watching %s", ", ".join(sorted(self.desired_symbols())) or "-")

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        logger.info("🛑 shutting down")
        self.stop_event.set()
        self.market.stop()
        if self.auth is not None:
            self.auth.stop()
        self.trader.shutdown()
        self.alerts.shutdown()

    def run_forever(self) -> None:
        self.start()
        try:
            while not self.stop_event.wait(1.0):
                pass
        finally:
            self.stop()


def build(kv: KVStore | None = None) -> MonitorDaemon:
    """Compose the daemon from the environment. Raises SystemExit(1) on fatal boot errors."""
    kv = kv or KVStore()
    if not kv.ping():
        logger.warning("⚠️ KV store unreachable at boot: %s", kv.last_error)
    store = ConfigStore(kv)
    cfg = wait_for_config(store)

    try:
        credentials: Credentials | None = Credentials.from_env()
    except CredentialsError as e:
        credentials = None
        if not cfg.quant.test_mode:
            logger.critical("❌ live trading needs API credentials: %s", e)
            raise SystemExit(1)

    meta = SymbolMeta()
    snapshot = DataSnapshot(kv)
    alerts = AlertDispatcher(NotifierMux())
    if not alerts.mux.has_notifiers():
        logger.warning("⚠️ no notification channel configured; alerts are logged only")

    rest = HtxRestClient(credentials=credentials)
    executor = None
    if not cfg.quant.test_mode:
        executor = HtxLiveExecutor(rest, dry_run=cfg.quant.dry_run or None)
    trader = QuantTrader(
        cfg.quant,
        kv=kv,
        snapshot=snapshot,
        signals=make_signal_generator(cfg.quant.signal_mode, rest),
        executor=executor,
        symbol_meta=meta,
        config_store=store,
        alerts=alerts,
    )
    return MonitorDaemon(
        kv=kv,
        store=store,
        alerts=alerts,
        trader=trader,
        credentials=credentials,
        snapshot=snapshot,
        symbol_meta=meta,
    )


def main() -> None:
    configure_logging()
    daemon = build()

    def _on_signal(signum, _frame) -> None:
        logger.info("received signal %s", signum)
        daemon.stop_event.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)
    daemon.run_forever()


if __name__ == "__main__":
    main()
