from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass

from .alerting import Alert
from .config_store import PriceChangeConfig, PriceWindow
from .notifiers import DeliveryMeta
from .policy import NotificationPolicy, PolicyConfig

logger = logging.getLogger(__name__)

# Extra history kept beyond the widest window.
HISTORY_SLACK_MS = 5_000


@dataclass(frozen=True)
class PricePoint:
    price: float
    ts: int


@dataclass(frozen=True)
class WindowChange:
    window: PriceWindow
    base_price: float
    base_ts: int
    current_price: float
    ts: int

    @property
    def change(self) -> float:
        return self.current_price - self.base_price

    @property
    def pct(self) -> float:
        return self.change / self.base_price * 100.0

    @property
    def span_ms(self) -> int:
        return self.ts - self.base_ts

    @property
    def meets_threshold(self) -> bool:
        return abs(self.pct) >= self.window.pct_threshold or abs(self.change) >= self.window.abs_threshold


@dataclass(frozen=True)
class PriceChangeEvent:
    symbol: str
    change: WindowChange

    @property
    def direction(self) -> str:
        return "up" if self.change.change >= 0 else "down"


def _policy_config(w: PriceWindow, cfg: PriceChangeConfig) -> PolicyConfig:
    return PolicyConfig(
        hi_pct=w.pct_threshold,
        lo_pct=-w.pct_threshold,
        hi_amt=w.abs_threshold,
        lo_amt=-w.abs_threshold,
        repeat_interval_ms=cfg.min_notify_interval_ms,
    )


class PriceChangeDetector:
    """Multi-window price-change detector with a bounded per-symbol history."""

    def __init__(self, policy: NotificationPolicy | None = None):
        self.policy = policy or NotificationPolicy()
        self._lock = threading.Lock()
        self._history: dict[str, deque[PricePoint]] = {}

    def history(self, symbol: str) -> list[PricePoint]:
        with self._lock:
            return list(self._history.get(symbol) or ())

    def record(self, symbol: str, price: float, now_ms: int, cfg: PriceChangeConfig) -> None:
        horizon = cfg.max_duration_ms + HISTORY_SLACK_MS
        with self._lock:
            hist = self._history.setdefault(symbol, deque())
            hist.append(PricePoint(float(price), int(now_ms)))
            cutoff = now_ms - horizon
            while hist and hist[0].ts <= cutoff:
                hist.popleft()

    def window_changes(self, symbol: str, price: float, now_ms: int, cfg: PriceChangeConfig) -> list[WindowChange]:
        """One entry per window that has a usable base point, in window order (shortest first)."""
        with self._lock:
            hist = list(self._history.get(symbol) or ())
        out: list[WindowChange] = []
        for w in cfg.windows:
            start = now_ms - w.duration_ms
            base: PricePoint | None = None
            for pt in hist:
                if pt.ts <= start:
                    base = pt
                else:
                    break
            if base is None or base.price <= 0:
                continue
            out.append(WindowChange(window=w, base_price=base.price, base_ts=base.ts, current_price=float(price), ts=now_ms))
        return out

    def on_tick(self, symbol: str, price: float, now_ms: int, cfg: PriceChangeConfig) -> PriceChangeEvent | None:
        if not cfg.windows:
            return None
        self.record(symbol, price, now_ms, cfg)
        if not cfg.enabled:
            return None

        changes = self.window_changes(symbol, price, now_ms, cfg)
        if not changes:
            return None
        if logger.isEnabledFor(logging.DEBUG):
            c0 = changes[0]
            logger.debug("%s: %.2f (%s %+.2f%% / %+.2f)", symbol, price, c0.window.label, c0.pct, c0.change)

        tripped = [c for c in changes if c.meets_threshold]
        if not tripped:
            quiet = changes[0]
            for c in changes[1:]:
                if abs(c.pct) > abs(quiet.pct):
                    quiet = c
            self.policy.release(symbol, quiet.pct, quiet.change, _policy_config(quiet.window, cfg))
            return None

        best = tripped[0]
        for c in tripped[1:]:
            if abs(c.pct) > abs(best.pct):
                best = c

        decision = self.policy.evaluate(symbol, best.pct, best.change, _policy_config(best.window, cfg), now_ms)
        if not decision.fire:
            return None
        return PriceChangeEvent(symbol=symbol, change=best)


def price_change_alert(event: PriceChangeEvent) -> Alert:
    """Silent, passive push for a price move."""
    c = event.change
    up = event.direction == "up"
    emoji, dot, verb = ("📈", "🟢", "上涨") if up else ("📉", "🔴", "下跌")
    title = f"{emoji} {event.symbol} {verb} {abs(c.pct):.2f}%"
    body = (
        f"{dot} {c.window.label}内{verb} {abs(c.change):.2f} USDT\n"
        f"📊 {c.base_price:.2f} → {c.current_price:.2f}"
    )
    markdown = (
        f"{emoji} *行情{verb}提醒*\n\n"
        f"{dot} *{event.symbol}*\n\n"
        f"起始价格: `{c.base_price:.2f}` USDT ({c.window.label}前)\n"
        f"当前价格: `{c.current_price:.2f}` USDT\n"
        f"价格变化: `{c.change:+.2f}` USDT\n"
        f"变化幅度: `{c.pct:+.2f}%`\n"
        f"时间跨度: {c.window.label} ({c.span_ms / 1000:.0f}秒)"
    )
    return Alert(
        kind="price_change",
        subject=event.symbol,
        title=title,
        body=body,
        meta=DeliveryMeta(sound="", level="passive", markdown=markdown),
        data={"pct": round(c.pct, 4), "window": c.window.label},
    )
