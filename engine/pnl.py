from __future__ import annotations

import logging
from dataclasses import dataclass

from .alerting import Alert
from .config_store import NotificationConfig
from .notifiers import DeliveryMeta
from .policy import NotificationPolicy, PolicyConfig, PolicyDecision
from .positions import Position
from .symbol_meta import SymbolMeta, base_asset

logger = logging.getLogger(__name__)

_ICON_UP = "https://cdn-icons-png.flaticon.com/512/7518/7518366.png"
_ICON_DOWN = "https://cdn-icons-png.flaticon.com/512/7518/7518329.png"


@dataclass(frozen=True)
class PnLSample:
    position: Position
    last_price: float
    contract_size: float
    pnl: float
    roe: float  # percent of margin

    @property
    def actual(self) -> float:
        """Position size in base-asset units."""
        return self.position.volume * self.contract_size


def compute_pnl(position: Position, last_price: float, contract_size: float) -> PnLSample | None:
    """None when the position has no margin to measure ROE against."""
    if position.position_margin <= 0 or position.cost_open <= 0:
        return None
    qty = position.volume * contract_size
    if position.direction == "long":
        pnl = (last_price - position.cost_open) * qty
    else:
        pnl = (position.cost_open - last_price) * qty
    roe = pnl / position.position_margin * 100.0
    return PnLSample(position=position, last_price=float(last_price), contract_size=contract_size, pnl=pnl, roe=roe)


def pnl_alert(sample: PnLSample, decision: PolicyDecision, cfg: NotificationConfig) -> Alert:
    p = sample.position
    roe = sample.roe
    if decision.side == "hi":
        title = f"🎉 {p.contract} 盈利 {roe:.2f}%"
    else:
        title = f"⚠️ {p.contract} 亏损 {abs(roe):.2f}%"
    side_text = "多仓" if p.direction == "long" else "空仓"
    body = (
        f"{'📈' if roe >= 0 else '📉'} {side_text} {p.volume:g}张\n"
        f"💰 盈亏: {sample.pnl:.2f} USDT\n"
        f"📊 价格: {sample.last_price:.2f} (成本 {p.cost_open:.2f})\n"
        f"📍 持仓: {sample.actual:.4f} {base_asset(p.contract)}"
    )
    if roe >= cfg.profit_threshold:
        sound = "paymentsuccess"
    elif roe <= cfg.loss_threshold:
        sound = "alarm"
    else:
        sound = "bell"
    meta = DeliveryMeta(
        sound=sound,
        level="timeSensitive" if abs(roe) >= 10 else "active",
        icon=_ICON_UP if roe >= 0 else _ICON_DOWN,
    )
    return Alert(
        kind="pnl",
        subject=f"{p.contract}_{p.direction}",
        title=title,
        body=body,
        meta=meta,
        data={"roe": round(roe, 4), "pnl": round(sample.pnl, 4), "reason": decision.reason},
    )


class PnLEvaluator:
    """Per-tick ROE evaluation of open positions through the notification policy."""

    def __init__(self, symbol_meta: SymbolMeta | None = None, policy: NotificationPolicy | None = None):
        self.meta = symbol_meta or SymbolMeta()
        self.policy = policy or NotificationPolicy()
        self._last_summary_ms: int | None = None

    def on_tick(
        self,
        symbol: str,
        price: float,
        positions: list[Position],
        cfg: NotificationConfig,
        now_ms: int,
    ) -> list[Alert]:
        pcfg = PolicyConfig.from_notification(cfg)
        out: list[Alert] = []
        for pos in positions:
            if pos.contract != symbol or pos.volume <= 0:
                continue
            sample = compute_pnl(pos, price, self.meta.contract_size(symbol))
            if sample is None:
                continue
            decision = self.policy.evaluate(pos.key, sample.roe, sample.pnl, pcfg, now_ms)
            logger.log(5, "%s %s roe=%.2f%% pnl=%.2f fire=%s", symbol, pos.direction, sample.roe, sample.pnl, decision.fire)
            if decision.fire:
                out.append(pnl_alert(sample, decision, cfg))
        return out

    def forget(self, key: tuple[str, str]) -> None:
        """Drop threshold state of a closed position so a reopen starts clean."""
        self.policy.reset(key)

    def summary(
        self,
        positions: list[Position],
        prices: dict[str, float],
        cfg: NotificationConfig,
        now_ms: int,
    ) -> Alert | None:
        """Periodic all-positions summary, at most once per `time_interval_ms`."""
        if not cfg.enable_time:
            return None
        if self._last_summary_ms is None:
            self._last_summary_ms = int(now_ms)
            return None
        if now_ms - self._last_summary_ms < cfg.time_interval_ms:
            return None
        self._last_summary_ms = int(now_ms)

        samples: list[PnLSample] = []
        for pos in positions:
            price = prices.get(pos.contract)
            if price is None:
                continue
            s = compute_pnl(pos, price, self.meta.contract_size(pos.contract))
            if s is not None:
                samples.append(s)
        if not samples:
            return None

        total_pnl = sum(s.pnl for s in samples)
        total_margin = sum(s.position.position_margin for s in samples)
        total_rate = total_pnl / total_margin * 100.0 if total_margin > 0 else 0.0
        lines = []
        for s in samples:
            side = "多" if s.position.direction == "long" else "空"
            lines.append(f"{'📈' if s.roe >= 0 else '📉'} {s.position.contract} {side}: {s.pnl:.2f} ({s.roe:.2f}%)")
        title = f"📊 持仓汇总 {'📈' if total_rate >= 0 else '📉'} {total_rate:.2f}%"
        body = (
            f"💰 总盈亏: {total_pnl:.2f} USDT\n"
            f"📊 总收益率: {total_rate:.2f}%\n"
            f"📋 持仓数: {len(samples)}\n\n" + "\n".join(lines)
        )
        return Alert(
            kind="summary",
            subject="positions",
            title=title,
            body=body,
            meta=DeliveryMeta(sound="bell", level="active"),
            data={"totalProfit": round(total_pnl, 4), "totalRate": round(total_rate, 4), "positionCount": len(samples)},
        )
