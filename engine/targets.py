from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import Any

from .alerting import Alert
from .config_store import ConfigError, ConfigStore, MonitorConfig, TargetRule, parse_target_rule
from .notifiers import DeliveryMeta

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TargetHit:
    rule: TargetRule
    price: float
    band_low: float
    band_high: float

    @property
    def trigger_text(self) -> str:
        verb = "突破" if self.rule.direction == "above" else "跌破"
        return f"{verb} {self.rule.target_price:g}"


def trigger_band(rule: TargetRule) -> tuple[float, float]:
    """Closed price band in which the rule fires. rangePercent is in percent."""
    t = rule.target_price
    r = max(0.0, rule.range_percent) / 100.0
    if rule.direction == "above":
        return t, (t * (1.0 + r) if r > 0 else math.inf)
    return (t * (1.0 - r) if r > 0 else -math.inf), t


class TargetTripwires:
    """Price-target rules evaluated per tick.

    Last-notify times live in a runtime table keyed by rule identity, not in the config
    document. One-shot rules are removed from the stored document with a read-modify-write
    that only touches `priceTargets.targets`.
    """

    def __init__(self, config_store: ConfigStore | None = None):
        self._store = config_store
        self._lock = threading.Lock()
        self._last_notify_ms: dict[str, int] = {}
        self._retired: set[str] = set()

    def last_notify_ms(self, rule: TargetRule) -> int:
        with self._lock:
            return self._last_notify_ms.get(rule.rule_id, 0)

    def on_tick(self, symbol: str, price: float, now_ms: int, cfg: MonitorConfig) -> list[TargetHit]:
        if not cfg.targets_enabled:
            return []
        hits: list[TargetHit] = []
        to_retire: list[str] = []
        with self._lock:
            for rule in cfg.targets:
                if rule.symbol != symbol or rule.rule_id in self._retired:
                    continue
                lo, hi = trigger_band(rule)
                if not (lo <= price <= hi):
                    continue
                last = self._last_notify_ms.get(rule.rule_id, 0)
                if last > 0 and now_ms - last < rule.notify_interval_s * 1000.0:
                    continue
                self._last_notify_ms[rule.rule_id] = int(now_ms)
                hits.append(TargetHit(rule=rule, price=float(price), band_low=lo, band_high=hi))
                if rule.notify_once:
                    self._retired.add(rule.rule_id)
                    to_retire.append(rule.rule_id)
        if to_retire:
            self._remove_rules(set(to_retire))
        return hits

    def _remove_rules(self, rule_ids: set[str]) -> bool:
        if self._store is None:
            return False

        def _mutate(doc: dict[str, Any]) -> None:
            pt = doc.get("priceTargets")
            if not isinstance(pt, dict):
                return
            kept = []
            for raw in pt.get("targets") or []:
                try:
                    if parse_target_rule(raw).rule_id in rule_ids:
                        continue
                except ConfigError:
                    pass
                kept.append(raw)
            pt["targets"] = kept

        ok = self._store.update(_mutate)
        if ok:
            logger.info("🎯 removed one-shot price target(s): %s", ", ".join(sorted(rule_ids)))
        else:
            logger.warning("⚠️ failed to persist removal of price target(s): %s", ", ".join(sorted(rule_ids)))
        return ok


def target_alert(hit: TargetHit) -> Alert:
    rule = hit.rule
    emoji = "🎯" if rule.direction == "above" else "⚠️"
    title = f"{emoji} {rule.symbol} {hit.trigger_text}"
    body = f"📊 当前价格: {hit.price:.2f} USDT"
    band = ""
    if rule.range_percent > 0:
        band = f"\n通知范围: `{hit.band_low:.2f}` ~ `{hit.band_high:.2f}` USDT ({rule.range_percent:g}% 幅度)"
    markdown = (
        f"{emoji} *价格目标{'达到' if rule.direction == 'above' else '跌破'}*\n\n"
        f"🎯 *{rule.symbol}*\n\n"
        f"目标价格: `{rule.target_price:.2f}` USDT{band}\n"
        f"当前价格: `{hit.price:.2f}` USDT\n"
        f"触发条件: {hit.trigger_text}"
    )
    return Alert(
        kind="target",
        subject=rule.rule_id,
        title=title,
        body=body,
        meta=DeliveryMeta(sound="bell", level="timeSensitive", markdown=markdown),
        data={"price": hit.price, "targetPrice": rule.target_price},
    )
