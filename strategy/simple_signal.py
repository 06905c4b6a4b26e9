"""Trend + momentum + risk/reward signal for the quant trader.

Scores (each roughly -100..100, risk/reward 0..100) are blended 50/30/20 into a total;
`confidence = (total + 100) / 2`. Long above +30, short below -30, otherwise hold.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any

import pandas as pd
import ta

from engine.rest_client import HtxRestClient
from engine.utils import now_ms

logger = logging.getLogger(__name__)

LONG_THRESHOLD = 30.0
SHORT_THRESHOLD = -30.0


@dataclass(frozen=True)
class Signal:
    action: str  # long | short | hold
    confidence: float
    reasons: tuple[str, ...] = ()
    details: dict[str, Any] = field(default_factory=dict)
    ts_ms: int = 0
    failed: bool = False  # no market view: data missing or analysis raised

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "confidence": self.confidence,
            "reasons": list(self.reasons),
            "details": dict(self.details),
            "ts": self.ts_ms,
        }


def hold(reason: str) -> Signal:
    return Signal(action="hold", confidence=0.0, reasons=(reason,), ts_ms=now_ms(), failed=True)


def klines_to_df(klines: list[dict]) -> pd.DataFrame:
    """Newest-first venue candles -> oldest-first OHLC frame (`High`/`Low` default to close)."""
    rows = list(reversed(klines or []))
    closes = [float(k.get("close") or 0.0) for k in rows]
    df = pd.DataFrame(
        {
            "T": [int(k.get("id") or 0) for k in rows],
            "High": [float(k.get("high") or c) for k, c in zip(rows, closes)],
            "Low": [float(k.get("low") or c) for k, c in zip(rows, closes)],
            "Close": closes,
            "Amount": [float(k.get("amount") or 0.0) for k in rows],
        }
    )
    return df


def _last(series: pd.Series) -> float:
    val = series.iloc[-1] if len(series) else float("nan")
    return float(val)


def trend_score(df1h: pd.DataFrame, df4h: pd.DataFrame, price: float) -> tuple[float, list[str], dict[str, float]]:
    ma20_1h = _last(ta.trend.sma_indicator(df1h["Close"], window=20))
    ma50_1h = _last(ta.trend.sma_indicator(df1h["Close"], window=50))
    ma20_4h = _last(ta.trend.sma_indicator(df4h["Close"], window=20))

    score = 0.0
    reasons: list[str] = []
    if price > ma20_1h and price > ma50_1h:
        score += 40
        reasons.append("1H上升趋势")
    elif price < ma20_1h and price < ma50_1h:
        score -= 40
        reasons.append("1H下降趋势")

    if price > ma20_4h:
        score += 30
        reasons.append("4H上升趋势")
    elif price < ma20_4h:
        score -= 30
        reasons.append("4H下降趋势")

    if ma20_1h > ma50_1h:
        score += 30
        reasons.append("均线多头排列")
    elif ma20_1h < ma50_1h:
        score -= 30
        reasons.append("均线空头排列")

    return score, reasons, {"ma20_1h": ma20_1h, "ma50_1h": ma50_1h, "ma20_4h": ma20_4h}


def momentum_score(df1h: pd.DataFrame, price: float) -> tuple[float, list[str], dict[str, float]]:
    rsi = _last(ta.momentum.rsi(df1h["Close"], window=14))
    closes = df1h["Close"]
    ref_1h = float(closes.iloc[-1])
    change_1h = (price - ref_1h) / ref_1h * 100.0 if ref_1h > 0 else 0.0
    change_24h = 0.0
    if len(closes) >= 24:
        ref_24h = float(closes.iloc[-24])
        change_24h = (price - ref_24h) / ref_24h * 100.0 if ref_24h > 0 else 0.0

    score = 0.0
    reasons: list[str] = []
    if rsi < 30:
        score += 50
        reasons.append(f"RSI超卖({rsi:.0f})")
    elif rsi > 70:
        score -= 50
        reasons.append(f"RSI超买({rsi:.0f})")
    elif 40 <= rsi <= 60:
        if rsi > 50:
            score += 20
            reasons.append(f"RSI偏多({rsi:.0f})")
        else:
            score -= 20
            reasons.append(f"RSI偏空({rsi:.0f})")

    if change_1h > 0.5 and change_24h > 1:
        score += 50
        reasons.append("价格上涨动能强")
    elif change_1h < -0.5 and change_24h < -1:
        score -= 50
        reasons.append("价格下跌动能强")

    return score, reasons, {"rsi": rsi, "change1h": change_1h, "change24h": change_24h}


def risk_reward_score(take_profit: float, stop_loss: float) -> tuple[float, list[str]]:
    ratio = take_profit / stop_loss if stop_loss > 0 else 0.0
    if ratio >= 2:
        return 100.0, [f"风险收益比优秀(1:{ratio:.1f})"]
    if ratio >= 1.5:
        return 70.0, [f"风险收益比良好(1:{ratio:.1f})"]
    if ratio >= 1:
        return 40.0, [f"风险收益比一般(1:{ratio:.1f})"]
    return 0.0, [f"风险收益比不佳(1:{ratio:.1f})"]


def decide(trend: float, momentum: float, rr: float) -> tuple[str, float, float]:
    """(action, confidence, total) from the three component scores."""
    total = 0.5 * trend + 0.3 * momentum + 0.2 * rr
    confidence = min(100.0, max(0.0, (total + 100.0) / 2.0))
    if total > LONG_THRESHOLD:
        action = "long"
    elif total < SHORT_THRESHOLD:
        action = "short"
    else:
        action = "hold"
    return action, float(round(confidence)), total


class SimpleSignalGenerator:
    def __init__(self, rest: HtxRestClient):
        self._rest = rest

    def _frame(self, symbol: str, period: str, size: int) -> pd.DataFrame | None:
        res = self._rest.kline(symbol=symbol, period=period, size=size)
        if not res.ok or not res.data:
            logger.warning("⚠️ kline %s %s unavailable: %s", symbol, period, res.error)
            return None
        return klines_to_df(res.data)

    def generate(self, symbol: str, price: float, *, take_profit: float, stop_loss: float) -> Signal:
        try:
            df1h = self._frame(symbol, "60min", 100)
            df4h = self._frame(symbol, "4hour", 50)
            if df1h is None or df4h is None:
                return hold("数据不足")
            if len(df1h) < 50 or len(df4h) < 20:
                return hold("数据不足")

            t, t_reasons, t_detail = trend_score(df1h, df4h, price)
            m, m_reasons, m_detail = momentum_score(df1h, price)
            rr, rr_reasons = risk_reward_score(take_profit, stop_loss)
        except (KeyError, ValueError, TypeError, IndexError) as e:
            logger.error("❌ signal generation failed for %s: %s", symbol, e)
            return hold("分析失败")

        if any(math.isnan(v) for v in (*t_detail.values(), m_detail["rsi"])):
            return hold("数据不足")

        action, confidence, total = decide(t, m, rr)
        details = {"trend": t, "momentum": m, "riskReward": rr, "total": round(total, 2), **t_detail, **m_detail}
        logger.debug(
            "signal %s @ %.2f: trend=%.0f momentum=%.0f rr=%.0f total=%.1f -> %s (%.0f%%)",
            symbol, price, t, m, rr, total, action, confidence,
        )
        return Signal(
            action=action,
            confidence=confidence,
            reasons=tuple(t_reasons + m_reasons + rr_reasons),
            details=details,
            ts_ms=now_ms(),
        )
