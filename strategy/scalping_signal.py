"""Short-horizon (scalping) signal from 1min and 5min candles.

Five component scores are blended 30/25/20/15/10:

- momentum: price vs the last 1, 3 and 5 one-minute closes, plus acceleration
- volume: latest one-minute `amount` against the mean of the last five
- bollinger: price position inside the 20x5min Bollinger band (2 std)
- volatility: mean one-minute (high - low) / close over the last ten candles
- micro trend: price vs SMA5 on 5min with three rising or falling closes

`confidence = 50 + total / 2`. Long above +30, short below -30, otherwise hold.
"""

from __future__ import annotations

import logging

import pandas as pd
import ta

from engine.rest_client import HtxRestClient
from engine.utils import now_ms

from .simple_signal import LONG_THRESHOLD, SHORT_THRESHOLD, Signal, hold, klines_to_df

logger = logging.getLogger(__name__)

WEIGHTS = {"momentum": 0.30, "volume": 0.25, "bollinger": 0.20, "volatility": 0.15, "trend": 0.10}


def _pct(price: float, ref: float) -> float:
    return (price - ref) / ref * 100.0 if ref > 0 else 0.0


def momentum_score(df1m: pd.DataFrame, price: float) -> tuple[float, list[str], dict[str, float]]:
    closes = df1m["Close"]
    n = len(closes)
    change_1m = _pct(price, float(closes.iloc[-1])) if n >= 1 else 0.0
    change_3m = _pct(price, float(closes.iloc[-3])) if n >= 3 else 0.0
    change_5m = _pct(price, float(closes.iloc[-5])) if n >= 5 else 0.0

    score = 0.0
    reasons: list[str] = []
    if change_1m > 0.1 and change_3m > 0.2:
        score += 60
        reasons.append("短期上涨动能")
    elif change_1m < -0.1 and change_3m < -0.2:
        score -= 60
        reasons.append("短期下跌动能")

    # the last minute moving faster than the 3-minute average pace
    if abs(change_1m) > abs(change_3m / 3.0) * 1.5:
        if change_1m > 0:
            score += 20
            reasons.append("加速上涨")
        else:
            score -= 20
            reasons.append("加速下跌")

    return score, reasons, {"change1m": change_1m, "change3m": change_3m, "change5m": change_5m}


def volatility_score(df1m: pd.DataFrame) -> tuple[float, list[str], float]:
    if len(df1m) < 10:
        return 0.0, [], 0.0
    tail = df1m.tail(10)
    ranges = (tail["High"] - tail["Low"]) / tail["Close"] * 100.0
    avg = float(ranges.mean())
    if 0.1 <= avg <= 0.4:
        return 80.0, ["波动率适中"], avg
    if 0.4 < avg <= 0.8:
        return 50.0, ["波动率偏高"], avg
    if avg < 0.1:
        return 20.0, ["波动率过低"], avg
    return 10.0, ["波动率过高"], avg


def volume_score(df1m: pd.DataFrame) -> tuple[float, list[str], float]:
    if len(df1m) < 5:
        return 0.0, [], 0.0
    amounts = df1m["Amount"].tail(5)
    avg = float(amounts.mean())
    if avg <= 0:
        return 0.0, [], 0.0
    ratio = float(amounts.iloc[-1]) / avg
    if ratio >= 2:
        return 60.0, ["成交量暴增"], ratio
    if ratio >= 1.5:
        return 40.0, ["成交量放大"], ratio
    if ratio >= 1.2:
        return 20.0, ["成交量温和增加"], ratio
    if ratio < 0.5:
        return -40.0, ["成交量萎缩"], ratio
    return 0.0, ["成交量平稳"], ratio


def bollinger_score(df5m: pd.DataFrame, price: float) -> tuple[float, list[str], dict[str, float]]:
    if len(df5m) < 20:
        return 0.0, [], {}
    bb = ta.volatility.BollingerBands(df5m["Close"], window=20, window_dev=2)
    upper = float(bb.bollinger_hband().iloc[-1])
    lower = float(bb.bollinger_lband().iloc[-1])
    width = upper - lower
    detail = {"bbUpper": upper, "bbLower": lower}
    if width <= 0:
        return 0.0, ["布林带中性"], detail
    pos = (price - lower) / width
    detail["bbPosition"] = pos
    if pos <= 0.1:
        return 50.0, ["触及下轨(超卖)"], detail
    if pos <= 0.3:
        return 30.0, ["接近下轨"], detail
    if pos >= 0.9:
        return -50.0, ["触及上轨(超买)"], detail
    if pos >= 0.7:
        return -30.0, ["接近上轨"], detail
    return 0.0, ["布林带中性"], detail


def micro_trend_score(df5m: pd.DataFrame, price: float) -> tuple[float, list[str], float]:
    if len(df5m) < 5:
        return 0.0, [], 0.0
    closes = df5m["Close"]
    ma5 = float(ta.trend.sma_indicator(closes, window=5).iloc[-1])
    c1, c2, c3 = (float(v) for v in closes.iloc[-3:])
    if price > ma5 and c1 < c2 < c3:
        return 30.0, ["微趋势向上"], ma5
    if price < ma5 and c1 > c2 > c3:
        return -30.0, ["微趋势向下"], ma5
    return 0.0, ["微趋势震荡"], ma5


def decide(scores: dict[str, float]) -> tuple[str, float, float]:
    """(action, confidence, total) from the weighted component scores."""
    total = sum(WEIGHTS[k] * scores.get(k, 0.0) for k in WEIGHTS)
    confidence = min(100.0, max(0.0, 50.0 + total / 2.0))
    if total > LONG_THRESHOLD:
        action = "long"
    elif total < SHORT_THRESHOLD:
        action = "short"
    else:
        action = "hold"
    return action, float(round(confidence)), total


class ScalpingSignalGenerator:
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
            df1m = self._frame(symbol, "1min", 30)
            df5m = self._frame(symbol, "5min", 20)
            if df1m is None or df5m is None or df1m.empty or df5m.empty:
                return hold("数据不足")

            m, m_reasons, m_detail = momentum_score(df1m, price)
            vol, vol_reasons, avg_range = volatility_score(df1m)
            v, v_reasons, ratio = volume_score(df1m)
            b, b_reasons, b_detail = bollinger_score(df5m, price)
            t, t_reasons, ma5 = micro_trend_score(df5m, price)
        except (KeyError, ValueError, TypeError, IndexError) as e:
            logger.error("❌ scalping signal failed for %s: %s", symbol, e)
            return hold("分析失败")

        scores = {"momentum": m, "volume": v, "bollinger": b, "volatility": vol, "trend": t}
        action, confidence, total = decide(scores)
        logger.debug(
            "scalping %s @ %.2f: momentum=%.0f volume=%.0f bollinger=%.0f volatility=%.0f trend=%.0f total=%.1f -> %s (%.0f%%)",
            symbol, price, m, v, b, vol, t, total, action, confidence,
        )
        details = {
            **scores,
            "total": round(total, 2),
            "avgRange": avg_range,
            "volumeRatio": ratio,
            "ma5": ma5,
            **m_detail,
            **b_detail,
        }
        return Signal(
            action=action,
            confidence=confidence,
            reasons=tuple(m_reasons + v_reasons + b_reasons + vol_reasons + t_reasons),
            details=details,
            ts_ms=now_ms(),
        )
