"""Threshold notification policy shared by P&L and price-change subjects.

Per subject the policy remembers whether the metric sits above the high band or below the
low band, and what was last notified. Rules, evaluated on every sample:

1. enter: crossing into a band fires and records the metric;
2. continuation: inside a band, a further move of at least 1.0 (pct or amt) fires again;
3. exit: leaving a band needs a 0.5 margin past the threshold (hysteresis);
4. repeat gate: a fire within `repeat_interval_ms` of the previous one is suppressed.

Band state moves even when the repeat gate suppresses the emission.
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass

from .config_store import NotificationConfig

logger = logging.getLogger(__name__)

CONTINUATION_STEP = 1.0
HYSTERESIS = 0.5


@dataclass
class ThresholdState:
    above_hi: bool = False
    below_lo: bool = False
    last_notify_ts: int | None = None
    last_notify_rate: float | None = None
    last_notify_amount: float | None = None


@dataclass(frozen=True)
class PolicyConfig:
    hi_pct: float
    lo_pct: float
    hi_amt: float | None = None
    lo_amt: float | None = None
    repeat_interval_ms: int = 5_000
    enable_hi: bool = True
    enable_lo: bool = True

    @classmethod
    def from_notification(cls, cfg: NotificationConfig) -> "PolicyConfig":
        return cls(
            hi_pct=cfg.profit_threshold,
            lo_pct=cfg.loss_threshold,
            hi_amt=cfg.profit_amount_threshold,
            lo_amt=cfg.loss_amount_threshold,
            repeat_interval_ms=cfg.repeat_interval_ms,
            enable_hi=cfg.enable_profit,
            enable_lo=cfg.enable_loss,
        )


@dataclass(frozen=True)
class PolicyDecision:
    fire: bool
    side: str | None = None  # "hi" | "lo"
    reason: str | None = None  # "enter" | "continue"
    suppressed: bool = False


_QUIET = PolicyDecision(fire=False)


def _ge(val: float | None, thr: float | None) -> bool:
    return val is not None and thr is not None and val >= thr


def _le(val: float | None, thr: float | None) -> bool:
    return val is not None and thr is not None and val <= thr


class NotificationPolicy:
    """Single-writer table of ThresholdState keyed by subject."""

    def __init__(self):
        self._lock = threading.Lock()
        self._states: dict[object, ThresholdState] = {}

    def state(self, key: object) -> ThresholdState:
        with self._lock:
            return copy.copy(self._states.get(key) or ThresholdState())

    def reset(self, key: object | None = None) -> None:
        with self._lock:
            if key is None:
                self._states.clear()
            else:
                self._states.pop(key, None)

    @staticmethod
    def _exit_hi(st: ThresholdState, pct: float | None, amt: float | None, cfg: PolicyConfig) -> None:
        pct_out = pct is None or pct < cfg.hi_pct - HYSTERESIS
        amt_out = cfg.hi_amt is None or amt is None or amt < cfg.hi_amt - HYSTERESIS
        if pct_out and amt_out and (pct is not None or amt is not None):
            if st.above_hi:
                st.last_notify_rate = None
                st.last_notify_amount = None
            st.above_hi = False

    @staticmethod
    def _exit_lo(st: ThresholdState, pct: float | None, amt: float | None, cfg: PolicyConfig) -> None:
        pct_out = pct is None or pct > cfg.lo_pct + HYSTERESIS
        amt_out = cfg.lo_amt is None or amt is None or amt > cfg.lo_amt + HYSTERESIS
        if pct_out and amt_out and (pct is not None or amt is not None):
            if st.below_lo:
                st.last_notify_rate = None
                st.last_notify_amount = None
            st.below_lo = False

    def evaluate(
        self,
        key: object,
        pct: float | None,
        amt: float | None,
        cfg: PolicyConfig,
        now_ms: int,
    ) -> PolicyDecision:
        with self._lock:
            st = self._states.setdefault(key, ThresholdState())
            want = False
            side: str | None = None
            reason: str | None = None

            reached_hi = cfg.enable_hi and (_ge(pct, cfg.hi_pct) or _ge(amt, cfg.hi_amt))
            if reached_hi:
                if not st.above_hi:
                    want, side, reason = True, "hi", "enter"
                    st.above_hi = True
                    st.below_lo = False
                    st.last_notify_rate = pct
                    st.last_notify_amount = amt
                else:
                    more_pct = _ge(pct, None if st.last_notify_rate is None else st.last_notify_rate + CONTINUATION_STEP)
                    more_amt = cfg.hi_amt is not None and _ge(
                        amt, None if st.last_notify_amount is None else st.last_notify_amount + CONTINUATION_STEP
                    )
                    if more_pct or more_amt:
                        want, side, reason = True, "hi", "continue"
                        st.last_notify_rate = pct
                        st.last_notify_amount = amt
            else:
                self._exit_hi(st, pct, amt, cfg)

            reached_lo = cfg.enable_lo and (_le(pct, cfg.lo_pct) or _le(amt, cfg.lo_amt))
            if reached_lo:
                if not st.below_lo:
                    want, side, reason = True, "lo", "enter"
                    st.below_lo = True
                    st.above_hi = False
                    st.last_notify_rate = pct
                    st.last_notify_amount = amt
                else:
                    less_pct = _le(pct, None if st.last_notify_rate is None else st.last_notify_rate - CONTINUATION_STEP)
                    less_amt = cfg.lo_amt is not None and _le(
                        amt, None if st.last_notify_amount is None else st.last_notify_amount - CONTINUATION_STEP
                    )
                    if less_pct or less_amt:
                        want, side, reason = True, "lo", "continue"
                        st.last_notify_rate = pct
                        st.last_notify_amount = amt
            else:
                self._exit_lo(st, pct, amt, cfg)

            if not want:
                return _QUIET
            if st.last_notify_ts is not None and now_ms - st.last_notify_ts < cfg.repeat_interval_ms:
                logger.debug("policy %s: %s/%s suppressed by repeat gate", key, side, reason)
                return PolicyDecision(fire=False, side=side, reason=reason, suppressed=True)
            st.last_notify_ts = int(now_ms)
            return PolicyDecision(fire=True, side=side, reason=reason)

    def release(self, key: object, pct: float | None, amt: float | None, cfg: PolicyConfig) -> None:
        """Apply only the exit rule (samples that cannot enter a band)."""
        with self._lock:
            st = self._states.get(key)
            if st is None:
                return
            self._exit_hi(st, pct, amt, cfg)
            self._exit_lo(st, pct, amt, cfg)
