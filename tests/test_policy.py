from __future__ import annotations

from engine.config_store import NotificationConfig
from engine.policy import NotificationPolicy, PolicyConfig


def _cfg(**kw) -> PolicyConfig:
    base = dict(hi_pct=3.0, lo_pct=-5.0, hi_amt=None, lo_amt=None, repeat_interval_ms=5_000)
    base.update(kw)
    return PolicyConfig(**base)


def test_hysteresis_sequence_fires_on_enter_continuation_and_reenter() -> None:
    policy = NotificationPolicy()
    cfg = _cfg()
    roes = [2.9, 3.1, 3.5, 4.2, 3.3, 2.4, 3.1]

    fired = []
    for i, roe in enumerate(roes):
        d = policy.evaluate("ETH-USDT_long", roe, None, cfg, now_ms=i * 10_000)
        if d.fire:
            fired.append((i, d.reason))

    assert fired == [(1, "enter"), (3, "continue"), (6, "enter")]


def test_exact_threshold_triggers() -> None:
    policy = NotificationPolicy()
    d = policy.evaluate("k", 3.0, None, _cfg(), now_ms=0)
    assert d.fire is True
    assert d.side == "hi"


def test_values_inside_hysteresis_band_neither_trigger_nor_clear() -> None:
    policy = NotificationPolicy()
    cfg = _cfg()
    assert policy.evaluate("k", 3.2, None, cfg, now_ms=0).fire

    d = policy.evaluate("k", 2.7, None, cfg, now_ms=10_000)
    assert d.fire is False
    assert policy.state("k").above_hi is True

    # back over the threshold without having cleared: not a new entry
    assert policy.evaluate("k", 3.1, None, cfg, now_ms=20_000).fire is False


def test_below_hysteresis_margin_clears() -> None:
    policy = NotificationPolicy()
    cfg = _cfg()
    policy.evaluate("k", 3.2, None, cfg, now_ms=0)
    policy.evaluate("k", 2.49, None, cfg, now_ms=10_000)
    st = policy.state("k")
    assert st.above_hi is False
    assert st.last_notify_rate is None


def test_repeat_gate_suppresses_but_band_state_moves() -> None:
    policy = NotificationPolicy()
    cfg = _cfg()
    assert policy.evaluate("k", 3.0, None, cfg, now_ms=0).fire
    policy.evaluate("k", 2.0, None, cfg, now_ms=1_000)

    d = policy.evaluate("k", 3.5, None, cfg, now_ms=2_000)
    assert d.fire is False
    assert d.suppressed is True
    assert policy.state("k").above_hi is True


def test_bands_are_mutually_exclusive() -> None:
    policy = NotificationPolicy()
    cfg = _cfg()
    for i, roe in enumerate([4.0, -6.0, 5.0, -7.5, 0.0, 3.0]):
        policy.evaluate("k", roe, None, cfg, now_ms=i * 10_000)
        st = policy.state("k")
        assert not (st.above_hi and st.below_lo)


def test_amount_threshold_alone_can_fire() -> None:
    policy = NotificationPolicy()
    cfg = _cfg(hi_amt=2.0)
    d = policy.evaluate("k", 0.5, 2.5, cfg, now_ms=0)
    assert d.fire is True
    assert d.side == "hi"


def test_disabled_side_never_fires() -> None:
    policy = NotificationPolicy()
    cfg = PolicyConfig.from_notification(NotificationConfig(enable_loss=False))
    assert policy.evaluate("k", -20.0, -100.0, cfg, now_ms=0).fire is False


def test_release_applies_exit_only() -> None:
    policy = NotificationPolicy()
    cfg = _cfg()
    policy.evaluate("k", 3.5, None, cfg, now_ms=0)
    policy.release("k", 1.0, None, cfg)
    assert policy.state("k").above_hi is False
    # unknown subjects are ignored
    policy.release("other", 1.0, None, cfg)
    assert policy.state("other").above_hi is False


def test_reset_forgets_subject() -> None:
    policy = NotificationPolicy()
    cfg = _cfg()
    policy.evaluate("k", 3.5, None, cfg, now_ms=0)
    policy.reset("k")
    assert policy.evaluate("k", 3.5, None, cfg, now_ms=1).fire is True
