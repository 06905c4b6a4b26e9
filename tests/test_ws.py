from __future__ import annotations

import gzip
import json
import threading
import time
import zlib

from exchange.htx_auth import Credentials
from exchange.ws import CLOSED, OPEN, HtxAuthSession, HtxMarketSession, decode_frame


class FakeApp:
    """Stands in for websocket.WebSocketApp; run_forever blocks until close()."""

    instances: list["FakeApp"] = []

    def __init__(self, url, on_open=None, on_message=None, on_error=None, on_close=None):
        self.url = url
        self.on_open = on_open
        self.on_message = on_message
        self.on_close = on_close
        self.sent: list[dict] = []
        self.closed = threading.Event()
        self.sock = None
        FakeApp.instances.append(self)

    def run_forever(self):
        self.on_open(self)
        self.closed.wait(5.0)
        self.on_close(self, 1000, "bye")

    def send(self, data):
        self.sent.append(json.loads(data))

    def close(self):
        self.closed.set()


def _gz(obj) -> bytes:
    return gzip.compress(json.dumps(obj).encode("utf-8"))


def _wait_for(pred, timeout_s: float = 2.0) -> bool:
    deadline = time.time() + timeout_s
    while time.time() < deadline:
        if pred():
            return True
        time.sleep(0.01)
    return pred()


def test_decode_frame_gzip_zlib_and_text() -> None:
    assert decode_frame(_gz({"a": 1})) == {"a": 1}
    assert decode_frame(zlib.compress(b'{"b": 2}')) == {"b": 2}
    assert decode_frame('{"c": 3}') == {"c": 3}
    assert decode_frame(b"\x00garbage") is None
    assert decode_frame("[1, 2]") is None


def test_ping_variants_are_answered() -> None:
    ticks = []
    s = HtxMarketSession(lambda *a: ticks.append(a), app_factory=FakeApp)
    app = FakeApp("u")
    s._on_open(app)

    s._on_message(app, _gz({"ping": 1700000000000}))
    s._on_message(app, _gz({"op": "ping", "ts": "1700000000001"}))
    assert app.sent == [{"pong": 1700000000000}, {"op": "pong", "ts": "1700000000001"}]
    assert ticks == []


def test_market_tick_emits_symbol_and_price() -> None:
    ticks = []
    s = HtxMarketSession(lambda sym, price, ts: ticks.append((sym, price)), app_factory=FakeApp)
    app = FakeApp("u")
    s._on_open(app)

    s._on_message(app, _gz({"ch": "market.ETH-USDT.detail", "tick": {"close": "2001.5"}}))
    s._on_message(app, _gz({"ch": "market.BTC-USDT.detail", "tick": {"last": 90000}}))
    s._on_message(app, _gz({"ch": "market.BTC-USDT.kline.1min", "tick": {"close": 1}}))
    s._on_message(app, _gz({"ch": "market.BTC-USDT.detail", "tick": {}}))
    assert ticks == [("ETH-USDT", 2001.5), ("BTC-USDT", 90000.0)]


def test_subscription_diff_only_sends_changes() -> None:
    s = HtxMarketSession(lambda *a: None, app_factory=FakeApp)
    app = FakeApp("u")
    s._on_open(app)

    assert s.update_subscriptions({"ETH-USDT"}) == (["ETH-USDT"], [])
    assert s.update_subscriptions({"ETH-USDT", "BTC-USDT"}) == (["BTC-USDT"], [])
    assert s.update_subscriptions({"ETH-USDT", "btc-usdt"}) == ([], [])
    assert s.update_subscriptions({"ETH-USDT"}) == ([], ["BTC-USDT"])

    assert app.sent == [
        {"sub": "market.ETH-USDT.detail", "id": "detail_ETH-USDT"},
        {"sub": "market.BTC-USDT.detail", "id": "detail_BTC-USDT"},
        {"unsub": "market.BTC-USDT.detail", "id": "unsub_BTC-USDT"},
    ]


def test_reconnect_restores_desired_set_at_reconnect_time() -> None:
    s = HtxMarketSession(lambda *a: None, app_factory=FakeApp)
    first = FakeApp("u")
    s._on_open(first)
    s.update_subscriptions({"ETH-USDT", "BTC-USDT"})
    s._on_close(first, 1006, "lost")
    assert s.subscribed == set()
    assert s.state == "backoff"
    sent_before = len(first.sent)

    # changes while disconnected only move the desired set
    assert s.update_subscriptions({"ETH-USDT", "SOL-USDT"}) == ([], [])
    assert len(first.sent) == sent_before
    assert s.subscribed == set()

    second = FakeApp("u")
    s._on_open(second)
    assert s.subscribed == {"ETH-USDT", "SOL-USDT"}
    assert sorted(m["sub"] for m in second.sent) == ["market.ETH-USDT.detail", "market.SOL-USDT.detail"]


def test_market_error_frame_forgets_failed_subscription() -> None:
    s = HtxMarketSession(lambda *a: None, app_factory=FakeApp)
    app = FakeApp("u")
    s._on_open(app)
    s.update_subscriptions({"NOPE-USDT"})
    s._on_message(app, _gz({"status": "error", "err-code": "bad-request", "id": "detail_NOPE-USDT"}))
    assert s.subscribed == set()
    assert s.update_subscriptions({"NOPE-USDT"}) == (["NOPE-USDT"], [])


def _auth_session(pushes, *, cross=False) -> HtxAuthSession:
    return HtxAuthSession(
        Credentials("ak", "sk"),
        lambda positions, snapshot, ts: pushes.append((positions, snapshot)),
        url="wss://api.hbdm.com/linear-swap-notification",
        cross=cross,
        app_factory=FakeApp,
    )


def _notify(volume: float = 1) -> bytes:
    return _gz(
        {
            "op": "notify",
            "topic": "positions.eth-usdt",
            "data": [{"contract_code": "ETH-USDT", "direction": "buy", "volume": volume, "cost_open": 2000, "position_margin": 20}],
        }
    )


def test_auth_login_subscribe_and_first_push_is_snapshot() -> None:
    pushes = []
    s = _auth_session(pushes)
    app = FakeApp("u")
    s._on_open(app)

    login = app.sent[0]
    assert login["op"] == "auth" and login["AccessKeyId"] == "ak" and "Signature" in login

    s._on_message(app, _gz({"op": "auth", "err-code": 0}))
    assert s.authenticated is True
    assert app.sent[1:] == [{"op": "sub", "cid": "sub_positions.*", "topic": "positions.*"}]

    s._on_message(app, _notify(1))
    s._on_message(app, _notify(0))
    assert [snap for _, snap in pushes] == [True, False]
    # volume-0 entries are forwarded so the book can drop the closed side
    assert pushes[1][0][0].volume == 0


def test_auth_cross_subscribes_both_topics_and_waits_for_explicit_snapshot() -> None:
    pushes = []
    s = _auth_session(pushes, cross=True)
    app = FakeApp("u")
    s._on_open(app)
    s._on_message(app, _gz({"op": "auth", "err-code": 0}))

    assert [m["topic"] for m in app.sent[1:]] == ["positions.*", "positions_cross.*"]
    s._on_message(app, _notify(1))
    assert pushes[0][1] is False


def test_auth_rejection_closes_socket_and_close_clears_auth() -> None:
    s = _auth_session([])
    app = FakeApp("u")
    s._on_open(app)
    s._on_message(app, _gz({"op": "auth", "err-code": 2002, "err-msg": "invalid signature"}))
    assert app.closed.is_set()
    assert s.authenticated is False

    s._on_message(app, _gz({"op": "auth", "err-code": 0}))
    assert s.authenticated is True
    s._on_close(app, 1006, "lost")
    assert s.authenticated is False


def test_handler_errors_do_not_escape_callbacks() -> None:
    def _boom(*_a):
        raise RuntimeError("consumer failed")

    s = HtxMarketSession(_boom, app_factory=FakeApp)
    app = FakeApp("u")
    s._on_open(app)
    s._on_message(app, _gz({"ch": "market.ETH-USDT.detail", "tick": {"close": 1}}))


def test_run_loop_reconnects_after_close_and_stops_cleanly() -> None:
    FakeApp.instances = []
    s = HtxMarketSession(lambda *a: None, reconnect_secs=0, ping_secs=60, app_factory=FakeApp)
    s.update_subscriptions({"ETH-USDT"})
    s.start()
    try:
        assert _wait_for(lambda: s.state == OPEN)
        s.close_socket()
        assert _wait_for(lambda: s.status()["connects"] >= 2 and s.state == OPEN)
        assert FakeApp.instances[-1].sent == [{"sub": "market.ETH-USDT.detail", "id": "detail_ETH-USDT"}]
    finally:
        s.stop(join_timeout_s=2.0)
    assert s.state == CLOSED
    assert s.status()["running"] is False
