from __future__ import annotations

import logging
import threading

from engine.alerting import Alert, AlertDispatcher, NotifierMux, startup_probe_alert
from engine.notifiers import DeliveryMeta, NotifierChannel


class _Channel(NotifierChannel):
    def __init__(self, name: str, ok: bool = True, raises: bool = False):
        self.name = name
        self.ok = ok
        self.raises = raises
        self.sent: list[tuple[str, str, DeliveryMeta | None]] = []

    def deliver(self, title, body, meta=None):
        self.sent.append((title, body, meta))
        if self.raises:
            raise RuntimeError("boom")
        return self.ok


def _alert(title: str = "t") -> Alert:
    return Alert(kind="pnl", subject="ETH-USDT_long", title=title, body="b")


def test_mux_succeeds_if_any_channel_succeeds() -> None:
    bad = _Channel("bark", raises=True)
    good = _Channel("telegram")
    mux = NotifierMux([bad, good])

    assert mux.has_notifiers() is True
    assert mux.enabled_notifiers() == ["bark", "telegram"]
    assert mux.notify("t", "b") is True
    assert len(bad.sent) == 1 and len(good.sent) == 1


def test_mux_all_failed_or_empty() -> None:
    assert NotifierMux([_Channel("bark", ok=False)]).notify("t", "b") is False
    empty = NotifierMux([])
    assert empty.has_notifiers() is False
    assert empty.notify("t", "b") is False


def test_sync_dispatch_records_history(monkeypatch) -> None:
    monkeypatch.delenv("HTX_ALERT_LABEL", raising=False)
    ch = _Channel("bark")
    d = AlertDispatcher(NotifierMux([ch]), async_enabled=False, dry_run=False)

    for i in range(3):
        assert d.send(_alert(f"t{i}")) is True

    hist = d.history(limit=2)
    assert [h["title"] for h in hist] == ["t1", "t2"]
    assert hist[0]["kind"] == "pnl"
    d.clear_history()
    assert d.history() == []


def test_failed_delivery_is_not_recorded() -> None:
    d = AlertDispatcher(NotifierMux([_Channel("bark", ok=False)]), async_enabled=False, dry_run=False)
    assert d.send(_alert()) is False
    assert d.history() == []


def test_no_channels_means_nothing_sent_but_alert_is_logged(caplog) -> None:
    d = AlertDispatcher(NotifierMux([]), async_enabled=False, dry_run=False)
    alert = _alert("ETH-USDT 盈利提醒")
    with caplog.at_level(logging.INFO, logger="engine.alerting"):
        assert d.send(alert) is False
    assert any(alert.title in r.getMessage() for r in caplog.records)
    assert d.history() == []


def test_dry_run_logs_instead_of_sending() -> None:
    ch = _Channel("bark")
    d = AlertDispatcher(NotifierMux([ch]), async_enabled=False, dry_run=True)
    assert d.send(_alert()) is True
    assert ch.sent == []
    assert len(d.history()) == 1


def test_label_prefix_is_added_once(monkeypatch) -> None:
    monkeypatch.setenv("HTX_ALERT_LABEL", "prod")
    ch = _Channel("bark")
    d = AlertDispatcher(NotifierMux([ch]), async_enabled=False, dry_run=False)
    d.send(_alert("hello"))
    d.send(_alert("[prod] again"))
    assert [s[0] for s in ch.sent] == ["[prod] hello", "[prod] again"]


def test_async_dispatch_delivers_on_worker_and_drains_on_shutdown() -> None:
    delivered = threading.Event()

    class _Slow(_Channel):
        def deliver(self, title, body, meta=None):
            out = super().deliver(title, body, meta)
            delivered.set()
            return out

    ch = _Slow("bark")
    d = AlertDispatcher(NotifierMux([ch]), async_enabled=True, queue_max=10, dry_run=False)
    assert d.send(_alert()) is True
    assert delivered.wait(2.0)
    d.shutdown(drain_timeout_s=1.0)
    assert len(ch.sent) == 1


def test_full_queue_drops_instead_of_blocking() -> None:
    gate = threading.Event()

    class _Blocked(_Channel):
        def deliver(self, title, body, meta=None):
            gate.wait(2.0)
            return super().deliver(title, body, meta)

    d = AlertDispatcher(NotifierMux([_Blocked("bark")]), async_enabled=True, queue_max=10, dry_run=False)
    results = [d.send(_alert(str(i))) for i in range(30)]
    gate.set()
    d.shutdown(drain_timeout_s=2.0)

    assert results.count(False) > 0
    assert results[0] is True


def test_startup_probe_lists_channels() -> None:
    alert = startup_probe_alert(NotifierMux([_Channel("bark"), _Channel("telegram")]))
    assert alert.kind == "test"
    assert "bark, telegram" in alert.body
