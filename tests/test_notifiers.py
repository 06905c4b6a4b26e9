from __future__ import annotations

import json
import urllib.error
import urllib.request

import pytest

from engine import notifiers
from engine.notifiers import BarkChannel, DeliveryMeta, TelegramChannel, channels_from_env


class _Resp:
    def __init__(self, payload):
        self._raw = json.dumps(payload).encode("utf-8")

    def read(self):
        return self._raw

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _capture(monkeypatch, response):
    sent = []

    def _fake_urlopen(req, timeout):
        sent.append({"url": req.full_url, "body": json.loads(req.data), "timeout": timeout})
        if isinstance(response, Exception):
            raise response
        return _Resp(response)

    monkeypatch.setattr(urllib.request, "urlopen", _fake_urlopen)
    return sent


def test_bark_payload_and_success(monkeypatch) -> None:
    sent = _capture(monkeypatch, {"code": 200, "message": "success"})
    ch = BarkChannel("abcdef123456", server="https://bark.example/", sound="bell", timeout_s=5)

    ok = ch.deliver("🎉 ETH-USDT 盈利 3.10%", "body", DeliveryMeta(sound="paymentsuccess", level="timeSensitive"))

    assert ok is True
    assert sent[0]["url"] == "https://bark.example/abcdef123456"
    body = sent[0]["body"]
    assert body["title"] == "🎉 ETH-USDT 盈利 3.10%"
    assert body["sound"] == "paymentsuccess"
    assert body["level"] == "timeSensitive"
    assert body["group"] == "HTX交易"
    assert sent[0]["timeout"] == 5


def test_bark_silent_sound_is_omitted() -> None:
    ch = BarkChannel("abcdef123456", sound="bell")
    assert "sound" not in ch.build_payload("t", "b", DeliveryMeta(sound="", level="passive"))
    assert ch.build_payload("t", "b", DeliveryMeta())["sound"] == "bell"


def test_bark_rejection_and_transport_errors_return_false(monkeypatch) -> None:
    _capture(monkeypatch, {"code": 400, "message": "bad key"})
    assert BarkChannel("abcdef123456").deliver("t", "b") is False

    _capture(monkeypatch, urllib.error.URLError("timed out"))
    assert BarkChannel("abcdef123456").deliver("t", "b") is False


def test_telegram_prefers_markdown_rendering(monkeypatch) -> None:
    sent = _capture(monkeypatch, {"ok": True})
    ch = TelegramChannel("123:token", "42", api_base="https://tg.example")

    assert ch.deliver("title", "body", DeliveryMeta(markdown="*md*")) is True
    assert sent[0]["url"] == "https://tg.example/bot123:token/sendMessage"
    assert sent[0]["body"]["text"] == "*md*"
    assert sent[0]["body"]["parse_mode"] == "Markdown"

    payload = ch.build_payload("title", "body", DeliveryMeta(sound="", level="passive"))
    assert payload["text"] == "*title*\n\nbody"
    assert payload["disable_notification"] is True


def test_telegram_not_ok_is_failure(monkeypatch) -> None:
    _capture(monkeypatch, {"ok": False, "description": "chat not found"})
    assert TelegramChannel("123:token", "42").deliver("t", "b") is False


def test_channel_constructors_require_credentials() -> None:
    with pytest.raises(ValueError):
        BarkChannel("")
    with pytest.raises(ValueError):
        TelegramChannel("token", "")


def test_channels_from_env_order_and_misconfiguration(monkeypatch) -> None:
    monkeypatch.setenv("BARK_KEY", "abcdef123456")
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:token")
    monkeypatch.setenv("TELEGRAM_CHAT_ID", "42")
    assert [c.name for c in channels_from_env()] == ["bark", "telegram"]

    monkeypatch.delenv("TELEGRAM_CHAT_ID")
    assert [c.name for c in channels_from_env()] == ["bark"]

    monkeypatch.delenv("BARK_KEY")
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN")
    assert channels_from_env() == []


def test_redact_never_returns_whole_secret() -> None:
    assert notifiers._redact("abcdefghijkl") == "abcd…kl"
    assert notifiers._redact("short") == "…"
