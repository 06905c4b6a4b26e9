"""Notification channel drivers.

Every channel implements `deliver(title, body, meta) -> bool`: one HTTP POST, bounded timeout,
no retry. Frequency control lives in the policy layer, not here.
"""

from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

LEVELS = ("passive", "active", "timeSensitive")


def _env_str(name: str, default: str = "") -> str:
    raw = os.getenv(name)
    return default if raw is None else str(raw)


def _env_float(name: str, default: float) -> float:
    try:
        raw = os.getenv(name)
        if raw is None:
            return float(default)
        return float(str(raw).strip())
    except Exception:
        return float(default)


@dataclass(frozen=True)
class DeliveryMeta:
    """Per-message delivery options.

    sound=None means the channel default; sound="" means silent.
    """

    sound: str | None = None
    level: str = "active"
    group: str | None = None
    badge: int | None = None
    url: str | None = None
    icon: str | None = None
    auto_copy: bool = True
    # Chat-bot rendering; falls back to "*title*\n\nbody".
    markdown: str | None = None


def _redact(secret: str) -> str:
    s = str(secret or "")
    if len(s) <= 8:
        return "…"
    return s[:4] + "…" + s[-2:]


def _post_json(url: str, payload: dict[str, Any], *, timeout_s: float) -> dict[str, Any] | None:
    req = urllib.request.Request(
        url,
        data=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
        headers={"Content-Type": "application/json; charset=utf-8"},
        method="POST",
    )
    with urllib.request.urlopen(req, timeout=timeout_s) as resp:
        raw = resp.read()
    data = json.loads(raw or b"{}")
    return data if isinstance(data, dict) else None


class NotifierChannel:
    name = "channel"

    def deliver(self, title: str, body: str, meta: DeliveryMeta | None = None) -> bool:
        raise NotImplementedError


class BarkChannel(NotifierChannel):
    """Push-to-mobile through a Bark server: POST {server}/{key}, success is code == 200."""

    name = "bark"

    def __init__(
        self,
        key: str,
        *,
        server: str = "https://api.day.app",
        sound: str = "bell",
        group: str = "HTX交易",
        timeout_s: float = 5.0,
    ):
        key = str(key or "").strip()
        if not key:
            raise ValueError("bark key is required")
        self._key = key
        self._server = str(server or "https://api.day.app").rstrip("/")
        self._sound = str(sound or "")
        self._group = str(group or "")
        self._timeout_s = max(0.5, min(30.0, float(timeout_s)))

    def build_payload(self, title: str, body: str, meta: DeliveryMeta) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "title": str(title),
            "body": str(body),
            "group": meta.group or self._group,
            "level": meta.level if meta.level in LEVELS else "active",
        }
        sound = self._sound if meta.sound is None else meta.sound
        if sound:
            payload["sound"] = sound
        if meta.auto_copy:
            payload["autoCopy"] = "1"
        if meta.badge is not None:
            payload["badge"] = int(meta.badge)
        if meta.url:
            payload["url"] = meta.url
        if meta.icon:
            payload["icon"] = meta.icon
        return payload

    def deliver(self, title: str, body: str, meta: DeliveryMeta | None = None) -> bool:
        meta = meta or DeliveryMeta()
        url = f"{self._server}/{self._key}"
        try:
            data = _post_json(url, self.build_payload(title, body, meta), timeout_s=self._timeout_s)
        except (urllib.error.URLError, OSError, ValueError) as e:
            logger.error("❌ bark delivery failed (key=%s): %s", _redact(self._key), e)
            return False
        if data and int(data.get("code") or 0) == 200:
            return True
        logger.error("❌ bark rejected notification: %s", (data or {}).get("message") or data)
        return False


class TelegramChannel(NotifierChannel):
    """Chat-bot delivery through the Telegram Bot API sendMessage, success is ok == true."""

    name = "telegram"

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        *,
        api_base: str = "https://api.telegram.org",
        timeout_s: float = 5.0,
    ):
        bot_token = str(bot_token or "").strip()
        chat_id = str(chat_id or "").strip()
        if not bot_token or not chat_id:
            raise ValueError("telegram bot token and chat id are required")
        self._token = bot_token
        self._chat_id = chat_id
        self._api_base = str(api_base or "https://api.telegram.org").rstrip("/")
        self._timeout_s = max(0.5, min(30.0, float(timeout_s)))

    def build_payload(self, title: str, body: str, meta: DeliveryMeta) -> dict[str, Any]:
        text = meta.markdown if meta.markdown else f"*{title}*\n\n{body}"
        payload: dict[str, Any] = {"chat_id": self._chat_id, "text": text, "parse_mode": "Markdown"}
        if meta.sound == "" or meta.level == "passive":
            payload["disable_notification"] = True
        return payload

    def deliver(self, title: str, body: str, meta: DeliveryMeta | None = None) -> bool:
        meta = meta or DeliveryMeta()
        url = f"{self._api_base}/bot{self._token}/sendMessage"
        try:
            data = _post_json(url, self.build_payload(title, body, meta), timeout_s=self._timeout_s)
        except (urllib.error.URLError, OSError, ValueError) as e:
            logger.error("❌ telegram delivery failed (chat=%s): %s", _redact(self._chat_id), e)
            return False
        if data and data.get("ok") is True:
            return True
        logger.error("❌ telegram rejected notification: %s", (data or {}).get("description") or data)
        return False


def channels_from_env() -> list[NotifierChannel]:
    """Enabled channels in delivery order (push first). Misconfigured channels are dropped."""
    timeout_s = _env_float("HTX_NOTIFY_TIMEOUT_S", 5.0)
    out: list[NotifierChannel] = []

    bark_key = _env_str("BARK_KEY", "").strip()
    if bark_key:
        try:
            out.append(
                BarkChannel(
                    bark_key,
                    server=_env_str("BARK_SERVER", "https://api.day.app"),
                    sound=_env_str("BARK_SOUND", "bell"),
                    group=_env_str("BARK_GROUP", "HTX交易"),
                    timeout_s=timeout_s,
                )
            )
        except ValueError as e:
            logger.warning("⚠️ bark channel disabled: %s", e)

    token = _env_str("TELEGRAM_BOT_TOKEN", "").strip()
    chat_id = _env_str("TELEGRAM_CHAT_ID", "").strip()
    if token or chat_id:
        try:
            out.append(
                TelegramChannel(
                    token,
                    chat_id,
                    api_base=_env_str("TELEGRAM_API_BASE", "https://api.telegram.org"),
                    timeout_s=timeout_s,
                )
            )
        except ValueError as e:
            logger.warning("⚠️ telegram channel disabled: %s", e)

    return out
