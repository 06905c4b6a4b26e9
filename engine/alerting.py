from __future__ import annotations

import atexit
import logging
import os
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from .notifiers import DeliveryMeta, NotifierChannel, channels_from_env
from .utils import now_ms

logger = logging.getLogger(__name__)

HISTORY_MAX = 100


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    try:
        raw = os.getenv(name)
        if raw is None:
            return int(default)
        return int(float(str(raw).strip()))
    except Exception:
        return int(default)


def _env_str(name: str, default: str = "") -> str:
    raw = os.getenv(name)
    return default if raw is None else str(raw)


def _decorate_title(title: str) -> str:
    label = _env_str("HTX_ALERT_LABEL", "").strip()
    msg = str(title)
    if not label:
        return msg
    prefix = f"[{label}]"
    if msg.startswith(prefix):
        return msg
    return f"{prefix} {msg}"


class NotifierMux:
    """Ordered fan-out over the enabled channels; a send succeeds if any channel did."""

    def __init__(self, channels: list[NotifierChannel] | None = None):
        self._channels = list(channels) if channels is not None else channels_from_env()

    def has_notifiers(self) -> bool:
        return bool(self._channels)

    def enabled_notifiers(self) -> list[str]:
        return [c.name for c in self._channels]

    def notify(self, title: str, body: str, meta: DeliveryMeta | None = None) -> bool:
        ok = False
        for ch in self._channels:
            try:
                if ch.deliver(title, body, meta):
                    ok = True
            except Exception:
                logger.exception("channel %s raised during delivery", ch.name)
        return ok


@dataclass(frozen=True)
class Alert:
    kind: str  # pnl | price_change | target | summary | quant | test
    subject: str
    title: str
    body: str
    meta: DeliveryMeta = field(default_factory=DeliveryMeta)
    data: dict[str, Any] = field(default_factory=dict)


_STOP_SENTINEL = object()


class AlertDispatcher:
    """Best-effort alert send that must NOT stall a socket thread.

    Alerts go through a bounded queue drained by one worker thread; when the queue is full
    the alert is dropped. Successful sends are kept in a short history.
    """

    def __init__(
        self,
        mux: NotifierMux,
        *,
        async_enabled: bool | None = None,
        queue_max: int | None = None,
        dry_run: bool | None = None,
    ):
        self.mux = mux
        self._async = _env_bool("HTX_ALERT_ASYNC", True) if async_enabled is None else bool(async_enabled)
        self._dry_run = _env_bool("HTX_ALERT_DRY_RUN", False) if dry_run is None else bool(dry_run)
        qmax = _env_int("HTX_ALERT_QUEUE_MAX", 200) if queue_max is None else int(queue_max)
        self._queue: queue.Queue[Alert | object] = queue.Queue(maxsize=max(10, min(5000, qmax)))

        self._lock = threading.RLock()
        self._worker: threading.Thread | None = None
        self._atexit_registered = False
        self._dropped = 0
        self._history: deque[dict[str, Any]] = deque(maxlen=HISTORY_MAX)

    # -- delivery ----------------------------------------------------------

    def _deliver(self, alert: Alert) -> bool:
        title = _decorate_title(alert.title)
        if self._dry_run:
            logger.info("🟡 ALERT DRY RUN kind=%s subject=%s title=%s", alert.kind, alert.subject, title)
            ok = True
        else:
            ok = self.mux.notify(title, alert.body, alert.meta)
        if ok:
            with self._lock:
                self._history.append(
                    {"ts": now_ms(), "kind": alert.kind, "subject": alert.subject, "title": title, **alert.data}
                )
        else:
            logger.error("❌ notification not delivered on any channel: %s", title)
        return ok

    def send(self, alert: Alert) -> bool:
        """Synchronous mode returns the delivery result; async mode returns whether it was queued."""
        if not self._dry_run and not self.mux.has_notifiers():
            logger.info("🔕 alert (no channel) kind=%s subject=%s title=%s", alert.kind, alert.subject, alert.title)
            return False
        if not self._async:
            return self._deliver(alert)

        self._ensure_worker_started()
        try:
            self._queue.put_nowait(alert)
            return True
        except queue.Full:
            self._note_drop()
            return False

    def _note_drop(self) -> None:
        with self._lock:
            self._dropped += 1
            dropped = self._dropped
        if dropped % 100 == 1:
            logger.warning("Alert queue full; dropped %d alert(s) total", dropped)

    # -- history -----------------------------------------------------------

    def history(self, limit: int = 10) -> list[dict[str, Any]]:
        with self._lock:
            items = list(self._history)
        return items[-max(0, int(limit)):] if limit else []

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()

    # -- worker ------------------------------------------------------------

    def _worker_loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP_SENTINEL:
                    return
                self._deliver(item)  # type: ignore[arg-type]
            except Exception:
                logger.exception("alert worker failed to deliver")
            finally:
                self._queue.task_done()

    def _ensure_worker_started(self) -> None:
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            if not self._atexit_registered:
                atexit.register(self.shutdown)
                self._atexit_registered = True
            t = threading.Thread(target=self._worker_loop, name="htx_alert_sender", daemon=True)
            t.start()
            self._worker = t

    def shutdown(self, *, drain_timeout_s: float = 2.0) -> None:
        with self._lock:
            thread = self._worker
        if thread is None:
            return

        deadline = time.time() + max(0.0, float(drain_timeout_s))
        while (not self._queue.empty()) and time.time() < deadline:
            time.sleep(0.01)
        try:
            self._queue.put_nowait(_STOP_SENTINEL)
        except queue.Full:
            logger.warning("alert queue still full at shutdown; worker left to exit with the process")
        if thread.is_alive():
            thread.join(timeout=max(0.0, deadline - time.time()) + 0.5)

        with self._lock:
            self._worker = None


def startup_probe_alert(mux: NotifierMux) -> Alert:
    """Start-up probe message listing the active channels."""
    names = ", ".join(mux.enabled_notifiers()) or "none"
    return Alert(
        kind="test",
        subject="-",
        title="🤖 HTX 监控机器人",
        body=f"✅ 通知测试成功\n📋 通道: {names}",
        meta=DeliveryMeta(sound="bell", level="active"),
    )
