import json
import logging
import os
import threading
import zlib
from typing import Any, Callable, Iterable

import websocket

from engine.positions import Position, parse_positions
from engine.utils import monotonic_ms

from .htx_auth import Credentials, ws_auth_message

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    try:
        raw = os.getenv(name)
        if raw is None:
            return int(default)
        return int(float(str(raw).strip()))
    except Exception:
        return int(default)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "y", "on"}


HTX_AUTH_WS_URL = os.getenv("HTX_AUTH_WS_URL", "wss://api.hbdm.com/linear-swap-notification")
HTX_MARKET_WS_URL = os.getenv("HTX_MARKET_WS_URL", "wss://api.hbdm.com/linear-swap-ws")

HTX_WS_PING_SECS = _env_int("HTX_WS_PING_SECS", 20)
HTX_WS_RECONNECT_SECS = _env_int("HTX_WS_RECONNECT_SECS", 5)

# Session states.
CONNECTING = "connecting"
OPEN = "open"
DRAINING = "draining"
CLOSED = "closed"
BACKOFF = "backoff"

PositionsCallback = Callable[[list[Position], bool, int], None]
TickCallback = Callable[[str, float, int], None]


def decode_frame(message: Any) -> dict | None:
    """gzip/zlib-compressed (binary) or plain (text) JSON frame -> dict."""
    try:
        if isinstance(message, (bytes, bytearray)):
            # wbits=47 auto-detects gzip or zlib headers
            text = zlib.decompressobj(zlib.MAX_WBITS | 32).decompress(bytes(message)).decode("utf-8")
        else:
            text = str(message)
        msg = json.loads(text)
    except (zlib.error, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.error("❌ WS frame decode failed: %s", e)
        return None
    return msg if isinstance(msg, dict) else None


class HtxSession:
    """One venue WebSocket with an explicit connection state machine.

    `run_forever` runs in a daemon thread; when the socket closes and the session is not
    stopping it moves to `backoff`, waits the fixed reconnect delay and connects again.
    A second daemon thread sends a WS-level ping every `ping_secs`.
    """

    name = "ws"

    def __init__(
        self,
        url: str,
        *,
        ping_secs: int | None = None,
        reconnect_secs: int | None = None,
        app_factory: Callable[..., Any] | None = None,
    ):
        self.url = str(url)
        self.ping_secs = max(1, int(ping_secs if ping_secs is not None else HTX_WS_PING_SECS))
        self.reconnect_secs = max(0, int(reconnect_secs if reconnect_secs is not None else HTX_WS_RECONNECT_SECS))
        self._app_factory = app_factory or websocket.WebSocketApp

        self._lock = threading.RLock()
        self._ws_app: Any | None = None
        self._thread: threading.Thread | None = None
        self._ping_thread: threading.Thread | None = None
        self._state = CLOSED
        self._connects = 0
        self._last_message_ms: int | None = None
        self._stop_event = threading.Event()

    # -- lifecycle ---------------------------------------------------------

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    def _set_state(self, new: str) -> None:
        with self._lock:
            old = self._state
            self._state = new
        if old != new:
            logger.debug("%s session %s -> %s", self.name, old, new)

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._state = CONNECTING
            self._thread = threading.Thread(target=self._run, name=f"htx_{self.name}_ws", daemon=True)
            self._ping_thread = threading.Thread(target=self._ping_loop, name=f"htx_{self.name}_ping", daemon=True)
            self._thread.start()
            self._ping_thread.start()

    def stop(self, *, join_timeout_s: float = 5.0) -> None:
        self._stop_event.set()
        self._set_state(DRAINING)
        with self._lock:
            ws_app = self._ws_app
            t = self._thread
            p = self._ping_thread
        if ws_app is not None:
            try:
                ws_app.close()
            except (websocket.WebSocketException, OSError):
                logger.debug("%s WS close failed during stop()", self.name, exc_info=True)
        for th in (t, p):
            if th is not None and th is not threading.current_thread():
                th.join(timeout=float(join_timeout_s))
        self._set_state(CLOSED)

    def status(self) -> dict[str, Any]:
        with self._lock:
            running = self._thread is not None and self._thread.is_alive()
            return {
                "state": self._state,
                "running": bool(running),
                "connects": self._connects,
                "lastMessageMs": self._last_message_ms,
            }

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self._set_state(CONNECTING)
            app = self._app_factory(
                self.url,
                on_open=self._on_open,
                on_message=self._on_message,
                on_error=self._on_error,
                on_close=self._on_close,
            )
            with self._lock:
                self._ws_app = app
            try:
                app.run_forever()
            except Exception:
                logger.exception("%s WS run_forever crashed", self.name)
            with self._lock:
                self._ws_app = None
            if self._stop_event.is_set():
                break
            self._set_state(BACKOFF)
            logger.info("🔁 %s WS reconnecting in %ss", self.name, self.reconnect_secs)
            if self._stop_event.wait(self.reconnect_secs):
                break
        self._set_state(CLOSED)

    def _ping_loop(self) -> None:
        while not self._stop_event.wait(self.ping_secs):
            with self._lock:
                ws_app = self._ws_app
                state = self._state
            sock = getattr(ws_app, "sock", None)
            if state != OPEN or sock is None:
                continue
            try:
                sock.ping()
            except (websocket.WebSocketException, OSError):
                logger.debug("%s WS ping send failed", self.name, exc_info=True)

    # -- io ----------------------------------------------------------------

    def send_json(self, obj: dict) -> bool:
        with self._lock:
            ws_app = self._ws_app
        if ws_app is None:
            return False
        try:
            ws_app.send(json.dumps(obj))
            return True
        except (TypeError, ValueError, OSError, websocket.WebSocketException) as exc:
            logger.warning("⚠️ %s WS send failed: %s", self.name, exc)
            return False

    def close_socket(self) -> None:
        """Drop the current connection; the run loop reconnects unless stopping."""
        with self._lock:
            ws_app = self._ws_app
        if ws_app is not None:
            try:
                ws_app.close()
            except (websocket.WebSocketException, OSError):
                logger.debug("%s WS close failed", self.name, exc_info=True)

    # -- callbacks ---------------------------------------------------------

    def _on_open(self, ws) -> None:
        with self._lock:
            self._ws_app = ws
            self._connects += 1
        self._set_state(OPEN)
        logger.info("🟢 %s WS connected: %s", self.name, self.url)

    def _on_message(self, _ws, message) -> None:
        with self._lock:
            self._last_message_ms = monotonic_ms()
        msg = decode_frame(message)
        if msg is None:
            return
        if "ping" in msg:
            self.send_json({"pong": msg["ping"]})
            return
        if msg.get("op") == "ping":
            self.send_json({"op": "pong", "ts": msg.get("ts")})
            return
        try:
            self._handle(msg)
        except Exception:
            logger.exception("%s WS handler failed on %s", self.name, str(msg)[:200])

    def _handle(self, msg: dict) -> None:
        raise NotImplementedError

    def _on_error(self, _ws, error) -> None:
        logger.warning("⚠️ %s WS error: %s", self.name, error)

    def _on_close(self, _ws, status_code, msg) -> None:
        logger.info("🟡 %s WS closed: %s %s", self.name, status_code, msg)
        self._set_state(DRAINING if self._stop_event.is_set() else BACKOFF)


class HtxAuthSession(HtxSession):
    """Private notification stream: signed login, then position pushes."""

    name = "auth"

    def __init__(
        self,
        credentials: Credentials,
        on_positions: PositionsCallback,
        *,
        url: str | None = None,
        cross: bool | None = None,
        **kwargs,
    ):
        super().__init__(url or HTX_AUTH_WS_URL, **kwargs)
        self._creds = credentials
        self._on_positions = on_positions
        self.cross = _env_bool("HTX_AUTH_CROSS", False) if cross is None else bool(cross)
        self._authenticated = False
        self._awaiting_snapshot = False

    @property
    def authenticated(self) -> bool:
        with self._lock:
            return self._authenticated

    def topics(self) -> list[str]:
        out = ["positions.*"]
        if self.cross:
            out.append("positions_cross.*")
        return out

    def status(self) -> dict[str, Any]:
        out = super().status()
        out["authenticated"] = self.authenticated
        return out

    def _on_open(self, ws) -> None:
        super()._on_open(ws)
        self.send_json(ws_auth_message(self._creds, self.url))

    def _on_close(self, _ws, status_code, msg) -> None:
        with self._lock:
            self._authenticated = False
        super()._on_close(_ws, status_code, msg)

    def _handle(self, msg: dict) -> None:
        op = msg.get("op")
        if op == "auth":
            code = msg.get("err-code")
            if str(code) == "0":
                with self._lock:
                    self._authenticated = True
                    # With two margin topics neither first push is the complete book.
                    self._awaiting_snapshot = not self.cross
                logger.info("🟢 auth WS login ok; subscribing %s", ", ".join(self.topics()))
                for topic in self.topics():
                    self.send_json({"op": "sub", "cid": f"sub_{topic}", "topic": topic})
            else:
                logger.error("❌ auth WS login rejected: %s %s", code, msg.get("err-msg"))
                self.close_socket()
            return

        if op == "notify":
            topic = str(msg.get("topic") or "")
            if not topic.startswith("positions"):
                logger.debug("auth WS ignoring topic %s", topic)
                return
            ts = monotonic_ms()
            positions = parse_positions(msg.get("data"), received_at_ms=ts)
            with self._lock:
                snapshot = self._awaiting_snapshot or msg.get("event") == "snapshot"
                self._awaiting_snapshot = False
            logger.debug("auth WS %s: %d position(s) snapshot=%s", topic, len(positions), snapshot)
            self._on_positions(positions, snapshot, ts)
            return

        if op == "sub":
            code = msg.get("err-code")
            if str(code) == "0":
                logger.info("✅ auth WS subscribed %s", msg.get("topic"))
            else:
                logger.error("❌ auth WS subscribe %s failed: %s %s", msg.get("topic"), code, msg.get("err-msg"))
            return

        if op == "close":
            logger.warning("⚠️ auth WS server closing the connection: %s", msg)
            return

        if op == "error":
            logger.error("❌ auth WS error frame: %s", msg)
            return

        logger.debug("auth WS unhandled frame: %s", str(msg)[:200])


def _sub_topic(symbol: str) -> str:
    return f"market.{symbol}.detail"


class HtxMarketSession(HtxSession):
    """Public market stream with a dynamic `market.<SYMBOL>.detail` subscription set.

    `desired` is the set the caller asked for; `subscribed` is what has been sent on the
    current connection. A reconnect re-subscribes whatever is desired at that moment.
    """

    name = "market"

    def __init__(self, on_tick: TickCallback, *, url: str | None = None, **kwargs):
        super().__init__(url or HTX_MARKET_WS_URL, **kwargs)
        self._on_tick = on_tick
        self._desired: set[str] = set()
        self._subscribed: set[str] = set()

    @property
    def desired(self) -> set[str]:
        with self._lock:
            return set(self._desired)

    @property
    def subscribed(self) -> set[str]:
        with self._lock:
            return set(self._subscribed)

    def status(self) -> dict[str, Any]:
        out = super().status()
        out["subscribed"] = sorted(self.subscribed)
        return out

    def update_subscriptions(self, desired: Iterable[str]) -> tuple[list[str], list[str]]:
        """Diff against the live subscription set and send only the changes.

        Returns (added, removed). While disconnected only `desired` is updated.
        """
        want = {str(s or "").strip().upper() for s in desired}
        want.discard("")
        with self._lock:
            self._desired = want
            if self._state != OPEN:
                return [], []
            added = sorted(want - self._subscribed)
            removed = sorted(self._subscribed - want)
            self._subscribed.update(added)
            self._subscribed.difference_update(removed)
        for sym in added:
            logger.info("➕ market WS subscribe %s", sym)
            self.send_json({"sub": _sub_topic(sym), "id": f"detail_{sym}"})
        for sym in removed:
            logger.info("➖ market WS unsubscribe %s", sym)
            self.send_json({"unsub": _sub_topic(sym), "id": f"unsub_{sym}"})
        return added, removed

    def _on_open(self, ws) -> None:
        super()._on_open(ws)
        with self._lock:
            want = sorted(self._desired)
            self._subscribed = set(want)
        for sym in want:
            self.send_json({"sub": _sub_topic(sym), "id": f"detail_{sym}"})

    def _on_close(self, _ws, status_code, msg) -> None:
        with self._lock:
            self._subscribed = set()
        super()._on_close(_ws, status_code, msg)

    def _handle(self, msg: dict) -> None:
        ch = msg.get("ch")
        if ch is not None:
            parts = str(ch).split(".")
            tick = msg.get("tick")
            if len(parts) != 3 or parts[0] != "market" or parts[2] != "detail" or not isinstance(tick, dict):
                logger.debug("market WS unhandled channel %s", ch)
                return
            raw = tick.get("close")
            if raw is None:
                raw = tick.get("last")
            try:
                price = float(raw)
            except (TypeError, ValueError):
                logger.debug("market WS tick without price on %s", ch)
                return
            if price <= 0:
                return
            self._on_tick(parts[1].upper(), price, monotonic_ms())
            return

        status = msg.get("status")
        if status == "ok":
            if "subbed" in msg:
                logger.debug("market WS subbed %s", msg.get("subbed"))
            elif "unsubbed" in msg:
                logger.debug("market WS unsubbed %s", msg.get("unsubbed"))
            return
        if status == "error":
            req_id = str(msg.get("id") or "")
            logger.error("❌ market WS error %s: %s (id=%s)", msg.get("err-code"), msg.get("err-msg"), req_id)
            if req_id.startswith("detail_"):
                # Forget the failed sub so the next update_subscriptions() retries it.
                with self._lock:
                    self._subscribed.discard(req_id[len("detail_"):])
            return

        logger.debug("market WS unhandled frame: %s", str(msg)[:200])
