"""Config document: defaults, parsing, persistence and change fan-out.

The document lives at `<prefix>:config`. Writers (admin UI, `tools.htx_ctl`) save it and
publish on `<prefix>:config:update`; this process reacts to the publish and, as a fallback,
polls the key. Readers get a parsed, immutable `MonitorConfig` that is swapped atomically
when the canonical JSON of the document changes.
"""

from __future__ import annotations

import copy
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml

from .kv_store import KVStore
from .utils import deep_merge, now_ms, safe_float, sha256_json

logger = logging.getLogger(__name__)

CONFIG_KEY = "config"
CONFIG_UPDATE_CHANNEL = "config:update"

PROJECT_DIR = Path(__file__).resolve().parents[1]
DEFAULT_CONFIG_PATH = PROJECT_DIR / "config" / "default_config.yaml"

# Quant tunables applied without restart vs. those that need one.
QUANT_HOT_FIELDS = ("enabled", "positionSize", "stopLoss", "takeProfit", "trailingStop", "maxPositions", "minConfidence")
QUANT_RESTART_FIELDS = ("testMode", "symbol", "leverage", "initialBalance")


class ConfigError(ValueError):
    """Invalid config document."""


def _env_str(name: str, default: str = "") -> str:
    raw = os.getenv(name)
    return default if raw is None else str(raw)


# env var -> (quantConfig field, caster)
_QUANT_ENV_SEED: dict[str, tuple[str, Callable[[str], Any]]] = {
    "QUANT_ENABLED": ("enabled", lambda v: v.strip().lower() in {"1", "true", "yes", "y", "on"}),
    "QUANT_TEST_MODE": ("testMode", lambda v: v.strip().lower() in {"1", "true", "yes", "y", "on"}),
    "QUANT_DRY_RUN": ("dryRun", lambda v: v.strip().lower() in {"1", "true", "yes", "y", "on"}),
    "QUANT_SYMBOL": ("symbol", lambda v: v.strip().upper()),
    "QUANT_LEVERAGE": ("leverage", lambda v: int(float(v))),
    "QUANT_INITIAL_BALANCE": ("initialBalance", float),
    "QUANT_POSITION_SIZE": ("positionSize", float),
    "QUANT_STOP_LOSS": ("stopLoss", float),
    "QUANT_TAKE_PROFIT": ("takeProfit", float),
    "QUANT_TRAILING_STOP": ("trailingStop", float),
    "QUANT_MAX_POSITIONS": ("maxPositions", lambda v: int(float(v))),
    "QUANT_MIN_CONFIDENCE": ("minConfidence", float),
    "QUANT_SIGNAL_MODE": ("signalMode", lambda v: v.strip().lower()),
    "QUANT_SMART_EXIT": ("smartExit", lambda v: v.strip().lower() in {"1", "true", "yes", "y", "on"}),
}


def load_default_document(path: str | os.PathLike[str] | None = None) -> dict[str, Any]:
    """Default document from YAML, with QUANT_* environment values merged over quantConfig."""
    p = Path(path or _env_str("HTX_DEFAULT_CONFIG", "") or DEFAULT_CONFIG_PATH)
    with p.open("r", encoding="utf-8") as f:
        doc = yaml.safe_load(f) or {}
    if not isinstance(doc, dict):
        raise ConfigError(f"default config must be a mapping: {p}")

    seed: dict[str, Any] = {}
    for env_name, (field_name, cast) in _QUANT_ENV_SEED.items():
        raw = os.getenv(env_name)
        if raw is None or not str(raw).strip():
            continue
        try:
            seed[field_name] = cast(str(raw))
        except (TypeError, ValueError):
            logger.warning("ignoring malformed %s=%r", env_name, raw)
    if seed:
        deep_merge(doc.setdefault("quantConfig", {}), seed)
    return doc


# ---------------------------------------------------------------------------
# Parsed view
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PriceWindow:
    duration_ms: int
    pct_threshold: float
    abs_threshold: float
    label: str


@dataclass(frozen=True)
class PriceChangeConfig:
    enabled: bool = False
    windows: tuple[PriceWindow, ...] = ()
    min_notify_interval_ms: int = 120_000

    @property
    def max_duration_ms(self) -> int:
        return max((w.duration_ms for w in self.windows), default=0)


@dataclass(frozen=True)
class TargetRule:
    symbol: str
    target_price: float
    direction: str
    notify_once: bool = False
    notify_interval_s: float = 60.0
    range_percent: float = 0.0

    @property
    def rule_id(self) -> str:
        return f"{self.symbol}:{self.direction}:{self.target_price:g}"


@dataclass(frozen=True)
class NotificationConfig:
    profit_threshold: float = 3.0
    loss_threshold: float = -5.0
    profit_amount_threshold: float | None = None
    loss_amount_threshold: float | None = None
    time_interval_ms: int = 3_600_000
    repeat_interval_ms: int = 5_000
    enable_time: bool = False
    enable_profit: bool = True
    enable_loss: bool = False


@dataclass(frozen=True)
class QuantConfig:
    enabled: bool = False
    test_mode: bool = True
    dry_run: bool = False
    symbol: str = "BTC-USDT"
    leverage: float = 10.0
    initial_balance: float = 1000.0
    position_size: float = 0.1
    stop_loss: float = 0.02
    take_profit: float = 0.05
    trailing_stop: float = 0.03
    max_positions: int = 1
    min_confidence: float = 60.0
    signal_mode: str = "simple"
    smart_exit: bool = True
    signal_check_interval_ms: int = 30_000
    maker_fee: float = 0.0002
    taker_fee: float = 0.0005

    @property
    def mode(self) -> str:
        return "paper" if self.test_mode else "live"


@dataclass(frozen=True)
class MonitorConfig:
    watch_contracts: tuple[str, ...] = ()
    price_change: PriceChangeConfig = field(default_factory=PriceChangeConfig)
    targets_enabled: bool = False
    targets: tuple[TargetRule, ...] = ()
    notification: NotificationConfig = field(default_factory=NotificationConfig)
    quant: QuantConfig = field(default_factory=QuantConfig)


def _as_bool(val: Any, default: bool) -> bool:
    if val is None:
        return default
    if isinstance(val, str):
        return val.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(val)


def _opt_float(val: Any) -> float | None:
    if val is None or val == "":
        return None
    return safe_float(val, None)


def _symbols(raw: Any) -> tuple[str, ...]:
    out: list[str] = []
    seen: set[str] = set()
    for part in raw or []:
        sym = str(part or "").strip().upper()
        if not sym or sym in seen:
            continue
        seen.add(sym)
        out.append(sym)
    return tuple(out)


def _parse_window(raw: Any) -> PriceWindow:
    if not isinstance(raw, dict):
        raise ConfigError(f"time window must be a mapping, got {type(raw).__name__}")
    duration = safe_float(raw.get("duration"), None)
    pct = safe_float(raw.get("threshold"), None)
    amt = safe_float(raw.get("amountThreshold"), None)
    if duration is None or duration <= 0:
        raise ConfigError(f"time window duration must be > 0: {raw!r}")
    if pct is None or pct <= 0:
        raise ConfigError(f"time window threshold must be > 0: {raw!r}")
    if amt is None or amt <= 0:
        amt = float("inf")
    label = str(raw.get("name") or f"{int(duration) // 1000}s")
    return PriceWindow(duration_ms=int(duration), pct_threshold=float(pct), abs_threshold=float(amt), label=label)


def parse_target_rule(raw: Any) -> TargetRule:
    if not isinstance(raw, dict):
        raise ConfigError(f"price target must be a mapping, got {type(raw).__name__}")
    symbol = str(raw.get("symbol") or "").strip().upper()
    price = safe_float(raw.get("targetPrice"), None)
    direction = str(raw.get("direction") or "").strip().lower()
    if not symbol:
        raise ConfigError(f"price target without symbol: {raw!r}")
    if price is None or price <= 0:
        raise ConfigError(f"price target needs targetPrice > 0: {raw!r}")
    if direction not in {"above", "below"}:
        raise ConfigError(f"price target direction must be above|below: {raw!r}")
    rng = safe_float(raw.get("rangePercent"), 0.0) or 0.0
    if rng < 0:
        raise ConfigError(f"price target rangePercent must be >= 0: {raw!r}")
    return TargetRule(
        symbol=symbol,
        target_price=float(price),
        direction=direction,
        notify_once=_as_bool(raw.get("notifyOnce"), False),
        notify_interval_s=max(0.0, safe_float(raw.get("notifyInterval"), 60.0) or 0.0),
        range_percent=float(rng),
    )


def _parse_notification(raw: dict[str, Any]) -> NotificationConfig:
    d = NotificationConfig()
    return NotificationConfig(
        profit_threshold=safe_float(raw.get("profitThreshold"), d.profit_threshold),
        loss_threshold=safe_float(raw.get("lossThreshold"), d.loss_threshold),
        profit_amount_threshold=_opt_float(raw.get("profitAmountThreshold")),
        loss_amount_threshold=_opt_float(raw.get("lossAmountThreshold")),
        time_interval_ms=int(safe_float(raw.get("timeInterval"), d.time_interval_ms)),
        repeat_interval_ms=int(safe_float(raw.get("repeatInterval"), d.repeat_interval_ms)),
        enable_time=_as_bool(raw.get("enableTimeNotification"), d.enable_time),
        enable_profit=_as_bool(raw.get("enableProfitNotification"), d.enable_profit),
        enable_loss=_as_bool(raw.get("enableLossNotification"), d.enable_loss),
    )


def parse_quant_config(raw: dict[str, Any] | None) -> QuantConfig:
    raw = raw or {}
    d = QuantConfig()
    return QuantConfig(
        enabled=_as_bool(raw.get("enabled"), d.enabled),
        test_mode=_as_bool(raw.get("testMode"), d.test_mode),
        dry_run=_as_bool(raw.get("dryRun"), d.dry_run),
        symbol=str(raw.get("symbol") or d.symbol).strip().upper(),
        leverage=safe_float(raw.get("leverage"), d.leverage),
        initial_balance=safe_float(raw.get("initialBalance"), d.initial_balance),
        position_size=safe_float(raw.get("positionSize"), d.position_size),
        stop_loss=safe_float(raw.get("stopLoss"), d.stop_loss),
        take_profit=safe_float(raw.get("takeProfit"), d.take_profit),
        trailing_stop=safe_float(raw.get("trailingStop"), d.trailing_stop),
        max_positions=int(safe_float(raw.get("maxPositions"), d.max_positions)),
        min_confidence=safe_float(raw.get("minConfidence"), d.min_confidence),
        signal_mode=str(raw.get("signalMode") or d.signal_mode).strip().lower(),
        smart_exit=_as_bool(raw.get("smartExit"), d.smart_exit),
        signal_check_interval_ms=int(safe_float(raw.get("signalCheckInterval"), d.signal_check_interval_ms)),
        maker_fee=safe_float(raw.get("makerFee"), d.maker_fee),
        taker_fee=safe_float(raw.get("takerFee"), d.taker_fee),
    )


def parse_config(doc: dict[str, Any]) -> MonitorConfig:
    """Lenient parse: malformed windows/targets are skipped with a warning."""
    doc = doc if isinstance(doc, dict) else {}

    pc_raw = doc.get("priceChangeConfig") or {}
    windows: list[PriceWindow] = []
    for w in pc_raw.get("timeWindows") or []:
        try:
            windows.append(_parse_window(w))
        except ConfigError as e:
            logger.warning("skipping price window: %s", e)
    windows.sort(key=lambda w: w.duration_ms)
    price_change = PriceChangeConfig(
        enabled=_as_bool(pc_raw.get("enabled"), False),
        windows=tuple(windows),
        min_notify_interval_ms=int(safe_float(pc_raw.get("minNotifyInterval"), 120_000)),
    )

    pt_raw = doc.get("priceTargets") or {}
    targets: list[TargetRule] = []
    for t in pt_raw.get("targets") or []:
        try:
            targets.append(parse_target_rule(t))
        except ConfigError as e:
            logger.warning("skipping price target: %s", e)

    return MonitorConfig(
        watch_contracts=_symbols(doc.get("watchContracts")),
        price_change=price_change,
        targets_enabled=_as_bool(pt_raw.get("enabled"), False),
        targets=tuple(targets),
        notification=_parse_notification(doc.get("notificationConfig") or {}),
        quant=parse_quant_config(doc.get("quantConfig")),
    )


def validate_config(doc: Any) -> MonitorConfig:
    """Strict parse for documents submitted by an operator. Raises ConfigError."""
    if not isinstance(doc, dict):
        raise ConfigError(f"config document must be a JSON object, got {type(doc).__name__}")
    wc = doc.get("watchContracts", [])
    if not isinstance(wc, list) or not all(isinstance(s, str) and s.strip() for s in wc):
        raise ConfigError("watchContracts must be a list of symbols")

    pc_raw = doc.get("priceChangeConfig") or {}
    if not isinstance(pc_raw, dict):
        raise ConfigError("priceChangeConfig must be an object")
    for w in pc_raw.get("timeWindows") or []:
        _parse_window(w)

    pt_raw = doc.get("priceTargets") or {}
    if not isinstance(pt_raw, dict):
        raise ConfigError("priceTargets must be an object")
    for t in pt_raw.get("targets") or []:
        parse_target_rule(t)

    q = parse_quant_config(doc.get("quantConfig"))
    if q.leverage <= 0:
        raise ConfigError("quantConfig.leverage must be > 0")
    if not 0 < q.position_size <= 1:
        raise ConfigError("quantConfig.positionSize must be in (0, 1]")
    if q.stop_loss <= 0 or q.take_profit <= 0 or q.trailing_stop < 0:
        raise ConfigError("quantConfig stopLoss/takeProfit must be > 0 and trailingStop >= 0")
    if q.max_positions < 1:
        raise ConfigError("quantConfig.maxPositions must be >= 1")
    if not 0 <= q.min_confidence <= 100:
        raise ConfigError("quantConfig.minConfidence must be within 0..100")
    return parse_config(doc)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


ChangeListener = Callable[[MonitorConfig, MonitorConfig | None], None]


class ConfigStore:
    def __init__(
        self,
        kv: KVStore,
        *,
        defaults: dict[str, Any] | None = None,
        poll_interval_s: float = 5.0,
    ):
        self._kv = kv
        self._defaults = copy.deepcopy(defaults) if defaults is not None else load_default_document()
        self._poll_interval_s = max(0.5, min(10.0, float(poll_interval_s)))

        self._lock = threading.RLock()
        self._write_lock = threading.Lock()
        self._doc: dict[str, Any] = copy.deepcopy(self._defaults)
        self._hash: str = ""
        self._parsed: MonitorConfig = parse_config(self._doc)
        self._listeners: list[ChangeListener] = []
        self._threads: list[threading.Thread] = []

    # -- reads -------------------------------------------------------------

    def current(self) -> MonitorConfig:
        with self._lock:
            return self._parsed

    def document(self) -> dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._doc)

    def add_listener(self, fn: ChangeListener) -> None:
        with self._lock:
            self._listeners.append(fn)

    def _fetch(self) -> dict[str, Any] | None:
        """Latest document from KV; seeds the default when the key is absent.

        Returns None when the store is unreachable or holds garbage.
        """
        raw = self._kv.get_raw(CONFIG_KEY)
        if raw is None:
            if not self._kv.ping():
                return None
            logger.info("🟢 config key missing; seeding default document")
            doc = copy.deepcopy(self._defaults)
            self._kv.set(CONFIG_KEY, doc)
            return doc
        doc = self._kv.get(CONFIG_KEY)
        if not isinstance(doc, dict):
            logger.error("❌ config document at %s is not a JSON object; keeping last known", self._kv.key(CONFIG_KEY))
            return None
        return doc

    def load(self) -> MonitorConfig:
        """Reload from KV. Listeners fire only when the canonical JSON changed."""
        doc = self._fetch()
        if doc is None:
            return self.current()
        self._apply(doc)
        return self.current()

    def _apply(self, doc: dict[str, Any]) -> bool:
        h = sha256_json(doc)
        with self._lock:
            if h == self._hash:
                return False
            prev = self._parsed if self._hash else None
            self._doc = copy.deepcopy(doc)
            self._hash = h
            self._parsed = parse_config(self._doc)
            parsed = self._parsed
            listeners = list(self._listeners)
        if prev is not None:
            logger.info("🔄 config changed (sha256=%s)", h[:12])
        for fn in listeners:
            try:
                fn(parsed, prev)
            except Exception:
                logger.exception("config listener failed")
        return True

    # -- writes ------------------------------------------------------------

    def save(self, doc: dict[str, Any]) -> bool:
        """Persist then publish the invalidation ping. Returns False if the KV write failed."""
        if not self._kv.set(CONFIG_KEY, doc):
            logger.error("❌ config save failed: %s", self._kv.last_error)
            return False
        self._kv.publish(CONFIG_UPDATE_CHANNEL, {"ts": now_ms()})
        self._apply(doc)
        return True

    def update(self, mutate: Callable[[dict[str, Any]], dict[str, Any] | None]) -> bool:
        """Read-modify-write against the latest stored document.

        `mutate` edits the document in place (or returns a replacement). Only the parts it
        touches change; edits made by other writers since our last load are preserved.
        """
        with self._write_lock:
            latest = self._fetch()
            if latest is None:
                logger.warning("⚠️ config update skipped: KV unavailable")
                return False
            out = mutate(latest)
            doc = latest if out is None else out
            return self.save(doc)

    # -- watching ----------------------------------------------------------

    def start_watching(self, stop_event: threading.Event) -> None:
        def _poll_loop() -> None:
            while not stop_event.wait(self._poll_interval_s):
                try:
                    self.load()
                except Exception:
                    logger.exception("config poll failed")

        def _sub_loop() -> None:
            sub = self._kv.subscribe(CONFIG_UPDATE_CHANNEL)
            for _msg in sub.messages(stop_event):
                try:
                    self.load()
                except Exception:
                    logger.exception("config reload after publish failed")

        for name, target in (("htx_config_poll", _poll_loop), ("htx_config_sub", _sub_loop)):
            t = threading.Thread(target=target, name=name, daemon=True)
            t.start()
            self._threads.append(t)


def wait_for_config(store: ConfigStore, *, timeout_s: float = 5.0, every_s: float = 0.5) -> MonitorConfig:
    """Best-effort first load; falls back to defaults when KV stays unreachable."""
    deadline = time.time() + max(0.0, float(timeout_s))
    while True:
        if store._fetch() is not None:
            return store.load()
        if time.time() >= deadline:
            logger.warning("⚠️ KV unreachable; running with default config")
            return store.current()
        time.sleep(every_s)
