from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any

from .utils import safe_float

logger = logging.getLogger(__name__)

# Venue direction -> position side.
_SIDES = {"buy": "long", "sell": "short", "long": "long", "short": "short"}


@dataclass(frozen=True)
class Position:
    contract: str
    direction: str  # long | short
    volume: float
    cost_open: float
    position_margin: float
    available: float = 0.0
    profit_unreal: float = 0.0
    profit_rate: float = 0.0
    lever_rate: float = 0.0
    received_at_ms: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return (self.contract, self.direction)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        return {
            "contractCode": d["contract"],
            "direction": d["direction"],
            "volume": d["volume"],
            "costOpen": d["cost_open"],
            "positionMargin": d["position_margin"],
            "available": d["available"],
            "profitUnreal": d["profit_unreal"],
            "profitRate": d["profit_rate"],
            "leverRate": d["lever_rate"],
            "receivedAt": d["received_at_ms"],
        }


def parse_position(raw: Any, *, received_at_ms: int = 0) -> Position | None:
    """One entry of a `positions.*` push. Unknown fields are ignored; malformed entries give None."""
    if not isinstance(raw, dict):
        return None
    contract = str(raw.get("contract_code") or "").strip().upper()
    side = _SIDES.get(str(raw.get("direction") or "").strip().lower())
    if not contract or side is None:
        return None
    volume = safe_float(raw.get("volume"), None)
    cost_open = safe_float(raw.get("cost_open"), None)
    if volume is None or cost_open is None:
        return None
    return Position(
        contract=contract,
        direction=side,
        volume=float(volume),
        cost_open=float(cost_open),
        position_margin=float(safe_float(raw.get("position_margin"), 0.0) or 0.0),
        available=float(safe_float(raw.get("available"), 0.0) or 0.0),
        profit_unreal=float(safe_float(raw.get("profit_unreal"), 0.0) or 0.0),
        profit_rate=float(safe_float(raw.get("profit_rate"), 0.0) or 0.0),
        lever_rate=float(safe_float(raw.get("lever_rate"), 0.0) or 0.0),
        received_at_ms=int(received_at_ms),
    )


def parse_positions(data: Any, *, received_at_ms: int = 0) -> list[Position]:
    out: list[Position] = []
    for item in data or []:
        pos = parse_position(item, received_at_ms=received_at_ms)
        if pos is None:
            logger.debug("skipping malformed position entry: %r", item)
            continue
        out.append(pos)
    return out


class PositionBook:
    """Open positions keyed by (contract, direction).

    A push lists every side of the contracts it mentions: entries for those contracts are
    replaced, volume-0 entries are dropped, other contracts are left as they are.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._positions: dict[tuple[str, str], Position] = {}

    def apply(self, pushed: list[Position]) -> list[Position]:
        contracts = {p.contract for p in pushed}
        with self._lock:
            for key in [k for k in self._positions if k[0] in contracts]:
                del self._positions[key]
            for p in pushed:
                if p.volume > 0:
                    self._positions[p.key] = p
            return list(self._positions.values())

    def replace_all(self, pushed: list[Position]) -> list[Position]:
        """Full snapshot (first push after login): the map becomes exactly `pushed`."""
        with self._lock:
            self._positions = {p.key: p for p in pushed if p.volume > 0}
            return list(self._positions.values())

    def clear(self) -> None:
        with self._lock:
            self._positions.clear()

    def all(self) -> list[Position]:
        with self._lock:
            return list(self._positions.values())

    def for_symbol(self, contract: str) -> list[Position]:
        with self._lock:
            return [p for k, p in self._positions.items() if k[0] == contract]

    def symbols(self) -> set[str]:
        with self._lock:
            return {k[0] for k in self._positions}

    def __len__(self) -> int:
        with self._lock:
            return len(self._positions)
