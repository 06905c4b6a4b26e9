from __future__ import annotations

import logging
import os

logger = logging.getLogger(__name__)

# Contract face value in base-asset units, keyed by base asset.
_DEFAULT_CONTRACT_SIZES: dict[str, float] = {
    "BTC": 0.001,
    "ETH": 0.01,
    "EOS": 1.0,
    "LTC": 0.1,
    "BCH": 0.01,
    "XRP": 10.0,
    "TRX": 100.0,
}


def base_asset(symbol: str) -> str:
    """`ETH-USDT` -> `ETH`."""
    return str(symbol or "").strip().upper().split("-", 1)[0]


def _parse_overrides(raw: str) -> dict[str, float]:
    """Parse HTX_CONTRACT_SIZES, e.g. `SOL=1,DOGE-USDT=100`."""
    out: dict[str, float] = {}
    for part in str(raw or "").replace("\n", ",").split(","):
        s = part.strip()
        if not s or "=" not in s:
            continue
        sym, val = s.split("=", 1)
        try:
            size = float(val.strip())
        except ValueError:
            logger.warning("ignoring malformed contract size %r", s)
            continue
        if size > 0:
            out[base_asset(sym)] = size
    return out


class SymbolMeta:
    def __init__(self, overrides: dict[str, float] | None = None, *, default_size: float = 1.0):
        self._sizes = dict(_DEFAULT_CONTRACT_SIZES)
        self._sizes.update(_parse_overrides(os.getenv("HTX_CONTRACT_SIZES", "")))
        for sym, size in (overrides or {}).items():
            self._sizes[base_asset(sym)] = float(size)
        self._default = float(default_size)

    def contract_size(self, symbol: str) -> float:
        return self._sizes.get(base_asset(symbol), self._default)
