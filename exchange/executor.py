import logging
import os
import time
from typing import Any

from engine.rest_client import HtxRestClient, RestResult

logger = logging.getLogger(__name__)

SWAP_ORDER_PATH = "/linear-swap-api/v1/swap_order"
SWAP_TPSL_ORDER_PATH = "/linear-swap-api/v1/swap_tpsl_order"

# Best-five-levels counter price, the venue's "market" order for linear swaps.
ORDER_PRICE_TYPE = "optimal_5"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def open_side(direction: str) -> str:
    """Venue order side that opens a position in `direction`."""
    return "buy" if direction == "long" else "sell"


def close_side(direction: str) -> str:
    return "sell" if direction == "long" else "buy"


def _order_id(data: Any) -> str | None:
    if isinstance(data, dict):
        oid = data.get("order_id_str") or data.get("order_id")
        return None if oid is None else str(oid)
    return None


class HtxLiveExecutor:
    """
    Signed order placement for linear swaps.

    - Market open/close go through `swap_order` with `optimal_5` pricing.
    - Protective orders go through `swap_tpsl_order` right after a fill.
    - With `dry_run` nothing is sent: the request is logged and a synthetic order id returned.
    """

    def __init__(self, rest: HtxRestClient, *, dry_run: bool | None = None):
        self._rest = rest
        self.dry_run = _env_bool("QUANT_DRY_RUN", False) if dry_run is None else bool(dry_run)
        self.last_order_error: dict[str, Any] | None = None
        self._dry_seq = 0

    def _dry_result(self, op: str, body: dict[str, Any]) -> dict[str, Any]:
        self._dry_seq += 1
        oid = f"dry-{int(time.time() * 1000)}-{self._dry_seq}"
        logger.info("🟡 DRY RUN %s %s -> %s", op, body, oid)
        return {"order_id": oid, "order_id_str": oid, "dry_run": True}

    def _submit(self, op: str, path: str, body: dict[str, Any]) -> dict[str, Any] | None:
        if self.dry_run:
            self.last_order_error = None
            return self._dry_result(op, body)
        res: RestResult = self._rest.post_private(path, body)
        if not res.ok:
            self.last_order_error = {"kind": "rejected", "op": op, "request": body, "error": res.error}
            logger.error("❌ %s rejected (%s): %s", op, body.get("contract_code"), res.error)
            return None
        self.last_order_error = None
        data = res.data if isinstance(res.data, dict) else {"raw": res.data}
        logger.info("✅ %s %s ok: order_id=%s", op, body.get("contract_code"), _order_id(data))
        return data

    def market_open(self, symbol: str, *, direction: str, volume: int, lever_rate: int) -> dict[str, Any] | None:
        if int(volume) < 1:
            return None
        body = {
            "contract_code": str(symbol).upper(),
            "volume": int(volume),
            "direction": open_side(direction),
            "offset": "open",
            "lever_rate": int(lever_rate),
            "order_price_type": ORDER_PRICE_TYPE,
        }
        return self._submit("market_open", SWAP_ORDER_PATH, body)

    def market_close(self, symbol: str, *, direction: str, volume: int, lever_rate: int) -> dict[str, Any] | None:
        if int(volume) < 1:
            return None
        body = {
            "contract_code": str(symbol).upper(),
            "volume": int(volume),
            "direction": close_side(direction),
            "offset": "close",
            "lever_rate": int(lever_rate),
            "order_price_type": ORDER_PRICE_TYPE,
        }
        return self._submit("market_close", SWAP_ORDER_PATH, body)

    def place_tpsl(
        self,
        symbol: str,
        *,
        direction: str,
        volume: int,
        stop_price: float,
        take_price: float,
    ) -> dict[str, Any] | None:
        """Paired take-profit / stop-loss for an open position in `direction`."""
        body = {
            "contract_code": str(symbol).upper(),
            "direction": close_side(direction),
            "volume": int(volume),
            "tp_trigger_price": round(float(take_price), 6),
            "tp_order_price_type": ORDER_PRICE_TYPE,
            "sl_trigger_price": round(float(stop_price), 6),
            "sl_order_price_type": ORDER_PRICE_TYPE,
        }
        return self._submit("tpsl", SWAP_TPSL_ORDER_PATH, body)

