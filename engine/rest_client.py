from __future__ import annotations

import json
import os
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

from exchange.htx_auth import Credentials, signed_params

from .utils import Backoff

REST_URL = os.getenv("HTX_REST_URL", "https://api.hbdm.com")

KLINE_PATH = "/linear-swap-ex/market/history/kline"
KLINE_PERIODS = ("1min", "5min", "15min", "30min", "60min", "4hour", "1day", "1week")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(float(str(raw).strip()))
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(str(raw).strip())
    except Exception:
        return float(default)


@dataclass
class RestResult:
    ok: bool
    data: Any | None
    error: str | None = None
    fetched_at_ms: int | None = None


class HtxRestClient:
    """Minimal HTX linear-swap REST client.

    Public market data (klines) and signed private POSTs. Venue errors come back as
    `RestResult(ok=False, error=...)`, never as exceptions.
    """

    def __init__(
        self,
        *,
        base_url: str = REST_URL,
        credentials: Credentials | None = None,
        timeout_s: float | None = None,
    ):
        self._base_url = str(base_url).rstrip("/")
        self._creds = credentials
        self._timeout_s = _env_float("HTX_REST_TIMEOUT_S", 15.0) if timeout_s is None else float(timeout_s)

    @property
    def has_credentials(self) -> bool:
        return self._creds is not None

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        max_retries: int = 1,
    ) -> RestResult:
        url = f"{self._base_url}{path}"
        query = {k: str(v) for k, v in (params or {}).items()}
        if method == "POST":
            if self._creds is None:
                return RestResult(ok=False, data=None, error="no API credentials configured")
            query.update(signed_params(self._creds, "POST", url))
        if query:
            url = f"{url}?{urllib.parse.urlencode(query, quote_via=urllib.parse.quote)}"

        data = json.dumps(body or {}).encode("utf-8") if method == "POST" else None
        req = urllib.request.Request(
            url,
            data=data,
            headers={"Content-Type": "application/json"},
            method=method,
        )
        effective_timeout = max(0.2, min(float(self._timeout_s), 30.0))

        backoff = Backoff(base_s=1.0, max_s=15.0, jitter_pct=0.25)
        last_err: str | None = None
        for attempt in range(1, max(1, int(max_retries)) + 1):
            try:
                with urllib.request.urlopen(req, timeout=effective_timeout) as resp:
                    raw_body = resp.read()
                payload = json.loads(raw_body)
            except urllib.error.HTTPError as e:
                last_err = f"HTTP {getattr(e, 'code', '?')}: {e}"
                code = int(getattr(e, "code", 0) or 0)
                if 500 <= code < 600 and attempt < max_retries:
                    time.sleep(backoff.delay(attempt))
                    continue
                return RestResult(ok=False, data=None, error=last_err, fetched_at_ms=int(time.time() * 1000))
            except Exception as e:
                last_err = str(e)
                if attempt < max_retries:
                    time.sleep(backoff.delay(attempt))
                    continue
                return RestResult(ok=False, data=None, error=last_err, fetched_at_ms=int(time.time() * 1000))

            fetched = int(time.time() * 1000)
            if not isinstance(payload, dict) or payload.get("status") != "ok":
                err = payload.get("err_msg") if isinstance(payload, dict) else None
                code = payload.get("err_code") if isinstance(payload, dict) else None
                return RestResult(ok=False, data=payload, error=f"venue error {code}: {err}", fetched_at_ms=fetched)
            return RestResult(ok=True, data=payload.get("data"), fetched_at_ms=fetched)
        return RestResult(ok=False, data=None, error=last_err, fetched_at_ms=int(time.time() * 1000))

    def kline(self, *, symbol: str, period: str, size: int = 100) -> RestResult:
        """Candles newest -> oldest (the venue returns oldest -> newest)."""
        if period not in KLINE_PERIODS:
            return RestResult(ok=False, data=None, error=f"unsupported kline period {period!r}")
        max_retries = max(1, min(5, _env_int("HTX_REST_KLINE_RETRIES", 2)))
        res = self._request(
            "GET",
            KLINE_PATH,
            params={"contract_code": str(symbol).upper(), "period": period, "size": int(size)},
            max_retries=max_retries,
        )
        if res.ok:
            res.data = list(reversed(res.data or []))
        return res

    def post_private(self, path: str, body: dict[str, Any]) -> RestResult:
        # Orders are not idempotent: one attempt only.
        return self._request("POST", path, body=body, max_retries=1)
