"""HTX API request signing (signature version 2, HMAC-SHA256).

The same scheme signs the WebSocket login on the notification endpoint and every private
REST call: the payload is `METHOD\\nhost\\npath\\nquery` where `query` is the sorted,
percent-encoded parameter string, and the signature is the base64 HMAC of it.
"""

from __future__ import annotations

import base64
import datetime
import hashlib
import hmac
import os
from dataclasses import dataclass
from urllib.parse import quote, urlencode, urlparse

SIGNATURE_METHOD = "HmacSHA256"
SIGNATURE_VERSION = "2"


class CredentialsError(ValueError):
    """API credentials are missing or unusable."""


@dataclass(frozen=True)
class Credentials:
    access_key: str
    secret_key: str

    def __repr__(self) -> str:
        return f"Credentials(access_key={self.access_key[:4]}…)"

    @classmethod
    def from_env(cls) -> "Credentials":
        access = str(os.getenv("HTX_ACCESS_KEY") or "").strip()
        secret = str(os.getenv("HTX_SECRET_KEY") or "").strip()
        if not access or not secret:
            raise CredentialsError("HTX_ACCESS_KEY and HTX_SECRET_KEY must both be set")
        return cls(access_key=access, secret_key=secret)


def utc_timestamp(now: datetime.datetime | None = None) -> str:
    """`YYYY-MM-DDTHH:MM:SS` in UTC, second precision."""
    ts = now or datetime.datetime.now(datetime.timezone.utc)
    return ts.astimezone(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def canonical_query(params: dict[str, str]) -> str:
    return urlencode(sorted((str(k), str(v)) for k, v in params.items()), quote_via=quote)


def sign(secret_key: str, method: str, host: str, path: str, params: dict[str, str]) -> str:
    payload = "\n".join([method.upper(), host.lower(), path, canonical_query(params)])
    digest = hmac.new(secret_key.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def signed_params(
    creds: Credentials,
    method: str,
    url: str,
    *,
    timestamp: str | None = None,
) -> dict[str, str]:
    """Signature parameters for `url`, including `Signature`."""
    u = urlparse(url)
    params = {
        "AccessKeyId": creds.access_key,
        "SignatureMethod": SIGNATURE_METHOD,
        "SignatureVersion": SIGNATURE_VERSION,
        "Timestamp": timestamp or utc_timestamp(),
    }
    params["Signature"] = sign(creds.secret_key, method, u.netloc, u.path or "/", params)
    return params


def ws_auth_message(creds: Credentials, url: str, *, timestamp: str | None = None) -> dict[str, str]:
    """Login frame for the private notification WebSocket."""
    msg = {"op": "auth", "type": "api"}
    msg.update(signed_params(creds, "GET", url, timestamp=timestamp))
    return msg
