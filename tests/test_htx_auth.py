from __future__ import annotations

import base64
import datetime
import hashlib
import hmac

import pytest

from exchange.htx_auth import (
    Credentials,
    CredentialsError,
    canonical_query,
    signed_params,
    utc_timestamp,
    ws_auth_message,
)

CREDS = Credentials(access_key="access-key-123", secret_key="secret-key-456")


def test_timestamp_is_utc_second_precision() -> None:
    now = datetime.datetime(2024, 5, 6, 7, 8, 9, 987654, tzinfo=datetime.timezone.utc)
    assert utc_timestamp(now) == "2024-05-06T07:08:09"


def test_canonical_query_sorts_and_percent_encodes() -> None:
    q = canonical_query({"Timestamp": "2024-05-06T07:08:09", "AccessKeyId": "k", "SignatureVersion": "2"})
    assert q == "AccessKeyId=k&SignatureVersion=2&Timestamp=2024-05-06T07%3A08%3A09"


def test_signed_params_signature_payload() -> None:
    ts = "2024-05-06T07:08:09"
    params = signed_params(CREDS, "POST", "https://api.hbdm.com/linear-swap-api/v1/swap_order", timestamp=ts)

    payload = (
        "POST\napi.hbdm.com\n/linear-swap-api/v1/swap_order\n"
        "AccessKeyId=access-key-123&SignatureMethod=HmacSHA256&SignatureVersion=2&Timestamp=2024-05-06T07%3A08%3A09"
    )
    expected = base64.b64encode(hmac.new(b"secret-key-456", payload.encode(), hashlib.sha256).digest()).decode()
    assert params["Signature"] == expected
    assert params["AccessKeyId"] == "access-key-123"


def test_ws_auth_message_signs_get_on_ws_path() -> None:
    ts = "2024-05-06T07:08:09"
    msg = ws_auth_message(CREDS, "wss://api.hbdm.com/linear-swap-notification", timestamp=ts)
    assert msg["op"] == "auth"
    assert msg["type"] == "api"
    assert msg["Signature"] == signed_params(CREDS, "GET", "wss://api.hbdm.com/linear-swap-notification", timestamp=ts)["Signature"]


def test_credentials_from_env(monkeypatch) -> None:
    monkeypatch.setenv("HTX_ACCESS_KEY", "a")
    monkeypatch.setenv("HTX_SECRET_KEY", "s")
    assert Credentials.from_env() == Credentials("a", "s")

    monkeypatch.delenv("HTX_SECRET_KEY")
    with pytest.raises(CredentialsError):
        Credentials.from_env()


def test_credentials_repr_hides_secret() -> None:
    assert "secret" not in repr(CREDS)
