#!/usr/bin/env python3
"""Operator CLI for the HTX monitor.

Reads and writes the shared config document and sends commands to the running quant
trader through its short-lived command key.

Examples:
  python -m tools.htx_ctl config get
  python -m tools.htx_ctl config set my_config.yaml
  python -m tools.htx_ctl quant stop --symbol BTC-USDT
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

import yaml

from engine.config_store import CONFIG_KEY, ConfigError, ConfigStore, load_default_document, validate_config
from engine.kv_store import KVStore
from engine.utils import now_ms
from live.trader import COMMAND_TTL_S, command_key, history_key

QUANT_ACTIONS = ("reset", "start", "stop", "status")


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, sort_keys=True))


def load_document_file(path: Path) -> Any:
    """JSON or YAML file -> document (JSON is a subset of YAML)."""
    with Path(path).expanduser().open("r", encoding="utf-8") as f:
        try:
            return yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"{path}: not valid YAML/JSON: {e}") from e


def cmd_config_get(kv: KVStore) -> int:
    doc = kv.get(CONFIG_KEY)
    if doc is None:
        print("[htx_ctl] config key not set; showing defaults", file=sys.stderr)
        doc = load_default_document()
    _print_json(doc)
    return 0


def cmd_config_set(kv: KVStore, path: Path) -> int:
    try:
        doc = load_document_file(path)
        validate_config(doc)
    except (ConfigError, OSError) as e:
        print(f"[htx_ctl] rejected: {e}", file=sys.stderr)
        return 2
    store = ConfigStore(kv)
    if not store.save(doc):
        print(f"[htx_ctl] save failed: {kv.last_error}", file=sys.stderr)
        return 1
    print(f"[htx_ctl] config saved to {kv.key(CONFIG_KEY)}", file=sys.stderr)
    return 0


def cmd_config_seed(kv: KVStore, *, force: bool) -> int:
    if kv.get_raw(CONFIG_KEY) is not None and not force:
        print("[htx_ctl] config already present; use --force to overwrite", file=sys.stderr)
        return 0
    doc = load_default_document()
    if not ConfigStore(kv, defaults=doc).save(doc):
        print(f"[htx_ctl] seed failed: {kv.last_error}", file=sys.stderr)
        return 1
    print("[htx_ctl] default config written", file=sys.stderr)
    return 0


def cmd_quant(kv: KVStore, action: str, *, symbol: str | None) -> int:
    store = ConfigStore(kv)
    q = store.load().quant
    symbol = str(symbol or q.symbol).strip().upper()

    if action == "status":
        status = kv.get("quant")
        if not isinstance(status, dict) or status.get("symbol") != symbol:
            print(f"[htx_ctl] no live status for {symbol} (is the daemon running?)", file=sys.stderr)
            status = None
        hist = kv.get(history_key(q.mode, symbol))
        _print_json({"status": status, "closedOrders": len(hist) if isinstance(hist, list) else 0})
        return 0

    if action == "reset" and not q.test_mode:
        print("[htx_ctl] reset refused: quant trader is in live mode", file=sys.stderr)
        return 2

    cmd = {"action": action, "ts": now_ms()}
    if not kv.set(command_key(symbol), cmd, ttl_s=COMMAND_TTL_S):
        print(f"[htx_ctl] command not written: {kv.last_error}", file=sys.stderr)
        return 1
    print(f"[htx_ctl] {action} sent to {symbol}", file=sys.stderr)
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="htx_ctl", description="HTX monitor operator tool.")
    sub = ap.add_subparsers(dest="area", required=True)

    cfg = sub.add_parser("config", help="Read or write the shared config document.")
    cfg_sub = cfg.add_subparsers(dest="op", required=True)
    cfg_sub.add_parser("get", help="Print the stored document.")
    p_set = cfg_sub.add_parser("set", help="Validate and store a JSON/YAML document.")
    p_set.add_argument("file", type=Path)
    p_seed = cfg_sub.add_parser("seed", help="Write the default document.")
    p_seed.add_argument("--force", action="store_true", help="Overwrite an existing document.")

    quant = sub.add_parser("quant", help="Send a command to the quant trader.")
    quant.add_argument("action", choices=QUANT_ACTIONS)
    quant.add_argument("--symbol", default=None, help="Defaults to quantConfig.symbol.")
    return ap


def main(argv: list[str] | None = None, *, kv: KVStore | None = None) -> int:
    args = build_parser().parse_args(argv)
    kv = kv or KVStore()
    if not kv.ping():
        print(f"[htx_ctl] KV store unreachable: {kv.last_error}", file=sys.stderr)
        return 1

    if args.area == "config":
        if args.op == "get":
            return cmd_config_get(kv)
        if args.op == "set":
            return cmd_config_set(kv, args.file)
        return cmd_config_seed(kv, force=args.force)
    return cmd_quant(kv, args.action, symbol=args.symbol)


if __name__ == "__main__":
    raise SystemExit(main())
