from __future__ import annotations

import argparse
import json
import os
import tomllib
from datetime import datetime, tzinfo
from pathlib import Path
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

from guide_core import parse_date, parse_hhmm

PROJECT_DIR = Path(__file__).resolve().parent

DEFAULT_REDIRECTS: Dict[str, str] = {
    "/ch/00": "/",
    "/about": "/credits",
    "/ch/999": "/credits",
}

DEFAULTS: Dict[str, Any] = {
    "channels_dir": PROJECT_DIR / "channels",
    "blob_dir": PROJECT_DIR / ".blobs",
    "host": "127.0.0.1",
    "port": 4321,
    "timezone": "",
    "redirects": dict(DEFAULT_REDIRECTS),
    "fathom_api_key": "",
    "fathom_site_id": "EPXKTQED",
    "visitors_cache_ttl": 15,
    "visitors_history_points": 8,
    "sse_interval": 15.0,
    "date": None,
    "start": parse_hhmm("18:00"),
    "hours": 3.0,
    "step": 30,
    "title": "",
    "out": Path("tv_guide.pdf"),
    "status_messages": True,
    "log_level": "INFO",
}

ENV_KEYS = {
    "FATHOM_API_KEY": "fathom_api_key",
    "FATHOM_SITE_ID": "fathom_site_id",
}


def _parse_env_file(path: Path) -> Dict[str, str]:
    if not path.exists() or not path.is_file():
        return {}
    out: Dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        k, v = line.split("=", 1)
        key = k.strip()
        val = v.strip().strip("\"").strip("'")
        if key:
            out[key] = val
    return out


def load_env_values() -> Dict[str, str]:
    # Support running from project root or other cwd.
    candidate_paths = [
        PROJECT_DIR / ".env",
        Path.cwd() / ".env",
    ]
    merged: Dict[str, str] = {}
    for p in candidate_paths:
        merged.update(_parse_env_file(p))

    # Process env vars override file values.
    merged.update({k: v for k, v in os.environ.items() if k in ENV_KEYS})
    return merged


def _normalize_config_keys(cfg: Dict[str, Any]) -> Dict[str, Any]:
    return {k.replace("-", "_"): v for k, v in cfg.items()}


def load_config_file(path: Optional[Path]) -> Dict[str, Any]:
    if not path:
        return {}
    raw = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        data = json.loads(raw)
    elif path.suffix.lower() in (".toml", ".tml"):
        data = tomllib.loads(raw)
    else:
        raise ValueError(f"Unsupported config format: {path}. Use .json or .toml")
    if not isinstance(data, dict):
        raise ValueError("Config root must be a JSON/TOML object")
    return _normalize_config_keys(data)


def _coerce_config_values(cfg: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(cfg)

    for k in ("channels_dir", "blob_dir", "out"):
        if k in out and out[k] is not None and not isinstance(out[k], Path):
            out[k] = Path(str(out[k]))

    if "date" in out and isinstance(out["date"], str):
        out["date"] = parse_date(out["date"])
    if "start" in out and isinstance(out["start"], str):
        out["start"] = parse_hhmm(out["start"])

    for k in ("port", "step", "visitors_cache_ttl", "visitors_history_points"):
        if k in out and out[k] is not None and not isinstance(out[k], int):
            out[k] = int(out[k])

    for k in ("hours", "sse_interval"):
        if k in out and out[k] is not None and not isinstance(out[k], float):
            out[k] = float(out[k])

    if "status_messages" in out and not isinstance(out["status_messages"], bool):
        if isinstance(out["status_messages"], str):
            out["status_messages"] = out["status_messages"].strip().lower() in ("1", "true", "yes", "on")
        else:
            out["status_messages"] = bool(out["status_messages"])

    if "redirects" in out:
        if not isinstance(out["redirects"], dict):
            raise ValueError("Config 'redirects' must be a table of source = target paths")
        out["redirects"] = {str(k): str(v) for k, v in out["redirects"].items()}

    return out


def _build_cli_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(argument_default=argparse.SUPPRESS)
    p.add_argument("--config", type=Path, help="Path to JSON/TOML config file.")
    p.add_argument("--channels-dir", type=Path, help="Directory of channel YAML files.")
    p.add_argument("--blob-dir", type=Path, help="Directory for the visitor-count blob store.")
    p.add_argument("--host", type=str, help="Server bind address.")
    p.add_argument("--port", type=int, help="Server port.")
    p.add_argument("--timezone", type=str, help='IANA zone used for schedule lookups, e.g. "America/New_York" (empty = system local).')
    p.add_argument("--fathom-api-key", type=str, help="Fathom Analytics API key for live visitor counts.")
    p.add_argument("--fathom-site-id", type=str, help="Fathom site id.")
    p.add_argument("--visitors-cache-ttl", type=int, help="Seconds a visitor count stays fresh.")
    p.add_argument("--visitors-history-points", type=int, help="How many visitor counts to keep in the history.")
    p.add_argument("--sse-interval", type=float, help="Seconds between visitor count pushes on the event stream.")
    p.add_argument("--date", type=parse_date, help="Printed guide date: YYYY-MM-DD (default: today).")
    p.add_argument("--start", type=parse_hhmm, help="Printed guide start time HH:MM")
    p.add_argument("--hours", type=float, help="How many hours the printed guide covers.")
    p.add_argument("--step", type=int, help="Minutes per header tick")
    p.add_argument("--title", type=str, help="Optional printed guide title override.")
    p.add_argument("--out", type=Path, help="Output path (PDF for print_guide, JSON for dump_guide).")
    p.add_argument("--status-messages", dest="status_messages", action="store_true", help="Print [status] progress lines.")
    p.add_argument("--no-status-messages", dest="status_messages", action="store_false", help="Silence [status] progress lines.")
    p.add_argument("--log-level", type=str, help="Logging level for the server (DEBUG, INFO, WARNING...).")
    return p


def parse_effective_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    bootstrap = argparse.ArgumentParser(add_help=False)
    bootstrap.add_argument("--config", type=Path)
    bootstrap_ns, _ = bootstrap.parse_known_args(argv)

    cfg = _coerce_config_values(load_config_file(bootstrap_ns.config))

    parser = _build_cli_parser()
    cli_ns = parser.parse_args(argv)
    cli_values = vars(cli_ns)
    cli_values.pop("config", None)
    env_values = load_env_values()

    merged: Dict[str, Any] = dict(DEFAULTS)
    merged["redirects"] = dict(DEFAULT_REDIRECTS)
    for env_key, cfg_key in ENV_KEYS.items():
        if env_values.get(env_key):
            merged[cfg_key] = env_values[env_key]
    merged.update(cfg)
    merged.update(cli_values)

    if merged.get("channels_dir") is None:
        raise SystemExit("Missing required option (CLI or config): channels_dir")

    return argparse.Namespace(**merged)


def resolve_timezone(name: str) -> tzinfo:
    """Zone for schedule lookups; empty means the machine's local zone."""
    if name:
        return ZoneInfo(name)
    return datetime.now().astimezone().tzinfo
