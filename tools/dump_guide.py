#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from content_store import load_channels
from guide_config import resolve_timezone
from guide_server import parse_request_datetime
from print_guide import dump_guide_file


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Write the guide grid JSON for one moment to a file.")
    p.add_argument("--channels-dir", type=Path, required=True, help="Directory of channel YAML files")
    p.add_argument("--out", type=Path, required=True, help="Output JSON path")
    p.add_argument("--datetime", type=str, default="", help="ISO 8601 moment (default: now)")
    p.add_argument("--timezone", type=str, default="", help="IANA zone for naive datetimes (default: system local)")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    print(f"[status] loading channels from {args.channels_dir}")
    catalog = load_channels(args.channels_dir)
    if not len(catalog):
        raise SystemExit("No channel files found")
    print(f"[status] loaded {len(catalog)} channels")

    try:
        at = parse_request_datetime(args.datetime, resolve_timezone(args.timezone))
    except ValueError:
        raise SystemExit(f"Invalid --datetime: {args.datetime}")
    print(f"[status] building guide for {at.isoformat(timespec='minutes')}")

    dump_guide_file(args.out, catalog, at)
    print(f"Wrote {args.out}")


if __name__ == "__main__":
    main()
