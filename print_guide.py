#!/usr/bin/env python3
from __future__ import annotations

import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import List

from content_store import ChannelCatalog, load_channels
from guide_core import build_guide, clean_text, make_pdf
from guide_config import parse_effective_args, resolve_timezone


def _status(enabled: bool, message: str) -> None:
    if enabled:
        print(f"[status] {clean_text(message)}")


def compute_window(args) -> tuple[datetime, datetime]:
    tz = resolve_timezone(args.timezone)
    day = args.date or datetime.now(tz).date()
    start_dt = datetime.combine(day, args.start, tzinfo=tz)
    return start_dt, start_dt + timedelta(hours=args.hours)


def dump_guide_file(path: Path, catalog: ChannelCatalog, at: datetime) -> None:
    payload = {
        "version": 1,
        "created_at": datetime.now().isoformat(timespec="seconds"),
        "guide": build_guide(catalog, at),
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def main(argv: List[str] | None = None) -> None:
    args = parse_effective_args(argv)

    _status(args.status_messages, f"Loading channels from {args.channels_dir}")
    catalog = load_channels(args.channels_dir)
    if not len(catalog):
        raise RuntimeError(f"No channel files found in {args.channels_dir}")
    _status(args.status_messages, f"Loaded {len(catalog)} channels")

    start_dt, end_dt = compute_window(args)
    _status(
        args.status_messages,
        f"Preparing render window {start_dt.strftime('%Y-%m-%d %H:%M')} to {end_dt.strftime('%Y-%m-%d %H:%M')}",
    )

    title = clean_text(args.title) or clean_text(
        f"CHANNEL GUIDE - {start_dt.strftime('%a %b %d, %Y')} ({start_dt.strftime('%H:%M')}-{end_dt.strftime('%H:%M')})"
    )

    make_pdf(
        out_path=args.out,
        grid_title=title,
        channels=catalog.sorted_by_slug(),
        start_dt=start_dt,
        end_dt=end_dt,
        step_minutes=args.step,
    )

    _status(args.status_messages, f"Finished writing {args.out}")
    print(f"Wrote {args.out}")


if __name__ == "__main__":
    main()
