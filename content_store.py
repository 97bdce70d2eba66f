from __future__ import annotations

import re
import urllib.parse
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml

DAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

# Slots start on the hour or half hour.
SLOT_TIME_RE = re.compile(r"^([01]\d|2[0-3]):(30|00)$")


class ContentError(ValueError):
    pass


def _clean_text(value: object) -> str:
    return str(value or "").strip()


@dataclass(frozen=True)
class Program:
    title: str
    url: str
    author: Union[str, List[str], None] = None

    def authors(self) -> List[str]:
        if not self.author:
            return []
        if isinstance(self.author, list):
            return [a for a in self.author if a]
        return [self.author]

    def to_dict(self) -> dict:
        out: dict = {"title": self.title}
        if self.author is not None:
            out["author"] = self.author
        out["url"] = self.url
        return out


@dataclass(frozen=True)
class TimeSlot:
    time: str
    program: Optional[Program]


DaySchedule = Optional[List[TimeSlot]]
Schedule = Dict[str, DaySchedule]


@dataclass(frozen=True)
class Channel:
    id: str
    slug: str
    name: str
    schedule: Schedule


def _is_url(value: str) -> bool:
    parsed = urllib.parse.urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _parse_program(raw: object, where: str) -> Program:
    if not isinstance(raw, dict):
        raise ContentError(f"{where}: program must be a mapping or null")

    title = raw.get("title")
    if not isinstance(title, str) or not title.strip():
        raise ContentError(f"{where}.title: required string")

    url = raw.get("url")
    if not isinstance(url, str) or not _is_url(url):
        raise ContentError(f"{where}.url: must be an absolute http(s) URL")

    author = raw.get("author")
    if author is not None:
        if isinstance(author, list):
            if not all(isinstance(a, str) for a in author):
                raise ContentError(f"{where}.author: list entries must be strings")
        elif not isinstance(author, str):
            raise ContentError(f"{where}.author: must be a string or list of strings")

    return Program(title=title, url=url, author=author)


def _parse_slot(raw: object, where: str) -> TimeSlot:
    if not isinstance(raw, dict) or len(raw) != 1:
        raise ContentError(f"{where}: slot must map exactly one HH:MM key to a program")
    key, value = next(iter(raw.items()))
    # YAML 1.1 reads unquoted 10:30 as base-60 (630).
    if isinstance(key, int) and not isinstance(key, bool) and 0 <= key < 24 * 60:
        key = f"{key // 60:02d}:{key % 60:02d}"
    if not isinstance(key, str) or not SLOT_TIME_RE.match(key):
        raise ContentError(f"{where}: invalid slot time {key!r} (use \"HH:00\" or \"HH:30\")")
    program = None if value is None else _parse_program(value, f"{where}[{key}]")
    return TimeSlot(time=key, program=program)


def _parse_schedule(raw: object, where: str) -> Schedule:
    if not isinstance(raw, dict):
        raise ContentError(f"{where}: schedule must be a mapping of weekdays")
    schedule: Schedule = {}
    for day in DAYS:
        if day not in raw:
            raise ContentError(f"{where}.{day}: missing (use null for an empty day)")
        slots = raw[day]
        if slots is None:
            schedule[day] = None
            continue
        if not isinstance(slots, list):
            raise ContentError(f"{where}.{day}: must be a list of slots or null")
        schedule[day] = [_parse_slot(s, f"{where}.{day}[{i}]") for i, s in enumerate(slots)]
    return schedule


def parse_channel(data: object, channel_id: str, where: str = "") -> Channel:
    where = where or channel_id
    if not isinstance(data, dict):
        raise ContentError(f"{where}: channel root must be a mapping")
    slug = data.get("slug")
    name = data.get("name")
    if isinstance(slug, int):
        slug = f"{slug:02d}"
    if not isinstance(slug, str) or not slug:
        raise ContentError(f"{where}.slug: required string")
    if not isinstance(name, str) or not name:
        raise ContentError(f"{where}.name: required string")
    schedule = _parse_schedule(data.get("schedule"), f"{where}.schedule")
    return Channel(id=channel_id, slug=slug, name=name, schedule=schedule)


def load_channel_file(path: Path) -> Channel:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ContentError(f"{path}: invalid YAML: {exc}") from exc
    return parse_channel(data, path.stem, where=str(path))


class ChannelCatalog:
    def __init__(self, channels: List[Channel]) -> None:
        self._channels = list(channels)
        self._by_id = {c.id: c for c in self._channels}
        self._by_slug = {c.slug: c for c in self._channels}

    def __len__(self) -> int:
        return len(self._channels)

    def __iter__(self):
        return iter(self._channels)

    def get(self, key: str) -> Optional[Channel]:
        key = _clean_text(key)
        if not key:
            return None
        return self._by_id.get(key) or self._by_slug.get(key)

    def sorted_by_slug(self) -> List[Channel]:
        return sorted(self._channels, key=lambda c: c.slug)

    def sorted_by_id(self) -> List[Channel]:
        return sorted(self._channels, key=lambda c: c.id)


def load_channels(channels_dir: Optional[Path]) -> ChannelCatalog:
    if not channels_dir or not channels_dir.exists() or not channels_dir.is_dir():
        return ChannelCatalog([])
    paths = sorted(list(channels_dir.rglob("*.yml")) + list(channels_dir.rglob("*.yaml")))
    return ChannelCatalog([load_channel_file(p) for p in paths])
