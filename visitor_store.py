"""
Live visitor counts, cached in a small blob store.

Reads go cache-aside: a stored point younger than the TTL is served as-is,
otherwise the analytics API is asked for the current count and the point is
appended to a short rolling history.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

VISITORS_KEY = "visitor_counts"
STORE_NAME = "visitors-cache"
CACHE_TTL = 15
MAX_HISTORY_POINTS = 8
SITE_ID = "EPXKTQED"
FATHOM_CURRENT_VISITORS_URL = "https://api.usefathom.com/v1/current_visitors"

_KEY_SAFE_RE = re.compile(r"[^A-Za-z0-9._-]")


class FathomError(RuntimeError):
    def __init__(self, message: str, status: Optional[int] = None, details: object = None) -> None:
        super().__init__(message)
        self.status = status
        self.details = details


def now_ms() -> int:
    return int(time.time() * 1000)


class BlobStore:
    """Key-value blobs on disk, one file per key plus a metadata sidecar."""

    def __init__(self, root: Path, name: str = STORE_NAME) -> None:
        self.path = Path(root) / name

    def _file(self, key: str, suffix: str = ".json") -> Path:
        return self.path / (_KEY_SAFE_RE.sub("_", key) + suffix)

    def get(self, key: str, type: str = "text") -> object:
        p = self._file(key)
        if not p.exists() or not p.is_file():
            return None
        raw = p.read_text(encoding="utf-8")
        if type == "json":
            return json.loads(raw)
        return raw

    def get_metadata(self, key: str) -> Dict[str, object]:
        p = self._file(key, ".meta.json")
        if not p.exists() or not p.is_file():
            return {}
        data = json.loads(p.read_text(encoding="utf-8"))
        return data if isinstance(data, dict) else {}

    def _write_atomic(self, target: Path, text: str) -> None:
        # Readers see either the old file or the new one, never a partial write.
        fd, tmp = tempfile.mkstemp(dir=self.path, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(text)
            os.replace(tmp, target)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def set(self, key: str, value: str, metadata: Optional[Dict[str, object]] = None) -> None:
        self.path.mkdir(parents=True, exist_ok=True)
        self._write_atomic(self._file(key), value)
        if metadata is not None:
            self._write_atomic(self._file(key, ".meta.json"), json.dumps(metadata))

    def set_json(self, key: str, value: object, metadata: Optional[Dict[str, object]] = None) -> None:
        self.set(key, json.dumps(value), metadata)

    def delete(self, key: str) -> None:
        for p in (self._file(key), self._file(key, ".meta.json")):
            p.unlink(missing_ok=True)


@dataclass(frozen=True)
class VisitorData:
    timestamp: int
    count: int

    @classmethod
    def from_raw(cls, raw: object) -> "VisitorData":
        if not isinstance(raw, dict):
            raise ValueError(f"visitor point must be an object, got {raw!r}")
        return cls(timestamp=int(raw["timestamp"]), count=int(raw["count"]))

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp, "count": self.count}


def default_point(index: int, now: int, ttl: int = CACHE_TTL, points: int = MAX_HISTORY_POINTS) -> VisitorData:
    return VisitorData(timestamp=now - ttl * 1000 * (points - index), count=0)


def default_visitor_data(now: Optional[int] = None, ttl: int = CACHE_TTL, points: int = MAX_HISTORY_POINTS) -> List[VisitorData]:
    now = now_ms() if now is None else now
    return [default_point(i, now, ttl, points) for i in range(points)]


def visitor_response(data: List[VisitorData], total: int) -> dict:
    return {"total": total, "history": [d.count for d in data]}


def empty_response(points: int = MAX_HISTORY_POINTS) -> dict:
    return {"total": 0, "history": [0] * points}


def _http_json(url: str, headers: Optional[dict] = None, timeout: float = 15) -> dict:
    req_headers = {"Accept": "application/json"}
    if headers:
        req_headers.update(headers)
    req = urllib.request.Request(url, method="GET", headers=req_headers)
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        raw = resp.read().decode("utf-8", "ignore")
    return json.loads(raw or "{}")


def fetch_current_visitors(api_key: str, site_id: str = SITE_ID) -> dict:
    """Raw current_visitors payload from Fathom. Raises FathomError on any upstream failure."""
    if not api_key:
        raise FathomError("Fathom API key is not configured")

    url = f"{FATHOM_CURRENT_VISITORS_URL}?{urllib.parse.urlencode({'site_id': site_id})}"
    try:
        data = _http_json(url, headers={"Authorization": f"Bearer {api_key}"})
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", "ignore") if exc.fp else ""
        try:
            details: object = json.loads(body) if body else None
        except ValueError:
            details = body
        raise FathomError(f"Failed to fetch data from Fathom API: {exc.code}", status=exc.code, details=details) from exc
    except (urllib.error.URLError, OSError, ValueError) as exc:
        raise FathomError(f"Failed to fetch data from Fathom API: {exc}") from exc

    if not isinstance(data, dict):
        raise FathomError("Invalid response from Fathom API")
    return data


def fetch_visitor_total(api_key: str, site_id: str = SITE_ID) -> int:
    data = fetch_current_visitors(api_key, site_id)
    if data.get("total") is None:
        raise FathomError("Invalid response from Fathom API")
    try:
        return int(data["total"])
    except (TypeError, ValueError) as exc:
        raise FathomError("Invalid response from Fathom API") from exc


def get_visitor_data(store: BlobStore, now: Optional[int] = None, ttl: int = CACHE_TTL, points: int = MAX_HISTORY_POINTS) -> List[VisitorData]:
    now = now_ms() if now is None else now
    try:
        stored = store.get(VISITORS_KEY, type="json")
        if stored is None:
            return default_visitor_data(now, ttl, points)
        if isinstance(stored, str):
            stored = json.loads(stored)
        if not isinstance(stored, list):
            raise ValueError(f"expected a list of points, got {type(stored).__name__}")
        return [
            default_point(i, now, ttl, points) if item is None else VisitorData.from_raw(item)
            for i, item in enumerate(stored)
        ]
    except (ValueError, KeyError, TypeError):
        logger.exception("Error parsing visitor data")
        return default_visitor_data(now, ttl, points)


def get_recent_data(data: List[VisitorData], now: Optional[int] = None, ttl: int = CACHE_TTL) -> Optional[dict]:
    now = now_ms() if now is None else now
    recent = next((d for d in data if now - d.timestamp < ttl * 1000), None)
    if recent is None:
        return None
    return visitor_response(data, recent.count)


def update_visitor_data(
    store: BlobStore,
    data: List[VisitorData],
    count: int,
    now: Optional[int] = None,
    ttl: int = CACHE_TTL,
    points: int = MAX_HISTORY_POINTS,
) -> List[VisitorData]:
    now = now_ms() if now is None else now
    updated = (list(data) + [VisitorData(timestamp=now, count=count)])[-points:]
    store.set_json(VISITORS_KEY, [d.to_dict() for d in updated], metadata={"timestamp": now, "ttl": ttl})
    return updated


class VisitorService:
    def __init__(
        self,
        store: BlobStore,
        api_key: str = "",
        site_id: str = SITE_ID,
        ttl: int = CACHE_TTL,
        points: int = MAX_HISTORY_POINTS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.api_key = api_key
        self.site_id = site_id
        self.ttl = ttl
        self.points = points
        self.clock = clock

    def current(self) -> dict:
        now = self.clock()
        data = get_visitor_data(self.store, now, self.ttl, self.points)

        recent = get_recent_data(data, now, self.ttl)
        if recent is not None:
            return recent

        try:
            total = fetch_visitor_total(self.api_key, self.site_id)
        except FathomError as exc:
            # Usually the upstream rate limit; serve what we already have.
            logger.warning("Visitor count refresh failed, serving cached history: %s", exc)
            return visitor_response(data, data[-1].count if data else 0)

        updated = update_visitor_data(self.store, data, total, now, self.ttl, self.points)
        return visitor_response(updated, total)


def format_sse(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def visitor_event_stream(
    service: VisitorService,
    interval: float = CACHE_TTL,
    sleep: Callable[[float], None] = time.sleep,
    max_events: int = 0,
) -> Iterator[str]:
    """Server-sent events: one snapshot now, then one every interval seconds."""
    sent = 0
    while True:
        try:
            payload = service.current()
        except Exception:
            logger.exception("Error in visitor event stream")
            payload = empty_response(service.points)
        yield format_sse(payload)
        sent += 1
        if max_events and sent >= max_events:
            return
        sleep(interval)
