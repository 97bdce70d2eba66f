from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

pytest.importorskip("flask")
server = pytest.importorskip("guide_server")
cfg = pytest.importorskip("guide_config")
vs = pytest.importorskip("visitor_store")

FIXTURE_CHANNELS = Path(__file__).parent / "fixtures" / "channels"


@pytest.fixture
def app(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("FATHOM_API_KEY", raising=False)
    monkeypatch.chdir(tmp_path)
    args = cfg.parse_effective_args(
        [
            "--channels-dir",
            str(FIXTURE_CHANNELS),
            "--blob-dir",
            str(tmp_path / "blobs"),
            "--timezone",
            "UTC",
            "--fathom-api-key",
            "secret",
        ]
    )
    app = server.create_app(args)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def test_guide_json_for_requested_moment(client):
    resp = client.get("/api/guide.json?datetime=2026-03-02T09:40:00Z")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["currentTime"] == "2026-03-02T09:40:00.000Z"
    assert body["timeBlocks"][0] == "2026-03-02T09:30:00.000Z"
    assert body["channels"][0]["blocks"][0]["title"] == "Morning Maze"


def test_guide_json_converts_offsets_to_guide_zone(client):
    body = client.get("/api/guide.json?datetime=2026-03-02T10:40:00%2B01:00").get_json()
    assert body["currentTime"] == "2026-03-02T09:40:00.000Z"


def test_guide_json_rejects_bad_datetime(client):
    resp = client.get("/api/guide.json?datetime=yesterday-ish")
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "Invalid datetime"}


def test_program_json_statuses(client):
    assert client.get("/api/program.json").status_code == 400
    assert client.get("/api/program.json?id=77").status_code == 404

    empty = client.get("/api/program.json?id=01&datetime=2026-03-02T07:00:00")
    assert empty.status_code == 200
    assert empty.get_json() == {}

    found = client.get("/api/program.json?id=01&datetime=2026-03-02T09:45:00").get_json()
    assert found["program"]["title"] == "Morning Maze"
    assert found["startTime"] == "09:00"
    assert found["endTime"] == "10:30"


def test_contributors_and_pagination(client):
    assert client.get("/api/contributors.json").get_json() == ["Ada Park", "ben ruiz", "Cleo Moss", "Dee Lang"]
    assert client.get("/api/pagination/01.json").get_json() == {"next": "/ch/02", "prev": "/ch/00"}


def test_redirects(client):
    resp = client.get("/ch/00")
    assert resp.status_code == 301
    assert resp.headers["Location"].endswith("/")
    assert client.get("/about").headers["Location"].endswith("/credits")
    assert client.get("/ch/999").headers["Location"].endswith("/credits")


def test_html_pages(client):
    channel = client.get("/ch/01")
    assert channel.status_code == 200
    assert b"01 Games" in channel.data
    assert b'href="/ch/02"' in channel.data
    assert client.get("/ch/77").status_code == 404
    credits = client.get("/credits")
    assert credits.status_code == 200
    assert b"Dee Lang" in credits.data
    guide = client.get("/")
    assert guide.status_code == 200
    assert b"Games" in guide.data


def test_visitors_json_cache_aside(client, monkeypatch):
    monkeypatch.setattr(vs, "fetch_visitor_total", lambda key, site: 17)
    resp = client.get("/api/visitors")
    assert resp.status_code == 200
    assert resp.headers["Cache-Control"] == "public, max-age=15"
    assert resp.get_json()["total"] == 17


def test_visitors_internal_error(client, app, monkeypatch):
    def _broken():
        raise OSError("store offline")

    monkeypatch.setattr(app.config["VISITORS"], "current", _broken)
    resp = client.get("/api/visitors")
    assert resp.status_code == 500
    assert resp.get_json() == {"error": "Internal server error"}


def test_visitors_event_stream(client, app, monkeypatch):
    monkeypatch.setattr(vs, "fetch_visitor_total", lambda key, site: 4)
    app.config["SSE_MAX_EVENTS"] = 1
    resp = client.get("/api/visitors", headers={"Accept": "text/event-stream"})
    assert resp.status_code == 200
    assert resp.mimetype == "text/event-stream"
    assert resp.headers["Cache-Control"] == "no-cache"
    assert resp.get_data(as_text=True).startswith('data: {"total": 4')


def test_visitors_passthrough(client, app, monkeypatch):
    monkeypatch.setattr(server, "fetch_current_visitors", lambda key, site: {"total": 9, "content": []})
    ok = client.get("/api/visitors.json")
    assert ok.status_code == 200
    assert ok.headers["Cache-Control"] == "no-cache, no-store, must-revalidate"
    assert ok.get_json() == {"total": 9, "content": []}

    def _upstream_error(key, site):
        raise vs.FathomError("bad", status=401, details={"error": "unauthorized"})

    monkeypatch.setattr(server, "fetch_current_visitors", _upstream_error)
    err = client.get("/api/visitors.json")
    assert err.status_code == 401
    assert err.get_json() == {"error": "Failed to fetch data from Fathom API", "details": {"error": "unauthorized"}}

    app.config["VISITORS"].api_key = ""
    missing = client.get("/api/visitors.json")
    assert missing.status_code == 500
    assert missing.get_json() == {"error": "Fathom API key is not configured"}


def test_visitors_passthrough_unexpected_upstream_failure(client, monkeypatch, caplog):
    def _not_json(key, site):
        raise vs.FathomError("Invalid response from Fathom API")

    monkeypatch.setattr(server, "fetch_current_visitors", _not_json)
    with caplog.at_level("ERROR", logger="guide_server"):
        resp = client.get("/api/visitors.json")
    assert resp.status_code == 500
    assert resp.get_json() == {"error": "Internal server error"}
    assert "Invalid response from Fathom API" in caplog.text


def test_parse_request_datetime_naive_is_guide_local():
    tz = cfg.resolve_timezone("America/New_York")
    dt = server.parse_request_datetime("2026-03-02T09:00:00", tz)
    assert dt.hour == 9
    assert dt.utcoffset().total_seconds() == -5 * 3600
    with pytest.raises(server.InvalidDatetime):
        server.parse_request_datetime("nope", tz)
