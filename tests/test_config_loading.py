from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

cfg = pytest.importorskip("guide_config")


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("FATHOM_API_KEY", raising=False)
    monkeypatch.delenv("FATHOM_SITE_ID", raising=False)
    monkeypatch.chdir(tmp_path)


def test_defaults_without_config():
    args = cfg.parse_effective_args([])
    assert args.channels_dir == cfg.PROJECT_DIR / "channels"
    assert args.port == 4321
    assert args.fathom_site_id == "EPXKTQED"
    assert args.visitors_cache_ttl == 15
    assert args.visitors_history_points == 8
    assert args.redirects == {"/ch/00": "/", "/about": "/credits", "/ch/999": "/credits"}
    assert args.date is None


def test_parse_effective_args_from_json_config(tmp_path: Path):
    conf = {
        "channels-dir": "/srv/channels",
        "date": "2026-03-01",
        "start": "06:30",
        "hours": 2,
        "port": "9000",
        "status_messages": "no",
    }
    p = tmp_path / "guide.json"
    p.write_text(json.dumps(conf), encoding="utf-8")

    args = cfg.parse_effective_args(["--config", str(p)])

    assert args.channels_dir == Path("/srv/channels")
    assert args.date.strftime("%Y-%m-%d") == "2026-03-01"
    assert args.start.strftime("%H:%M") == "06:30"
    assert args.hours == 2.0
    assert args.port == 9000
    assert args.status_messages is False


def test_parse_effective_args_from_toml_config(tmp_path: Path):
    p = tmp_path / "guide.toml"
    p.write_text(
        """
blob_dir = "cache/blobs"
sse_interval = 5
timezone = "Europe/Berlin"

[redirects]
"/old" = "/"
""".strip(),
        encoding="utf-8",
    )

    args = cfg.parse_effective_args(["--config", str(p)])

    assert args.blob_dir == Path("cache/blobs")
    assert args.sse_interval == 5.0
    assert args.timezone == "Europe/Berlin"
    assert args.redirects == {"/old": "/"}


def test_cli_overrides_config(tmp_path: Path):
    p = tmp_path / "guide.json"
    p.write_text(json.dumps({"port": 8000, "hours": 12}), encoding="utf-8")

    args = cfg.parse_effective_args(["--config", str(p), "--port", "8080", "--out", "custom.pdf", "--no-status-messages"])

    assert args.port == 8080
    assert args.hours == 12.0
    assert args.out == Path("custom.pdf")
    assert args.status_messages is False


def test_load_config_file_rejects_unsupported_extension(tmp_path: Path):
    p = tmp_path / "guide.yaml"
    p.write_text("port: 1", encoding="utf-8")
    with pytest.raises(ValueError):
        cfg.load_config_file(p)


def test_redirects_must_be_a_table(tmp_path: Path):
    p = tmp_path / "guide.json"
    p.write_text(json.dumps({"redirects": ["/a", "/b"]}), encoding="utf-8")
    with pytest.raises(ValueError):
        cfg.parse_effective_args(["--config", str(p)])


def test_env_file_supplies_fathom_credentials(tmp_path: Path):
    (tmp_path / ".env").write_text("FATHOM_API_KEY=file-key\nFATHOM_SITE_ID='SITE2'\n", encoding="utf-8")

    args = cfg.parse_effective_args([])
    assert args.fathom_api_key == "file-key"
    assert args.fathom_site_id == "SITE2"


def test_process_env_and_cli_precedence(tmp_path: Path, monkeypatch):
    (tmp_path / ".env").write_text("FATHOM_API_KEY=file-key\n", encoding="utf-8")
    monkeypatch.setenv("FATHOM_API_KEY", "env-key")

    assert cfg.parse_effective_args([]).fathom_api_key == "env-key"
    assert cfg.parse_effective_args(["--fathom-api-key", "cli-key"]).fathom_api_key == "cli-key"


def test_example_configs_parse():
    server_args = cfg.parse_effective_args(["--config", str(ROOT / "examples" / "server.toml")])
    assert server_args.port == 8080
    assert server_args.redirects["/tv"] == "/"

    print_args = cfg.parse_effective_args(["--config", str(ROOT / "examples" / "print_evening.json")])
    assert print_args.hours == 4.0
    assert print_args.out == Path("out/evening_guide.pdf")
