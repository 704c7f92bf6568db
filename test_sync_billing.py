"""Tests for the command line wiring (no network)."""

import json
import sys

import pytest

from conflicts import ConflictPolicy
from mycase_client import MyCaseClient
from sync_billing import build_engine, main


def config(tmp_path) -> dict:
    return {
        "platforms": {"mycase": {"subdomain": "acme", "api_key": "k"}},
        "sync": {"max_attempts": 4},
        "health": {"interval_s": 60},
        "conflicts": {"policy": "latest_wins"},
        "store": {"path": str(tmp_path / "store.json")},
    }


class TestBuildEngine:

    def test_wires_components_from_config(self, tmp_path):
        engine = build_engine(config(tmp_path))

        assert isinstance(engine.adapters["mycase"], MyCaseClient)
        assert engine.config.max_attempts == 4
        assert engine.health.config.interval_s == 60
        assert engine.resolver.policy == ConflictPolicy.LATEST_WINS
        assert engine.store.path == str(tmp_path / "store.json")
        assert engine.auth.is_registered("mycase")


class TestMain:

    def test_invalid_week(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["sync_billing.py", "entries", "cleo", "2026-06"])
        assert main() == 1
        assert "Invalid week format" in capsys.readouterr().out

    def test_unconfigured_platform(self, tmp_path, monkeypatch, capsys):
        path = tmp_path / "config.json"
        path.write_text(json.dumps(config(tmp_path)))
        monkeypatch.setattr(sys, "argv", ["sync_billing.py", "--config", str(path), "sync", "cleo"])
        assert main() == 1
        assert "not configured" in capsys.readouterr().out

    def test_dry_run_without_entries(self, tmp_path, monkeypatch, capsys):
        path = tmp_path / "config.json"
        path.write_text(json.dumps(config(tmp_path)))
        monkeypatch.setattr(sys, "argv", ["sync_billing.py", "--config", str(path), "sync", "mycase"])
        assert main() == 0
        assert "Nothing to sync" in capsys.readouterr().out

    def test_unknown_platform_choice(self, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["sync_billing.py", "sync", "clio"])
        with pytest.raises(SystemExit):
            main()

    def test_unknown_entry_reports_error(self, tmp_path, monkeypatch, capsys):
        path = tmp_path / "config.json"
        path.write_text(json.dumps(config(tmp_path)))
        monkeypatch.setattr(sys, "argv", ["sync_billing.py", "--config", str(path), "approve", "be-404"])
        assert main() == 1
        assert "Unknown billing entry" in capsys.readouterr().out

    def test_cleanup_on_empty_store(self, tmp_path, monkeypatch, capsys):
        path = tmp_path / "config.json"
        path.write_text(json.dumps(config(tmp_path)))
        monkeypatch.setattr(sys, "argv", ["sync_billing.py", "--config", str(path), "cleanup", "--days", "30"])
        assert main() == 0
        out = capsys.readouterr().out
        assert "Older than 30 days" in out
        assert "Entries removed:         0" in out

    def test_status_of_unknown_entry(self, tmp_path, monkeypatch, capsys):
        path = tmp_path / "config.json"
        path.write_text(json.dumps(config(tmp_path)))
        monkeypatch.setattr(sys, "argv", ["sync_billing.py", "--config", str(path), "status", "be-404"])
        assert main() == 1
        assert "Unknown billing entry" in capsys.readouterr().out
