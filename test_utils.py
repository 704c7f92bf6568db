"""Tests for config loading, backoff, billing rounding and week helpers."""

import json

import pytest

from utils import (
    backoff_delay,
    get_week_dates,
    health_config,
    load_config_safe,
    platform_configs,
    round_up_hours,
    sync_config,
    validate_config,
)


def valid_config() -> dict:
    return {
        "platforms": {
            "cleo": {"subdomain": "acme-law", "api_key": "k"},
            "practice-panther": {"subdomain": "acme", "api_key": "k", "api_secret": "s"},
        },
        "sync": {"max_attempts": 5, "base_delay_s": 2},
        "health": {"interval_s": 60},
        "conflicts": {"policy": "latest_wins"},
        "logging": {"level": "debug"},
    }


# ---------------------------------------------------------------------------
# Config validation
# ---------------------------------------------------------------------------

class TestValidateConfig:

    def test_valid(self):
        assert validate_config(valid_config()) == []

    def test_missing_platforms(self):
        assert validate_config({}) == ["Missing section 'platforms' in config.json"]

    @pytest.mark.parametrize(
        "platform, settings, fragment",
        [
            ("clio", {"subdomain": "a", "api_key": "k"}, "Unknown platform"),
            ("cleo", {"api_key": "k"}, "subdomain"),
            ("cleo", {"subdomain": "Acme Law", "api_key": "k"}, "Invalid platforms.cleo.subdomain"),
            ("mycase", {"subdomain": "acme"}, "api_key"),
            ("practice-panther", {"subdomain": "acme", "api_key": "k"}, "api_secret"),
            ("cleo", {"subdomain": "acme", "refresh_token": "rt"}, "client_id and client_secret"),
        ],
    )
    def test_platform_errors(self, platform, settings, fragment):
        errors = validate_config({"platforms": {platform: settings}})
        assert len(errors) == 1
        assert fragment in errors[0]

    def test_base_url_replaces_subdomain(self):
        config = {"platforms": {"cleo": {"base_url": "http://localhost:8080", "api_key": "k"}}}
        assert validate_config(config) == []

    @pytest.mark.parametrize(
        "section, values, fragment",
        [
            ("sync", {"max_attempts": 0}, "sync.max_attempts"),
            ("sync", {"base_delay_s": "5"}, "sync.base_delay_s"),
            ("sync", {"multiplier": 0.5}, "sync.multiplier"),
            ("sync", {"sync_interval_s": 0}, "sync.sync_interval_s"),
            ("health", {"max_backoff_s": -1}, "health.max_backoff_s"),
            ("conflicts", {"policy": "coin_flip"}, "conflicts.policy"),
            ("logging", {"level": "LOUD"}, "logging.level"),
        ],
    )
    def test_section_errors(self, section, values, fragment):
        config = valid_config()
        config[section] = values
        errors = validate_config(config)
        assert len(errors) == 1
        assert fragment in errors[0]


class TestLoadConfig:

    def test_missing_file(self, tmp_path, capsys):
        assert load_config_safe(str(tmp_path / "config.json")) is None
        assert "not found" in capsys.readouterr().out

    def test_invalid_json(self, tmp_path, capsys):
        path = tmp_path / "config.json"
        path.write_text('{"platforms": ')
        assert load_config_safe(str(path)) is None
        assert "not valid JSON" in capsys.readouterr().out

    def test_incomplete(self, tmp_path, capsys):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"platforms": {"cleo": {}}}))
        assert load_config_safe(str(path)) is None
        assert "incomplete" in capsys.readouterr().out

    def test_valid_builds_typed_configs(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps(valid_config()))
        config = load_config_safe(str(path))

        platforms = platform_configs(config)
        assert platforms["practice-panther"].api_secret == "s"
        assert platforms["cleo"].platform == "cleo"
        assert sync_config(config).max_attempts == 5
        assert sync_config(config).max_delay_s == 300.0
        assert health_config(config).interval_s == 60

    def test_unknown_keys_are_ignored(self):
        assert sync_config({"sync": {"max_attempts": 2, "colour": "blue"}}).max_attempts == 2


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------

class TestBackoff:

    @pytest.mark.parametrize("attempt, expected", [(1, 5.0), (2, 10.0), (3, 20.0), (10, 300.0)])
    def test_exponential_and_capped(self, attempt, expected):
        assert backoff_delay(attempt, 5.0, 2.0, 300.0) == expected

    def test_retry_after_is_a_floor(self):
        assert backoff_delay(1, 5.0, 2.0, 300.0, retry_after=30.0) == 30.0
        assert backoff_delay(3, 5.0, 2.0, 300.0, retry_after=1.0) == 20.0

    def test_retry_after_is_capped(self):
        assert backoff_delay(1, 5.0, 2.0, 300.0, retry_after=3600.0) == 300.0


# ---------------------------------------------------------------------------
# Billing increments
# ---------------------------------------------------------------------------

class TestRoundUpHours:

    @pytest.mark.parametrize(
        "hours, expected",
        [
            (0.3, 0.3),
            (0.31, 0.4),
            (0.01, 0.1),
            (1.0, 1.0),
            (1.05, 1.1),
            (2.25, 2.3),
        ],
    )
    def test_rounds_up_to_tenth(self, hours, expected):
        assert round_up_hours(hours) == expected


# ---------------------------------------------------------------------------
# Weeks
# ---------------------------------------------------------------------------

class TestWeekDates:

    @pytest.mark.parametrize(
        "week, expected",
        [
            ("202606", ("2026-02-02", "2026-02-08")),
            ("202601", ("2025-12-29", "2026-01-04")),
            ("202053", ("2020-12-28", "2021-01-03")),
        ],
    )
    def test_monday_to_sunday(self, week, expected):
        assert get_week_dates(week) == expected

    def test_invalid(self):
        with pytest.raises(ValueError):
            get_week_dates("2026-06")
