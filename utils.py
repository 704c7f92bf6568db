"""Utility functions for billing sync: config, logging, backoff and weeks."""

import json
import logging
import math
import os
from datetime import datetime, timedelta

from conflicts import ConflictPolicy
from models import HealthConfig, PlatformConfig, SyncConfig
from patterns import Patterns
from platforms import PLATFORM_ADAPTERS

# File paths
CONFIG_FILE = "config.json"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

# Smallest billable increment in hours
BILLING_INCREMENT = 0.1


def load_config(path: str = CONFIG_FILE) -> dict:
    """Load config.json with platform credentials and sync settings."""
    with open(path) as f:
        return json.load(f)


def _validate_platform(name: str, platform: dict) -> list[str]:
    errors = []
    if name not in PLATFORM_ADAPTERS:
        known = ", ".join(sorted(PLATFORM_ADAPTERS))
        return [f"Unknown platform '{name}' (known: {known})"]

    subdomain = platform.get("subdomain")
    if not subdomain and not platform.get("base_url"):
        errors.append(f"Missing platforms.{name}.subdomain (or base_url)")
    elif subdomain and not Patterns.SUBDOMAIN.match(subdomain):
        errors.append(f"Invalid platforms.{name}.subdomain '{subdomain}'")

    has_key = bool(platform.get("api_key"))
    has_token = bool(platform.get("access_token") or platform.get("refresh_token"))
    if not has_key and not has_token:
        errors.append(f"Missing platforms.{name}.api_key (or access_token)")
    if name == "practice-panther" and has_key and not platform.get("api_secret") and not has_token:
        errors.append(f"Missing platforms.{name}.api_secret")
    if platform.get("refresh_token") and not (platform.get("client_id") and platform.get("client_secret")):
        errors.append(f"platforms.{name}.refresh_token needs client_id and client_secret")
    return errors


def _validate_positive(section: dict, prefix: str, keys: list[str]) -> list[str]:
    errors = []
    for key in keys:
        value = section.get(key)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            errors.append(f"{prefix}.{key} must be a positive number")
    return errors


def validate_config(config: dict) -> list[str]:
    """Validate config structure and return list of error messages.

    Returns:
        Empty list if valid, otherwise list of error messages.
    """
    errors = []

    platforms = config.get("platforms")
    if not isinstance(platforms, dict) or not platforms:
        errors.append("Missing section 'platforms' in config.json")
    else:
        for name, platform in platforms.items():
            if not isinstance(platform, dict):
                errors.append(f"platforms.{name} must be an object")
                continue
            errors.extend(_validate_platform(name, platform))

    sync = config.get("sync", {})
    errors.extend(
        _validate_positive(
            sync,
            "sync",
            ["max_attempts", "base_delay_s", "max_delay_s", "request_timeout_s", "max_concurrency", "sync_interval_s"],
        )
    )
    if sync.get("multiplier") is not None and sync["multiplier"] < 1:
        errors.append("sync.multiplier must be at least 1")

    health = config.get("health", {})
    errors.extend(_validate_positive(health, "health", ["interval_s", "backoff_base_s", "max_backoff_s", "probe_timeout_s"]))

    policy = config.get("conflicts", {}).get("policy")
    if policy and policy not in {p.value for p in ConflictPolicy}:
        errors.append(f"conflicts.policy must be one of {', '.join(p.value for p in ConflictPolicy)}")

    level = config.get("logging", {}).get("level")
    if level and level.upper() not in LOG_LEVELS:
        errors.append(f"logging.level must be one of {', '.join(LOG_LEVELS)}")

    return errors


def load_config_safe(path: str = CONFIG_FILE) -> dict | None:
    """Load config with user-friendly error messages.

    Returns:
        Config dict if valid, None if errors occurred.
    """
    if not os.path.exists(path):
        print(f"[!] ERROR: {path} not found!")
        print()
        print("    Create config.json based on config.example.json:")
        print("    $ cp config.example.json config.json")
        print("    $ nano config.json  # Fill in your credentials")
        print()
        return None

    try:
        config = load_config(path)
    except json.JSONDecodeError as e:
        print(f"[!] ERROR: {path} is not valid JSON!")
        print(f"    Line {e.lineno}, column {e.colno}: {e.msg}")
        print()
        print("    Check for missing commas, quotes, or brackets.")
        return None

    errors = validate_config(config)
    if errors:
        print(f"[!] ERROR: {path} is incomplete:")
        for err in errors:
            print(f"    - {err}")
        print()
        print("    See config.example.json for the required structure.")
        return None

    return config


def platform_configs(config: dict) -> dict[str, PlatformConfig]:
    return {name: PlatformConfig.from_dict(name, data) for name, data in config.get("platforms", {}).items()}


def sync_config(config: dict) -> SyncConfig:
    return SyncConfig.from_dict(config.get("sync"))


def health_config(config: dict) -> HealthConfig:
    return HealthConfig.from_dict(config.get("health"))


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Configure console logging once for the whole process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler()],
    )
    # requests/urllib3 are chatty at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return logging.getLogger("billing_sync")


def backoff_delay(
    attempt: int,
    base: float,
    multiplier: float,
    max_delay: float,
    retry_after: float | None = None,
) -> float:
    """Delay before retry number `attempt` (1-based), honoring a server hint."""
    delay = base * multiplier ** max(attempt - 1, 0)
    if retry_after is not None:
        delay = max(delay, retry_after)
    return min(delay, max_delay)


def round_up_hours(hours: float) -> float:
    """Round up to the next billing increment (0.1h). 0.31 -> 0.4"""
    # round() first so 0.3 / 0.1 == 2.9999999999999996 stays 3
    steps = math.ceil(round(hours / BILLING_INCREMENT, 6))
    return round(steps * BILLING_INCREMENT, 1)


def get_week_dates(week_str: str) -> tuple[str, str]:
    """Get start and end date (Mon-Sun) for a week string YYYYWW."""
    if not Patterns.WEEK_FORMAT.match(week_str):
        raise ValueError(f"Week must be YYYYWW, got '{week_str}'")
    year = int(week_str[:4])
    week = int(week_str[4:])
    # ISO week: Jan 4 is always in week 1
    jan4 = datetime(year, 1, 4)
    start_of_week1 = jan4 - timedelta(days=jan4.weekday())
    week_start = start_of_week1 + timedelta(weeks=week - 1)
    week_end = week_start + timedelta(days=6)
    return week_start.strftime("%Y-%m-%d"), week_end.strftime("%Y-%m-%d")


def get_current_week() -> str:
    """Get current week as YYYYWW."""
    return datetime.now().strftime("%G%V")
