"""Centralized regex patterns for billing sync."""

import re


class Patterns:
    """Regex patterns used throughout the sync process."""

    # Date format: YYYY-MM-DD
    DATE_FORMAT = re.compile(r"^\d{4}-\d{2}-\d{2}$")

    # Leading date of an ISO timestamp: 2026-01-29T10:00:00Z
    ISO_DATE_PREFIX = re.compile(r"^(\d{4}-\d{2}-\d{2})[T ]")

    # Week format: YYYYWW (e.g., 202605)
    WEEK_FORMAT = re.compile(r"^\d{6}$")

    # Vendor account subdomain: acme-law
    SUBDOMAIN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")

    # Retry-After given in seconds: "2", "2.5"
    RETRY_AFTER_SECONDS = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*$")

    # Numeric id that survives an int round trip: 42 (not 042)
    NUMERIC_ID = re.compile(r"^(?:0|[1-9]\d*)$")
