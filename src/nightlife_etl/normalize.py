"""Normalization functions for events-graph ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone

RA_BASE_URL = "https://ra.co"


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = str(value).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: slug_name  (page handles)
# ---------------------------------------------------------------------------

def slug_name(value: str | None) -> str | None:
    """Lowercase alnum with '-' separators.

    Used for the handle column on pages.
    """
    v = trim(value)
    if v is None:
        return None
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    v = v.lower()
    v = re.sub(r"[^a-z0-9]+", "-", v)
    v = v.strip("-")
    return v if v else None


def page_handle(name: str | None, page_type: str, external_id: str) -> str:
    """Handle for a page: slug of its name, else '<page_type>-<external_id>'."""
    return slug_name(name) or f"{page_type}-{external_id}"


# ---------------------------------------------------------------------------
# Rule 4: parse_iso_ts
# ---------------------------------------------------------------------------

def parse_iso_ts(value: str | datetime | None) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    The events API returns values like '2025-05-10T23:00:00.000' (no offset)
    or with a trailing 'Z'. Naive values are taken as UTC.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        v = trim(value)
        if v is None:
            return None
        if v.endswith("Z"):
            v = v[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(v)
        except ValueError:
            return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Rule 5: URLs
# ---------------------------------------------------------------------------

def absolute_content_url(path: str | None) -> str | None:
    """Prefix an API contentUrl path ('/events/123') with the public host."""
    v = trim(path)
    if v is None:
        return None
    if v.startswith("http://") or v.startswith("https://"):
        return v
    return RA_BASE_URL + (v if v.startswith("/") else "/" + v)


def strip_www(url: str | None) -> str | None:
    """'https://www.soundcloud.com/x' → 'https://soundcloud.com/x'."""
    v = trim(url)
    if v is None:
        return None
    return re.sub(r"^(https?://)www\.", r"\1", v, flags=re.IGNORECASE)


# ---------------------------------------------------------------------------
# Rule 6: numerics
# ---------------------------------------------------------------------------

def parse_float(value) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_int(value) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
