"""Time-of-day classification of events.

Rules are evaluated top to bottom and the first match wins. Several hour
ranges overlap, so the order below is significant.
"""

from __future__ import annotations

from datetime import datetime

from nightlife_etl.normalize import parse_iso_ts

FESTIVAL = "Festival"
DAY_INTO_NIGHT = "Day Into Night"
CLUB_NIGHT = "Club Night"
EARLY_NIGHT = "Early Night"
DAY_PARTY = "Day Party"
AFTERS = "Afters"
UNKNOWN = "Unknown"

EVENT_TYPES = (FESTIVAL, DAY_INTO_NIGHT, CLUB_NIGHT, EARLY_NIGHT, DAY_PARTY, AFTERS, UNKNOWN)


def classify_event(start: str | datetime | None, end: str | datetime | None) -> str:
    """Return one of EVENT_TYPES for a start/end pair (UTC hours)."""
    start_dt = parse_iso_ts(start)
    end_dt = parse_iso_ts(end)
    if start_dt is None or end_dt is None:
        return UNKNOWN

    duration_h = (end_dt - start_dt).total_seconds() / 3600
    sh = start_dt.hour
    eh = end_dt.hour

    if duration_h >= 24:
        return FESTIVAL
    if 12 <= sh < 18 and (end_dt.date() > start_dt.date() or duration_h > 8) and eh >= 3:
        return DAY_INTO_NIGHT
    if (21 <= sh <= 23 or sh <= 1) and 3 <= eh <= 9:
        return CLUB_NIGHT
    if 17 <= sh < 22 and (eh >= 22 or eh <= 3):
        return EARLY_NIGHT
    if 12 <= sh < 18 and (eh >= 17 or eh <= 1):
        return DAY_PARTY
    if 4 <= sh < 11:
        return AFTERS
    return UNKNOWN
