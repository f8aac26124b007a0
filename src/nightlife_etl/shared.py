"""nightlife_etl.shared

Shared utilities used by every crawl mode: invocation-level exceptions,
run counters, the per-type persist report, and report-writing support.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

MAX_REPORTED_WARNINGS = 50


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class FatalInvocationError(Exception):
    """Raised when a whole invocation cannot proceed.

    Store unreachable or credentials missing, or the listing fetch for the
    target venue/area failed entirely.
    """


# ---------------------------------------------------------------------------
# PersistReport
# ---------------------------------------------------------------------------

@dataclass
class EntityCounts:
    attempted: int = 0
    upserted: int = 0
    errored: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "attempted": self.attempted,
            "upserted": self.upserted,
            "errored": self.errored,
        }


@dataclass
class PersistReport:
    pages: EntityCounts = field(default_factory=EntityCounts)
    venues: EntityCounts = field(default_factory=EntityCounts)
    artists: EntityCounts = field(default_factory=EntityCounts)
    promoters: EntityCounts = field(default_factory=EntityCounts)
    events: EntityCounts = field(default_factory=EntityCounts)
    mixes: EntityCounts = field(default_factory=EntityCounts)
    events_inserted: int = 0
    events_updated: int = 0
    pages_compensated: int = 0
    new_links: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def total_errors(self) -> int:
        return sum(
            c.errored
            for c in (self.pages, self.venues, self.artists,
                      self.promoters, self.events, self.mixes)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "pages": self.pages.to_dict(),
            "venues": self.venues.to_dict(),
            "artists": self.artists.to_dict(),
            "promoters": self.promoters.to_dict(),
            "events": {
                **self.events.to_dict(),
                "inserted": self.events_inserted,
                "updated": self.events_updated,
                "new_links": self.new_links,
            },
            "mixes": self.mixes.to_dict(),
            "pages_compensated": self.pages_compensated,
            "warnings": self.warnings[:MAX_REPORTED_WARNINGS],
        }


# ---------------------------------------------------------------------------
# CrawlCounters
# ---------------------------------------------------------------------------

@dataclass
class CrawlCounters:
    # Fetch side
    listings_fetched: int = 0
    events_detailed: int = 0
    events_skipped_no_detail: int = 0
    events_skipped_no_start: int = 0
    events_end_time_synthesized: int = 0
    events_skipped_error: int = 0
    fetch_errors: int = 0
    # Entity resolution
    venues_resolved: int = 0
    artists_resolved: int = 0
    promoters_resolved: int = 0
    entities_unavailable: int = 0
    detail_fetches: int = 0
    # Scheduling
    venues_registered: int = 0
    venues_rescheduled: int = 0
    # Multi-area modes
    areas_scanned: int = 0
    areas_failed: int = 0
    deadline_exceeded: bool = False
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:MAX_REPORTED_WARNINGS]
        return d

    def merge(self, other: CrawlCounters) -> None:
        """Fold another scan's counters into these."""
        for k, v in other.__dict__.items():
            if k == "warnings":
                self.warnings.extend(v)
            elif isinstance(v, bool):
                setattr(self, k, getattr(self, k) or v)
            else:
                setattr(self, k, getattr(self, k) + v)


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    summary: dict[str, Any],
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": utc_now().isoformat(),
        **summary,
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
