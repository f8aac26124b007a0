"""nightlife_etl.scheduler

Per-venue crawl schedule backed by the venue_crawling_status table.

States:  active/due (next_crawl_at <= now), active/not-due, inactive.

  - pick_next(now)             earliest-due active venue, or None
  - reschedule(venue_id, ...)  push next_crawl_at forward by the interval,
                               whether or not the crawl succeeded
  - register_venue(venue_id)   create the status row (active, due now);
                               existing rows, inactive ones included, are
                               left alone
  - set_active / queue_depth   operator helpers

Also holds the small city reads the crawl modes share.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import psycopg

log = logging.getLogger(__name__)

DEFAULT_RECRAWL_INTERVAL = timedelta(days=7)


@dataclass
class ScheduledVenue:
    venue_id: str          # pages.id
    ra_id: str
    name: str
    next_crawl_at: datetime | None = None


@dataclass
class City:
    id: str
    name: str
    ra_area_id: int | None


class CrawlScheduler:
    def __init__(
        self,
        conn: psycopg.Connection,
        interval: timedelta = DEFAULT_RECRAWL_INTERVAL,
    ) -> None:
        self.conn = conn
        self.interval = interval

    def pick_next(self, now: datetime) -> ScheduledVenue | None:
        row = self.conn.execute(
            """
            SELECT s.venue_id, p.ra_id, p.name, s.next_crawl_at
            FROM venue_crawling_status s
            JOIN pages p ON p.id = s.venue_id
            WHERE s.is_active
              AND s.next_crawl_at IS NOT NULL
              AND s.next_crawl_at <= %s
            ORDER BY s.next_crawl_at ASC, s.venue_id ASC
            LIMIT 1
            """,
            (now,),
        ).fetchone()
        if row is None:
            return None
        return ScheduledVenue(
            venue_id=str(row[0]), ra_id=str(row[1]), name=row[2], next_crawl_at=row[3]
        )

    def reschedule(self, venue_id: str, success: bool, now: datetime) -> datetime:
        """Record a crawl attempt. The next due time ignores `success`."""
        next_at = now + self.interval
        with self.conn.transaction():
            self.conn.execute(
                """
                UPDATE venue_crawling_status
                SET last_crawled_at = %s, next_crawl_at = %s
                WHERE venue_id = %s
                """,
                (now, next_at, venue_id),
            )
        if not success:
            log.info("Venue %s crawl failed; next attempt at %s", venue_id, next_at.isoformat())
        return next_at

    def register_venue(self, venue_id: str, now: datetime) -> bool:
        """Create an active, immediately-due status row. True when a row was created."""
        with self.conn.transaction():
            row = self.conn.execute(
                """
                INSERT INTO venue_crawling_status (venue_id, is_active, next_crawl_at)
                VALUES (%s, true, %s)
                ON CONFLICT (venue_id) DO NOTHING
                RETURNING venue_id
                """,
                (venue_id, now),
            ).fetchone()
        return row is not None

    def set_active(self, venue_id: str, active: bool) -> bool:
        with self.conn.transaction():
            cur = self.conn.execute(
                "UPDATE venue_crawling_status SET is_active = %s WHERE venue_id = %s",
                (active, venue_id),
            )
        return cur.rowcount > 0

    def queue_depth(self, now: datetime) -> int:
        row = self.conn.execute(
            """
            SELECT count(*) FROM venue_crawling_status
            WHERE is_active AND next_crawl_at <= %s
            """,
            (now,),
        ).fetchone()
        return int(row[0])

    def activity_digest(self, now: datetime, window: timedelta = timedelta(hours=6)) -> dict[str, Any]:
        """Queue depth and row activity over the trailing window."""
        since = now - window
        counts = self.conn.execute(
            """
            SELECT
              (SELECT count(*) FROM venue_crawling_status WHERE last_crawled_at >= %(since)s),
              (SELECT count(*) FROM events WHERE inserted_at >= %(since)s),
              (SELECT count(*) FROM events WHERE updated_at >= %(since)s
                                             AND inserted_at < %(since)s),
              (SELECT count(*) FROM pages WHERE created_at >= %(since)s),
              (SELECT count(*) FROM mixes WHERE created_at >= %(since)s)
            """,
            {"since": since},
        ).fetchone()
        return {
            "queue_depth": self.queue_depth(now),
            "venues_crawled": int(counts[0]),
            "new_events": int(counts[1]),
            "updated_events": int(counts[2]),
            "new_pages": int(counts[3]),
            "new_mixes": int(counts[4]),
        }


# ---------------------------------------------------------------------------
# Cities
# ---------------------------------------------------------------------------

def load_city_index(conn: psycopg.Connection) -> dict[str, str]:
    """Lower-cased city name → cities.id, loaded once per invocation."""
    rows = conn.execute("SELECT id, name FROM cities").fetchall()
    return {str(name).strip().lower(): str(city_id) for city_id, name in rows if name}


def city_lookup(index: dict[str, str]):
    def lookup(name: str | None) -> str | None:
        if not name:
            return None
        return index.get(name.strip().lower())
    return lookup


def list_active_cities(conn: psycopg.Connection) -> list[City]:
    rows = conn.execute(
        "SELECT id, name, ra_area_id FROM cities WHERE is_active ORDER BY name"
    ).fetchall()
    return [City(id=str(r[0]), name=r[1], ra_area_id=r[2]) for r in rows]


def venue_ra_ids_for_city(conn: psycopg.Connection, city_id: str) -> set[str]:
    rows = conn.execute(
        "SELECT ra_id FROM pages WHERE page_type = 'venue' AND home_city_id = %s",
        (city_id,),
    ).fetchall()
    return {str(r[0]) for r in rows}
