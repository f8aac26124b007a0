"""Integration tests for the crawl modes.

The events graph is replaced by FakeSource, an in-memory stand-in answering
each query by operation name; the store is the ephemeral database from
conftest.py.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

import nightlife_etl.crawl as crawl_module
from nightlife_etl.alerts import NullAlerter
from nightlife_etl.config import CrawlSettings
from nightlife_etl.crawl import (
    EMPTY_QUEUE_MESSAGE,
    CrawlContext,
    Deadline,
    crawl_next_venue,
    discover_venues,
    scan_active_cities,
    scan_area,
)
from nightlife_etl.resolver import EntityResolver
from nightlife_etl.scheduler import city_lookup, load_city_index
from nightlife_etl.shared import FatalInvocationError
from nightlife_etl.source_client import TransportError

NOW = datetime(2025, 6, 6, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fake events graph
# ---------------------------------------------------------------------------

class FakeSource:
    def __init__(
        self,
        venues: dict | None = None,
        events: dict | None = None,
        artists: dict | None = None,
        promoters: dict | None = None,
        venue_listings: dict | None = None,
        area_listings: dict | None = None,
        failing_ops: set[str] | None = None,
        failing_areas: set[int] | None = None,
    ) -> None:
        self.venues = venues or {}
        self.events = events or {}
        self.artists = artists or {}
        self.promoters = promoters or {}
        self.venue_listings = venue_listings or {}
        self.area_listings = area_listings or {}
        self.failing_ops = failing_ops or set()
        self.failing_areas = failing_areas or set()
        self.calls: list[str] = []

    def fetch(self, query: dict) -> dict:
        op = query["operationName"]
        v = query["variables"]
        self.calls.append(op)
        if op in self.failing_ops:
            raise TransportError(503, "unavailable")
        if op == "GET_VENUE":
            return {"venue": self.venues.get(v["id"])}
        if op == "GET_EVENT_DETAIL":
            return {"event": self.events.get(v["id"])}
        if op == "GET_ARTIST_BY_SLUG":
            return {"artist": self.artists.get(v["slug"])}
        if op == "GET_PROMOTER_DETAIL":
            return {"promoter": self.promoters.get(v["id"])}
        if op == "GET_DEFAULT_EVENTS_LISTING":
            ids = self.venue_listings.get(v["filters"][0]["value"], [])
            return {"listing": {"data": [{"id": i} for i in ids], "totalResults": len(ids)}}
        if op == "GET_EVENT_LISTINGS":
            area = v["filters"]["areas"]["eq"]
            if area in self.failing_areas:
                raise TransportError(500, "area down")
            ids = self.area_listings.get(area, []) if v["page"] == 1 else []
            return {
                "eventListings": {
                    "data": [{"id": f"L{i}", "event": {"id": i}} for i in ids],
                    "totalResults": len(ids),
                },
            }
        raise AssertionError(f"unexpected operation {op}")


def _event(ra_id: str, venue: dict, artists=(), promoters=(), title: str | None = None) -> dict:
    return {
        "id": ra_id,
        "title": title or f"Night {ra_id}",
        "content": "",
        "startTime": "2025-06-07T23:00:00.000",
        "endTime": "2025-06-08T06:00:00.000",
        "datePosted": "2025-05-01T10:00:00.000",
        "contentUrl": f"/events/{ra_id}",
        "venue": venue,
        "artists": list(artists),
        "promoters": list(promoters),
    }


TRESOR = {"id": "5031", "name": "Tresor", "area": {"name": "Berlin"}}
NEW_CLUB = {"id": "777", "name": "New Club", "location": {"latitude": 52.5, "longitude": 13.4}}
DJ_X = {"id": "A1", "name": "DJ X", "urlSafeName": "dj-x"}
KLUBNACHT = {"id": "P1", "name": "Klubnacht"}


def _source(**overrides) -> FakeSource:
    fields = dict(
        venues={"5031": dict(TRESOR, capacity=900), "777": {"id": "777", "name": "New Club"}},
        events={
            "E1": _event("E1", TRESOR, [DJ_X], [KLUBNACHT]),
            "E2": _event("E2", TRESOR, [DJ_X]),
            "E3": _event("E3", NEW_CLUB),
        },
        artists={"dj-x": {"id": "A1", "name": "DJ X"}},
        promoters={"P1": {"id": "P1", "name": "Klubnacht"}},
        venue_listings={"5031": ["E1", "E2"]},
        area_listings={34: ["E1", "E3"]},
    )
    fields.update(overrides)
    return FakeSource(**fields)


def _ctx(conn, source: FakeSource, deadline: Deadline | None = None) -> CrawlContext:
    resolver = EntityResolver(source, city_lookup=city_lookup(load_city_index(conn)))
    return CrawlContext(
        conn=conn,
        source=source,
        resolver=resolver,
        settings=CrawlSettings(),
        alerter=NullAlerter(),
        deadline=deadline or Deadline(None),
        clock=lambda: NOW,
    )


def _city(conn, name: str, area_id: int | None) -> str:
    row = conn.execute(
        "INSERT INTO cities (name, ra_area_id, is_active) VALUES (%s, %s, true) RETURNING id",
        (name, area_id),
    ).fetchone()
    return str(row[0])


def _scheduled_venue(conn, ra_id: str = "5031", name: str = "Tresor", city_id=None) -> str:
    venue_id = str(conn.execute(
        """
        INSERT INTO pages (ra_id, page_type, name, handle, home_city_id)
        VALUES (%s, 'venue', %s, %s, %s) RETURNING id
        """,
        (ra_id, name, name.lower(), city_id),
    ).fetchone()[0])
    conn.execute("INSERT INTO venues (id) VALUES (%s)", (venue_id,))
    conn.execute(
        "INSERT INTO venue_crawling_status (venue_id, next_crawl_at) VALUES (%s, %s)",
        (venue_id, NOW - timedelta(hours=1)),
    )
    return venue_id


def _next_crawl(conn, venue_id: str):
    return conn.execute(
        "SELECT last_crawled_at, next_crawl_at FROM venue_crawling_status WHERE venue_id = %s",
        (venue_id,),
    ).fetchone()


def _count(conn, table: str) -> int:
    return conn.execute(f"SELECT count(*) FROM {table}").fetchone()[0]


# ---------------------------------------------------------------------------
# crawl_next_venue
# ---------------------------------------------------------------------------

class TestCrawlNextVenue:
    def test_empty_queue_is_idle_and_alerts(self, db_conn):
        conn, _ = db_conn
        ctx = _ctx(conn, _source())
        result = crawl_next_venue(ctx)

        assert result.status == "idle"
        assert result.message == EMPTY_QUEUE_MESSAGE
        assert ctx.alerter.messages == [(EMPTY_QUEUE_MESSAGE, False)]
        assert ctx.source.calls == []

    def test_crawls_and_reschedules(self, db_conn):
        conn, _ = db_conn
        berlin = _city(conn, "Berlin", 34)
        venue_id = _scheduled_venue(conn, city_id=berlin)
        ctx = _ctx(conn, _source())

        result = crawl_next_venue(ctx)

        assert result.status == "ok"
        assert result.message == "Successfully crawled venue: Tresor"
        assert result.persist.events_inserted == 2
        assert result.counters.venues_rescheduled == 1
        assert _next_crawl(conn, venue_id) == (NOW, NOW + timedelta(days=7))

        # events are linked to the already-stored venue page
        linked = conn.execute(
            "SELECT count(*) FROM event_venue WHERE venue_id = %s", (venue_id,)
        ).fetchone()[0]
        assert linked == 2
        assert conn.execute("SELECT capacity FROM venues WHERE id = %s", (venue_id,)).fetchone()[0] == 900
        # one artist detail fetch for two events
        assert ctx.source.calls.count("GET_ARTIST_BY_SLUG") == 1
        assert _count(conn, "event_artist") == 2
        # digest follows the crawl
        assert ctx.alerter.messages[-1][0].startswith("*Crawl summary for: Tresor")

    def test_second_run_adds_no_links(self, db_conn):
        conn, _ = db_conn
        venue_id = _scheduled_venue(conn)
        crawl_next_venue(_ctx(conn, _source()))
        conn.execute(
            "UPDATE venue_crawling_status SET next_crawl_at = %s WHERE venue_id = %s",
            (NOW - timedelta(minutes=1), venue_id),
        )

        result = crawl_next_venue(_ctx(conn, _source()))

        assert result.persist.events_inserted == 0
        assert result.persist.events_updated == 2
        assert result.persist.new_links == 0
        assert _count(conn, "event_venue") == 2

    def test_listing_failure_is_fatal_but_reschedules(self, db_conn):
        conn, _ = db_conn
        venue_id = _scheduled_venue(conn)
        ctx = _ctx(conn, _source(failing_ops={"GET_DEFAULT_EVENTS_LISTING"}))

        with pytest.raises(FatalInvocationError, match="Tresor"):
            crawl_next_venue(ctx)

        assert _next_crawl(conn, venue_id) == (NOW, NOW + timedelta(days=7))
        assert _count(conn, "events") == 0

    def test_target_venue_unavailable(self, db_conn):
        conn, _ = db_conn
        venue_id = _scheduled_venue(conn)
        ctx = _ctx(conn, _source(venues={}))

        result = crawl_next_venue(ctx)

        assert result.status == "ok"
        assert "unavailable" in result.message
        assert _next_crawl(conn, venue_id)[1] == NOW + timedelta(days=7)
        assert "GET_DEFAULT_EVENTS_LISTING" not in ctx.source.calls

    def test_event_without_start_is_dropped(self, db_conn):
        conn, _ = db_conn
        _scheduled_venue(conn)
        events = {"E1": dict(_event("E1", TRESOR), startTime=None), "E2": _event("E2", TRESOR)}
        result = crawl_next_venue(_ctx(conn, _source(events=events)))

        assert result.counters.events_skipped_no_start == 1
        assert result.persist.events_inserted == 1

    def test_expired_deadline_persists_partial_batch(self, db_conn):
        conn, _ = db_conn
        venue_id = _scheduled_venue(conn)
        ctx = _ctx(conn, _source(), deadline=Deadline(0))

        result = crawl_next_venue(ctx)

        assert result.counters.deadline_exceeded is True
        assert result.persist.events.attempted == 0
        assert result.persist.venues.upserted == 1
        assert _next_crawl(conn, venue_id)[1] == NOW + timedelta(days=7)


# ---------------------------------------------------------------------------
# scan_area
# ---------------------------------------------------------------------------

class TestScanArea:
    def test_persists_and_registers_venues(self, db_conn):
        conn, _ = db_conn
        ctx = _ctx(conn, _source())

        result = scan_area(ctx, 34, date(2025, 6, 1))

        assert result.message == "Scraped Area 34. Events processed: 2."
        assert result.persist.events_inserted == 2
        assert result.counters.venues_registered == 2
        assert _count(conn, "venue_crawling_status") == 2
        ra_ids = {r[0] for r in conn.execute(
            "SELECT p.ra_id FROM venue_crawling_status s JOIN pages p ON p.id = s.venue_id"
        ).fetchall()}
        assert ra_ids == {"5031", "777"}

    def test_coordinates_come_from_event_payload(self, db_conn):
        conn, _ = db_conn
        scan_area(_ctx(conn, _source()), 34, date(2025, 6, 1))
        row = conn.execute(
            "SELECT v.latitude, v.longitude FROM venues v JOIN pages p ON p.id = v.id WHERE p.ra_id = '777'"
        ).fetchone()
        assert row == (52.5, 13.4)

    def test_listing_failure_is_fatal(self, db_conn):
        conn, _ = db_conn
        with pytest.raises(FatalInvocationError):
            scan_area(_ctx(conn, _source(failing_areas={34})), 34)

    def test_existing_status_rows_untouched(self, db_conn):
        conn, _ = db_conn
        venue_id = _scheduled_venue(conn)
        conn.execute("UPDATE venue_crawling_status SET is_active = false WHERE venue_id = %s", (venue_id,))

        scan_area(_ctx(conn, _source()), 34, date(2025, 6, 1))

        assert conn.execute(
            "SELECT is_active FROM venue_crawling_status WHERE venue_id = %s", (venue_id,)
        ).fetchone()[0] is False

    def test_malformed_entities_do_not_drop_the_event(self, db_conn):
        conn, _ = db_conn
        events = {"E1": _event("E1", TRESOR, [None, DJ_X], [KLUBNACHT, "P9"]), "E3": _event("E3", "777")}
        promoters = {"P1": {"id": "P1", "name": "Klubnacht", "area": "Berlin", "socialMediaLinks": [None]}}

        result = scan_area(_ctx(conn, _source(events=events, promoters=promoters)), 34, date(2025, 6, 1))

        assert result.persist.events_inserted == 2
        assert result.counters.events_skipped_error == 0
        assert _count(conn, "event_artist") == 1
        assert _count(conn, "event_promoter") == 1
        assert _count(conn, "event_venue") == 1

    def test_event_that_fails_to_assemble_is_skipped(self, db_conn, monkeypatch):
        conn, _ = db_conn
        real = crawl_module.build_event_record

        def build(detail, *args, **kwargs):
            if detail["id"] == "E1":
                raise KeyError("startTime")
            return real(detail, *args, **kwargs)

        monkeypatch.setattr(crawl_module, "build_event_record", build)

        result = scan_area(_ctx(conn, _source()), 34, date(2025, 6, 1))

        assert result.counters.events_skipped_error == 1
        assert any(w.startswith("event E1 skipped") for w in result.counters.warnings)
        assert result.persist.events_inserted == 1
        assert conn.execute("SELECT ra_id FROM events").fetchall() == [("E3",)]


# ---------------------------------------------------------------------------
# discover_venues / scan_active_cities
# ---------------------------------------------------------------------------

class TestDiscoverVenues:
    def test_registers_only_unknown_venues(self, db_conn):
        conn, _ = db_conn
        berlin = _city(conn, "Berlin", 34)
        _scheduled_venue(conn, city_id=berlin)
        ctx = _ctx(conn, _source())

        result = discover_venues(ctx)

        assert result.extra["new_venues"] == ["New Club (Berlin)"]
        assert result.counters.venues_registered == 1
        # forced onto the city being scanned when its own area is unknown
        home = conn.execute("SELECT home_city_id FROM pages WHERE ra_id = '777'").fetchone()[0]
        assert str(home) == berlin
        assert _count(conn, "events") == 0
        assert ctx.alerter.messages[0][0].startswith("Discovered 1 new venues")

    def test_no_active_cities(self, db_conn):
        conn, _ = db_conn
        result = discover_venues(_ctx(conn, _source()))
        assert result.status == "idle"


class TestScanActiveCities:
    def test_one_failing_city_does_not_stop_the_rest(self, db_conn):
        conn, _ = db_conn
        _city(conn, "Berlin", 34)
        _city(conn, "London", 13)
        ctx = _ctx(conn, _source(failing_areas={13}))

        result = scan_active_cities(ctx)

        assert result.message == "Scraped 1/2 active cities. Errors: 1, Skipped: 0."
        assert result.counters.areas_failed == 1
        assert result.persist.events_inserted == 2
        assert ctx.alerter.messages == [(result.message, True)]

    def test_city_without_area_is_skipped(self, db_conn):
        conn, _ = db_conn
        _city(conn, "Berlin", 34)
        _city(conn, "Nowhere", None)
        result = scan_active_cities(_ctx(conn, _source()))
        assert result.message == "Scraped 1/2 active cities. Errors: 0, Skipped: 1."

    def test_each_city_persists_only_its_own_entities(self, db_conn):
        conn, _ = db_conn
        _city(conn, "Berlin", 34)
        _city(conn, "London", 13)
        fabric = {"id": "88", "name": "Fabric"}
        fabric_live = {"id": "P2", "name": "Fabric Live"}
        source = _source(
            venues={"5031": TRESOR, "88": fabric},
            events={
                "E1": _event("E1", TRESOR, [DJ_X], [KLUBNACHT]),
                "E4": _event("E4", fabric, [], [fabric_live]),
            },
            promoters={"P1": KLUBNACHT, "P2": fabric_live},
            area_listings={34: ["E1"], 13: ["E4"]},
        )

        result = scan_active_cities(_ctx(conn, source))

        assert result.persist.events_inserted == 2
        assert result.persist.pages.upserted == 5
        assert result.persist.venues.upserted == 2
        assert result.persist.artists.upserted == 1
        assert result.persist.promoters.upserted == 2
        assert result.counters.venues_resolved == 2
        assert result.counters.areas_scanned == 2
        assert _count(conn, "pages") == 5
