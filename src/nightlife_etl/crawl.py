"""nightlife_etl.crawl

Crawl modes, one per invocation:

  crawl_next_venue    pick the earliest-due active venue, walk its upcoming
                      listing, persist, reschedule (always, via finally)
  scan_area           walk one area's listing from a start date, persist,
                      register every persisted venue for crawling
  discover_venues     for each active city, find venues in the area listing
                      that are not stored yet and register them
  scan_active_cities  scan_area over every active city, isolating failures

Every area scan builds one CrawlBatch through a single EntityResolver and
hands it to UpsertEngine.persist once; scan_active_cities gives each city
its own resolver. Artist and promoter resolutions for one event run
concurrently on a thread pool and are joined before the event is built.
An event whose payload cannot be assembled is skipped. When the invocation
deadline passes the event loop stops and what has been gathered so far is
still persisted.
"""

from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Any, Callable

import psycopg

from nightlife_etl.alerts import NullAlerter
from nightlife_etl.classify import classify_event
from nightlife_etl.config import CrawlSettings
from nightlife_etl.models import CrawlBatch, EventRecord
from nightlife_etl.normalize import absolute_content_url, normalize_space, parse_iso_ts, trim
from nightlife_etl.notify import ExpoPushClient, FollowerNotifier
from nightlife_etl.resolver import EntityResolver
from nightlife_etl.scheduler import (
    CrawlScheduler,
    city_lookup,
    list_active_cities,
    load_city_index,
    venue_ra_ids_for_city,
)
from nightlife_etl.shared import CrawlCounters, FatalInvocationError, PersistReport, utc_now
from nightlife_etl.soundcloud import SoundcloudClient
from nightlife_etl.source_client import SourceClient, SourceError
from nightlife_etl.source_queries import (
    AREA_LISTING_PAGE_SIZE,
    build_event_detail_query,
    build_event_list_query,
    build_venue_listing_query,
)
from nightlife_etl.upsert import LinkSink, UpsertEngine

log = logging.getLogger(__name__)

EMPTY_QUEUE_MESSAGE = "Crawling queue is empty."


# ---------------------------------------------------------------------------
# Invocation plumbing
# ---------------------------------------------------------------------------

class Deadline:
    """Wall-clock budget for one invocation. None means unbounded."""

    def __init__(self, seconds: float | None, clock: Callable[[], float] = time.monotonic) -> None:
        self.seconds = seconds
        self._clock = clock
        self._start = clock()

    def remaining(self) -> float | None:
        if self.seconds is None:
            return None
        return self.seconds - (self._clock() - self._start)

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0


@dataclass
class CrawlContext:
    """Collaborators for one invocation."""

    conn: psycopg.Connection
    source: Any
    resolver: EntityResolver
    settings: CrawlSettings
    alerter: Any = field(default_factory=NullAlerter)
    link_sink: LinkSink | None = None
    deadline: Deadline = field(default_factory=lambda: Deadline(None))
    clock: Callable[[], datetime] = utc_now

    @classmethod
    def from_settings(
        cls,
        conn: psycopg.Connection,
        settings: CrawlSettings,
        alerter: Any = None,
        enrich: bool = True,
        notify: bool = True,
    ) -> "CrawlContext":
        secrets = settings.secrets
        source = SourceClient(
            endpoint=settings.endpoint,
            timeout=settings.timeout_seconds,
            user_agent=settings.user_agent,
        )
        enrichment = None
        if enrich and settings.enrich_artists:
            enrichment = SoundcloudClient(
                secrets.soundcloud_client_id,
                secrets.soundcloud_client_secret,
                api_url=settings.soundcloud_api_url,
                token_url=settings.soundcloud_token_url,
                timeout=settings.timeout_seconds,
            )
        resolver = EntityResolver(
            source,
            enrichment=enrichment,
            city_lookup=city_lookup(load_city_index(conn)),
            track_limit=settings.track_limit,
        )
        link_sink = None
        if notify:
            push = ExpoPushClient(
                secrets.expo_access_token,
                url=settings.expo_push_url,
                timeout=settings.timeout_seconds,
            )
            link_sink = FollowerNotifier(conn, push.send)
        return cls(
            conn=conn,
            source=source,
            resolver=resolver,
            settings=settings,
            alerter=alerter or NullAlerter(),
            link_sink=link_sink,
            deadline=Deadline(settings.invocation_deadline_seconds),
        )

    def engine(self) -> UpsertEngine:
        return UpsertEngine(self.conn, link_sink=self.link_sink)

    def with_fresh_resolver(self) -> "CrawlContext":
        """Copy of this context with an empty entity cache."""
        r = self.resolver
        resolver = EntityResolver(
            r.client,
            enrichment=r.enrichment,
            city_lookup=r.city_lookup,
            track_limit=r.track_limit,
        )
        return replace(self, resolver=resolver)


@dataclass
class CrawlResult:
    status: str                      # "ok" | "idle" | "failed"
    message: str
    counters: CrawlCounters
    persist: PersistReport | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "counters": self.counters.to_dict(),
            "persist": self.persist.to_dict() if self.persist else None,
            **self.extra,
        }


def _warn(counters: CrawlCounters, message: str) -> None:
    log.warning(message)
    counters.warnings.append(message)


# ---------------------------------------------------------------------------
# Event assembly
# ---------------------------------------------------------------------------

def build_event_record(
    detail: dict[str, Any],
    venue_id: str | None,
    artist_ids: list[str],
    promoter_ids: list[str],
    counters: CrawlCounters,
    missing_end_fallback: timedelta = timedelta(hours=6),
) -> EventRecord | None:
    """EventRecord from an event-detail payload; None when it has no start time."""
    ra_id = str(detail.get("id"))
    start = parse_iso_ts(detail.get("startTime"))
    if start is None:
        counters.events_skipped_no_start += 1
        _warn(counters, f"event {ra_id} has no start time; dropped")
        return None
    end = parse_iso_ts(detail.get("endTime"))
    if end is None:
        end = start + missing_end_fallback
        counters.events_end_time_synthesized += 1
        log.info("Event %s missing end time; using start + %s", ra_id, missing_end_fallback)

    images = detail.get("images") or []
    image = trim(detail.get("flyerFront"))
    if image is None and images and isinstance(images[0], dict):
        image = trim(images[0].get("filename"))

    return EventRecord(
        id=str(uuid.uuid4()),
        ra_id=ra_id,
        name=normalize_space(detail.get("title")) or f"Event {ra_id}",
        description=detail.get("content") or "",
        start_time=start,
        end_time=end,
        event_type=classify_event(start, end),
        date_posted=parse_iso_ts(detail.get("datePosted")),
        image=image,
        tickets_url=absolute_content_url(detail.get("contentUrl")),
        venue_id=venue_id,
        artist_ids=artist_ids,
        promoter_ids=promoter_ids,
    )


def _resolve_people(
    ctx: CrawlContext,
    pool: ThreadPoolExecutor,
    detail: dict[str, Any],
    counters: CrawlCounters,
) -> tuple[list[str], list[str]]:
    artist_futs = [pool.submit(ctx.resolver.resolve_artist, a) for a in detail.get("artists") or []]
    promoter_futs = [pool.submit(ctx.resolver.resolve_promoter, p) for p in detail.get("promoters") or []]

    artist_ids: list[str] = []
    for fut in artist_futs:
        artist = fut.result()
        if artist is not None and artist.id not in artist_ids:
            artist_ids.append(artist.id)
    promoter_ids: list[str] = []
    for fut in promoter_futs:
        promoter = fut.result()
        if promoter is not None and promoter.id not in promoter_ids:
            promoter_ids.append(promoter.id)

    counters.artists_resolved = len(ctx.resolver.artists())
    counters.promoters_resolved = len(ctx.resolver.promoters())
    return artist_ids, promoter_ids


def _fetch_event_detail(ctx: CrawlContext, ra_id: str, counters: CrawlCounters) -> dict[str, Any] | None:
    try:
        data = ctx.source.fetch(build_event_detail_query(ra_id))
    except SourceError as exc:
        counters.fetch_errors += 1
        counters.events_skipped_no_detail += 1
        _warn(counters, f"event {ra_id} detail unavailable: {exc}")
        return None
    detail = data.get("event") if isinstance(data, dict) else None
    if not isinstance(detail, dict):
        counters.events_skipped_no_detail += 1
        _warn(counters, f"event {ra_id} detail payload missing")
        return None
    counters.events_detailed += 1
    return detail


def _collect_events(
    ctx: CrawlContext,
    event_ids: list[str],
    venue_for: Callable[[dict[str, Any]], str | None],
    counters: CrawlCounters,
) -> list[EventRecord]:
    events: list[EventRecord] = []
    with ThreadPoolExecutor(max_workers=ctx.settings.max_resolve_workers) as pool:
        for idx, ra_id in enumerate(event_ids):
            if ctx.deadline.expired():
                counters.deadline_exceeded = True
                _warn(
                    counters,
                    f"invocation deadline reached after {idx}/{len(event_ids)} events; "
                    "persisting partial batch",
                )
                break
            detail = _fetch_event_detail(ctx, ra_id, counters)
            if detail is None:
                continue
            try:
                venue_id = venue_for(detail)
                artist_ids, promoter_ids = _resolve_people(ctx, pool, detail, counters)
                record = build_event_record(
                    detail, venue_id, artist_ids, promoter_ids, counters,
                    missing_end_fallback=ctx.settings.missing_end_fallback,
                )
            except Exception as exc:
                log.exception("Event %s could not be assembled", ra_id)
                counters.events_skipped_error += 1
                _warn(counters, f"event {ra_id} skipped: {type(exc).__name__}: {exc}")
                continue
            if record is not None:
                events.append(record)
    counters.entities_unavailable = ctx.resolver.unavailable
    counters.detail_fetches = ctx.resolver.detail_fetches
    return events


def _batch(ctx: CrawlContext, events: list[EventRecord]) -> CrawlBatch:
    return CrawlBatch(
        venues=ctx.resolver.venues(),
        artists=ctx.resolver.artists(),
        promoters=ctx.resolver.promoters(),
        events=events,
    )


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------

def _venue_listing_ids(ctx: CrawlContext, venue_ra_id: str, start_date: date) -> list[str]:
    data = ctx.source.fetch(build_venue_listing_query(venue_ra_id, start_date))
    rows = ((data or {}).get("listing") or {}).get("data") or []
    return [str(r["id"]) for r in rows if isinstance(r, dict) and r.get("id")]


def _area_listing(
    ctx: CrawlContext, area_id: int, start_date: date, counters: CrawlCounters
) -> list[dict[str, Any]]:
    """Event stubs for an area, paging until a short page or max_listing_pages.

    Only a failure on the first page propagates.
    """
    stubs: list[dict[str, Any]] = []
    for page in range(1, ctx.settings.max_listing_pages + 1):
        try:
            data = ctx.source.fetch(build_event_list_query(area_id, start_date, page=page))
        except SourceError:
            if page == 1:
                raise
            counters.fetch_errors += 1
            _warn(counters, f"area {area_id} listing page {page} failed; using {len(stubs)} stubs")
            break
        listings = (data or {}).get("eventListings") or {}
        rows = listings.get("data") or []
        for row in rows:
            event = (row or {}).get("event") or {}
            if event.get("id"):
                stubs.append(event)
        total = listings.get("totalResults")
        if len(rows) < AREA_LISTING_PAGE_SIZE or (total is not None and len(stubs) >= int(total)):
            break
        if ctx.deadline.expired():
            break
    counters.listings_fetched += len(stubs)
    return stubs


def _unique_ids(stubs: list[dict[str, Any]]) -> list[str]:
    seen: dict[str, None] = {}
    for stub in stubs:
        seen.setdefault(str(stub["id"]), None)
    return list(seen)


# ---------------------------------------------------------------------------
# Modes
# ---------------------------------------------------------------------------

def crawl_next_venue(ctx: CrawlContext, counters: CrawlCounters | None = None) -> CrawlResult:
    """Crawl the earliest-due active venue.

    Raises FatalInvocationError when the venue listing cannot be fetched;
    the venue is rescheduled first.
    """
    counters = counters or CrawlCounters()
    now = ctx.clock()
    scheduler = CrawlScheduler(ctx.conn, interval=ctx.settings.recrawl_interval)

    picked = scheduler.pick_next(now)
    if picked is None:
        log.info(EMPTY_QUEUE_MESSAGE)
        ctx.alerter.send(EMPTY_QUEUE_MESSAGE)
        return CrawlResult("idle", EMPTY_QUEUE_MESSAGE, counters)

    log.info("Selected venue %s (page %s, ra_id %s)", picked.name, picked.venue_id, picked.ra_id)
    success = False
    report: PersistReport | None = None
    try:
        target = ctx.resolver.resolve_venue({}, picked.ra_id)
        if target is None:
            _warn(counters, f"target venue {picked.ra_id} detail unavailable; nothing crawled")
            return CrawlResult(
                "ok", f"Venue {picked.name} unavailable upstream; rescheduled", counters,
                extra={"venue": _venue_dict(picked)},
            )
        counters.venues_resolved = 1

        start_date = (now - ctx.settings.lookback).date()
        try:
            event_ids = _venue_listing_ids(ctx, picked.ra_id, start_date)
        except SourceError as exc:
            counters.fetch_errors += 1
            raise FatalInvocationError(
                f"listing fetch failed for venue {picked.name} (ra_id {picked.ra_id}): {exc}"
            ) from exc
        counters.listings_fetched += len(event_ids)
        log.info("Venue %s: %d upcoming events from %s", picked.name, len(event_ids), start_date)

        events = _collect_events(ctx, event_ids, lambda detail: target.id, counters)
        report = ctx.engine().persist(_batch(ctx, events))
        success = report.total_errors == 0
    finally:
        scheduler.reschedule(picked.venue_id, success, now)
        counters.venues_rescheduled += 1

    _send_digest(ctx, scheduler, picked.name, picked.ra_id, now)
    return CrawlResult(
        "ok", f"Successfully crawled venue: {picked.name}", counters, report,
        extra={"venue": _venue_dict(picked)},
    )


def scan_area(
    ctx: CrawlContext,
    area_id: int,
    start_date: date | None = None,
    counters: CrawlCounters | None = None,
) -> CrawlResult:
    """Scan one area's listing and register every persisted venue.

    Raises FatalInvocationError when the area listing cannot be fetched.
    """
    counters = counters or CrawlCounters()
    now = ctx.clock()
    start_date = start_date or now.date()

    try:
        stubs = _area_listing(ctx, area_id, start_date, counters)
    except SourceError as exc:
        counters.fetch_errors += 1
        raise FatalInvocationError(f"listing fetch failed for area {area_id}: {exc}") from exc
    log.info("Area %s: %d events from %s", area_id, len(stubs), start_date)

    def venue_for(detail: dict[str, Any]) -> str | None:
        stub = detail.get("venue")
        if not isinstance(stub, dict):
            return None
        venue = ctx.resolver.resolve_venue(stub, stub.get("id"))
        return venue.id if venue else None

    events = _collect_events(ctx, _unique_ids(stubs), venue_for, counters)
    counters.venues_resolved = len(ctx.resolver.venues())

    engine = ctx.engine()
    report = engine.persist(_batch(ctx, events))
    _register(ctx, engine.page_ids["venue"].values(), now, counters)
    counters.areas_scanned += 1

    return CrawlResult(
        "ok",
        f"Scraped Area {area_id}. Events processed: {len(events)}.",
        counters, report,
        extra={"area_id": area_id, "start_date": start_date.isoformat()},
    )


def discover_venues(ctx: CrawlContext, counters: CrawlCounters | None = None) -> CrawlResult:
    """Register venues seen in active cities' listings that are not stored yet."""
    counters = counters or CrawlCounters()
    now = ctx.clock()
    cities = list_active_cities(ctx.conn)
    if not cities:
        return CrawlResult("idle", "No active cities to process.", counters)

    engine = ctx.engine()
    report = PersistReport()
    new_names: list[str] = []

    for city in cities:
        if city.ra_area_id is None:
            _warn(counters, f"city {city.name} has no area id; skipped")
            continue
        if ctx.deadline.expired():
            counters.deadline_exceeded = True
            _warn(counters, f"invocation deadline reached before city {city.name}")
            break

        known = venue_ra_ids_for_city(ctx.conn, city.id)
        try:
            stubs = _area_listing(ctx, city.ra_area_id, now.date(), counters)
        except SourceError as exc:
            counters.areas_failed += 1
            counters.fetch_errors += 1
            _warn(counters, f"area listing failed for {city.name}: {exc}")
            continue

        candidates: dict[str, dict[str, Any]] = {}
        for ra_id in _unique_ids(stubs):
            if ctx.deadline.expired():
                counters.deadline_exceeded = True
                _warn(counters, f"invocation deadline reached while discovering in {city.name}")
                break
            detail = _fetch_event_detail(ctx, ra_id, counters)
            stub = (detail or {}).get("venue")
            if not isinstance(stub, dict):
                continue
            venue_ra_id = _str_id(stub.get("id"))
            if venue_ra_id and stub.get("name") and venue_ra_id not in known:
                candidates.setdefault(venue_ra_id, stub)

        venues = []
        for venue_ra_id, stub in candidates.items():
            venue = ctx.resolver.resolve_venue(stub, venue_ra_id)
            if venue is None:
                continue
            if venue.home_city_id is None:
                venue.home_city_id = city.id
            venues.append(venue)
        if not venues:
            log.info("No new venues discovered for %s", city.name)
            counters.areas_scanned += 1
            continue

        city_report = engine.persist(CrawlBatch(venues=venues))
        _merge_reports(report, city_report)
        stored = engine.page_ids["venue"]
        _register(ctx, stored.values(), now, counters)
        names = [v.name for v in venues if v.id in stored]
        new_names.extend(f"{n} ({city.name})" for n in names)
        counters.areas_scanned += 1

    counters.venues_resolved = len(ctx.resolver.venues())
    message = f"Discovered {len(new_names)} new venues across {len(cities)} active cities."
    if new_names:
        ctx.alerter.send(message + "\n" + "\n".join(f"  - {n}" for n in new_names))
    return CrawlResult("ok", message, counters, report, extra={"new_venues": new_names})


def scan_active_cities(ctx: CrawlContext, counters: CrawlCounters | None = None) -> CrawlResult:
    """scan_area for every active city; one city's failure does not stop the rest."""
    counters = counters or CrawlCounters()
    cities = list_active_cities(ctx.conn)
    if not cities:
        return CrawlResult("idle", "No active cities found.", counters)

    report = PersistReport()
    details: list[dict[str, Any]] = []
    for city in cities:
        if city.ra_area_id is None:
            _warn(counters, f"city {city.name} has no area id; skipped")
            details.append({"city": city.name, "status": "skipped"})
            continue
        if ctx.deadline.expired():
            counters.deadline_exceeded = True
            _warn(counters, f"invocation deadline reached before city {city.name}")
            details.append({"city": city.name, "status": "skipped"})
            continue
        # Each city persists only what its own listing resolved.
        city_counters = CrawlCounters()
        try:
            result = scan_area(ctx.with_fresh_resolver(), city.ra_area_id, counters=city_counters)
        except FatalInvocationError as exc:
            counters.merge(city_counters)
            counters.areas_failed += 1
            _warn(counters, f"scan failed for {city.name}: {exc}")
            details.append({"city": city.name, "area_id": city.ra_area_id, "status": "error"})
            continue
        counters.merge(city_counters)
        _merge_reports(report, result.persist)
        details.append({"city": city.name, "area_id": city.ra_area_id, "status": "scanned"})

    scanned = sum(1 for d in details if d["status"] == "scanned")
    skipped = sum(1 for d in details if d["status"] == "skipped")
    message = (
        f"Scraped {scanned}/{len(cities)} active cities. "
        f"Errors: {counters.areas_failed}, Skipped: {skipped}."
    )
    ctx.alerter.send(message, is_error=counters.areas_failed > 0)
    return CrawlResult("ok", message, counters, report, extra={"cities": details})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _register(ctx: CrawlContext, page_ids, now: datetime, counters: CrawlCounters) -> None:
    scheduler = CrawlScheduler(ctx.conn, interval=ctx.settings.recrawl_interval)
    for page_id in page_ids:
        try:
            if scheduler.register_venue(page_id, now):
                counters.venues_registered += 1
        except psycopg.Error as exc:
            _warn(counters, f"crawl status registration failed for venue {page_id}: {exc}")


def _merge_reports(total: PersistReport, part: PersistReport | None) -> None:
    if part is None:
        return
    for name in ("pages", "venues", "artists", "promoters", "events", "mixes"):
        t, p = getattr(total, name), getattr(part, name)
        t.attempted += p.attempted
        t.upserted += p.upserted
        t.errored += p.errored
    total.events_inserted += part.events_inserted
    total.events_updated += part.events_updated
    total.pages_compensated += part.pages_compensated
    total.new_links += part.new_links
    total.warnings.extend(part.warnings)


def _send_digest(ctx: CrawlContext, scheduler: CrawlScheduler, name: str, ra_id: str, now: datetime) -> None:
    try:
        digest = scheduler.activity_digest(now)
    except psycopg.Error as exc:
        log.error("Crawl digest failed: %s", exc)
        ctx.alerter.send(f"Error generating crawl summary after processing {name}: {exc}", is_error=True)
        return
    lines = [
        f"*Crawl summary for: {name} (RA ID: {ra_id})*",
        "*Queue & activity (last 6 hours):*",
        f"  - Current queue depth: {digest['queue_depth']}",
        f"  - Venues crawled: {digest['venues_crawled']}",
        f"  - New events: {digest['new_events']}",
        f"  - Events updated: {digest['updated_events']}",
        f"  - New pages: {digest['new_pages']}",
        f"  - New mixes: {digest['new_mixes']}",
    ]
    ctx.alerter.send("\n".join(lines))


def _venue_dict(picked) -> dict[str, Any]:
    return {"venue_id": picked.venue_id, "ra_id": picked.ra_id, "name": picked.name}


def _str_id(value: Any) -> str | None:
    return None if value in (None, "") else str(value)
