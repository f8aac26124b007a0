"""nightlife_etl.upsert

Writes a resolved CrawlBatch into the store.

Order within one persist() call: venues → artists → promoters → events
(with their link rows). Every row write runs in its own transaction block;
a failed row is counted, logged and skipped, and the batch carries on.

Pages:
  INSERT ... ON CONFLICT (ra_id) DO UPDATE, returning the stored id and
  whether the statement inserted. The detail row (venues/artists) follows
  in a separate block; if it fails right after a brand-new page insert the
  page is deleted again so no page exists without its detail row.

Events:
  Same upsert shape. `created_at` comes from the source's datePosted and is
  only written on insert. Link rows (event_venue/event_artist/
  event_promoter) are written only when the event row was truly inserted,
  so a re-run never adds links to an existing event.
"""

from __future__ import annotations

import logging
from typing import Protocol

import psycopg

from nightlife_etl.models import Artist, CrawlBatch, EventRecord, Mix, Page, Venue
from nightlife_etl.shared import EntityCounts, PersistReport

log = logging.getLogger(__name__)

LINK_TABLES = {
    "venue": ("event_venue", "venue_id"),
    "artist": ("event_artist", "artist_id"),
    "promoter": ("event_promoter", "promoter_id"),
}


class LinkSink(Protocol):
    def on_link_created(self, link_table: str, event_id: str, page_id: str) -> None: ...


class UpsertEngine:
    def __init__(self, conn: psycopg.Connection, link_sink: LinkSink | None = None) -> None:
        self.conn = conn
        self.link_sink = link_sink
        # resolver-assigned id → stored pages.id, per page type, for the last persist()
        self.page_ids: dict[str, dict[str, str]] = {t: {} for t in LINK_TABLES}

    # ------------------------------------------------------------------ #
    # Entry point                                                          #
    # ------------------------------------------------------------------ #

    def persist(self, batch: CrawlBatch) -> PersistReport:
        report = PersistReport()
        page_ids = self.page_ids = {t: {} for t in LINK_TABLES}

        for venue in batch.venues:
            self._persist_page(venue, report.venues, report, page_ids["venue"])
        for artist in batch.artists:
            self._persist_page(artist, report.artists, report, page_ids["artist"])
        for promoter in batch.promoters:
            self._persist_page(promoter, report.promoters, report, page_ids["promoter"])

        for event in batch.events:
            self._persist_event(event, report, page_ids)

        log.info("Persist summary: %s", report.to_dict())
        return report

    # ------------------------------------------------------------------ #
    # Pages                                                                #
    # ------------------------------------------------------------------ #

    def _persist_page(
        self,
        page: Page,
        counts: EntityCounts,
        report: PersistReport,
        id_map: dict[str, str],
    ) -> None:
        counts.attempted += 1
        report.pages.attempted += 1

        try:
            with self.conn.transaction():
                page_id, inserted = _upsert_page_row(self.conn, page)
        except psycopg.Error as exc:
            report.pages.errored += 1
            counts.errored += 1
            _warn(report, f"page upsert failed {page.page_type} ra_id={page.ra_id}: {exc}")
            return
        report.pages.upserted += 1

        try:
            with self.conn.transaction():
                if isinstance(page, Venue):
                    _upsert_venue_row(self.conn, page_id, page)
                elif isinstance(page, Artist):
                    _upsert_artist_row(self.conn, page_id, page)
        except psycopg.Error as exc:
            counts.errored += 1
            _warn(report, f"{page.page_type} detail upsert failed ra_id={page.ra_id}: {exc}")
            if inserted:
                self._compensate_page(page_id, page, report)
            else:
                id_map[page.id] = page_id
            return

        counts.upserted += 1
        id_map[page.id] = page_id
        self._persist_mixes(page, page_id, report)

    def _compensate_page(self, page_id: str, page: Page, report: PersistReport) -> None:
        try:
            with self.conn.transaction():
                self.conn.execute("DELETE FROM pages WHERE id = %s", (page_id,))
        except psycopg.Error as exc:
            _warn(report, f"compensating delete failed for page {page_id}: {exc}")
            return
        report.pages.upserted -= 1
        report.pages.errored += 1
        report.pages_compensated += 1
        log.info("Removed half-written %s page ra_id=%s", page.page_type, page.ra_id)

    def _persist_mixes(self, page: Page, page_id: str, report: PersistReport) -> None:
        owner_col = {"venue": "venue_id", "artist": "artist_id", "promoter": "promoter_id"}[page.page_type]
        for mix in page.last_tracks:
            report.mixes.attempted += 1
            try:
                with self.conn.transaction():
                    _upsert_mix_row(self.conn, mix, owner_col, page_id)
            except psycopg.Error as exc:
                report.mixes.errored += 1
                _warn(report, f"mix upsert failed track_id={mix.track_id}: {exc}")
                continue
            report.mixes.upserted += 1

    # ------------------------------------------------------------------ #
    # Events                                                               #
    # ------------------------------------------------------------------ #

    def _persist_event(
        self,
        event: EventRecord,
        report: PersistReport,
        page_ids: dict[str, dict[str, str]],
    ) -> None:
        report.events.attempted += 1
        created: list[tuple[str, str, str]] = []
        try:
            with self.conn.transaction():
                event_id, inserted = _upsert_event_row(self.conn, event)
                if inserted:
                    created = self._create_links(event_id, event, page_ids, report)
        except psycopg.Error as exc:
            report.events.errored += 1
            _warn(report, f"event upsert failed ra_id={event.ra_id}: {exc}")
            return

        report.events.upserted += 1
        if inserted:
            report.events_inserted += 1
            report.new_links += len(created)
            log.debug("Inserted event %s (%s) with %d links", event.name, event_id, len(created))
        else:
            report.events_updated += 1

        for link_table, ev_id, page_id in created:
            self._notify(link_table, ev_id, page_id)

    def _create_links(
        self,
        event_id: str,
        event: EventRecord,
        page_ids: dict[str, dict[str, str]],
        report: PersistReport,
    ) -> list[tuple[str, str, str]]:
        wanted: list[tuple[str, str]] = []
        if event.venue_id:
            wanted.append(("venue", event.venue_id))
        wanted.extend(("artist", a) for a in event.artist_ids)
        wanted.extend(("promoter", p) for p in event.promoter_ids)

        created: list[tuple[str, str, str]] = []
        for page_type, resolver_id in wanted:
            page_id = page_ids[page_type].get(resolver_id)
            if page_id is None:
                _warn(report, f"no stored {page_type} for event ra_id={event.ra_id}; link skipped")
                continue
            table, col = LINK_TABLES[page_type]
            try:
                with self.conn.transaction():
                    row = self.conn.execute(
                        f"""
                        INSERT INTO {table} (event_id, {col})
                        VALUES (%s, %s)
                        ON CONFLICT (event_id, {col}) DO NOTHING
                        RETURNING event_id
                        """,
                        (event_id, page_id),
                    ).fetchone()
            except psycopg.Error as exc:
                _warn(report, f"{table} link failed event={event_id} page={page_id}: {exc}")
                continue
            if row is not None:
                created.append((table, event_id, page_id))
        return created

    def _notify(self, link_table: str, event_id: str, page_id: str) -> None:
        if self.link_sink is None:
            return
        try:
            self.link_sink.on_link_created(link_table, event_id, page_id)
        except Exception:
            log.exception("Link sink failed for %s event=%s page=%s", link_table, event_id, page_id)


# ---------------------------------------------------------------------------
# Row writers
# ---------------------------------------------------------------------------

def _upsert_page_row(conn: psycopg.Connection, page: Page) -> tuple[str, bool]:
    row = conn.execute(
        """
        INSERT INTO pages (
          id, ra_id, page_type, name, handle, bio, profile_picture, cover_picture,
          content_url, home_city_id, instagram, soundcloud, bandcamp, discogs,
          facebook, twitter, website
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (ra_id) DO UPDATE SET
          name            = EXCLUDED.name,
          handle          = EXCLUDED.handle,
          bio             = EXCLUDED.bio,
          profile_picture = EXCLUDED.profile_picture,
          cover_picture   = EXCLUDED.cover_picture,
          content_url     = EXCLUDED.content_url,
          home_city_id    = COALESCE(EXCLUDED.home_city_id, pages.home_city_id),
          instagram       = EXCLUDED.instagram,
          soundcloud      = EXCLUDED.soundcloud,
          bandcamp        = EXCLUDED.bandcamp,
          discogs         = EXCLUDED.discogs,
          facebook        = EXCLUDED.facebook,
          twitter         = EXCLUDED.twitter,
          website         = EXCLUDED.website,
          updated_at      = now()
        RETURNING id, (xmax = 0) AS inserted
        """,
        (
            page.id, page.ra_id, page.page_type, page.name, page.handle, page.bio,
            page.profile_picture, page.cover_picture, page.content_url, page.home_city_id,
            page.instagram, page.soundcloud, page.bandcamp, page.discogs,
            page.facebook, page.twitter, page.website,
        ),
    ).fetchone()
    return str(row[0]), bool(row[1])


def _upsert_venue_row(conn: psycopg.Connection, page_id: str, venue: Venue) -> None:
    conn.execute(
        """
        INSERT INTO venues (id, latitude, longitude, capacity)
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (id) DO UPDATE SET
          latitude   = COALESCE(EXCLUDED.latitude, venues.latitude),
          longitude  = COALESCE(EXCLUDED.longitude, venues.longitude),
          capacity   = EXCLUDED.capacity,
          updated_at = now()
        """,
        (page_id, venue.latitude, venue.longitude, venue.capacity),
    )


def _upsert_artist_row(conn: psycopg.Connection, page_id: str, artist: Artist) -> None:
    conn.execute(
        """
        INSERT INTO artists (id, soundcloud_user_id)
        VALUES (%s, %s)
        ON CONFLICT (id) DO UPDATE SET
          soundcloud_user_id = COALESCE(EXCLUDED.soundcloud_user_id, artists.soundcloud_user_id),
          updated_at         = now()
        """,
        (page_id, artist.soundcloud_user_id),
    )


def _upsert_mix_row(conn: psycopg.Connection, mix: Mix, owner_col: str, page_id: str) -> None:
    owners = {"venue_id": None, "artist_id": None, "promoter_id": None}
    owners[owner_col] = page_id
    conn.execute(
        """
        INSERT INTO mixes (
          track_id, name, url, cover_image, permalink_url, genre, duration_ms,
          venue_id, artist_id, promoter_id
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (track_id) DO UPDATE SET
          name          = EXCLUDED.name,
          url           = EXCLUDED.url,
          cover_image   = EXCLUDED.cover_image,
          permalink_url = EXCLUDED.permalink_url,
          genre         = EXCLUDED.genre,
          duration_ms   = EXCLUDED.duration_ms,
          venue_id      = EXCLUDED.venue_id,
          artist_id     = EXCLUDED.artist_id,
          promoter_id   = EXCLUDED.promoter_id,
          updated_at    = now()
        """,
        (
            mix.track_id, mix.title, mix.stream_url, mix.artwork_url, mix.permalink_url,
            mix.genre, mix.duration_ms,
            owners["venue_id"], owners["artist_id"], owners["promoter_id"],
        ),
    )


def _upsert_event_row(conn: psycopg.Connection, event: EventRecord) -> tuple[str, bool]:
    row = conn.execute(
        """
        INSERT INTO events (
          id, ra_id, name, description, visual, tickets_url,
          start_date, end_date, event_type, created_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, now()))
        ON CONFLICT (ra_id) DO UPDATE SET
          name        = EXCLUDED.name,
          description = EXCLUDED.description,
          visual      = EXCLUDED.visual,
          tickets_url = EXCLUDED.tickets_url,
          start_date  = EXCLUDED.start_date,
          end_date    = EXCLUDED.end_date,
          event_type  = EXCLUDED.event_type,
          updated_at  = now()
        RETURNING id, (xmax = 0) AS inserted
        """,
        (
            event.id, event.ra_id, event.name, event.description, event.image,
            event.tickets_url, event.start_time, event.end_time, event.event_type,
            event.date_posted,
        ),
    ).fetchone()
    return str(row[0]), bool(row[1])


def _warn(report: PersistReport, message: str) -> None:
    log.warning(message)
    report.warnings.append(message)
