"""nightlife_etl.models

Staging dataclasses shared by the resolver, the upsert engine and the
orchestrator. A Page's `id` is the internal UUID assigned when the resolver
first builds it; `ra_id` is the events-graph identifier and the upsert key.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

PAGE_TYPES = ("venue", "artist", "promoter")


@dataclass
class Mix:
    track_id: str
    title: str | None
    stream_url: str | None
    artwork_url: str | None
    permalink_url: str | None = None
    genre: str | None = None
    duration_ms: int | None = None


@dataclass
class Page:
    id: str
    ra_id: str
    name: str
    handle: str
    bio: str | None = None
    profile_picture: str | None = None
    cover_picture: str | None = None
    home_city_id: str | None = None
    content_url: str | None = None
    instagram: str | None = None
    soundcloud: str | None = None
    bandcamp: str | None = None
    discogs: str | None = None
    facebook: str | None = None
    twitter: str | None = None
    website: str | None = None
    last_tracks: list[Mix] = field(default_factory=list)

    page_type = "page"


@dataclass
class Venue(Page):
    latitude: float | None = None
    longitude: float | None = None
    capacity: int = 0

    page_type = "venue"


@dataclass
class Artist(Page):
    soundcloud_user_id: str | None = None

    page_type = "artist"


@dataclass
class Promoter(Page):
    page_type = "promoter"


@dataclass
class EventRecord:
    id: str
    ra_id: str
    name: str
    description: str
    start_time: datetime
    end_time: datetime
    event_type: str
    date_posted: datetime | None = None
    image: str | None = None
    tickets_url: str | None = None
    venue_id: str | None = None          # internal Venue.id
    artist_ids: list[str] = field(default_factory=list)
    promoter_ids: list[str] = field(default_factory=list)


@dataclass
class CrawlBatch:
    venues: list[Venue] = field(default_factory=list)
    artists: list[Artist] = field(default_factory=list)
    promoters: list[Promoter] = field(default_factory=list)
    events: list[EventRecord] = field(default_factory=list)
