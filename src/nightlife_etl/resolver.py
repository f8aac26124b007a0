"""nightlife_etl.resolver

Turns venue/artist/promoter stubs from listing and event-detail payloads
into fully detailed Page objects.

One EntityResolver is built per invocation. It memoizes each entity type by
its external id so a listing that mentions the same artist on twenty events
costs one detail fetch (and one enrichment pair), not twenty.

Resolution is safe to call from several worker threads at once: the first
caller for an external id does the fetch, concurrent callers for the same id
wait on its Future. Failed resolutions (None) are not memoized.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Future
from typing import Any, Callable, Protocol

from nightlife_etl.models import Artist, Mix, Promoter, Venue
from nightlife_etl.normalize import (
    absolute_content_url,
    normalize_space,
    page_handle,
    parse_float,
    parse_int,
    slug_name,
    trim,
)
from nightlife_etl.source_client import SourceError
from nightlife_etl.source_queries import (
    build_artist_detail_query,
    build_promoter_detail_query,
    build_venue_detail_query,
)

log = logging.getLogger(__name__)

UNKNOWN_VENUE_NAME = "Unknown Venue"

# socialMediaLinks.platform → Page field
_PROMOTER_PLATFORMS = {
    "facebook": "facebook",
    "instagram": "instagram",
    "soundcloud": "soundcloud",
    "twitter": "twitter",
    "bandcamp": "bandcamp",
    "discogs": "discogs",
    "website": "website",
}


class Fetcher(Protocol):
    def fetch(self, query: dict[str, Any]) -> dict[str, Any]: ...


class Enrichment(Protocol):
    def resolve_user_id(self, profile_url: str | None) -> str | None: ...

    def recent_tracks(self, user_id: str | None, limit: int = ...) -> list[Mix]: ...


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class EntityResolver:
    def __init__(
        self,
        client: Fetcher,
        enrichment: Enrichment | None = None,
        city_lookup: Callable[[str | None], str | None] | None = None,
        track_limit: int = 10,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.client = client
        self.enrichment = enrichment
        self.city_lookup = city_lookup or (lambda name: None)
        self.track_limit = track_limit
        self._new_id = id_factory
        self._lock = threading.Lock()
        self._memo: dict[str, dict[str, Future]] = {
            "venue": {},
            "artist": {},
            "promoter": {},
        }
        self.detail_fetches = 0
        self.unavailable = 0

    # ------------------------------------------------------------------ #
    # Public API                                                           #
    # ------------------------------------------------------------------ #

    def resolve_venue(self, stub: dict[str, Any] | None, external_id: str | None) -> Venue | None:
        """Venue for external_id, merging detail over the originating stub.

        The stub supplies what detail lacks. The venue query selects no
        location, so coordinates normally come from the event payload's
        venue.location.
        """
        if not external_id:
            return None
        return self._memoized(
            "venue", str(external_id), lambda: self._build_venue(_obj(stub), str(external_id))
        )

    def resolve_artist(self, stub: dict[str, Any] | None) -> Artist | None:
        """Artist for a stub carrying both `id` and `urlSafeName`.

        A slug-less stub yields None without touching the network.
        """
        stub = _obj(stub)
        ra_id = trim(_str(stub.get("id")))
        slug = trim(stub.get("urlSafeName"))
        if not ra_id or not slug:
            return None
        return self._memoized("artist", ra_id, lambda: self._build_artist(stub, ra_id, slug))

    def resolve_promoter(self, stub: dict[str, Any] | None) -> Promoter | None:
        stub = _obj(stub)
        ra_id = trim(_str(stub.get("id")))
        if not ra_id:
            return None
        return self._memoized("promoter", ra_id, lambda: self._build_promoter(stub, ra_id))

    def venues(self) -> list[Venue]:
        return self._resolved("venue")

    def artists(self) -> list[Artist]:
        return self._resolved("artist")

    def promoters(self) -> list[Promoter]:
        return self._resolved("promoter")

    # ------------------------------------------------------------------ #
    # Memoization                                                          #
    # ------------------------------------------------------------------ #

    def _memoized(self, kind: str, key: str, build: Callable[[], Any]) -> Any:
        memo = self._memo[kind]
        with self._lock:
            fut = memo.get(key)
            owner = fut is None
            if owner:
                fut = Future()
                memo[key] = fut
        if not owner:
            return fut.result()

        try:
            result = build()
        except BaseException as exc:
            with self._lock:
                memo.pop(key, None)
            fut.set_exception(exc)
            raise
        if result is None:
            with self._lock:
                memo.pop(key, None)
                self.unavailable += 1
        fut.set_result(result)
        return result

    def _resolved(self, kind: str) -> list:
        with self._lock:
            futures = list(self._memo[kind].values())
        return [f.result() for f in futures if f.done() and f.exception() is None and f.result()]

    def _fetch_detail(self, query: dict[str, Any], root: str, ra_id: str) -> dict[str, Any] | None:
        with self._lock:
            self.detail_fetches += 1
        try:
            data = self.client.fetch(query)
        except SourceError as exc:
            log.warning("%s %s unavailable: %s", root, ra_id, exc)
            return None
        detail = data.get(root) if isinstance(data, dict) else None
        if not isinstance(detail, dict):
            log.warning("%s %s: detail payload missing", root, ra_id)
            return None
        return detail

    # ------------------------------------------------------------------ #
    # Builders                                                             #
    # ------------------------------------------------------------------ #

    def _build_venue(self, stub: dict[str, Any], ra_id: str) -> Venue | None:
        detail = self._fetch_detail(build_venue_detail_query(ra_id), "venue", ra_id)
        if detail is None:
            return None

        def pick(key: str) -> Any:
            val = detail.get(key)
            return val if val not in (None, "") else stub.get(key)

        name = normalize_space(pick("name")) or UNKNOWN_VENUE_NAME
        location = _obj(detail.get("location")) or _obj(stub.get("location"))
        area = _obj(pick("area"))
        return Venue(
            id=self._new_id(),
            ra_id=ra_id,
            name=name,
            handle=page_handle(pick("name"), "venue", ra_id),
            bio=trim(detail.get("blurb")),
            profile_picture=trim(detail.get("logoUrl")),
            cover_picture=trim(detail.get("photo")),
            home_city_id=self.city_lookup(trim(area.get("name"))),
            content_url=absolute_content_url(pick("contentUrl")),
            website=trim(pick("website")),
            latitude=parse_float(location.get("latitude")),
            longitude=parse_float(location.get("longitude")),
            capacity=parse_int(detail.get("capacity")) or 0,
        )

    def _build_artist(self, stub: dict[str, Any], ra_id: str, slug: str) -> Artist | None:
        detail = self._fetch_detail(build_artist_detail_query(slug), "artist", ra_id)
        if detail is None:
            return None

        name = normalize_space(detail.get("name")) or normalize_space(stub.get("name")) or slug
        biography = _obj(detail.get("biography"))
        artist = Artist(
            id=self._new_id(),
            ra_id=ra_id,
            name=name,
            handle=slug_name(slug) or page_handle(name, "artist", ra_id),
            bio=trim(biography.get("blurb")),
            profile_picture=trim(detail.get("image")),
            cover_picture=trim(detail.get("coverImage")),
            content_url=absolute_content_url(detail.get("contentUrl") or stub.get("contentUrl")),
            instagram=trim(detail.get("instagram")),
            soundcloud=trim(detail.get("soundcloud")),
            bandcamp=trim(detail.get("bandcamp")),
            discogs=trim(detail.get("discogs")),
            facebook=trim(detail.get("facebook")),
            twitter=trim(detail.get("twitter")),
            website=trim(detail.get("website")),
        )

        if self.enrichment is not None and artist.soundcloud:
            artist.soundcloud_user_id = self.enrichment.resolve_user_id(artist.soundcloud)
            if artist.soundcloud_user_id:
                artist.last_tracks = self.enrichment.recent_tracks(
                    artist.soundcloud_user_id, self.track_limit
                )
        return artist

    def _build_promoter(self, stub: dict[str, Any], ra_id: str) -> Promoter | None:
        detail = self._fetch_detail(build_promoter_detail_query(ra_id), "promoter", ra_id)
        if detail is None:
            return None

        name = normalize_space(detail.get("name")) or normalize_space(stub.get("name")) or ra_id
        area = _obj(detail.get("area"))
        promoter = Promoter(
            id=self._new_id(),
            ra_id=ra_id,
            name=name,
            handle=page_handle(name, "promoter", ra_id),
            bio=trim(detail.get("blurb")),
            profile_picture=trim(detail.get("logoUrl")),
            home_city_id=self.city_lookup(trim(area.get("name"))),
            content_url=absolute_content_url(detail.get("contentUrl") or stub.get("contentUrl")),
            website=trim(detail.get("website")),
        )
        for link in _items(detail.get("socialMediaLinks")):
            attr = _PROMOTER_PLATFORMS.get(str(link.get("platform") or "").lower())
            url = trim(link.get("link"))
            if attr and url and not getattr(promoter, attr):
                setattr(promoter, attr, url)
        return promoter


def _str(value: Any) -> str | None:
    return None if value is None else str(value)


def _obj(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _items(value: Any) -> list[dict[str, Any]]:
    """Dict entries of a list payload; anything else is dropped."""
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, dict)]
