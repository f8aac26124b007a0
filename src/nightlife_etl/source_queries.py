"""nightlife_etl.source_queries

GraphQL request payloads for the events-graph API.

Every builder is pure: it takes primitive identifiers and returns a
`{"operationName", "variables", "query"}` dict for SourceClient.fetch.
Only the fields the resolver and orchestrator consume are selected.
"""

from __future__ import annotations

import json
from datetime import date
from typing import Any

AREA_LISTING_PAGE_SIZE = 100
VENUE_LISTING_PAGE_SIZE = 20

# ---------------------------------------------------------------------------
# Query documents
# ---------------------------------------------------------------------------

_EVENT_LISTINGS_QUERY = """
query GET_EVENT_LISTINGS($filters: FilterInputDtoInput, $filterOptions: FilterOptionsInputDtoInput,
                         $page: Int, $pageSize: Int, $sort: SortInputDtoInput) {
  eventListings(filters: $filters, filterOptions: $filterOptions, pageSize: $pageSize,
                page: $page, sort: $sort) {
    data {
      id
      listingDate
      event {
        id date startTime endTime title contentUrl flyerFront
        venue { id name contentUrl area { id name } }
        promoters { id }
        artists { id name }
      }
    }
    totalResults
  }
}
"""

_EVENT_DETAIL_QUERY = """
query GET_EVENT_DETAIL($id: ID!) {
  event(id: $id) {
    id title content contentUrl flyerFront datePosted date startTime endTime
    images { id filename type }
    venue {
      id name address contentUrl
      area { id name }
      location { latitude longitude }
    }
    promoters { id name contentUrl }
    artists { id name contentUrl urlSafeName }
  }
}
"""

_ARTIST_DETAIL_QUERY = """
query GET_ARTIST_BY_SLUG($slug: String!) {
  artist(slug: $slug) {
    id name urlSafeName contentUrl image coverImage
    facebook soundcloud instagram twitter bandcamp discogs website
    biography { id blurb }
  }
}
"""

_VENUE_DETAIL_QUERY = """
query GET_VENUE($id: ID!) {
  venue(id: $id) {
    id name logoUrl photo blurb address contentUrl website capacity
    area { id name }
  }
}
"""

_PROMOTER_DETAIL_QUERY = """
query GET_PROMOTER_DETAIL($id: ID!) {
  promoter(id: $id) {
    id name contentUrl website blurb logoUrl
    socialMediaLinks { id link platform }
    area { id name }
  }
}
"""

_VENUE_LISTING_QUERY = """
query GET_DEFAULT_EVENTS_LISTING($indices: [IndexType!], $filters: [FilterInput], $pageSize: Int,
                                 $page: Int, $sortField: FilterSortFieldType,
                                 $sortOrder: FilterSortOrderType) {
  listing(indices: $indices, aggregations: [], filters: $filters, pageSize: $pageSize,
          page: $page, sortField: $sortField, sortOrder: $sortOrder) {
    data {
      ... on Event {
        id title date startTime contentUrl flyerFront
        artists { id name }
        venue { id name contentUrl area { id name } }
      }
    }
    totalResults
  }
}
"""


def _iso_date(value: date | str) -> str:
    return value.isoformat() if isinstance(value, date) else str(value)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def build_event_list_query(
    area_id: int,
    listing_date: date | str,
    page_size: int = AREA_LISTING_PAGE_SIZE,
    page: int = 1,
) -> dict[str, Any]:
    """Area listing: events with listingDate >= listing_date, date ASC then score DESC."""
    return {
        "operationName": "GET_EVENT_LISTINGS",
        "variables": {
            "filters": {
                "areas": {"eq": int(area_id)},
                "listingDate": {"gte": _iso_date(listing_date)},
            },
            "filterOptions": {"genre": True, "eventType": True},
            "pageSize": page_size,
            "page": page,
            "sort": {
                "listingDate": {"order": "ASCENDING"},
                "score": {"order": "DESCENDING"},
                "titleKeyword": {"order": "ASCENDING"},
            },
        },
        "query": _EVENT_LISTINGS_QUERY,
    }


def build_event_detail_query(event_id: str) -> dict[str, Any]:
    return {
        "operationName": "GET_EVENT_DETAIL",
        "variables": {"id": str(event_id)},
        "query": _EVENT_DETAIL_QUERY,
    }


def build_artist_detail_query(slug: str) -> dict[str, Any]:
    return {
        "operationName": "GET_ARTIST_BY_SLUG",
        "variables": {"slug": slug},
        "query": _ARTIST_DETAIL_QUERY,
    }


def build_venue_detail_query(venue_id: str) -> dict[str, Any]:
    return {
        "operationName": "GET_VENUE",
        "variables": {"id": str(venue_id)},
        "query": _VENUE_DETAIL_QUERY,
    }


def build_promoter_detail_query(promoter_id: str) -> dict[str, Any]:
    return {
        "operationName": "GET_PROMOTER_DETAIL",
        "variables": {"id": str(promoter_id)},
        "query": _PROMOTER_DETAIL_QUERY,
    }


def build_venue_listing_query(
    venue_id: str,
    start_date: date | str,
    page_size: int = VENUE_LISTING_PAGE_SIZE,
    page: int = 1,
) -> dict[str, Any]:
    """Venue-scoped listing: CLUB filter plus DATERANGE gte start_date, sorted by date."""
    date_range = json.dumps({"gte": f"{_iso_date(start_date)}T00:00:00.000Z"})
    filters = [
        {"type": "CLUB", "value": str(venue_id)},
        {"type": "DATERANGE", "value": date_range},
    ]
    return {
        "operationName": "GET_DEFAULT_EVENTS_LISTING",
        "variables": {
            "indices": ["EVENT"],
            "pageSize": page_size,
            "page": page,
            "filters": filters,
            "sortOrder": "ASCENDING",
            "sortField": "DATE",
        },
        "query": _VENUE_LISTING_QUERY,
    }
