"""nightlife_etl.soundcloud

Audio-platform enrichment used by the entity resolver.

Three calls, each returning None / [] on failure rather than raising:
  - resolve_user_id(profile_url)   profile URL → platform user id
  - recent_tracks(user_id, limit)  user id → latest tracks as Mix rows
  - track_streams(track_id)        track id → stream URL payload

Authentication is OAuth client-credentials. The access token lives in a
TokenCache owned by the client instance and is refreshed shortly before
it expires.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

import requests

from nightlife_etl.models import Mix
from nightlife_etl.normalize import strip_www

log = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.soundcloud.com"
DEFAULT_TOKEN_URL = "https://secure.soundcloud.com/oauth/token"
DEFAULT_TRACK_LIMIT = 10
TOKEN_REFRESH_MARGIN = 60


# ---------------------------------------------------------------------------
# Token cache
# ---------------------------------------------------------------------------

@dataclass
class TokenCache:
    access_token: str | None = None
    expires_at: float = 0.0

    def valid(self, now: float) -> bool:
        return bool(self.access_token) and now < self.expires_at - TOKEN_REFRESH_MARGIN

    def store(self, token: str, expires_in: int, now: float) -> None:
        self.access_token = token
        self.expires_at = now + int(expires_in)

    def clear(self) -> None:
        self.access_token = None
        self.expires_at = 0.0


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class SoundcloudClient:
    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        api_url: str = DEFAULT_API_URL,
        token_url: str = DEFAULT_TOKEN_URL,
        timeout: float = 10,
        session: requests.Session | None = None,
        token_cache: TokenCache | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_url = api_url.rstrip("/")
        self.token_url = token_url
        self.timeout = timeout
        self.token_cache = token_cache or TokenCache()
        self._session = session or requests.Session()
        self._clock = clock
        self._token_lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Auth                                                                 #
    # ------------------------------------------------------------------ #

    def access_token(self) -> str | None:
        """Return a valid token, fetching one when the cache is empty or stale."""
        if not self.client_id or not self.client_secret:
            log.error("SoundCloud client id/secret not configured; enrichment disabled")
            return None

        with self._token_lock:
            now = self._clock()
            if self.token_cache.valid(now):
                return self.token_cache.access_token
            try:
                resp = self._session.post(
                    self.token_url,
                    data={"grant_type": "client_credentials"},
                    auth=(self.client_id, self.client_secret),
                    timeout=self.timeout,
                )
                resp.raise_for_status()
                data = resp.json()
            except (requests.RequestException, ValueError) as exc:
                log.error("SoundCloud token request failed: %s", exc)
                return None
            token = data.get("access_token")
            if not token:
                log.error("SoundCloud token response carried no access_token")
                return None
            self.token_cache.store(token, data.get("expires_in", 3600), now)
            return token

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any | None:
        token = self.access_token()
        if not token:
            return None
        url = f"{self.api_url}{path}"
        for attempt in range(2):
            try:
                resp = self._session.get(
                    url,
                    params=params,
                    headers={"Authorization": f"OAuth {token}"},
                    timeout=self.timeout,
                )
            except requests.RequestException as exc:
                log.warning("SoundCloud GET %s failed: %s", path, exc)
                return None
            if resp.status_code == 401 and attempt == 0:
                # Token revoked or expired early; retry once with a fresh one
                self.token_cache.clear()
                token = self.access_token()
                if not token:
                    return None
                continue
            if resp.status_code != 200:
                log.warning("SoundCloud GET %s returned %s", path, resp.status_code)
                return None
            try:
                return resp.json()
            except ValueError:
                log.warning("SoundCloud GET %s returned a non-JSON body", path)
                return None
        return None

    # ------------------------------------------------------------------ #
    # Calls                                                                #
    # ------------------------------------------------------------------ #

    def resolve_user_id(self, profile_url: str | None) -> str | None:
        url = strip_www(profile_url)
        if not url:
            return None
        data = self._get("/resolve", params={"url": url})
        user_id = data.get("id") if isinstance(data, dict) else None
        if not user_id:
            log.info("Could not resolve SoundCloud URL to a user id: %s", url)
            return None
        return str(user_id)

    def recent_tracks(self, user_id: str | None, limit: int = DEFAULT_TRACK_LIMIT) -> list[Mix]:
        if not user_id:
            return []
        data = self._get(f"/users/{user_id}/tracks", params={"limit": limit})
        if isinstance(data, dict):
            # linked_partitioning responses wrap the list
            data = data.get("collection")
        if not isinstance(data, list):
            return []
        mixes: list[Mix] = []
        for track in data[:limit]:
            if not isinstance(track, dict) or track.get("id") is None:
                continue
            mixes.append(Mix(
                track_id=str(track["id"]),
                title=track.get("title"),
                stream_url=track.get("stream_url"),
                artwork_url=track.get("artwork_url"),
                permalink_url=track.get("permalink_url"),
                genre=track.get("genre"),
                duration_ms=track.get("duration"),
            ))
        return mixes

    def track_streams(self, track_id: str | None) -> dict[str, Any] | None:
        if not track_id:
            return None
        data = self._get(f"/tracks/{track_id}/streams")
        return data if isinstance(data, dict) else None
